"""
Resource services.

Business operations shared by the FHIR endpoints and the module endpoints.
Every operation that touches a single record checks existence first
(NotFound) and then runs the record guard (Forbidden); list operations run
the query filter instead. Create, update, delete and share are audited
here explicitly.
"""

import logging
from datetime import datetime, timedelta, timezone

from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from models import db
from carecore import access, audit, config, store
from carecore.errors import (
    Conflict, InvalidRequest, LookupFailure, NotFound, StorageFailure,
)
from carecore.models import ClinicalResource, parse_instant
from carecore.patient_context import to_patient_reference
from carecore.scopes import (
    CONSENT, DOCUMENT_REFERENCE, ENCOUNTER, PATIENT, PRACTITIONER, READ, RESOURCE_TYPES,
    SHARE, WRITE, normalize_resource_type,
)

logger = logging.getLogger(__name__)

# Participation type for practitioners added to a consent provision
_PRCP_ROLE = {
    'coding': [{
        'system': 'http://terminology.hl7.org/CodeSystem/v3-ParticipationType',
        'code': 'PRCP',
        'display': 'Primary Care Provider',
    }],
    'text': 'Practitioner',
}


def _supported_type(resource_type):
    resource_type = normalize_resource_type(resource_type)
    if resource_type not in RESOURCE_TYPES:
        raise InvalidRequest(f'Resource type {resource_type} is not supported')
    return resource_type


def _commit(description, failure=StorageFailure):
    try:
        db.session.commit()
    except SQLAlchemyError as e:
        db.session.rollback()
        logger.error(f'Failed to {description}: {e}')
        raise failure(cause=e)


# --- Consent expiry ---

def _utcnow():
    return datetime.now(timezone.utc)


def is_consent_expired(resource, now=None):
    """True when the consent's provision period has ended."""
    end = ((resource.get('provision') or {}).get('period') or {}).get('end')
    if not end:
        return False
    end = parse_instant(end)
    if end is None:
        return False
    return (now or _utcnow()) > end


def _expire(record, now):
    if record.status != 'active':
        return False
    resource = record.resource
    if not is_consent_expired(resource, now):
        return False
    resource['status'] = 'inactive'
    record.update_resource(resource)
    logger.info(f'Consent {record.resource_id} expired and set to inactive')
    return True


def expire_consent(record, now=None):
    """Set an expired active consent to inactive. Returns True if it changed."""
    if _expire(record, now or _utcnow()):
        _commit('expire consent', failure=LookupFailure)
        return True
    return False


def expire_stale_consents(now=None):
    """
    Deactivate every active consent whose provision period has ended.

    Only rows whose indexed ``provision_end`` is already past are loaded.

    Raises:
        LookupFailure: the sweep query or its commit failed
    """
    now = now or _utcnow()
    changed = [record for record in store.find_expired_consents(now) if _expire(record, now)]
    if changed:
        _commit('expire consents', failure=LookupFailure)
    return len(changed)


# --- Queries ---

def find_resources_by_query(resource_type, params, identity):
    """
    Search one resource type with the identity's filter applied.

    Args:
        resource_type: FHIR resource type
        params: validated search parameters (page, limit, subject, status, date, sort)
        identity: Identity

    Returns:
        tuple: (records, total)
    """
    resource_type = _supported_type(resource_type)
    page = params.get('page', 1)
    limit = params.get('limit', config.DEFAULT_PAGE_SIZE)

    if resource_type == CONSENT:
        expire_stale_consents()

    record_filter = access.build_filter(identity, resource_type, READ)
    subject = params.get('subject')
    if subject:
        record_filter = record_filter.narrow_subject(to_patient_reference(subject))

    query = record_filter.apply(ClinicalResource.query)

    status = params.get('status')
    if status:
        query = query.filter(ClinicalResource.status == status)

    date = params.get('date')
    if date:
        query = query.filter(ClinicalResource.effective_date.like(f'{date[:10]}%'))

    query = access.apply_sort(query, access.parse_sort(params.get('sort')))

    records, total = store.run_query(query, page, limit)
    logger.debug(
        f'{resource_type} queried by {identity.id}: total={total} page={page} limit={limit}'
    )
    return records, total


def find_patients_by_query(params, identity):
    return find_resources_by_query(PATIENT, params, identity)


def find_practitioners_by_query(params, identity):
    return find_resources_by_query(PRACTITIONER, params, identity)


def find_encounters_by_query(params, identity):
    return find_resources_by_query(ENCOUNTER, params, identity)


def find_documents_by_query(params, identity):
    return find_resources_by_query(DOCUMENT_REFERENCE, params, identity)


def find_consents_by_query(params, identity):
    return find_resources_by_query(CONSENT, params, identity)


def _fetch(resource_type, resource_id):
    record = store.find_record_by_id(resource_type, resource_id)
    if record is None:
        raise NotFound(resource_type, resource_id)
    return record


def find_resource_by_id(resource_type, resource_id, identity, action=READ):
    """
    Fetch one record for ``action``.

    Raises:
        NotFound: missing or soft-deleted (checked before access)
        Forbidden: the guard denied access
    """
    resource_type = _supported_type(resource_type)
    record = _fetch(resource_type, resource_id)
    if resource_type == CONSENT:
        expire_consent(record)
    access.ensure_access(identity, record, action)
    return record


def find_patient_by_id(patient_id, identity):
    return find_resource_by_id(PATIENT, patient_id, identity)


def find_practitioner_by_id(practitioner_id, identity):
    return find_resource_by_id(PRACTITIONER, practitioner_id, identity)


def find_encounter_by_id(encounter_id, identity):
    return find_resource_by_id(ENCOUNTER, encounter_id, identity)


def find_document_by_id(document_id, identity):
    return find_resource_by_id(DOCUMENT_REFERENCE, document_id, identity)


def find_consent_by_id(consent_id, identity):
    return find_resource_by_id(CONSENT, consent_id, identity)


# --- Mutations ---

def _check_body(resource_type, body):
    if body.get('resourceType') != resource_type:
        raise InvalidRequest(f'resourceType mismatch: expected {resource_type}')


def _id_taken(resource_type, resource_id):
    """True if the id is used, including by soft-deleted records."""
    return ClinicalResource.query.filter_by(
        resource_type=resource_type, resource_id=resource_id).first() is not None


def create_resource(resource_type, body, identity):
    """
    Create a resource after running the write guard on the prospective record.

    Patients can only create records for patients they own, launch-scoped
    clients only for their launch patient.
    """
    resource_type = _supported_type(resource_type)
    _check_body(resource_type, body)

    resource_id = body.get('id')
    if resource_id and _id_taken(resource_type, resource_id):
        raise Conflict(f'{resource_type}/{resource_id} already exists')

    record = ClinicalResource(resource_type, body, resource_id=resource_id)
    access.ensure_access(identity, record, WRITE)

    db.session.add(record)
    try:
        db.session.commit()
    except IntegrityError:
        # Lost a race with a concurrent create of the same id
        db.session.rollback()
        raise Conflict(f'{resource_type}/{record.resource_id} already exists')
    except SQLAlchemyError as e:
        db.session.rollback()
        logger.error(f'Failed to create {resource_type}: {e}')
        raise StorageFailure(cause=e)
    logger.info(f'{resource_type}/{record.resource_id} created by {identity.id}')

    audit.record_change('create', resource_type, record.resource_id, identity=identity,
                        changes={'versionId': record.version_id,
                                 'subject': record.subject_reference,
                                 'status': record.status},
                        status_code=201)
    return record


def update_resource(resource_type, resource_id, body, identity):
    """
    Replace a resource's content.

    The guard runs on the stored record and again on the new content so an
    update cannot move a record to a patient the caller may not write.
    """
    resource_type = _supported_type(resource_type)
    _check_body(resource_type, body)
    if body.get('id') and body['id'] != resource_id:
        raise InvalidRequest('Resource id in body does not match the URL')

    record = _fetch(resource_type, resource_id)
    access.ensure_access(identity, record, WRITE)

    candidate = ClinicalResource(resource_type, body, resource_id=resource_id)
    access.ensure_access(identity, candidate, WRITE)

    previous = {'versionId': record.version_id, 'status': record.status,
                'subject': record.subject_reference}
    record.update_resource(body)
    _commit(f'update {resource_type}/{resource_id}')
    logger.info(f'{resource_type}/{resource_id} updated by {identity.id}')

    audit.record_change('update', resource_type, resource_id, identity=identity,
                        changes={'before': previous,
                                 'after': {'versionId': record.version_id,
                                           'status': record.status,
                                           'subject': record.subject_reference}},
                        status_code=200)
    return record


def remove_resource(resource_type, resource_id, identity):
    """Soft delete a resource."""
    resource_type = _supported_type(resource_type)
    record = _fetch(resource_type, resource_id)
    access.ensure_access(identity, record, WRITE)

    record.soft_delete()
    _commit(f'delete {resource_type}/{resource_id}')
    logger.info(f'{resource_type}/{resource_id} deleted by {identity.id}')

    audit.record_change('delete', resource_type, resource_id, identity=identity,
                        status_code=204)


def share_consent(consent_id, practitioner_reference, days, identity,
                  practitioner_display=None):
    """
    Share a consent with a practitioner for a number of days.

    Adds the practitioner as a provision actor, sets the provision period
    to end ``days`` from now and makes the consent active.
    """
    record = _fetch(CONSENT, consent_id)
    expire_consent(record)
    access.ensure_access(identity, record, SHARE)

    now = _utcnow()
    expires_at = now + timedelta(days=days)
    consent = record.resource

    actor = {'role': _PRCP_ROLE, 'reference': {'reference': practitioner_reference}}
    if practitioner_display:
        actor['reference']['display'] = practitioner_display

    provision = dict(consent.get('provision') or {})
    provision['type'] = 'permit'
    provision['period'] = {
        'start': consent.get('dateTime') or now.isoformat(),
        'end': expires_at.isoformat(),
    }
    provision['actor'] = list(provision.get('actor') or []) + [actor]
    consent['provision'] = provision
    consent['status'] = 'active'

    record.update_resource(consent)
    _commit(f'share consent {consent_id}')
    logger.info(
        f'Consent {consent_id} shared with {practitioner_reference} for {days} days '
        f'by {identity.id}'
    )

    audit.record_change('share', CONSENT, consent_id, identity=identity,
                        changes={'practitionerReference': practitioner_reference,
                                 'days': days,
                                 'expiresAt': expires_at.isoformat()},
                        status_code=200)
    return record
