"""
Read collaborators for the authorization core.

Every query goes through ``not_deleted`` so no lookup path can forget the
soft-delete predicate. Database errors surface as ``LookupFailure`` and
never as an empty result: an ownership lookup that fails must not look
like "owns nothing" or, worse, like a bypass.
"""

import logging
from collections import namedtuple
from datetime import timezone
from functools import wraps

from sqlalchemy.exc import SQLAlchemyError

from models import db
from carecore.errors import LookupFailure
from carecore.models import ClinicalResource
from carecore.scopes import CONSENT, PATIENT

logger = logging.getLogger(__name__)

PatientOwnership = namedtuple('PatientOwnership', ['patient_id', 'account_id'])


def not_deleted(query):
    """Restrict a ClinicalResource query to live (not soft-deleted) rows."""
    return query.filter(ClinicalResource.deleted_at.is_(None))


def _fail_closed(f):
    @wraps(f)
    def decorated(*args, **kwargs):
        try:
            return f(*args, **kwargs)
        except SQLAlchemyError as e:
            logger.error(f'{f.__name__} failed: {e}')
            db.session.rollback()
            raise LookupFailure(cause=e)
    return decorated


def resources_of(resource_type):
    return not_deleted(ClinicalResource.query.filter_by(resource_type=resource_type))


@_fail_closed
def find_record_by_id(resource_type, resource_id):
    """Return the live record or None."""
    return resources_of(resource_type).filter_by(resource_id=resource_id).first()


@_fail_closed
def find_patient_records_by_account_id(account_id):
    """Patient records owned by an account (soft-deleted excluded)."""
    if not account_id:
        return []
    rows = resources_of(PATIENT).filter_by(owner_account_id=account_id).all()
    return [PatientOwnership(row.resource_id, row.owner_account_id) for row in rows]


@_fail_closed
def find_expired_consents(now):
    """Active consents whose provision period ended before ``now`` (aware datetime)."""
    cutoff = now.astimezone(timezone.utc).replace(tzinfo=None)
    return resources_of(CONSENT).filter(
        ClinicalResource.status == 'active',
        ClinicalResource.provision_end.isnot(None),
        ClinicalResource.provision_end < cutoff,
    ).all()


def owned_patient_ids(account_id):
    return frozenset(link.patient_id for link in find_patient_records_by_account_id(account_id))


@_fail_closed
def run_query(query, page, limit):
    """
    Count and page a filtered query.

    Returns:
        tuple: (records, total)
    """
    total = query.order_by(None).count()
    records = query.offset((page - 1) * limit).limit(limit).all()
    return records, total
