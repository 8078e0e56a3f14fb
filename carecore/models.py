"""
Clinical resource store.

Resources are stored as canonical JSON plus the indexed envelope fields the
authorization core filters on: subject reference, status, effective date,
owning account (Patient only) and the soft-delete marker.
"""

import json
import uuid
from datetime import datetime, timezone

from models import db
from carecore import scopes
from carecore.patient_context import to_patient_reference

# Identifier system linking a Patient record to the account that owns it
ACCOUNT_IDENTIFIER_SYSTEM = 'urn:carecore:keycloak-user-id'


def _utcnow():
    return datetime.now(timezone.utc)


class ClinicalResource(db.Model):
    __tablename__ = 'clinical_resources'
    __table_args__ = (
        db.UniqueConstraint('resource_type', 'resource_id', name='uq_clinical_resources_type_id'),
    )

    id = db.Column(db.String(64), primary_key=True, default=lambda: str(uuid.uuid4()))
    resource_type = db.Column(db.String(64), nullable=False, index=True)
    resource_id = db.Column(db.String(64), nullable=False, index=True)
    subject_reference = db.Column(db.String(128), nullable=True, index=True)
    owner_account_id = db.Column(db.String(255), nullable=True, index=True)
    status = db.Column(db.String(32), nullable=True, index=True)
    effective_date = db.Column(db.String(40), nullable=True)
    # Consent provision.period.end, naive UTC
    provision_end = db.Column(db.DateTime, nullable=True, index=True)
    resource_json = db.Column(db.Text, nullable=False)
    version_id = db.Column(db.Integer, nullable=False, default=1)
    created_at = db.Column(db.DateTime, nullable=False, default=_utcnow)
    last_updated = db.Column(db.DateTime, nullable=False, default=_utcnow)
    deleted_at = db.Column(db.DateTime, nullable=True)

    def __init__(self, resource_type, resource, resource_id=None):
        self.id = str(uuid.uuid4())
        self.resource_type = resource_type
        self.resource_id = resource_id or resource.get('id') or str(uuid.uuid4())
        self.version_id = 1
        self.created_at = _utcnow()
        self._apply(resource)

    @property
    def resource(self):
        return json.loads(self.resource_json)

    @property
    def is_deleted(self):
        return self.deleted_at is not None

    def update_resource(self, resource):
        """Replace the resource content, incrementing the version."""
        self.version_id += 1
        self._apply(resource)

    def soft_delete(self):
        self.deleted_at = _utcnow()

    def _apply(self, resource):
        resource = dict(resource)
        resource['resourceType'] = self.resource_type
        resource['id'] = self.resource_id
        resource.pop('meta', None)
        self.resource_json = json.dumps(resource, separators=(',', ':'), sort_keys=True)
        self.subject_reference = subject_reference_of(self.resource_type, resource)
        self.status = status_of(resource)
        self.effective_date = effective_date_of(self.resource_type, resource)
        if self.resource_type == scopes.PATIENT:
            self.owner_account_id = owner_account_of(resource)
        if self.resource_type == scopes.CONSENT:
            self.provision_end = provision_end_of(resource)
        self.last_updated = _utcnow()

    def to_fhir_json(self):
        """Return the stored resource with meta envelope."""
        resource = self.resource
        resource['meta'] = {
            'versionId': str(self.version_id),
            'lastUpdated': self.last_updated.strftime('%Y-%m-%dT%H:%M:%S.%f')[:-3] + 'Z'
        }
        return resource


def subject_reference_of(resource_type, resource):
    """The ``Patient/{id}`` reference a resource belongs to, if any."""
    if resource_type == scopes.PATIENT:
        return to_patient_reference(resource.get('id'))
    if resource_type == scopes.CONSENT:
        ref = (resource.get('patient') or resource.get('subject') or {}).get('reference')
    else:
        ref = (resource.get('subject') or {}).get('reference')
    if not ref or not str(ref).startswith('Patient/'):
        return None
    return str(ref)


def status_of(resource):
    status = resource.get('status')
    if isinstance(status, str):
        return status
    # Patient.active is a boolean
    active = resource.get('active')
    if isinstance(active, bool):
        return 'active' if active else 'inactive'
    return None


def effective_date_of(resource_type, resource):
    if resource_type == scopes.ENCOUNTER:
        return (resource.get('period') or {}).get('start')
    if resource_type == scopes.CONSENT:
        return resource.get('dateTime')
    if resource_type == scopes.DOCUMENT_REFERENCE:
        return resource.get('date')
    return None


def owner_account_of(resource):
    for ident in resource.get('identifier') or []:
        if isinstance(ident, dict) and ident.get('system') == ACCOUNT_IDENTIFIER_SYSTEM:
            return ident.get('value') or None
    return None


def parse_instant(value):
    """Parse a FHIR dateTime/instant into an aware UTC datetime, or None."""
    try:
        instant = datetime.fromisoformat(str(value).replace('Z', '+00:00'))
    except ValueError:
        return None
    if instant.tzinfo is None:
        return instant.replace(tzinfo=timezone.utc)
    return instant.astimezone(timezone.utc)


def provision_end_of(resource):
    end = ((resource.get('provision') or {}).get('period') or {}).get('end')
    if not end:
        return None
    end = parse_instant(end)
    return end.replace(tzinfo=None) if end else None
