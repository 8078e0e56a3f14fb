import uuid
from datetime import datetime, timezone

from flask_sqlalchemy import SQLAlchemy
from sqlalchemy import event

# Initialize SQLAlchemy without binding it to a specific app
db = SQLAlchemy()


def _utcnow():
    return datetime.now(timezone.utc)


class AuditLogRecord(db.Model):
    """
    Audit log of FHIR resource access and modification.

    APPEND-ONLY: entries are legal records. Updates and deletes are
    blocked at the model level.
    """
    __tablename__ = 'audit_logs'
    __table_args__ = (
        db.Index('ix_audit_logs_resource', 'resource_type', 'resource_id'),
        db.Index('ix_audit_logs_type_action_created', 'resource_type', 'action', 'created_at'),
    )

    id = db.Column(db.String(64), primary_key=True, default=lambda: str(uuid.uuid4()))
    action = db.Column(db.String(50), nullable=False, index=True)  # read, search, create, update, delete
    resource_type = db.Column(db.String(50), nullable=False)
    resource_id = db.Column(db.String(255), nullable=True)
    user_id = db.Column(db.String(255), nullable=True, index=True)
    user_roles = db.Column(db.JSON, nullable=True)
    ip_address = db.Column(db.String(45), nullable=True)
    user_agent = db.Column(db.Text, nullable=True)
    request_method = db.Column(db.String(10), nullable=True)
    request_path = db.Column(db.String(500), nullable=True)
    status_code = db.Column(db.Integer, nullable=True)
    changes = db.Column(db.JSON, nullable=True)
    error_message = db.Column(db.Text, nullable=True)
    # SMART on FHIR launch metadata (untrusted, telemetry only)
    client_id = db.Column(db.String(255), nullable=True, index=True)
    launch_context = db.Column(db.JSON, nullable=True)
    scopes = db.Column(db.JSON, nullable=True)
    created_at = db.Column(db.DateTime, default=_utcnow, index=True)

    def to_dict(self):
        return {
            'id': self.id,
            'action': self.action,
            'resourceType': self.resource_type,
            'resourceId': self.resource_id,
            'userId': self.user_id,
            'userRoles': self.user_roles,
            'ipAddress': self.ip_address,
            'userAgent': self.user_agent,
            'requestMethod': self.request_method,
            'requestPath': self.request_path,
            'statusCode': self.status_code,
            'changes': self.changes,
            'errorMessage': self.error_message,
            'clientId': self.client_id,
            'launchContext': self.launch_context,
            'scopes': self.scopes,
            'createdAt': self.created_at.isoformat() if self.created_at else None,
        }


# --- Append-only enforcement for audit logs ---
# These listeners fire on Session.delete() and dirty flush, preventing
# programmatic mutation of audit records. DROP TABLE (test teardown) is unaffected.

@event.listens_for(AuditLogRecord, 'before_update')
def _prevent_audit_update(mapper, connection, target):
    raise RuntimeError('Audit log records are immutable and cannot be updated')


@event.listens_for(AuditLogRecord, 'before_delete')
def _prevent_audit_delete(mapper, connection, target):
    raise RuntimeError('Audit log records are immutable and cannot be deleted')
