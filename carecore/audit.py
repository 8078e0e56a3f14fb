"""
Request audit extraction and emission.

Every request to a FHIR endpoint is classified by resource type, resource
id and action from its path. Read and search requests are logged here by
an ``after_request`` hook; create, update and delete are logged explicitly
by the resource services, which know exactly what changed.

Emission never affects the request: failures are logged and swallowed.

Launch metadata is decoded from the bearer token WITHOUT verifying its
signature. It is telemetry only and is carried in its own type,
``UntrustedLaunchMetadata``, which the access engine never accepts.
"""

import logging
import re
from collections import namedtuple

import jwt
from flask import g, has_request_context, request

from models import db, AuditLogRecord
from carecore.scopes import MODULE_TO_RESOURCE_TYPE

logger = logging.getLogger(__name__)

# /api/fhir/Patient/{id}, /api/Patient
_FHIR_RESOURCE_PATTERN = re.compile(r'/api/(?:fhir/)?([A-Z][a-zA-Z]+)(?:/([^/?]+))?')

# /api/patients/{id}, /api/consents
_MODULE_PATTERN = re.compile(
    r'/api/(' + '|'.join(sorted(MODULE_TO_RESOURCE_TYPE)) + r')(?:/([^/?]+))?'
)

_FHIR_PATH_PREFIXES = ('/api/fhir/',) + tuple(f'/api/{m}' for m in sorted(MODULE_TO_RESOURCE_TYPE))

_METHOD_ACTIONS = {
    'GET': 'read',
    'POST': 'create',
    'PUT': 'update',
    'PATCH': 'update',
    'DELETE': 'delete',
}

# Actions the request hook logs; everything else is audited by the services
LOGGED_ACCESS_ACTIONS = frozenset({'read', 'search'})

ResourceInfo = namedtuple('ResourceInfo', ['resource_type', 'resource_id', 'action'])

UntrustedLaunchMetadata = namedtuple(
    'UntrustedLaunchMetadata', ['client_id', 'launch_context', 'scopes']
)


def _path_action(path, query_string, resource_id):
    if '/search' in path or query_string:
        return 'search'
    if resource_id:
        return 'read'
    return 'search'


def extract_resource_info(path, query_string=''):
    """
    Classify a request path.

    The generic ``/{ResourceType}/{id?}`` pattern is tried first, then the
    module alias pattern (``/consents/{id?}`` -> Consent).

    Returns:
        ResourceInfo; all fields None when the path is not a resource path
    """
    match = _FHIR_RESOURCE_PATTERN.search(path)
    if match:
        resource_id = match.group(2)
        return ResourceInfo(match.group(1), resource_id,
                            _path_action(path, query_string, resource_id))

    match = _MODULE_PATTERN.search(path)
    if match:
        resource_type = MODULE_TO_RESOURCE_TYPE.get(match.group(1), match.group(1))
        resource_id = match.group(2)
        return ResourceInfo(resource_type, resource_id,
                            _path_action(path, query_string, resource_id))

    return ResourceInfo(None, None, None)


def is_fhir_endpoint(path):
    return path.startswith(_FHIR_PATH_PREFIXES)


def action_from_method(method):
    return _METHOD_ACTIONS.get((method or '').upper(), 'unknown')


def request_action(method, path_action):
    """
    Effective audit action for a request.

    Path hints only describe reads; any non-GET method is classified by
    the method itself.
    """
    method_action = action_from_method(method)
    if method_action != 'read':
        return method_action
    return path_action or method_action


def extract_launch_metadata(authorization_header, identity=None):
    """
    Best-effort SMART launch metadata for the audit trail.

    The client id is read from the token's ``azp`` (authorized party) or
    ``aud`` claim without verifying the signature.
    """
    client_id = None
    if authorization_header and authorization_header.startswith('Bearer '):
        token = authorization_header[7:].strip()
        try:
            claims = jwt.decode(token, options={'verify_signature': False})
        except jwt.PyJWTError:
            claims = None
        if isinstance(claims, dict):
            if claims.get('azp'):
                client_id = str(claims['azp'])
            elif claims.get('aud'):
                aud = claims['aud']
                client_id = str(aud[0]) if isinstance(aud, (list, tuple)) and aud else str(aud)

    launch_context = None
    scopes = None
    if identity is not None:
        if identity.patient:
            launch_context = {'patient': identity.patient}
            if identity.fhir_user:
                launch_context['fhirUser'] = identity.fhir_user
        scopes = sorted(identity.scopes) or None

    return UntrustedLaunchMetadata(client_id, launch_context, scopes)


def client_ip():
    forwarded = request.headers.get('X-Forwarded-For', '')
    if forwarded:
        return forwarded.split(',')[0].strip() or None
    return request.remote_addr


def _emit(action, resource_type, resource_id=None, identity=None, ip_address=None,
          user_agent=None, request_method=None, request_path=None, status_code=None,
          changes=None, error_message=None, launch=None):
    """
    Append one audit entry.

    Uses a nested transaction (SAVEPOINT) so that audit failures do not
    roll back the caller's already-committed work.
    """
    launch = launch or UntrustedLaunchMetadata(None, None, None)
    try:
        nested = db.session.begin_nested()
        entry = AuditLogRecord(
            action=action,
            resource_type=resource_type or 'Unknown',
            resource_id=resource_id,
            user_id=identity.id if identity else None,
            user_roles=sorted(identity.roles) if identity else None,
            ip_address=ip_address,
            user_agent=user_agent,
            request_method=request_method,
            request_path=request_path,
            status_code=status_code,
            changes=changes,
            error_message=error_message,
            client_id=launch.client_id,
            launch_context=launch.launch_context,
            scopes=launch.scopes or (sorted(identity.scopes) if identity and identity.scopes else None),
        )
        db.session.add(entry)
        nested.commit()
        db.session.commit()
        logger.debug(
            f'Audit recorded: {action} on {resource_type}/{resource_id} '
            f'by {identity.id if identity else "anonymous"}'
        )
        return True
    except Exception as e:
        logger.error(f'Failed to record audit log: {e}')
        # Roll back only the nested savepoint, not the caller's transaction
        try:
            db.session.rollback()
        except Exception as rollback_error:
            logger.error(f'Audit rollback failed: {rollback_error}')
        return False


def record_access(action, resource_type, resource_id=None, identity=None, status_code=None,
                  error_message=None, **request_fields):
    """Record a read or search. Never raises."""
    return _emit(action, resource_type, resource_id, identity=identity,
                 status_code=status_code, error_message=error_message, **request_fields)


def record_change(action, resource_type, resource_id, identity=None, changes=None,
                  status_code=None):
    """
    Record a create, update or delete made by a resource service.

    Request details are taken from the active Flask request when there is
    one. Never raises.
    """
    request_fields = {}
    if has_request_context():
        request_fields = _request_fields(identity)
    return _emit(action, resource_type, resource_id, identity=identity,
                 status_code=status_code, changes=changes, **request_fields)


def _request_fields(identity):
    return {
        'ip_address': client_ip(),
        'user_agent': request.headers.get('User-Agent'),
        'request_method': request.method,
        'request_path': request.path,
        'launch': extract_launch_metadata(request.headers.get('Authorization'), identity),
    }


def register_audit_hooks(blueprint):
    """
    Register read/search audit logging as an after_request hook.

    Failed requests are logged too, with the response status and the
    error diagnostics placed on ``flask.g.audit_error`` by the error handlers.
    """

    @blueprint.after_request
    def audit_request(response):
        if not is_fhir_endpoint(request.path):
            return response

        info = extract_resource_info(request.path, request.query_string.decode('utf-8', 'replace'))
        action = request_action(request.method, info.action)
        if action not in LOGGED_ACCESS_ACTIONS:
            return response

        identity = g.get('identity')
        record_access(
            action, info.resource_type, info.resource_id,
            identity=identity,
            status_code=response.status_code,
            error_message=g.get('audit_error'),
            **_request_fields(identity),
        )
        return response
