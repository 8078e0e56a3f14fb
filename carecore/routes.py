"""
CareCore FHIR REST API - Flask Blueprint.

Two URL families reach the same services:

- ``/api/fhir/{ResourceType}[/{id}]``: FHIR-style search, read, create,
  update and delete
- ``/api/{module}[/{id}]``: module aliases (patients, practitioners,
  encounters, consents, documents) for list and read

Every route except ``/api/health`` requires a verified bearer token. Errors
are returned as FHIR OperationOutcome resources. Reads and searches are
audited by the blueprint's after_request hook; writes are audited by the
services.
"""

import logging

from flask import Blueprint, g, jsonify, request
from marshmallow import ValidationError
from sqlalchemy.exc import SQLAlchemyError

from models import db
from carecore import audit, services
from carecore.errors import CareCoreError, Forbidden, InvalidRequest
from carecore.identity import current_identity, require_identity
from carecore.schemas import ResourceBodySchema, SearchParamsSchema, ShareConsentSchema
from carecore.scopes import MODULE_TO_RESOURCE_TYPE

logger = logging.getLogger(__name__)

api_blueprint = Blueprint('api', __name__, url_prefix='/api')

audit.register_audit_hooks(api_blueprint)

_search_schema = SearchParamsSchema()
_share_schema = ShareConsentSchema()
_body_schema = ResourceBodySchema()


def _operation_outcome(severity, code, diagnostics):
    """Build a FHIR OperationOutcome response."""
    return jsonify({
        'resourceType': 'OperationOutcome',
        'issue': [
            {
                'severity': severity,
                'code': code,
                'diagnostics': diagnostics
            }
        ]
    })


@api_blueprint.errorhandler(CareCoreError)
def handle_carecore_error(error):
    if isinstance(error, Forbidden):
        logger.info(f'Forbidden {request.method} {request.path}: {error.reason}')
    elif error.status_code >= 500:
        logger.error(f'{request.method} {request.path} failed: {error.message}')
    g.audit_error = error.message
    diagnostics = error.message
    if isinstance(error, InvalidRequest) and error.errors:
        diagnostics = f'{error.message}: {error.errors}'
    severity = 'error' if error.status_code < 500 else 'fatal'
    return _operation_outcome(severity, error.issue_code, diagnostics), error.status_code


def _load(schema, data):
    try:
        return schema.load(data)
    except ValidationError as e:
        raise InvalidRequest('Invalid request', errors=e.messages)


def _json_body():
    body = request.get_json(silent=True)
    if not isinstance(body, dict) or not body:
        raise InvalidRequest('Request body must be valid JSON')
    return body


def _resource_url(record):
    return f"{request.host_url.rstrip('/')}/api/fhir/{record.resource_type}/{record.resource_id}"


def _searchset(records, total):
    return jsonify({
        'resourceType': 'Bundle',
        'type': 'searchset',
        'total': total,
        'link': [{'relation': 'self', 'url': request.url}],
        'entry': [
            {'fullUrl': _resource_url(record), 'resource': record.to_fhir_json()}
            for record in records
        ],
    })


def _module_type(module):
    resource_type = MODULE_TO_RESOURCE_TYPE.get(module)
    if resource_type is None:
        raise InvalidRequest(f'Unknown module {module}')
    return resource_type


# --- Health ---

@api_blueprint.route('/health', methods=['GET'])
def health_check():
    """Liveness and readiness check. Returns 503 when the database is unreachable."""
    health = {'status': 'healthy', 'checks': {}}

    try:
        db.session.execute(db.text('SELECT 1'))
        health['checks']['database'] = 'ok'
    except SQLAlchemyError as e:
        db.session.rollback()
        health['status'] = 'degraded'
        health['checks']['database'] = 'error'
        logger.warning(f'Health check: database failed: {e}')

    status_code = 200 if health['status'] == 'healthy' else 503
    return jsonify(health), status_code


# --- FHIR endpoints ---

@api_blueprint.route('/fhir/<resource_type>', methods=['GET'])
@require_identity
def search_resources(resource_type):
    """
    Search resources of one type.

    Supported parameters: subject, status, date (YYYY-MM-DD), sort
    ([-]date, [-]status), page, limit.
    """
    params = _load(_search_schema, request.args.to_dict())
    records, total = services.find_resources_by_query(resource_type, params, current_identity())
    return _searchset(records, total)


@api_blueprint.route('/fhir/<resource_type>/<resource_id>', methods=['GET'])
@require_identity
def read_resource(resource_type, resource_id):
    record = services.find_resource_by_id(resource_type, resource_id, current_identity())
    response = jsonify(record.to_fhir_json())
    response.headers['ETag'] = f'W/"{record.version_id}"'
    return response


@api_blueprint.route('/fhir/<resource_type>', methods=['POST'])
@require_identity
def create_resource(resource_type):
    body = _load(_body_schema, _json_body())
    record = services.create_resource(resource_type, body, current_identity())
    response = jsonify(record.to_fhir_json())
    response.status_code = 201
    response.headers['Location'] = _resource_url(record)
    response.headers['ETag'] = f'W/"{record.version_id}"'
    return response


@api_blueprint.route('/fhir/<resource_type>/<resource_id>', methods=['PUT'])
@require_identity
def update_resource(resource_type, resource_id):
    body = _load(_body_schema, _json_body())
    record = services.update_resource(resource_type, resource_id, body, current_identity())
    response = jsonify(record.to_fhir_json())
    response.headers['ETag'] = f'W/"{record.version_id}"'
    return response


@api_blueprint.route('/fhir/<resource_type>/<resource_id>', methods=['DELETE'])
@require_identity
def delete_resource(resource_type, resource_id):
    services.remove_resource(resource_type, resource_id, current_identity())
    return '', 204


# --- Module endpoints ---

@api_blueprint.route('/<any(patients, practitioners, encounters, consents, documents):module>',
                     methods=['GET'])
@require_identity
def list_module(module):
    params = _load(_search_schema, request.args.to_dict())
    records, total = services.find_resources_by_query(
        _module_type(module), params, current_identity()
    )
    return _searchset(records, total)


@api_blueprint.route(
    '/<any(patients, practitioners, encounters, consents, documents):module>/<resource_id>',
    methods=['GET'])
@require_identity
def read_module(module, resource_id):
    record = services.find_resource_by_id(_module_type(module), resource_id, current_identity())
    return jsonify(record.to_fhir_json())


@api_blueprint.route('/consents/<consent_id>/share', methods=['POST'])
@require_identity
def share_consent(consent_id):
    """Share a consent with a practitioner for a limited number of days."""
    data = _load(_share_schema, _json_body())
    record = services.share_consent(
        consent_id,
        data['practitioner_reference'],
        data['days'],
        current_identity(),
        practitioner_display=data.get('practitioner_display'),
    )
    return jsonify(record.to_fhir_json())
