"""
Tests for audit extraction and emission.
"""

import jwt
import pytest

from models import db, AuditLogRecord
from carecore import audit
from carecore.identity import Identity


class TestResourceExtraction:

    @pytest.mark.parametrize('path,query,expected', [
        ('/api/fhir/Patient/p-1', '', ('Patient', 'p-1', 'read')),
        ('/api/fhir/Patient', '', ('Patient', None, 'search')),
        ('/api/fhir/Encounter', 'status=finished', ('Encounter', None, 'search')),
        ('/api/Patient/p-1', '', ('Patient', 'p-1', 'read')),
        ('/api/documents/doc-1', '', ('DocumentReference', 'doc-1', 'read')),
        ('/api/consents', '', ('Consent', None, 'search')),
        ('/api/health', '', (None, None, None)),
    ])
    def test_extract(self, path, query, expected):
        assert tuple(audit.extract_resource_info(path, query)) == expected

    def test_is_fhir_endpoint(self):
        assert audit.is_fhir_endpoint('/api/fhir/Patient')
        assert audit.is_fhir_endpoint('/api/consents/c-1')
        assert not audit.is_fhir_endpoint('/api/health')

    @pytest.mark.parametrize('method,action', [
        ('GET', 'read'), ('POST', 'create'), ('PUT', 'update'),
        ('PATCH', 'update'), ('DELETE', 'delete'), ('OPTIONS', 'unknown'),
    ])
    def test_action_from_method(self, method, action):
        assert audit.action_from_method(method) == action

    def test_non_get_uses_method_action(self):
        assert audit.request_action('DELETE', 'read') == 'delete'
        assert audit.request_action('GET', 'search') == 'search'


class TestLaunchMetadata:

    def test_client_id_from_azp_without_verification(self):
        token = jwt.encode({'sub': 'u', 'azp': 'smart-app'}, 'some-other-secret-entirely-unknown',
                           algorithm='HS256')
        meta = audit.extract_launch_metadata(f'Bearer {token}')
        assert isinstance(meta, audit.UntrustedLaunchMetadata)
        assert meta.client_id == 'smart-app'

    def test_client_id_from_aud_list(self):
        token = jwt.encode({'sub': 'u', 'aud': ['app-a', 'app-b']}, 'k' * 32, algorithm='HS256')
        assert audit.extract_launch_metadata(f'Bearer {token}').client_id == 'app-a'

    def test_malformed_token_yields_empty_metadata(self):
        meta = audit.extract_launch_metadata('Bearer garbage')
        assert meta == audit.UntrustedLaunchMetadata(None, None, None)

    def test_launch_context_from_identity(self):
        identity = Identity('u', scopes={'patient:read'}, patient='Patient/p-1',
                            fhir_user='Patient/p-1')
        meta = audit.extract_launch_metadata(None, identity)
        assert meta.launch_context == {'patient': 'Patient/p-1', 'fhirUser': 'Patient/p-1'}
        assert meta.scopes == ['patient:read']


class TestEmission:

    def test_record_change_outside_request(self, app):
        identity = Identity('u-1', roles={'admin'})
        assert audit.record_change('update', 'Encounter', 'enc-1', identity=identity,
                                   changes={'status': 'cancelled'}, status_code=200)
        entry = AuditLogRecord.query.one()
        assert entry.user_roles == ['admin']
        assert entry.changes == {'status': 'cancelled'}
        assert entry.request_path is None

    def test_emission_failure_is_swallowed(self, app, monkeypatch):
        def broken_add(entry):
            raise RuntimeError('disk full')
        monkeypatch.setattr(db.session, 'add', broken_add)
        assert audit.record_access('read', 'Patient', 'p-1') is False

    def test_audit_records_are_immutable(self, app):
        audit.record_access('read', 'Patient', 'p-1')
        entry = AuditLogRecord.query.one()
        entry.action = 'tampered'
        with pytest.raises(RuntimeError):
            db.session.commit()
        db.session.rollback()
