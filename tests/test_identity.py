"""
Tests for bearer token verification and claim mapping.
"""

import pytest

from carecore.errors import Unauthorized
from carecore.identity import Identity, identity_from_claims, verify_bearer_token


class TestClaimMapping:

    def test_roles_scopes_and_patient(self):
        identity = identity_from_claims({
            'sub': 'u-1',
            'realm_access': {'roles': ['patient']},
            'scope': 'patient:read encounter:read',
            'patient': 'p-1',
        })
        assert identity == Identity('u-1', {'patient'}, {'patient:read', 'encounter:read'},
                                    patient='p-1')

    def test_scp_array(self):
        identity = identity_from_claims({'sub': 'u', 'scp': ['consent:share']})
        assert identity.scopes == {'consent:share'}

    def test_fhir_user_patient_becomes_claim(self):
        identity = identity_from_claims({'sub': 'u', 'fhirUser': 'Patient/p-9'})
        assert identity.patient == 'Patient/p-9'
        assert identity.fhir_user == 'Patient/p-9'

    def test_fhir_user_practitioner_is_not_a_claim(self):
        identity = identity_from_claims({'sub': 'u', 'fhirUser': 'Practitioner/pr-1'})
        assert identity.patient is None

    def test_missing_collections_are_empty(self):
        identity = identity_from_claims({'sub': 'u'})
        assert identity.roles == frozenset()
        assert identity.scopes == frozenset()

    def test_missing_subject(self):
        with pytest.raises(Unauthorized):
            identity_from_claims({'scope': 'patient:read'})

    def test_identity_is_immutable(self):
        identity = Identity('u', roles={'patient'})
        with pytest.raises(Exception):
            identity.roles = frozenset({'admin'})


class TestTokenVerification:

    def test_valid_token(self, make_token):
        identity = verify_bearer_token(make_token(sub='u-1', roles=['practitioner']))
        assert identity.id == 'u-1'
        assert identity.has_role('practitioner')

    def test_wrong_secret(self, make_token):
        with pytest.raises(Unauthorized):
            verify_bearer_token(make_token(secret='not-the-secret-used-by-the-server'))

    def test_expired(self, make_token):
        with pytest.raises(Unauthorized) as exc:
            verify_bearer_token(make_token(expires_in=-60))
        assert 'expired' in exc.value.message

    def test_garbage(self):
        with pytest.raises(Unauthorized):
            verify_bearer_token('not.a.jwt')

    def test_secret_not_configured(self, make_token, monkeypatch):
        token = make_token()
        monkeypatch.setenv('CARECORE_JWT_SECRET', '')
        monkeypatch.setattr('carecore.config.JWT_SECRET', '')
        with pytest.raises(Unauthorized):
            verify_bearer_token(token)
