"""
Test fixtures for the CareCore clinical record API.
"""

import os
import time

import jwt
import pytest

# Set test environment before importing app to prevent file-based DB creation
os.environ['TESTING'] = '1'
os.environ['SQLALCHEMY_DATABASE_URI'] = 'sqlite:///:memory:'
os.environ['CARECORE_JWT_SECRET'] = 'test-secret-for-jwt-signing-0123456789'

TEST_JWT_SECRET = os.environ['CARECORE_JWT_SECRET']

# Account ids that own Patient records
OWNER_ACCOUNT = 'acct-owner'
OTHER_ACCOUNT = 'acct-other'
EMPTY_ACCOUNT = 'acct-empty'


@pytest.fixture
def app():
    """Create a test Flask application."""
    from main import app as flask_app
    flask_app.config['TESTING'] = True
    flask_app.config['SQLALCHEMY_DATABASE_URI'] = 'sqlite:///:memory:'

    from models import db
    with flask_app.app_context():
        db.create_all()
        yield flask_app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    """Create a test client."""
    return app.test_client()


@pytest.fixture
def make_token():
    """Mint an HS256 bearer token signed with the test secret."""
    def _make(sub='user-1', roles=None, scope=None, expires_in=300, secret=TEST_JWT_SECRET,
              **claims):
        payload = {'sub': sub, 'exp': int(time.time()) + expires_in}
        if roles is not None:
            payload['realm_access'] = {'roles': list(roles)}
        if scope is not None:
            payload['scope'] = scope
        payload.update(claims)
        return jwt.encode(payload, secret, algorithm='HS256')
    return _make


@pytest.fixture
def bearer(make_token):
    """Authorization headers for a freshly minted token."""
    def _bearer(**kwargs):
        return {'Authorization': f'Bearer {make_token(**kwargs)}'}
    return _bearer


# --- Identities ---

@pytest.fixture
def admin_identity():
    from carecore.identity import Identity
    return Identity('admin-1', roles={'admin'})


@pytest.fixture
def practitioner_identity():
    from carecore.identity import Identity
    return Identity('prac-1', roles={'practitioner'})


@pytest.fixture
def owner_identity():
    """Patient-role account that owns p-1 and p-3."""
    from carecore.identity import Identity
    return Identity(OWNER_ACCOUNT, roles={'patient'})


@pytest.fixture
def empty_owner_identity():
    """Patient-role account that owns no Patient records."""
    from carecore.identity import Identity
    return Identity(EMPTY_ACCOUNT, roles={'patient'})


@pytest.fixture
def launch_identity():
    """SMART app launched for p-1."""
    from carecore.identity import Identity
    return Identity('app-1', roles={'patient'},
                    scopes={'patient:read', 'encounter:read', 'encounter:write'},
                    patient='Patient/p-1')


@pytest.fixture
def scoped_identity():
    """Client with scopes only, no role and no patient claim."""
    from carecore.identity import Identity
    return Identity('svc-1', scopes={'encounter:read', 'consent:read', 'consent:share'})


@pytest.fixture
def bare_identity():
    from carecore.identity import Identity
    return Identity('nobody')


# --- Sample resources ---

def patient_resource(patient_id, account_id=None, active=True):
    resource = {
        'resourceType': 'Patient',
        'id': patient_id,
        'active': active,
        'name': [{'family': 'Doe', 'given': [patient_id]}],
    }
    if account_id:
        resource['identifier'] = [
            {'system': 'urn:carecore:keycloak-user-id', 'value': account_id}
        ]
    return resource


def encounter_resource(encounter_id, patient_id, status='finished', start='2024-03-01T09:00:00Z'):
    return {
        'resourceType': 'Encounter',
        'id': encounter_id,
        'status': status,
        'class': {'code': 'AMB'},
        'subject': {'reference': f'Patient/{patient_id}'},
        'period': {'start': start},
    }


def consent_resource(consent_id, patient_id, status='active', end=None,
                     date_time='2024-01-10T00:00:00Z'):
    resource = {
        'resourceType': 'Consent',
        'id': consent_id,
        'status': status,
        'patient': {'reference': f'Patient/{patient_id}'},
        'dateTime': date_time,
    }
    if end:
        resource['provision'] = {'type': 'permit', 'period': {'start': date_time, 'end': end}}
    return resource


def document_resource(document_id, patient_id, status='current', date='2024-02-01T12:00:00Z'):
    return {
        'resourceType': 'DocumentReference',
        'id': document_id,
        'status': status,
        'subject': {'reference': f'Patient/{patient_id}'},
        'date': date,
        'content': [{'attachment': {'contentType': 'text/plain', 'title': 'Note'}}],
    }


def store_record(resource):
    """Persist a resource directly, bypassing access checks."""
    from models import db
    from carecore.models import ClinicalResource
    record = ClinicalResource(resource['resourceType'], resource)
    db.session.add(record)
    db.session.commit()
    return record


@pytest.fixture
def seeded(app):
    """
    A small clinical dataset.

    p-1 and p-3 belong to OWNER_ACCOUNT, p-2 to OTHER_ACCOUNT.
    """
    records = {
        'p-1': store_record(patient_resource('p-1', OWNER_ACCOUNT)),
        'p-2': store_record(patient_resource('p-2', OTHER_ACCOUNT)),
        'p-3': store_record(patient_resource('p-3', OWNER_ACCOUNT, active=False)),
        'pr-1': store_record({'resourceType': 'Practitioner', 'id': 'pr-1',
                              'name': [{'family': 'House'}]}),
        'enc-1': store_record(encounter_resource('enc-1', 'p-1', start='2024-03-01T09:00:00Z')),
        'enc-2': store_record(encounter_resource('enc-2', 'p-2', start='2024-03-02T09:00:00Z')),
        'enc-3': store_record(encounter_resource('enc-3', 'p-3', status='in-progress',
                                                 start='2024-03-03T09:00:00Z')),
        'con-1': store_record(consent_resource('con-1', 'p-1', status='active')),
        'con-2': store_record(consent_resource('con-2', 'p-2', status='draft')),
        'con-3': store_record(consent_resource('con-3', 'p-2', status='active')),
        'doc-1': store_record(document_resource('doc-1', 'p-1')),
        'doc-2': store_record(document_resource('doc-2', 'p-2')),
    }
    return records
