"""
Authenticated identity for a request.

Bearer tokens are verified with PyJWT and mapped to an immutable
``Identity``. Roles and scopes are always frozensets (empty when the
token carries none) so the guard and filter paths never branch on None.
"""

import logging
from dataclasses import dataclass, field
from functools import wraps

import jwt
from flask import g, request

from carecore import config
from carecore.errors import Unauthorized
from carecore.scopes import parse_scope_claim

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Identity:
    id: str
    roles: frozenset = field(default_factory=frozenset)
    scopes: frozenset = field(default_factory=frozenset)
    patient: str = None
    fhir_user: str = None

    def __post_init__(self):
        # Normalize iterables passed by callers into frozensets
        object.__setattr__(self, 'roles', frozenset(self.roles or ()))
        object.__setattr__(self, 'scopes', frozenset(self.scopes or ()))

    def has_role(self, role):
        return role in self.roles


def identity_from_claims(payload):
    """
    Map verified token claims to an Identity.

    Patient launch context comes from the ``patient`` claim, or from a
    ``fhirUser`` claim that points at a Patient.

    Raises:
        Unauthorized: if the token has no subject
    """
    subject = payload.get('sub')
    if not subject:
        raise Unauthorized('Token missing required user information')

    roles = (payload.get('realm_access') or {}).get('roles') or []
    scopes = parse_scope_claim(payload.get('scope') or payload.get('scp'))

    fhir_user = payload.get('fhirUser')
    fhir_user = str(fhir_user) if fhir_user else None

    patient = payload.get('patient')
    if patient:
        patient = str(patient)
    elif fhir_user and fhir_user.startswith('Patient/'):
        patient = fhir_user
    else:
        patient = None

    return Identity(
        id=str(subject),
        roles=frozenset(str(r) for r in roles),
        scopes=frozenset(scopes),
        patient=patient,
        fhir_user=fhir_user,
    )


def verify_bearer_token(token):
    """
    Verify a bearer token signature and return its Identity.

    Raises:
        Unauthorized: for missing configuration or an invalid token
    """
    secret = config.get_jwt_secret()
    if not secret:
        logger.warning('CARECORE_JWT_SECRET not configured; rejecting bearer token')
        raise Unauthorized('Server token validation not configured')

    options = {'require': ['sub', 'exp']}
    kwargs = {}
    if config.JWT_ISSUER:
        kwargs['issuer'] = config.JWT_ISSUER
    try:
        payload = jwt.decode(
            token, secret, algorithms=config.JWT_ALGORITHMS,
            options=options, **kwargs
        )
    except jwt.ExpiredSignatureError:
        raise Unauthorized('Bearer token expired')
    except jwt.InvalidTokenError as e:
        logger.debug(f'Bearer token rejected: {e}')
        raise Unauthorized('Bearer token rejected')

    return identity_from_claims(payload)


def bearer_token_from_request():
    auth_header = request.headers.get('Authorization', '')
    if not auth_header.startswith('Bearer '):
        return None
    return auth_header[7:].strip() or None


def require_identity(f):
    """
    Flask route decorator that authenticates the caller.

    The verified Identity is stored on ``flask.g.identity`` for the
    services and the audit hook.
    """
    @wraps(f)
    def decorated(*args, **kwargs):
        token = bearer_token_from_request()
        if not token:
            raise Unauthorized('Authorization bearer token is required')
        g.identity = verify_bearer_token(token)
        return f(*args, **kwargs)
    return decorated


def current_identity():
    return g.get('identity')
