"""
FHIR scope catalog.

Scopes follow the format ``resource:action`` (e.g. ``patient:read``,
``consent:share``). Every scope in the catalog maps to exactly one
(FHIR resource type, action) pair. The table is built once at import and
exposed read-only; string splitting is only used to reject malformed
scopes before the lookup.

Resource-name normalization (``DocumentReference`` -> ``document``,
``documents`` -> ``DocumentReference``) lives here so that every caller
resolves names the same way.
"""

import re
from collections import namedtuple
from types import MappingProxyType

# FHIR resource types handled by the API
PATIENT = 'Patient'
PRACTITIONER = 'Practitioner'
ENCOUNTER = 'Encounter'
CONSENT = 'Consent'
DOCUMENT_REFERENCE = 'DocumentReference'

RESOURCE_TYPES = (PATIENT, PRACTITIONER, ENCOUNTER, CONSENT, DOCUMENT_REFERENCE)

# Actions
READ = 'read'
WRITE = 'write'
SHARE = 'share'

ACTIONS = (READ, WRITE, SHARE)

# Wire-level shape of a scope string
SCOPE_PATTERN = re.compile(r'^[a-z]+:(read|write|share)$')

ScopePermission = namedtuple('ScopePermission', ['resource', 'action'])

# Internal scope prefix for each FHIR resource type
_SCOPE_PREFIXES = MappingProxyType({
    PATIENT: 'patient',
    PRACTITIONER: 'practitioner',
    ENCOUNTER: 'encounter',
    DOCUMENT_REFERENCE: 'document',
    CONSENT: 'consent',
})

# Plural path segments used by the module endpoints (/api/documents/...)
MODULE_TO_RESOURCE_TYPE = MappingProxyType({
    'patients': PATIENT,
    'practitioners': PRACTITIONER,
    'encounters': ENCOUNTER,
    'consents': CONSENT,
    'documents': DOCUMENT_REFERENCE,
})

SCOPE_PERMISSIONS = MappingProxyType({
    'patient:read': ScopePermission(PATIENT, READ),
    'patient:write': ScopePermission(PATIENT, WRITE),
    'practitioner:read': ScopePermission(PRACTITIONER, READ),
    'practitioner:write': ScopePermission(PRACTITIONER, WRITE),
    'encounter:read': ScopePermission(ENCOUNTER, READ),
    'encounter:write': ScopePermission(ENCOUNTER, WRITE),
    'document:read': ScopePermission(DOCUMENT_REFERENCE, READ),
    'document:write': ScopePermission(DOCUMENT_REFERENCE, WRITE),
    'consent:read': ScopePermission(CONSENT, READ),
    'consent:write': ScopePermission(CONSENT, WRITE),
    'consent:share': ScopePermission(CONSENT, SHARE),
})

_PERMISSION_SCOPES = MappingProxyType(
    {permission: scope for scope, permission in SCOPE_PERMISSIONS.items()}
)

_ALL_SCOPES = frozenset(SCOPE_PERMISSIONS)


def normalize_resource_type(resource):
    """
    Resolve an external resource identifier to its FHIR resource type.

    Accepts FHIR type names (``DocumentReference``), scope prefixes
    (``document``) and module path segments (``documents``). Unknown
    names are returned unchanged so lookups against the catalog fail.
    """
    if not resource:
        return resource
    if resource in _SCOPE_PREFIXES:
        return resource
    if resource in MODULE_TO_RESOURCE_TYPE:
        return MODULE_TO_RESOURCE_TYPE[resource]
    for resource_type, prefix in _SCOPE_PREFIXES.items():
        if resource == prefix:
            return resource_type
    return resource


def scope_prefix(resource):
    """Return the scope prefix for a resource (``DocumentReference`` -> ``document``)."""
    resource_type = normalize_resource_type(resource)
    return _SCOPE_PREFIXES.get(resource_type, str(resource).lower())


def scope_for(resource, action):
    """Build the scope string for a resource and action, catalogued or not."""
    return f'{scope_prefix(resource)}:{action}'


def is_valid_scope(scope):
    """True iff the scope is well-formed and present in the catalog."""
    if not isinstance(scope, str) or not SCOPE_PATTERN.match(scope):
        return False
    return scope in SCOPE_PERMISSIONS


def scope_to_permission(scope):
    """
    Parse a scope string into a ``ScopePermission``.

    Returns:
        ScopePermission(resource, action) or None for malformed or
        uncatalogued scopes.
    """
    if not is_valid_scope(scope):
        return None
    return SCOPE_PERMISSIONS[scope]


def permission_to_scope(resource, action):
    """Return the canonical scope for (resource, action), or None."""
    return _PERMISSION_SCOPES.get(
        ScopePermission(normalize_resource_type(resource), action)
    )


def all_scopes():
    return _ALL_SCOPES


def scopes_for_resource(resource):
    """All catalogued scopes for one resource type."""
    resource_type = normalize_resource_type(resource)
    return frozenset(
        scope for scope, permission in SCOPE_PERMISSIONS.items()
        if permission.resource == resource_type
    )


def parse_scope_claim(value):
    """
    Split a token scope claim into a list of scope strings.

    Tokens carry scopes either as a space-separated string (``scope``) or
    as an array (``scp``).
    """
    if not value:
        return []
    if isinstance(value, str):
        return [s for s in value.split() if s]
    return [str(s) for s in value if s]
