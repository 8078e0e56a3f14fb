"""
Scope and role permission resolution.

Two independent grant mechanisms:

- Scopes: OAuth2 ``resource:action`` strings carried by the token.
- Roles: an explicit business-policy table, kept separate from the scope
  catalog because it changes on its own schedule.

Callers OR the two together; a practitioner does not need a scope to use
its blanket grant and a scoped client does not need a role.
"""

import logging
from types import MappingProxyType

from carecore import roles
from carecore.scopes import (
    SCOPE_PERMISSIONS, ENCOUNTER, DOCUMENT_REFERENCE, PATIENT, READ, WRITE,
    normalize_resource_type, permission_to_scope, scope_to_permission,
)

logger = logging.getLogger(__name__)

# role -> (resource type, action) pairs granted without any scope.
# Admin is handled before the table and grants everything.
ROLE_GRANTS = MappingProxyType({
    roles.PRACTITIONER: frozenset({
        (PATIENT, READ),
        (ENCOUNTER, READ),
        (ENCOUNTER, WRITE),
        (DOCUMENT_REFERENCE, READ),
        (DOCUMENT_REFERENCE, WRITE),
    }),
})


def has_permission(scope, resource, action):
    """True iff ``scope`` is a catalogued scope for exactly (resource, action)."""
    permission = scope_to_permission(scope)
    if permission is None:
        return False
    return permission.resource == normalize_resource_type(resource) and permission.action == action


def get_required_scopes(resource, action):
    """
    Scopes required for a resource and action.

    Returns an empty list when the pair has no catalogued scope.
    """
    scope = permission_to_scope(resource, action)
    if scope and scope in SCOPE_PERMISSIONS:
        return [scope]
    return []


def validate_scopes(have, required):
    """True iff every required scope is held; extra scopes are fine."""
    return set(required).issubset(set(have or ()))


def has_resource_permission(identity, resource, action):
    """
    Scope-based gate. Admins are always granted.

    Unparseable or uncatalogued scopes in the token grant nothing.
    """
    if roles.ADMIN in identity.roles:
        logger.debug(f'Admin {identity.id} granted {action} on {resource}')
        return True

    required = get_required_scopes(resource, action)
    if not required:
        logger.debug(f'No scopes defined for {action} on {resource}')
        return False

    granted = any(has_permission(scope, resource, action) for scope in identity.scopes)
    if not granted:
        logger.debug(
            f'User {identity.id} missing scopes {required} for {action} on {resource}'
        )
    return granted


def role_grants_permission(identity, resource, action):
    """Role-table gate, independent of scopes."""
    if roles.ADMIN in identity.roles:
        return True

    pair = (normalize_resource_type(resource), action)
    return any(pair in ROLE_GRANTS.get(role, ()) for role in identity.roles)
