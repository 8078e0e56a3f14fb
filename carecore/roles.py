"""
System roles.

Roles are assigned by the identity provider and arrive in the token under
``realm_access.roles``.
"""

PATIENT = 'patient'
PRACTITIONER = 'practitioner'
VIEWER = 'viewer'
LAB = 'lab'
INSURER = 'insurer'
SYSTEM = 'system'
ADMIN = 'admin'
AUDIT = 'audit'

ALL_ROLES = frozenset({PATIENT, PRACTITIONER, VIEWER, LAB, INSURER, SYSTEM, ADMIN, AUDIT})


def is_valid_role(role):
    return role in ALL_ROLES
