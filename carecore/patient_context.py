"""
Patient context resolution.

Answers three questions about an identity, in this order:

1. Should patient scoping be bypassed entirely (administrator)?
2. Does the token itself assert a patient (SMART launch context)?
3. Failing that, which account id should be used to look up the
   patient records the identity owns?

A token-asserted patient always wins over the ownership lookup: it is an
explicit launch grant for one patient and must not be widened.
"""

from carecore import roles

PATIENT_REFERENCE_PREFIX = 'Patient/'


def extract_patient_id(reference):
    """Strip the ``Patient/`` prefix from a reference; bare ids pass through."""
    if not reference:
        return None
    reference = str(reference).strip()
    if reference.startswith(PATIENT_REFERENCE_PREFIX):
        reference = reference[len(PATIENT_REFERENCE_PREFIX):]
    return reference or None


def to_patient_reference(patient_id):
    patient_id = extract_patient_id(patient_id)
    if not patient_id:
        return None
    return f'{PATIENT_REFERENCE_PREFIX}{patient_id}'


def should_bypass_filtering(identity):
    return roles.ADMIN in identity.roles


def get_patient_reference(identity):
    """Patient reference asserted by the token, as ``Patient/{id}``, or None."""
    return to_patient_reference(identity.patient)


def get_patient_id(identity):
    return extract_patient_id(identity.patient)


def get_keycloak_user_id(identity):
    """
    Account id to use for patient ownership lookups.

    Only patient-role identities without a token patient claim are scoped
    by ownership; practitioners and scoped clients are governed by the
    role table and their scopes instead.
    """
    if get_patient_reference(identity):
        return None
    if roles.PATIENT not in identity.roles:
        return None
    return identity.id or None
