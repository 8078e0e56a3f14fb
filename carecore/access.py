"""
Access enforcement.

Two dual operations per resource kind:

- ``evaluate`` / ``can_access`` / ``ensure_access``: the record guard,
  applied after a record has been fetched by id.
- ``build_filter``: the query predicate, applied before a list or search.

Both are derived from the same two inputs, the resolved patient scope of
the identity and the ordered list of role/scope grants for the kind, so
that a record is directly fetchable exactly when it would appear in a
list. Decisions are tagged with the rule that fired.

Evaluation order:

1. admin bypass
2. token patient claim (hard ceiling, nothing else is consulted)
3. owning account (patient records owned by the account)
4. role grant (Consent: active records only)
5. scope grant
6. deny
"""

import logging
from collections import namedtuple
from enum import Enum

from sqlalchemy import false

from carecore import patient_context, roles, store
from carecore.errors import Forbidden
from carecore.models import ClinicalResource
from carecore.permissions import has_resource_permission, role_grants_permission
from carecore.scopes import (
    CONSENT, DOCUMENT_REFERENCE, ENCOUNTER, PATIENT, PRACTITIONER, READ,
    normalize_resource_type,
)

logger = logging.getLogger(__name__)

ACTIVE = 'active'


class Rule(Enum):
    ADMIN_BYPASS = 'admin-bypass'
    PATIENT_MATCH = 'patient-match'
    OWNER_MATCH = 'owner-match'
    ROLE_GRANT = 'role-grant'
    SCOPE_GRANT = 'scope-grant'
    DENIED = 'denied'


# Denial reason classes (logged, never returned to the caller)
REASON_DELETED = 'soft-deleted'
REASON_PATIENT_MISMATCH = 'patient-mismatch'
REASON_OWNERSHIP_MISMATCH = 'ownership-mismatch'
REASON_ROLE_INSUFFICIENT = 'role-insufficient'
REASON_SCOPE_MISSING = 'scope-missing'


class AccessDecision(namedtuple('AccessDecision', ['rule', 'reason'])):
    __slots__ = ()

    @property
    def allowed(self):
        return self.rule is not Rule.DENIED


def _allow(rule):
    return AccessDecision(rule, None)


def _deny(reason):
    return AccessDecision(Rule.DENIED, reason)


class ResourcePolicy:
    """
    Per-kind policy knobs on top of the shared evaluation order.

    Args:
        resource_type: FHIR resource type
        role_grant_status: status a record must have when access comes from
            the role table (None means any status)
        active_role_grants: role -> actions granted on active records only,
            in addition to the role table
    """

    def __init__(self, resource_type, role_grant_status=None, active_role_grants=None):
        self.resource_type = resource_type
        self.role_grant_status = role_grant_status
        self.active_role_grants = dict(active_role_grants or {})

    def grants(self, identity, action):
        """
        Ordered (rule, required_status) grants for steps 4 and 5.

        ``required_status`` of None means the grant covers every record.
        """
        grants = []
        if role_grants_permission(identity, self.resource_type, action):
            grants.append((Rule.ROLE_GRANT, self.role_grant_status))
        elif any(action in self.active_role_grants.get(role, ()) for role in identity.roles):
            grants.append((Rule.ROLE_GRANT, ACTIVE))
        if has_resource_permission(identity, self.resource_type, action):
            grants.append((Rule.SCOPE_GRANT, None))
        return grants


POLICIES = {
    PATIENT: ResourcePolicy(PATIENT),
    PRACTITIONER: ResourcePolicy(PRACTITIONER),
    ENCOUNTER: ResourcePolicy(ENCOUNTER),
    DOCUMENT_REFERENCE: ResourcePolicy(DOCUMENT_REFERENCE),
    # Non-owner access to consents is limited to active ones; practitioners
    # may read them without a consent scope.
    CONSENT: ResourcePolicy(
        CONSENT,
        role_grant_status=ACTIVE,
        active_role_grants={roles.PRACTITIONER: frozenset({READ})},
    ),
}


def policy_for(resource_type):
    resource_type = normalize_resource_type(resource_type)
    return POLICIES.get(resource_type) or ResourcePolicy(resource_type)


# --- Patient scope resolution (shared by guard and filter) ---

PatientScope = namedtuple('PatientScope', ['rule', 'references'])


def resolve_patient_scope(identity, ownership_lookup=None):
    """
    Resolve which patient references restrict the identity.

    Returns:
        PatientScope with ``rule``:
          ADMIN_BYPASS   no restriction
          PATIENT_MATCH  references = {token patient reference}
          OWNER_MATCH    references = references of owned patients (may be empty)
          None           not patient-scoped; role/scope grants decide

    Raises:
        LookupFailure: if the ownership lookup fails (fail closed)
    """
    if patient_context.should_bypass_filtering(identity):
        return PatientScope(Rule.ADMIN_BYPASS, None)

    reference = patient_context.get_patient_reference(identity)
    if reference:
        return PatientScope(Rule.PATIENT_MATCH, frozenset({reference}))

    account_id = patient_context.get_keycloak_user_id(identity)
    if account_id:
        lookup = ownership_lookup or store.owned_patient_ids
        owned = lookup(account_id)
        references = frozenset(
            patient_context.to_patient_reference(pid) for pid in owned if pid
        )
        return PatientScope(Rule.OWNER_MATCH, references)

    return PatientScope(None, None)


# --- Record guard ---

def _is_deleted(record):
    return getattr(record, 'deleted_at', None) is not None


def evaluate(identity, record, action=READ, ownership_lookup=None, scope=None):
    """
    Decide whether ``identity`` may perform ``action`` on a fetched record.

    Args:
        identity: Identity
        record: object with resource_type, subject_reference, status, deleted_at
        action: read, write or share
        ownership_lookup: account_id -> iterable of owned patient ids
        scope: a PatientScope already resolved for this request

    Returns:
        AccessDecision
    """
    if _is_deleted(record):
        return _deny(REASON_DELETED)

    if scope is None:
        scope = resolve_patient_scope(identity, ownership_lookup)

    if scope.rule is Rule.ADMIN_BYPASS:
        return _allow(Rule.ADMIN_BYPASS)

    if scope.rule is Rule.PATIENT_MATCH:
        if record.subject_reference in scope.references:
            return _allow(Rule.PATIENT_MATCH)
        return _deny(REASON_PATIENT_MISMATCH)

    if scope.rule is Rule.OWNER_MATCH:
        if record.subject_reference in scope.references:
            return _allow(Rule.OWNER_MATCH)
        return _deny(REASON_OWNERSHIP_MISMATCH)

    grants = policy_for(record.resource_type).grants(identity, action)
    for rule, required_status in grants:
        if required_status is None or record.status == required_status:
            return _allow(rule)

    if grants:
        return _deny(REASON_ROLE_INSUFFICIENT)
    return _deny(REASON_SCOPE_MISSING)


def can_access(identity, record, action=READ, ownership_lookup=None):
    return evaluate(identity, record, action, ownership_lookup).allowed


def ensure_access(identity, record, action=READ, ownership_lookup=None):
    """
    Raise Forbidden unless the identity may act on the record.

    Returns:
        AccessDecision for the allowed access
    """
    decision = evaluate(identity, record, action, ownership_lookup)
    if not decision.allowed:
        logger.warning(
            f'Access denied: {action} on {record.resource_type}/'
            f'{getattr(record, "resource_id", None)} by {identity.id} ({decision.reason})'
        )
        raise Forbidden(
            f'You do not have permission to {action} this {record.resource_type}',
            reason=decision.reason,
        )
    return decision


# --- Query filter ---

class RecordFilter:
    """
    Predicate over ClinicalResource rows of one resource type.

    ``subjects`` and ``statuses`` are None for "any" or a frozenset of
    allowed values; an empty frozenset matches nothing. Soft-deleted rows
    never match.
    """

    def __init__(self, resource_type, rule, subjects=None, statuses=None):
        self.resource_type = resource_type
        self.rule = rule
        self.subjects = subjects
        self.statuses = statuses

    def __repr__(self):
        return (f'RecordFilter({self.resource_type!r}, {self.rule}, '
                f'subjects={self.subjects!r}, statuses={self.statuses!r})')

    @property
    def matches_nothing(self):
        return self.subjects == frozenset() or self.statuses == frozenset()

    @property
    def unrestricted(self):
        return self.subjects is None and self.statuses is None

    def narrow_subject(self, reference):
        """AND an explicit subject reference in; never widens the result."""
        reference = frozenset({reference})
        subjects = reference if self.subjects is None else self.subjects & reference
        return RecordFilter(self.resource_type, self.rule, subjects, self.statuses)

    def matches(self, record):
        if _is_deleted(record):
            return False
        if record.resource_type != self.resource_type:
            return False
        if self.subjects is not None and record.subject_reference not in self.subjects:
            return False
        if self.statuses is not None and record.status not in self.statuses:
            return False
        return True

    def apply(self, query):
        """Apply the predicate to a ClinicalResource query."""
        query = store.not_deleted(query).filter(
            ClinicalResource.resource_type == self.resource_type
        )
        if self.matches_nothing:
            return query.filter(false())
        if self.subjects is not None:
            query = query.filter(ClinicalResource.subject_reference.in_(sorted(self.subjects)))
        if self.statuses is not None:
            query = query.filter(ClinicalResource.status.in_(sorted(self.statuses)))
        return query


def build_filter(identity, resource_type, action=READ, ownership_lookup=None, scope=None):
    """Build the list/search predicate matching ``evaluate`` for the same inputs."""
    resource_type = normalize_resource_type(resource_type)

    if scope is None:
        scope = resolve_patient_scope(identity, ownership_lookup)

    if scope.rule is Rule.ADMIN_BYPASS:
        result = RecordFilter(resource_type, Rule.ADMIN_BYPASS)
    elif scope.rule in (Rule.PATIENT_MATCH, Rule.OWNER_MATCH):
        result = RecordFilter(resource_type, scope.rule, subjects=scope.references)
    else:
        grants = policy_for(resource_type).grants(identity, action)
        if not grants:
            result = RecordFilter(resource_type, Rule.DENIED, subjects=frozenset())
        elif any(status is None for _, status in grants):
            rule = next(rule for rule, status in grants if status is None)
            result = RecordFilter(resource_type, rule)
        else:
            rule = grants[0][0]
            result = RecordFilter(
                resource_type, rule, statuses=frozenset(status for _, status in grants)
            )

    logger.debug(f'Filter for {identity.id} on {resource_type}: {result!r}')
    return result


# --- Sorting ---

SortDirective = namedtuple('SortDirective', ['field', 'descending'])

DEFAULT_SORT = SortDirective('created_at', True)

# Client-facing sort fields -> ClinicalResource columns
SORT_FIELDS = {
    'date': 'effective_date',
    'status': 'status',
}


def parse_sort(sort, allowed=None):
    """
    Parse a ``[-]field`` sort directive.

    Unknown fields fall back to creation time descending instead of
    raising, so client integrations keep working.
    """
    allowed = SORT_FIELDS if allowed is None else allowed
    if not sort:
        return DEFAULT_SORT
    sort = sort.strip()
    descending = sort.startswith('-')
    field = sort[1:] if descending else sort
    if field not in allowed:
        return DEFAULT_SORT
    return SortDirective(allowed[field], descending)


def apply_sort(query, directive):
    column = getattr(ClinicalResource, directive.field)
    primary = column.desc() if directive.descending else column.asc()
    return query.order_by(primary, ClinicalResource.created_at.desc(), ClinicalResource.id)
