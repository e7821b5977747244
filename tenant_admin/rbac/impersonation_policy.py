"""
Impersonation policy — who may act as whom.

`can_impersonate` is a pure decision function: it reads its arguments,
consults the injected scope lookup only for CSM actors, and returns a
`PermissionDecision`.  It never touches the session store; whether the
target is already impersonated is checked by the manager against the
store and passed in as `target_impersonated`.

Rules are evaluated in order, first match wins:

    1. self                         → deny
    2. target not ACTIVE            → deny
    3. target already impersonated  → deny
    4. superadmin                   → allow (unrestricted)
    5. admin                        → allow only csm / user targets
    6. csm                          → allow only user targets sharing an account
    7. anyone else                  → deny
"""

from typing import NamedTuple

from tenant_admin.models.user import UserRole, UserStatus
from tenant_admin.services.directory_service import Identity, ScopeLookup


class PermissionDecision(NamedTuple):
    allowed: bool
    reason: str
    rule: str


# Rule identifiers, stable for UI messaging and for mapping to error types.
RULE_SELF = "self"
RULE_TARGET_INACTIVE = "target_inactive"
RULE_TARGET_IMPERSONATED = "target_impersonated"
RULE_SUPERADMIN = "superadmin"
RULE_ADMIN = "admin"
RULE_CSM_ROLE = "csm_role"
RULE_CSM_SCOPE = "csm_scope"
RULE_NO_PRIVILEGE = "no_privilege"

ADMIN_TARGET_ROLES = frozenset({UserRole.CSM, UserRole.USER})


def _allow(rule: str, reason: str = "allowed") -> PermissionDecision:
    return PermissionDecision(True, reason, rule)


def _deny(rule: str, reason: str) -> PermissionDecision:
    return PermissionDecision(False, reason, rule)


async def can_impersonate(
    actor: Identity,
    target: Identity,
    scope_lookup: ScopeLookup,
    *,
    target_impersonated: bool = False,
) -> PermissionDecision:
    if actor.id == target.id:
        return _deny(RULE_SELF, "cannot impersonate self")

    if target.status != UserStatus.ACTIVE:
        return _deny(RULE_TARGET_INACTIVE, "target inactive")

    if target_impersonated:
        return _deny(RULE_TARGET_IMPERSONATED, "target already impersonated")

    if actor.role == UserRole.SUPERADMIN:
        return _allow(RULE_SUPERADMIN)

    if actor.role == UserRole.ADMIN:
        if target.role in ADMIN_TARGET_ROLES:
            return _allow(RULE_ADMIN)
        return _deny(RULE_ADMIN, "admin cannot impersonate peers or superiors")

    if actor.role == UserRole.CSM:
        if target.role != UserRole.USER:
            return _deny(RULE_CSM_ROLE, "csm can only impersonate users")
        if not await scope_lookup.shares_account(actor.id, target.id):
            return _deny(RULE_CSM_SCOPE, "csm can only impersonate users in a shared account")
        return _allow(RULE_CSM_SCOPE)

    return _deny(RULE_NO_PRIVILEGE, "no impersonation privilege")
