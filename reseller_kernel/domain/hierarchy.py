"""
Role hierarchy rules.

Responsibility:
    Pure predicates that decide who may provision whom and who may move
    credit on whose balance.  Every gateway operation consults these before
    touching the ledger; nothing here reads the database.

Architecture position:
    Kernel > Domain -- pure functional core, zero I/O.

    operator ─┬─> master ─┬─> master
              │           ├─> reseller ──> client
              │           └─> client
              ├─> reseller
              └─> client

Invariants enforced:
    - A master never provisions an operator.
    - A reseller only provisions clients; a client provisions nothing.
    - Credit may only be moved on accounts the caller directly created,
      unless the caller is an operator.
"""

from uuid import UUID

from reseller_kernel.exceptions import InvalidRoleError, InvalidStatusError
from reseller_kernel.models.account import AccountRole, AccountStatus

# Roles each role may provision
_CREATABLE: dict[AccountRole, frozenset[AccountRole]] = {
    AccountRole.OPERATOR: frozenset(AccountRole),
    AccountRole.MASTER: frozenset(
        {AccountRole.MASTER, AccountRole.RESELLER, AccountRole.CLIENT}
    ),
    AccountRole.RESELLER: frozenset({AccountRole.CLIENT}),
    AccountRole.CLIENT: frozenset(),
}

# Roles that carry a Balance and can be credit transfer targets
CREDIT_HOLDING_ROLES = frozenset({AccountRole.MASTER, AccountRole.RESELLER})

# Legacy role names still accepted on input
_ROLE_ALIASES = {
    "admin": AccountRole.OPERATOR,
    "cliente": AccountRole.CLIENT,
    "revenda": AccountRole.RESELLER,
}


def parse_role(value: AccountRole | str) -> AccountRole:
    """Coerce a role string (or legacy alias) to AccountRole."""
    if isinstance(value, AccountRole):
        return value
    if not isinstance(value, str):
        raise InvalidRoleError(value, "role must be a string")
    key = value.strip().lower()
    if key in _ROLE_ALIASES:
        return _ROLE_ALIASES[key]
    try:
        return AccountRole(key)
    except ValueError:
        raise InvalidRoleError(value) from None


def parse_status(value: AccountStatus | str) -> AccountStatus:
    if isinstance(value, AccountStatus):
        return value
    try:
        return AccountStatus(str(value).strip().lower())
    except ValueError:
        raise InvalidStatusError(value) from None


def can_create(caller_role: AccountRole, target_role: AccountRole) -> bool:
    """True when ``caller_role`` may provision an account of ``target_role``."""
    return target_role in _CREATABLE[caller_role]


def can_manage_credits(
    caller_role: AccountRole,
    caller_id: UUID,
    target_creator_id: UUID | None,
) -> bool:
    """True when the caller may move credit to or from the target."""
    if caller_role is AccountRole.OPERATOR:
        return True
    return target_creator_id is not None and target_creator_id == caller_id


def can_manage_account(
    caller_role: AccountRole,
    caller_id: UUID,
    target_creator_id: UUID | None,
) -> bool:
    """True when the caller may renew, update or delete the target."""
    return can_manage_credits(caller_role, caller_id, target_creator_id)


def holds_credit(role: AccountRole) -> bool:
    """Operators are unlimited and have no Balance row."""
    return role is not AccountRole.OPERATOR


def is_credit_holding_target(role: AccountRole) -> bool:
    return role in CREDIT_HOLDING_ROLES
