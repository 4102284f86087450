"""
Pure domain layer.

Role hierarchy predicates, DTOs and the injectable clock.  Nothing here
touches the database or the network.
"""

from reseller_kernel.domain.clock import Clock, DeterministicClock, SystemClock
from reseller_kernel.domain.dtos import (
    UNSET,
    AccountInfo,
    AccountProfile,
    AccountUpdate,
    BalanceSnapshot,
    LifecycleEventInfo,
    PendingNotification,
    ReconciliationResult,
    TransactionInfo,
    TransferResult,
)
from reseller_kernel.domain.hierarchy import (
    can_create,
    can_manage_account,
    can_manage_credits,
    holds_credit,
    parse_role,
    parse_status,
)

__all__ = [
    "Clock",
    "DeterministicClock",
    "SystemClock",
    "UNSET",
    "AccountInfo",
    "AccountProfile",
    "AccountUpdate",
    "BalanceSnapshot",
    "LifecycleEventInfo",
    "PendingNotification",
    "ReconciliationResult",
    "TransactionInfo",
    "TransferResult",
    "can_create",
    "can_manage_account",
    "can_manage_credits",
    "holds_credit",
    "parse_role",
    "parse_status",
]
