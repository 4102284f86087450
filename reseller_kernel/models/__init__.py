"""Domain models for the reseller kernel."""

from reseller_kernel.models.account import Account, AccountRole, AccountStatus
from reseller_kernel.models.balance import Balance
from reseller_kernel.models.credit_transaction import (
    CreditTransaction,
    TransactionType,
)
from reseller_kernel.models.lifecycle_event import (
    NOT_CONFIGURED_URL,
    DeliveryOutcome,
    LifecycleEvent,
    LifecycleEventType,
)

__all__ = [
    "Account",
    "AccountRole",
    "AccountStatus",
    "Balance",
    "CreditTransaction",
    "TransactionType",
    "LifecycleEvent",
    "LifecycleEventType",
    "DeliveryOutcome",
    "NOT_CONFIGURED_URL",
]
