"""
ORM-Level Immutability Enforcement.

===============================================================================
WHAT IS PROTECTED
===============================================================================

Entity              | Rule
--------------------|------------------------------------------------------------
CreditTransaction   | ALWAYS immutable: no UPDATE, no DELETE
LifecycleEvent      | ALWAYS immutable: no UPDATE, no DELETE
Balance             | balance/unlimited never change through the ORM unit of
                    | work; the ledger store writes them with a compare-and-set
                    | Core UPDATE that these listeners do not see

===============================================================================
HOW IT WORKS
===============================================================================

    session.flush()
         |
         v
    [before_update event] --> _check_*() --> ImmutabilityViolationError
         |
         v
    [before_delete event] --> _check_*_delete() --> ImmutabilityViolationError
         |
         v
    SQL sent to database (only if checks pass)

Balance rows may still be deleted (account deletion removes them).

===============================================================================
USAGE
===============================================================================

    from reseller_kernel.db.immutability import register_immutability_listeners
    register_immutability_listeners()  # create_tables() does this

Tests that need to bypass the guards:

    unregister_immutability_listeners()
"""

from sqlalchemy import event
from sqlalchemy.orm import attributes

from reseller_kernel.exceptions import ImmutabilityViolationError
from reseller_kernel.logging_config import get_logger

logger = get_logger("db.immutability")

# Columns only the ledger store's compare-and-set may change
BALANCE_GUARDED_FIELDS = ("balance", "unlimited")


def _blocked(entity_type: str, entity_id, operation: str, reason: str):
    logger.error(
        "immutability_violation_blocked",
        extra={
            "entity_type": entity_type,
            "entity_id": str(entity_id),
            "db_operation": operation,
        },
    )
    return ImmutabilityViolationError(
        entity_type=entity_type,
        entity_id=str(entity_id),
        reason=reason,
    )


def _check_credit_transaction_update(mapper, connection, target):
    raise _blocked(
        "CreditTransaction",
        target.id,
        "UPDATE",
        "Credit transactions are append-only and cannot be modified",
    )


def _check_credit_transaction_delete(mapper, connection, target):
    raise _blocked(
        "CreditTransaction",
        target.id,
        "DELETE",
        "Credit transactions cannot be deleted",
    )


def _check_lifecycle_event_update(mapper, connection, target):
    raise _blocked(
        "LifecycleEvent",
        target.id,
        "UPDATE",
        "Lifecycle event records are append-only and cannot be modified",
    )


def _check_lifecycle_event_delete(mapper, connection, target):
    raise _blocked(
        "LifecycleEvent",
        target.id,
        "DELETE",
        "Lifecycle event records cannot be deleted",
    )


def _check_balance_update(mapper, connection, target):
    """
    Reject attribute-level changes to balance/unlimited.

    updated_at may change; it is bookkeeping, not ledger state.
    """
    for field in BALANCE_GUARDED_FIELDS:
        history = attributes.get_history(target, field)
        if history.has_changes():
            raise _blocked(
                "Balance",
                target.account_id,
                "UPDATE",
                f"{field} may only change through the ledger store",
            )


def _listeners():
    from reseller_kernel.models.balance import Balance
    from reseller_kernel.models.credit_transaction import CreditTransaction
    from reseller_kernel.models.lifecycle_event import LifecycleEvent

    return (
        (CreditTransaction, "before_update", _check_credit_transaction_update),
        (CreditTransaction, "before_delete", _check_credit_transaction_delete),
        (LifecycleEvent, "before_update", _check_lifecycle_event_update),
        (LifecycleEvent, "before_delete", _check_lifecycle_event_delete),
        (Balance, "before_update", _check_balance_update),
    )


def register_immutability_listeners():
    """
    Register all immutability enforcement event listeners (idempotent).

    Call after models are imported and before any writes.
    """
    for target, event_name, listener_fn in _listeners():
        if not event.contains(target, event_name, listener_fn):
            event.listen(target, event_name, listener_fn)


def unregister_immutability_listeners():
    """
    Remove immutability enforcement event listeners.

    WARNING: Only use this in tests where you need to intentionally
    violate immutability rules to verify detection.
    """
    for target, event_name, listener_fn in _listeners():
        if event.contains(target, event_name, listener_fn):
            event.remove(target, event_name, listener_fn)
