"""
DTOs -- Pure domain data transfer objects.

Responsibility:
    Immutable structures crossing the gateway boundary: AccountProfile and
    AccountUpdate (inputs), AccountInfo, BalanceSnapshot, TransactionInfo,
    TransferResult, LifecycleEventInfo and ReconciliationResult (outputs),
    and PendingNotification (outbox entry handed to the notifier after
    commit).

Architecture position:
    Kernel > Domain -- pure, zero I/O.  from_model() class methods are
    boundary converters invoked from selectors and services only.
"""

from __future__ import annotations

from dataclasses import dataclass, field, fields
from datetime import date, datetime
from types import MappingProxyType
from typing import TYPE_CHECKING, Any, Mapping
from uuid import UUID

from reseller_kernel.models.account import AccountRole, AccountStatus

if TYPE_CHECKING:
    from reseller_kernel.models.account import Account as AccountModel
    from reseller_kernel.models.credit_transaction import (
        CreditTransaction as CreditTransactionModel,
    )
    from reseller_kernel.models.lifecycle_event import (
        LifecycleEvent as LifecycleEventModel,
    )


class _Unset:
    """Marker for AccountUpdate fields the caller did not supply."""

    _instance: _Unset | None = None

    def __new__(cls) -> _Unset:
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "UNSET"

    def __bool__(self) -> bool:
        return False


UNSET: Any = _Unset()


@dataclass(frozen=True)
class AccountProfile:
    """Contact profile supplied on creation."""

    full_name: str
    email: str | None = None
    phone: str | None = None
    tax_id: str | None = None
    plan_id: str | None = None


@dataclass(frozen=True)
class AccountUpdate:
    """
    Partial update.  Fields left as UNSET are untouched; None clears a
    nullable field.
    """

    full_name: Any = UNSET
    email: Any = UNSET
    phone: Any = UNSET
    tax_id: Any = UNSET
    plan_id: Any = UNSET
    billing_expiry_at: Any = UNSET
    credit_expiry_at: Any = UNSET
    status: Any = UNSET
    role: Any = UNSET

    def supplied(self) -> dict[str, Any]:
        """Fields the caller actually set."""
        return {
            f.name: getattr(self, f.name)
            for f in fields(self)
            if getattr(self, f.name) is not UNSET
        }

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> AccountUpdate:
        """Build from a request body; unknown keys are ignored."""
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})


@dataclass(frozen=True)
class AccountInfo:
    id: UUID
    role: AccountRole
    creator_id: UUID | None
    status: AccountStatus
    full_name: str
    email: str | None
    phone: str | None
    tax_id: str | None
    plan_id: str | None
    credit_expiry_at: datetime | None
    billing_expiry_at: datetime | None
    is_trial: bool
    created_at: datetime | None = None
    balance: int | None = None
    unlimited: bool | None = None

    @property
    def is_operator(self) -> bool:
        return self.role is AccountRole.OPERATOR

    @property
    def credit_expiry_date(self) -> date | None:
        return self.credit_expiry_at.date() if self.credit_expiry_at else None

    @classmethod
    def from_model(
        cls,
        account: AccountModel,
        balance: BalanceSnapshot | None = None,
    ) -> AccountInfo:
        return cls(
            id=account.id,
            role=AccountRole(account.role),
            creator_id=account.creator_id,
            status=AccountStatus(account.status),
            full_name=account.full_name,
            email=account.email,
            phone=account.phone,
            tax_id=account.tax_id,
            plan_id=account.plan_id,
            credit_expiry_at=account.credit_expiry_at,
            billing_expiry_at=account.billing_expiry_at,
            is_trial=account.is_trial,
            created_at=account.created_at,
            balance=balance.balance if balance else None,
            unlimited=balance.unlimited if balance else None,
        )


@dataclass(frozen=True)
class BalanceSnapshot:
    """Balance read at one instant.  Operators read as (0, unlimited)."""

    account_id: UUID
    balance: int
    unlimited: bool
    updated_at: datetime | None = None
    is_operator: bool = False

    def covers(self, amount: int) -> bool:
        """True when this balance can pay ``amount`` without going negative."""
        return self.unlimited or self.balance >= amount


@dataclass(frozen=True)
class TransactionInfo:
    id: UUID
    seq: int
    account_id: UUID
    transaction_type: str
    amount: int
    balance_after: int
    description: str
    related_account_id: UUID | None
    performed_by_id: UUID
    batch_id: UUID
    created_at: datetime

    @classmethod
    def from_model(cls, row: CreditTransactionModel) -> TransactionInfo:
        return cls(
            id=row.id,
            seq=row.seq,
            account_id=row.account_id,
            transaction_type=row.transaction_type,
            amount=row.amount,
            balance_after=row.balance_after,
            description=row.description,
            related_account_id=row.related_account_id,
            performed_by_id=row.performed_by_id,
            batch_id=row.batch_id,
            created_at=row.created_at,
        )


@dataclass(frozen=True)
class TransferResult:
    """Outcome of a transfer: balances after, and the rows written."""

    batch_id: UUID
    initiator: BalanceSnapshot
    target: BalanceSnapshot
    transactions: tuple[TransactionInfo, ...] = ()

    @property
    def balances(self) -> dict[UUID, int]:
        return {
            self.initiator.account_id: self.initiator.balance,
            self.target.account_id: self.target.balance,
        }


@dataclass(frozen=True)
class PendingNotification:
    """Lifecycle event queued inside a unit of work, sent after commit."""

    event_type: str
    payload: Mapping[str, Any]
    target_account_id: UUID | None

    def __post_init__(self) -> None:
        object.__setattr__(self, "payload", MappingProxyType(dict(self.payload)))


@dataclass(frozen=True)
class LifecycleEventInfo:
    id: UUID
    event_type: str
    target_url: str
    payload: dict[str, Any]
    request_headers: dict[str, Any]
    outcome: str
    response_status_code: int | None
    response_body: str | None
    failure_reason: str | None
    target_account_id: UUID | None
    sent_at: datetime
    duration_ms: int | None

    @classmethod
    def from_model(cls, row: LifecycleEventModel) -> LifecycleEventInfo:
        return cls(
            id=row.id,
            event_type=row.event_type,
            target_url=row.target_url,
            payload=dict(row.payload),
            request_headers=dict(row.request_headers),
            outcome=row.outcome,
            response_status_code=row.response_status_code,
            response_body=row.response_body,
            failure_reason=row.failure_reason,
            target_account_id=row.target_account_id,
            sent_at=row.sent_at,
            duration_ms=row.duration_ms,
        )


@dataclass(frozen=True)
class ReconciliationResult:
    """
    Replay of an account's transactions against its stored balance.

    ``mismatches`` lists transaction ids whose balance_after does not follow
    from the previous balance plus the amount.  Every balance opens at 0, so
    an account with no rows reconciles only while its stored balance is 0.
    """

    account_id: UUID
    stored_balance: int
    last_balance_after: int | None
    transaction_count: int
    mismatches: tuple[UUID, ...] = field(default_factory=tuple)

    @property
    def is_reconciled(self) -> bool:
        if self.mismatches:
            return False
        expected = 0 if self.last_balance_after is None else self.last_balance_after
        return expected == self.stored_balance
