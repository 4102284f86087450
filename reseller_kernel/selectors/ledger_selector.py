"""
Module: reseller_kernel.selectors.ledger_selector
Responsibility: Read-side queries over balances, the credit transaction
    trail and the lifecycle event log, plus the reconciliation replay.
Architecture position: Kernel > Selectors.

Invariants enforced:
    - Balance reads select columns rather than ORM entities, so a value
      written by the ledger store's Core UPDATE is never masked by a stale
      identity-map instance.
    - reconcile() starts from the opening balance of 0 and checks that
      every row's balance_after equals the previous balance plus its
      amount, and that the result matches the stored Balance.

Audit relevance:
    reconcile() is the balance_after invariant made executable; tests and
    operators call it after every ledger mutation.
"""

from collections.abc import Iterable
from uuid import UUID

from sqlalchemy import select

from reseller_kernel.domain.dtos import (
    BalanceSnapshot,
    LifecycleEventInfo,
    ReconciliationResult,
    TransactionInfo,
)
from reseller_kernel.exceptions import AccountNotFoundError
from reseller_kernel.models.account import Account, AccountRole
from reseller_kernel.models.balance import Balance
from reseller_kernel.models.credit_transaction import CreditTransaction
from reseller_kernel.models.lifecycle_event import LifecycleEvent
from reseller_kernel.selectors.base import BaseSelector


class LedgerSelector(BaseSelector[Balance]):
    """Read-only ledger queries."""

    def balance(self, account_id: UUID) -> BalanceSnapshot:
        row = self.session.execute(
            select(
                Account.role,
                Balance.balance,
                Balance.unlimited,
                Balance.updated_at,
            )
            .select_from(Account)
            .outerjoin(Balance, Balance.account_id == Account.id)
            .where(Account.id == account_id)
        ).one_or_none()
        if row is None:
            raise AccountNotFoundError(str(account_id))
        if row.role == AccountRole.OPERATOR.value:
            return BalanceSnapshot(
                account_id=account_id, balance=0, unlimited=True, is_operator=True
            )
        if row.balance is None:
            raise AccountNotFoundError(str(account_id))
        return BalanceSnapshot(
            account_id=account_id,
            balance=row.balance,
            unlimited=row.unlimited,
            updated_at=row.updated_at,
        )

    def balances(self, account_ids: Iterable[UUID]) -> dict[UUID, BalanceSnapshot]:
        """Balances for many accounts in one query; operators read as unlimited."""
        ids = list(set(account_ids))
        if not ids:
            return {}
        rows = self.session.execute(
            select(
                Account.id,
                Account.role,
                Balance.balance,
                Balance.unlimited,
                Balance.updated_at,
            )
            .select_from(Account)
            .outerjoin(Balance, Balance.account_id == Account.id)
            .where(Account.id.in_(ids))
        ).all()
        result: dict[UUID, BalanceSnapshot] = {}
        for row in rows:
            if row.role == AccountRole.OPERATOR.value:
                result[row.id] = BalanceSnapshot(
                    account_id=row.id, balance=0, unlimited=True, is_operator=True
                )
            elif row.balance is not None:
                result[row.id] = BalanceSnapshot(
                    account_id=row.id,
                    balance=row.balance,
                    unlimited=row.unlimited,
                    updated_at=row.updated_at,
                )
        return result

    def transactions(
        self,
        account_id: UUID,
        limit: int | None = None,
        newest_first: bool = True,
    ) -> list[TransactionInfo]:
        stmt = select(CreditTransaction).where(
            CreditTransaction.account_id == account_id
        )
        if newest_first:
            stmt = stmt.order_by(CreditTransaction.seq.desc())
        else:
            stmt = stmt.order_by(CreditTransaction.seq)
        if limit is not None:
            stmt = stmt.limit(limit)
        return [
            TransactionInfo.from_model(t)
            for t in self.session.execute(stmt).scalars()
        ]

    def batch(self, batch_id: UUID) -> list[TransactionInfo]:
        """All rows written by one protocol call."""
        rows = self.session.execute(
            select(CreditTransaction)
            .where(CreditTransaction.batch_id == batch_id)
            .order_by(CreditTransaction.seq)
        ).scalars()
        return [TransactionInfo.from_model(t) for t in rows]

    def reconcile(self, account_id: UUID) -> ReconciliationResult:
        """
        Replay the account's transactions against its stored balance.

        Rows are replayed in seq order from the opening balance of 0.
        """
        snapshot = self.balance(account_id)
        rows = self.session.execute(
            select(CreditTransaction)
            .where(CreditTransaction.account_id == account_id)
            .order_by(CreditTransaction.seq)
        ).scalars().all()

        ordered = list(rows)
        mismatches: list[UUID] = []
        previous = 0
        for row in ordered:
            if previous + row.amount != row.balance_after:
                mismatches.append(row.id)
            previous = row.balance_after

        return ReconciliationResult(
            account_id=account_id,
            stored_balance=snapshot.balance,
            last_balance_after=ordered[-1].balance_after if ordered else None,
            transaction_count=len(ordered),
            mismatches=tuple(mismatches),
        )

    def lifecycle_events(
        self,
        target_account_id: UUID | None = None,
        event_type: str | None = None,
        limit: int | None = None,
    ) -> list[LifecycleEventInfo]:
        stmt = select(LifecycleEvent)
        if target_account_id is not None:
            stmt = stmt.where(LifecycleEvent.target_account_id == target_account_id)
        if event_type is not None:
            stmt = stmt.where(LifecycleEvent.event_type == event_type)
        stmt = stmt.order_by(LifecycleEvent.sent_at.desc())
        if limit is not None:
            stmt = stmt.limit(limit)
        return [
            LifecycleEventInfo.from_model(e)
            for e in self.session.execute(stmt).scalars()
        ]

