"""
LedgerStore -- thin persistence layer for balances and credit transactions.

Responsibility:
    Reads balances under a row lock and writes them with a single
    compare-and-set UPDATE.  Appends CreditTransaction rows.  Enforces no
    business rule beyond "the prior value is what the caller read".

Architecture position:
    Kernel > Services.  Called only by TransferProtocol (balance writes)
    and ProvisioningService (opening a balance for a new account).

Invariants enforced:
    - set_balance is one UPDATE ... WHERE account_id = :id AND balance =
      :expected.  It is visible entirely or not at all; zero rows matched
      means another transaction got there first (OptimisticLockError).
    - Lock order: lock_balances() locks rows in ascending id order so two
      transfers touching the same pair cannot deadlock.

Failure modes:
    - AccountNotFoundError when a non-operator account has no Balance row.
    - OptimisticLockError on a lost compare-and-set.
    - IntegrityError if a write would break ck_balance_non_negative.
"""

from collections.abc import Iterable
from datetime import datetime
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from reseller_kernel.domain.clock import Clock
from reseller_kernel.domain.dtos import BalanceSnapshot, TransactionInfo
from reseller_kernel.exceptions import AccountNotFoundError, OptimisticLockError
from reseller_kernel.logging_config import get_logger
from reseller_kernel.models.account import Account, AccountRole
from reseller_kernel.models.balance import Balance
from reseller_kernel.models.credit_transaction import (
    CreditTransaction,
    TransactionType,
)
from reseller_kernel.services.base import BaseService
from reseller_kernel.services.sequence_service import SequenceService

logger = get_logger("services.ledger_store")


class LedgerStore(BaseService[Balance]):
    """Balance reads and compare-and-set writes."""

    def __init__(self, session: Session, clock: Clock):
        super().__init__(session)
        self._clock = clock
        self._sequences = SequenceService(session)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_balance(self, account_id: UUID) -> BalanceSnapshot:
        """
        Current balance, read under a row lock.

        Operators have no row and read as (0, unlimited=True).
        """
        return self.lock_balances([account_id])[account_id]

    def lock_balances(self, account_ids: Iterable[UUID]) -> dict[UUID, BalanceSnapshot]:
        """
        Lock and read the balances of ``account_ids`` in ascending id order.

        Raises:
            AccountNotFoundError: unknown account, or a non-operator
                account without a Balance row.
        """
        ids = sorted(set(account_ids), key=str)
        roles = {
            row.id: row.role
            for row in self.session.execute(
                select(Account.id, Account.role).where(Account.id.in_(ids))
            ).all()
        }
        result: dict[UUID, BalanceSnapshot] = {}
        for account_id in ids:
            role = roles.get(account_id)
            if role is None:
                raise AccountNotFoundError(str(account_id))
            if role == AccountRole.OPERATOR.value:
                result[account_id] = BalanceSnapshot(
                    account_id=account_id, balance=0, unlimited=True, is_operator=True
                )
                continue
            row = self.session.execute(
                select(Balance)
                .where(Balance.account_id == account_id)
                .with_for_update()
                .execution_options(populate_existing=True)
            ).scalar_one_or_none()
            if row is None:
                raise AccountNotFoundError(str(account_id))
            result[account_id] = BalanceSnapshot(
                account_id=account_id,
                balance=row.balance,
                unlimited=row.unlimited,
                updated_at=row.updated_at,
            )
        return result

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def open_balance(self, account_id: UUID) -> Balance:
        """Insert the zero balance row for a newly provisioned account."""
        balance = Balance(
            account_id=account_id,
            balance=0,
            unlimited=False,
            updated_at=self._clock.now(),
        )
        self.session.add(balance)
        self.session.flush()
        return balance

    def set_balance(
        self,
        account_id: UUID,
        new_balance: int,
        expected_prior_balance: int,
    ) -> None:
        """
        Compare-and-set the balance.

        Raises:
            OptimisticLockError: the stored balance is no longer
                ``expected_prior_balance``.
        """
        result = self.session.execute(
            update(Balance)
            .where(
                Balance.account_id == account_id,
                Balance.balance == expected_prior_balance,
            )
            .values(balance=new_balance, updated_at=self._clock.now())
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            logger.warning(
                "balance_cas_conflict",
                extra={
                    "account_id": str(account_id),
                    "expected_prior_balance": expected_prior_balance,
                },
            )
            raise OptimisticLockError("Balance", str(account_id))
        logger.debug(
            "balance_written",
            extra={
                "account_id": str(account_id),
                "prior_balance": expected_prior_balance,
                "new_balance": new_balance,
            },
        )

    def set_unlimited(
        self,
        account_id: UUID,
        value: bool,
        expected_prior: bool,
    ) -> None:
        """Compare-and-set the unlimited flag; the balance is untouched."""
        result = self.session.execute(
            update(Balance)
            .where(
                Balance.account_id == account_id,
                Balance.unlimited == expected_prior,
            )
            .values(unlimited=value, updated_at=self._clock.now())
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise OptimisticLockError("Balance", str(account_id))

    def append_transaction(
        self,
        *,
        account_id: UUID,
        transaction_type: TransactionType,
        amount: int,
        balance_after: int,
        description: str,
        performed_by_id: UUID,
        batch_id: UUID,
        created_at: datetime,
        related_account_id: UUID | None = None,
    ) -> TransactionInfo:
        row = CreditTransaction(
            seq=self._sequences.next_value(SequenceService.CREDIT_TRANSACTION),
            account_id=account_id,
            transaction_type=transaction_type.value,
            amount=amount,
            balance_after=balance_after,
            description=description,
            related_account_id=related_account_id,
            performed_by_id=performed_by_id,
            batch_id=batch_id,
            created_at=created_at,
        )
        self.session.add(row)
        self.session.flush()
        return TransactionInfo.from_model(row)
