"""
TransferProtocol -- the only code path that moves credit.

Responsibility:
    Charges one party for a billable operation, moves credit between two
    parties under the hierarchy and sufficiency rules, and toggles the
    unlimited flag.  Writes exactly one CreditTransaction per balance it
    touches.

Architecture position:
    Kernel > Services.  Flush-only; the gateway owns the transaction, so
    both legs of a transfer commit or roll back together.

Invariants enforced:
    - A limited balance never goes below zero.
    - Credit moves only to or from accounts the initiator directly
      created, unless the initiator is an operator.
    - Operators are never debited or credited and get no transaction row.
    - Unlimited payers are not debited (like operators, they are exempt
      from the sufficiency check); an unlimited receiver is still credited.
    - Both legs of one call share batch_id and created_at and name each
      other in related_account_id; their amounts sum to zero.

Algorithm:
    lock both balance rows (ascending id) -> validate from that snapshot
    -> compare-and-set each balance -> append one row per touched balance.
    Any failure raises before commit and the gateway rolls back.

Failure modes:
    - InvalidAmountError: zero, non-integer, or self-directed amount.
    - UnauthorizedError: hierarchy rule violated, or target holds no credit.
    - InsufficientCreditError: paying side lacks funds.
    - AccountNotFoundError: unknown initiator or target.
    - OptimisticLockError: lost compare-and-set (retried by the gateway).
"""

from dataclasses import dataclass
from datetime import datetime
from uuid import UUID, uuid4

from sqlalchemy.orm import Session

from reseller_kernel.domain.clock import Clock
from reseller_kernel.domain.dtos import BalanceSnapshot, TransactionInfo, TransferResult
from reseller_kernel.domain.hierarchy import can_manage_credits, is_credit_holding_target
from reseller_kernel.exceptions import (
    AccountNotFoundError,
    InsufficientCreditError,
    InvalidAmountError,
    UnauthorizedError,
)
from reseller_kernel.logging_config import get_logger
from reseller_kernel.models.account import AccountRole
from reseller_kernel.models.balance import Balance
from reseller_kernel.models.credit_transaction import TransactionType
from reseller_kernel.selectors.hierarchy_selector import HierarchySelector
from reseller_kernel.services.base import BaseService
from reseller_kernel.services.ledger_store import LedgerStore

logger = get_logger("services.transfer_protocol")


@dataclass(frozen=True)
class _Leg:
    account_id: UUID
    before: BalanceSnapshot
    delta: int
    transaction_type: TransactionType
    counterparty_id: UUID
    counterparty_role: AccountRole


def _validate_amount(amount: object) -> int:
    if isinstance(amount, bool) or not isinstance(amount, int):
        raise InvalidAmountError(amount, "amount must be an integer")
    if amount == 0:
        raise InvalidAmountError(amount, "amount must be non-zero")
    return amount


class TransferProtocol(BaseService[Balance]):
    """Credit movement under hierarchy and sufficiency rules."""

    def __init__(
        self,
        session: Session,
        clock: Clock,
        store: LedgerStore | None = None,
        hierarchy: HierarchySelector | None = None,
    ):
        super().__init__(session)
        self._clock = clock
        self._store = store or LedgerStore(session, clock)
        self._hierarchy = hierarchy or HierarchySelector(session)

    # ------------------------------------------------------------------
    # Provisioning charge
    # ------------------------------------------------------------------

    def charge_for_provisioning(
        self,
        payer_id: UUID,
        amount: int = 1,
        *,
        related_account_id: UUID | None = None,
        description: str | None = None,
        performed_by_id: UUID | None = None,
    ) -> TransactionInfo | None:
        """
        Debit the payer for a billable operation.

        Returns:
            The credit_spent row, or None when the payer is exempt
            (operator or unlimited) and nothing was written.

        Raises:
            InsufficientCreditError: limited payer with balance < amount.
        """
        amount = _validate_amount(amount)
        if amount < 0:
            raise InvalidAmountError(amount, "charge must be positive")

        snapshot = self._store.get_balance(payer_id)
        if snapshot.is_operator or snapshot.unlimited:
            logger.info(
                "provisioning_charge_exempt",
                extra={
                    "payer_id": str(payer_id),
                    "amount": amount,
                    "operator": snapshot.is_operator,
                },
            )
            return None

        if snapshot.balance < amount:
            raise InsufficientCreditError(str(payer_id), snapshot.balance, amount)

        new_balance = snapshot.balance - amount
        self._store.set_balance(payer_id, new_balance, snapshot.balance)
        row = self._store.append_transaction(
            account_id=payer_id,
            transaction_type=TransactionType.CREDIT_SPENT,
            amount=-amount,
            balance_after=new_balance,
            description=description or f"Cobrança de {amount} crédito(s)",
            performed_by_id=performed_by_id or payer_id,
            batch_id=uuid4(),
            created_at=self._clock.now(),
            related_account_id=related_account_id,
        )
        logger.info(
            "provisioning_charged",
            extra={
                "payer_id": str(payer_id),
                "amount": amount,
                "balance_after": new_balance,
                "related_account_id": str(related_account_id)
                if related_account_id
                else None,
            },
        )
        return row

    # ------------------------------------------------------------------
    # Peer transfer
    # ------------------------------------------------------------------

    def transfer(
        self,
        initiator_id: UUID,
        target_id: UUID,
        amount: int,
        performed_by_id: UUID | None = None,
    ) -> TransferResult:
        """
        Grant (amount > 0) or reclaim (amount < 0) credit.

        Grant: initiator pays, target receives.  Reclaim: target pays,
        initiator receives.
        """
        amount = _validate_amount(amount)
        if initiator_id == target_id:
            raise InvalidAmountError(amount, "cannot transfer to self")

        roles = self._hierarchy.resolve_roles([initiator_id, target_id])
        creators = self._hierarchy.resolve_creators([target_id])
        self._require_exists(roles, initiator_id, target_id)
        initiator_role = roles[initiator_id]
        target_role = roles[target_id]

        if not is_credit_holding_target(target_role):
            raise UnauthorizedError(
                str(initiator_id),
                str(target_id),
                f"{target_role.value} accounts cannot receive transfers",
            )
        if not can_manage_credits(initiator_role, initiator_id, creators[target_id]):
            raise UnauthorizedError(
                str(initiator_id),
                str(target_id),
                "target was not created by the initiator",
            )

        snapshots = self._store.lock_balances([initiator_id, target_id])
        initiator = snapshots[initiator_id]
        target = snapshots[target_id]

        if amount > 0:
            payer, payer_role, payee, payee_role = (
                initiator, initiator_role, target, target_role,
            )
            spend_type = TransactionType.CREDIT_SPENT
        else:
            payer, payer_role, payee, payee_role = (
                target, target_role, initiator, initiator_role,
            )
            spend_type = TransactionType.CREDIT_REMOVED
        magnitude = abs(amount)

        # Reclaim ignores the target's unlimited flag: only real credit
        # can be taken back.
        payer_exempt = payer.is_operator or (amount > 0 and payer.unlimited)
        if not payer_exempt and payer.balance < magnitude:
            raise InsufficientCreditError(
                str(payer.account_id), payer.balance, magnitude
            )

        legs: list[_Leg] = []
        if not payer_exempt:
            legs.append(
                _Leg(payer.account_id, payer, -magnitude, spend_type,
                     payee.account_id, payee_role)
            )
        if not payee.is_operator:
            legs.append(
                _Leg(payee.account_id, payee, magnitude, TransactionType.CREDIT_ADDED,
                     payer.account_id, payer_role)
            )

        batch_id = uuid4()
        now = self._clock.now()
        actor = performed_by_id or initiator_id
        written = tuple(self._apply(leg, batch_id, now, actor) for leg in legs)

        after = {row.account_id: row.balance_after for row in written}
        result = TransferResult(
            batch_id=batch_id,
            initiator=_after(initiator, after),
            target=_after(target, after),
            transactions=written,
        )
        logger.info(
            "transfer_completed",
            extra={
                "initiator_id": str(initiator_id),
                "target_id": str(target_id),
                "amount": amount,
                "batch_id": str(batch_id),
                "legs": len(written),
                "initiator_balance_after": result.initiator.balance,
                "target_balance_after": result.target.balance,
            },
        )
        return result

    def _apply(
        self, leg: _Leg, batch_id: UUID, now: datetime, actor: UUID
    ) -> TransactionInfo:
        new_balance = leg.before.balance + leg.delta
        self._store.set_balance(leg.account_id, new_balance, leg.before.balance)
        return self._store.append_transaction(
            account_id=leg.account_id,
            transaction_type=leg.transaction_type,
            amount=leg.delta,
            balance_after=new_balance,
            description=_describe(leg),
            performed_by_id=actor,
            batch_id=batch_id,
            created_at=now,
            related_account_id=leg.counterparty_id,
        )

    # ------------------------------------------------------------------
    # Unlimited flag
    # ------------------------------------------------------------------

    def set_unlimited(
        self,
        caller_id: UUID,
        target_id: UUID,
        value: bool,
    ) -> TransactionInfo | None:
        """
        Operator-only toggle of the unlimited flag.  Free.

        Returns:
            The zero-amount audit row, or None when the flag already had
            ``value`` (no-op).
        """
        if not isinstance(value, bool):
            raise InvalidAmountError(value, "unlimited flag must be a boolean")
        roles = self._hierarchy.resolve_roles([caller_id, target_id])
        self._require_exists(roles, caller_id, target_id)
        if roles[caller_id] is not AccountRole.OPERATOR:
            raise UnauthorizedError(
                str(caller_id), str(target_id), "only operators may set unlimited"
            )
        if roles[target_id] is AccountRole.OPERATOR:
            raise UnauthorizedError(
                str(caller_id), str(target_id), "operators are always unlimited"
            )

        snapshot = self._store.get_balance(target_id)
        if snapshot.unlimited == value:
            logger.info(
                "unlimited_unchanged",
                extra={"target_id": str(target_id), "unlimited": value},
            )
            return None

        self._store.set_unlimited(target_id, value, snapshot.unlimited)
        row = self._store.append_transaction(
            account_id=target_id,
            transaction_type=(
                TransactionType.UNLIMITED_GRANTED
                if value
                else TransactionType.UNLIMITED_REVOKED
            ),
            amount=0,
            balance_after=snapshot.balance,
            description=(
                "Créditos ilimitados concedidos pelo Admin"
                if value
                else "Créditos ilimitados revogados pelo Admin"
            ),
            performed_by_id=caller_id,
            batch_id=uuid4(),
            created_at=self._clock.now(),
            related_account_id=caller_id,
        )
        logger.info(
            "unlimited_changed",
            extra={"target_id": str(target_id), "unlimited": value},
        )
        return row

    @staticmethod
    def _require_exists(roles: dict, *account_ids: UUID) -> None:
        for account_id in account_ids:
            if account_id not in roles:
                raise AccountNotFoundError(str(account_id))


def _describe(leg: _Leg) -> str:
    label = leg.counterparty_role.label
    if leg.transaction_type is TransactionType.CREDIT_ADDED:
        return f"Recebido de {label} {leg.counterparty_id}"
    if leg.transaction_type is TransactionType.CREDIT_REMOVED:
        return f"Recolhido por {label} {leg.counterparty_id}"
    return f"Transferência para {label} {leg.counterparty_id}"


def _after(snapshot: BalanceSnapshot, after: dict[UUID, int]) -> BalanceSnapshot:
    if snapshot.account_id not in after:
        return snapshot
    return BalanceSnapshot(
        account_id=snapshot.account_id,
        balance=after[snapshot.account_id],
        unlimited=snapshot.unlimited,
        is_operator=snapshot.is_operator,
    )
