"""
ResellerGateway -- the inbound surface.

Responsibility:
    One method per inbound operation (createAccount, renewAccount,
    transferCredit, setUnlimited, updateAccount, deleteAccount,
    reassignCreator) plus the read-side queries.  Each write runs as one
    unit of work: open a session, run the services, commit, then hand the
    queued lifecycle notifications to the notifier.

Architecture position:
    Kernel > Services -- imperative shell.  The only code that commits or
    rolls back.  Transport adapters (HTTP handlers, CLIs, jobs) call this
    class and translate ResellerKernelError.code into their own responses.

Invariants enforced:
    - All mutations of one operation commit together or not at all.
    - Notifications are sent only after commit, so a rolled-back
      operation never announces itself.
    - A lost compare-and-set (ConcurrencyError) replays the whole unit of
      work, up to LedgerSettings.max_concurrency_retries times.

Failure modes:
    - Every domain error propagates unchanged after rollback.
    - NotificationFailure never reaches callers.
"""

import time
from collections.abc import Callable
from dataclasses import dataclass, replace
from datetime import date
from typing import TypeVar
from uuid import UUID, uuid4

from sqlalchemy.orm import Session, sessionmaker

from reseller_config.schema import LedgerSettings
from reseller_kernel.domain.clock import Clock, SystemClock
from reseller_kernel.domain.dtos import (
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
from reseller_kernel.domain.hierarchy import can_manage_account, parse_role
from reseller_kernel.exceptions import ConcurrencyError, UnauthorizedError
from reseller_kernel.logging_config import LogContext, get_logger
from reseller_kernel.models.account import AccountRole
from reseller_kernel.selectors.hierarchy_selector import HierarchySelector
from reseller_kernel.selectors.ledger_selector import LedgerSelector
from reseller_kernel.services.ledger_store import LedgerStore
from reseller_kernel.services.lifecycle_notifier import LifecycleNotifier
from reseller_kernel.services.provisioning_service import ProvisioningService
from reseller_kernel.services.transfer_protocol import TransferProtocol

logger = get_logger("services.gateway")

T = TypeVar("T")


@dataclass
class _Unit:
    """Services wired to one session."""

    session: Session
    hierarchy: HierarchySelector
    ledger: LedgerSelector
    store: LedgerStore
    protocol: TransferProtocol
    provisioning: ProvisioningService


class ResellerGateway:
    """
    Transactional entrypoint for every reseller operation.

    Args:
        session_factory: Factory for per-operation sessions.
        notifier: Receives queued lifecycle events after commit.
        clock: Time source (DeterministicClock in tests).
        settings: Costs, credit term and retry budget.
    """

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        notifier: LifecycleNotifier,
        clock: Clock | None = None,
        settings: LedgerSettings | None = None,
    ):
        self._session_factory = session_factory
        self._notifier = notifier
        self._clock = clock or SystemClock()
        self._settings = settings or LedgerSettings()

    @property
    def notifier(self) -> LifecycleNotifier:
        return self._notifier

    # ------------------------------------------------------------------
    # Unit of work
    # ------------------------------------------------------------------

    def _unit(self, session: Session) -> _Unit:
        hierarchy = HierarchySelector(session)
        store = LedgerStore(session, self._clock)
        protocol = TransferProtocol(session, self._clock, store, hierarchy)
        provisioning = ProvisioningService(
            session, self._clock, self._settings, protocol, hierarchy, store
        )
        return _Unit(
            session=session,
            hierarchy=hierarchy,
            ledger=LedgerSelector(session),
            store=store,
            protocol=protocol,
            provisioning=provisioning,
        )

    def _execute(
        self,
        operation: str,
        actor_id: UUID | None,
        target_id: UUID | None,
        work: Callable[[_Unit], T],
    ) -> T:
        with LogContext.bind(
            correlation_id=str(uuid4()),
            actor_id=str(actor_id) if actor_id else None,
            target_id=str(target_id) if target_id else None,
            operation=operation,
        ):
            logger.info(f"{operation}_started")
            t0 = time.monotonic()
            attempt = 0
            while True:
                attempt += 1
                try:
                    result, outbox = self._attempt(work)
                except ConcurrencyError as exc:
                    if attempt <= self._settings.max_concurrency_retries:
                        logger.warning(
                            "unit_of_work_retry",
                            extra={"attempt": attempt, "error_code": exc.code},
                        )
                        continue
                    self._log_failure(operation, t0, exc)
                    raise
                except Exception as exc:
                    self._log_failure(operation, t0, exc)
                    raise
                break

            duration_ms = round((time.monotonic() - t0) * 1000, 2)
            logger.info(
                f"{operation}_completed",
                extra={
                    "duration_ms": duration_ms,
                    "attempts": attempt,
                    "notifications": len(outbox),
                },
            )
            self._notifier.notify_all(outbox)
            return result

    def _attempt(self, work: Callable[[_Unit], T]) -> tuple[T, list[PendingNotification]]:
        session = self._session_factory()
        try:
            unit = self._unit(session)
            result = work(unit)
            session.commit()
            return result, list(unit.provisioning.outbox)
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    @staticmethod
    def _log_failure(operation: str, t0: float, exc: Exception) -> None:
        duration_ms = round((time.monotonic() - t0) * 1000, 2)
        code = getattr(exc, "code", None)
        if code is not None:
            # Domain rejections are expected outcomes, not crashes.
            logger.warning(
                f"{operation}_failed",
                extra={"duration_ms": duration_ms, "error_code": code},
            )
        else:
            logger.error(
                f"{operation}_failed",
                extra={"duration_ms": duration_ms},
                exc_info=True,
            )

    def _read(self, work: Callable[[_Unit], T]) -> T:
        session = self._session_factory()
        try:
            return work(self._unit(session))
        finally:
            session.rollback()
            session.close()

    # ------------------------------------------------------------------
    # Inbound operations
    # ------------------------------------------------------------------

    def bootstrap_operator(self, profile: AccountProfile) -> AccountInfo:
        """Create the first operator account.  Not reachable by callers."""
        return self._execute(
            "bootstrap_operator",
            None,
            None,
            lambda u: u.provisioning.bootstrap_operator(profile),
        )

    def create_account(
        self,
        caller_id: UUID,
        role: AccountRole | str,
        profile: AccountProfile,
        is_trial: bool = False,
        credit_expiry_date: date | str | None = None,
    ) -> AccountInfo:
        return self._execute(
            "create_account",
            caller_id,
            None,
            lambda u: u.provisioning.create_account(
                caller_id, role, profile, is_trial, credit_expiry_date
            ),
        )

    def renew_account(self, caller_id: UUID, target_id: UUID) -> AccountInfo:
        return self._execute(
            "renew_account",
            caller_id,
            target_id,
            lambda u: u.provisioning.renew_account(caller_id, target_id),
        )

    def transfer_credit(
        self, caller_id: UUID, target_id: UUID, amount: int
    ) -> TransferResult:
        """Grant (amount > 0) or reclaim (amount < 0) credit."""
        return self._execute(
            "transfer_credit",
            caller_id,
            target_id,
            lambda u: u.protocol.transfer(caller_id, target_id, amount),
        )

    def set_unlimited(
        self, caller_id: UUID, target_id: UUID, value: bool
    ) -> AccountInfo:
        def work(u: _Unit) -> AccountInfo:
            u.protocol.set_unlimited(caller_id, target_id, value)
            account = u.hierarchy.get_account(target_id)
            balance = u.ledger.balance(target_id)
            return _with_balance(account, balance)

        return self._execute("set_unlimited", caller_id, target_id, work)

    def update_account(
        self,
        caller_id: UUID,
        target_id: UUID,
        fields: AccountUpdate,
    ) -> AccountInfo:
        return self._execute(
            "update_account",
            caller_id,
            target_id,
            lambda u: u.provisioning.update_account(caller_id, target_id, fields),
        )

    def delete_account(self, caller_id: UUID, target_id: UUID) -> None:
        self._execute(
            "delete_account",
            caller_id,
            target_id,
            lambda u: u.provisioning.delete_account(caller_id, target_id),
        )

    def reassign_creator(
        self,
        caller_id: UUID,
        target_id: UUID,
        new_creator_id: UUID,
    ) -> AccountInfo:
        def work(u: _Unit) -> AccountInfo:
            u.provisioning.reassign_creator(caller_id, target_id, new_creator_id)
            return u.hierarchy.get_account(target_id)

        return self._execute("reassign_creator", caller_id, target_id, work)

    def sweep_expired(self, as_of: date | None = None) -> list[UUID]:
        """Deactivate accounts whose credit has expired.  Scheduled job hook."""
        return self._execute(
            "sweep_expired",
            None,
            None,
            lambda u: u.provisioning.recompute_expired(as_of),
        )

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def _require_visible(self, u: _Unit, caller_id: UUID, account_id: UUID) -> None:
        caller_role = u.hierarchy.resolve_role(caller_id)
        if caller_id == account_id:
            return
        creator_id = u.hierarchy.resolve_creator(account_id)
        if not can_manage_account(caller_role, caller_id, creator_id):
            raise UnauthorizedError(
                str(caller_id), str(account_id), "account not visible to caller"
            )

    def _require_operator(self, u: _Unit, caller_id: UUID) -> None:
        if u.hierarchy.resolve_role(caller_id) is not AccountRole.OPERATOR:
            raise UnauthorizedError(str(caller_id), None, "operator only")

    def get_balance(self, caller_id: UUID, account_id: UUID) -> BalanceSnapshot:
        def work(u: _Unit) -> BalanceSnapshot:
            self._require_visible(u, caller_id, account_id)
            return u.ledger.balance(account_id)

        return self._read(work)

    def get_account(self, caller_id: UUID, account_id: UUID) -> AccountInfo:
        def work(u: _Unit) -> AccountInfo:
            self._require_visible(u, caller_id, account_id)
            account = u.hierarchy.get_account(account_id)
            return _with_balance(account, u.ledger.balance(account_id))

        return self._read(work)

    def list_accounts(
        self,
        caller_id: UUID,
        role: AccountRole | str | None = None,
    ) -> list[AccountInfo]:
        """Operators see every account; everyone else sees what they created."""

        def work(u: _Unit) -> list[AccountInfo]:
            caller_role = u.hierarchy.resolve_role(caller_id)
            role_filter = parse_role(role) if role is not None else None
            creator = None if caller_role is AccountRole.OPERATOR else caller_id
            accounts = u.hierarchy.list_accounts(creator_id=creator, role=role_filter)
            balances = u.ledger.balances(a.id for a in accounts)
            return [_with_balance(a, balances.get(a.id)) for a in accounts]

        return self._read(work)

    def transaction_history(
        self,
        caller_id: UUID,
        account_id: UUID,
        limit: int | None = None,
    ) -> list[TransactionInfo]:
        def work(u: _Unit) -> list[TransactionInfo]:
            self._require_visible(u, caller_id, account_id)
            return u.ledger.transactions(account_id, limit=limit)

        return self._read(work)

    def lifecycle_history(
        self,
        caller_id: UUID,
        target_account_id: UUID | None = None,
        event_type: str | None = None,
        limit: int | None = None,
    ) -> list[LifecycleEventInfo]:
        def work(u: _Unit) -> list[LifecycleEventInfo]:
            self._require_operator(u, caller_id)
            return u.ledger.lifecycle_events(target_account_id, event_type, limit)

        return self._read(work)

    def reconcile(self, caller_id: UUID, account_id: UUID) -> ReconciliationResult:
        """Replay the account's transaction trail; same visibility as get_balance."""

        def work(u: _Unit) -> ReconciliationResult:
            self._require_visible(u, caller_id, account_id)
            return u.ledger.reconcile(account_id)

        return self._read(work)


def _with_balance(
    account: AccountInfo, balance: BalanceSnapshot | None
) -> AccountInfo:
    if balance is None or balance.is_operator:
        return account
    return replace(account, balance=balance.balance, unlimited=balance.unlimited)
