"""
ProvisioningService -- the account lifecycle state machine.

Responsibility:
    create, renew, update, delete and re-parent accounts, and the
    periodic "recompute status from expiry" sweep.  Billable transitions
    go through TransferProtocol; every announced change is queued on
    ``outbox`` for the gateway to hand to the notifier after commit.

Architecture position:
    Kernel > Services.  Flush-only; the gateway owns the transaction.

State machine (per account):
    active <-> inactive <-> suspended, driven by explicit updates, by
    credit expiry (update with credit_expiry_at, renew, sweep).

Invariants enforced:
    - Every transition checks the role hierarchy; violations raise
      ForbiddenError before anything is written.
    - Creating a client charges the creator; creating a master or reseller
      is free; trial accounts are never charged.
    - Account and Balance are inserted in the same transaction as the
      charge that paid for them.
    - Setting credit_expiry_at recomputes status: active iff the expiry
      date is today or later.
    - delete_user payloads are captured before the row disappears.

Failure modes:
    - ForbiddenError, InsufficientCreditError, AccountNotFoundError,
      InvalidInputError (and subclasses).
"""

from datetime import UTC, date, datetime, time, timedelta
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import delete, select
from sqlalchemy.orm import Session

from reseller_config.schema import LedgerSettings
from reseller_kernel.domain.clock import Clock
from reseller_kernel.domain.dtos import (
    AccountInfo,
    AccountProfile,
    AccountUpdate,
    PendingNotification,
)
from reseller_kernel.domain.hierarchy import (
    can_create,
    can_manage_account,
    holds_credit,
    parse_role,
    parse_status,
)
from reseller_kernel.exceptions import (
    AccountNotFoundError,
    DuplicateEmailError,
    ForbiddenError,
    InvalidDateError,
    InvalidInputError,
    InvalidRoleError,
)
from reseller_kernel.logging_config import get_logger
from reseller_kernel.models.account import Account, AccountRole, AccountStatus
from reseller_kernel.models.balance import Balance
from reseller_kernel.models.lifecycle_event import LifecycleEventType
from reseller_kernel.selectors.hierarchy_selector import HierarchySelector
from reseller_kernel.services.base import BaseService
from reseller_kernel.services.ledger_store import LedgerStore
from reseller_kernel.services.transfer_protocol import TransferProtocol

logger = get_logger("services.provisioning")

# Roles allowed to provision trial accounts
_TRIAL_CREATORS = frozenset({AccountRole.OPERATOR, AccountRole.MASTER})

_CONTACT_FIELDS = ("full_name", "email", "phone", "tax_id", "plan_id")


def coerce_expiry(field: str, value: Any) -> datetime | None:
    """
    Accept an aware datetime, a date, or an ISO string.

    Bare dates are anchored at 12:00 UTC so the calendar day survives any
    timezone a consumer renders it in.
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        if value.tzinfo is None:
            raise InvalidDateError(field, value, "datetime must be timezone-aware")
        return value.astimezone(UTC)
    if isinstance(value, date):
        return datetime.combine(value, time(12, 0), tzinfo=UTC)
    if isinstance(value, str):
        text = value.strip()
        try:
            if len(text) == 10:
                return coerce_expiry(field, date.fromisoformat(text))
            return coerce_expiry(field, datetime.fromisoformat(text))
        except ValueError:
            raise InvalidDateError(field, value, "not an ISO date") from None
    raise InvalidDateError(field, value, "expected a date, datetime or ISO string")


def _status_for_expiry(expiry: datetime, today: date) -> AccountStatus:
    return AccountStatus.ACTIVE if expiry.date() >= today else AccountStatus.INACTIVE


class ProvisioningService(BaseService[Account]):
    """Account lifecycle transitions."""

    def __init__(
        self,
        session: Session,
        clock: Clock,
        settings: LedgerSettings | None = None,
        protocol: TransferProtocol | None = None,
        hierarchy: HierarchySelector | None = None,
        store: LedgerStore | None = None,
    ):
        super().__init__(session)
        self._clock = clock
        self._settings = settings or LedgerSettings()
        self._store = store or LedgerStore(session, clock)
        self._hierarchy = hierarchy or HierarchySelector(session)
        self._protocol = protocol or TransferProtocol(
            session, clock, self._store, self._hierarchy
        )
        self.outbox: list[PendingNotification] = []

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _load(self, account_id: UUID) -> Account:
        account = self.session.get(Account, account_id, populate_existing=True)
        if account is None:
            raise AccountNotFoundError(str(account_id))
        return account

    def _require_manager(self, caller: Account, target: Account, operation: str) -> None:
        if not can_manage_account(caller.account_role, caller.id, target.creator_id):
            raise ForbiddenError(
                str(caller.id), str(target.id), operation, "caller did not create target"
            )

    def _queue(
        self,
        event_type: LifecycleEventType,
        payload: dict[str, Any],
        target_id: UUID,
    ) -> None:
        self.outbox.append(
            PendingNotification(
                event_type=event_type.value,
                payload={"eventType": event_type.value, **payload},
                target_account_id=target_id,
            )
        )

    def _queue_status_change(
        self, account: Account, old: str, new: str
    ) -> None:
        self._queue(
            LifecycleEventType.UPDATE_USER_STATUS,
            {"userId": str(account.id), "oldStatus": old, "newStatus": new},
            account.id,
        )

    def _info(self, account: Account) -> AccountInfo:
        balance = (
            self._store.get_balance(account.id)
            if holds_credit(account.account_role)
            else None
        )
        return AccountInfo.from_model(account, balance)

    def _check_email(self, email: str | None, exclude_id: UUID | None = None) -> str | None:
        if email is None:
            return None
        email = email.strip().lower()
        if not email or "@" not in email:
            raise InvalidInputError("email", email, "not an email address")
        if self._hierarchy.email_in_use(email, exclude_id):
            raise DuplicateEmailError(email)
        return email

    # ------------------------------------------------------------------
    # Bootstrap
    # ------------------------------------------------------------------

    def bootstrap_operator(self, profile: AccountProfile) -> AccountInfo:
        """Insert a self-registered operator (no creator, no balance)."""
        if not profile.full_name or not profile.full_name.strip():
            raise InvalidInputError("full_name", profile.full_name, "required")
        account_id = uuid4()
        now = self._clock.now()
        account = Account(
            id=account_id,
            role=AccountRole.OPERATOR.value,
            creator_id=None,
            status=AccountStatus.ACTIVE.value,
            full_name=profile.full_name.strip(),
            email=self._check_email(profile.email),
            phone=profile.phone,
            tax_id=profile.tax_id,
            plan_id=profile.plan_id,
            is_trial=False,
            created_at=now,
            updated_at=now,
            created_by_id=account_id,
        )
        self.session.add(account)
        self.session.flush()
        logger.info("operator_bootstrapped", extra={"account_id": str(account_id)})
        return AccountInfo.from_model(account)

    # ------------------------------------------------------------------
    # create
    # ------------------------------------------------------------------

    def create_account(
        self,
        caller_id: UUID,
        role: AccountRole | str,
        profile: AccountProfile,
        is_trial: bool = False,
        credit_expiry_date: date | datetime | str | None = None,
    ) -> AccountInfo:
        """
        Provision a new account under the caller.

        Args:
            caller_id: Creator; becomes creator_id of the new account.
            role: Role of the new account.
            profile: Contact details.
            is_trial: Trial accounts are free and expire on their
                creation date unless ``credit_expiry_date`` is given.
            credit_expiry_date: Explicit expiry for trial accounts.
        """
        caller = self._load(caller_id)
        target_role = parse_role(role)
        caller_role = caller.account_role

        if not can_create(caller_role, target_role):
            raise ForbiddenError(
                str(caller_id),
                None,
                "create_account",
                f"{caller_role.value} may not create {target_role.value}",
            )
        if is_trial and caller_role not in _TRIAL_CREATORS:
            raise ForbiddenError(
                str(caller_id), None, "create_account",
                "only operators and masters may create trial accounts",
            )
        if not profile.full_name or not profile.full_name.strip():
            raise InvalidInputError("full_name", profile.full_name, "required")
        email = self._check_email(profile.email)

        now = self._clock.now()
        if is_trial:
            expiry = coerce_expiry("credit_expiry_date", credit_expiry_date) or (
                self._clock.noon_utc()
            )
        else:
            expiry = now + timedelta(days=self._settings.credit_term_days)
        status = (
            AccountStatus.ACTIVE
            if not is_trial
            else _status_for_expiry(expiry, self._clock.today())
        )

        account_id = uuid4()
        name = profile.full_name.strip()

        if target_role is AccountRole.CLIENT and not is_trial:
            self._protocol.charge_for_provisioning(
                caller_id,
                self._settings.provisioning_cost,
                related_account_id=account_id,
                description=f"Criação do usuário {name}",
                performed_by_id=caller_id,
            )

        account = Account(
            id=account_id,
            role=target_role.value,
            creator_id=caller_id,
            status=status.value,
            credit_expiry_at=expiry,
            plan_id=profile.plan_id,
            is_trial=is_trial,
            full_name=name,
            email=email,
            phone=profile.phone,
            tax_id=profile.tax_id,
            created_at=now,
            updated_at=now,
            created_by_id=caller_id,
        )
        self.session.add(account)
        self.session.flush()
        if holds_credit(target_role):
            self._store.open_balance(account_id)

        self._queue(
            LifecycleEventType.CREATE_USER,
            {
                "userId": str(account_id),
                "email": email,
                "fullName": name,
                "vencimento": expiry.date().isoformat(),
                "role": target_role.value,
                "phone": profile.phone,
                "tax_id": profile.tax_id,
            },
            account_id,
        )
        logger.info(
            "account_created",
            extra={
                "account_id": str(account_id),
                "role": target_role.value,
                "creator_id": str(caller_id),
                "is_trial": is_trial,
                "credit_expiry_at": expiry,
            },
        )
        return self._info(account)

    # ------------------------------------------------------------------
    # renew
    # ------------------------------------------------------------------

    def renew_account(self, caller_id: UUID, target_id: UUID) -> AccountInfo:
        """
        Extend credit validity to now + credit_term_days and reactivate.

        The caller pays renewal_cost (operators are exempt).
        """
        caller = self._load(caller_id)
        target = self._load(target_id)
        if target.is_operator:
            raise ForbiddenError(
                str(caller_id), str(target_id), "renew_account", "operators do not expire"
            )
        self._require_manager(caller, target, "renew_account")

        self._protocol.charge_for_provisioning(
            caller_id,
            self._settings.renewal_cost,
            related_account_id=target_id,
            description=f"Renovação do usuário {target.full_name}",
            performed_by_id=caller_id,
        )

        old_status = target.status
        target.credit_expiry_at = self._clock.now() + timedelta(
            days=self._settings.credit_term_days
        )
        target.status = AccountStatus.ACTIVE.value
        target.updated_by_id = caller_id
        target.updated_at = self._clock.now()
        self.session.flush()

        if old_status != target.status:
            self._queue_status_change(target, old_status, target.status)
        logger.info(
            "account_renewed",
            extra={
                "account_id": str(target_id),
                "credit_expiry_at": target.credit_expiry_at,
                "old_status": old_status,
            },
        )
        return self._info(target)

    # ------------------------------------------------------------------
    # update
    # ------------------------------------------------------------------

    def update_account(
        self,
        caller_id: UUID,
        target_id: UUID,
        fields: AccountUpdate,
    ) -> AccountInfo:
        """Apply a partial update; see AccountUpdate for field semantics."""
        caller = self._load(caller_id)
        target = self._load(target_id)
        self._require_manager(caller, target, "update_account")
        supplied = fields.supplied()
        old_status = target.status

        for name in _CONTACT_FIELDS:
            if name not in supplied:
                continue
            value = supplied[name]
            if name == "full_name":
                if not value or not str(value).strip():
                    raise InvalidInputError("full_name", value, "required")
                value = str(value).strip()
            elif name == "email":
                value = self._check_email(value, exclude_id=target.id)
            setattr(target, name, value)

        if "billing_expiry_at" in supplied:
            target.billing_expiry_at = coerce_expiry(
                "billing_expiry_at", supplied["billing_expiry_at"]
            )

        if "role" in supplied:
            self._change_role(caller, target, supplied["role"])

        if "status" in supplied:
            target.status = parse_status(supplied["status"]).value

        # An explicit expiry wins over an explicit status in the same call.
        if "credit_expiry_at" in supplied:
            expiry = coerce_expiry("credit_expiry_at", supplied["credit_expiry_at"])
            target.credit_expiry_at = expiry
            if expiry is not None:
                target.status = _status_for_expiry(expiry, self._clock.today()).value

        target.updated_by_id = caller_id
        target.updated_at = self._clock.now()
        self.session.flush()

        if old_status != target.status:
            self._queue_status_change(target, old_status, target.status)
        logger.info(
            "account_updated",
            extra={
                "account_id": str(target_id),
                "fields": sorted(supplied),
                "old_status": old_status,
                "new_status": target.status,
            },
        )
        return self._info(target)

    def _change_role(self, caller: Account, target: Account, value: Any) -> None:
        new_role = parse_role(value)
        current = target.account_role
        if new_role is current:
            return
        if AccountRole.OPERATOR in (new_role, current):
            raise InvalidRoleError(
                value, "cannot change an account to or from operator"
            )
        if not can_create(caller.account_role, new_role):
            raise ForbiddenError(
                str(caller.id),
                str(target.id),
                "update_account",
                f"{caller.role} may not assign role {new_role.value}",
            )
        target.role = new_role.value

    # ------------------------------------------------------------------
    # delete
    # ------------------------------------------------------------------

    def delete_account(self, caller_id: UUID, target_id: UUID) -> None:
        """
        Remove the account and its balance.  Credit transactions and
        lifecycle records stay.
        """
        caller = self._load(caller_id)
        target = self._load(target_id)
        if target.is_operator:
            raise ForbiddenError(
                str(caller_id), str(target_id), "delete_account",
                "operator accounts cannot be deleted",
            )
        if caller_id == target_id:
            raise ForbiddenError(
                str(caller_id), str(target_id), "delete_account",
                "accounts cannot delete themselves",
            )
        self._require_manager(caller, target, "delete_account")

        # Captured before the row is gone
        payload = {"userId": str(target_id)}
        role = target.role

        self.session.execute(
            delete(Balance)
            .where(Balance.account_id == target_id)
            .execution_options(synchronize_session="fetch")
        )
        self.session.delete(target)
        self.session.flush()

        self._queue(LifecycleEventType.DELETE_USER, payload, target_id)
        logger.info(
            "account_deleted",
            extra={"account_id": str(target_id), "role": role},
        )

    # ------------------------------------------------------------------
    # reassign creator
    # ------------------------------------------------------------------

    def reassign_creator(
        self,
        caller_id: UUID,
        target_id: UUID,
        new_creator_id: UUID,
    ) -> None:
        """Operator-only re-parenting.  The balance is not touched."""
        caller = self._load(caller_id)
        if not caller.is_operator:
            raise ForbiddenError(
                str(caller_id), str(target_id), "reassign_creator",
                "only operators may reassign creators",
            )
        target = self._load(target_id)
        new_creator = self._load(new_creator_id)
        if new_creator.id == target.id:
            raise InvalidInputError(
                "new_creator_id", str(new_creator_id), "account cannot create itself"
            )
        if not can_create(new_creator.account_role, target.account_role):
            raise ForbiddenError(
                str(caller_id),
                str(target_id),
                "reassign_creator",
                f"{new_creator.role} may not own {target.role}",
            )

        old_creator_id = target.creator_id
        target.creator_id = new_creator.id
        target.updated_by_id = caller_id
        target.updated_at = self._clock.now()
        self.session.flush()
        logger.info(
            "creator_reassigned",
            extra={
                "account_id": str(target_id),
                "old_creator_id": str(old_creator_id) if old_creator_id else None,
                "new_creator_id": str(new_creator_id),
            },
        )

    # ------------------------------------------------------------------
    # expiry sweep
    # ------------------------------------------------------------------

    def recompute_expired(self, as_of: date | None = None) -> list[UUID]:
        """
        Mark active accounts whose credit expiry date has passed as
        inactive.  Returns the ids changed.
        """
        today = as_of or self._clock.today()
        cutoff = datetime.combine(today, time.min, tzinfo=UTC)
        expired = self.session.execute(
            select(Account)
            .where(
                Account.status == AccountStatus.ACTIVE.value,
                Account.role != AccountRole.OPERATOR.value,
                Account.credit_expiry_at.is_not(None),
                Account.credit_expiry_at < cutoff,
            )
            .order_by(Account.id)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalars().all()

        now = self._clock.now()
        changed: list[UUID] = []
        for account in expired:
            old = account.status
            account.status = AccountStatus.INACTIVE.value
            account.updated_at = now
            self._queue_status_change(account, old, account.status)
            changed.append(account.id)
        self.session.flush()

        logger.info(
            "expiry_sweep_completed",
            extra={"as_of": today.isoformat(), "deactivated": len(changed)},
        )
        return changed
