"""
Account lifecycle through the gateway: create, renew, update, delete,
reassign and the expiry sweep.
"""

from datetime import UTC, date, datetime, timedelta
from uuid import uuid4

import pytest
from sqlalchemy import select

from reseller_kernel.db.engine import session_scope
from reseller_kernel.domain.dtos import AccountProfile, AccountUpdate
from reseller_kernel.exceptions import (
    AccountNotFoundError,
    DuplicateEmailError,
    ForbiddenError,
    InsufficientCreditError,
    InvalidDateError,
    InvalidInputError,
    InvalidRoleError,
    UnauthorizedError,
)
from reseller_kernel.models.account import AccountRole, AccountStatus
from reseller_kernel.models.balance import Balance
from reseller_kernel.models.credit_transaction import CreditTransaction, TransactionType
from reseller_kernel.models.lifecycle_event import LifecycleEventType

START = datetime(2024, 1, 1, 12, 0, tzinfo=UTC)


def _events_for(http, account_id, event_type=None):
    return [
        c["body"]
        for c in http.calls
        if c["body"].get("userId") == str(account_id)
        and (event_type is None or c["body"]["eventType"] == event_type)
    ]


class TestCreateAccount:
    def test_reseller_pays_for_client(self, gateway, seed, new_profile, http, operator):
        master = seed(AccountRole.MASTER, balance=5)
        reseller = seed(AccountRole.RESELLER, creator=master, balance=2)

        client = gateway.create_account(reseller.id, AccountRole.CLIENT, new_profile())

        assert client.role is AccountRole.CLIENT
        assert client.creator_id == reseller.id
        assert client.status is AccountStatus.ACTIVE
        assert client.credit_expiry_at == START + timedelta(days=30)
        assert client.balance == 0
        assert gateway.get_balance(reseller.id, reseller.id).balance == 1

        [spent] = gateway.transaction_history(reseller.id, reseller.id, limit=1)
        assert spent.transaction_type == TransactionType.CREDIT_SPENT.value
        assert spent.related_account_id == client.id

        [event] = _events_for(http, client.id, "create_user")
        assert event["vencimento"] == "2024-01-31"
        assert event["role"] == "client"
        assert event["email"] == client.email

    @pytest.mark.parametrize("role", [AccountRole.MASTER, AccountRole.RESELLER])
    def test_creating_credit_holders_is_free(self, gateway, seed, new_profile, role):
        master = seed(AccountRole.MASTER, balance=3)
        created = gateway.create_account(master.id, role, new_profile())
        assert created.balance == 0
        assert created.unlimited is False
        assert gateway.get_balance(master.id, master.id).balance == 3

    def test_operator_creates_operator_without_balance(self, gateway, operator, new_profile):
        other = gateway.create_account(operator.id, "admin", new_profile())
        assert other.role is AccountRole.OPERATOR
        snap = gateway.get_balance(operator.id, other.id)
        assert snap.is_operator and snap.unlimited

    @pytest.mark.parametrize(
        "creator_role, target_role",
        [
            (AccountRole.MASTER, AccountRole.OPERATOR),
            (AccountRole.RESELLER, AccountRole.RESELLER),
            (AccountRole.RESELLER, AccountRole.MASTER),
            (AccountRole.CLIENT, AccountRole.CLIENT),
        ],
    )
    def test_hierarchy_violations(self, gateway, seed, new_profile, creator_role, target_role):
        if creator_role is AccountRole.CLIENT:
            master = seed(AccountRole.MASTER, balance=1)
            caller = gateway.create_account(master.id, AccountRole.CLIENT, new_profile())
        else:
            caller = seed(creator_role, balance=1)
        with pytest.raises(ForbiddenError) as exc:
            gateway.create_account(caller.id, target_role, new_profile())
        assert isinstance(exc.value, UnauthorizedError)
        assert exc.value.code == "FORBIDDEN"

    def test_duplicate_email_charges_nothing(self, gateway, seed, new_profile):
        master = seed(AccountRole.MASTER, balance=2)
        first = gateway.create_account(master.id, AccountRole.CLIENT, new_profile())
        dup = AccountProfile(full_name="Dup", email=first.email.upper())
        with pytest.raises(DuplicateEmailError):
            gateway.create_account(master.id, AccountRole.CLIENT, dup)
        assert gateway.get_balance(master.id, master.id).balance == 1

    def test_blank_name_rejected(self, gateway, operator):
        with pytest.raises(InvalidInputError):
            gateway.create_account(operator.id, AccountRole.MASTER, AccountProfile(full_name="  "))

    def test_unknown_caller(self, gateway, new_profile):
        with pytest.raises(AccountNotFoundError):
            gateway.create_account(uuid4(), AccountRole.CLIENT, new_profile())


class TestTrialAccounts:
    def test_master_trial_is_free_and_expires_today(self, gateway, seed, new_profile, http):
        master = seed(AccountRole.MASTER, balance=1)
        trial = gateway.create_account(
            master.id, AccountRole.CLIENT, new_profile(), is_trial=True
        )
        assert trial.is_trial
        assert trial.credit_expiry_at == datetime(2024, 1, 1, 12, 0, tzinfo=UTC)
        assert trial.status is AccountStatus.ACTIVE
        assert gateway.get_balance(master.id, master.id).balance == 1
        [event] = _events_for(http, trial.id, "create_user")
        assert event["vencimento"] == "2024-01-01"

    def test_explicit_trial_date(self, gateway, operator, new_profile):
        trial = gateway.create_account(
            operator.id,
            AccountRole.CLIENT,
            new_profile(),
            is_trial=True,
            credit_expiry_date="2024-01-05",
        )
        assert trial.credit_expiry_at == datetime(2024, 1, 5, 12, 0, tzinfo=UTC)

    def test_reseller_cannot_create_trials(self, gateway, seed, new_profile):
        master = seed(AccountRole.MASTER, balance=1)
        reseller = seed(AccountRole.RESELLER, creator=master, balance=1)
        with pytest.raises(ForbiddenError):
            gateway.create_account(
                reseller.id, AccountRole.CLIENT, new_profile(), is_trial=True
            )

    def test_bad_trial_date(self, gateway, operator, new_profile):
        with pytest.raises(InvalidDateError):
            gateway.create_account(
                operator.id,
                AccountRole.CLIENT,
                new_profile(),
                is_trial=True,
                credit_expiry_date="next tuesday",
            )


class TestRenewAccount:
    def test_renew_charges_and_extends(self, gateway, seed, new_profile, clock):
        master = seed(AccountRole.MASTER, balance=3)
        client = gateway.create_account(master.id, AccountRole.CLIENT, new_profile())
        clock.advance_days(10)

        renewed = gateway.renew_account(master.id, client.id)

        assert renewed.credit_expiry_at == clock.now() + timedelta(days=30)
        assert renewed.status is AccountStatus.ACTIVE
        assert gateway.get_balance(master.id, master.id).balance == 1

    def test_renew_reactivates_and_announces(self, gateway, seed, new_profile, clock, http):
        master = seed(AccountRole.MASTER, balance=3)
        client = gateway.create_account(master.id, AccountRole.CLIENT, new_profile())
        clock.advance_days(40)
        gateway.sweep_expired()

        renewed = gateway.renew_account(master.id, client.id)

        assert renewed.status is AccountStatus.ACTIVE
        statuses = _events_for(http, client.id, "update_user_status")
        assert [e["newStatus"] for e in statuses] == ["inactive", "active"]

    def test_renew_without_credit(self, gateway, seed, new_profile):
        master = seed(AccountRole.MASTER, balance=1)
        client = gateway.create_account(master.id, AccountRole.CLIENT, new_profile())
        with pytest.raises(InsufficientCreditError):
            gateway.renew_account(master.id, client.id)
        assert gateway.get_account(master.id, client.id).credit_expiry_at == START + timedelta(days=30)

    def test_operator_renews_for_free(self, gateway, operator, seed):
        master = seed(AccountRole.MASTER, balance=2)
        gateway.renew_account(operator.id, master.id)
        history = gateway.transaction_history(operator.id, master.id)
        assert [t.transaction_type for t in history] == ["credit_added"]
        assert gateway.get_balance(operator.id, master.id).balance == 2

    def test_non_creator_forbidden(self, gateway, seed, new_profile):
        master = seed(AccountRole.MASTER, balance=2)
        other = seed(AccountRole.MASTER, balance=2)
        client = gateway.create_account(master.id, AccountRole.CLIENT, new_profile())
        with pytest.raises(ForbiddenError):
            gateway.renew_account(other.id, client.id)


class TestUpdateAccount:
    def test_contact_fields(self, gateway, operator, seed):
        master = seed(AccountRole.MASTER)
        updated = gateway.update_account(
            operator.id,
            master.id,
            AccountUpdate(full_name="Renamed", phone=None, plan_id="gold"),
        )
        assert updated.full_name == "Renamed"
        assert updated.phone is None
        assert updated.plan_id == "gold"

    def test_unset_fields_untouched(self, gateway, operator, seed):
        master = seed(AccountRole.MASTER)
        updated = gateway.update_account(operator.id, master.id, AccountUpdate(plan_id="x"))
        assert updated.email == master.email
        assert updated.tax_id == master.tax_id

    def test_past_expiry_deactivates(self, gateway, operator, seed, http):
        master = seed(AccountRole.MASTER)
        updated = gateway.update_account(
            operator.id, master.id, AccountUpdate(credit_expiry_at=date(2023, 12, 31))
        )
        assert updated.status is AccountStatus.INACTIVE
        [event] = _events_for(http, master.id, "update_user_status")
        assert event == {
            "eventType": "update_user_status",
            "userId": str(master.id),
            "oldStatus": "active",
            "newStatus": "inactive",
        }

    def test_expiry_today_stays_active(self, gateway, operator, seed):
        master = seed(AccountRole.MASTER)
        updated = gateway.update_account(
            operator.id, master.id, AccountUpdate(credit_expiry_at="2024-01-01")
        )
        assert updated.status is AccountStatus.ACTIVE

    def test_expiry_overrides_explicit_status(self, gateway, operator, seed):
        master = seed(AccountRole.MASTER)
        updated = gateway.update_account(
            operator.id,
            master.id,
            AccountUpdate(status="suspended", credit_expiry_at=START + timedelta(days=3)),
        )
        assert updated.status is AccountStatus.ACTIVE

    def test_explicit_status(self, gateway, operator, seed):
        master = seed(AccountRole.MASTER)
        updated = gateway.update_account(
            operator.id, master.id, AccountUpdate(status="suspended")
        )
        assert updated.status is AccountStatus.SUSPENDED

    def test_role_change(self, gateway, operator, seed):
        reseller = seed(AccountRole.RESELLER)
        updated = gateway.update_account(
            operator.id, reseller.id, AccountUpdate(role="master")
        )
        assert updated.role is AccountRole.MASTER

    def test_master_cannot_promote_to_operator(self, gateway, seed):
        master = seed(AccountRole.MASTER)
        child = seed(AccountRole.MASTER, creator=master)
        with pytest.raises(InvalidRoleError):
            gateway.update_account(master.id, child.id, AccountUpdate(role="admin"))

    def test_reseller_cannot_assign_master(self, gateway, seed, new_profile):
        master = seed(AccountRole.MASTER, balance=2)
        reseller = seed(AccountRole.RESELLER, creator=master, balance=2)
        client = gateway.create_account(reseller.id, AccountRole.CLIENT, new_profile())
        with pytest.raises(ForbiddenError):
            gateway.update_account(reseller.id, client.id, AccountUpdate(role="master"))

    def test_email_uniqueness(self, gateway, operator, seed):
        a = seed(AccountRole.MASTER)
        b = seed(AccountRole.MASTER)
        with pytest.raises(DuplicateEmailError):
            gateway.update_account(operator.id, b.id, AccountUpdate(email=a.email))

    def test_non_creator_forbidden(self, gateway, seed):
        master = seed(AccountRole.MASTER)
        other = seed(AccountRole.MASTER)
        with pytest.raises(ForbiddenError):
            gateway.update_account(other.id, master.id, AccountUpdate(full_name="x"))

    def test_naive_datetime_rejected(self, gateway, operator, seed):
        master = seed(AccountRole.MASTER)
        with pytest.raises(InvalidDateError):
            gateway.update_account(
                operator.id,
                master.id,
                AccountUpdate(credit_expiry_at=datetime(2024, 2, 1, 12, 0)),
            )


class TestDeleteAccount:
    def test_delete_removes_account_keeps_history(
        self, gateway, operator, seed, http, session_factory
    ):
        master = seed(AccountRole.MASTER, balance=4)

        gateway.delete_account(operator.id, master.id)

        with pytest.raises(AccountNotFoundError):
            gateway.get_account(operator.id, master.id)
        with session_scope(session_factory) as session:
            kept = session.execute(
                select(CreditTransaction).where(CreditTransaction.account_id == master.id)
            ).scalars().all()
            assert [t.amount for t in kept] == [4]
            assert session.execute(
                select(Balance).where(Balance.account_id == master.id)
            ).first() is None
        events = gateway.lifecycle_history(
            operator.id, target_account_id=master.id, event_type="delete_user"
        )
        assert len(events) == 1
        assert events[0].payload == {"eventType": "delete_user", "userId": str(master.id)}
        assert _events_for(http, master.id, "delete_user")

    def test_cannot_delete_operator(self, gateway, operator, new_profile):
        other = gateway.create_account(operator.id, AccountRole.OPERATOR, new_profile())
        with pytest.raises(ForbiddenError):
            gateway.delete_account(operator.id, other.id)

    def test_cannot_delete_self(self, gateway, seed):
        master = seed(AccountRole.MASTER)
        with pytest.raises(ForbiddenError):
            gateway.delete_account(master.id, master.id)

    def test_non_creator_forbidden(self, gateway, seed):
        master = seed(AccountRole.MASTER)
        other = seed(AccountRole.MASTER)
        with pytest.raises(ForbiddenError):
            gateway.delete_account(other.id, master.id)
        assert gateway.get_account(master.id, master.id).id == master.id


class TestReassignCreator:
    def test_operator_moves_reseller(self, gateway, operator, seed):
        old_master = seed(AccountRole.MASTER)
        new_master = seed(AccountRole.MASTER)
        reseller = seed(AccountRole.RESELLER, creator=old_master)

        moved = gateway.reassign_creator(operator.id, reseller.id, new_master.id)

        assert moved.creator_id == new_master.id
        gateway.transfer_credit(operator.id, new_master.id, 1)
        gateway.transfer_credit(new_master.id, reseller.id, 1)
        with pytest.raises(UnauthorizedError):
            gateway.transfer_credit(old_master.id, reseller.id, -1)

    def test_only_operator(self, gateway, seed):
        master = seed(AccountRole.MASTER)
        reseller = seed(AccountRole.RESELLER, creator=master)
        with pytest.raises(ForbiddenError):
            gateway.reassign_creator(master.id, reseller.id, master.id)

    def test_new_creator_must_outrank(self, gateway, operator, seed):
        master = seed(AccountRole.MASTER)
        reseller = seed(AccountRole.RESELLER)
        with pytest.raises(ForbiddenError):
            gateway.reassign_creator(operator.id, master.id, reseller.id)

    def test_cannot_parent_itself(self, gateway, operator, seed):
        master = seed(AccountRole.MASTER)
        with pytest.raises(InvalidInputError):
            gateway.reassign_creator(operator.id, master.id, master.id)


class TestExpirySweep:
    def test_sweep_deactivates_expired(self, gateway, operator, seed, new_profile, clock, http):
        master = seed(AccountRole.MASTER, balance=2)
        client = gateway.create_account(master.id, AccountRole.CLIENT, new_profile())
        clock.advance_days(30)
        assert gateway.sweep_expired() == []

        clock.advance_days(1)
        changed = gateway.sweep_expired()

        assert set(changed) == {master.id, client.id}
        assert gateway.get_account(master.id, client.id).status is AccountStatus.INACTIVE
        assert gateway.get_account(operator.id, operator.id).status is AccountStatus.ACTIVE
        assert len(_events_for(http, client.id, LifecycleEventType.UPDATE_USER_STATUS.value)) == 1

    def test_sweep_is_repeatable(self, gateway, seed, clock):
        seed(AccountRole.MASTER)
        clock.advance_days(45)
        assert len(gateway.sweep_expired()) == 1
        assert gateway.sweep_expired() == []

    def test_sweep_as_of(self, gateway, seed):
        master = seed(AccountRole.MASTER)
        assert gateway.sweep_expired(as_of=date(2024, 2, 1)) == [master.id]
