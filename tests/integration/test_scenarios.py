"""
End-to-end flows through ResellerGateway.

Each test drives the public surface only, then checks balances, the
transaction trail, account state and the lifecycle event log together.
"""

from datetime import UTC, datetime, timedelta

import pytest
from sqlalchemy import update

from reseller_kernel.db.engine import session_scope
from reseller_kernel.domain.dtos import AccountUpdate
from reseller_kernel.exceptions import (
    InsufficientCreditError,
    InvalidRoleError,
    UnauthorizedError,
)
from reseller_kernel.models.account import AccountRole, AccountStatus
from reseller_kernel.models.balance import Balance
from reseller_kernel.models.lifecycle_event import DeliveryOutcome

START = datetime(2024, 1, 1, 12, 0, tzinfo=UTC)


class TestMasterCreatesClient:
    def test_one_credit_spent(self, gateway, seed, new_profile, operator, http):
        master = seed(AccountRole.MASTER, balance=5)

        client = gateway.create_account(master.id, AccountRole.CLIENT, new_profile("Ana"))

        assert gateway.get_balance(master.id, master.id).balance == 4
        spent = [
            t for t in gateway.transaction_history(master.id, master.id)
            if t.transaction_type == "credit_spent"
        ]
        assert len(spent) == 1
        assert spent[0].amount == -1
        assert spent[0].related_account_id == client.id

        assert client.status is AccountStatus.ACTIVE
        assert client.creator_id == master.id
        assert client.credit_expiry_at == START + timedelta(days=30)
        assert gateway.reconcile(master.id, master.id).is_reconciled

        created = gateway.lifecycle_history(
            operator.id, target_account_id=client.id, event_type="create_user"
        )
        assert len(created) == 1
        assert created[0].outcome == DeliveryOutcome.DELIVERED.value


class TestResellerWithoutCredit:
    def test_nothing_created(self, gateway, seed, new_profile, operator):
        reseller = seed(AccountRole.RESELLER, balance=0)
        before = gateway.list_accounts(operator.id)

        with pytest.raises(InsufficientCreditError):
            gateway.create_account(reseller.id, AccountRole.CLIENT, new_profile())

        assert gateway.list_accounts(operator.id) == before
        assert gateway.list_accounts(reseller.id) == []
        assert gateway.transaction_history(reseller.id, reseller.id) == []
        assert len(gateway.lifecycle_history(operator.id, event_type="create_user")) == 1


class TestOperatorGrant:
    def test_operator_not_deducted(self, gateway, seed, operator):
        m2 = seed(AccountRole.MASTER, balance=0)

        result = gateway.transfer_credit(operator.id, m2.id, 10)

        assert result.target.balance == 10
        assert gateway.get_balance(operator.id, m2.id).balance == 10
        assert gateway.transaction_history(operator.id, operator.id) == []
        [row] = gateway.transaction_history(operator.id, m2.id)
        assert row.transaction_type == "credit_added"
        assert row.amount == 10
        assert row.balance_after == 10


class TestTransferToForeignAccount:
    def test_unauthorized(self, gateway, seed):
        m1 = seed(AccountRole.MASTER, balance=5)
        m2 = seed(AccountRole.MASTER)
        foreign = seed(AccountRole.RESELLER, creator=m2)

        with pytest.raises(UnauthorizedError):
            gateway.transfer_credit(m1.id, foreign.id, 1)

        assert gateway.get_balance(m1.id, m1.id).balance == 5
        assert gateway.get_balance(m2.id, foreign.id).balance == 0


class TestDeleteWithUnreachableEndpoint:
    def test_exactly_one_record(self, gateway, seed, operator, http):
        master = seed(AccountRole.MASTER)
        http.calls.clear()
        http.fail_with_connection_error()

        gateway.delete_account(operator.id, master.id)

        events = gateway.lifecycle_history(
            operator.id, target_account_id=master.id, event_type="delete_user"
        )
        assert len(events) == 1
        assert events[0].outcome == DeliveryOutcome.FAILED.value
        assert events[0].payload == {"eventType": "delete_user", "userId": str(master.id)}
        assert [c["body"]["eventType"] for c in http.calls] == ["delete_user"]


class TestExpiryDrivesStatus:
    def test_past_then_future(self, gateway, seed, operator):
        master = seed(AccountRole.MASTER)

        expired = gateway.update_account(
            operator.id, master.id, AccountUpdate(credit_expiry_at="2023-12-01")
        )
        assert expired.status is AccountStatus.INACTIVE

        revived = gateway.update_account(
            operator.id, master.id, AccountUpdate(credit_expiry_at="2024-03-01")
        )
        assert revived.status is AccountStatus.ACTIVE

        changes = gateway.lifecycle_history(
            operator.id, target_account_id=master.id, event_type="update_user_status"
        )
        assert sorted(e.payload["newStatus"] for e in changes) == ["active", "inactive"]


class TestQueries:
    def test_list_accounts_visibility(self, gateway, seed, operator):
        master = seed(AccountRole.MASTER, balance=3)
        reseller = seed(AccountRole.RESELLER, creator=master)
        seed(AccountRole.MASTER)

        mine = gateway.list_accounts(master.id)
        assert [a.id for a in mine] == [reseller.id]
        assert mine[0].balance == 0

        everything = gateway.list_accounts(operator.id)
        assert {a.id for a in everything} >= {operator.id, master.id, reseller.id}
        masters = gateway.list_accounts(operator.id, role="master")
        assert {a.role for a in masters} == {AccountRole.MASTER}

    def test_stranger_cannot_read(self, gateway, seed):
        m1 = seed(AccountRole.MASTER)
        m2 = seed(AccountRole.MASTER)
        with pytest.raises(UnauthorizedError):
            gateway.get_account(m1.id, m2.id)
        with pytest.raises(UnauthorizedError):
            gateway.transaction_history(m1.id, m2.id)
        with pytest.raises(UnauthorizedError):
            gateway.reconcile(m1.id, m2.id)

    def test_list_accounts_accepts_legacy_role_names(
        self, gateway, seed, operator, new_profile
    ):
        master = seed(AccountRole.MASTER, balance=1)
        client = gateway.create_account(master.id, AccountRole.CLIENT, new_profile())
        clients = gateway.list_accounts(operator.id, role="cliente")
        assert [a.id for a in clients] == [client.id]
        with pytest.raises(InvalidRoleError):
            gateway.list_accounts(operator.id, role="superuser")

    def test_reconcile_detects_untracked_balance_change(
        self, gateway, seed, operator, session_factory
    ):
        master = seed(AccountRole.MASTER)
        assert gateway.reconcile(operator.id, master.id).is_reconciled

        with session_scope(session_factory) as session:
            session.execute(
                update(Balance)
                .where(Balance.account_id == master.id)
                .values(balance=7)
            )

        result = gateway.reconcile(operator.id, master.id)
        assert result.stored_balance == 7
        assert result.transaction_count == 0
        assert not result.is_reconciled

    def test_lifecycle_history_operator_only(self, gateway, seed):
        master = seed(AccountRole.MASTER)
        with pytest.raises(UnauthorizedError):
            gateway.lifecycle_history(master.id)

    def test_failed_operation_sends_nothing(self, gateway, seed, new_profile, http):
        master = seed(AccountRole.MASTER, balance=1)
        client = gateway.create_account(master.id, AccountRole.CLIENT, new_profile())
        sent = len(http.calls)
        with pytest.raises(InsufficientCreditError):
            gateway.renew_account(master.id, client.id)
        assert len(http.calls) == sent

    def test_operation_logging(self, gateway, seed, operator, captured_logs):
        master = seed(AccountRole.MASTER)
        gateway.transfer_credit(operator.id, master.id, 2)

        records = captured_logs()
        done = [r for r in records if r["message"] == "transfer_credit_completed"]
        assert done[-1]["operation"] == "transfer_credit"
        assert done[-1]["actor_id"] == str(operator.id)
        assert done[-1]["target_id"] == str(master.id)
        assert done[-1]["attempts"] == 1
