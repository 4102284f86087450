"""
Fault injection through the gateway.

A failure part-way through a unit of work must leave no trace: no
balance change, no transaction rows, no account, and no lifecycle
notification.  A lost compare-and-set is replayed.
"""

import pytest

from reseller_kernel.exceptions import OptimisticLockError
from reseller_kernel.models.account import AccountRole
from reseller_kernel.services.ledger_store import LedgerStore
from reseller_kernel.services.provisioning_service import ProvisioningService


class SimulatedCrash(Exception):
    """Raised to simulate a crash at a specific point."""


def _fail_on_call(monkeypatch, name, n, exc_factory):
    """Make LedgerStore.<name> raise on its n-th call (1-based)."""
    original = getattr(LedgerStore, name)
    calls = {"count": 0}

    def wrapper(self, *args, **kwargs):
        calls["count"] += 1
        if calls["count"] == n:
            raise exc_factory()
        return original(self, *args, **kwargs)

    monkeypatch.setattr(LedgerStore, name, wrapper)
    return calls


class TestAtomicityGuarantees:
    def test_crash_between_transfer_legs(self, gateway, seed, monkeypatch):
        master = seed(AccountRole.MASTER, balance=5)
        reseller = seed(AccountRole.RESELLER, creator=master, balance=1)
        master_rows = len(gateway.transaction_history(master.id, master.id))

        _fail_on_call(monkeypatch, "append_transaction", 2, lambda: SimulatedCrash())
        with pytest.raises(SimulatedCrash):
            gateway.transfer_credit(master.id, reseller.id, 2)

        assert gateway.get_balance(master.id, master.id).balance == 4
        assert gateway.get_balance(master.id, reseller.id).balance == 1
        assert len(gateway.transaction_history(master.id, master.id)) == master_rows
        assert gateway.reconcile(master.id, master.id).is_reconciled
        assert gateway.reconcile(reseller.id, reseller.id).is_reconciled

    def test_crash_after_charge_creates_nothing(
        self, gateway, seed, new_profile, http, monkeypatch
    ):
        master = seed(AccountRole.MASTER, balance=3)
        sent = len(http.calls)

        def crash(*args, **kwargs):
            raise SimulatedCrash()

        monkeypatch.setattr(ProvisioningService, "_queue", crash)
        with pytest.raises(SimulatedCrash):
            gateway.create_account(master.id, AccountRole.CLIENT, new_profile())

        assert gateway.get_balance(master.id, master.id).balance == 3
        assert gateway.list_accounts(master.id) == []
        assert len(http.calls) == sent

    def test_unexpected_failure_logged_as_error(
        self, gateway, seed, monkeypatch, captured_logs
    ):
        master = seed(AccountRole.MASTER, balance=2)
        reseller = seed(AccountRole.RESELLER, creator=master)

        _fail_on_call(monkeypatch, "append_transaction", 1, lambda: SimulatedCrash())
        with pytest.raises(SimulatedCrash):
            gateway.transfer_credit(master.id, reseller.id, 1)

        [failed] = [r for r in captured_logs() if r["message"] == "transfer_credit_failed"]
        assert failed["level"] == "ERROR"
        assert failed["exc_type"] == "SimulatedCrash"


class TestConflictReplay:
    def test_lost_cas_is_retried(self, gateway, seed, monkeypatch, captured_logs):
        master = seed(AccountRole.MASTER, balance=5)
        reseller = seed(AccountRole.RESELLER, creator=master)

        _fail_on_call(
            monkeypatch,
            "set_balance",
            1,
            lambda: OptimisticLockError("Balance", str(master.id)),
        )
        result = gateway.transfer_credit(master.id, reseller.id, 2)

        assert result.balances == {master.id: 3, reseller.id: 2}
        assert gateway.reconcile(master.id, master.id).is_reconciled
        records = captured_logs()
        assert any(r["message"] == "unit_of_work_retry" for r in records)
        done = [r for r in records if r["message"] == "transfer_credit_completed"]
        assert done[-1]["attempts"] == 2

    def test_retry_budget_exhausted(self, gateway, seed, monkeypatch):
        master = seed(AccountRole.MASTER, balance=5)
        reseller = seed(AccountRole.RESELLER, creator=master)

        def always_conflict(self, account_id, new_balance, expected_prior_balance):
            raise OptimisticLockError("Balance", str(account_id))

        monkeypatch.setattr(LedgerStore, "set_balance", always_conflict)
        with pytest.raises(OptimisticLockError):
            gateway.transfer_credit(master.id, reseller.id, 2)

        monkeypatch.undo()
        assert gateway.get_balance(master.id, master.id).balance == 5
        assert gateway.transaction_history(master.id, reseller.id) == []
