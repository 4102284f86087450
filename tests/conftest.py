"""
Pytest fixtures for the reseller kernel test suite.

Provides:
- A fresh file-backed SQLite database per test (file-backed so several
  connections, and therefore threads, can share it)
- A deterministic clock pinned to 2024-01-01 12:00 UTC
- A fake HTTP client for the lifecycle webhook
- An inline-dispatch notifier and a gateway wired to all of the above
- Account seeding helpers

Environment Variables:
- DATABASE_URL: run against another database (e.g. PostgreSQL) instead of
  the per-test SQLite file.  The schema is dropped and recreated per test.
"""

import json
import logging
import os
from io import StringIO
from itertools import count
from uuid import uuid4

import pytest
import requests

from reseller_config.schema import DispatchMode, LedgerSettings, WebhookSettings
from reseller_kernel.db.engine import (
    create_tables,
    drop_tables,
    get_session_factory,
    init_engine_from_url,
    reset_engine,
)
from reseller_kernel.domain.clock import DeterministicClock
from reseller_kernel.domain.dtos import AccountProfile
from reseller_kernel.logging_config import (
    LogContext,
    StructuredFormatter,
    configure_logging,
    reset_logging,
)
from reseller_kernel.models.account import AccountRole
from reseller_kernel.services.gateway import ResellerGateway
from reseller_kernel.services.lifecycle_notifier import LifecycleNotifier

WEBHOOK_URL = "https://hooks.example.test/lifecycle"
WEBHOOK_SECRET = "s3cret-service-key"


# =============================================================================
# Logging fixtures
# =============================================================================


@pytest.fixture(autouse=True, scope="session")
def _configure_test_logging():
    """Configure structured logging for the test suite."""
    reset_logging()
    configure_logging(level=logging.DEBUG)
    yield
    reset_logging()


@pytest.fixture(autouse=True)
def _clear_log_context():
    """Clear LogContext between tests to prevent cross-test contamination."""
    LogContext.clear()
    yield
    LogContext.clear()


@pytest.fixture
def captured_logs():
    """
    Capture reseller_kernel logs as parsed JSON dicts.

    Usage::

        def test_something(captured_logs, gateway):
            gateway.transfer_credit(...)
            logs = captured_logs()
            assert any(r["message"] == "transfer_completed" for r in logs)
    """
    stream = StringIO()
    handler = logging.StreamHandler(stream)
    handler.setFormatter(StructuredFormatter())
    root = logging.getLogger("reseller_kernel")
    root.addHandler(handler)

    def _get_records() -> list[dict]:
        lines = stream.getvalue().strip().split("\n")
        return [json.loads(line) for line in lines if line]

    yield _get_records

    root.removeHandler(handler)


# =============================================================================
# Database
# =============================================================================


@pytest.fixture
def db_engine(tmp_path):
    """Engine plus schema for one test."""
    url = os.environ.get("DATABASE_URL") or f"sqlite:///{tmp_path / 'ledger.db'}"
    engine = init_engine_from_url(url, pool_size=10, max_overflow=20, pool_timeout=30)
    if not url.startswith("sqlite"):
        drop_tables()
    create_tables()
    yield engine
    reset_engine()


@pytest.fixture
def session_factory(db_engine):
    return get_session_factory()


@pytest.fixture
def session(session_factory):
    """
    A session for direct service tests.  Rolled back on teardown.

    SQLite takes the write lock on the first statement, so tests that use
    this fixture must not drive the gateway while it is open.
    """
    sess = session_factory()
    yield sess
    sess.rollback()
    sess.close()


@pytest.fixture
def clock():
    return DeterministicClock()


# =============================================================================
# Webhook fakes
# =============================================================================


class FakeResponse:
    def __init__(self, status_code: int = 200, text: str = "ok"):
        self.status_code = status_code
        self.text = text


class FakeHttp:
    """
    Stand-in for requests.Session.

    Set ``status``/``body`` for the next responses, or ``raises`` to an
    exception instance to simulate a transport failure.
    """

    def __init__(self):
        self.calls: list[dict] = []
        self.status = 200
        self.body = '{"ok":true}'
        self.raises: Exception | None = None
        self.closed = False

    def post(self, url, data=None, headers=None, timeout=None):
        self.calls.append(
            {
                "url": url,
                "body": json.loads(data.decode("utf-8")) if data else None,
                "headers": dict(headers or {}),
                "timeout": timeout,
            }
        )
        if self.raises is not None:
            raise self.raises
        return FakeResponse(self.status, self.body)

    def close(self):
        self.closed = True

    def fail_with_connection_error(self):
        self.raises = requests.exceptions.ConnectionError("connection refused")

    def fail_with_timeout(self):
        self.raises = requests.exceptions.Timeout("read timed out")


@pytest.fixture
def http():
    return FakeHttp()


@pytest.fixture
def webhook_settings():
    return WebhookSettings(
        url=WEBHOOK_URL,
        secret=WEBHOOK_SECRET,
        timeout_seconds=10.0,
        dispatch=DispatchMode.INLINE,
    )


@pytest.fixture
def notifier(session_factory, webhook_settings, clock, http):
    n = LifecycleNotifier(session_factory, webhook_settings, clock=clock, http=http)
    yield n
    n.shutdown()


# =============================================================================
# Gateway and seeding
# =============================================================================


@pytest.fixture
def ledger_settings():
    return LedgerSettings()


@pytest.fixture
def gateway(session_factory, notifier, clock, ledger_settings):
    return ResellerGateway(session_factory, notifier, clock=clock, settings=ledger_settings)


@pytest.fixture
def operator(gateway):
    return gateway.bootstrap_operator(
        AccountProfile(full_name="Root Operator", email="root@example.test")
    )


_emails = count(1)


def _profile(name: str | None = None) -> AccountProfile:
    n = next(_emails)
    return AccountProfile(
        full_name=name or f"Account {n}",
        email=f"user{n}-{uuid4().hex[:6]}@example.test",
        phone="+55 11 90000-0000",
        tax_id=f"{n:011d}",
    )


@pytest.fixture
def new_profile():
    """Factory for unique AccountProfile values."""
    return _profile


@pytest.fixture
def seed(gateway, operator):
    """
    Create an account through the gateway, optionally funded by its creator.

    Usage::

        master = seed(AccountRole.MASTER, balance=5)
        reseller = seed(AccountRole.RESELLER, creator=master, balance=2)
    """

    def _seed(role: AccountRole, creator=None, balance: int = 0, name=None):
        creator = creator or operator
        account = gateway.create_account(creator.id, role, _profile(name))
        if balance:
            gateway.transfer_credit(creator.id, account.id, balance)
            account = gateway.get_account(creator.id, account.id)
        return account

    return _seed


# =============================================================================
# Direct-session seeding (service-level tests)
# =============================================================================


@pytest.fixture
def make_account(session, clock):
    """
    Insert an Account (plus Balance for non-operators) directly, bypassing
    the provisioning rules.  Flushes only.

    Usage::

        op = make_account(AccountRole.OPERATOR)
        master = make_account(AccountRole.MASTER, creator=op, balance=5)
    """
    from reseller_kernel.models.account import Account, AccountStatus
    from reseller_kernel.models.balance import Balance

    def _make(role: AccountRole, creator=None, balance: int = 0, unlimited: bool = False):
        account_id = uuid4()
        now = clock.now()
        account = Account(
            id=account_id,
            role=role.value,
            creator_id=creator.id if creator is not None else None,
            status=AccountStatus.ACTIVE.value,
            full_name=f"{role.value} {account_id.hex[:6]}",
            email=f"{account_id.hex}@example.test",
            is_trial=False,
            created_at=now,
            updated_at=now,
            created_by_id=creator.id if creator is not None else account_id,
        )
        session.add(account)
        session.flush()
        if role is not AccountRole.OPERATOR:
            session.add(
                Balance(
                    account_id=account_id,
                    balance=balance,
                    unlimited=unlimited,
                    updated_at=now,
                )
            )
            session.flush()
        return account

    return _make
