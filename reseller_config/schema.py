"""
Reseller configuration schema.

Frozen dataclasses parsed from YAML by ``reseller_config.loader`` and
returned by ``reseller_config.get_active_config()``.  Services receive
these objects by injection and never read files or the environment.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum


class DispatchMode(str, Enum):
    """How the lifecycle notifier runs webhook deliveries."""

    BACKGROUND = "background"  # thread pool; the operation returns first
    INLINE = "inline"  # same thread, after commit (tests, CLI)


@dataclass(frozen=True)
class LedgerSettings:
    """Credit prices and policy constants."""

    provisioning_cost: int = 1
    renewal_cost: int = 1
    credit_term_days: int = 30
    max_concurrency_retries: int = 3


@dataclass(frozen=True)
class WebhookSettings:
    """Outbound lifecycle webhook.  ``url`` None means not configured."""

    url: str | None = None
    secret: str | None = field(default=None, repr=False)
    timeout_seconds: float = 10.0
    dispatch: DispatchMode = DispatchMode.BACKGROUND
    max_workers: int = 4

    @property
    def is_configured(self) -> bool:
        return bool(self.url)


@dataclass(frozen=True)
class DatabaseSettings:
    url: str = "sqlite:///reseller.db"
    echo: bool = False
    pool_size: int = 20
    max_overflow: int = 10


@dataclass(frozen=True)
class ResellerSettings:
    """Root configuration object."""

    config_id: str
    version: int
    ledger: LedgerSettings = field(default_factory=LedgerSettings)
    lifecycle_webhook: WebhookSettings = field(default_factory=WebhookSettings)
    database: DatabaseSettings = field(default_factory=DatabaseSettings)
    checksum: str = ""
