"""
Configuration Loader (``reseller_config.loader``).

Responsibility
--------------
Loads the YAML configuration file, applies environment overrides and
parses the result into the frozen dataclasses of ``reseller_config.schema``.
The single public entry point for runtime config is
``reseller_config.get_active_config()``.

Failure modes
-------------
* Missing YAML file  -> ``FileNotFoundError`` propagates.
* Malformed YAML  -> ``yaml.YAMLError`` propagates.
* Out-of-range or mistyped values  -> ``ValueError``.
"""

from __future__ import annotations

import hashlib
import json
from collections.abc import Mapping
from pathlib import Path
from typing import Any

import yaml

from reseller_config.schema import (
    DatabaseSettings,
    DispatchMode,
    LedgerSettings,
    ResellerSettings,
    WebhookSettings,
)

# Environment variable -> (section, key)
ENV_OVERRIDES: dict[str, tuple[str, str]] = {
    "RESELLER_WEBHOOK_URL": ("lifecycle_webhook", "url"),
    "RESELLER_WEBHOOK_SECRET": ("lifecycle_webhook", "secret"),
    "RESELLER_WEBHOOK_TIMEOUT": ("lifecycle_webhook", "timeout_seconds"),
    "RESELLER_WEBHOOK_DISPATCH": ("lifecycle_webhook", "dispatch"),
    "RESELLER_DATABASE_URL": ("database", "url"),
}


def load_yaml_file(path: Path) -> dict[str, Any]:
    """
    Load a single YAML file and return its contents as a dict.

    Raises:
        FileNotFoundError: if the file does not exist.
        yaml.YAMLError: if the file contains invalid YAML.
    """
    with open(path) as f:
        return yaml.safe_load(f) or {}


def apply_env_overrides(
    data: dict[str, Any], env: Mapping[str, str]
) -> dict[str, Any]:
    """Return a copy of ``data`` with environment overrides applied."""
    merged = {k: dict(v) if isinstance(v, dict) else v for k, v in data.items()}
    for var, (section, key) in ENV_OVERRIDES.items():
        value = env.get(var)
        if value is None or value == "":
            continue
        merged.setdefault(section, {})[key] = value
    return merged


def _non_negative_int(data: Mapping[str, Any], key: str, default: int) -> int:
    value = data.get(key, default)
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise ValueError(f"{key} must be a non-negative integer, got {value!r}")
    return value


def _optional_str(value: Any) -> str | None:
    if value is None:
        return None
    value = str(value).strip()
    return value or None


def parse_ledger(data: Mapping[str, Any]) -> LedgerSettings:
    settings = LedgerSettings(
        provisioning_cost=_non_negative_int(data, "provisioning_cost", 1),
        renewal_cost=_non_negative_int(data, "renewal_cost", 1),
        credit_term_days=_non_negative_int(data, "credit_term_days", 30),
        max_concurrency_retries=_non_negative_int(data, "max_concurrency_retries", 3),
    )
    if settings.credit_term_days == 0:
        raise ValueError("credit_term_days must be at least 1")
    return settings


def parse_webhook(data: Mapping[str, Any]) -> WebhookSettings:
    try:
        timeout = float(data.get("timeout_seconds", 10))
    except (TypeError, ValueError):
        raise ValueError(
            f"timeout_seconds must be a number, got {data.get('timeout_seconds')!r}"
        ) from None
    if timeout <= 0:
        raise ValueError("timeout_seconds must be positive")
    try:
        dispatch = DispatchMode(str(data.get("dispatch", "background")).lower())
    except ValueError:
        raise ValueError(f"Unknown dispatch mode {data.get('dispatch')!r}") from None
    max_workers = _non_negative_int(data, "max_workers", 4)
    if max_workers == 0:
        raise ValueError("max_workers must be at least 1")
    return WebhookSettings(
        url=_optional_str(data.get("url")),
        secret=_optional_str(data.get("secret")),
        timeout_seconds=timeout,
        dispatch=dispatch,
        max_workers=max_workers,
    )


def parse_database(data: Mapping[str, Any]) -> DatabaseSettings:
    return DatabaseSettings(
        url=str(data.get("url", DatabaseSettings.url)),
        echo=bool(data.get("echo", False)),
        pool_size=_non_negative_int(data, "pool_size", 20),
        max_overflow=_non_negative_int(data, "max_overflow", 10),
    )


def parse_settings(data: Mapping[str, Any]) -> ResellerSettings:
    """Parse a full configuration dict into ``ResellerSettings``."""
    return ResellerSettings(
        config_id=str(data.get("config_id", "default")),
        version=int(data.get("version", 1)),
        ledger=parse_ledger(data.get("ledger") or {}),
        lifecycle_webhook=parse_webhook(data.get("lifecycle_webhook") or {}),
        database=parse_database(data.get("database") or {}),
        checksum=compute_checksum(data),
    )


def compute_checksum(data: Mapping[str, Any]) -> str:
    """
    Deterministic SHA-256 of the configuration, secrets excluded.
    """
    redacted = json.loads(json.dumps(data, default=str))
    webhook = redacted.get("lifecycle_webhook")
    if isinstance(webhook, dict) and "secret" in webhook:
        webhook["secret"] = "***"
    canonical = json.dumps(redacted, sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()
