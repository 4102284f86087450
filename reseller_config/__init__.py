"""
reseller_config -- single public entrypoint for runtime configuration.

Responsibility:
    ``get_active_config()`` is the only way to obtain settings.  No other
    component reads configuration files or environment variables.

Failure modes:
    - ``FileNotFoundError`` -- the configuration file does not exist.
    - ``ValueError`` -- a value is out of range or mistyped.

Audit relevance:
    Every successful call emits a ``RESELLER_CONFIG_TRACE`` log entry with
    the config id, version and checksum.  The webhook secret is never
    logged.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Mapping
from pathlib import Path

from reseller_config.loader import apply_env_overrides, load_yaml_file, parse_settings
from reseller_config.schema import (
    DatabaseSettings,
    DispatchMode,
    LedgerSettings,
    ResellerSettings,
    WebhookSettings,
)

_logger = logging.getLogger("reseller_kernel.config")

_DEFAULT_CONFIG_PATH = Path(__file__).parent / "sets" / "default.yaml"


def get_active_config(
    config_path: Path | None = None,
    env: Mapping[str, str] | None = None,
) -> ResellerSettings:
    """The ONLY public configuration entrypoint.

    Args:
        config_path: YAML file to load.  Defaults to
            ``$RESELLER_CONFIG`` or reseller_config/sets/default.yaml.
        env: Environment mapping for overrides.  Defaults to os.environ.

    Returns:
        Frozen ``ResellerSettings``.
    """
    env = os.environ if env is None else env
    path = config_path or Path(env.get("RESELLER_CONFIG") or _DEFAULT_CONFIG_PATH)

    data = apply_env_overrides(load_yaml_file(path), env)
    settings = parse_settings(data)

    _logger.info(
        "RESELLER_CONFIG_TRACE",
        extra={
            "trace_type": "RESELLER_CONFIG_TRACE",
            "config_set_id": settings.config_id,
            "config_set_version": settings.version,
            "checksum": settings.checksum,
            "config_path": str(path),
            "webhook_configured": settings.lifecycle_webhook.is_configured,
            "webhook_dispatch": settings.lifecycle_webhook.dispatch.value,
        },
    )
    return settings


__all__ = [
    "get_active_config",
    "ResellerSettings",
    "LedgerSettings",
    "WebhookSettings",
    "DatabaseSettings",
    "DispatchMode",
]
