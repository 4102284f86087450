#!/usr/bin/env python3
"""
Deactivate accounts whose credit validity has passed.

Intended for a daily scheduler.  Loads the active configuration, runs one
sweep, waits for the update_user_status webhooks to finish, and prints the
ids it deactivated.

Usage:
    python3 scripts/run_expiry_sweep.py [--config PATH] [--as-of YYYY-MM-DD]

Examples:
    # Sweep as of today (UTC)
    python3 scripts/run_expiry_sweep.py

    # Re-run for a specific day against another config set
    python3 scripts/run_expiry_sweep.py --config prod.yaml --as-of 2024-03-01
"""

from __future__ import annotations

import argparse
import sys
from datetime import date
from pathlib import Path

from reseller_config import get_active_config
from reseller_kernel.db.engine import create_tables, get_session_factory, init_engine_from_url
from reseller_kernel.logging_config import configure_logging
from reseller_kernel.services.gateway import ResellerGateway
from reseller_kernel.services.lifecycle_notifier import LifecycleNotifier


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Deactivate accounts whose credit has expired.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Config YAML (default: $RESELLER_CONFIG or the bundled default).",
    )
    parser.add_argument(
        "--as-of",
        type=date.fromisoformat,
        default=None,
        help="Treat this date as today (default: current UTC date).",
    )
    parser.add_argument(
        "--flush-timeout",
        type=float,
        default=60.0,
        help="Seconds to wait for pending webhooks before exiting.",
    )
    return parser.parse_args()


def main() -> int:
    args = _parse_args()
    configure_logging()
    settings = get_active_config(args.config)

    init_engine_from_url(
        settings.database.url,
        echo=settings.database.echo,
        pool_size=settings.database.pool_size,
        max_overflow=settings.database.max_overflow,
    )
    create_tables()

    notifier = LifecycleNotifier(get_session_factory(), settings.lifecycle_webhook)
    gateway = ResellerGateway(
        get_session_factory(), notifier, settings=settings.ledger
    )
    try:
        deactivated = gateway.sweep_expired(as_of=args.as_of)
        if not notifier.flush(timeout=args.flush_timeout):
            print("warning: some webhook deliveries were still pending", file=sys.stderr)
    finally:
        notifier.shutdown()

    for account_id in deactivated:
        print(account_id)
    print(f"{len(deactivated)} account(s) deactivated", file=sys.stderr)
    return 0


if __name__ == "__main__":
    sys.exit(main())
