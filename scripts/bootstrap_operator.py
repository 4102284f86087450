#!/usr/bin/env python3
"""
Create the first operator account.

Operators cannot be created through the gateway without an existing
operator, so a fresh database is seeded with this script.

Usage:
    python3 scripts/bootstrap_operator.py --name "Ops Team" --email ops@example.com
"""

from __future__ import annotations

import argparse
import sys
from pathlib import Path

from reseller_config import get_active_config
from reseller_kernel.db.engine import create_tables, get_session_factory, init_engine_from_url
from reseller_kernel.domain.dtos import AccountProfile
from reseller_kernel.exceptions import ResellerKernelError
from reseller_kernel.logging_config import configure_logging
from reseller_kernel.services.gateway import ResellerGateway
from reseller_kernel.services.lifecycle_notifier import LifecycleNotifier


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Create an operator account.")
    parser.add_argument("--name", required=True, help="Operator display name.")
    parser.add_argument("--email", default=None, help="Operator email.")
    parser.add_argument("--config", type=Path, default=None, help="Config YAML.")
    return parser.parse_args()


def main() -> int:
    args = _parse_args()
    configure_logging()
    settings = get_active_config(args.config)

    init_engine_from_url(settings.database.url, echo=settings.database.echo)
    create_tables()

    notifier = LifecycleNotifier(get_session_factory(), settings.lifecycle_webhook)
    gateway = ResellerGateway(get_session_factory(), notifier, settings=settings.ledger)
    try:
        operator = gateway.bootstrap_operator(
            AccountProfile(full_name=args.name, email=args.email)
        )
    except ResellerKernelError as exc:
        print(f"error [{exc.code}]: {exc}", file=sys.stderr)
        return 1
    finally:
        notifier.shutdown()

    print(operator.id)
    return 0


if __name__ == "__main__":
    sys.exit(main())
