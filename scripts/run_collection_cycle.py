#!/usr/bin/env python3
"""
Run one commission collection cycle and print the result as JSON.

Tier 1 debits the provider's processor sub-account balance; tier 2 starts
an off-session card charge that is settled later by the confirmation
webhook.  Meant to be invoked by an external scheduler; two cycles must
not overlap.

Usage:
    DATABASE_URL=postgresql://... python3 scripts/run_collection_cycle.py
    python3 scripts/run_collection_cycle.py --db-url sqlite:///local.db --config overrides.yaml

Exit status is 0 when the cycle completes (per-debt errors are reported in
the JSON), 1 when it cannot start.
"""

from __future__ import annotations

import argparse
import json
import logging
import os
import sys
from pathlib import Path

# Project root on sys.path
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Run one commission debt collection cycle.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--db-url",
        default=os.environ.get("DATABASE_URL"),
        help="Database URL (default: DATABASE_URL env).",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Optional YAML override layered on the packaged defaults.",
    )
    parser.add_argument(
        "--create-tables",
        action="store_true",
        help="Create missing ledger tables before running (local use).",
    )
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="Log at DEBUG level.",
    )
    return parser.parse_args()


def main() -> int:
    args = _parse_args()
    if not args.db_url:
        print("ERROR: no database URL (set DATABASE_URL or pass --db-url)", file=sys.stderr)
        return 1

    # Lazy imports so we fail fast on args first
    from commission_batch.services.collection_cycle import CollectionCycle
    from commission_config import get_active_config
    from commission_gateways.stripe_processor import StripePaymentProcessor
    from commission_kernel.db.engine import (
        create_tables,
        get_session_factory,
        init_engine_from_url,
    )
    from commission_kernel.db.immutability import register_immutability_listeners
    from commission_kernel.exceptions import CommissionKernelError
    from commission_kernel.logging_config import configure_logging

    configure_logging(level=logging.DEBUG if args.verbose else logging.INFO)

    try:
        engine = init_engine_from_url(args.db_url)
        if args.create_tables:
            create_tables(engine)
        register_immutability_listeners()
        config = get_active_config(engine=engine, path=args.config)
    except (CommissionKernelError, FileNotFoundError) as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return 1

    processor = StripePaymentProcessor(config.stripe, config.retry)
    cycle = CollectionCycle(get_session_factory(), processor, config)
    result = cycle.run()

    print(json.dumps(result.to_dict(), indent=2, sort_keys=True))
    return 0


if __name__ == "__main__":
    sys.exit(main())
