"""Entrypoint for syncing bunq payments into Firefly III."""
from __future__ import annotations

import argparse
import logging
from datetime import date, datetime
from typing import Optional, Sequence

import requests

from bunq_sync.bunq_client import BunqClient
from bunq_sync.config import SyncConfig, load_config
from bunq_sync.errors import SyncError
from bunq_sync.firefly_client import FireflyClient
from bunq_sync.ignore_rules import build_ignore_rules
from bunq_sync.sync_engine import SyncEngine, SyncReport

logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
LOGGER = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_PARTIAL = 1
EXIT_BOOTSTRAP_FAILED = 2


def parse_cutoff(value: str) -> datetime:
    try:
        return datetime.combine(date.fromisoformat(value), datetime.min.time())
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"invalid date {value!r}, expected YYYY-MM-DD") from exc


def default_cutoff() -> datetime:
    """Today, truncated to midnight."""
    return datetime.combine(date.today(), datetime.min.time())


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument(
        "cutoff",
        nargs="?",
        type=parse_cutoff,
        default=None,
        metavar="DATE",
        help="Only sync payments made after this date (YYYY-MM-DD, default: today)",
    )
    parser.add_argument(
        "--config",
        type=str,
        default=None,
        help="Path to the JSON config file (default: $SYNC_CONFIG or config/config.json)",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Log the Firefly transactions that would be created without creating them",
    )
    return parser.parse_args(argv)


def main(argv: Sequence[str] | None = None) -> int:
    args = parse_args(argv)
    cutoff = args.cutoff or default_cutoff()

    try:
        config = load_config(args.config)
        bunq = BunqClient.bootstrap(config)
    except (SyncError, requests.RequestException, OSError):
        LOGGER.exception("Cannot start the bunq sync")
        return EXIT_BOOTSTRAP_FAILED

    try:
        report = run_sync(config, bunq, cutoff=cutoff, dry_run=args.dry_run)
    except (SyncError, requests.RequestException):
        LOGGER.exception("bunq sync failed")
        return EXIT_PARTIAL
    return EXIT_PARTIAL if report.has_failures else EXIT_OK


def run_sync(
    config: SyncConfig,
    bunq: BunqClient,
    *,
    cutoff: datetime,
    dry_run: bool = False,
    firefly: Optional[FireflyClient] = None,
) -> SyncReport:
    firefly = firefly or FireflyClient(
        base_url=config.firefly_api_base_url,
        api_token=config.firefly_api_key,
        timeout=config.request_timeout,
    )
    engine = SyncEngine(
        bank=bunq,
        ledger=firefly,
        ignore_rules=build_ignore_rules(config.ignore_rules),
        dry_run=dry_run,
    )
    LOGGER.info("Syncing bunq payments made after %s%s", cutoff, " (dry-run)" if dry_run else "")
    return engine.run(cutoff)


if __name__ == "__main__":
    raise SystemExit(main())
