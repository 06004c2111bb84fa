#!/usr/bin/env python3
"""
Ledger store initialization script.

Creates the SQLite ledger store (ledgers, audit entries, pending credits) and
optionally raises every user's free units to a floor.

Usage:
    python scripts/init_ledger_db.py [--db-path PATH] [--ensure-minimum N]

Options:
    --db-path PATH        Path to SQLite database file (default: LEDGER_DB_PATH or ./data/ledger.db)
    --ensure-minimum N    Raise free units to at least N for every existing user

This script is idempotent - safe to run multiple times.
"""

import argparse
import asyncio
import logging
import sys
from pathlib import Path

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from slidegen.config import get_settings
from slidegen.ledger.credit_client import MockCreditClient
from slidegen.ledger.service import TokenLedger
from slidegen.observability.logging import configure_logging
from slidegen.storage.ledger_store import LedgerStore, LedgerStoreError

logger = logging.getLogger(__name__)

EXPECTED_TABLES = ("ledgers", "ledger_entries", "pending_credits")


async def init_database(db_path: str, ensure_minimum: int | None = None) -> bool:
    """
    Initialize the ledger store schema.

    Args:
        db_path: Path to SQLite database file
        ensure_minimum: Free-unit floor to apply to existing users (None = skip)

    Returns:
        bool: True if initialization succeeded
    """
    store = LedgerStore(db_path=db_path)
    try:
        logger.info(f"Initializing ledger store at {db_path}")
        await store.initialize()

        conn = store._get_connection()
        tables = {
            row[0]
            for row in conn.execute("SELECT name FROM sqlite_master WHERE type='table'")
        }
        missing = set(EXPECTED_TABLES) - tables
        if missing:
            logger.error(f"Missing tables: {missing}")
            return False

        for table in EXPECTED_TABLES:
            count = conn.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0]
            logger.info(f"  {table}: {count} rows")

        if ensure_minimum is not None:
            # The sweep never calls the credit endpoint
            ledger = TokenLedger(store, MockCreditClient(), get_settings().ledger)
            changed = await ledger.ensure_minimum_free_units(ensure_minimum)
            logger.info(f"Raised free units to {ensure_minimum} for {changed} users")

        logger.info("Ledger store initialization complete")
        return True

    except LedgerStoreError as e:
        logger.error(f"Ledger store initialization failed: {e}", exc_info=True)
        return False
    finally:
        store.close()


def main() -> None:
    parser = argparse.ArgumentParser(description="Initialize the slidegen ledger store")
    parser.add_argument(
        "--db-path",
        default=None,
        help="Path to SQLite database file (default: LEDGER_DB_PATH or ./data/ledger.db)",
    )
    parser.add_argument(
        "--ensure-minimum",
        type=int,
        default=None,
        metavar="N",
        help="Raise every user's free units to at least N",
    )
    args = parser.parse_args()

    settings = get_settings()
    configure_logging(
        log_level=settings.logging.level,
        json_output=False,
        colorized=settings.logging.colorized,
    )

    db_path = args.db_path or settings.ledger.db_path
    if not asyncio.run(init_database(db_path, ensure_minimum=args.ensure_minimum)):
        sys.exit(1)


if __name__ == "__main__":
    main()
