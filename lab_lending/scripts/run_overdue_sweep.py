#!/usr/bin/env python3
"""One-shot overdue sweep, for cron or manual runs alongside the in-process sweeper."""

from __future__ import annotations

import argparse
import logging
import os
import sys
from datetime import date
from pathlib import Path

from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker

APP_DIR = Path(__file__).resolve().parents[1]
if str(APP_DIR) not in sys.path:
    sys.path.insert(0, str(APP_DIR))

from services.clock import DEFAULT_CLOCK, FixedClock  # noqa: E402
from services.errors import LendingError  # noqa: E402
from services.overdue_service import run_overdue_sweep  # noqa: E402


def _open_session(db_url: str) -> Session:
    engine = create_engine(db_url, pool_pre_ping=True, future=True)
    return sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False, future=True)()


def main() -> int:
    parser = argparse.ArgumentParser(description="Promote past-due Borrowed loans to Overdue")
    parser.add_argument("--db-url", default=os.environ.get("LAB_LENDING_DB_URL", ""))
    parser.add_argument("--as-of", type=date.fromisoformat, default=None, help="Treat this date (YYYY-MM-DD) as today")
    args = parser.parse_args()

    logging.basicConfig(
        level=(os.environ.get("LAB_LENDING_LOG_LEVEL") or "INFO").strip().upper(),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )

    db_url = (args.db_url or "").strip()
    if not db_url:
        print("LAB_LENDING_DB_URL is not set. Provide --db-url or export env first.")
        return 2

    clock = FixedClock(args.as_of) if args.as_of else DEFAULT_CLOCK
    db = _open_session(db_url)
    try:
        result = run_overdue_sweep(db, clock)
    except LendingError as exc:
        print(f"Sweep failed: {exc.code}: {exc.message}")
        return 3
    finally:
        db.close()

    print(
        f"scanned={result.scanned} updated={result.updated} skipped={result.skipped} failed={result.failed}"
    )
    return 0 if result.failed == 0 else 1


if __name__ == "__main__":
    sys.exit(main())
