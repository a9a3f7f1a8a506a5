#!/usr/bin/env python3
"""Database overview and stock-ledger integrity checks for Lab Lending."""

from __future__ import annotations

import argparse
import os
import sys
from dataclasses import dataclass
from typing import Iterable

from sqlalchemy import create_engine, inspect, text
from sqlalchemy.engine import Engine


EXPECTED_TABLES = [
    "InventoryItems",
    "LoanRecords",
    "BorrowRequests",
    "BorrowRequestLines",
    "AuditLogs",
    "NotificationQueue",
]

EXPECTED_COLUMNS: dict[str, list[str]] = {
    "InventoryItems": ["ItemID", "ShortCode", "ItemName", "TotalQuantity", "InUseQuantity", "BorrowCap"],
    "LoanRecords": [
        "LoanID",
        "ItemID",
        "Quantity",
        "SpecificUnitCode",
        "ActiveUnitCode",
        "DueOn",
        "Status",
    ],
    "BorrowRequestLines": ["LineID", "RequestID", "ItemID", "Quantity", "LinkedLoanID"],
}

# name -> query returning the number of offending rows
INTEGRITY_QUERIES: dict[str, str] = {
    "items:quantity_invariant": """
        SELECT COUNT(*)
        FROM InventoryItems
        WHERE InUseQuantity < 0
           OR TotalQuantity < 0
           OR InUseQuantity > COALESCE(BorrowCap, TotalQuantity)
           OR (BorrowCap IS NOT NULL AND BorrowCap > TotalQuantity)
    """,
    "items:in_use_matches_active_loans": """
        SELECT COUNT(*)
        FROM InventoryItems i
        LEFT JOIN (
            SELECT ItemID, SUM(Quantity) AS ActiveQuantity
            FROM LoanRecords
            WHERE Status IN ('Borrowed', 'Overdue')
            GROUP BY ItemID
        ) l ON l.ItemID = i.ItemID
        WHERE i.InUseQuantity <> COALESCE(l.ActiveQuantity, 0)
    """,
    "loans:active_unit_code_mirrors_status": """
        SELECT COUNT(*)
        FROM LoanRecords
        WHERE (Status IN ('Borrowed', 'Overdue') AND COALESCE(ActiveUnitCode, '') <> COALESCE(SpecificUnitCode, ''))
           OR (Status = 'Returned' AND ActiveUnitCode IS NOT NULL)
    """,
    "loans:orphan_itemid": """
        SELECT COUNT(*)
        FROM LoanRecords l
        LEFT JOIN InventoryItems i ON i.ItemID = l.ItemID
        WHERE i.ItemID IS NULL
    """,
    "requestlines:orphan_linkedloanid": """
        SELECT COUNT(*)
        FROM BorrowRequestLines rl
        LEFT JOIN LoanRecords l ON l.LoanID = rl.LinkedLoanID
        WHERE rl.LinkedLoanID IS NOT NULL AND l.LoanID IS NULL
    """,
    "requests:returned_with_active_loans": """
        SELECT COUNT(*)
        FROM BorrowRequests r
        JOIN BorrowRequestLines rl ON rl.RequestID = r.RequestID
        JOIN LoanRecords l ON l.LoanID = rl.LinkedLoanID
        WHERE r.Status = 'Returned' AND l.Status IN ('Borrowed', 'Overdue')
    """,
}


@dataclass
class CheckResult:
    name: str
    ok: bool
    detail: str


def _print_section(title: str) -> None:
    print(f"\n=== {title} ===")


def _get_engine(db_url: str) -> Engine:
    return create_engine(db_url, pool_pre_ping=True, future=True)


def _scalar(engine: Engine, sql: str, params: dict | None = None):
    with engine.connect() as conn:
        return conn.execute(text(sql), params or {}).scalar()


def _rows(engine: Engine, sql: str, params: dict | None = None):
    with engine.connect() as conn:
        return conn.execute(text(sql), params or {}).all()


def run_existence_checks(engine: Engine) -> list[CheckResult]:
    present = set(inspect(engine).get_table_names())
    return [
        CheckResult(f"table:{table}", table in present, "present" if table in present else "missing")
        for table in EXPECTED_TABLES
    ]


def run_column_checks(engine: Engine) -> list[CheckResult]:
    inspector = inspect(engine)
    present = set(inspector.get_table_names())
    results: list[CheckResult] = []
    for table, expected in EXPECTED_COLUMNS.items():
        if table not in present:
            results.append(CheckResult(f"columns:{table}", False, "table missing"))
            continue
        actual = {column["name"] for column in inspector.get_columns(table)}
        missing = [name for name in expected if name not in actual]
        results.append(
            CheckResult(
                f"columns:{table}",
                not missing,
                "ok" if not missing else f"missing={','.join(missing)}",
            )
        )
    return results


def run_integrity_checks(engine: Engine) -> list[CheckResult]:
    present = set(inspect(engine).get_table_names())
    if not set(EXPECTED_TABLES[:4]) <= present:
        return [CheckResult("integrity", False, "lending tables missing")]

    checks: list[CheckResult] = []
    for name, sql in INTEGRITY_QUERIES.items():
        count = int(_scalar(engine, sql) or 0)
        checks.append(CheckResult(name, count == 0, f"count={count}"))
    return checks


def _print_results(title: str, rows: Iterable[CheckResult]) -> None:
    _print_section(title)
    for row in rows:
        status = "OK" if row.ok else "FAIL"
        print(f"[{status}] {row.name} :: {row.detail}")


def _print_row_counts(engine: Engine) -> None:
    _print_section("Row Counts")
    present = set(inspect(engine).get_table_names())
    for table in EXPECTED_TABLES:
        if table not in present:
            print(f"{table}: missing")
            continue
        count = _scalar(engine, f"SELECT COUNT(*) FROM {table}")
        print(f"{table}: {int(count or 0)}")


def _print_samples(engine: Engine, sample_size: int) -> None:
    _print_section("Sample Values")
    sample_size = max(1, sample_size)
    present = set(inspect(engine).get_table_names())

    if "InventoryItems" in present:
        rows = _rows(
            engine,
            """
            SELECT ItemID, ShortCode, TotalQuantity, InUseQuantity, BorrowCap
            FROM InventoryItems
            ORDER BY ItemID DESC
            LIMIT :n
            """,
            {"n": sample_size},
        )
        print("InventoryItems (recent):")
        for row in rows:
            print(f"  - {tuple(row)}")

    if "LoanRecords" in present:
        rows = _rows(
            engine,
            """
            SELECT LoanID, ItemID, Quantity, SpecificUnitCode, Status, DueOn
            FROM LoanRecords
            ORDER BY LoanID DESC
            LIMIT :n
            """,
            {"n": sample_size},
        )
        print("LoanRecords (recent):")
        for row in rows:
            print(f"  - {tuple(row)}")


def main() -> int:
    parser = argparse.ArgumentParser(description="Lab Lending DB overview")
    parser.add_argument("--db-url", default=os.environ.get("LAB_LENDING_DB_URL", ""))
    parser.add_argument("--samples", type=int, default=5)
    args = parser.parse_args()

    db_url = (args.db_url or "").strip()
    if not db_url:
        print("LAB_LENDING_DB_URL is not set. Provide --db-url or export env first.")
        return 2

    try:
        engine = _get_engine(db_url)
        _scalar(engine, "SELECT 1")
    except Exception as exc:
        print(f"Could not connect to DB: {exc}")
        return 3

    integrity = run_integrity_checks(engine)
    _print_results("Table Existence", run_existence_checks(engine))
    _print_results("Column Checks", run_column_checks(engine))
    _print_results("Integrity Checks", integrity)
    _print_row_counts(engine)
    _print_samples(engine, args.samples)
    return 0 if all(check.ok for check in integrity) else 1


if __name__ == "__main__":
    sys.exit(main())
