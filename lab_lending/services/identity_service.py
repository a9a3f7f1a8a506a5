"""Serialized per-unit codes for bulk-counted items.

An item with short code ``CHE-1024`` and a total of 12 units owns the unit
codes ``CHE-1024-001`` .. ``CHE-1024-012``. A unit code is bound to a loan
through ``LoanRecord.SpecificUnitCode``; a unit is "out" exactly when an
active loan carries its code.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Iterable

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from models.lending_models import ACTIVE_LOAN_STATES, InventoryItem, LoanRecord
from services.errors import NotFound, ValidationError


KIND_SPECIFIC_UNIT = "specific_unit"
KIND_SHORT_CODE_OR_ID = "short_code_or_id"
KIND_FREE_TEXT = "free_text"

STATUS_ON_LOAN = "on_loan"
STATUS_AVAILABLE = "available"
STATUS_UNKNOWN_UNIT = "unknown_unit"
STATUS_ITEM = "item"
STATUS_NOT_FOUND = "not_found"

_SPECIFIC_UNIT_PATTERN = re.compile(r"^(?P<prefix>[A-Z0-9]{3,})(?:-(?P<batch>\d{3,4}))?-(?P<sequence>\d{3})$")
_CODE_TOKEN_PATTERN = re.compile(r"^[A-Z0-9][A-Z0-9-]*$")


@dataclass
class ScanResult:
    kind: str
    raw: str
    normalized: str
    short_code: str | None = None
    sequence: int | None = None

    @property
    def query(self) -> str:
        return self.raw.strip()


@dataclass
class ScanResolution:
    status: str
    scan: ScanResult
    item: InventoryItem | None = None
    unit_code: str | None = None
    active_loan: LoanRecord | None = None
    active_loans: list[LoanRecord] = field(default_factory=list)
    matches: list[InventoryItem] = field(default_factory=list)

    @property
    def can_borrow(self) -> bool:
        return self.status == STATUS_AVAILABLE

    @property
    def can_return(self) -> bool:
        return self.status == STATUS_ON_LOAN


def sequence_code(short_code: str, n: int) -> str:
    if n < 1:
        raise ValidationError("Unit sequence must be 1 or greater.", sequence=n)
    return f"{short_code}-{n:03d}"


def parse_scan(raw: str | None) -> ScanResult:
    text = raw if isinstance(raw, str) else ""
    normalized = text.strip().upper()
    if not normalized:
        return ScanResult(kind=KIND_FREE_TEXT, raw=text, normalized="")

    match = _SPECIFIC_UNIT_PATTERN.match(normalized)
    if match:
        short_code = match.group("prefix")
        if match.group("batch"):
            short_code = f"{short_code}-{match.group('batch')}"
        return ScanResult(
            kind=KIND_SPECIFIC_UNIT,
            raw=text,
            normalized=normalized,
            short_code=short_code,
            sequence=int(match.group("sequence")),
        )

    if _CODE_TOKEN_PATTERN.match(normalized):
        return ScanResult(kind=KIND_SHORT_CODE_OR_ID, raw=text, normalized=normalized)
    return ScanResult(kind=KIND_FREE_TEXT, raw=text, normalized=normalized)


def unit_belongs_to_item(item: InventoryItem, unit_code: str) -> bool:
    scan = parse_scan(unit_code)
    if scan.kind != KIND_SPECIFIC_UNIT or scan.short_code != (item.ShortCode or "").upper():
        return False
    return 1 <= int(scan.sequence or 0) <= int(item.TotalQuantity or 0)


def find_active_unit_loan(db: Session, unit_code: str) -> LoanRecord | None:
    return db.execute(
        select(LoanRecord).where(LoanRecord.ActiveUnitCode == unit_code.strip().upper())
    ).scalars().first()


def resolve_scan(db: Session, raw: str | None) -> ScanResolution:
    scan = parse_scan(raw)

    if scan.kind == KIND_SPECIFIC_UNIT:
        item = _find_by_short_code(db, scan.short_code or "")
        if item is not None:
            return _resolve_unit(db, scan, item)

    if scan.kind in {KIND_SPECIFIC_UNIT, KIND_SHORT_CODE_OR_ID}:
        item = _find_exact(db, scan.normalized)
        if item is not None:
            return ScanResolution(
                status=STATUS_ITEM,
                scan=scan,
                item=item,
                active_loans=_active_loans_for_item(db, item.ItemID),
            )

    query = scan.query
    if query:
        matches = db.execute(
            select(InventoryItem)
            .where(func.lower(InventoryItem.ItemName).contains(query.lower(), autoescape=True))
            .order_by(InventoryItem.ItemName, InventoryItem.ItemID)
        ).scalars().all()
        if matches:
            return ScanResolution(
                status=STATUS_ITEM,
                scan=scan,
                item=matches[0],
                matches=list(matches),
                active_loans=_active_loans_for_item(db, matches[0].ItemID),
            )

    return ScanResolution(status=STATUS_NOT_FOUND, scan=scan)


def build_unit_audit(db: Session, item_id: int, scanned_codes: Iterable[str] | None = None) -> dict:
    item = db.get(InventoryItem, item_id, populate_existing=True)
    if not item:
        raise NotFound(f"Item {item_id} not found.", itemID=item_id)

    scanned = {str(code).strip().upper() for code in (scanned_codes or []) if code and str(code).strip()}
    borrowed = {
        code
        for code in db.execute(
            select(LoanRecord.ActiveUnitCode)
            .where(LoanRecord.ItemID == item_id)
            .where(LoanRecord.ActiveUnitCode.is_not(None))
        ).scalars().all()
    }

    grid = []
    total = int(item.TotalQuantity or 0)
    for n in range(1, total + 1):
        unit_code = sequence_code(item.ShortCode, n)
        if unit_code in scanned:
            status = "present"
        elif unit_code in borrowed:
            status = "borrowed"
        else:
            status = "missing"
        grid.append({"sequence": f"{n:03d}", "unitCode": unit_code, "status": status})

    # Units written off below their sequence stay on the grid while still lent out.
    for unit_code in sorted(borrowed):
        unit = parse_scan(unit_code)
        if unit.kind == KIND_SPECIFIC_UNIT and int(unit.sequence or 0) > total:
            status = "present" if unit_code in scanned else "borrowed"
            grid.append({"sequence": f"{unit.sequence:03d}", "unitCode": unit_code, "status": status})
    grid.sort(key=lambda slot: int(slot["sequence"]))

    expected = {slot["unitCode"] for slot in grid}
    slots = len(grid)
    present = sum(1 for slot in grid if slot["status"] == "present")
    on_loan = sum(1 for slot in grid if slot["status"] == "borrowed")
    missing = slots - present - on_loan
    accuracy = round(100 * (present + on_loan) / slots) if slots else 100
    return {
        "itemID": item.ItemID,
        "shortCode": item.ShortCode,
        "itemName": item.ItemName,
        "stats": {
            "total": slots,
            "present": present,
            "borrowed": on_loan,
            "missing": missing,
            "accuracy": accuracy,
        },
        "units": grid,
        "mismatched": sorted(scanned - expected),
    }


def _resolve_unit(db: Session, scan: ScanResult, item: InventoryItem) -> ScanResolution:
    sequence = int(scan.sequence or 0)
    unit_code = sequence_code(item.ShortCode, sequence) if sequence >= 1 else scan.normalized

    # A unit still out on loan resolves even after write-offs shrank the total.
    loan = find_active_unit_loan(db, unit_code)
    if loan is not None and loan.Status in ACTIVE_LOAN_STATES:
        return ScanResolution(status=STATUS_ON_LOAN, scan=scan, item=item, unit_code=unit_code, active_loan=loan)

    if sequence < 1 or sequence > int(item.TotalQuantity or 0):
        return ScanResolution(status=STATUS_UNKNOWN_UNIT, scan=scan, item=item, unit_code=scan.normalized)
    return ScanResolution(status=STATUS_AVAILABLE, scan=scan, item=item, unit_code=unit_code)


def _find_by_short_code(db: Session, short_code: str) -> InventoryItem | None:
    if not short_code:
        return None
    return db.execute(
        select(InventoryItem)
        .where(func.upper(InventoryItem.ShortCode) == short_code.upper())
        .execution_options(populate_existing=True)
    ).scalars().first()


def _find_exact(db: Session, token: str) -> InventoryItem | None:
    if token.isdigit():
        item = db.get(InventoryItem, int(token), populate_existing=True)
        if item is not None:
            return item
    return _find_by_short_code(db, token)


def _active_loans_for_item(db: Session, item_id: int) -> list[LoanRecord]:
    return list(
        db.execute(
            select(LoanRecord)
            .where(LoanRecord.ItemID == item_id)
            .where(LoanRecord.Status.in_(sorted(ACTIVE_LOAN_STATES)))
            .order_by(LoanRecord.DueOn, LoanRecord.LoanID)
        ).scalars().all()
    )
