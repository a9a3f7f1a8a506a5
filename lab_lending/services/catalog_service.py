from __future__ import annotations

import logging
import os
import re
import secrets
from datetime import datetime
from typing import Any

from sqlalchemy import func, or_, select
from sqlalchemy.orm import Session

from db.store import store_call
from models.lending_models import (
    ACTIVE_LOAN_STATES,
    LOAN_OVERDUE,
    REQUEST_PENDING,
    BorrowRequest,
    BorrowRequestLine,
    InventoryItem,
    LoanRecord,
)
from services.activity_service import log_audit
from services.errors import Conflict, NotFound, ValidationError
from services.ledger_service import available_quantity, lendable_quantity, set_borrow_cap


CATALOG_LOGGER = logging.getLogger("lab_lending.catalog")

DEFAULT_LOW_STOCK_THRESHOLD = 5
_SHORT_CODE_PATTERN = re.compile(r"^[A-Z0-9]{3,}(?:-\d{3,4})?$")

_ITEM_FIELD_MAP = {
    "shortCode": "ShortCode",
    "itemName": "ItemName",
    "category": "Category",
    "unit": "Unit",
    "location": "Location",
    "condition": "Condition",
    "description": "Description",
    "safetyNotes": "SafetyNotes",
    "isConsumable": "IsConsumable",
}


def low_stock_threshold() -> int:
    raw = os.environ.get("LAB_LENDING_LOW_STOCK_THRESHOLD", "").strip()
    if not raw:
        return DEFAULT_LOW_STOCK_THRESHOLD
    try:
        return max(0, int(raw))
    except ValueError:
        CATALOG_LOGGER.warning("Ignoring invalid LAB_LENDING_LOW_STOCK_THRESHOLD=%s", raw)
        return DEFAULT_LOW_STOCK_THRESHOLD


def generate_short_code(db: Session, category: str | None) -> str:
    prefix = re.sub(r"[^A-Za-z0-9]", "", category or "").upper()[:3].ljust(3, "X")
    for _ in range(25):
        candidate = f"{prefix}-{1000 + secrets.randbelow(9000)}"
        if _find_by_short_code(db, candidate) is None:
            return candidate
    raise Conflict(f"Could not allocate a unique short code for prefix {prefix}.")


def get_item(db: Session, item_id: int) -> InventoryItem:
    item = db.get(InventoryItem, item_id, populate_existing=True)
    if not item:
        raise NotFound(f"Item {item_id} not found.", itemID=item_id)
    return item


def find_item_by_code(db: Session, code: str) -> InventoryItem:
    token = (code or "").strip().upper()
    item = None
    if token.isdigit():
        item = db.get(InventoryItem, int(token))
    if item is None and token:
        item = _find_by_short_code(db, token)
    if item is None:
        raise NotFound(f"No item matches {code!r}.", code=code)
    return item


def list_items(db: Session, search: str | None = None, category: str | None = None) -> list[InventoryItem]:
    stmt = select(InventoryItem)
    if category:
        stmt = stmt.where(func.lower(InventoryItem.Category) == category.strip().lower())
    term = (search or "").strip().lower()
    if term:
        stmt = stmt.where(
            or_(
                func.lower(InventoryItem.ItemName).contains(term, autoescape=True),
                func.lower(InventoryItem.ShortCode).contains(term, autoescape=True),
                func.lower(InventoryItem.Location).contains(term, autoescape=True),
            )
        )
    return list(db.execute(stmt.order_by(InventoryItem.ItemName, InventoryItem.ItemID)).scalars().all())


def create_item(db: Session, payload: dict[str, Any]) -> InventoryItem:
    name = str(payload.get("itemName") or "").strip()
    if not name:
        raise ValidationError("Item name is required.")

    total = payload.get("totalQuantity", 0)
    if isinstance(total, bool) or not isinstance(total, int) or total < 0:
        raise ValidationError("Total quantity must be a non-negative whole number.", totalQuantity=total)
    cap = payload.get("borrowCap")
    if cap is not None and (isinstance(cap, bool) or not isinstance(cap, int) or not 0 <= cap <= total):
        raise ValidationError("Borrow cap must lie between 0 and the total quantity.", borrowCap=cap)

    item = InventoryItem()
    for field, value in payload.items():
        column = _ITEM_FIELD_MAP.get(field)
        if column:
            setattr(item, column, value)
    item.ItemName = name
    item.IsConsumable = bool(payload.get("isConsumable") or False)

    short_code = str(payload.get("shortCode") or "").strip().upper()
    if short_code:
        _validate_short_code(db, short_code)
        item.ShortCode = short_code
    else:
        item.ShortCode = generate_short_code(db, payload.get("category"))

    item.TotalQuantity = total
    item.InUseQuantity = 0
    item.BorrowCap = cap
    item.CreatedDate = datetime.now()
    item.UpdatedDate = datetime.now()

    with store_call(db, "create_item"):
        db.add(item)
        db.flush()
        log_audit(db, "InventoryItem", item.ItemID, "Created", f"code={item.ShortCode} total={total} cap={cap}")

    CATALOG_LOGGER.info("Item created item_id=%s short_code=%s total=%s", item.ItemID, item.ShortCode, total)
    return item


def update_item_details(db: Session, item_id: int, payload: dict[str, Any]) -> InventoryItem:
    item = get_item(db, item_id)
    if "itemName" in payload and not str(payload.get("itemName") or "").strip():
        raise ValidationError("Item name cannot be empty.")

    new_code = payload.get("shortCode")
    if new_code is not None:
        new_code = str(new_code).strip().upper()
        if new_code != item.ShortCode:
            if db.execute(
                select(LoanRecord.LoanID).where(LoanRecord.ItemID == item_id).where(LoanRecord.SpecificUnitCode.is_not(None))
            ).first():
                raise Conflict("Short code is locked once unit-bound loans exist.", itemID=item_id)
            _validate_short_code(db, new_code)
        payload = {**payload, "shortCode": new_code}

    with store_call(db, "update_item"):
        for field, value in payload.items():
            column = _ITEM_FIELD_MAP.get(field)
            if column:
                setattr(item, column, value)
        item.UpdatedDate = datetime.now()
        log_audit(db, "InventoryItem", item_id, "Updated", ",".join(sorted(payload.keys())))

    return item


def change_borrow_cap(db: Session, item_id: int, cap: int | None) -> InventoryItem:
    with store_call(db, "set_borrow_cap"):
        set_borrow_cap(db, item_id, cap)
        log_audit(db, "InventoryItem", item_id, "BorrowCapChanged", f"cap={cap}")
    return get_item(db, item_id)


def delete_item(db: Session, item_id: int) -> None:
    item = get_item(db, item_id)
    active = db.execute(
        select(func.count())
        .select_from(LoanRecord)
        .where(LoanRecord.ItemID == item_id)
        .where(LoanRecord.Status.in_(sorted(ACTIVE_LOAN_STATES)))
    ).scalar_one()
    if active:
        raise Conflict(f"{item.ItemName} has {active} active loan(s).", itemID=item_id, activeLoans=active)
    history = db.execute(
        select(LoanRecord.LoanID).where(LoanRecord.ItemID == item_id).limit(1)
    ).first() or db.execute(
        select(BorrowRequestLine.LineID).where(BorrowRequestLine.ItemID == item_id).limit(1)
    ).first()
    if history:
        raise Conflict(f"{item.ItemName} is referenced by loans or requests.", itemID=item_id)

    with store_call(db, "delete_item"):
        db.delete(item)
        log_audit(db, "InventoryItem", item_id, "Deleted", item.ShortCode)
    CATALOG_LOGGER.info("Item deleted item_id=%s", item_id)


def serialize_item(item: InventoryItem) -> dict:
    total = int(item.TotalQuantity or 0)
    lendable = lendable_quantity(item)
    return {
        "itemID": item.ItemID,
        "shortCode": item.ShortCode,
        "itemName": item.ItemName,
        "category": item.Category,
        "unit": item.Unit,
        "location": item.Location,
        "condition": item.Condition,
        "description": item.Description,
        "safetyNotes": item.SafetyNotes,
        "isConsumable": bool(item.IsConsumable),
        "totalQuantity": total,
        "inUseQuantity": int(item.InUseQuantity or 0),
        "borrowCap": item.BorrowCap,
        "sealedQuantity": total - lendable,
        "available": available_quantity(item),
        "createdDate": item.CreatedDate,
        "updatedDate": item.UpdatedDate,
    }


def stock_summary(db: Session, threshold: int | None = None) -> dict:
    limit = low_stock_threshold() if threshold is None else threshold
    items = db.execute(select(InventoryItem).order_by(InventoryItem.ItemName)).scalars().all()
    low_stock = [
        {
            "itemID": item.ItemID,
            "shortCode": item.ShortCode,
            "itemName": item.ItemName,
            "available": available_quantity(item),
        }
        for item in items
        if available_quantity(item) < limit
    ]
    active_loans = db.execute(
        select(func.count()).select_from(LoanRecord).where(LoanRecord.Status.in_(sorted(ACTIVE_LOAN_STATES)))
    ).scalar_one()
    overdue_loans = db.execute(
        select(func.count()).select_from(LoanRecord).where(LoanRecord.Status == LOAN_OVERDUE)
    ).scalar_one()
    pending_requests = db.execute(
        select(func.count()).select_from(BorrowRequest).where(BorrowRequest.Status == REQUEST_PENDING)
    ).scalar_one()
    return {
        "itemCount": len(items),
        "totalQuantity": sum(int(item.TotalQuantity or 0) for item in items),
        "inUseQuantity": sum(int(item.InUseQuantity or 0) for item in items),
        "available": sum(available_quantity(item) for item in items),
        "activeLoans": active_loans,
        "overdueLoans": overdue_loans,
        "pendingRequests": pending_requests,
        "lowStockThreshold": limit,
        "lowStock": low_stock,
    }


def _validate_short_code(db: Session, short_code: str) -> None:
    if not _SHORT_CODE_PATTERN.match(short_code):
        raise ValidationError(
            "Short code must be 3+ letters/digits, optionally followed by '-' and 3-4 digits.",
            shortCode=short_code,
        )
    if _find_by_short_code(db, short_code) is not None:
        raise Conflict(f"Short code {short_code} is already in use.", shortCode=short_code)


def _find_by_short_code(db: Session, short_code: str) -> InventoryItem | None:
    return db.execute(
        select(InventoryItem).where(func.upper(InventoryItem.ShortCode) == short_code.upper())
    ).scalars().first()
