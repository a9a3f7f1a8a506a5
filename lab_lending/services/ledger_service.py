"""Stock ledger: the only writer of an item's quantity columns.

Every mutation is a single conditional ``UPDATE`` evaluated by the database,
never a read in one statement followed by a write in another. The functions
here do not commit; callers wrap them in ``db.store.store_call`` so each
ledger step is one durable store call.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import and_, case, func, update
from sqlalchemy.orm import Session

from models.lending_models import InventoryItem
from services.errors import Conflict, InsufficientStock, NotFound, ValidationError
from services.identity_service import find_active_unit_loan


LEDGER_LOGGER = logging.getLogger("lab_lending.ledger")


@dataclass
class Reservation:
    item_id: int
    quantity: int
    specific_unit_code: str | None = None


def lendable_quantity(item: InventoryItem) -> int:
    if item.BorrowCap is not None:
        return int(item.BorrowCap)
    return int(item.TotalQuantity or 0)


def available_quantity(item: InventoryItem) -> int:
    return max(0, lendable_quantity(item) - int(item.InUseQuantity or 0))


def stock_snapshot(db: Session, item_id: int) -> InventoryItem:
    item = db.get(InventoryItem, item_id, populate_existing=True)
    if not item:
        raise NotFound(f"Item {item_id} not found.", itemID=item_id)
    return item


def reserve(db: Session, item_id: int, quantity: int, specific_unit_code: str | None = None) -> Reservation:
    quantity = _require_positive(quantity)
    unit_code = (specific_unit_code or "").strip().upper() or None
    if unit_code and find_active_unit_loan(db, unit_code) is not None:
        raise Conflict(f"Unit {unit_code} is already out on loan.", unitCode=unit_code)

    limit = func.coalesce(InventoryItem.BorrowCap, InventoryItem.TotalQuantity)
    result = db.execute(
        update(InventoryItem)
        .where(InventoryItem.ItemID == item_id)
        .where(InventoryItem.InUseQuantity + quantity <= limit)
        .values(InUseQuantity=InventoryItem.InUseQuantity + quantity, UpdatedDate=datetime.now())
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        item = stock_snapshot(db, item_id)
        LEDGER_LOGGER.warning(
            "Reservation rejected item_id=%s requested=%s available=%s",
            item_id,
            quantity,
            available_quantity(item),
        )
        raise InsufficientStock(item_id, quantity, available_quantity(item), item.ItemName)

    LEDGER_LOGGER.info("Reserved item_id=%s quantity=%s unit=%s", item_id, quantity, unit_code)
    return Reservation(item_id=item_id, quantity=quantity, specific_unit_code=unit_code)


def release(db: Session, item_id: int, quantity: int) -> None:
    quantity = _require_positive(quantity)
    in_use = InventoryItem.InUseQuantity
    result = db.execute(
        update(InventoryItem)
        .where(InventoryItem.ItemID == item_id)
        .values(
            InUseQuantity=case((in_use > quantity, in_use - quantity), else_=0),
            UpdatedDate=datetime.now(),
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise NotFound(f"Item {item_id} not found.", itemID=item_id)
    LEDGER_LOGGER.info("Released item_id=%s quantity=%s", item_id, quantity)


def write_off(db: Session, item_id: int, quantity: int) -> None:
    """Permanently remove damaged or disposed units. Call after ``release`` for the same units."""
    quantity = _require_positive(quantity)
    total = InventoryItem.TotalQuantity
    cap = InventoryItem.BorrowCap
    new_total = case((total > quantity, total - quantity), else_=0)
    result = db.execute(
        update(InventoryItem)
        .where(InventoryItem.ItemID == item_id)
        .values(
            TotalQuantity=new_total,
            BorrowCap=case((and_(cap.is_not(None), cap > new_total), new_total), else_=cap),
            UpdatedDate=datetime.now(),
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise NotFound(f"Item {item_id} not found.", itemID=item_id)
    LEDGER_LOGGER.info("Wrote off item_id=%s quantity=%s", item_id, quantity)


def set_borrow_cap(db: Session, item_id: int, cap: int | None) -> None:
    stmt = update(InventoryItem).where(InventoryItem.ItemID == item_id)
    if cap is not None:
        if isinstance(cap, bool) or not isinstance(cap, int) or cap < 0:
            raise ValidationError("Borrow cap must be a non-negative integer.", borrowCap=cap)
        stmt = stmt.where(InventoryItem.InUseQuantity <= cap).where(InventoryItem.TotalQuantity >= cap)

    result = db.execute(
        stmt.values(BorrowCap=cap, UpdatedDate=datetime.now()).execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        item = stock_snapshot(db, item_id)
        raise ValidationError(
            f"Borrow cap must lie between {int(item.InUseQuantity or 0)} (in use) and {int(item.TotalQuantity or 0)} (total).",
            itemID=item_id,
            borrowCap=cap,
        )
    LEDGER_LOGGER.info("Borrow cap set item_id=%s cap=%s", item_id, cap)


def _require_positive(quantity: int) -> int:
    if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity < 1:
        raise ValidationError("Quantity must be a whole number of at least 1.", quantity=quantity)
    return quantity
