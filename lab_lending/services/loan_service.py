from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date

from sqlalchemy import func, or_, select, update
from sqlalchemy.orm import Session

from db.store import store_call
from models.lending_models import (
    ACTIVE_LOAN_STATES,
    LOAN_BORROWED,
    LOAN_OVERDUE,
    LOAN_RETURNED,
    LOAN_STATES,
    BorrowRequest,
    BorrowRequestLine,
    InventoryItem,
    LoanRecord,
)
from services.activity_service import log_audit, queue_notification
from services.clock import DEFAULT_CLOCK, Clock
from services.errors import AlreadyTerminal, Conflict, NotFound, PartiallyApplied, UpstreamUnavailable, ValidationError
from services.identity_service import unit_belongs_to_item
from services.ledger_service import Reservation, release, reserve, stock_snapshot, write_off


LOAN_LOGGER = logging.getLogger("lab_lending.loans")


@dataclass
class Disposition:
    good: int
    defective: int = 0
    disposed: int = 0

    @property
    def written_off(self) -> int:
        return self.defective + self.disposed

    @classmethod
    def all_good(cls, quantity: int) -> "Disposition":
        return cls(good=quantity)


def get_loan(db: Session, loan_id: int) -> LoanRecord:
    loan = db.get(LoanRecord, loan_id, populate_existing=True)
    if not loan:
        raise NotFound(f"Loan {loan_id} not found.", loanID=loan_id)
    return loan


def create_loan(
    db: Session,
    item_id: int,
    quantity: int,
    due_on: date,
    borrower_name: str,
    borrower_id: str | None = None,
    specific_unit_code: str | None = None,
    clock: Clock = DEFAULT_CLOCK,
    notes: str | None = None,
) -> LoanRecord:
    borrower_name = (borrower_name or "").strip()
    if not borrower_name:
        raise ValidationError("Borrower name is required.")
    if not isinstance(due_on, date):
        raise ValidationError("Due date is required.", dueOn=due_on)

    unit_code = (specific_unit_code or "").strip().upper() or None
    if unit_code:
        if quantity != 1:
            raise ValidationError("A loan bound to a specific unit must have quantity 1.", quantity=quantity)
        item = stock_snapshot(db, item_id)
        if not unit_belongs_to_item(item, unit_code):
            raise ValidationError(f"Unit {unit_code} does not belong to {item.ShortCode}.", unitCode=unit_code)

    with store_call(db, "reserve"):
        reservation = reserve(db, item_id, quantity, unit_code)

    today = clock.today()
    status = LOAN_OVERDUE if due_on < today else LOAN_BORROWED
    loan = LoanRecord(
        ItemID=item_id,
        BorrowerName=borrower_name,
        BorrowerID=(borrower_id or "").strip() or None,
        Quantity=reservation.quantity,
        SpecificUnitCode=reservation.specific_unit_code,
        ActiveUnitCode=reservation.specific_unit_code,
        BorrowedOn=today,
        DueOn=due_on,
        Status=status,
        Notes=notes,
    )
    try:
        with store_call(db, "create_loan"):
            db.add(loan)
            db.flush()
            log_audit(db, "LoanRecord", loan.LoanID, "Created", f"item={item_id} qty={quantity} status={status}")
    except Conflict as exc:
        # Lost the race for the unit code; hand the stock back.
        _compensate_reservation(db, reservation)
        if reservation.specific_unit_code:
            raise Conflict(
                f"Unit {reservation.specific_unit_code} was taken by another loan.",
                unitCode=reservation.specific_unit_code,
            ) from exc
        raise
    except UpstreamUnavailable as exc:
        LOAN_LOGGER.warning(
            "Loan insert failed after reservation item_id=%s quantity=%s", item_id, reservation.quantity
        )
        raise PartiallyApplied(
            "Stock was reserved but the loan record could not be written.",
            operation="create_loan",
            completed="reserve",
            missing="insert_loan",
            itemID=item_id,
            quantity=reservation.quantity,
            specificUnitCode=reservation.specific_unit_code,
        ) from exc

    LOAN_LOGGER.info(
        "Loan created loan_id=%s item_id=%s quantity=%s status=%s", loan.LoanID, item_id, quantity, status
    )
    return loan


def mark_overdue(db: Session, loan_id: int, clock: Clock = DEFAULT_CLOCK, notify: bool = False) -> bool:
    loan = get_loan(db, loan_id)
    if loan.Status != LOAN_BORROWED:
        return False
    with store_call(db, "mark_overdue"):
        result = db.execute(
            update(LoanRecord)
            .where(LoanRecord.LoanID == loan_id)
            .where(LoanRecord.Status == LOAN_BORROWED)
            .values(Status=LOAN_OVERDUE, UpdatedDate=clock.now())
            .execution_options(synchronize_session=False)
        )
        changed = result.rowcount == 1
        if changed:
            log_audit(db, "LoanRecord", loan_id, "Overdue", f"due={loan.DueOn}")
            if notify:
                queue_notification(
                    db,
                    "Overdue",
                    f"{loan.BorrowerName} is overdue returning loan {loan_id} (due {loan.DueOn}).",
                    loan_id=loan_id,
                )

    loan = get_loan(db, loan_id)
    if changed:
        LOAN_LOGGER.info("Loan marked overdue loan_id=%s due_on=%s", loan_id, loan.DueOn)
    return changed


def complete_loan(
    db: Session,
    loan_id: int,
    disposition: Disposition | None = None,
    clock: Clock = DEFAULT_CLOCK,
) -> LoanRecord:
    loan = get_loan(db, loan_id)
    if loan.Status not in ACTIVE_LOAN_STATES:
        raise AlreadyTerminal(f"Loan {loan_id} is already {loan.Status}.", loanID=loan_id, status=loan.Status)

    quantity = int(loan.Quantity)
    disposition = disposition or Disposition.all_good(quantity)
    _validate_disposition(disposition, quantity, consumable=bool(loan.Item is not None and loan.Item.IsConsumable))

    with store_call(db, "complete_loan"):
        result = db.execute(
            update(LoanRecord)
            .where(LoanRecord.LoanID == loan_id)
            .where(LoanRecord.Status.in_(sorted(ACTIVE_LOAN_STATES)))
            .values(
                Status=LOAN_RETURNED,
                ReturnedOn=clock.today(),
                GoodQuantity=disposition.good,
                DefectiveQuantity=disposition.defective,
                DisposedQuantity=disposition.disposed,
                ActiveUnitCode=None,
                UpdatedDate=clock.now(),
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise AlreadyTerminal(f"Loan {loan_id} was returned concurrently.", loanID=loan_id)
        release(db, loan.ItemID, quantity)
        log_audit(
            db,
            "LoanRecord",
            loan.LoanID,
            "Returned",
            f"good={disposition.good} defective={disposition.defective} disposed={disposition.disposed}",
        )

    loan = get_loan(db, loan_id)
    if disposition.written_off > 0:
        try:
            with store_call(db, "write_off"):
                write_off(db, loan.ItemID, disposition.written_off)
        except (NotFound, UpstreamUnavailable) as exc:
            LOAN_LOGGER.warning(
                "Write-off missing after return loan_id=%s item_id=%s quantity=%s",
                loan.LoanID,
                loan.ItemID,
                disposition.written_off,
            )
            raise PartiallyApplied(
                f"Loan {loan.LoanID} was returned but {disposition.written_off} unit(s) were not written off.",
                operation="complete_loan",
                completed="release",
                missing="write_off",
                loanID=loan.LoanID,
                itemID=loan.ItemID,
                quantity=disposition.written_off,
            ) from exc

    LOAN_LOGGER.info(
        "Loan returned loan_id=%s item_id=%s quantity=%s written_off=%s",
        loan.LoanID,
        loan.ItemID,
        quantity,
        disposition.written_off,
    )
    return loan


def list_loans(
    db: Session,
    status: str | None = None,
    search: str | None = None,
    clock: Clock = DEFAULT_CLOCK,
) -> list[LoanRecord]:
    stmt = select(LoanRecord).join(InventoryItem, InventoryItem.ItemID == LoanRecord.ItemID)
    if status:
        if status not in LOAN_STATES:
            raise ValidationError(f"Unknown loan status: {status}", status=status)
        if status == LOAN_OVERDUE:
            # Past-due loans the sweep has not reached yet count as overdue too.
            stmt = stmt.where(
                or_(
                    LoanRecord.Status == LOAN_OVERDUE,
                    (LoanRecord.Status == LOAN_BORROWED) & (LoanRecord.DueOn < clock.today()),
                )
            )
        else:
            stmt = stmt.where(LoanRecord.Status == status)

    term = (search or "").strip().lower()
    if term:
        reference_loans = (
            select(BorrowRequestLine.LinkedLoanID)
            .join(BorrowRequest, BorrowRequest.RequestID == BorrowRequestLine.RequestID)
            .where(func.lower(BorrowRequest.ReferenceCode).contains(term, autoescape=True))
        )
        stmt = stmt.where(
            or_(
                func.lower(LoanRecord.BorrowerName).contains(term, autoescape=True),
                func.lower(InventoryItem.ItemName).contains(term, autoescape=True),
                func.lower(InventoryItem.ShortCode).contains(term, autoescape=True),
                LoanRecord.LoanID.in_(reference_loans),
            )
        )

    return list(db.execute(stmt.order_by(LoanRecord.LoanID.desc())).scalars().all())


def serialize_loan(loan: LoanRecord, today: date | None = None) -> dict:
    current = today or date.today()
    is_active = loan.Status in ACTIVE_LOAN_STATES
    return {
        "loanID": loan.LoanID,
        "itemID": loan.ItemID,
        "borrowerName": loan.BorrowerName,
        "borrowerID": loan.BorrowerID,
        "quantity": loan.Quantity,
        "specificUnitCode": loan.SpecificUnitCode,
        "borrowedOn": loan.BorrowedOn,
        "dueOn": loan.DueOn,
        "returnedOn": loan.ReturnedOn,
        "status": loan.Status,
        "isActive": is_active,
        "isPastDue": is_active and loan.DueOn is not None and loan.DueOn < current,
        "disposition": {
            "good": loan.GoodQuantity,
            "defective": loan.DefectiveQuantity,
            "disposed": loan.DisposedQuantity,
        } if loan.Status == LOAN_RETURNED else None,
        "notes": loan.Notes,
        "item": {
            "itemID": loan.Item.ItemID,
            "shortCode": loan.Item.ShortCode,
            "itemName": loan.Item.ItemName,
        } if loan.Item else None,
        "createdDate": loan.CreatedDate,
        "updatedDate": loan.UpdatedDate,
    }


def _validate_disposition(disposition: Disposition, quantity: int, consumable: bool = False) -> None:
    parts = {"good": disposition.good, "defective": disposition.defective, "disposed": disposition.disposed}
    for name, value in parts.items():
        if isinstance(value, bool) or not isinstance(value, int) or value < 0:
            raise ValidationError(f"Disposition '{name}' must be a non-negative whole number.", **parts)
    if sum(parts.values()) != quantity:
        raise ValidationError(
            f"Disposition must account for exactly {quantity} unit(s).", quantity=quantity, **parts
        )
    if disposition.disposed and not consumable:
        raise ValidationError(
            "Only consumable items can be returned as disposed; use defective instead.", **parts
        )


def _compensate_reservation(db: Session, reservation: Reservation) -> None:
    try:
        with store_call(db, "release"):
            release(db, reservation.item_id, reservation.quantity)
    except (NotFound, UpstreamUnavailable) as exc:
        raise PartiallyApplied(
            "Stock was reserved for a loan that was never written and could not be released.",
            operation="create_loan",
            completed="reserve",
            missing="release",
            itemID=reservation.item_id,
            quantity=reservation.quantity,
        ) from exc
