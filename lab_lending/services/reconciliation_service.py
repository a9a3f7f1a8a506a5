"""Multi-record operations over loans and the requests that link to them.

Batches run strictly one id at a time and never stop on a failed id; each id
gets a ``BatchOutcome`` so callers can tell what succeeded, what was already
done, and what failed and why.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterable

from sqlalchemy import delete, func, select, update
from sqlalchemy.orm import Session

from db.store import store_call
from models.lending_models import (
    ACTIVE_LOAN_STATES,
    LOAN_RETURNED,
    REQUEST_APPROVED,
    REQUEST_RELEASED,
    REQUEST_RETURNED,
    BorrowRequest,
    BorrowRequestLine,
    LoanRecord,
)
from services.activity_service import log_audit, queue_notification
from services.clock import DEFAULT_CLOCK, Clock
from services.errors import AlreadyTerminal, Conflict, LendingError, PartiallyApplied
from services.ledger_service import release
from services.loan_service import Disposition, complete_loan, get_loan


RECONCILIATION_LOGGER = logging.getLogger("lab_lending.reconciliation")

OUTCOME_OK = "ok"
OUTCOME_ALREADY_RETURNED = "already_returned"
OUTCOME_FAILED = "failed"

_RESYNCABLE_REQUEST_STATES = (REQUEST_APPROVED, REQUEST_RELEASED)


@dataclass
class BatchOutcome:
    id: int
    outcome: str
    error_code: str | None = None
    message: str | None = None

    @property
    def ok(self) -> bool:
        return self.outcome == OUTCOME_OK

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "outcome": self.outcome,
            "errorCode": self.error_code,
            "message": self.message,
        }


def return_loan(
    db: Session,
    loan_id: int,
    disposition: Disposition | None = None,
    clock: Clock = DEFAULT_CLOCK,
) -> LoanRecord:
    try:
        loan = complete_loan(db, loan_id, disposition, clock)
    except PartiallyApplied:
        # The loan itself is Returned even though the write-off is missing.
        resync_request_status(db, loan_id)
        raise
    resync_request_status(db, loan.LoanID)
    return loan


def bulk_complete(db: Session, loan_ids: Iterable[int], clock: Clock = DEFAULT_CLOCK) -> list[BatchOutcome]:
    outcomes: list[BatchOutcome] = []
    for loan_id in loan_ids:
        try:
            return_loan(db, loan_id, None, clock)
            outcomes.append(BatchOutcome(id=loan_id, outcome=OUTCOME_OK))
        except AlreadyTerminal as exc:
            outcomes.append(BatchOutcome(id=loan_id, outcome=OUTCOME_ALREADY_RETURNED, message=exc.message))
        except LendingError as exc:
            RECONCILIATION_LOGGER.warning(
                "Bulk return failed loan_id=%s code=%s message=%s", loan_id, exc.code, exc.message
            )
            outcomes.append(
                BatchOutcome(id=loan_id, outcome=OUTCOME_FAILED, error_code=exc.code, message=exc.message)
            )
    _log_batch("bulk_complete", outcomes)
    return outcomes


def delete_loan(db: Session, loan_id: int) -> dict:
    """Remove a loan outright. Active loans give their quantity back; nothing is written off."""
    loan = get_loan(db, loan_id)
    was_active = loan.Status in ACTIVE_LOAN_STATES
    item_id = loan.ItemID
    quantity = int(loan.Quantity)
    request_id = db.execute(
        select(BorrowRequestLine.RequestID).where(BorrowRequestLine.LinkedLoanID == loan_id)
    ).scalars().first()

    status_guard = (
        LoanRecord.Status.in_(sorted(ACTIVE_LOAN_STATES)) if was_active else LoanRecord.Status == LOAN_RETURNED
    )
    with store_call(db, "delete_loan"):
        result = db.execute(delete(LoanRecord).where(LoanRecord.LoanID == loan_id).where(status_guard))
        if result.rowcount != 1:
            raise Conflict(f"Loan {loan_id} changed while it was being deleted; retry.", loanID=loan_id)
        if was_active:
            release(db, item_id, quantity)
        db.execute(
            update(BorrowRequestLine)
            .where(BorrowRequestLine.LinkedLoanID == loan_id)
            .values(LinkedLoanID=None)
        )
        log_audit(db, "LoanRecord", loan_id, "Deleted", f"item={item_id} qty={quantity} active={was_active}")

    RECONCILIATION_LOGGER.info(
        "Loan deleted loan_id=%s item_id=%s released=%s", loan_id, item_id, quantity if was_active else 0
    )
    if request_id is not None:
        request = db.get(BorrowRequest, request_id, populate_existing=True)
        if request is not None:
            _resync_request(db, request)

    return {
        "loanID": loan_id,
        "itemID": item_id,
        "wasActive": was_active,
        "releasedQuantity": quantity if was_active else 0,
        "requestID": request_id,
    }


def bulk_delete_loans(db: Session, loan_ids: Iterable[int]) -> list[BatchOutcome]:
    outcomes: list[BatchOutcome] = []
    for loan_id in loan_ids:
        try:
            delete_loan(db, loan_id)
            outcomes.append(BatchOutcome(id=loan_id, outcome=OUTCOME_OK))
        except LendingError as exc:
            RECONCILIATION_LOGGER.warning(
                "Bulk delete failed loan_id=%s code=%s message=%s", loan_id, exc.code, exc.message
            )
            outcomes.append(
                BatchOutcome(id=loan_id, outcome=OUTCOME_FAILED, error_code=exc.code, message=exc.message)
            )
    _log_batch("bulk_delete_loans", outcomes)
    return outcomes


def resync_request_status(db: Session, loan_id: int) -> BorrowRequest | None:
    request_id = db.execute(
        select(BorrowRequestLine.RequestID).where(BorrowRequestLine.LinkedLoanID == loan_id)
    ).scalars().first()
    if request_id is None:
        return None
    request = db.get(BorrowRequest, request_id, populate_existing=True)
    if request is None:
        return None
    _resync_request(db, request)
    return request


def _resync_request(db: Session, request: BorrowRequest) -> bool:
    if request.Status not in _RESYNCABLE_REQUEST_STATES:
        return False

    linked = db.execute(
        select(BorrowRequestLine.LinkedLoanID).where(BorrowRequestLine.RequestID == request.RequestID)
    ).scalars().all()
    if not linked or any(loan_id is None for loan_id in linked):
        return False

    returned = db.execute(
        select(func.count())
        .select_from(LoanRecord)
        .where(LoanRecord.LoanID.in_(linked))
        .where(LoanRecord.Status == LOAN_RETURNED)
    ).scalar_one()
    if returned != len(set(linked)):
        return False

    with store_call(db, "resync_request"):
        result = db.execute(
            update(BorrowRequest)
            .where(BorrowRequest.RequestID == request.RequestID)
            .where(BorrowRequest.Status.in_(_RESYNCABLE_REQUEST_STATES))
            .values(Status=REQUEST_RETURNED)
            .execution_options(synchronize_session=False)
        )
        changed = result.rowcount == 1
        if changed:
            log_audit(db, "BorrowRequest", request.RequestID, "Returned", "all linked loans returned")
            queue_notification(
                db,
                "RequestReturned",
                f"Request {request.ReferenceCode} fully returned.",
                request_id=request.RequestID,
            )

    db.refresh(request)
    if changed:
        RECONCILIATION_LOGGER.info("Request returned request_id=%s", request.RequestID)
    return changed


def _log_batch(operation: str, outcomes: list[BatchOutcome]) -> None:
    failed = sum(1 for outcome in outcomes if outcome.outcome == OUTCOME_FAILED)
    RECONCILIATION_LOGGER.info(
        "Batch finished operation=%s total=%s ok=%s failed=%s",
        operation,
        len(outcomes),
        sum(1 for outcome in outcomes if outcome.ok),
        failed,
    )
