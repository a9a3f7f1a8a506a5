from __future__ import annotations

import logging
import secrets
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import date
from typing import Iterable

from sqlalchemy import func, or_, select, update
from sqlalchemy.orm import Session

from db.store import store_call
from models.lending_models import (
    REQUEST_APPROVED,
    REQUEST_PENDING,
    REQUEST_REJECTED,
    REQUEST_RELEASED,
    REQUEST_STATES,
    BorrowRequest,
    BorrowRequestLine,
)
from services.activity_service import log_audit, queue_notification
from services.clock import DEFAULT_CLOCK, Clock
from services.errors import (
    AlreadyTerminal,
    Conflict,
    InsufficientStock,
    LendingError,
    NotFound,
    PartiallyApplied,
    UpstreamUnavailable,
    ValidationError,
)
from services.ledger_service import available_quantity, stock_snapshot
from services.loan_service import create_loan
from services.reconciliation_service import BatchOutcome, bulk_delete_loans


REQUEST_LOGGER = logging.getLogger("lab_lending.requests")

REFERENCE_PREFIX = "REQ"
_REFERENCE_ATTEMPTS = 25


@dataclass
class RequestLineInput:
    item_id: int
    quantity: int


@dataclass
class ApprovalResult:
    request: BorrowRequest
    approved: bool
    created_loan_ids: list[int] = field(default_factory=list)
    skipped_line_ids: list[int] = field(default_factory=list)
    failed_line_id: int | None = None
    failed_item_id: int | None = None
    error: LendingError | None = None

    @property
    def partial(self) -> bool:
        return not self.approved and self.error is not None

    def to_dict(self) -> dict:
        return {
            "requestID": self.request.RequestID,
            "referenceCode": self.request.ReferenceCode,
            "status": self.request.Status,
            "approved": self.approved,
            "partial": self.partial,
            "createdLoanIDs": list(self.created_loan_ids),
            "skippedLineIDs": list(self.skipped_line_ids),
            "failedLineID": self.failed_line_id,
            "failedItemID": self.failed_item_id,
            "error": self.error.to_dict() if self.error else None,
        }


def generate_reference_code(db: Session) -> str:
    for _ in range(_REFERENCE_ATTEMPTS):
        candidate = f"{REFERENCE_PREFIX}-{secrets.randbelow(1_000_000):06d}"
        taken = db.execute(
            select(BorrowRequest.RequestID).where(BorrowRequest.ReferenceCode == candidate)
        ).first()
        if not taken:
            return candidate
    raise Conflict("Could not allocate a unique request reference code.")


def get_request(db: Session, request_id: int) -> BorrowRequest:
    request = db.get(BorrowRequest, request_id, populate_existing=True)
    if not request:
        raise NotFound(f"Request {request_id} not found.", requestID=request_id)
    return request


def get_request_by_reference(db: Session, code: str) -> BorrowRequest:
    token = (code or "").strip().upper()
    request = db.execute(
        select(BorrowRequest).where(BorrowRequest.ReferenceCode == token)
    ).scalars().first()
    if not request:
        raise NotFound(f"Request {token or code} not found.", referenceCode=token)
    return request


def create_request(
    db: Session,
    borrower_name: str,
    borrower_id: str | None,
    desired_return_on: date,
    lines: Iterable[RequestLineInput],
    clock: Clock = DEFAULT_CLOCK,
    notes: str | None = None,
) -> BorrowRequest:
    borrower_name = (borrower_name or "").strip()
    if not borrower_name:
        raise ValidationError("Borrower name is required.")
    if not isinstance(desired_return_on, date):
        raise ValidationError("Desired return date is required.", desiredReturnOn=desired_return_on)

    lines = list(lines or [])
    if not lines:
        raise ValidationError("A request needs at least one line.")
    for line in lines:
        if isinstance(line.quantity, bool) or not isinstance(line.quantity, int) or line.quantity < 1:
            raise ValidationError("Line quantity must be a whole number of at least 1.", itemID=line.item_id)
    for item_id in {line.item_id for line in lines}:
        stock_snapshot(db, item_id)

    request = BorrowRequest(
        ReferenceCode=generate_reference_code(db),
        BorrowerName=borrower_name,
        BorrowerID=(borrower_id or "").strip() or None,
        RequestedOn=clock.today(),
        DesiredReturnOn=desired_return_on,
        Status=REQUEST_PENDING,
        AdminNotes=notes,
        Lines=[BorrowRequestLine(ItemID=line.item_id, Quantity=line.quantity) for line in lines],
    )
    with store_call(db, "create_request"):
        db.add(request)
        db.flush()
        log_audit(db, "BorrowRequest", request.RequestID, "Submitted", f"lines={len(lines)}")
        queue_notification(
            db,
            "RequestSubmitted",
            f"Request {request.ReferenceCode} submitted by {borrower_name}.",
            request_id=request.RequestID,
        )

    REQUEST_LOGGER.info(
        "Request created request_id=%s reference=%s lines=%s", request.RequestID, request.ReferenceCode, len(lines)
    )
    return request


def approve_request(db: Session, request_id: int, clock: Clock = DEFAULT_CLOCK) -> ApprovalResult:
    """Turn every unlinked line of a pending request into a loan.

    Preflight is all-or-nothing: if any item cannot cover the summed quantity
    of its lines, ``InsufficientStock`` is raised and nothing is touched.
    After preflight, lines are converted one at a time and linked as they go.
    A line failing at that stage stops the loop; converted lines keep their
    loans, the request stays ``Pending`` and the returned result is partial.
    Calling again later only processes the still-unlinked lines.
    """
    request = get_request(db, request_id)
    if request.Status != REQUEST_PENDING:
        raise AlreadyTerminal(
            f"Request {request.ReferenceCode} is {request.Status}, not Pending.",
            requestID=request_id,
            status=request.Status,
        )

    lines = list(request.Lines)
    open_lines = [line for line in lines if line.LinkedLoanID is None]
    result = ApprovalResult(
        request=request,
        approved=False,
        skipped_line_ids=[line.LineID for line in lines if line.LinkedLoanID is not None],
    )

    needed: dict[int, int] = defaultdict(int)
    for line in open_lines:
        needed[line.ItemID] += int(line.Quantity)
    for item_id, quantity in needed.items():
        item = stock_snapshot(db, item_id)
        available = available_quantity(item)
        if available < quantity:
            REQUEST_LOGGER.warning(
                "Approval preflight failed request_id=%s item_id=%s needed=%s available=%s",
                request_id,
                item_id,
                quantity,
                available,
            )
            raise InsufficientStock(item_id, quantity, available, item.ItemName)

    for line in open_lines:
        line_id = line.LineID
        item_id = line.ItemID
        try:
            loan = create_loan(
                db,
                item_id,
                int(line.Quantity),
                request.DesiredReturnOn,
                request.BorrowerName,
                request.BorrowerID,
                clock=clock,
                notes=f"Request {request.ReferenceCode}",
            )
        except LendingError as exc:
            REQUEST_LOGGER.warning(
                "Approval stopped request_id=%s line_id=%s item_id=%s code=%s",
                request_id,
                line_id,
                item_id,
                exc.code,
            )
            result.request = get_request(db, request_id)
            result.failed_line_id = line_id
            result.failed_item_id = item_id
            result.error = exc
            return result

        try:
            with store_call(db, "link_request_line"):
                line.LinkedLoanID = loan.LoanID
                log_audit(db, "BorrowRequest", request_id, "LineLinked", f"line={line_id} loan={loan.LoanID}")
        except UpstreamUnavailable as exc:
            raise PartiallyApplied(
                f"Loan {loan.LoanID} was created but could not be linked to its request line.",
                operation="approve_request",
                completed="create_loan",
                missing="link_line",
                requestID=request_id,
                lineID=line_id,
                loanID=loan.LoanID,
            ) from exc
        result.created_loan_ids.append(loan.LoanID)

    with store_call(db, "approve_request"):
        changed = db.execute(
            update(BorrowRequest)
            .where(BorrowRequest.RequestID == request_id)
            .where(BorrowRequest.Status == REQUEST_PENDING)
            .values(Status=REQUEST_APPROVED)
            .execution_options(synchronize_session=False)
        ).rowcount
        if changed != 1:
            raise Conflict(f"Request {request_id} changed while it was being approved.", requestID=request_id)
        log_audit(db, "BorrowRequest", request_id, "Approved", f"loans={result.created_loan_ids}")
        queue_notification(
            db,
            "RequestApproved",
            f"Request {request.ReferenceCode} approved.",
            request_id=request_id,
        )

    result.request = get_request(db, request_id)
    result.approved = True
    REQUEST_LOGGER.info(
        "Request approved request_id=%s loans=%s skipped=%s",
        request_id,
        len(result.created_loan_ids),
        len(result.skipped_line_ids),
    )
    return result


def reject_request(db: Session, request_id: int, reason: str | None = None) -> BorrowRequest:
    request = get_request(db, request_id)
    if request.Status != REQUEST_PENDING:
        raise AlreadyTerminal(
            f"Request {request.ReferenceCode} is {request.Status}, not Pending.",
            requestID=request_id,
            status=request.Status,
        )
    if any(line.LinkedLoanID is not None for line in request.Lines):
        raise Conflict(
            "Request has lines already converted to loans; delete it instead of rejecting.",
            requestID=request_id,
        )

    reason = (reason or "").strip()
    with store_call(db, "reject_request"):
        request.Status = REQUEST_REJECTED
        if reason:
            note = f"Rejected: {reason}"
            request.AdminNotes = f"{request.AdminNotes}\n{note}" if request.AdminNotes else note
        log_audit(db, "BorrowRequest", request_id, "Rejected", reason or None)
        queue_notification(
            db,
            "RequestRejected",
            f"Request {request.ReferenceCode} rejected." + (f" Reason: {reason}" if reason else ""),
            request_id=request_id,
        )

    REQUEST_LOGGER.info("Request rejected request_id=%s", request_id)
    return request


def release_request(db: Session, request_id: int) -> BorrowRequest:
    request = get_request(db, request_id)
    if request.Status == REQUEST_PENDING:
        raise Conflict(f"Request {request.ReferenceCode} must be approved before release.", requestID=request_id)
    if request.Status != REQUEST_APPROVED:
        raise AlreadyTerminal(
            f"Request {request.ReferenceCode} is {request.Status}.",
            requestID=request_id,
            status=request.Status,
        )

    with store_call(db, "release_request"):
        request.Status = REQUEST_RELEASED
        log_audit(db, "BorrowRequest", request_id, "Released")

    REQUEST_LOGGER.info("Request released request_id=%s", request_id)
    return request


def delete_request(db: Session, request_id: int) -> dict:
    request = get_request(db, request_id)
    reference = request.ReferenceCode
    loan_ids = [line.LinkedLoanID for line in request.Lines if line.LinkedLoanID is not None]

    outcomes: list[BatchOutcome] = bulk_delete_loans(db, loan_ids)
    failed = [outcome for outcome in outcomes if not outcome.ok]
    if failed:
        raise PartiallyApplied(
            f"Request {reference} kept: {len(failed)} linked loan(s) could not be deleted.",
            operation="delete_request",
            completed="delete_loans",
            missing="delete_request",
            requestID=request_id,
            outcomes=[outcome.to_dict() for outcome in outcomes],
        )

    request = get_request(db, request_id)
    with store_call(db, "delete_request"):
        db.delete(request)
        log_audit(db, "BorrowRequest", request_id, "Deleted", f"reference={reference} loans={loan_ids}")

    REQUEST_LOGGER.info("Request deleted request_id=%s loans=%s", request_id, len(loan_ids))
    return {
        "requestID": request_id,
        "referenceCode": reference,
        "deletedLoans": [outcome.to_dict() for outcome in outcomes],
    }


def list_requests(db: Session, status: str | None = None, search: str | None = None) -> list[BorrowRequest]:
    stmt = select(BorrowRequest)
    if status:
        if status not in REQUEST_STATES:
            raise ValidationError(f"Unknown request status: {status}", status=status)
        stmt = stmt.where(BorrowRequest.Status == status)
    term = (search or "").strip().lower()
    if term:
        stmt = stmt.where(
            or_(
                func.lower(BorrowRequest.ReferenceCode).contains(term, autoescape=True),
                func.lower(BorrowRequest.BorrowerName).contains(term, autoescape=True),
            )
        )
    return list(db.execute(stmt.order_by(BorrowRequest.RequestID.desc())).scalars().all())


def serialize_request(request: BorrowRequest) -> dict:
    lines = []
    for line in request.Lines:
        lines.append(
            {
                "lineID": line.LineID,
                "itemID": line.ItemID,
                "quantity": line.Quantity,
                "linkedLoanID": line.LinkedLoanID,
                "item": {
                    "itemID": line.Item.ItemID,
                    "shortCode": line.Item.ShortCode,
                    "itemName": line.Item.ItemName,
                } if line.Item else None,
            }
        )

    return {
        "requestID": request.RequestID,
        "referenceCode": request.ReferenceCode,
        "borrowerName": request.BorrowerName,
        "borrowerID": request.BorrowerID,
        "requestedOn": request.RequestedOn,
        "desiredReturnOn": request.DesiredReturnOn,
        "status": request.Status,
        "adminNotes": request.AdminNotes,
        "linkedLines": sum(1 for line in request.Lines if line.LinkedLoanID is not None),
        "createdDate": request.CreatedDate,
        "updatedDate": request.UpdatedDate,
        "lines": lines,
    }
