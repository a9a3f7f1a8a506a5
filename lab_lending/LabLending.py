import logging
import os
from contextlib import asynccontextmanager
from typing import Optional

from dotenv import load_dotenv
from fastapi import Depends, FastAPI, HTTPException, Query
from fastapi.encoders import jsonable_encoder
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import text
from sqlalchemy.orm import Session

load_dotenv()

from db.base import Base
from db.deps import get_lending_db
from db.session import SessionLocalLending, engine_lending
from models import lending_models  # noqa: F401  registers the tables on Base.metadata
from schemas.inventory import BorrowCapUpdate, ItemCreate, ItemUpdate, UnitAuditRequest
from schemas.lending import BorrowRequestCreate, BulkIdsRequest, LoanCreate, LoanReturnRequest, RejectRequest
from services.activity_service import list_audit_entries, list_pending_notifications
from services.catalog_service import (
    change_borrow_cap,
    create_item,
    delete_item,
    find_item_by_code,
    get_item,
    list_items,
    serialize_item,
    stock_summary,
    update_item_details,
)
from services.clock import DEFAULT_CLOCK, Clock
from services.errors import AlreadyTerminal, LendingError
from services.identity_service import ScanResolution, build_unit_audit, resolve_scan
from services.loan_service import Disposition, create_loan, get_loan, list_loans, serialize_loan
from services.overdue_service import OverdueSweeper, run_overdue_sweep
from services.reconciliation_service import bulk_complete, bulk_delete_loans, delete_loan, return_loan
from services.request_service import (
    RequestLineInput,
    approve_request,
    create_request,
    delete_request,
    get_request,
    get_request_by_reference,
    list_requests,
    reject_request,
    release_request,
    serialize_request,
)

logging.basicConfig(
    level=(os.environ.get("LAB_LENDING_LOG_LEVEL") or "INFO").strip().upper(),
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)
API_LOGGER = logging.getLogger("lab_lending.api")


@asynccontextmanager
async def lifespan(_app: FastAPI):
    Base.metadata.create_all(bind=engine_lending)
    _SWEEPER.start()
    try:
        yield
    finally:
        _SWEEPER.stop()


app = FastAPI(lifespan=lifespan)


def _parse_csv_env(name: str, default: str) -> list[str]:
    raw = os.environ.get(name, default)
    return [item.strip() for item in str(raw).split(",") if item.strip()]


def _parse_int_env(name: str, default: int) -> int:
    raw = (os.environ.get(name) or "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        API_LOGGER.warning("Ignoring invalid %s=%s", name, raw)
        return default


_CORS_ALLOW_ORIGINS = _parse_csv_env(
    "CORS_ALLOW_ORIGINS",
    "http://127.0.0.1,http://localhost,http://127.0.0.1:5001,http://localhost:5001",
)
_CORS_ALLOW_CREDENTIALS = str(os.environ.get("CORS_ALLOW_CREDENTIALS", "true")).strip().lower() in {"1", "true", "yes", "on"}
if "*" in _CORS_ALLOW_ORIGINS:
    # Browsers reject wildcard origins with credentials.
    _CORS_ALLOW_CREDENTIALS = False

app.add_middleware(
    CORSMiddleware,
    allow_origins=_CORS_ALLOW_ORIGINS,
    allow_credentials=_CORS_ALLOW_CREDENTIALS,
    allow_methods=["*"],
    allow_headers=["*"]
)

SWEEP_INTERVAL_SECONDS = _parse_int_env("LAB_LENDING_SWEEP_INTERVAL_SECONDS", 3600)
_SWEEPER = OverdueSweeper(SessionLocalLending, SWEEP_INTERVAL_SECONDS)


def get_clock() -> Clock:
    return DEFAULT_CLOCK


def _http_error(exc: LendingError) -> HTTPException:
    if exc.status_code >= 500:
        API_LOGGER.error("Request failed code=%s message=%s context=%s", exc.code, exc.message, exc.context)
    return HTTPException(status_code=exc.status_code, detail=jsonable_encoder(exc.to_dict()))


def _serialize_resolution(resolution: ScanResolution, clock: Clock) -> dict:
    today = clock.today()
    return {
        "status": resolution.status,
        "kind": resolution.scan.kind,
        "query": resolution.scan.query,
        "shortCode": resolution.scan.short_code,
        "sequence": resolution.scan.sequence,
        "unitCode": resolution.unit_code,
        "canBorrow": resolution.can_borrow,
        "canReturn": resolution.can_return,
        "item": serialize_item(resolution.item) if resolution.item else None,
        "activeLoan": serialize_loan(resolution.active_loan, today) if resolution.active_loan else None,
        "activeLoans": [serialize_loan(loan, today) for loan in resolution.active_loans],
        "matches": [serialize_item(item) for item in resolution.matches],
    }


@app.get("/healthz")
def healthcheck():
    return {"status": "ok"}


@app.get("/api/healthz")
def healthcheck_api(db: Session = Depends(get_lending_db)):
    try:
        db.execute(text("SELECT 1"))
        return {"status": "ok"}
    except Exception as exc:
        raise HTTPException(status_code=503, detail=f"db_unavailable: {exc}") from exc


@app.get("/api/items")
def get_items(
    search: str = Query("", alias="q"),
    category: Optional[str] = Query(None),
    db: Session = Depends(get_lending_db),
):
    return [serialize_item(item) for item in list_items(db, search, category)]


@app.post("/api/items")
def post_item(payload: ItemCreate, db: Session = Depends(get_lending_db)):
    try:
        item = create_item(db, payload.model_dump(exclude_unset=True))
    except LendingError as exc:
        raise _http_error(exc) from exc
    return serialize_item(item)


@app.get("/api/items/summary")
def get_items_summary(db: Session = Depends(get_lending_db)):
    return stock_summary(db)


@app.get("/api/items/by-code/{code}")
def get_item_by_code(code: str, db: Session = Depends(get_lending_db)):
    try:
        return serialize_item(find_item_by_code(db, code))
    except LendingError as exc:
        raise _http_error(exc) from exc


@app.get("/api/items/{item_id}")
def get_item_detail(item_id: int, db: Session = Depends(get_lending_db)):
    try:
        return serialize_item(get_item(db, item_id))
    except LendingError as exc:
        raise _http_error(exc) from exc


@app.put("/api/items/{item_id}")
def put_item(item_id: int, payload: ItemUpdate, db: Session = Depends(get_lending_db)):
    try:
        item = update_item_details(db, item_id, payload.model_dump(exclude_unset=True))
    except LendingError as exc:
        raise _http_error(exc) from exc
    return serialize_item(item)


@app.delete("/api/items/{item_id}")
def remove_item(item_id: int, db: Session = Depends(get_lending_db)):
    try:
        delete_item(db, item_id)
    except LendingError as exc:
        raise _http_error(exc) from exc
    return {"message": "Deleted"}


@app.put("/api/items/{item_id}/borrow-cap")
def put_borrow_cap(item_id: int, payload: BorrowCapUpdate, db: Session = Depends(get_lending_db)):
    try:
        item = change_borrow_cap(db, item_id, payload.borrowCap)
    except LendingError as exc:
        raise _http_error(exc) from exc
    return serialize_item(item)


@app.get("/api/items/{item_id}/audit")
def get_unit_audit(item_id: int, db: Session = Depends(get_lending_db)):
    try:
        return build_unit_audit(db, item_id, [])
    except LendingError as exc:
        raise _http_error(exc) from exc


@app.post("/api/items/{item_id}/audit")
def post_unit_audit(item_id: int, payload: UnitAuditRequest, db: Session = Depends(get_lending_db)):
    try:
        return build_unit_audit(db, item_id, payload.scannedCodes)
    except LendingError as exc:
        raise _http_error(exc) from exc


@app.get("/api/loans")
def get_loans(
    status: Optional[str] = Query(None),
    search: str = Query("", alias="q"),
    db: Session = Depends(get_lending_db),
    clock: Clock = Depends(get_clock),
):
    try:
        loans = list_loans(db, status, search, clock)
    except LendingError as exc:
        raise _http_error(exc) from exc
    today = clock.today()
    return [serialize_loan(loan, today) for loan in loans]


@app.post("/api/loans")
def post_loan(payload: LoanCreate, db: Session = Depends(get_lending_db), clock: Clock = Depends(get_clock)):
    try:
        loan = create_loan(
            db,
            payload.itemID,
            payload.quantity,
            payload.dueOn,
            payload.borrowerName,
            payload.borrowerID,
            payload.specificUnitCode,
            clock=clock,
            notes=payload.notes,
        )
    except LendingError as exc:
        raise _http_error(exc) from exc
    return serialize_loan(loan, clock.today())


@app.post("/api/loans/bulk-return")
def post_bulk_return(payload: BulkIdsRequest, db: Session = Depends(get_lending_db), clock: Clock = Depends(get_clock)):
    outcomes = bulk_complete(db, payload.ids, clock)
    return {"results": [outcome.to_dict() for outcome in outcomes]}


@app.post("/api/loans/bulk-delete")
def post_bulk_delete(payload: BulkIdsRequest, db: Session = Depends(get_lending_db)):
    outcomes = bulk_delete_loans(db, payload.ids)
    return {"results": [outcome.to_dict() for outcome in outcomes]}


@app.post("/api/loans/{loan_id}/return")
def post_loan_return(
    loan_id: int,
    payload: Optional[LoanReturnRequest] = None,
    db: Session = Depends(get_lending_db),
    clock: Clock = Depends(get_clock),
):
    disposition = None
    if payload is not None and payload.disposition is not None:
        disposition = Disposition(
            good=payload.disposition.good,
            defective=payload.disposition.defective,
            disposed=payload.disposition.disposed,
        )
    try:
        loan = return_loan(db, loan_id, disposition, clock)
        changed = True
    except AlreadyTerminal:
        loan = get_loan(db, loan_id)
        changed = False
    except LendingError as exc:
        raise _http_error(exc) from exc
    return {"changed": changed, "loan": serialize_loan(loan, clock.today())}


@app.delete("/api/loans/{loan_id}")
def remove_loan(loan_id: int, db: Session = Depends(get_lending_db)):
    try:
        return delete_loan(db, loan_id)
    except LendingError as exc:
        raise _http_error(exc) from exc


@app.get("/api/requests")
def get_requests(
    status: Optional[str] = Query(None),
    search: str = Query("", alias="q"),
    db: Session = Depends(get_lending_db),
):
    try:
        requests = list_requests(db, status, search)
    except LendingError as exc:
        raise _http_error(exc) from exc
    return [serialize_request(request) for request in requests]


@app.post("/api/requests")
def post_request(payload: BorrowRequestCreate, db: Session = Depends(get_lending_db), clock: Clock = Depends(get_clock)):
    try:
        request = create_request(
            db,
            payload.borrowerName,
            payload.borrowerID,
            payload.desiredReturnOn,
            [RequestLineInput(item_id=line.itemID, quantity=line.quantity) for line in payload.lines],
            clock=clock,
            notes=payload.notes,
        )
    except LendingError as exc:
        raise _http_error(exc) from exc
    return serialize_request(request)


@app.get("/api/requests/by-reference/{reference_code}")
def get_request_by_code(reference_code: str, db: Session = Depends(get_lending_db)):
    try:
        return serialize_request(get_request_by_reference(db, reference_code))
    except LendingError as exc:
        raise _http_error(exc) from exc


@app.get("/api/requests/{request_id}")
def get_request_detail(request_id: int, db: Session = Depends(get_lending_db)):
    try:
        return serialize_request(get_request(db, request_id))
    except LendingError as exc:
        raise _http_error(exc) from exc


@app.post("/api/requests/{request_id}/approve")
def post_request_approve(request_id: int, db: Session = Depends(get_lending_db), clock: Clock = Depends(get_clock)):
    try:
        result = approve_request(db, request_id, clock)
    except LendingError as exc:
        raise _http_error(exc) from exc
    payload = result.to_dict()
    payload["request"] = serialize_request(result.request)
    if result.partial:
        raise HTTPException(status_code=409, detail=jsonable_encoder(payload))
    return payload


@app.post("/api/requests/{request_id}/reject")
def post_request_reject(
    request_id: int,
    payload: Optional[RejectRequest] = None,
    db: Session = Depends(get_lending_db),
):
    try:
        request = reject_request(db, request_id, payload.reason if payload else None)
    except LendingError as exc:
        raise _http_error(exc) from exc
    return serialize_request(request)


@app.post("/api/requests/{request_id}/release")
def post_request_release(request_id: int, db: Session = Depends(get_lending_db)):
    try:
        request = release_request(db, request_id)
    except LendingError as exc:
        raise _http_error(exc) from exc
    return serialize_request(request)


@app.delete("/api/requests/{request_id}")
def remove_request(request_id: int, db: Session = Depends(get_lending_db)):
    try:
        return delete_request(db, request_id)
    except LendingError as exc:
        raise _http_error(exc) from exc


@app.post("/api/maintenance/overdue-sweep")
def post_overdue_sweep(db: Session = Depends(get_lending_db), clock: Clock = Depends(get_clock)):
    return run_overdue_sweep(db, clock).to_dict()


@app.get("/api/scan")
def get_scan(
    code: str = Query("", min_length=0),
    db: Session = Depends(get_lending_db),
    clock: Clock = Depends(get_clock),
):
    return _serialize_resolution(resolve_scan(db, code), clock)


@app.get("/api/notifications/pending")
def get_pending_notifications(db: Session = Depends(get_lending_db)):
    return list_pending_notifications(db)


@app.get("/api/audit/{entity_type}/{entity_id}")
def get_audit_entries(entity_type: str, entity_id: int, db: Session = Depends(get_lending_db)):
    return list_audit_entries(db, entity_type, entity_id)
