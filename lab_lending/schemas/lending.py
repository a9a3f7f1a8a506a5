from datetime import date
from typing import List, Optional

from pydantic import BaseModel, ConfigDict


class LoanCreate(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    itemID: int
    quantity: int = 1
    dueOn: date
    borrowerName: str
    borrowerID: Optional[str] = None
    specificUnitCode: Optional[str] = None
    notes: Optional[str] = None


class DispositionDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    good: int
    defective: int = 0
    disposed: int = 0


class LoanReturnRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    disposition: Optional[DispositionDto] = None


class BulkIdsRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    ids: List[int] = []


class RequestLineDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    itemID: int
    quantity: int = 1


class BorrowRequestCreate(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    borrowerName: str
    borrowerID: Optional[str] = None
    desiredReturnOn: date
    notes: Optional[str] = None
    lines: List[RequestLineDto] = []


class RejectRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    reason: Optional[str] = None
