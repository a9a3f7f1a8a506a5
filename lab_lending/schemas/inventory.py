from typing import List, Optional

from pydantic import BaseModel, ConfigDict


class ItemCreate(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    itemName: str
    shortCode: Optional[str] = None
    category: Optional[str] = None
    unit: Optional[str] = None
    location: Optional[str] = None
    condition: Optional[str] = None
    description: Optional[str] = None
    safetyNotes: Optional[str] = None
    isConsumable: Optional[bool] = False
    totalQuantity: int = 0
    borrowCap: Optional[int] = None


class ItemUpdate(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    itemName: Optional[str] = None
    shortCode: Optional[str] = None
    category: Optional[str] = None
    unit: Optional[str] = None
    location: Optional[str] = None
    condition: Optional[str] = None
    description: Optional[str] = None
    safetyNotes: Optional[str] = None
    isConsumable: Optional[bool] = None


class BorrowCapUpdate(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    borrowCap: Optional[int] = None


class UnitAuditRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    scannedCodes: List[str] = []
