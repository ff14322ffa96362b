from datetime import date
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


class BindContractRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    equipmentID: int
    folio: str
    client: str
    startDate: date
    daysContracted: Optional[int] = None
    endDate: Optional[date] = None
    amount: Optional[float] = None
    hoursWorked: Optional[float] = None
    site: Optional[str] = None
    address: Optional[str] = None
    seller: Optional[str] = None
    notes: Optional[str] = None
    requestID: Optional[str] = None


class RenewContractRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    startDate: date
    daysContracted: Optional[int] = None
    endDate: Optional[date] = None
    amount: Optional[float] = None
    hoursWorked: Optional[float] = None
    invoiceFolio: Optional[str] = None
    comments: Optional[str] = None


class TerminateContractRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    reason: str
    status: Literal["cancelled", "finished"] = "cancelled"


class UsageHoursRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    hoursWorked: float = Field(ge=0)


class CollectionRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    scheduledDate: Optional[date] = None
    address: Optional[str] = None
    notes: Optional[str] = None


class CollectionStatusRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    status: Literal["in_progress", "completed"]
    collectedDate: Optional[date] = None
    notes: Optional[str] = None
