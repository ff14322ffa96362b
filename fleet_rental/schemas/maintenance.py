from datetime import date
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


class MaintenanceRecordCreate(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    serviceType: Literal["preventive", "corrective", "inspection"]
    hoursAtService: float = Field(ge=0)
    description: str
    serviceDate: Optional[date] = None
    nextDueHours: Optional[float] = None
    technician: Optional[str] = None
    serviceOrder: Optional[str] = None
