from typing import Optional

from pydantic import BaseModel, ConfigDict


class WarehouseUpsert(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    warehouseName: Optional[str] = None
    description: Optional[str] = None
    address: Optional[str] = None
    contactPhone: Optional[str] = None
    isActive: Optional[bool] = None
