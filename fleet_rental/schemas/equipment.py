from typing import Optional

from pydantic import BaseModel, ConfigDict


class EquipmentUpsert(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    assetNumber: Optional[str] = None
    description: Optional[str] = None
    brand: Optional[str] = None
    model: Optional[str] = None
    serialNumber: Optional[str] = None
    equipmentClass: Optional[str] = None
    category: Optional[str] = None
    year: Optional[int] = None
    warehouseID: Optional[int] = None
    locationCode: Optional[str] = None
