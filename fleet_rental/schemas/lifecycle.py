from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict


class TransitionRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    action: Literal[
        "record_entry",
        "release_inspection",
        "send_to_shop",
        "complete_maintenance",
        "dispatch_transfer",
        "receive_transfer",
        "retire",
    ]
    hasDamage: bool = False
    warehouseID: Optional[int] = None
    locationCode: Optional[str] = None
    notes: Optional[str] = None
    requestID: Optional[str] = None
