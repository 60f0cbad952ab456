from typing import Any, Optional

from pydantic import BaseModel, ConfigDict


class CreateRentalDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    equipmentId: Optional[str] = None
    quantity: Any = 1
    durationDays: Any = 1


class RentalStatusUpdate(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    status: Optional[str] = None
    trackingNumber: Optional[str] = None
    returnTrackingNumber: Optional[str] = None
    reason: Optional[str] = None


class CancelRentalRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    reason: Optional[str] = None
