from typing import Optional

from pydantic import BaseModel, ConfigDict


class EquipmentUpsert(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    name: Optional[str] = None
    price: Optional[float] = None
    stock: Optional[int] = None
    category: Optional[str] = None
    detail: Optional[str] = None
    image: Optional[str] = None
