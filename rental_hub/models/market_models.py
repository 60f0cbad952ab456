from sqlalchemy import Boolean, CheckConstraint, Column, DateTime, Float, Integer, String, Text

from rental_hub.db.base import Base


class Equipment(Base):
    __tablename__ = "equipment"
    __table_args__ = (CheckConstraint("Stock >= 0", name="ck_equipment_stock_nonnegative"),)

    EquipmentID = Column(String(64), primary_key=True)
    Name = Column(String(255), nullable=False)
    Price = Column(Float, nullable=False, default=0)
    Stock = Column(Integer, nullable=False, default=0)
    Category = Column(String(50), nullable=False, default="other")
    OwnerID = Column(String(128), nullable=False, index=True)
    Detail = Column(Text)
    Image = Column(String(500))
    CreatedAt = Column(DateTime(timezone=True))
    UpdatedAt = Column(DateTime(timezone=True))


class Rental(Base):
    __tablename__ = "rentals"

    RentalID = Column(String(64), primary_key=True)
    RenterID = Column(String(128), nullable=False, index=True)
    OwnerID = Column(String(128), nullable=False, index=True)
    EquipmentID = Column(String(64), nullable=False, index=True)
    Name = Column(String(255))
    Price = Column(Float)
    TotalPrice = Column(Float)
    Quantity = Column(Integer, nullable=False, default=1)
    DurationDays = Column(Integer, nullable=False, default=1)
    Status = Column(String(20), nullable=False, index=True)
    TrackingNumber = Column(String(100))
    ReturnTrackingNumber = Column(String(100))
    StatusReason = Column(String(500))
    ActualStart = Column(DateTime(timezone=True))
    ActualEnd = Column(DateTime(timezone=True))
    StockReserved = Column(Boolean, nullable=False, default=False)
    StockReturned = Column(Boolean, nullable=False, default=False)
    CreatedAt = Column(DateTime(timezone=True))
    UpdatedAt = Column(DateTime(timezone=True))


# Document field name -> mapped column attribute.
EQUIPMENT_FIELDS = {
    "id": "EquipmentID",
    "name": "Name",
    "price": "Price",
    "stock": "Stock",
    "category": "Category",
    "ownerId": "OwnerID",
    "detail": "Detail",
    "image": "Image",
    "createdAt": "CreatedAt",
    "updatedAt": "UpdatedAt",
}

RENTAL_FIELDS = {
    "id": "RentalID",
    "renterId": "RenterID",
    "ownerId": "OwnerID",
    "equipmentId": "EquipmentID",
    "name": "Name",
    "price": "Price",
    "totalPrice": "TotalPrice",
    "quantity": "Quantity",
    "durationDays": "DurationDays",
    "status": "Status",
    "trackingNumber": "TrackingNumber",
    "returnTrackingNumber": "ReturnTrackingNumber",
    "statusReason": "StatusReason",
    "actualStart": "ActualStart",
    "actualEnd": "ActualEnd",
    "stockReserved": "StockReserved",
    "stockReturned": "StockReturned",
    "createdAt": "CreatedAt",
    "updatedAt": "UpdatedAt",
}

COLLECTIONS = {
    "equipment": (Equipment, EQUIPMENT_FIELDS),
    "rentals": (Rental, RENTAL_FIELDS),
}
