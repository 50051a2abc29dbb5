from decimal import Decimal
from pydantic import BaseModel, Field
from typing import Optional

class PurchaseIn(BaseModel):
    material: str
    quantity: Decimal = Field(gt=0)
    unit: str                         # kg | g (gm accepted)
    price_per_unit: Decimal = Field(ge=0)
    dealer: Optional[str] = None
    gst_number: Optional[str] = None
    description: Optional[str] = None
    gst_amount: Decimal = Field(default=Decimal("0"), ge=0)
    hamali: Decimal = Field(default=Decimal("0"), ge=0)
    bill_photo_url: Optional[str] = None

class PurchaseEdit(BaseModel):
    quantity: Optional[Decimal] = Field(default=None, gt=0)
    unit: Optional[str] = None
    price_per_unit: Optional[Decimal] = Field(default=None, ge=0)
    gst_amount: Optional[Decimal] = Field(default=None, ge=0)
    hamali: Optional[Decimal] = Field(default=None, ge=0)
    dealer: Optional[str] = None
    gst_number: Optional[str] = None
    description: Optional[str] = None
    bill_photo_url: Optional[str] = None
