from decimal import Decimal
from pydantic import BaseModel, Field
from typing import List

class BomLineIn(BaseModel):
    material: str
    quantity: Decimal
    unit: str

class QuoteIn(BaseModel):
    lines: List[BomLineIn]
    num_bottles: int
    cost_per_bottle: Decimal = Field(default=Decimal("0"), ge=0)

class ProductPriceIn(QuoteIn):
    name: str
    deduct_stock: bool = True
