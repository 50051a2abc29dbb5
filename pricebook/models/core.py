from sqlalchemy import (
    String, ForeignKey, Boolean, Numeric, Text, DateTime, Integer, Index
)
from sqlalchemy.orm import Mapped, mapped_column, relationship
from decimal import Decimal
from datetime import datetime
from pricebook.db import Base
from pricebook.models.common import IdMixin, TSMMixin, utcnow

QTY = Numeric(14, 4)
COST = Numeric(18, 6)
MONEY = Numeric(14, 4)

# ── Identity ────────────────────────────────────────────────────────────────
class User(Base, IdMixin, TSMMixin):
    __tablename__ = "user"
    name: Mapped[str] = mapped_column(String(160))
    mobile: Mapped[str] = mapped_column(String(20), unique=True)
    pass_hash: Mapped[str] = mapped_column(String(200))
    active: Mapped[bool] = mapped_column(Boolean, default=True)

# ── Purchases / material ledger ─────────────────────────────────────────────
class Purchase(Base, IdMixin, TSMMixin):
    """One purchased lot plus the material aggregate as of that purchase.

    The newest row per (user_id, material) is the ledger entry: its
    ``stock`` is reduced in place when product prices consume stock.
    """
    __tablename__ = "purchase"
    __table_args__ = (Index("ix_purchase_user_material_ts", "user_id", "material", "timestamp"),)

    user_id: Mapped[str] = mapped_column(String(36), ForeignKey("user.id"))
    material: Mapped[str] = mapped_column(String(160))
    dealer: Mapped[str | None] = mapped_column(String(160))
    gst_number: Mapped[str | None] = mapped_column(String(32))
    description: Mapped[str | None] = mapped_column(Text)

    # the lot itself
    quantity: Mapped[Decimal] = mapped_column(QTY)
    unit: Mapped[str] = mapped_column(String(4))   # kg | g
    price_per_unit: Mapped[Decimal] = mapped_column(COST)
    total_price: Mapped[Decimal] = mapped_column(MONEY)
    gst_amount: Mapped[Decimal] = mapped_column(MONEY, default=0)
    hamali: Mapped[Decimal] = mapped_column(MONEY, default=0)
    bill_photo_url: Mapped[str | None] = mapped_column(Text)

    # aggregate after this purchase, denominated in ``unit``
    stock: Mapped[Decimal] = mapped_column(QTY)
    cost_per_unit: Mapped[Decimal] = mapped_column(COST)

    # aggregate this purchase was accumulated onto (null: new material)
    opening_stock: Mapped[Decimal | None] = mapped_column(QTY)
    opening_cost_per_unit: Mapped[Decimal | None] = mapped_column(COST)
    opening_unit: Mapped[str | None] = mapped_column(String(4))

    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

# ── Product prices ──────────────────────────────────────────────────────────
class ProductPrice(Base, IdMixin, TSMMixin):
    __tablename__ = "product_price"
    user_id: Mapped[str] = mapped_column(String(36), ForeignKey("user.id"))
    name: Mapped[str] = mapped_column(String(160))
    num_bottles: Mapped[int] = mapped_column(Integer)
    cost_per_bottle: Mapped[Decimal] = mapped_column(MONEY)
    materials_cost: Mapped[Decimal] = mapped_column(MONEY)
    bottle_cost: Mapped[Decimal] = mapped_column(MONEY)
    base_cost: Mapped[Decimal] = mapped_column(MONEY)
    margin1: Mapped[Decimal] = mapped_column(MONEY)
    margin2: Mapped[Decimal] = mapped_column(MONEY)
    total_selling_price: Mapped[Decimal] = mapped_column(MONEY)
    gross_per_bottle: Mapped[Decimal] = mapped_column(MONEY)
    margin1_rate: Mapped[Decimal] = mapped_column(Numeric(8, 4))
    margin2_rate: Mapped[Decimal] = mapped_column(Numeric(8, 4))
    stock_deducted: Mapped[bool] = mapped_column(Boolean, default=False)
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    lines: Mapped[list["ProductPriceLine"]] = relationship(
        back_populates="product", cascade="all, delete-orphan", order_by="ProductPriceLine.position"
    )

class ProductPriceLine(Base, IdMixin, TSMMixin):
    __tablename__ = "product_price_line"
    product_id: Mapped[str] = mapped_column(String(36), ForeignKey("product_price.id"))
    position: Mapped[int] = mapped_column(Integer)
    # ledger record the cost was read from (not a live reference)
    purchase_id: Mapped[str | None] = mapped_column(String(36))
    material_name: Mapped[str] = mapped_column(String(160))
    quantity: Mapped[Decimal] = mapped_column(QTY)
    unit: Mapped[str] = mapped_column(String(4))
    cost_per_unit: Mapped[Decimal] = mapped_column(COST)
    total_cost: Mapped[Decimal] = mapped_column(MONEY)

    product: Mapped[ProductPrice] = relationship(back_populates="lines")

# ── Audit ───────────────────────────────────────────────────────────────────
class AuditLog(Base, IdMixin, TSMMixin):
    __tablename__ = "audit_log"
    actor_user_id: Mapped[str] = mapped_column(String(36))
    entity: Mapped[str] = mapped_column(String(40))
    entity_id: Mapped[str] = mapped_column(String(36))
    action: Mapped[str] = mapped_column(String(120))
    before: Mapped[str | None] = mapped_column(Text)
    after: Mapped[str | None] = mapped_column(Text)
