from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session
from datetime import date

from pricebook.db import get_db
from pricebook.deps import require_user
from pricebook.errors import InsufficientStockError
from pricebook.models.core import ProductPrice
from pricebook.routers.purchases import day_bounds
from pricebook.schemas.products import QuoteIn, ProductPriceIn
from pricebook.services import costing, ledger

router = APIRouter(prefix="/products", tags=["products"])


def _breakdown(b: costing.PriceBreakdown) -> dict:
    return {
        "materials_cost": float(b.materials_cost),
        "bottle_cost": float(b.bottle_cost),
        "base_cost": float(b.base_cost),
        "margin1": float(b.margin1),
        "margin2": float(b.margin2),
        "total_selling_price": float(b.total_selling_price),
        "gross_per_bottle": float(b.gross_per_bottle),
    }

def product_out(pp: ProductPrice) -> dict:
    return {
        "id": pp.id,
        "name": pp.name,
        "materials_used": [{
            "material_id": l.purchase_id,
            "material_name": l.material_name,
            "quantity": float(l.quantity),
            "unit": l.unit,
            "cost_per_unit": float(l.cost_per_unit),
            "total_cost": float(l.total_cost),
        } for l in pp.lines],
        "bottle_info": {"num_bottles": pp.num_bottles, "cost_per_bottle": float(pp.cost_per_bottle)},
        "calculations": {
            "materials_cost": float(pp.materials_cost),
            "bottle_cost": float(pp.bottle_cost),
            "base_cost": float(pp.base_cost),
            "margin1": float(pp.margin1),
            "margin2": float(pp.margin2),
            "total_selling_price": float(pp.total_selling_price),
            "gross_per_bottle": float(pp.gross_per_bottle),
        },
        "rates": {"margin1": float(pp.margin1_rate), "margin2": float(pp.margin2_rate)},
        "stock_deducted": pp.stock_deducted,
        "timestamp": pp.timestamp,
    }


@router.post("/quote")
def quote(body: QuoteIn, db: Session = Depends(get_db), uid: str = Depends(require_user)):
    """Price a batch without saving anything; reports shortages if stock were consumed."""
    bom, records, costed, b = ledger.quote(
        db, uid, [l.model_dump() for l in body.lines], body.num_bottles, body.cost_per_bottle)
    try:
        costing.plan_deductions({m: ledger.ledger_state(r) for m, r in records.items()}, bom)
        shortages = []
    except InsufficientStockError as e:
        shortages = e.as_dict()["shortages"]
    return {
        "materials_used": [{
            "material_id": c["purchase_id"],
            "material_name": c["material_name"],
            "quantity": float(c["quantity"]),
            "unit": c["unit"],
            "cost_per_unit": float(c["cost_per_unit"]),
            "total_cost": float(c["total_cost"]),
        } for c in costed],
        "calculations": _breakdown(b),
        "shortages": shortages,
    }

@router.post("/")
def save_product_price(body: ProductPriceIn, db: Session = Depends(get_db), uid: str = Depends(require_user)):
    pp = ledger.save_product_price(db, uid, body.model_dump())
    return product_out(pp)

@router.get("/")
def list_product_prices(
    name: str | None = None,
    day: date | None = None,
    db: Session = Depends(get_db),
    uid: str = Depends(require_user),
):
    q = db.query(ProductPrice).filter(ProductPrice.user_id == uid)
    if name:
        q = q.filter(ProductPrice.name == name)
    if day:
        start, end = day_bounds(day)
        q = q.filter(ProductPrice.timestamp >= start, ProductPrice.timestamp <= end)
    rows = q.order_by(ProductPrice.timestamp.desc()).limit(500).all()
    return [product_out(pp) for pp in rows]

@router.get("/{product_id}")
def get_product_price(product_id: str, db: Session = Depends(get_db), uid: str = Depends(require_user)):
    pp = db.get(ProductPrice, product_id)
    if not pp or pp.user_id != uid:
        raise HTTPException(404, detail="product price not found")
    return product_out(pp)

@router.delete("/{product_id}")
def delete_product_price(product_id: str, db: Session = Depends(get_db), uid: str = Depends(require_user)):
    # consumed stock is not given back
    ledger.delete_product_price(db, uid, product_id)
    return {"deleted": True}
