from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session
from datetime import datetime, date, timezone

from pricebook.db import get_db
from pricebook.deps import require_user
from pricebook.models.core import Purchase
from pricebook.schemas.purchases import PurchaseIn, PurchaseEdit
from pricebook.services import ledger

router = APIRouter(prefix="/purchases", tags=["purchases"])


def _num(x):
    return float(x) if x is not None else None

def purchase_out(p: Purchase) -> dict:
    return {
        "id": p.id,
        "material": p.material,
        "dealer": p.dealer,
        "gst_number": p.gst_number,
        "description": p.description,
        "quantity": _num(p.quantity),
        "unit": p.unit,
        "price_per_unit": _num(p.price_per_unit),
        "total_price": _num(p.total_price),
        "gst_amount": _num(p.gst_amount),
        "hamali": _num(p.hamali),
        "bill_photo_url": p.bill_photo_url,
        "stock": _num(p.stock),
        "cost_per_unit": _num(p.cost_per_unit),
        "opening": None if p.opening_unit is None else {
            "stock": _num(p.opening_stock),
            "unit": p.opening_unit,
            "cost_per_unit": _num(p.opening_cost_per_unit),
        },
        "timestamp": p.timestamp,
        "updated_at": p.updated_at,
        "version": p.version,
    }

def day_bounds(day: date) -> tuple[datetime, datetime]:
    start = datetime.combine(day, datetime.min.time()).replace(tzinfo=timezone.utc)
    end = datetime.combine(day, datetime.max.time()).replace(tzinfo=timezone.utc)
    return start, end

def _owned(db: Session, purchase_id: str, user_id: str) -> Purchase:
    p = db.get(Purchase, purchase_id)
    if not p or p.user_id != user_id:
        raise HTTPException(404, detail="purchase not found")
    return p


@router.post("/")
def record_purchase(body: PurchaseIn, db: Session = Depends(get_db), uid: str = Depends(require_user)):
    p = ledger.record_purchase(db, uid, body.model_dump())
    return purchase_out(p)

@router.get("/")
def list_purchases(
    material: str | None = None,
    day: date | None = None,
    db: Session = Depends(get_db),
    uid: str = Depends(require_user),
):
    """Newest first. ``material`` is an exact match; ``day`` is a UTC calendar day."""
    q = db.query(Purchase).filter(Purchase.user_id == uid)
    if material:
        q = q.filter(Purchase.material == material)
    if day:
        start, end = day_bounds(day)
        q = q.filter(Purchase.timestamp >= start, Purchase.timestamp <= end)
    rows = q.order_by(Purchase.timestamp.desc(), Purchase.id.asc()).limit(500).all()
    return [purchase_out(p) for p in rows]

@router.get("/{purchase_id}")
def get_purchase(purchase_id: str, db: Session = Depends(get_db), uid: str = Depends(require_user)):
    return purchase_out(_owned(db, purchase_id, uid))

@router.patch("/{purchase_id}")
def edit_purchase(purchase_id: str, body: PurchaseEdit, db: Session = Depends(get_db), uid: str = Depends(require_user)):
    _owned(db, purchase_id, uid)
    changes = body.model_dump(exclude_unset=True)
    if not changes:
        raise HTTPException(400, detail="nothing to update")
    p = ledger.edit_purchase(db, uid, purchase_id, changes)
    return purchase_out(p)

@router.delete("/{purchase_id}")
def delete_purchase(purchase_id: str, db: Session = Depends(get_db), uid: str = Depends(require_user)):
    _owned(db, purchase_id, uid)
    ledger.delete_purchase(db, uid, purchase_id)
    return {"deleted": True}
