from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from pricebook.db import get_db
from pricebook.deps import require_user
from pricebook.models.core import Purchase
from pricebook.routers.purchases import purchase_out
from pricebook.services import ledger

router = APIRouter(prefix="/materials", tags=["materials"])

def _aggregate(p: Purchase) -> dict:
    return {
        "material": p.material,
        "stock": float(p.stock),
        "unit": p.unit,
        "cost_per_unit": float(p.cost_per_unit),
        "last_purchase_id": p.id,
        "last_purchase_at": p.timestamp,
    }

@router.get("/")
def list_materials(db: Session = Depends(get_db), uid: str = Depends(require_user)):
    return [_aggregate(p) for p in ledger.current_materials(db, uid)]

@router.get("/{name}/latest")
def latest(name: str, db: Session = Depends(get_db), uid: str = Depends(require_user)):
    # "latest": null means no purchase yet, not an empty stock
    p = ledger.latest_purchase(db, uid, name)
    return {"material": name, "latest": purchase_out(p) if p else None}

@router.get("/{name}/history")
def history(name: str, db: Session = Depends(get_db), uid: str = Depends(require_user)):
    rows = (
        db.query(Purchase)
          .filter(Purchase.user_id == uid, Purchase.material == name)
          .order_by(Purchase.timestamp.desc(), Purchase.id.asc())
          .all()
    )
    return [purchase_out(p) for p in rows]
