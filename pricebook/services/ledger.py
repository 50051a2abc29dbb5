"""Database side of the material ledger.

Reads the latest purchase per material, runs the pure arithmetic from
``costing`` and writes the result back with version-guarded updates so a
concurrent writer is detected instead of silently overwritten.
"""
import logging
from datetime import datetime, timedelta, timezone
from decimal import Decimal, ROUND_HALF_UP

from sqlalchemy import delete, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from pricebook.config import settings
from pricebook.errors import ConflictError, NotFoundError, PersistenceError, ValidationError
from pricebook.models.common import utcnow
from pricebook.models.core import Purchase, ProductPrice, ProductPriceLine
from pricebook.services import costing
from pricebook.services.costing import BomLine, LedgerState, PurchaseLot
from pricebook.util.audit import audit

logger = logging.getLogger(__name__)

LOT_FIELDS = {"quantity", "unit", "price_per_unit", "gst_amount", "hamali"}
META_FIELDS = {"dealer", "gst_number", "description", "bill_photo_url"}


class _StaleRecord(Exception):
    """A guarded write matched no row; re-read and try again."""


def _q4(x) -> Decimal:
    return Decimal(x).quantize(Decimal("0.0001"), rounding=ROUND_HALF_UP)

def _q6(x) -> Decimal:
    return Decimal(x).quantize(Decimal("0.000001"), rounding=ROUND_HALF_UP)

def _aware(dt: datetime) -> datetime:
    # sqlite hands back naive datetimes
    return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)


def ledger_state(p: Purchase) -> LedgerState:
    return LedgerState(stock=p.stock, unit=costing.parse_unit(p.unit), cost_per_unit=p.cost_per_unit)

def opening_state(p: Purchase) -> LedgerState | None:
    if p.opening_unit is None:
        return None
    return LedgerState(stock=p.opening_stock, unit=costing.parse_unit(p.opening_unit),
                       cost_per_unit=p.opening_cost_per_unit)

def _lot(quantity, unit, price_per_unit, gst_amount=0, hamali=0) -> PurchaseLot:
    qty = Decimal(str(quantity))
    ppu = Decimal(str(price_per_unit))
    if settings.LANDED_COST_INCLUDES_CHARGES and qty > 0:
        ppu = (qty * ppu + Decimal(str(gst_amount or 0)) + Decimal(str(hamali or 0))) / qty
    return PurchaseLot(quantity=qty, unit=costing.parse_unit(unit), price_per_unit=ppu)


# ── Reads ───────────────────────────────────────────────────────────────────

def latest_purchase(db: Session, user_id: str, material: str) -> Purchase | None:
    """Ledger entry for a material: its newest purchase (ties: lowest id)."""
    return (
        db.query(Purchase)
          .filter(Purchase.user_id == user_id, Purchase.material == material)
          .populate_existing()
          .order_by(Purchase.timestamp.desc(), Purchase.id.asc())
          .first()
    )

def current_materials(db: Session, user_id: str) -> list[Purchase]:
    # id order makes resolve_latest break ties the way latest_purchase does
    rows = (
        db.query(Purchase)
          .filter(Purchase.user_id == user_id)
          .order_by(Purchase.material.asc(), Purchase.id.asc())
          .all()
    )
    by_material: dict[str, list[Purchase]] = {}
    for r in rows:
        by_material.setdefault(r.material, []).append(r)
    return [costing.resolve_latest(rs, m) for m, rs in by_material.items()]


# ── Guarded writes ──────────────────────────────────────────────────────────

def _guarded_update(db: Session, record: Purchase, **values) -> None:
    res = db.execute(
        update(Purchase)
        .where(Purchase.id == record.id, Purchase.version == record.version)
        .values(version=record.version + 1, **values)
        .execution_options(synchronize_session=False)
    )
    if res.rowcount != 1:
        raise _StaleRecord(record.id)

def _run_guarded(db: Session, op, what: str):
    attempts = max(settings.CAS_MAX_ATTEMPTS, 1)
    for attempt in range(1, attempts + 1):
        try:
            result = op()
            db.commit()
            return result
        except _StaleRecord as e:
            db.rollback()
            logger.warning(f"{what}: ledger record {e} changed concurrently (attempt {attempt}/{attempts})")
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"{what}: database error: {e}")
            raise PersistenceError(f"{what} failed, please retry") from e
        except Exception:
            db.rollback()
            raise
    raise ConflictError(f"{what}: ledger kept changing, gave up after {attempts} attempts")


# ── Purchases ───────────────────────────────────────────────────────────────

def record_purchase(db: Session, user_id: str, data: dict) -> Purchase:
    material = (data.get("material") or "").strip()
    if not material:
        raise ValidationError("material is required")
    lot = _lot(data["quantity"], data["unit"], data["price_per_unit"],
               data.get("gst_amount"), data.get("hamali"))

    def op():
        prior = latest_purchase(db, user_id, material)
        acc = costing.accumulate(ledger_state(prior) if prior else None, lot)
        now = utcnow()
        if prior is not None:
            _guarded_update(db, prior, updated_at=prior.updated_at)
            if _aware(prior.timestamp) >= now:
                now = _aware(prior.timestamp) + timedelta(microseconds=1)
        p = Purchase(
            user_id=user_id,
            material=material,
            dealer=data.get("dealer"),
            gst_number=data.get("gst_number"),
            description=data.get("description"),
            quantity=_q4(lot.quantity),
            unit=lot.unit.value,
            price_per_unit=_q6(Decimal(str(data["price_per_unit"]))),
            total_price=_q4(lot.quantity * Decimal(str(data["price_per_unit"]))),
            gst_amount=_q4(Decimal(str(data.get("gst_amount") or 0))),
            hamali=_q4(Decimal(str(data.get("hamali") or 0))),
            bill_photo_url=data.get("bill_photo_url"),
            stock=_q4(acc.stock),
            cost_per_unit=_q6(acc.cost_per_unit),
            opening_stock=prior.stock if prior else None,
            opening_cost_per_unit=prior.cost_per_unit if prior else None,
            opening_unit=prior.unit if prior else None,
            timestamp=now,
        )
        db.add(p)
        db.flush()
        return p

    p = _run_guarded(db, op, "record purchase")
    logger.info(f"purchase {p.id}: {p.material} +{p.quantity}{p.unit}, stock {p.stock}{p.unit} @ {p.cost_per_unit}")
    return p


def _consumed_from(record: Purchase) -> Decimal:
    """Stock already deducted from this record since it was written."""
    acc = costing.accumulate(opening_state(record), _lot(
        record.quantity, record.unit, record.price_per_unit, record.gst_amount, record.hamali))
    return max(_q4(acc.stock) - record.stock, Decimal("0"))

def _require_latest(db: Session, record: Purchase, what: str) -> None:
    latest = latest_purchase(db, record.user_id, record.material)
    if latest is None or latest.id != record.id:
        raise ConflictError(f"only the latest purchase of {record.material!r} can be {what}")


def edit_purchase(db: Session, user_id: str, purchase_id: str, changes: dict) -> Purchase:
    """Apply edits; lot edits re-derive the aggregate of the latest record."""
    unknown = set(changes) - LOT_FIELDS - META_FIELDS
    if unknown:
        raise ValidationError(f"fields cannot be edited: {', '.join(sorted(unknown))}")
    cleared = sorted(k for k in LOT_FIELDS if k in changes and changes[k] is None)
    if cleared:
        raise ValidationError(f"cannot be null: {', '.join(cleared)}")

    def op():
        record = db.get(Purchase, purchase_id, populate_existing=True)
        if record is None or record.user_id != user_id:
            raise NotFoundError("purchase not found")
        before = _snapshot(record)
        values = {k: v for k, v in changes.items() if k in META_FIELDS}
        lot_changes = {k: v for k, v in changes.items() if k in LOT_FIELDS}
        if lot_changes:
            _require_latest(db, record, "re-priced")
            consumed = _consumed_from(record)
            merged = {k: getattr(record, k) for k in LOT_FIELDS} | lot_changes
            lot = _lot(merged["quantity"], merged["unit"], merged["price_per_unit"],
                       merged["gst_amount"], merged["hamali"])
            acc = costing.accumulate(opening_state(record), lot)
            stock = acc.stock - costing.normalize(consumed, record.unit, acc.unit)
            if stock < 0:
                raise ConflictError(
                    f"{consumed}{record.unit} of this purchase was already consumed; "
                    f"quantity cannot drop below that")
            ppu = Decimal(str(merged["price_per_unit"]))
            values |= dict(
                quantity=_q4(lot.quantity),
                unit=acc.unit.value,
                price_per_unit=_q6(ppu),
                total_price=_q4(lot.quantity * ppu),
                gst_amount=_q4(Decimal(str(merged["gst_amount"] or 0))),
                hamali=_q4(Decimal(str(merged["hamali"] or 0))),
                stock=_q4(stock),
                cost_per_unit=_q6(acc.cost_per_unit),
            )
        values["updated_at"] = utcnow()
        _guarded_update(db, record, **values)
        audit(db, user_id, "purchase", record.id, "EDIT", before=before, after=_jsonable(values))
        return record.id

    pid = _run_guarded(db, op, "edit purchase")
    db.expire_all()
    return db.get(Purchase, pid)


def delete_purchase(db: Session, user_id: str, purchase_id: str) -> None:
    def op():
        record = db.get(Purchase, purchase_id, populate_existing=True)
        if record is None or record.user_id != user_id:
            raise NotFoundError("purchase not found")
        _require_latest(db, record, "deleted")
        if _consumed_from(record) > 0:
            raise ConflictError("stock from this purchase was already consumed; it cannot be deleted")
        res = db.execute(
            delete(Purchase)
            .where(Purchase.id == record.id, Purchase.version == record.version)
            .execution_options(synchronize_session=False)
        )
        if res.rowcount != 1:
            raise _StaleRecord(record.id)
        audit(db, user_id, "purchase", record.id, "DELETE", before=_snapshot(record))

    _run_guarded(db, op, "delete purchase")
    logger.info(f"purchase {purchase_id} deleted")


def _jsonable(values: dict) -> dict:
    return {k: (str(v) if isinstance(v, (Decimal, datetime)) else v) for k, v in values.items()}

def _snapshot(p: Purchase) -> dict:
    return _jsonable({
        "material": p.material, "quantity": p.quantity, "unit": p.unit,
        "price_per_unit": p.price_per_unit, "stock": p.stock, "cost_per_unit": p.cost_per_unit,
        "version": p.version,
    })


# ── Product prices ──────────────────────────────────────────────────────────

def _bom(lines: list[dict]) -> list[BomLine]:
    if not lines:
        raise ValidationError("at least one material line is required")
    out = []
    for l in lines:
        name = (l.get("material") or "").strip()
        if not name:
            raise ValidationError("material is required on every line")
        out.append(BomLine(material=name, quantity=Decimal(str(l["quantity"])),
                           unit=costing.parse_unit(l["unit"])))
    return out

def quote(db: Session, user_id: str, lines: list[dict], num_bottles: int, cost_per_bottle,
          margin1_rate=None, margin2_rate=None):
    """Cost every BOM line from the current ledger and price the batch.

    Returns (bom, ledger records by material, costed lines, breakdown).
    """
    bom = _bom(lines)
    records: dict[str, Purchase] = {}
    for line in bom:
        if line.material not in records:
            rec = latest_purchase(db, user_id, line.material)
            if rec is None:
                raise ValidationError(f"no purchase recorded for material {line.material!r}")
            records[line.material] = rec

    costed = []
    for line in bom:
        if line.quantity <= 0:
            raise ValidationError(f"quantity for {line.material!r} must be greater than zero")
        rec = records[line.material]
        cpu, total = costing.cost_line(ledger_state(rec), line.quantity, line.unit)
        costed.append({
            "purchase_id": rec.id,
            "material_name": line.material,
            "quantity": line.quantity,
            "unit": line.unit.value,
            "cost_per_unit": cpu,
            "total_cost": total,
        })
    breakdown = costing.price(
        sum((c["total_cost"] for c in costed), Decimal("0")),
        num_bottles,
        cost_per_bottle,
        margin1_rate if margin1_rate is not None else settings.MARGIN1_RATE,
        margin2_rate if margin2_rate is not None else settings.MARGIN2_RATE,
    )
    return bom, records, costed, breakdown


def save_product_price(db: Session, user_id: str, body: dict) -> ProductPrice:
    """Calculate and save; with ``deduct_stock`` consume the BOM all-or-nothing."""
    name = (body.get("name") or "").strip()
    if not name:
        raise ValidationError("name is required")
    deduct_stock = body.get("deduct_stock", True)

    def op():
        bom, records, costed, b = quote(db, user_id, body.get("lines") or [],
                                        body.get("num_bottles"), body.get("cost_per_bottle", 0))
        if deduct_stock:
            ledgers = {m: ledger_state(r) for m, r in records.items()}
            plan = costing.plan_deductions(ledgers, bom)
            for material, d in plan.items():
                rec = records[material]
                _guarded_update(db, rec, stock=_q4(d.new_stock))
                audit(db, user_id, "purchase", rec.id, "DEDUCT",
                      before={"stock": str(rec.stock)},
                      after={"stock": str(_q4(d.new_stock)), "consumed": str(d.consumed)},
                      reason=name)

        pp = ProductPrice(
            user_id=user_id,
            name=name,
            num_bottles=body["num_bottles"],
            cost_per_bottle=_q4(Decimal(str(body.get("cost_per_bottle", 0)))),
            materials_cost=_q4(b.materials_cost),
            bottle_cost=_q4(b.bottle_cost),
            base_cost=_q4(b.base_cost),
            margin1=_q4(b.margin1),
            margin2=_q4(b.margin2),
            total_selling_price=_q4(b.total_selling_price),
            gross_per_bottle=_q4(b.gross_per_bottle),
            margin1_rate=settings.MARGIN1_RATE,
            margin2_rate=settings.MARGIN2_RATE,
            stock_deducted=bool(deduct_stock),
            timestamp=utcnow(),
        )
        for pos, c in enumerate(costed):
            pp.lines.append(ProductPriceLine(
                position=pos,
                purchase_id=c["purchase_id"],
                material_name=c["material_name"],
                quantity=_q4(c["quantity"]),
                unit=c["unit"],
                cost_per_unit=_q6(c["cost_per_unit"]),
                total_cost=_q4(c["total_cost"]),
            ))
        db.add(pp)
        db.flush()
        return pp

    pp = _run_guarded(db, op, "save product price")
    logger.info(f"product price {pp.id} ({pp.name}): {pp.gross_per_bottle}/bottle, deducted={pp.stock_deducted}")
    return pp


def delete_product_price(db: Session, user_id: str, product_id: str) -> None:
    """Remove a saved product price; stock it consumed stays consumed."""
    def op():
        pp = db.get(ProductPrice, product_id, populate_existing=True)
        if pp is None or pp.user_id != user_id:
            raise NotFoundError("product price not found")
        audit(db, user_id, "product_price", pp.id, "DELETE",
              before={"name": pp.name, "gross_per_bottle": str(pp.gross_per_bottle)})
        db.delete(pp)

    _run_guarded(db, op, "delete product price")
    logger.info(f"product price {product_id} deleted")
