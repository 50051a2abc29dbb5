"""Pure stock and pricing arithmetic.

Nothing here touches the database or settings: every function takes the
prior aggregate explicitly and returns a new value. All arithmetic is done
in ``Decimal``; rounding happens only where values are stored.
"""
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Iterable, Mapping, Optional, Sequence

from pricebook.errors import InsufficientStockError, ValidationError

ZERO = Decimal("0")
GRAMS_PER_KG = Decimal("1000")

DEFAULT_MARGIN1_RATE = Decimal("0.13")
DEFAULT_MARGIN2_RATE = Decimal("0.12")


class Unit(str, Enum):
    KG = "kg"
    G = "g"


_ALIASES = {
    "kg": Unit.KG, "kgs": Unit.KG, "kilogram": Unit.KG, "kilograms": Unit.KG,
    "g": Unit.G, "gm": Unit.G, "gms": Unit.G, "gram": Unit.G, "grams": Unit.G,
}


def parse_unit(value) -> Unit:
    if isinstance(value, Unit):
        return value
    unit = _ALIASES.get(str(value or "").strip().lower())
    if unit is None:
        raise ValidationError(f"unrecognized unit: {value!r} (expected kg or g)")
    return unit


def _dec(value) -> Decimal:
    if isinstance(value, Decimal):
        return value
    if value is None:
        return ZERO
    # str() keeps 0.1 as 0.1 instead of its binary expansion
    return Decimal(str(value))


def _scale(from_unit: Unit, to_unit: Unit) -> Decimal:
    """How many ``to_unit`` make one ``from_unit``."""
    if from_unit == to_unit:
        return Decimal(1)
    if from_unit == Unit.KG:
        return GRAMS_PER_KG
    return 1 / GRAMS_PER_KG


def normalize(value, from_unit, to_unit) -> Decimal:
    """Convert a quantity between kilograms and grams."""
    return _dec(value) * _scale(parse_unit(from_unit), parse_unit(to_unit))


def normalize_cost(cost, from_unit, to_unit) -> Decimal:
    """Convert a cost per unit; the dual of :func:`normalize`.

    ``quantity * cost`` is unchanged when both are relabelled to another unit.
    """
    return _dec(cost) / _scale(parse_unit(from_unit), parse_unit(to_unit))


# ── Ledger accumulation ─────────────────────────────────────────────────────

@dataclass(frozen=True)
class LedgerState:
    stock: Decimal
    unit: Unit
    cost_per_unit: Decimal


@dataclass(frozen=True)
class PurchaseLot:
    quantity: Decimal
    unit: Unit
    price_per_unit: Decimal


@dataclass(frozen=True)
class Accumulation:
    stock: Decimal
    cost_per_unit: Decimal
    unit: Unit


def accumulate(prior: Optional[LedgerState], lot: PurchaseLot) -> Accumulation:
    """Merge one purchase into the running weighted-average aggregate.

    The purchase's unit becomes the aggregate's unit of record. Each call
    models exactly one real purchase, so applying the same lot twice counts
    it twice.
    """
    unit = parse_unit(lot.unit)
    qty = _dec(lot.quantity)
    price = _dec(lot.price_per_unit)
    if qty <= ZERO:
        raise ValidationError("purchase quantity must be greater than zero")
    if price < ZERO:
        raise ValidationError("price per unit cannot be negative")

    if prior is None:
        return Accumulation(stock=qty, cost_per_unit=price, unit=unit)

    prior_stock = normalize(prior.stock, prior.unit, unit)
    prior_cost = normalize_cost(prior.cost_per_unit, prior.unit, unit)
    if prior_stock < ZERO:
        raise ValidationError("prior stock cannot be negative")

    stock = prior_stock + qty
    if stock == ZERO:
        return Accumulation(stock=stock, cost_per_unit=ZERO, unit=unit)
    cost = (prior_stock * prior_cost + qty * price) / stock
    return Accumulation(stock=stock, cost_per_unit=cost, unit=unit)


# ── Stock deduction ─────────────────────────────────────────────────────────

@dataclass(frozen=True)
class Deduction:
    new_stock: Decimal
    unit: Unit
    consumed: Decimal
    insufficient: bool = False
    shortfall: Optional[Decimal] = None


@dataclass(frozen=True)
class BomLine:
    material: str
    quantity: Decimal
    unit: Unit


def deduct(ledger: LedgerState, quantity, unit) -> Deduction:
    """Deduct a consumed quantity from one ledger aggregate.

    Reports a shortfall instead of raising; the caller decides whether to
    abort. Stock never goes below zero.
    """
    ledger_unit = parse_unit(ledger.unit)
    consumed = normalize(quantity, unit, ledger_unit)
    if consumed < ZERO:
        raise ValidationError("consumed quantity cannot be negative")
    stock = _dec(ledger.stock)
    if consumed > stock:
        return Deduction(new_stock=ZERO, unit=ledger_unit, consumed=consumed,
                         insufficient=True, shortfall=consumed - stock)
    return Deduction(new_stock=max(stock - consumed, ZERO), unit=ledger_unit, consumed=consumed)


def plan_deductions(ledgers: Mapping[str, LedgerState], lines: Iterable[BomLine]) -> dict[str, Deduction]:
    """Pre-flight every line of a bill of materials before anything is applied.

    Lines naming the same material are summed first. Raises
    InsufficientStockError listing every short material, so callers either
    apply all returned deductions or none.
    """
    totals: dict[str, Decimal] = {}
    for line in lines:
        ledger = ledgers.get(line.material)
        if ledger is None:
            raise ValidationError(f"no purchase recorded for material {line.material!r}")
        qty = _dec(line.quantity)
        if qty <= ZERO:
            raise ValidationError(f"quantity for {line.material!r} must be greater than zero")
        totals[line.material] = totals.get(line.material, ZERO) + normalize(qty, line.unit, ledger.unit)

    plan: dict[str, Deduction] = {}
    shortages = []
    for material, consumed in totals.items():
        ledger = ledgers[material]
        d = deduct(ledger, consumed, ledger.unit)
        if d.insufficient:
            shortages.append({
                "material": material,
                "required": consumed,
                "available": _dec(ledger.stock),
                "shortfall": d.shortfall,
                "unit": d.unit.value,
            })
        plan[material] = d
    if shortages:
        raise InsufficientStockError(shortages)
    return plan


# ── Product pricing ─────────────────────────────────────────────────────────

@dataclass(frozen=True)
class PriceBreakdown:
    materials_cost: Decimal
    bottle_cost: Decimal
    base_cost: Decimal
    margin1: Decimal
    margin2: Decimal
    total_selling_price: Decimal
    gross_per_bottle: Decimal


def cost_line(ledger: LedgerState, quantity, unit) -> tuple[Decimal, Decimal]:
    """Cost one BOM line at the ledger's weighted-average cost.

    Returns (cost per line unit, total cost of the line).
    """
    cost = normalize_cost(ledger.cost_per_unit, ledger.unit, unit)
    return cost, cost * _dec(quantity)


def price(materials_cost, bottle_count, cost_per_bottle,
          margin1_rate=DEFAULT_MARGIN1_RATE, margin2_rate=DEFAULT_MARGIN2_RATE) -> PriceBreakdown:
    if isinstance(bottle_count, bool) or not isinstance(bottle_count, int):
        raise ValidationError("number of bottles must be a whole number")
    if bottle_count <= 0:
        raise ValidationError("number of bottles must be greater than 0")
    materials = _dec(materials_cost)
    per_bottle = _dec(cost_per_bottle)
    if materials < ZERO or per_bottle < ZERO:
        raise ValidationError("costs cannot be negative")

    bottle_cost = bottle_count * per_bottle
    base = materials + bottle_cost
    margin1 = base * _dec(margin1_rate)
    margin2 = (base + margin1) * _dec(margin2_rate)
    total = base + margin1 + margin2
    return PriceBreakdown(
        materials_cost=materials,
        bottle_cost=bottle_cost,
        base_cost=base,
        margin1=margin1,
        margin2=margin2,
        total_selling_price=total,
        gross_per_bottle=total / bottle_count,
    )


# ── Latest record ───────────────────────────────────────────────────────────

def _field(record, name):
    if isinstance(record, Mapping):
        return record.get(name)
    return getattr(record, name, None)


def resolve_latest(history: Sequence, material: str):
    """Most recent record for ``material`` by timestamp, or None.

    Exact, case-sensitive match. On equal timestamps the first record in
    ``history`` wins, so callers pass history in the order that should
    break ties. Records without a timestamp are skipped.
    """
    latest = None
    for record in history:
        if _field(record, "material") != material or _field(record, "timestamp") is None:
            continue
        if latest is None or _field(record, "timestamp") > _field(latest, "timestamp"):
            latest = record
    return latest
