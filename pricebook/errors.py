from decimal import Decimal


class PricebookError(Exception):
    """Base class for errors surfaced to API callers."""


class ValidationError(PricebookError):
    """Input rejected before any computation or write."""


class ConflictError(PricebookError):
    """The ledger moved underneath us, or the change would corrupt it."""


class PersistenceError(PricebookError):
    """The database failed; safe for the caller to retry."""


class InsufficientStockError(PricebookError):
    """Raised by the pre-flight check when any material is short."""

    def __init__(self, shortages: list[dict]):
        self.shortages = shortages
        names = ", ".join(s["material"] for s in shortages)
        super().__init__(f"Insufficient stock for: {names}")

    def as_dict(self) -> dict:
        def num(v):
            return float(v) if isinstance(v, Decimal) else v
        return {
            "detail": str(self),
            "shortages": [{k: num(v) for k, v in s.items()} for s in self.shortages],
        }


class NotFoundError(PricebookError):
    """No record with that id belongs to the caller."""
