# Importing the module registers tables with Base for create_all()
from .core import (  # noqa: F401
    # Identity
    User,

    # Purchases / ledger
    Purchase,

    # Product pricing
    ProductPrice, ProductPriceLine,

    # Audit
    AuditLog,
)

__all__ = [
    "User",
    "Purchase",
    "ProductPrice", "ProductPriceLine",
    "AuditLog",
]
