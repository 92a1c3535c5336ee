"""Ledger module for orders, escrows and their audit trail."""

from swapresolver.ledger.database import OrderStore
from swapresolver.ledger.models import (
    EscrowRecord,
    EscrowStatus,
    Order,
    OrderStatus,
    OrderTransition,
)
from swapresolver.ledger.repository import OrderRepository

__all__ = [
    # Models
    "Order",
    "EscrowRecord",
    "OrderTransition",
    # Enums
    "OrderStatus",
    "EscrowStatus",
    # Database
    "OrderStore",
    "OrderRepository",
]
