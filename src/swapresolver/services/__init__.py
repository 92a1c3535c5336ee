"""Swap services."""

from swapresolver.services.order_service import OrderInput, OrderService, OrderStatusView
from swapresolver.services.orchestrator import SwapOrchestrator
from swapresolver.services.recovery import EscrowRecovery

__all__ = [
    "EscrowRecovery",
    "OrderInput",
    "OrderService",
    "OrderStatusView",
    "SwapOrchestrator",
]
