"""Order intake and status endpoints."""

import logging
from typing import Any, Optional

from fastapi import APIRouter, Request
from pydantic import BaseModel, Field

from swapresolver.services.order_service import OrderService, OrderStatusView

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/orders", tags=["Orders"])


# Request/Response models
class OrderCreatedResponse(BaseModel):
    """Order accepted for processing."""
    order_id: str
    status: str


class RevealSecretRequest(BaseModel):
    """Maker's secret, revealed once both escrows are ready."""
    secret: str = Field(min_length=1)


class RevealSecretResponse(BaseModel):
    order_id: str
    accepted: bool
    message: Optional[str] = None


def get_service(request: Request) -> OrderService:
    return request.app.state.order_service


@router.post("", response_model=OrderCreatedResponse, status_code=201)
async def create_order(payload: dict[str, Any], request: Request) -> OrderCreatedResponse:
    """Submit a swap order.

    The body uses camelCase keys (``makerAmount``, ``srcChainId``,
    ``timeLocks`` ...). Validation failures return 400 before any chain
    interaction; the escrow flow then runs in the background.
    """
    order = await get_service(request).create_order(payload)
    return OrderCreatedResponse(order_id=order.id, status=order.status)


@router.get("/{order_id}/status", response_model=OrderStatusView)
async def get_order_status(order_id: str, request: Request) -> OrderStatusView:
    """Get the current status of an order and its escrows."""
    return await get_service(request).get_status(order_id)


@router.post("/{order_id}/secret", response_model=RevealSecretResponse, status_code=202)
async def reveal_secret(
    order_id: str,
    payload: RevealSecretRequest,
    request: Request,
) -> RevealSecretResponse:
    """Reveal the maker's secret and start settlement."""
    await get_service(request).reveal_secret(order_id, payload.secret)
    return RevealSecretResponse(
        order_id=order_id,
        accepted=True,
        message="Settlement started",
    )
