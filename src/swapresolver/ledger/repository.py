"""Repository for order and escrow persistence."""

import json
import logging
from datetime import datetime, timedelta
from typing import Any, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from swapresolver.errors import InvalidStateError, OrderNotFoundError
from swapresolver.ledger.models import (
    TERMINAL_STATUSES,
    EscrowRecord,
    EscrowStatus,
    Order,
    OrderStatus,
    OrderTransition,
    can_transition,
)
from swapresolver.timelocks import EscrowSide, TimeLockConfig

logger = logging.getLogger(__name__)


class OrderRepository:
    """Repository for all order-related database operations."""

    def __init__(self, session: AsyncSession):
        self.session = session

    # Order operations
    async def create_order(
        self,
        order_id: str,
        maker: str,
        receiver: str,
        maker_asset: str,
        maker_amount: int,
        taker_asset: str,
        taker_amount: int,
        src_chain_id: str,
        dst_chain_id: str,
        secret_hash: str,
        time_locks: TimeLockConfig,
        created_at: datetime,
        src_safety_deposit: int = 0,
        dst_safety_deposit: int = 0,
    ) -> Order:
        """Create a new order in CREATED status."""
        order = Order(
            id=order_id,
            maker=maker,
            receiver=receiver,
            maker_asset=maker_asset,
            maker_amount=maker_amount,
            taker_asset=taker_asset,
            taker_amount=taker_amount,
            src_safety_deposit=src_safety_deposit,
            dst_safety_deposit=dst_safety_deposit,
            src_chain_id=src_chain_id,
            dst_chain_id=dst_chain_id,
            secret_hash=secret_hash,
            time_locks=json.dumps(time_locks.to_dict()),
            status=OrderStatus.CREATED.value,
            created_at=created_at,
            updated_at=created_at,
            expires_at=created_at + timedelta(seconds=time_locks.max_duration),
            escrows=[],
            transitions=[],
        )
        order.transitions.append(
            OrderTransition(
                from_status=None,
                to_status=OrderStatus.CREATED.value,
                created_at=created_at,
            )
        )
        self.session.add(order)
        await self.session.flush()
        return order

    async def get_order(self, order_id: str) -> Optional[Order]:
        """Get order by ID."""
        stmt = select(Order).where(Order.id == order_id)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_order_or_raise(self, order_id: str) -> Order:
        order = await self.get_order(order_id)
        if order is None:
            raise OrderNotFoundError(f"Order {order_id} not found", order_id=order_id)
        return order

    async def transition(
        self,
        order: Order,
        target: OrderStatus,
        now: datetime,
        note: Optional[str] = None,
    ) -> bool:
        """Move an order to ``target``.

        Returns:
            False if the order is already in ``target`` (no-op)

        Raises:
            InvalidStateError: If the step is not allowed
        """
        current = order.order_status
        if current == target:
            return False
        if not can_transition(current, target):
            raise InvalidStateError(
                f"Order {order.id}: cannot move from {current.value} to {target.value}",
                order_id=order.id,
            )

        order.status = target.value
        order.updated_at = now
        if target == OrderStatus.FAILED and note:
            order.error_message = note
        order.transitions.append(
            OrderTransition(
                from_status=current.value,
                to_status=target.value,
                note=note,
                created_at=now,
            )
        )
        await self.session.flush()
        logger.info(f"Order {order.id}: {current.value} -> {target.value}")
        return True

    async def set_revealed_secret(self, order: Order, secret: str, now: datetime) -> None:
        order.revealed_secret = secret
        order.updated_at = now
        await self.session.flush()

    async def flag_attention(self, order: Order, reason: str, now: datetime) -> None:
        """Mark an order for manual intervention."""
        order.requires_attention = True
        order.error_message = reason
        order.updated_at = now
        await self.session.flush()
        logger.warning(f"Order {order.id} requires attention: {reason}")

    async def list_active_orders(self) -> list[Order]:
        """Orders still driven by a flow (non-terminal)."""
        terminal = [status.value for status in TERMINAL_STATUSES]
        stmt = select(Order).where(Order.status.not_in(terminal)).order_by(Order.created_at)
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def list_orders_needing_recovery(self) -> list[Order]:
        """Failed orders with at least one escrow not yet settled."""
        stmt = (
            select(Order)
            .join(EscrowRecord, EscrowRecord.order_id == Order.id)
            .where(
                Order.status == OrderStatus.FAILED.value,
                EscrowRecord.status.not_in(
                    [EscrowStatus.WITHDRAWN.value, EscrowStatus.CANCELLED.value]
                ),
            )
            .distinct()
            .order_by(Order.created_at)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    # Escrow operations
    async def get_escrow(self, order_id: str, side: EscrowSide) -> Optional[EscrowRecord]:
        stmt = select(EscrowRecord).where(
            EscrowRecord.order_id == order_id,
            EscrowRecord.side == EscrowSide(side).value,
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_or_create_escrow(
        self,
        order: Order,
        side: EscrowSide,
        chain_id: str,
        salt: str,
        asset: str,
        amount: int,
        safety_deposit: int,
        now: datetime,
    ) -> EscrowRecord:
        """Get the escrow for a side, creating it in DEPLOYING status."""
        escrow = order.escrow(side)
        if escrow is not None:
            return escrow

        escrow = EscrowRecord(
            side=EscrowSide(side).value,
            chain_id=chain_id,
            salt=salt,
            asset=asset,
            amount=amount,
            safety_deposit=safety_deposit,
            status=EscrowStatus.DEPLOYING.value,
            created_at=now,
            updated_at=now,
        )
        order.escrows.append(escrow)
        await self.session.flush()
        return escrow

    async def update_escrow(self, escrow: EscrowRecord, now: datetime, **fields: Any) -> EscrowRecord:
        """Set fields on an escrow record."""
        status = fields.pop("status", None)
        if status is not None:
            fields["status"] = EscrowStatus(status).value
        for name, value in fields.items():
            if not hasattr(EscrowRecord, name):
                raise AttributeError(f"EscrowRecord has no field {name}")
            setattr(escrow, name, value)
        escrow.updated_at = now
        await self.session.flush()
        return escrow
