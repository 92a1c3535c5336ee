"""Order intake and status queries.

This is the boundary the HTTP layer talks to: it validates incoming
orders before anything touches a chain, persists them, starts flows in
the background and reports status from the ledger.
"""

import logging
import uuid
from datetime import datetime
from typing import Any, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic import ValidationError as PydanticValidationError
from pydantic.alias_generators import to_camel

from swapresolver.crypto import normalize_hash
from swapresolver.errors import FlowInProgressError, ValidationError
from swapresolver.ledger.models import EscrowRecord, Order
from swapresolver.services.orchestrator import SwapOrchestrator
from swapresolver.timelocks import EscrowSide, TimeLockConfig, ensure_utc

logger = logging.getLogger(__name__)


def _as_int(value: Any) -> Any:
    """Accept ints and digit strings; reject floats and bools."""
    if isinstance(value, bool) or isinstance(value, float):
        raise ValueError("must be an integer in base units")
    if isinstance(value, str):
        text = value.strip()
        if not text.isdigit():
            raise ValueError("must be an integer in base units")
        return int(text)
    return value


class OrderInput(BaseModel):
    """A maker's swap intent as submitted."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    id: Optional[str] = Field(default=None, max_length=64)
    maker: str = Field(min_length=1, max_length=128)
    receiver: Optional[str] = Field(default=None, max_length=128)
    maker_asset: str = Field(min_length=1, max_length=128)
    taker_asset: str = Field(min_length=1, max_length=128)
    maker_amount: int = Field(gt=0)
    taker_amount: int = Field(gt=0)
    src_chain_id: Union[int, str]
    dst_chain_id: Union[int, str]
    secret_hash: str
    time_locks: dict[str, Any]
    src_safety_deposit: int = Field(default=0, ge=0)
    dst_safety_deposit: int = Field(default=0, ge=0)

    @field_validator(
        "maker_amount", "taker_amount", "src_safety_deposit", "dst_safety_deposit", mode="before"
    )
    @classmethod
    def validate_amount(cls, v: Any) -> Any:
        return _as_int(v)


class EscrowView(BaseModel):
    address: Optional[str] = None
    tx_hash: Optional[str] = None
    block_number: Optional[int] = None
    status: str
    chain_id: str


class SettlementView(BaseModel):
    tx_hash: str
    block_number: Optional[int] = None
    timestamp: Optional[datetime] = None


class OrderStatusView(BaseModel):
    """Read model returned by status queries."""

    order_id: str
    status: str
    src_escrow: Optional[EscrowView] = None
    dst_escrow: Optional[EscrowView] = None
    withdrawals: dict[str, SettlementView] = Field(default_factory=dict)
    cancellations: dict[str, SettlementView] = Field(default_factory=dict)
    secret_revealed: bool = False
    requires_attention: bool = False
    error: Optional[str] = None
    created_at: datetime
    updated_at: datetime
    expires_at: datetime


def _escrow_view(escrow: Optional[EscrowRecord]) -> Optional[EscrowView]:
    if escrow is None:
        return None
    return EscrowView(
        address=escrow.address,
        tx_hash=escrow.tx_hash,
        block_number=escrow.block_number,
        status=escrow.status,
        chain_id=escrow.chain_id,
    )


def build_status_view(order: Order) -> OrderStatusView:
    """Project an order and its escrows onto the status read model."""
    withdrawals: dict[str, SettlementView] = {}
    cancellations: dict[str, SettlementView] = {}
    for escrow in order.escrows:
        if escrow.withdraw_tx_hash:
            withdrawals[escrow.side] = SettlementView(
                tx_hash=escrow.withdraw_tx_hash,
                block_number=escrow.withdraw_block_number,
                timestamp=ensure_utc(escrow.withdrawn_at) if escrow.withdrawn_at else None,
            )
        if escrow.cancel_tx_hash:
            cancellations[escrow.side] = SettlementView(
                tx_hash=escrow.cancel_tx_hash,
                timestamp=ensure_utc(escrow.cancelled_at) if escrow.cancelled_at else None,
            )

    return OrderStatusView(
        order_id=order.id,
        status=order.status,
        src_escrow=_escrow_view(order.escrow(EscrowSide.SRC)),
        dst_escrow=_escrow_view(order.escrow(EscrowSide.DST)),
        withdrawals=withdrawals,
        cancellations=cancellations,
        secret_revealed=order.secret_revealed,
        requires_attention=order.requires_attention,
        error=order.error_message,
        created_at=ensure_utc(order.created_at),
        updated_at=ensure_utc(order.updated_at),
        expires_at=ensure_utc(order.expires_at),
    )


class OrderService:
    """Validates, records and drives orders."""

    def __init__(self, orchestrator: SwapOrchestrator):
        self.orchestrator = orchestrator
        self.store = orchestrator.store
        self.settings = orchestrator.settings

    async def create_order(
        self,
        data: Union[OrderInput, dict[str, Any]],
        auto_start: bool = True,
    ) -> Order:
        """Validate and persist an order, then start its flow.

        Submitting an order id that already exists returns the stored
        order without starting a second flow.

        Raises:
            ValidationError: If any field is malformed
            UnsupportedChainError: If a chain id maps to no family
        """
        if isinstance(data, OrderInput):
            intent = data
        else:
            try:
                intent = OrderInput.model_validate(data)
            except PydanticValidationError as e:
                raise ValidationError(f"Invalid order: {_describe(e)}")

        secret_hash = normalize_hash(intent.secret_hash)
        time_locks = TimeLockConfig.from_dict(intent.time_locks)
        time_locks.validate(self.settings.timelock_safety_margin)

        resolvers = self.orchestrator.resolvers
        src = resolvers.resolve(intent.src_chain_id)
        dst = resolvers.resolve(intent.dst_chain_id)
        if src.key == dst.key:
            raise ValidationError(f"Source and destination are the same chain ({src.key})")

        order_id = intent.id or str(uuid.uuid4())
        async with self.store.transaction() as repo:
            existing = await repo.get_order(order_id)
            if existing is not None:
                logger.info(f"Order {order_id} already exists ({existing.status})")
                return existing

            order = await repo.create_order(
                order_id=order_id,
                maker=intent.maker,
                receiver=intent.receiver or intent.maker,
                maker_asset=intent.maker_asset,
                maker_amount=intent.maker_amount,
                taker_asset=intent.taker_asset,
                taker_amount=intent.taker_amount,
                src_chain_id=src.key,
                dst_chain_id=dst.key,
                secret_hash=secret_hash,
                time_locks=time_locks,
                created_at=self.orchestrator.clock.now(),
                src_safety_deposit=intent.src_safety_deposit,
                dst_safety_deposit=intent.dst_safety_deposit,
            )

        logger.info(
            f"Order {order_id} created: {intent.maker_amount} {intent.maker_asset} on {src.key} "
            f"for {intent.taker_amount} {intent.taker_asset} on {dst.key}"
        )
        if auto_start:
            self.orchestrator.spawn(self.orchestrator.start_flow(order_id), f"start_flow:{order_id}")
        return order

    async def get_status(self, order_id: str) -> OrderStatusView:
        """Current status of an order (raises OrderNotFoundError)."""
        order = await self.orchestrator.get_order(order_id)
        return build_status_view(order)

    async def reveal_secret(self, order_id: str, secret: str) -> None:
        """Accept the maker's secret and settle in the background.

        State and secret are checked before returning, so a wrong secret
        or a premature reveal is reported to the caller directly.

        Raises:
            OrderNotFoundError: If the order does not exist
            FlowInProgressError: If a flow currently holds the order
            InvalidStateError: If the escrows are not ready
            InvalidSecretError: If the secret does not match
        """
        order = await self.orchestrator.get_order(order_id)
        if self.orchestrator.locks.is_locked(order_id):
            raise FlowInProgressError(f"Order {order_id} is busy", order_id=order_id)
        self.orchestrator.check_revealable(order, secret)

        self.orchestrator.spawn(
            self.orchestrator.complete_flow(order_id, secret), f"complete_flow:{order_id}"
        )
        logger.info(f"Order {order_id}: secret accepted, settling")


def _describe(error: PydanticValidationError) -> str:
    parts = []
    for item in error.errors():
        location = ".".join(str(part) for part in item["loc"])
        parts.append(f"{location}: {item['msg']}")
    return "; ".join(parts)
