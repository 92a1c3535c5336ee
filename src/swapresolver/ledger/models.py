"""SQLAlchemy models for orders and escrows."""

import json
from datetime import datetime
from enum import Enum
from typing import Optional

from sqlalchemy import (
    BigInteger,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    String,
    Text,
    TypeDecorator,
    func,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from swapresolver.timelocks import EscrowSide, TimeLockConfig


class Base(DeclarativeBase):
    """Base class for all models."""

    pass


class TokenAmount(TypeDecorator):
    """Arbitrary-precision integer stored as a decimal string.

    Base-unit amounts routinely exceed 64 bits, which SQLite would
    silently coerce to REAL.
    """

    impl = String(80)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        return str(int(value))

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        return int(value)


class OrderStatus(str, Enum):
    """Lifecycle of an order."""

    CREATED = "created"
    SRC_ESCROW_DEPLOYED = "src_escrow_deployed"
    DST_ESCROW_DEPLOYED = "dst_escrow_deployed"
    ESCROWS_READY = "escrows_ready"
    SECRET_REVEALED = "secret_revealed"
    DST_WITHDRAWN = "dst_withdrawn"
    SRC_WITHDRAWN = "src_withdrawn"
    COMPLETED = "completed"
    CANCELLED = "cancelled"      # Aborted before any funds moved
    FAILED = "failed"            # Aborted after chain work; escrows may need recovery


class EscrowStatus(str, Enum):
    """Lifecycle of one escrow."""

    DEPLOYING = "deploying"      # Deployment submitted, not yet confirmed
    DEPLOYED = "deployed"        # Included on-chain
    FUNDED = "funded"            # Balance verified
    WITHDRAWN = "withdrawn"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = frozenset(
    {OrderStatus.COMPLETED, OrderStatus.CANCELLED, OrderStatus.FAILED}
)

ORDER_SEQUENCE = [
    OrderStatus.CREATED,
    OrderStatus.SRC_ESCROW_DEPLOYED,
    OrderStatus.DST_ESCROW_DEPLOYED,
    OrderStatus.ESCROWS_READY,
    OrderStatus.SECRET_REVEALED,
    OrderStatus.DST_WITHDRAWN,
    OrderStatus.SRC_WITHDRAWN,
    OrderStatus.COMPLETED,
]

# Each non-terminal status may advance one step or abort.
ORDER_TRANSITIONS: dict[OrderStatus, frozenset[OrderStatus]] = {
    status: frozenset({nxt, OrderStatus.CANCELLED, OrderStatus.FAILED})
    for status, nxt in zip(ORDER_SEQUENCE, ORDER_SEQUENCE[1:])
}
for _terminal in TERMINAL_STATUSES:
    ORDER_TRANSITIONS[_terminal] = frozenset()


def can_transition(current: OrderStatus, target: OrderStatus) -> bool:
    """Check whether ``current -> target`` is a legal single step."""
    return target in ORDER_TRANSITIONS[OrderStatus(current)]


class Order(Base):
    """Swap intent plus its lifecycle state."""

    __tablename__ = "orders"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)

    # Economic terms
    maker: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    receiver: Mapped[str] = mapped_column(String(128), nullable=False)
    maker_asset: Mapped[str] = mapped_column(String(128), nullable=False)
    maker_amount: Mapped[int] = mapped_column(TokenAmount, nullable=False)
    taker_asset: Mapped[str] = mapped_column(String(128), nullable=False)
    taker_amount: Mapped[int] = mapped_column(TokenAmount, nullable=False)
    src_safety_deposit: Mapped[int] = mapped_column(TokenAmount, default=0)
    dst_safety_deposit: Mapped[int] = mapped_column(TokenAmount, default=0)

    # Chain terms
    src_chain_id: Mapped[str] = mapped_column(String(32), nullable=False)
    dst_chain_id: Mapped[str] = mapped_column(String(32), nullable=False)

    # Commitment
    secret_hash: Mapped[str] = mapped_column(String(66), nullable=False)
    time_locks: Mapped[str] = mapped_column(Text, nullable=False)  # JSON offsets
    revealed_secret: Mapped[Optional[str]] = mapped_column(String(66), nullable=True)

    status: Mapped[str] = mapped_column(
        String(32), default=OrderStatus.CREATED.value, nullable=False, index=True
    )
    requires_attention: Mapped[bool] = mapped_column(Boolean, default=False)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    # Relationships
    escrows: Mapped[list["EscrowRecord"]] = relationship(
        back_populates="order", lazy="selectin", order_by="EscrowRecord.id"
    )
    transitions: Mapped[list["OrderTransition"]] = relationship(
        back_populates="order", lazy="selectin", order_by="OrderTransition.id"
    )

    @property
    def timelocks(self) -> TimeLockConfig:
        return TimeLockConfig.from_dict(json.loads(self.time_locks))

    @property
    def order_status(self) -> OrderStatus:
        return OrderStatus(self.status)

    @property
    def is_terminal(self) -> bool:
        return self.order_status in TERMINAL_STATUSES

    @property
    def secret_revealed(self) -> bool:
        return self.revealed_secret is not None

    def escrow(self, side: EscrowSide) -> Optional["EscrowRecord"]:
        """Get the escrow record for one side, if created."""
        side = EscrowSide(side).value
        for record in self.escrows:
            if record.side == side:
                return record
        return None


class EscrowRecord(Base):
    """On-chain escrow for one side of an order. Never deleted."""

    __tablename__ = "escrows"
    __table_args__ = (Index("ix_escrows_order_side", "order_id", "side", unique=True),)

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    order_id: Mapped[str] = mapped_column(ForeignKey("orders.id"), nullable=False)
    side: Mapped[str] = mapped_column(String(3), nullable=False)  # src, dst
    chain_id: Mapped[str] = mapped_column(String(32), nullable=False)
    salt: Mapped[str] = mapped_column(String(66), nullable=False)
    asset: Mapped[str] = mapped_column(String(128), nullable=False)
    amount: Mapped[int] = mapped_column(TokenAmount, nullable=False)
    safety_deposit: Mapped[int] = mapped_column(TokenAmount, default=0)
    status: Mapped[str] = mapped_column(
        String(20), default=EscrowStatus.DEPLOYING.value, nullable=False
    )

    # Deployment proof
    address: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    tx_hash: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    block_number: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    hashlock: Mapped[Optional[str]] = mapped_column(String(66), nullable=True)  # Read back from chain
    deployed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    # Settlement
    withdraw_tx_hash: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    withdraw_block_number: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    withdrawn_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    cancel_tx_hash: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    safety_deposit_recipient: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    order: Mapped["Order"] = relationship(back_populates="escrows")

    @property
    def escrow_side(self) -> EscrowSide:
        return EscrowSide(self.side)

    @property
    def escrow_status(self) -> EscrowStatus:
        return EscrowStatus(self.status)

    @property
    def is_settled(self) -> bool:
        """Withdrawn or cancelled; nothing left to recover."""
        return self.escrow_status in (EscrowStatus.WITHDRAWN, EscrowStatus.CANCELLED)


class OrderTransition(Base):
    """Append-only audit trail of status changes."""

    __tablename__ = "order_transitions"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    order_id: Mapped[str] = mapped_column(ForeignKey("orders.id"), nullable=False, index=True)
    from_status: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    to_status: Mapped[str] = mapped_column(String(32), nullable=False)
    note: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    order: Mapped["Order"] = relationship(back_populates="transitions")
