"""Timelock schedule and cancellation policy.

All offsets are seconds relative to the escrow's own deployment time. The
functions here are pure: callers pass the current time explicitly and must
re-evaluate right before every withdraw or cancel call.
"""

from dataclasses import asdict, dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Optional

from swapresolver.errors import (
    NotYetWithdrawableError,
    TooEarlyError,
    ValidationError,
    WindowClosedError,
)


class EscrowSide(str, Enum):
    """Which leg of the swap an escrow belongs to."""

    SRC = "src"
    DST = "dst"


class EscrowAction(str, Enum):
    WITHDRAW = "withdraw"
    CANCEL = "cancel"


class TimelockStage(str, Enum):
    """Window an escrow is in at a given moment."""

    TOO_EARLY = "too_early"
    WITHDRAWABLE = "withdrawable"
    PUBLIC_WITHDRAWABLE = "public_withdrawable"
    CANCELLABLE = "cancellable"
    PUBLIC_CANCELLABLE = "public_cancellable"


def ensure_utc(value: datetime) -> datetime:
    """Attach UTC to naive datetimes (SQLite drops tzinfo)."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


@dataclass(frozen=True)
class SideTimelocks:
    """Offsets for one side; dst has no public cancellation."""

    withdrawal: int
    public_withdrawal: int
    cancellation: int
    public_cancellation: Optional[int] = None


@dataclass(frozen=True)
class TimeLockConfig:
    """The seven timelock offsets of an order, in seconds."""

    src_withdrawal: int
    src_public_withdrawal: int
    src_cancellation: int
    src_public_cancellation: int
    dst_withdrawal: int
    dst_public_withdrawal: int
    dst_cancellation: int

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "TimeLockConfig":
        """Build from a mapping, accepting snake_case or camelCase keys."""
        values = {}
        for name in cls.__dataclass_fields__:
            camel = _camel(name)
            raw = data.get(name, data.get(camel))
            if raw is None:
                raise ValidationError(f"Missing timelock: {name}")
            if isinstance(raw, bool):
                raise ValidationError(f"Timelock {name} must be an integer")
            try:
                values[name] = int(raw)
            except (TypeError, ValueError):
                raise ValidationError(f"Timelock {name} must be an integer")
        return cls(**values)

    def to_dict(self) -> dict[str, int]:
        return asdict(self)

    @property
    def max_duration(self) -> int:
        """Largest offset, used to derive the order's expiry."""
        return max(asdict(self).values())

    def validate(self, safety_margin: int = 0) -> None:
        """Check ordering and the cross-chain safety margin.

        Raises:
            ValidationError: If any constraint is violated
        """
        for name, value in asdict(self).items():
            if value < 0:
                raise ValidationError(f"Timelock {name} must not be negative")

        src = (
            ("src_withdrawal", self.src_withdrawal),
            ("src_public_withdrawal", self.src_public_withdrawal),
            ("src_cancellation", self.src_cancellation),
            ("src_public_cancellation", self.src_public_cancellation),
        )
        dst = (
            ("dst_withdrawal", self.dst_withdrawal),
            ("dst_public_withdrawal", self.dst_public_withdrawal),
            ("dst_cancellation", self.dst_cancellation),
        )
        for chain in (src, dst):
            for (lo_name, lo), (hi_name, hi) in zip(chain, chain[1:]):
                if lo > hi:
                    raise ValidationError(f"{lo_name} ({lo}) must not exceed {hi_name} ({hi})")

        if self.src_withdrawal >= self.src_cancellation:
            raise ValidationError("Source withdrawal window is empty")
        if self.dst_withdrawal >= self.dst_cancellation:
            raise ValidationError("Destination withdrawal window is empty")

        # The resolver must still be able to cancel src after dst cancellation opens.
        margin = max(safety_margin, 1)
        if self.dst_cancellation + margin > self.src_cancellation:
            raise ValidationError(
                f"dst_cancellation ({self.dst_cancellation}) + safety margin ({margin}) "
                f"must not exceed src_cancellation ({self.src_cancellation})"
            )

    def for_side(self, side: EscrowSide) -> SideTimelocks:
        if EscrowSide(side) == EscrowSide.SRC:
            return SideTimelocks(
                withdrawal=self.src_withdrawal,
                public_withdrawal=self.src_public_withdrawal,
                cancellation=self.src_cancellation,
                public_cancellation=self.src_public_cancellation,
            )
        return SideTimelocks(
            withdrawal=self.dst_withdrawal,
            public_withdrawal=self.dst_public_withdrawal,
            cancellation=self.dst_cancellation,
        )


def _camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(part.capitalize() for part in rest)


def _boundaries(deployed_at: datetime, locks: SideTimelocks) -> list[tuple[datetime, TimelockStage]]:
    base = ensure_utc(deployed_at)
    points = [
        (base + timedelta(seconds=locks.withdrawal), TimelockStage.WITHDRAWABLE),
        (base + timedelta(seconds=locks.public_withdrawal), TimelockStage.PUBLIC_WITHDRAWABLE),
        (base + timedelta(seconds=locks.cancellation), TimelockStage.CANCELLABLE),
    ]
    if locks.public_cancellation is not None:
        points.append(
            (base + timedelta(seconds=locks.public_cancellation), TimelockStage.PUBLIC_CANCELLABLE)
        )
    return points


def evaluate_side_stage(
    deployed_at: datetime, locks: SideTimelocks, now: datetime
) -> TimelockStage:
    """Stage of an escrow with the given side offsets at ``now``."""
    now = ensure_utc(now)
    stage = TimelockStage.TOO_EARLY
    for starts_at, next_stage in _boundaries(deployed_at, locks):
        if now >= starts_at:
            stage = next_stage
    return stage


def evaluate_stage(
    deployed_at: datetime,
    time_locks: TimeLockConfig,
    now: datetime,
    side: EscrowSide,
) -> TimelockStage:
    """Stage of one side's escrow at ``now``."""
    return evaluate_side_stage(deployed_at, time_locks.for_side(side), now)


def next_boundary(
    deployed_at: datetime,
    time_locks: TimeLockConfig,
    now: datetime,
    side: EscrowSide,
) -> Optional[datetime]:
    """When the stage next changes, or None once in the final stage."""
    now = ensure_utc(now)
    for starts_at, _ in _boundaries(deployed_at, time_locks.for_side(side)):
        if starts_at > now:
            return starts_at
    return None


def window_start(
    deployed_at: datetime,
    time_locks: TimeLockConfig,
    side: EscrowSide,
    stage: TimelockStage,
) -> Optional[datetime]:
    """Absolute time at which ``stage`` begins for this escrow."""
    for starts_at, boundary_stage in _boundaries(deployed_at, time_locks.for_side(side)):
        if boundary_stage == stage:
            return starts_at
    return None


def cancellation_deadline(
    deployed_at: datetime, time_locks: TimeLockConfig, side: EscrowSide
) -> datetime:
    """Moment the side's cancellation window opens."""
    locks = time_locks.for_side(side)
    return ensure_utc(deployed_at) + timedelta(seconds=locks.cancellation)


def can_withdraw(stage: TimelockStage, is_resolver: bool = True) -> bool:
    if stage == TimelockStage.PUBLIC_WITHDRAWABLE:
        return True
    return stage == TimelockStage.WITHDRAWABLE and is_resolver


def can_cancel(stage: TimelockStage, is_resolver: bool = True) -> bool:
    if stage == TimelockStage.PUBLIC_CANCELLABLE:
        return True
    return stage == TimelockStage.CANCELLABLE and is_resolver


def check_action(stage: TimelockStage, action: EscrowAction, is_resolver: bool = True) -> None:
    """Raise the matching policy error if ``action`` is not allowed now."""
    if action == EscrowAction.WITHDRAW:
        if stage in (TimelockStage.CANCELLABLE, TimelockStage.PUBLIC_CANCELLABLE):
            raise WindowClosedError("Withdrawal window closed: cancellation has opened")
        if not can_withdraw(stage, is_resolver):
            raise NotYetWithdrawableError(f"Escrow is not withdrawable yet ({stage.value})")
        return

    if not can_cancel(stage, is_resolver):
        raise TooEarlyError(f"Escrow is not cancellable yet ({stage.value})")


def settle_safety_deposit(
    stage: TimelockStage,
    action: EscrowAction,
    executor: str,
    resolver: str,
) -> str:
    """Decide who collects the safety deposit for an action.

    The deposit rewards whoever executes the withdraw or cancel. During the
    private windows only the resolver may act; once a public window opens
    any caller may, and the deposit goes to that caller.

    Returns:
        Address that receives the safety deposit
    """
    is_resolver = executor.lower() == resolver.lower()
    check_action(stage, action, is_resolver=is_resolver)
    return executor
