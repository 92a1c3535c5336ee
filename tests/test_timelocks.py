"""Tests for the timelock schedule and cancellation policy."""

from datetime import datetime, timedelta, timezone

import pytest

from swapresolver.errors import (
    NotYetWithdrawableError,
    TooEarlyError,
    ValidationError,
    WindowClosedError,
)
from swapresolver.timelocks import (
    EscrowAction,
    EscrowSide,
    TimeLockConfig,
    TimelockStage,
    can_cancel,
    can_withdraw,
    cancellation_deadline,
    check_action,
    evaluate_stage,
    next_boundary,
    settle_safety_deposit,
    window_start,
)

from tests.conftest import TIME_LOCKS

DEPLOYED = datetime(2025, 1, 1, tzinfo=timezone.utc)
RESOLVER = "0xAaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaa"
STRANGER = "0xBbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbb"


@pytest.fixture
def locks() -> TimeLockConfig:
    return TimeLockConfig.from_dict(TIME_LOCKS)


def at(seconds: int) -> datetime:
    return DEPLOYED + timedelta(seconds=seconds)


class TestTimeLockConfig:
    """Tests for parsing and validating the seven offsets."""

    def test_from_dict_accepts_camel_and_snake_case(self, locks):
        snake = TimeLockConfig.from_dict(locks.to_dict())
        assert snake == locks
        assert locks.src_cancellation == 3600
        assert locks.dst_withdrawal == 30

    def test_missing_field_rejected(self):
        data = dict(TIME_LOCKS)
        del data["dstCancellation"]
        with pytest.raises(ValidationError, match="dst_cancellation"):
            TimeLockConfig.from_dict(data)

    def test_non_integer_rejected(self):
        with pytest.raises(ValidationError):
            TimeLockConfig.from_dict({**TIME_LOCKS, "srcWithdrawal": "soon"})
        with pytest.raises(ValidationError):
            TimeLockConfig.from_dict({**TIME_LOCKS, "srcWithdrawal": True})

    def test_valid_schedule_passes(self, locks):
        locks.validate(safety_margin=60)

    def test_max_duration(self, locks):
        assert locks.max_duration == 4200

    @pytest.mark.parametrize(
        "field,value",
        [
            ("srcPublicWithdrawal", 50),     # below srcWithdrawal
            ("srcPublicCancellation", 3000), # below srcCancellation
            ("dstPublicWithdrawal", 2500),   # above dstCancellation
        ],
    )
    def test_unordered_schedule_rejected(self, field, value):
        with pytest.raises(ValidationError):
            TimeLockConfig.from_dict({**TIME_LOCKS, field: value}).validate()

    def test_negative_offset_rejected(self):
        with pytest.raises(ValidationError, match="negative"):
            TimeLockConfig.from_dict({**TIME_LOCKS, "dstWithdrawal": -1}).validate()

    def test_empty_withdrawal_window_rejected(self):
        data = {**TIME_LOCKS, "dstWithdrawal": 2400, "dstPublicWithdrawal": 2400}
        with pytest.raises(ValidationError, match="window is empty"):
            TimeLockConfig.from_dict(data).validate()

    def test_dst_cancellation_must_precede_src_by_margin(self):
        data = {**TIME_LOCKS, "dstCancellation": 3550}
        TimeLockConfig.from_dict(data).validate(safety_margin=50)
        with pytest.raises(ValidationError, match="safety margin"):
            TimeLockConfig.from_dict(data).validate(safety_margin=60)

    def test_equal_cancellation_rejected_even_without_margin(self):
        data = {**TIME_LOCKS, "dstCancellation": 3600}
        with pytest.raises(ValidationError):
            TimeLockConfig.from_dict(data).validate(safety_margin=0)


class TestStageEvaluation:
    """Tests for stage evaluation at window boundaries."""

    @pytest.mark.parametrize(
        "offset,expected",
        [
            (0, TimelockStage.TOO_EARLY),
            (59, TimelockStage.TOO_EARLY),
            (60, TimelockStage.WITHDRAWABLE),
            (599, TimelockStage.WITHDRAWABLE),
            (600, TimelockStage.PUBLIC_WITHDRAWABLE),
            (3600, TimelockStage.CANCELLABLE),
            (4199, TimelockStage.CANCELLABLE),
            (4200, TimelockStage.PUBLIC_CANCELLABLE),
            (100_000, TimelockStage.PUBLIC_CANCELLABLE),
        ],
    )
    def test_src_stages(self, locks, offset, expected):
        assert evaluate_stage(DEPLOYED, locks, at(offset), EscrowSide.SRC) == expected

    @pytest.mark.parametrize(
        "offset,expected",
        [
            (29, TimelockStage.TOO_EARLY),
            (30, TimelockStage.WITHDRAWABLE),
            (500, TimelockStage.PUBLIC_WITHDRAWABLE),
            (2400, TimelockStage.CANCELLABLE),
            (100_000, TimelockStage.CANCELLABLE),
        ],
    )
    def test_dst_has_no_public_cancellation(self, locks, offset, expected):
        assert evaluate_stage(DEPLOYED, locks, at(offset), EscrowSide.DST) == expected

    def test_naive_deployment_time_treated_as_utc(self, locks):
        naive = DEPLOYED.replace(tzinfo=None)
        assert evaluate_stage(naive, locks, at(60), EscrowSide.SRC) == TimelockStage.WITHDRAWABLE

    def test_next_boundary(self, locks):
        assert next_boundary(DEPLOYED, locks, at(10), EscrowSide.SRC) == at(60)
        assert next_boundary(DEPLOYED, locks, at(60), EscrowSide.SRC) == at(600)
        assert next_boundary(DEPLOYED, locks, at(4200), EscrowSide.SRC) is None
        assert next_boundary(DEPLOYED, locks, at(2400), EscrowSide.DST) is None

    def test_window_start_and_deadline(self, locks):
        assert window_start(DEPLOYED, locks, EscrowSide.DST, TimelockStage.WITHDRAWABLE) == at(30)
        assert window_start(DEPLOYED, locks, EscrowSide.DST, TimelockStage.PUBLIC_CANCELLABLE) is None
        assert cancellation_deadline(DEPLOYED, locks, EscrowSide.SRC) == at(3600)


class TestPolicy:
    """Tests for who may withdraw or cancel, and when."""

    def test_private_windows_are_resolver_only(self):
        assert can_withdraw(TimelockStage.WITHDRAWABLE)
        assert not can_withdraw(TimelockStage.WITHDRAWABLE, is_resolver=False)
        assert can_withdraw(TimelockStage.PUBLIC_WITHDRAWABLE, is_resolver=False)
        assert can_cancel(TimelockStage.CANCELLABLE)
        assert not can_cancel(TimelockStage.CANCELLABLE, is_resolver=False)
        assert can_cancel(TimelockStage.PUBLIC_CANCELLABLE, is_resolver=False)

    def test_withdraw_too_early(self):
        with pytest.raises(NotYetWithdrawableError):
            check_action(TimelockStage.TOO_EARLY, EscrowAction.WITHDRAW)

    def test_withdraw_after_cancellation_opens(self):
        with pytest.raises(WindowClosedError):
            check_action(TimelockStage.CANCELLABLE, EscrowAction.WITHDRAW)

    def test_cancel_during_withdrawal_window(self):
        with pytest.raises(TooEarlyError):
            check_action(TimelockStage.PUBLIC_WITHDRAWABLE, EscrowAction.CANCEL)

    def test_safety_deposit_goes_to_resolver_in_private_window(self):
        recipient = settle_safety_deposit(
            TimelockStage.CANCELLABLE, EscrowAction.CANCEL, RESOLVER, RESOLVER.lower()
        )
        assert recipient == RESOLVER

    def test_stranger_cannot_act_in_private_window(self):
        with pytest.raises(TooEarlyError):
            settle_safety_deposit(TimelockStage.CANCELLABLE, EscrowAction.CANCEL, STRANGER, RESOLVER)

    def test_safety_deposit_goes_to_public_executor(self):
        recipient = settle_safety_deposit(
            TimelockStage.PUBLIC_WITHDRAWABLE, EscrowAction.WITHDRAW, STRANGER, RESOLVER
        )
        assert recipient == STRANGER
