"""Component tests for locks, retries, hashing, chains, config and alerts."""

import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest

from swapresolver.chains import ChainFamily, chain_family, resolve_chain
from swapresolver.config import Settings
from swapresolver.crypto import (
    escrow_salt,
    generate_secret,
    hash_secret,
    normalize_hash,
    verify_secret,
)
from swapresolver.errors import (
    ChainQueryError,
    FlowInProgressError,
    UnsupportedChainError,
    ValidationError,
)
from swapresolver.notifications.telegram import SENT_HISTORY, OperatorNotifier
from swapresolver.utils.clock import ManualClock
from swapresolver.utils.locks import FlowLockRegistry
from swapresolver.utils.retry import backoff_delay, call_with_retry, with_deadline


class TestFlowLocks:
    """Tests for per-order flow locks."""

    @pytest.mark.asyncio
    async def test_get_lock_returns_same_instance(self):
        """Test that the registry keeps one lock per order."""
        registry = FlowLockRegistry()
        assert registry.get_lock("a") is registry.get_lock("a")
        assert registry.get_lock("a") is not registry.get_lock("b")

    @pytest.mark.asyncio
    async def test_hold_releases_on_exit(self):
        """Test the lock is held only inside the block."""
        registry = FlowLockRegistry()
        async with registry.hold("order", "test"):
            assert registry.is_locked("order")
        assert not registry.is_locked("order")

    @pytest.mark.asyncio
    async def test_hold_releases_on_error(self):
        """Test the lock is released when the block raises."""
        registry = FlowLockRegistry()
        with pytest.raises(RuntimeError):
            async with registry.hold("order", "test"):
                raise RuntimeError("boom")
        assert not registry.is_locked("order")

    @pytest.mark.asyncio
    async def test_concurrent_flow_rejected_immediately(self):
        """Test that a second flow on a busy order is rejected."""
        registry = FlowLockRegistry()
        entered = asyncio.Event()
        release = asyncio.Event()

        async def first():
            async with registry.hold("order", "start_flow"):
                entered.set()
                await release.wait()

        task = asyncio.create_task(first())
        await entered.wait()

        with pytest.raises(FlowInProgressError, match="start_flow"):
            async with registry.hold("order", "complete_flow"):
                pass

        release.set()
        await task

    @pytest.mark.asyncio
    async def test_waiting_caller_times_out(self):
        """Test waiting for a busy lock is bounded."""
        registry = FlowLockRegistry()
        async with registry.hold("order", "start_flow"):
            with pytest.raises(FlowInProgressError):
                async with registry.hold("order", "recovery", timeout=0.05):
                    pass

    @pytest.mark.asyncio
    async def test_waiting_caller_gets_lock_after_release(self):
        """Test a waiting caller proceeds once the holder finishes."""
        registry = FlowLockRegistry()
        order = []

        async def holder():
            async with registry.hold("order", "start_flow"):
                await asyncio.sleep(0.01)
                order.append("holder")

        task = asyncio.create_task(holder())
        await asyncio.sleep(0)
        async with registry.hold("order", "recovery", timeout=5):
            order.append("waiter")
        await task

        assert order == ["holder", "waiter"]

    def test_clear_drops_idle_locks(self):
        registry = FlowLockRegistry()
        registry.get_lock("idle")
        registry.clear()
        assert not registry.is_locked("idle")
        assert "idle" not in registry._locks


class TestRetry:
    """Tests for deadlines and bounded retries."""

    def test_backoff_delay_is_capped(self):
        assert [backoff_delay(i, 1.0, 5.0) for i in range(5)] == [1.0, 2.0, 4.0, 5.0, 5.0]

    @pytest.mark.asyncio
    async def test_transient_errors_are_retried(self):
        """Test ChainQueryError is retried with backoff until success."""
        clock = ManualClock()
        start = clock.now()
        calls = []

        async def flaky():
            calls.append(1)
            if len(calls) < 3:
                raise ChainQueryError("rpc unavailable")
            return 42

        result = await call_with_retry(flaky, "flaky read", attempts=3, clock=clock)

        assert result == 42
        assert len(calls) == 3
        assert clock.now() - start == timedelta(seconds=3)

    @pytest.mark.asyncio
    async def test_fatal_errors_are_not_retried(self):
        """Test policy errors propagate on the first attempt."""
        calls = []

        async def invalid():
            calls.append(1)
            raise ValidationError("bad input")

        with pytest.raises(ValidationError):
            await call_with_retry(invalid, "invalid call", attempts=5, clock=ManualClock())
        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_retry_attempts_exhausted(self):
        """Test the last transient error is surfaced after the last attempt."""

        async def down():
            raise ChainQueryError("connection refused")

        with pytest.raises(ChainQueryError, match="after 2 attempts"):
            await call_with_retry(down, "down", attempts=2, clock=ManualClock())

    @pytest.mark.asyncio
    async def test_deadline_surfaces_as_chain_query_error(self):
        """Test a hung call is cut off by its deadline."""
        with pytest.raises(ChainQueryError, match="timed out"):
            await with_deadline(asyncio.sleep(10), 0.01, "hung call")


class TestCrypto:
    """Tests for hashlock helpers."""

    def test_hash_secret_is_keccak256(self):
        assert hash_secret("0x" + "00" * 32) == (
            "0x290decd9548b62a8d60345a988386fc84ba6bc95484008f6362f93160ef3e563"
        )

    def test_verify_secret(self):
        secret = generate_secret()
        assert verify_secret(secret, hash_secret(secret))
        assert verify_secret(secret, hash_secret(secret).upper().replace("0X", "0x"))
        assert not verify_secret(generate_secret(), hash_secret(secret))

    def test_verify_secret_rejects_malformed_input(self):
        assert not verify_secret("not-a-secret", hash_secret("0x" + "00" * 32))
        assert not verify_secret("0x" + "00" * 32, "0x1234")

    def test_hash_secret_rejects_bad_format(self):
        with pytest.raises(ValidationError):
            hash_secret("0x" + "00" * 31)

    def test_normalize_hash(self):
        assert normalize_hash("0x" + "AB" * 32) == "0x" + "ab" * 32
        with pytest.raises(ValidationError):
            normalize_hash("ab" * 32)

    def test_escrow_salt_is_deterministic_per_side(self):
        assert escrow_salt("order", "src") == escrow_salt("order", "src")
        assert escrow_salt("order", "src") != escrow_salt("order", "dst")
        assert len(escrow_salt("order", "src")) == 66


class TestChains:
    """Tests for chain id resolution."""

    @pytest.fixture
    def settings(self):
        return Settings(_env_file=None, evm_chain_ids="1,11155111")

    @pytest.mark.parametrize(
        "chain_id,family",
        [
            (1, ChainFamily.EVM),
            ("11155111", ChainFamily.EVM),
            ("evm:1", ChainFamily.EVM),
            (-239, ChainFamily.TON),
            ("-3", ChainFamily.TON),
            ("TON:-239", ChainFamily.TON),
        ],
    )
    def test_supported_ids(self, settings, chain_id, family):
        assert chain_family(chain_id, settings) == family

    @pytest.mark.parametrize(
        "chain_id",
        [56, "evm:56", "ton:5", "evm:-3", -1, "sol:1", "mainnet", True, 0],
    )
    def test_unsupported_ids(self, settings, chain_id):
        with pytest.raises(UnsupportedChainError):
            chain_family(chain_id, settings)

    def test_resolve_chain(self, settings):
        config = resolve_chain("-3", settings)
        assert config.key == "ton:-3"
        assert config.rpc_url == settings.ton_api_url
        assert config.confirmations == settings.ton_confirmations

        config = resolve_chain(11155111, settings)
        assert config.key == "evm:11155111"
        assert config.rpc_url == settings.evm_rpc_url


class TestConfig:
    """Tests for configuration module."""

    def test_operator_ids(self):
        settings = Settings(_env_file=None, operator_chat_ids="123, 456,")
        assert settings.operator_ids == [123, 456]

    def test_settings_safe_dict_redacts_secrets(self):
        """Test that secrets never appear in the safe dict."""
        settings = Settings(
            _env_file=None,
            database_url="postgresql+asyncpg://swap:hunter2@db/swaps",
            evm_private_key="0x" + "11" * 32,
            ton_mnemonic="word " * 24,
            telegram_bot_token="123:secret-token",
            ton_api_key="toncenter-key",
        )
        safe = settings.get_safe_dict()
        text = str(safe)

        assert safe["database_url"] == "postgresql+asyncpg://swap:***@db/swaps"
        assert safe["chains"]["EVM"]["credentials"] == "private_key"
        assert safe["chains"]["TON"]["credentials"] == "mnemonic"
        for secret in ("hunter2", "11" * 32, "secret-token", "toncenter-key", "word word"):
            assert secret not in text


class TestNotifications:
    """Tests for operator alerts."""

    @pytest.fixture
    def settings(self):
        return Settings(_env_file=None, telegram_bot_token="", operator_chat_ids="111,222")

    @pytest.mark.asyncio
    async def test_alert_reaches_all_operators(self, settings):
        """Test that an alert is sent to every operator chat."""
        mock_bot = AsyncMock()
        mock_bot.send_message = AsyncMock(return_value=True)
        notifier = OperatorNotifier(settings, bot=mock_bot)

        delivered = await notifier.alert("order-1", "Source withdrawal failed", "rpc down")

        assert delivered == 2
        assert mock_bot.send_message.call_count == 2
        message = mock_bot.send_message.call_args.kwargs["text"]
        assert "Source withdrawal failed" in message
        assert "order-1" in message
        assert list(notifier.sent) == [message]

    @pytest.mark.asyncio
    async def test_notifier_handles_blocked_chat(self, settings):
        """Test that a blocked chat does not break alerting."""
        from aiogram.exceptions import TelegramForbiddenError

        mock_bot = AsyncMock()
        mock_bot.send_message = AsyncMock(
            side_effect=TelegramForbiddenError(
                method=MagicMock(),
                message="Forbidden: bot was blocked by the user"
            )
        )
        notifier = OperatorNotifier(settings, bot=mock_bot)

        assert await notifier.send_message(111, "Test message") is False
        assert await notifier.alert("order-1", "Alert") == 0

    @pytest.mark.asyncio
    async def test_notifier_without_token_only_logs(self):
        """Test that alerts are recorded but not sent without a bot."""
        notifier = OperatorNotifier(Settings(_env_file=None, telegram_bot_token=""))

        assert not notifier.enabled
        assert await notifier.alert("order-1", "Alert", "details") == 0
        assert len(notifier.sent) == 1

    @pytest.mark.asyncio
    async def test_alert_history_is_bounded(self):
        """Test that only the most recent alerts are kept in memory."""
        notifier = OperatorNotifier(Settings(_env_file=None, telegram_bot_token=""))

        for i in range(SENT_HISTORY + 5):
            await notifier.alert(f"order-{i}", "Alert")

        assert len(notifier.sent) == SENT_HISTORY
        assert "order-5" in notifier.sent[0]
        assert f"order-{SENT_HISTORY + 4}" in notifier.sent[-1]


class TestClock:
    """Tests for the manual test clock."""

    @pytest.mark.asyncio
    async def test_sleep_advances_time(self):
        clock = ManualClock()
        start = clock.now()
        await clock.sleep(30)
        await clock.sleep_until(start + timedelta(seconds=10))
        assert clock.now() - start == timedelta(seconds=30)
