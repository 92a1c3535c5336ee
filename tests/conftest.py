"""Pytest configuration and fixtures."""

import os

import pytest
import pytest_asyncio

# Set test environment
os.environ["ENVIRONMENT"] = "test"
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["TELEGRAM_BOT_TOKEN"] = ""
os.environ["DRY_RUN"] = "true"
os.environ["DEBUG"] = "true"

from swapresolver.config import Settings
from swapresolver.crypto import generate_secret, hash_secret
from swapresolver.ledger.database import OrderStore
from swapresolver.notifications.telegram import OperatorNotifier
from swapresolver.resolvers.factory import ResolverFactory
from swapresolver.services.orchestrator import SwapOrchestrator
from swapresolver.services.order_service import OrderService
from swapresolver.utils.clock import ManualClock

SRC_CHAIN = "evm:11155111"
DST_CHAIN = "ton:-3"

EVM_KEY = "0x" + "11" * 32
TON_KEY = "22" * 32

TIME_LOCKS = {
    "srcWithdrawal": 60,
    "srcPublicWithdrawal": 600,
    "srcCancellation": 3600,
    "srcPublicCancellation": 4200,
    "dstWithdrawal": 30,
    "dstPublicWithdrawal": 500,
    "dstCancellation": 2400,
}


def make_settings(tmp_path, **overrides) -> Settings:
    """Settings for a dry-run resolver backed by a temp sqlite file."""
    values = dict(
        _env_file=None,
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'test.db'}",
        dry_run=True,
        evm_chain_ids="1,11155111",
        evm_private_key=EVM_KEY,
        evm_mnemonic=None,
        ton_private_key=TON_KEY,
        ton_mnemonic=None,
        evm_confirmations=2,
        ton_confirmations=1,
        timelock_safety_margin=60,
        chain_call_timeout=5.0,
        chain_tx_timeout=30.0,
        chain_retry_attempts=3,
        retry_base_delay=1.0,
        retry_max_delay=8.0,
        finality_timeout=600.0,
        max_window_wait=120.0,
        flow_lock_timeout=0.0,
        recovery_max_attempts=3,
        telegram_bot_token="",
        operator_chat_ids="",
    )
    values.update(overrides)
    return Settings(**values)


def order_payload(secret: str, **overrides) -> dict:
    """A valid camelCase order body."""
    payload = {
        "maker": "0x1111111111111111111111111111111111111111",
        "receiver": "0:" + "ab" * 32,
        "makerAsset": "0x2222222222222222222222222222222222222222",
        "takerAsset": "native",
        "makerAmount": 1_000000000000000000,
        "takerAmount": 2_000000000000000000,
        "srcChainId": SRC_CHAIN,
        "dstChainId": DST_CHAIN,
        "secretHash": hash_secret(secret),
        "timeLocks": dict(TIME_LOCKS),
        "srcSafetyDeposit": 10_000,
        "dstSafetyDeposit": 20_000,
    }
    payload.update(overrides)
    return payload


@pytest.fixture
def settings(tmp_path) -> Settings:
    return make_settings(tmp_path)


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def secret() -> str:
    return generate_secret()


@pytest_asyncio.fixture
async def store(settings):
    """File-backed store so concurrent sessions see each other's commits."""
    order_store = OrderStore(settings.database_url)
    await order_store.init()
    yield order_store
    await order_store.close()


@pytest.fixture
def resolvers(settings, clock) -> ResolverFactory:
    return ResolverFactory(settings, clock=clock)


@pytest.fixture
def notifier(settings) -> OperatorNotifier:
    return OperatorNotifier(settings)


@pytest_asyncio.fixture
async def orchestrator(store, resolvers, settings, clock, notifier):
    orch = SwapOrchestrator(store, resolvers, settings=settings, clock=clock, notifier=notifier)
    yield orch
    await orch.shutdown()


@pytest.fixture
def service(orchestrator) -> OrderService:
    return OrderService(orchestrator)


@pytest.fixture
def src_chain(resolvers):
    """Simulated source chain."""
    return resolvers.simulated_chain(resolvers.resolve(SRC_CHAIN))


@pytest.fixture
def dst_chain(resolvers):
    """Simulated destination chain."""
    return resolvers.simulated_chain(resolvers.resolve(DST_CHAIN))
