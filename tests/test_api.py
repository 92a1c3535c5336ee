"""Tests for the FastAPI endpoints."""

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from swapresolver.api.app import create_app, status_for
from swapresolver.crypto import generate_secret
from swapresolver.errors import ChainQueryError, FlowInProgressError, OrderNotFoundError

from tests.conftest import order_payload


@pytest_asyncio.fixture
async def test_app(settings, store, resolvers, clock):
    """Create test application sharing the test store and simulated chains."""
    app = create_app(settings, store=store, resolvers=resolvers, clock=clock)
    async with app.router.lifespan_context(app):
        yield app


@pytest_asyncio.fixture
async def client(test_app):
    """Create async test client."""
    transport = ASGITransport(app=test_app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


async def create_ready_order(client, test_app, secret) -> str:
    response = await client.post("/orders", json=order_payload(secret))
    assert response.status_code == 201
    await test_app.state.orchestrator.wait_idle()
    return response.json()["order_id"]


class TestHealthEndpoints:
    """Tests for health check endpoints."""

    @pytest.mark.asyncio
    async def test_health_check(self, client):
        """Test basic health check."""
        response = await client.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["service"] == "swapresolver"

    @pytest.mark.asyncio
    async def test_detailed_health(self, client):
        """Test detailed health check hides credentials."""
        response = await client.get("/health/detailed")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["config"]["environment"] == "test"
        assert data["config"]["chains"]["EVM"]["credentials"] == "private_key"
        assert data["pending_recoveries"] == []
        assert "11" * 32 not in response.text


class TestOrderEndpoints:
    """Tests for order intake, status and settlement."""

    @pytest.mark.asyncio
    async def test_create_order_runs_escrow_flow(self, client, test_app, secret):
        """Test a submitted order reaches escrows_ready in the background."""
        order_id = await create_ready_order(client, test_app, secret)

        response = await client.get(f"/orders/{order_id}/status")

        assert response.status_code == 200
        data = response.json()
        assert data["order_id"] == order_id
        assert data["status"] == "escrows_ready"
        assert data["src_escrow"]["status"] == "funded"
        assert data["dst_escrow"]["status"] == "funded"
        assert data["secret_revealed"] is False

    @pytest.mark.asyncio
    async def test_reveal_secret_completes_swap(self, client, test_app, secret):
        """Test revealing the secret settles both escrows."""
        order_id = await create_ready_order(client, test_app, secret)

        response = await client.post(f"/orders/{order_id}/secret", json={"secret": secret})
        assert response.status_code == 202
        assert response.json()["accepted"] is True

        await test_app.state.orchestrator.wait_idle()
        data = (await client.get(f"/orders/{order_id}/status")).json()
        assert data["status"] == "completed"
        assert data["secret_revealed"] is True
        assert set(data["withdrawals"]) == {"src", "dst"}

    @pytest.mark.asyncio
    async def test_wrong_secret_rejected(self, client, test_app, secret):
        """Test a wrong secret returns 400 and leaves the order untouched."""
        order_id = await create_ready_order(client, test_app, secret)

        response = await client.post(
            f"/orders/{order_id}/secret", json={"secret": generate_secret()}
        )

        assert response.status_code == 400
        assert response.json()["error"] == "InvalidSecretError"
        data = (await client.get(f"/orders/{order_id}/status")).json()
        assert data["status"] == "escrows_ready"

    @pytest.mark.asyncio
    async def test_secret_before_escrows_ready(self, client, test_app, secret):
        """Test a reveal before phase 1 finishes is a conflict."""
        order = await test_app.state.order_service.create_order(
            order_payload(secret), auto_start=False
        )

        response = await client.post(f"/orders/{order.id}/secret", json={"secret": secret})

        assert response.status_code == 409
        assert response.json()["error"] == "InvalidStateError"

    @pytest.mark.asyncio
    async def test_unknown_order(self, client):
        """Test status of an unknown order is 404."""
        response = await client.get("/orders/missing/status")

        assert response.status_code == 404
        assert response.json()["order_id"] == "missing"

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "overrides",
        [
            {"makerAmount": 1.5},
            {"takerAmount": 0},
            {"secretHash": "0x1234"},
            {"dstChainId": "evm:11155111"},
            {"srcChainId": 56},
            {"timeLocks": {"srcWithdrawal": 60}},
        ],
    )
    async def test_invalid_order_rejected(self, client, secret, overrides):
        """Test malformed orders are rejected with 400."""
        response = await client.post("/orders", json=order_payload(secret, **overrides))

        assert response.status_code == 400
        assert response.json()["detail"]


class TestErrorMapping:
    """Tests for error to status code mapping."""

    def test_status_codes(self):
        assert status_for(OrderNotFoundError("x")) == 404
        assert status_for(FlowInProgressError("x")) == 409
        assert status_for(ChainQueryError("x")) == 500
