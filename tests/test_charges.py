import pytest
import asyncio
import time
from contextlib import asynccontextmanager
from fastapi.testclient import TestClient
from httpx import ASGITransport, AsyncClient
from unittest.mock import patch

from main import app, get_balance_store
from errors import StoreUnavailableError
from repositories import InMemoryBalanceStore

client = TestClient(app)


class UnavailableStore(InMemoryBalanceStore):
    async def get(self, key):
        raise StoreUnavailableError("connection refused")

    async def set(self, key, value):
        raise StoreUnavailableError("connection refused")

    @asynccontextmanager
    async def transaction(self):
        raise StoreUnavailableError("connection refused")
        yield

    async def ping(self):
        return False


@pytest.fixture(autouse=True)
def store():
    """Fresh in-memory store for each test."""
    store = InMemoryBalanceStore()
    app.dependency_overrides[get_balance_store] = lambda: store
    yield store
    app.dependency_overrides.clear()


@pytest.fixture
def unavailable_store():
    store = UnavailableStore()
    app.dependency_overrides[get_balance_store] = lambda: store
    return store


class TestReset:
    """Test the reset endpoint."""

    def test_reset_sets_default_balance(self, store):
        response = client.post("/reset", json={"account": "acct"})

        assert response.status_code == 204
        assert store.values["acct/balance"] == "100"

    def test_reset_is_idempotent(self, store):
        client.post("/reset", json={"account": "acct"})
        client.post("/reset", json={"account": "acct"})

        assert store.values["acct/balance"] == "100"

    def test_reset_restores_after_charges(self, store):
        client.post("/reset", json={"account": "acct"})
        client.post("/charge/v2", json={"account": "acct", "charges": 30})
        client.post("/reset", json={"account": "acct"})

        assert store.values["acct/balance"] == "100"

    def test_reset_uses_default_account(self, store):
        response = client.post("/reset", json={})

        assert response.status_code == 204
        assert store.values["account/balance"] == "100"

    def test_reset_without_body(self, store):
        response = client.post("/reset")

        assert response.status_code == 204
        assert store.values["account/balance"] == "100"


@pytest.mark.parametrize("path", ["/charge", "/charge/v2"])
class TestBasicCharges:
    """Charge outcomes shared by both variants."""

    def test_charge_success(self, path):
        client.post("/reset", json={"account": "acct"})

        response = client.post(path, json={"account": "acct", "charges": 10})

        assert response.status_code == 200
        assert response.json() == {
            "isAuthorized": True,
            "remainingBalance": 90,
            "charges": 10,
            "status": "Success",
        }

    def test_insufficient_balance(self, path, store):
        client.post("/reset", json={"account": "acct"})

        response = client.post(path, json={"account": "acct", "charges": 150})

        assert response.status_code == 200
        assert response.json() == {
            "isAuthorized": False,
            "remainingBalance": 100,
            "charges": 0,
            "status": "InsufficientBalance",
        }
        assert store.values["acct/balance"] == "100"

    def test_charge_full_balance(self, path):
        client.post("/reset", json={"account": "acct"})

        response = client.post(path, json={"account": "acct", "charges": 100})

        data = response.json()
        assert data["status"] == "Success"
        assert data["remainingBalance"] == 0

    def test_charge_one_over_balance(self, path, store):
        client.post("/reset", json={"account": "acct"})

        response = client.post(path, json={"account": "acct", "charges": 101})

        assert response.json()["status"] == "InsufficientBalance"
        assert store.values["acct/balance"] == "100"

    def test_default_account_and_charges(self, path):
        client.post("/reset", json={})

        response = client.post(path, json={})

        data = response.json()
        assert data["charges"] == 10
        assert data["remainingBalance"] == 90

    def test_charge_without_body(self, path):
        client.post("/reset")

        response = client.post(path)

        assert response.status_code == 200
        assert response.json() == {
            "isAuthorized": True,
            "remainingBalance": 90,
            "charges": 10,
            "status": "Success",
        }

    def test_sequential_charges(self, path):
        client.post("/reset", json={"account": "acct"})

        balances = [client.post(path, json={"account": "acct", "charges": 30}).json() for _ in range(4)]

        assert [b["remainingBalance"] for b in balances] == [70, 40, 10, 10]
        assert [b["status"] for b in balances] == ["Success", "Success", "Success", "InsufficientBalance"]


class TestUninitializedAccount:
    """A missing balance is handled differently by each variant."""

    def test_original_charge_fails_on_missing_balance(self):
        response = client.post("/charge", json={"account": "never_reset", "charges": 10})

        assert response.status_code == 500
        assert response.json()["error_code"] == "E2002"

    def test_transaction_charge_reads_missing_balance_as_zero(self):
        response = client.post("/charge/v2", json={"account": "never_reset", "charges": 10})

        assert response.status_code == 200
        assert response.json() == {
            "isAuthorized": False,
            "remainingBalance": 0,
            "charges": 0,
            "status": "InsufficientBalance",
        }

    def test_malformed_balance(self, store):
        store.values["acct/balance"] = "not-a-number"

        response = client.post("/charge/v2", json={"account": "acct", "charges": 10})

        assert response.status_code == 500
        assert response.json()["error_code"] == "E2003"


class TestConcurrency:
    """Concurrent charges through the HTTP layer."""

    @pytest.mark.asyncio
    async def test_concurrent_protocol_charges_never_both_authorized(self, store):
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
            for _ in range(20):
                await ac.post("/reset", json={"account": "raceAccount"})

                response1, response2 = await asyncio.gather(
                    ac.post("/charge/v2", json={"account": "raceAccount", "charges": 60}),
                    ac.post("/charge/v2", json={"account": "raceAccount", "charges": 60}),
                )

                results = [response1.json(), response2.json()]
                statuses = [r["status"] for r in results]
                assert statuses.count("Success") == 1
                loser = next(r for r in results if r["status"] != "Success")
                assert loser["status"] in ("InsufficientBalance", "TransactionError")
                assert loser["charges"] == 0
                winner = next(r for r in results if r["status"] == "Success")
                assert winner["remainingBalance"] == 40
                assert store.values["raceAccount/balance"] == "40"

    @pytest.mark.asyncio
    async def test_many_concurrent_charges_do_not_overdraw(self, store):
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
            await ac.post("/reset", json={"account": "acct"})

            responses = await asyncio.gather(*[
                ac.post("/charge/v2", json={"account": "acct", "charges": 15})
                for _ in range(20)
            ])

        charged = sum(r.json()["charges"] for r in responses)
        assert charged <= 100
        assert int(store.values["acct/balance"]) == 100 - charged


class TestValidation:
    """Test input validation."""

    def test_negative_charges(self):
        response = client.post("/charge/v2", json={"account": "acct", "charges": -5})

        assert response.status_code == 422

    def test_empty_account(self):
        response = client.post("/charge", json={"account": "", "charges": 5})

        assert response.status_code == 422

    def test_non_integer_charges(self):
        response = client.post("/charge/v2", json={"account": "acct", "charges": "ten"})

        assert response.status_code == 422


class TestErrorHandling:
    """Infrastructure faults stay distinct from charge outcomes."""

    @pytest.mark.parametrize("path", ["/charge", "/charge/v2"])
    def test_store_unavailable_on_charge(self, unavailable_store, path):
        response = client.post(path, json={"account": "acct", "charges": 10})

        assert response.status_code == 503
        data = response.json()
        assert data["error_code"] == "E9001"
        assert "isAuthorized" not in data

    def test_store_unavailable_on_reset(self, unavailable_store):
        response = client.post("/reset", json={"account": "acct"})

        assert response.status_code == 503

    @patch('main.logger')
    def test_logging_on_error(self, mock_logger, unavailable_store):
        client.post("/charge/v2", json={"account": "acct", "charges": 10})

        mock_logger.error.assert_called()


class TestHealthAndUtility:
    """Test health check and utility endpoints."""

    def test_health_check(self):
        response = client.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["store"] == "InMemoryBalanceStore"
        assert "timestamp" in data

    def test_health_check_store_down(self, unavailable_store):
        response = client.get("/health")

        assert response.status_code == 503
        assert response.json()["status"] == "unhealthy"

    def test_root_endpoint(self):
        response = client.get("/")

        assert response.status_code == 200
        data = response.json()
        assert "message" in data
        assert "docs" in data


@pytest.mark.parametrize("path", ["/charge", "/charge/v2"])
class TestLatency:
    """Average latency of sequential charges."""

    def test_average_latency(self, path):
        client.post("/reset")
        num_requests = 5
        total_latency = 0.0

        for _ in range(num_requests):
            start = time.perf_counter()
            response = client.post(path, json={"charges": 10})
            total_latency += time.perf_counter() - start
            assert response.status_code == 200

        assert total_latency / num_requests * 1000 < 200


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
