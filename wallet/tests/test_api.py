"""
Integration Tests for the HTTP API

Tests cover:
1. Identity headers and role checks
2. Error kinds mapped to status codes
3. User wallet, exchange and order routes
4. Admin approval, topup and accrual routes
5. Deposit and withdrawal request routes
6. Oversized amounts reported as InvalidAmount
7. App construction for the serverless entry point
"""

import importlib.util
from decimal import Decimal
from pathlib import Path
from uuid import UUID

import pytest
from fastapi.testclient import TestClient

from wallet.api import create_app
from wallet.bootstrap import build_price_oracle
from wallet.config import Settings
from wallet.models import Asset
from wallet.prices import HttpPriceOracle, StaticPriceOracle


# Test constants
ADMIN_ID = UUID("770e8400-e29b-41d4-a716-446655440002")
SUB_ADMIN_ID = UUID("880e8400-e29b-41d4-a716-446655440003")
USER_ID = UUID("550e8400-e29b-41d4-a716-446655440000")

ADMIN_HEADERS = {"X-Actor-Id": str(ADMIN_ID), "X-Actor-Role": "admin"}
SUB_ADMIN_HEADERS = {"X-Actor-Id": str(SUB_ADMIN_ID), "X-Actor-Role": "sub-admin"}
USER_HEADERS = {"X-Actor-Id": str(USER_ID), "X-Actor-Role": "user"}


@pytest.fixture
def client(services):
    services.storage.add_user(USER_ID, managed_by=SUB_ADMIN_ID)
    services.ledger.credit(USER_ID, Asset.USDT, Decimal("10000"))
    return TestClient(create_app(services))


def usdt_balance(client) -> Decimal:
    response = client.get("/me/wallet", headers=USER_HEADERS)
    return Decimal(response.json()["balances"]["USDT"])


class TestPublicRoutes:
    def test_health(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        assert response.json()["status"] == "healthy"

    def test_plans(self, client):
        response = client.get("/plans")

        assert {p["plan_id"] for p in response.json()} == {"m1", "m2", "m3", "m4", "m5"}

    def test_prices(self, client):
        data = client.get("/prices").json()

        assert Decimal(data["prices"]["BTC"]) == Decimal("50000")
        assert data["stale"] is False


class TestIdentity:
    def test_missing_headers(self, client):
        response = client.get("/me/wallet")

        assert response.status_code == 401

    def test_unknown_user(self, client):
        headers = {"X-Actor-Id": str(ADMIN_ID), "X-Actor-Role": "user"}

        response = client.get("/me/wallet", headers=headers)

        assert response.status_code == 404
        assert response.json()["error"] == "NotFound"

    def test_user_cannot_use_admin_routes(self, client):
        response = client.get("/admin/orders/pending", headers=USER_HEADERS)

        assert response.status_code == 403
        assert response.json()["error"] == "Unauthorized"


class TestWalletRoutes:
    def test_wallet(self, client):
        data = client.get("/me/wallet", headers=USER_HEADERS).json()

        assert Decimal(data["balances"]["USDT"]) == Decimal("10000")
        assert Decimal(data["balances"]["BTC"]) == Decimal("0")

    def test_exchange(self, client):
        response = client.post(
            "/me/exchange",
            json={"from_asset": "USDT", "to_asset": "BTC", "amount": "1000"},
            headers=USER_HEADERS,
        )

        assert response.status_code == 200
        data = response.json()
        assert Decimal(data["received_amount"]) == Decimal("0.02")
        assert Decimal(data["wallet"]["balances"]["USDT"]) == Decimal("9000")

    def test_exchange_insufficient_funds(self, client):
        response = client.post(
            "/me/exchange",
            json={"from_asset": "BTC", "to_asset": "USDT", "amount": "1"},
            headers=USER_HEADERS,
        )

        assert response.status_code == 400
        assert response.json()["error"] == "InsufficientFunds"

    def test_exchange_price_unavailable(self, client, prices):
        prices.set_price(Asset.XRP, None)

        response = client.post(
            "/me/exchange",
            json={"from_asset": "USDT", "to_asset": "XRP", "amount": "10"},
            headers=USER_HEADERS,
        )

        assert response.status_code == 503
        assert response.json()["error"] == "PriceUnavailable"


class TestOrderRoutes:
    def test_order_lifecycle(self, client, clock):
        created = client.post("/me/orders", json={"plan_id": "m4", "principal": "10000"}, headers=USER_HEADERS)
        assert created.status_code == 201
        order_id = created.json()["order"]["order_id"]

        pending = client.get("/admin/orders/pending", headers=SUB_ADMIN_HEADERS).json()
        assert [o["order_id"] for o in pending] == [order_id]

        approved = client.post(f"/admin/orders/{order_id}/approve", headers=SUB_ADMIN_HEADERS)
        assert approved.json()["order"]["status"] == "ACTIVE"
        assert approved.json()["changed"] is True

        clock.advance(days=2)
        accrued = client.post(f"/admin/orders/{order_id}/accrue", headers=ADMIN_HEADERS)
        assert accrued.json()["days_credited"] == 2

        aborted = client.post(f"/me/orders/{order_id}/abort", headers=USER_HEADERS)
        assert aborted.status_code == 200
        assert aborted.json()["order"]["status"] == "ABORTED"

        # 400 accrued + 9500 refunded
        assert usdt_balance(client) == Decimal("9900")
        orders = client.get("/me/orders", headers=USER_HEADERS).json()
        assert [o["status"] for o in orders] == ["ABORTED"]

    def test_plan_bounds(self, client):
        response = client.post("/me/orders", json={"plan_id": "m4", "principal": "500"}, headers=USER_HEADERS)

        assert response.status_code == 400
        assert response.json()["error"] == "PlanBoundsViolation"

    def test_reject_with_note(self, client):
        order_id = client.post(
            "/me/orders", json={"plan_id": "m4", "principal": "10000"}, headers=USER_HEADERS
        ).json()["order"]["order_id"]

        response = client.post(f"/admin/orders/{order_id}/reject", json={"note": "Duplicate"}, headers=ADMIN_HEADERS)

        assert response.json()["order"]["note"] == "Duplicate"
        assert usdt_balance(client) == Decimal("10000")

    def test_abort_pending_is_invalid_transition(self, client):
        order_id = client.post(
            "/me/orders", json={"plan_id": "m4", "principal": "10000"}, headers=USER_HEADERS
        ).json()["order"]["order_id"]

        response = client.post(f"/me/orders/{order_id}/abort", headers=USER_HEADERS)

        assert response.status_code == 400
        assert response.json()["error"] == "InvalidTransition"

    def test_sub_admin_cannot_accrue(self, client):
        order_id = client.post(
            "/me/orders", json={"plan_id": "m4", "principal": "10000"}, headers=USER_HEADERS
        ).json()["order"]["order_id"]

        response = client.post(f"/admin/orders/{order_id}/accrue", headers=SUB_ADMIN_HEADERS)

        assert response.status_code == 403

    def test_run_accruals_with_as_of(self, client):
        order_id = client.post(
            "/me/orders", json={"plan_id": "m4", "principal": "10000"}, headers=USER_HEADERS
        ).json()["order"]["order_id"]
        client.post(f"/admin/orders/{order_id}/approve", headers=ADMIN_HEADERS)

        response = client.post("/admin/accruals/run", json={"as_of": "2024-01-11T09:00:00"}, headers=ADMIN_HEADERS)

        assert response.json()["completed"] == 1
        assert usdt_balance(client) == Decimal("12000")


class TestAdminRoutes:
    def test_topup_replay_returns_200(self, client):
        body = {"user_id": str(USER_ID), "amount": "500", "request_key": "k-1"}

        first = client.post("/admin/topups", json=body, headers=ADMIN_HEADERS)
        second = client.post("/admin/topups", json=body, headers=ADMIN_HEADERS)

        assert first.status_code == 201
        assert second.status_code == 200
        assert second.json()["replayed"] is True
        assert usdt_balance(client) == Decimal("10500")

    def test_topup_key_conflict(self, client):
        client.post("/admin/topups", json={"user_id": str(USER_ID), "amount": "500", "request_key": "k-1"},
                    headers=ADMIN_HEADERS)

        response = client.post(
            "/admin/topups",
            json={"user_id": str(USER_ID), "amount": "700", "request_key": "k-1"},
            headers=ADMIN_HEADERS,
        )

        assert response.status_code == 409
        assert response.json()["error"] == "Conflict"

    def test_topup_history(self, client):
        client.post("/admin/topups", json={"user_id": str(USER_ID), "amount": "500"}, headers=ADMIN_HEADERS)

        response = client.get(f"/admin/users/{USER_ID}/topups", headers=SUB_ADMIN_HEADERS)

        assert response.status_code == 200
        assert [Decimal(r["amount"]) for r in response.json()] == [Decimal("500")]

    def test_register_user_and_restrict(self, client):
        new_user = "aa0e8400-e29b-41d4-a716-446655440005"

        created = client.post("/admin/users", json={"user_id": new_user}, headers=ADMIN_HEADERS)
        restricted = client.put(
            f"/admin/users/{new_user}/access",
            json={"mining_restricted": True, "trade_restricted": True},
            headers=ADMIN_HEADERS,
        )

        assert created.status_code == 201
        assert restricted.json() == {"mining_restricted": True, "trade_restricted": True}
        exchange = client.post(
            "/me/exchange",
            json={"from_asset": "USDT", "to_asset": "BTC", "amount": "1"},
            headers={"X-Actor-Id": new_user, "X-Actor-Role": "user"},
        )
        assert exchange.status_code == 403


class TestFundingRoutes:
    def test_deposit_approved_twice_credits_once(self, client):
        created = client.post(
            "/me/deposits", json={"amount": "250", "wallet_address": "TQ4x9fK2"}, headers=USER_HEADERS
        )
        assert created.status_code == 201
        assert created.json()["status"] == "PENDING"
        request_id = created.json()["id"]
        assert usdt_balance(client) == Decimal("10000")

        pending = client.get("/admin/funding-requests/pending", headers=SUB_ADMIN_HEADERS).json()
        assert [r["id"] for r in pending] == [request_id]

        first = client.post(f"/admin/deposits/{request_id}/approve", headers=SUB_ADMIN_HEADERS)
        second = client.post(f"/admin/deposits/{request_id}/approve", headers=ADMIN_HEADERS)

        assert first.status_code == 200
        assert first.json()["changed"] is True
        assert first.json()["request"]["status"] == "CONFIRMED"
        assert second.status_code == 200
        assert second.json()["changed"] is False
        assert usdt_balance(client) == Decimal("10250")
        assert client.get("/admin/funding-requests/pending", headers=ADMIN_HEADERS).json() == []

    def test_withdrawal_declined_then_approve_is_noop(self, client):
        request_id = client.post(
            "/me/withdrawals", json={"amount": "4000", "wallet_address": "TQ4x9fK2"}, headers=USER_HEADERS
        ).json()["id"]

        declined = client.post(
            f"/admin/withdrawals/{request_id}/reject", json={"note": "address mismatch"}, headers=ADMIN_HEADERS
        )
        approved = client.post(f"/admin/withdrawals/{request_id}/approve", headers=ADMIN_HEADERS)

        assert declined.json()["request"]["status"] == "REJECTED"
        assert declined.json()["request"]["note"] == "address mismatch"
        assert approved.json()["changed"] is False
        assert usdt_balance(client) == Decimal("10000")

    def test_withdrawal_approved_debits(self, client):
        request_id = client.post(
            "/me/withdrawals", json={"amount": "4000", "wallet_address": "TQ4x9fK2"}, headers=USER_HEADERS
        ).json()["id"]

        response = client.post(f"/admin/withdrawals/{request_id}/approve", headers=ADMIN_HEADERS)

        assert Decimal(response.json()["record"]["amount"]) == Decimal("-4000")
        assert usdt_balance(client) == Decimal("6000")
        history = client.get("/me/funding-requests", headers=USER_HEADERS).json()
        assert [r["status"] for r in history] == ["CONFIRMED"]

    def test_withdrawal_above_balance(self, client):
        request_id = client.post(
            "/me/withdrawals", json={"amount": "40000", "wallet_address": "TQ4x9fK2"}, headers=USER_HEADERS
        ).json()["id"]

        response = client.post(f"/admin/withdrawals/{request_id}/approve", headers=ADMIN_HEADERS)

        assert response.status_code == 400
        assert response.json()["error"] == "InsufficientFunds"
        assert client.get("/me/funding-requests", headers=USER_HEADERS).json()[0]["status"] == "PENDING"

    def test_deposit_route_does_not_resolve_withdrawals(self, client):
        request_id = client.post(
            "/me/withdrawals", json={"amount": "100", "wallet_address": "TQ4x9fK2"}, headers=USER_HEADERS
        ).json()["id"]

        response = client.post(f"/admin/deposits/{request_id}/approve", headers=ADMIN_HEADERS)

        assert response.status_code == 404
        assert response.json()["error"] == "NotFound"

    def test_user_cannot_approve(self, client):
        request_id = client.post(
            "/me/deposits", json={"amount": "250", "wallet_address": "TQ4x9fK2"}, headers=USER_HEADERS
        ).json()["id"]

        response = client.post(f"/admin/deposits/{request_id}/approve", headers=USER_HEADERS)

        assert response.status_code == 403
        assert usdt_balance(client) == Decimal("10000")

    def test_invalid_request_amount(self, client):
        response = client.post(
            "/me/deposits", json={"amount": "-5", "wallet_address": "TQ4x9fK2"}, headers=USER_HEADERS
        )

        assert response.status_code == 400
        assert response.json()["error"] == "InvalidAmount"


class TestAmountLimits:
    def test_huge_topup_is_invalid_amount(self, client):
        response = client.post(
            "/admin/topups",
            json={"user_id": str(USER_ID), "amount": "1000000000000000000000"},
            headers=ADMIN_HEADERS,
        )

        assert response.status_code == 400
        assert response.json()["error"] == "InvalidAmount"
        assert usdt_balance(client) == Decimal("10000")

    def test_huge_exchange_is_invalid_amount(self, client):
        response = client.post(
            "/me/exchange",
            json={"from_asset": "USDT", "to_asset": "XRP", "amount": "1e30"},
            headers=USER_HEADERS,
        )

        assert response.status_code == 400
        assert response.json()["error"] == "InvalidAmount"


class TestBootstrap:
    def test_static_prices_from_settings(self, clock):
        config = Settings(price_source="static", static_prices={"btc": "61000.5"})

        oracle = build_price_oracle(config, clock)

        assert isinstance(oracle, StaticPriceOracle)
        assert oracle.get().price(Asset.BTC) == Decimal("61000.5")

    def test_http_oracle_selected(self, clock):
        config = Settings(price_source="http", price_cache_seconds=30)

        oracle = build_price_oracle(config, clock)

        assert isinstance(oracle, HttpPriceOracle)
        assert oracle.cache_seconds == 30

    def test_importing_api_builds_no_app(self):
        import wallet.api

        assert not hasattr(wallet.api, "app")

    def test_serverless_entry_builds_one_app(self, monkeypatch):
        import wallet.api

        built = []
        real_create_app = wallet.api.create_app

        def counting_create_app(*args, **kwargs):
            app = real_create_app(*args, **kwargs)
            built.append(app)
            return app

        monkeypatch.setattr(wallet.api, "create_app", counting_create_app)
        path = Path(__file__).resolve().parents[2] / "api" / "index.py"
        module_spec = importlib.util.spec_from_file_location("serverless_index", path)
        module = importlib.util.module_from_spec(module_spec)
        module_spec.loader.exec_module(module)

        assert built == [module.app]
        assert module.app.root_path == "/api"
        assert module.handler is not None


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
