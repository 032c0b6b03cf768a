"""
Integration tests for the HTTP API.
Uses pytest-asyncio + HTTPX ASGITransport against the FastAPI app.
"""
from decimal import Decimal

import pytest
from httpx import ASGITransport, AsyncClient

from ridefare.dependencies import build_services, set_services
from ridefare.main import app
from ridefare.middleware.auth import create_access_token

MONDAY_10AM_MS = 1717408800000

ADMIN_TOKEN = create_access_token({"sub": "admin-1", "role": "admin"})
RIDER_TOKEN = create_access_token({"sub": "rider-1", "role": "user"})
OTHER_RIDER_TOKEN = create_access_token({"sub": "rider-2", "role": "user"})
DRIVER_TOKEN = create_access_token({"sub": "driver-1", "role": "provider"})


def auth(token):
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
async def client(session_factory, cache):
    set_services(build_services(session_factory, cache))
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as c:
        yield c
    set_services(None)


QUOTE_REQUEST = {
    "at_ms": MONDAY_10AM_MS,
    "estimated_distance_km": "10",
    "estimated_duration_min": "20",
    "platform_fee": "2.00",
}

S1_RULES = [
    {
        "rule_id": "base-std", "rule_name": "Standard base", "category": "base_pricing",
        "rule_type": "fixed_amount", "pricing_model": "distance_based",
        "base_rate": "3.00", "per_km_rate": "1.50", "per_minute_rate": "0.25",
        "minimum_fare": "5.00", "maximum_fare": "200.00",
    },
    {
        "rule_id": "surge-peak", "rule_name": "Peak", "category": "surge_pricing",
        "rule_type": "multiplier", "surge_multiplier": "1.5",
    },
    {
        "rule_id": "disc-20", "rule_name": "20 off", "category": "discount",
        "rule_type": "percentage", "discount_percent": "20", "max_discount": "10",
    },
]


async def publish_rules(client, rules):
    for body in rules:
        resp = await client.post("/v1/rules", json=body, headers=auth(ADMIN_TOKEN))
        assert resp.status_code == 201, resp.text
        resp = await client.post(f"/v1/rules/{body['rule_id']}/approve", json={}, headers=auth(ADMIN_TOKEN))
        assert resp.json()["status"] == "active"


class TestPublicEndpoints:
    async def test_health_check(self, client):
        resp = await client.get("/health")
        assert resp.status_code == 200
        assert resp.json()["status"] == "ok"

    async def test_metrics(self, client):
        resp = await client.get("/metrics")
        assert resp.status_code == 200
        assert "ridefare_quotes_total" in resp.text


class TestQuotesAPI:
    async def test_quote_missing_auth(self, client):
        resp = await client.post("/v1/quotes", json=QUOTE_REQUEST)
        assert resp.status_code == 401

    async def test_quote_invalid_distance(self, client):
        resp = await client.post(
            "/v1/quotes", json={**QUOTE_REQUEST, "estimated_distance_km": "-1"}, headers=auth(RIDER_TOKEN)
        )
        assert resp.status_code == 422

    async def test_malformed_promo_code(self, client):
        resp = await client.post(
            "/v1/quotes", json={**QUOTE_REQUEST, "promo_codes": ["X" * 60]}, headers=auth(RIDER_TOKEN)
        )
        assert resp.status_code == 422
        assert resp.json()["code"] == "INVALID_PROMO_CODE"

    async def test_quote_prices_published_rules(self, client):
        await publish_rules(client, S1_RULES)
        resp = await client.post("/v1/quotes", json=QUOTE_REQUEST, headers=auth(RIDER_TOKEN))
        assert resp.status_code == 201, resp.text
        body = resp.json()
        assert Decimal(body["breakdown"]["surged_amount"]) == Decimal("34.50")
        assert Decimal(body["breakdown"]["payment_amount"]) == Decimal("29.60")
        assert [r["rule_id"] for r in body["breakdown"]["applied_rules"]] == ["base-std", "surge-peak", "disc-20"]

    async def test_draft_rules_are_not_priced(self, client):
        resp = await client.post("/v1/rules", json=S1_RULES[0], headers=auth(ADMIN_TOKEN))
        assert resp.json()["status"] == "draft"
        resp = await client.post("/v1/quotes", json=QUOTE_REQUEST, headers=auth(RIDER_TOKEN))
        assert "NoBasePricing" in resp.json()["breakdown"]["warnings"]


class TestRulesAPI:
    async def test_rules_require_admin(self, client):
        resp = await client.get("/v1/rules", headers=auth(RIDER_TOKEN))
        assert resp.status_code == 403
        resp = await client.get("/v1/rules")
        assert resp.status_code == 401

    async def test_rule_lifecycle(self, client):
        await publish_rules(client, S1_RULES[:1])
        resp = await client.patch("/v1/rules/base-std", json={"priority": 10}, headers=auth(ADMIN_TOKEN))
        assert (resp.json()["priority"], resp.json()["version"]) == (10, 3)
        resp = await client.post("/v1/rules/base-std/pause", headers=auth(ADMIN_TOKEN))
        assert resp.json()["status"] == "paused"
        resp = await client.get("/v1/rules", params={"status": "paused"}, headers=auth(ADMIN_TOKEN))
        assert [r["rule_id"] for r in resp.json()] == ["base-std"]
        resp = await client.delete("/v1/rules/base-std", headers=auth(ADMIN_TOKEN))
        assert resp.json()["status"] == "deleted"
        resp = await client.get("/v1/rules/base-std", headers=auth(ADMIN_TOKEN))
        assert resp.status_code == 404
        assert resp.json()["code"] == "NOT_FOUND"

    async def test_invalid_rule_is_rejected(self, client):
        body = {**S1_RULES[0], "minimum_fare": "500.00"}
        resp = await client.post("/v1/rules", json=body, headers=auth(ADMIN_TOKEN))
        assert resp.status_code == 422
        assert resp.json()["code"] == "INVALID_RULE"

    async def test_maintenance_endpoints(self, client):
        resp = await client.post("/v1/rules/invalidate", headers=auth(ADMIN_TOKEN))
        assert resp.status_code == 204
        resp = await client.post("/v1/rules/expire-due", headers=auth(ADMIN_TOKEN))
        assert resp.json() == {"count": 0}
        resp = await client.post("/v1/rules/reservations/sweep", headers=auth(ADMIN_TOKEN))
        assert resp.json() == {"count": 0}


class TestOrderFlow:
    async def test_full_ride(self, client):
        await publish_rules(client, S1_RULES)
        quote = (await client.post("/v1/quotes", json=QUOTE_REQUEST, headers=auth(RIDER_TOKEN))).json()

        resp = await client.post("/v1/orders", json={"ride": {"vehicle_category": "car"}}, headers=auth(RIDER_TOKEN))
        assert resp.status_code == 201
        order_id = resp.json()["order_id"]

        resp = await client.post(
            f"/v1/orders/{order_id}/quote", json={"quote_id": quote["quote_id"]}, headers=auth(RIDER_TOKEN)
        )
        assert resp.status_code == 200, resp.text
        assert resp.json()["version"] == 2
        assert Decimal(resp.json()["payment_amount"]) == Decimal("29.60")

        resp = await client.post(f"/v1/orders/{order_id}/accept", headers=auth(DRIVER_TOKEN))
        assert (resp.json()["status"], resp.json()["provider_id"]) == ("accepted", "driver-1")
        await client.post(f"/v1/orders/{order_id}/start", headers=auth(DRIVER_TOKEN))
        resp = await client.post(f"/v1/orders/{order_id}/finish", json={"actual_distance": 10.4}, headers=auth(DRIVER_TOKEN))
        assert resp.json()["status"] == "trip_ended"
        resp = await client.post(f"/v1/orders/{order_id}/complete", headers=auth(ADMIN_TOKEN))
        assert resp.json()["status"] == "completed"
        assert resp.json()["payment_status"] == "paid"

    async def test_rider_cannot_accept(self, client):
        resp = await client.post("/v1/orders", json={}, headers=auth(RIDER_TOKEN))
        order_id = resp.json()["order_id"]
        resp = await client.post(f"/v1/orders/{order_id}/accept", headers=auth(RIDER_TOKEN))
        assert resp.status_code == 403

    async def test_other_rider_cannot_read_or_cancel(self, client):
        resp = await client.post("/v1/orders", json={}, headers=auth(RIDER_TOKEN))
        order_id = resp.json()["order_id"]
        resp = await client.get(f"/v1/orders/{order_id}", headers=auth(OTHER_RIDER_TOKEN))
        assert resp.status_code == 403
        resp = await client.post(f"/v1/orders/{order_id}/cancel", json={}, headers=auth(OTHER_RIDER_TOKEN))
        assert resp.status_code == 403

    async def test_rider_cancels_own_order(self, client):
        resp = await client.post("/v1/orders", json={}, headers=auth(RIDER_TOKEN))
        order_id = resp.json()["order_id"]
        resp = await client.post(f"/v1/orders/{order_id}/cancel", json={"reason": "plans changed"}, headers=auth(RIDER_TOKEN))
        assert resp.status_code == 200
        assert (resp.json()["status"], resp.json()["cancelled_by"]) == ("cancelled", "rider-1")

    async def test_invalid_transition_is_422(self, client):
        resp = await client.post("/v1/orders", json={}, headers=auth(RIDER_TOKEN))
        order_id = resp.json()["order_id"]
        resp = await client.post(f"/v1/orders/{order_id}/start", headers=auth(DRIVER_TOKEN))
        assert resp.status_code == 422
        assert resp.json()["code"] == "INVALID_TRANSITION"

    async def test_unknown_quote_is_404(self, client):
        resp = await client.post("/v1/orders", json={}, headers=auth(RIDER_TOKEN))
        order_id = resp.json()["order_id"]
        resp = await client.post(f"/v1/orders/{order_id}/quote", json={"quote_id": "nope"}, headers=auth(RIDER_TOKEN))
        assert resp.status_code == 404
