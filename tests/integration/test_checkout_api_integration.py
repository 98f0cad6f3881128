import asyncio
import json

import fakeredis
import httpx
from fastapi.testclient import TestClient

from storefront.checkout.service import PARTIAL_CHECKOUT_MESSAGE

PAYLOAD = {
    "items": [
        {"productId": "p2", "variantId": "v2", "quantity": 1, "merchantId": "m2"},
        {"productId": "p1", "variantId": "v1", "quantity": 2, "merchantId": "m1"},
    ],
    "shippingAddressId": "address-1",
    "paymentMethod": "card",
    "couponCode": "SAVE10",
}


def _orders_responder(fail_merchant=None, status=500, headers=None):
    created = {}

    def responder(request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        if body.get("merchantId") == fail_merchant:
            return httpx.Response(status, json={"error": "Erreur marchand"}, headers=headers)
        key = request.headers["Idempotency-Key"]
        order = created.setdefault(key, {"id": f"o-{len(created) + 1}", "orderNumber": f"N{len(created) + 1}", "total": 5})
        return httpx.Response(201, json={"success": True, "data": order})

    return responder


def _keys(backend):
    return [r.headers["Idempotency-Key"] for r in backend.calls("POST", "/orders")]


def test_health(client):
    res = client.get("/health")
    assert res.status_code == 200
    assert res.json() == {"ok": True}


def test_checkout_complete_returns_201_and_clears_attempt(client, backend):
    backend.on("POST", "/orders", _orders_responder())

    res = client.post("/api/v1/checkout", json=PAYLOAD)

    assert res.status_code == 201
    data = res.json()
    assert data["complete"] is True
    assert [o["merchantKey"] for o in data["orders"]] == ["m1", "m2"]
    keys = _keys(backend)
    seed = keys[0].rsplit(":", 1)[0]
    assert keys == [f"{seed}:0", f"{seed}:1"]
    assert res.headers["cache-control"].startswith("no-store")

    # tentative terminée: le même panier obtient une nouvelle graine
    preview = client.post("/api/v1/checkout/fingerprint", json=PAYLOAD).json()
    assert preview["seed"] != seed


def test_partial_checkout_returns_207_and_retry_reuses_keys(client, backend):
    backend.on("POST", "/orders", _orders_responder(fail_merchant="m2"))

    first = client.post("/api/v1/checkout", json=PAYLOAD)
    assert first.status_code == 207
    assert first.json()["message"].startswith(PARTIAL_CHECKOUT_MESSAGE)
    assert len(first.json()["orders"]) == 1

    backend.on("POST", "/orders", _orders_responder())
    second = client.post("/api/v1/checkout", json=PAYLOAD)
    assert second.status_code == 201

    keys = _keys(backend)
    assert keys[:2] == keys[2:]


def test_rate_limited_checkout_forwards_retry_after(client, backend):
    backend.on("POST", "/orders", _orders_responder(fail_merchant="m1", status=429, headers={"Retry-After": "30"}))

    res = client.post("/api/v1/checkout", json=PAYLOAD)

    assert res.status_code == 429
    assert res.headers["retry-after"] == "30"
    assert res.json()["retryAfterSeconds"] == 30


def test_backend_unreachable_returns_502():
    from storefront.app_setup.factory import create_app

    def handler(request):
        raise httpx.ConnectError("refused", request=request)

    app = create_app(backend_transport=httpx.MockTransport(handler), api_base_url="https://api.test")
    with TestClient(app) as c:
        res = c.post("/api/v1/checkout", json=PAYLOAD)
    assert res.status_code == 502


def test_failed_refresh_during_checkout_returns_401(client, backend):
    def refresh(request):
        raise httpx.ConnectError("refused", request=request)

    backend.on("POST", "/orders", lambda request: httpx.Response(401, json={"error": "jwt expired"}))
    backend.on("POST", "/auth/refresh", refresh)
    client.cookies.set("sb_access", "stale")

    res = client.post("/api/v1/checkout", json=PAYLOAD)

    assert res.status_code == 401
    assert res.json()["statusCode"] == 401
    assert len(backend.calls("POST", "/auth/refresh")) == 1


def test_expired_cookie_is_refreshed_and_rotated(client, backend, respond):
    def orders(request):
        if request.headers.get("Authorization") != "Bearer fresh":
            return httpx.Response(401, json={"error": "jwt expired"})
        return _orders_responder()(request)

    backend.on("POST", "/orders", orders)
    backend.on("POST", "/auth/refresh", respond(200, {"accessToken": "fresh"}))
    client.cookies.set("sb_access", "stale")
    client.cookies.set("refreshToken", "rt-1")

    res = client.post("/api/v1/checkout", json=PAYLOAD)

    assert res.status_code == 201
    assert len(backend.calls("POST", "/auth/refresh")) == 1
    assert "rt-1" in backend.calls("POST", "/auth/refresh")[0].headers.get("cookie", "")
    assert res.cookies.get("sb_access") == "fresh"


def test_invalid_payload_is_rejected(client, backend):
    res = client.post("/api/v1/checkout", json={**PAYLOAD, "items": []})
    assert res.status_code == 422
    assert backend.requests == []


def test_fingerprint_preview_is_stable_within_session(client):
    first = client.post("/api/v1/checkout/fingerprint", json=PAYLOAD).json()
    reordered = {**PAYLOAD, "items": list(reversed(PAYLOAD["items"]))}
    second = client.post("/api/v1/checkout/fingerprint", json=reordered).json()

    assert first["fingerprint"] == second["fingerprint"]
    assert first["seed"] == second["seed"]
    assert [g["idempotencyKey"] for g in first["groups"]] == [f"{first['seed']}:0", f"{first['seed']}:1"]

    changed = client.post("/api/v1/checkout/fingerprint", json={**PAYLOAD, "couponCode": "SAVE15"}).json()
    assert changed["seed"] != first["seed"]


def test_attempts_are_isolated_per_browser_session(app):
    with TestClient(app) as a, TestClient(app) as b:
        seed_a = a.post("/api/v1/checkout/fingerprint", json=PAYLOAD).json()["seed"]
        seed_b = b.post("/api/v1/checkout/fingerprint", json=PAYLOAD).json()["seed"]
    assert seed_a != seed_b


def test_abandon_cancels_orders_and_clears_attempt(client, backend, respond):
    backend.on("POST", "/orders/o-1/cancel", respond(200, {"success": True}))
    seed = client.post("/api/v1/checkout/fingerprint", json=PAYLOAD).json()["seed"]

    res = client.request("DELETE", "/api/v1/checkout/attempt", json={"orderIds": ["o-1"]})

    assert res.status_code == 200
    assert res.json() == {"cancelled": 1, "cleared": True}
    assert client.post("/api/v1/checkout/fingerprint", json=PAYLOAD).json()["seed"] != seed


def test_redis_attempt_store(app):
    redis_client = fakeredis.FakeRedis(decode_responses=True)
    app.state.attempt_redis = redis_client
    with TestClient(app) as c:
        first = c.post("/api/v1/checkout/fingerprint", json=PAYLOAD).json()
        second = c.post("/api/v1/checkout/fingerprint", json=PAYLOAD).json()

    assert first["seed"] == second["seed"]
    keys = redis_client.keys("checkout:*")
    assert len(keys) == 1
    assert keys[0].endswith(":checkout:attempt:v1")


async def test_concurrent_checkouts_from_one_session_share_idempotency_keys(app, backend):
    orders = _orders_responder()
    arrived = []
    both_in_flight = asyncio.Event()

    async def gated_orders(request):
        # retient la première sous-commande tant que l'autre soumission n'est pas arrivée
        arrived.append(request)
        if len(arrived) >= 2:
            both_in_flight.set()
        await asyncio.wait_for(both_in_flight.wait(), timeout=2)
        return orders(request)

    backend.on("POST", "/orders", gated_orders)
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as c:
        # session existante avec une tentative pour un autre panier
        preview = await c.post("/api/v1/checkout/fingerprint", json={**PAYLOAD, "couponCode": "OTHER"})
        assert preview.status_code == 200

        first, second = await asyncio.gather(
            c.post("/api/v1/checkout", json=PAYLOAD),
            c.post("/api/v1/checkout", json=PAYLOAD),
        )

    assert first.status_code == 201
    assert second.status_code == 201
    seeds = {key.rsplit(":", 1)[0] for key in _keys(backend)}
    assert len(seeds) == 1
    assert seeds != {preview.json()["seed"]}
    assert [o["orderId"] for o in first.json()["orders"]] == [o["orderId"] for o in second.json()["orders"]]
