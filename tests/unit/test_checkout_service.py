import json
import threading

import httpx

from storefront.auth.credentials import CredentialStore
from storefront.auth.gateway import RequestGateway
from storefront.checkout.attempt import CheckoutAttemptCoordinator
from storefront.checkout.models import CheckoutRequest
from storefront.checkout.service import (
    IDEMPOTENCY_HEADER,
    PARTIAL_CHECKOUT_MESSAGE,
    abandon_checkout,
    preview_checkout,
    submit_checkout,
)
from storefront.checkout.storage import MemoryKeyValueStore
from storefront.utils.http_error import SESSION_EXPIRED_MESSAGE


def _checkout(method="CARD", coupon=None):
    return CheckoutRequest.model_validate({
        "items": [
            {"productId": "p2", "variantId": "v2", "quantity": 1, "merchantId": "m2"},
            {"productId": "p1", "variantId": "v1", "quantity": 2, "merchantId": "m1"},
            {"productId": "p9", "quantity": 1},
        ],
        "shippingAddressId": "address-1",
        "paymentMethod": method,
        "couponCode": coupon,
    })


class OrdersBackend:
    """Crée une commande par clé d'idempotence; fail_merchants renvoie une erreur pour ces marchands."""

    def __init__(self, fail_merchants=(), status=500, headers=None):
        self.fail_merchants = set(fail_merchants)
        self.status = status
        self.headers = headers
        self.received = []
        self.orders = {}

    def __call__(self, request):
        body = json.loads(request.content or b"{}")
        key = request.headers.get(IDEMPOTENCY_HEADER)
        self.received.append((request.url.path, key, body))
        if request.url.path.endswith("/cancel"):
            return httpx.Response(200, json={"success": True})
        if body.get("merchantId") in self.fail_merchants:
            return httpx.Response(self.status, json={"error": "Stock insuffisant"}, headers=self.headers)
        order = self.orders.setdefault(key, {"id": f"order-{len(self.orders) + 1}", "orderNumber": f"N{len(self.orders) + 1}", "total": 10})
        return httpx.Response(201, json={"success": True, "data": order})


def _gateway(handler):
    return RequestGateway("https://api.test", CredentialStore("tok"), transport=httpx.MockTransport(handler))


def _coordinator():
    return CheckoutAttemptCoordinator(MemoryKeyValueStore(), seed_factory=lambda: "seed-1")


async def test_submit_creates_one_order_per_merchant_group():
    backend = OrdersBackend()
    coordinator = _coordinator()
    async with _gateway(backend) as gateway:
        result = await submit_checkout(gateway, coordinator, _checkout())

    assert result.complete
    assert [o.merchant_key for o in result.orders] == ["m1", "m2", "unknown-merchant"]
    assert [key for _, key, _ in backend.received] == ["seed-1:0", "seed-1:1", "seed-1:2"]
    bodies = [body for _, _, body in backend.received]
    assert bodies[0]["merchantId"] == "m1"
    assert bodies[0]["items"] == [{"productId": "p1", "variantId": "v1", "quantity": 2}]
    assert bodies[2]["merchantId"] is None
    # succès complet hors paiement différé: graine effacée
    assert coordinator.read_record() is None


async def test_partial_checkout_keeps_seed_and_retry_reuses_keys():
    backend = OrdersBackend(fail_merchants={"m2"})
    coordinator = _coordinator()
    async with _gateway(backend) as gateway:
        first = await submit_checkout(gateway, coordinator, _checkout())
        assert first.partial
        assert first.message.startswith(PARTIAL_CHECKOUT_MESSAGE)
        assert [o.order_id for o in first.orders] == ["order-1"]
        assert coordinator.read_record()["seed"] == "seed-1"

        backend.fail_merchants.clear()
        second = await submit_checkout(gateway, coordinator, _checkout())

    assert second.complete
    # même clé pour m1: le backend renvoie la commande existante, pas de doublon
    assert [o.order_id for o in second.orders] == ["order-1", "order-2", "order-3"]
    keys = [key for _, key, _ in backend.received]
    assert keys == ["seed-1:0", "seed-1:1", "seed-1:0", "seed-1:1", "seed-1:2"]


async def test_first_group_failure_is_not_partial():
    backend = OrdersBackend(fail_merchants={"m1"}, status=422)
    async with _gateway(backend) as gateway:
        result = await submit_checkout(gateway, _coordinator(), _checkout())

    assert not result.complete
    assert not result.partial
    assert result.status_code == 422
    assert result.message == "Stock insuffisant"


async def test_rate_limited_checkout_reports_retry_after():
    backend = OrdersBackend(fail_merchants={"m1"}, status=429, headers={"Retry-After": "20"})
    async with _gateway(backend) as gateway:
        result = await submit_checkout(gateway, _coordinator(), _checkout())

    assert result.status_code == 429
    assert result.retry_after_seconds == 20
    assert result.message.endswith("Réessayez dans 20s.")


async def test_auth_failure_uses_session_message():
    def handler(request):
        return httpx.Response(401, json={"error": "expired"})

    async with _gateway(handler) as gateway:
        result = await submit_checkout(gateway, _coordinator(), _checkout())

    assert result.status_code == 401
    assert result.message == SESSION_EXPIRED_MESSAGE


async def test_deferred_payment_keeps_seed_until_settled():
    coordinator = _coordinator()
    async with _gateway(OrdersBackend()) as gateway:
        result = await submit_checkout(gateway, coordinator, _checkout(method="khqr"))

    assert result.complete
    assert coordinator.read_record()["seed"] == "seed-1"


async def test_abandon_cancels_orders_and_clears_seed():
    backend = OrdersBackend()
    coordinator = _coordinator()
    coordinator.get_or_create_seed("fp")
    async with _gateway(backend) as gateway:
        cancelled = await abandon_checkout(gateway, coordinator, ["o1", "o2"])

    assert cancelled == 2
    assert [path for path, _, _ in backend.received] == ["/orders/o1/cancel", "/orders/o2/cancel"]
    assert coordinator.read_record() is None


def test_preview_exposes_keys_without_submitting():
    coordinator = _coordinator()
    preview = preview_checkout(coordinator, _checkout())
    assert preview["seed"] == "seed-1"
    assert [(g["merchantKey"], g["idempotencyKey"]) for g in preview["groups"]] == [
        ("m1", "seed-1:0"),
        ("m2", "seed-1:1"),
        ("unknown-merchant", "seed-1:2"),
    ]
    assert coordinator.read_record()["fingerprint"] == preview["fingerprint"]


class ThreadRecordingStore(MemoryKeyValueStore):
    """Store qui note le thread de chaque opération (un client Redis synchrone bloquerait la boucle)."""

    def __init__(self):
        super().__init__()
        self.threads = []

    def update(self, key, fn):
        self.threads.append(threading.get_ident())
        return super().update(key, fn)

    def remove(self, key):
        self.threads.append(threading.get_ident())
        super().remove(key)


async def test_attempt_store_is_used_off_the_event_loop_thread():
    store = ThreadRecordingStore()
    coordinator = CheckoutAttemptCoordinator(store, seed_factory=lambda: "seed-1")
    async with _gateway(OrdersBackend()) as gateway:
        await submit_checkout(gateway, coordinator, _checkout())
        await abandon_checkout(gateway, coordinator, [])

    loop_thread = threading.get_ident()
    assert len(store.threads) == 3
    assert loop_thread not in store.threads


async def test_failed_refresh_reports_401():
    def handler(request):
        if request.url.path == "/auth/refresh":
            return httpx.Response(500, json={"error": "boom"})
        return httpx.Response(401, json={"error": "expired"})

    async with _gateway(handler) as gateway:
        result = await submit_checkout(gateway, _coordinator(), _checkout())

    assert result.status_code == 401
    assert result.message == SESSION_EXPIRED_MESSAGE
