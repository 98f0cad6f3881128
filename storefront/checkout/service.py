"""
Cas d'usage 'checkout': empreinte, graine de tentative, sous-commandes par marchand.
"""
import asyncio
import logging
from typing import Any, Dict, Iterable, List

from storefront.auth.gateway import RequestGateway
from storefront.checkout.attempt import (
    UNKNOWN_MERCHANT_KEY,
    CheckoutAttemptCoordinator,
    build_fingerprint,
)
from storefront.checkout.models import CheckoutRequest, CheckoutResult, CreatedOrder
from storefront.utils.http_error import (
    SESSION_EXPIRED_MESSAGE,
    AuthExpired,
    HttpError,
    RateLimited,
)

logger = logging.getLogger(__name__)

IDEMPOTENCY_HEADER = "Idempotency-Key"
DEFAULT_RETRY_AFTER_SECONDS = 60
PARTIAL_CHECKOUT_MESSAGE = (
    "Certaines commandes ont déjà été créées. Réessayer reprendra la tentative "
    "sans doublon grâce aux mêmes clés d'idempotence."
)
# Le QR de paiement est réglé après la création: la tentative reste suivie jusque-là
DEFERRED_PAYMENT_METHODS = {"KHQR"}


def _order_body(checkout: CheckoutRequest, merchant_key: str, items: List[Any]) -> Dict[str, Any]:
    return {
        "merchantId": None if merchant_key == UNKNOWN_MERCHANT_KEY else merchant_key,
        "items": [
            {"productId": it.product_id, "variantId": it.variant_id, "quantity": it.quantity}
            for it in items
        ],
        "shippingAddressId": checkout.shipping_address_id,
        "paymentMethod": checkout.payment_method,
        "couponCode": checkout.coupon_code,
    }


def _failure_message(error: HttpError) -> str:
    if isinstance(error, AuthExpired):
        return SESSION_EXPIRED_MESSAGE
    message = error.message or "Échec de création de la commande"
    if isinstance(error, RateLimited):
        retry_after = error.retry_after_seconds if error.retry_after_seconds is not None else DEFAULT_RETRY_AFTER_SECONDS
        message = f"{message}. Réessayez dans {retry_after}s."
    return message


def preview_checkout(coordinator: CheckoutAttemptCoordinator, checkout: CheckoutRequest) -> Dict[str, Any]:
    """
    Calcule empreinte, graine et clés par groupe sans rien soumettre.
    La graine est créée (ou réutilisée) comme lors d'une soumission réelle.
    """
    fingerprint = build_fingerprint(checkout)
    seed = coordinator.get_or_create_seed(fingerprint)
    groups = [
        {
            "merchantKey": group.merchant_key,
            "idempotencyKey": key,
            "items": [it.model_dump(by_alias=True) for it in group.items],
        }
        for group, key in coordinator.idempotency_keys(seed, checkout.items)
    ]
    return {"fingerprint": fingerprint, "seed": seed, "groups": groups}


async def submit_checkout(
    gateway: RequestGateway,
    coordinator: CheckoutAttemptCoordinator,
    checkout: CheckoutRequest,
) -> CheckoutResult:
    """
    Soumet une sous-commande par groupe marchand avec l'en-tête Idempotency-Key.
    - Échec d'un groupe: arrêt, les commandes déjà créées sont renvoyées (checkout partiel)
      et la graine est conservée pour reprendre avec les mêmes clés
    - Succès complet: graine effacée (sauf paiement différé type KHQR)
    """
    fingerprint = build_fingerprint(checkout)
    # Store éventuellement bloquant (Redis synchrone): hors de la boucle asyncio
    seed = await asyncio.to_thread(coordinator.get_or_create_seed, fingerprint)
    created: List[CreatedOrder] = []

    for group, idempotency_key in coordinator.idempotency_keys(seed, checkout.items):
        try:
            response = await gateway.post(
                "/orders",
                json=_order_body(checkout, group.merchant_key, group.items),
                headers={IDEMPOTENCY_HEADER: idempotency_key},
            )
        except HttpError as e:
            logger.warning(
                "checkout.submit failed merchant=%s status=%s code=%s created=%s",
                group.merchant_key, e.status_code, e.error_code, len(created),
            )
            message = _failure_message(e)
            if created:
                message = f"{PARTIAL_CHECKOUT_MESSAGE} {message}"
            return CheckoutResult(
                orders=created,
                complete=False,
                message=message,
                status_code=401 if isinstance(e, AuthExpired) else e.status_code,
                error_code=e.error_code,
                retry_after_seconds=e.retry_after_seconds,
            )

        try:
            body = response.json()
        except ValueError:
            body = {}
        # Réponse brute ou enveloppe {success, data}
        order = body.get("data", body) if isinstance(body, dict) else {}
        if not isinstance(order, dict) or not order.get("id"):
            return CheckoutResult(
                orders=created,
                complete=False,
                message="Réponse de création de commande incomplète, réessayez sans risque de doublon.",
                status_code=response.status_code,
            )
        created.append(CreatedOrder(
            order_id=str(order["id"]),
            order_number=order.get("orderNumber"),
            total=float(order.get("total") or 0),
            merchant_key=group.merchant_key,
            idempotency_key=idempotency_key,
        ))

    logger.info("checkout.submit complete orders=%s method=%s", len(created), checkout.payment_method)
    if checkout.payment_method not in DEFERRED_PAYMENT_METHODS:
        await asyncio.to_thread(coordinator.clear_seed)
    return CheckoutResult(orders=created, complete=True, message="Commande créée")


async def abandon_checkout(
    gateway: RequestGateway,
    coordinator: CheckoutAttemptCoordinator,
    order_ids: Iterable[str],
) -> int:
    """
    Annule les commandes en attente de la tentative puis efface la graine.
    Retourne le nombre de commandes effectivement annulées.
    """
    cancelled = 0
    for order_id in order_ids:
        try:
            await gateway.post(f"/orders/{order_id}/cancel")
            cancelled += 1
        except AuthExpired:
            raise
        except HttpError as e:
            logger.warning("checkout.abandon cancel failed order_id=%s status=%s", order_id, e.status_code)
    await asyncio.to_thread(coordinator.clear_seed)
    return cancelled
