import logging
from typing import Optional
from uuid import uuid4

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from storefront.checkout.attempt import CheckoutAttemptCoordinator
from storefront.checkout.models import AbandonRequest, CheckoutRequest
from storefront.checkout.service import abandon_checkout, preview_checkout, submit_checkout
from storefront.checkout.storage import KeyValueStore, NamespacedKeyValueStore, RedisKeyValueStore
from storefront.config import CHECKOUT_ATTEMPT_TTL_SECONDS
from storefront.utils.rate_limit import optional_rate_limit
from storefront.utils.security import gateway_from_request, get_access_token, sync_session_cookie

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/v1/checkout", tags=["Checkout API"])

ATTEMPT_SESSION_ID_KEY = "checkout_sid"

# module storefront.checkout.views
def attempt_store_for(request: Request) -> KeyValueStore:
    """
    Stockage de la tentative pour la session navigateur courante.
    La session (cookie signé) ne porte qu'un identifiant opaque; l'enregistrement vit côté serveur,
    partagé par toutes les requêtes concurrentes de cette session.
    - Si app.state.attempt_redis: Redis (multi-processus)
    - Sinon: app.state.attempt_store (mémoire du processus)
    """
    sid = request.session.get(ATTEMPT_SESSION_ID_KEY)
    if not sid:
        sid = uuid4().hex
        request.session[ATTEMPT_SESSION_ID_KEY] = sid
    namespace = f"checkout:{sid}"
    client = getattr(request.app.state, "attempt_redis", None)
    if client is not None:
        return RedisKeyValueStore(client, namespace, ttl_seconds=CHECKOUT_ATTEMPT_TTL_SECONDS)
    return NamespacedKeyValueStore(request.app.state.attempt_store, namespace)

def coordinator_for(request: Request) -> CheckoutAttemptCoordinator:
    return CheckoutAttemptCoordinator(attempt_store_for(request))

@router.post("", dependencies=[Depends(optional_rate_limit(times=10, seconds=60))])
async def create_checkout(request: Request, payload: CheckoutRequest):
    """
    Crée les sous-commandes (une par marchand) de la tentative courante.
    - 201: toutes les commandes créées
    - 207: checkout partiel, commandes déjà créées renvoyées, graine conservée
    - sinon: statut du backend (401 si session expirée, 502 si réseau/serveur), Retry-After conservé sur 429
    Un nouvel envoi du même panier réutilise les mêmes clés d'idempotence.
    """
    initial_token = get_access_token(request)
    async with gateway_from_request(request) as gateway:
        result = await submit_checkout(gateway, coordinator_for(request), payload)

    if result.complete:
        status = 201
    elif result.partial:
        status = 207
    else:
        status = result.status_code if result.status_code and result.status_code >= 400 else 502
    headers = {}
    if result.retry_after_seconds is not None:
        headers["Retry-After"] = str(result.retry_after_seconds)
    response = JSONResponse(result.model_dump(by_alias=True), status_code=status, headers=headers)
    sync_session_cookie(response, gateway, initial_token)
    return response

@router.post("/fingerprint")
def checkout_fingerprint(request: Request, payload: CheckoutRequest):
    """Empreinte canonique, graine et clés d'idempotence par groupe marchand (aucun envoi)."""
    return JSONResponse(preview_checkout(coordinator_for(request), payload))

@router.delete("/attempt")
async def delete_checkout_attempt(request: Request, payload: Optional[AbandonRequest] = None):
    """
    Abandon explicite: annule les commandes en attente fournies puis efface la graine.
    Sans orderIds, seule la graine est effacée.
    """
    order_ids = payload.order_ids if payload else []
    initial_token = get_access_token(request)
    async with gateway_from_request(request) as gateway:
        cancelled = await abandon_checkout(gateway, coordinator_for(request), order_ids)
    logger.info("checkout.abandon cancelled=%s requested=%s", cancelled, len(order_ids))
    response = JSONResponse({"cancelled": cancelled, "cleared": True})
    sync_session_cookie(response, gateway, initial_token)
    return response
