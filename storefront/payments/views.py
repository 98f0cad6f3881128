import logging

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse

from storefront.payments.service import create_khqr, verify_payment
from storefront.utils.rate_limit import optional_rate_limit
from storefront.utils.security import gateway_from_request, get_access_token, sync_session_cookie

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/v1/payments", tags=["Payments API"])

# module storefront.payments.views
@router.post("/khqr/{order_id}", dependencies=[Depends(optional_rate_limit(times=10, seconds=60))])
async def payments_khqr(order_id: str, request: Request):
    """
    Génère le QR de paiement d'une commande.
    - 502 si le backend ne renvoie pas de QR exploitable
    """
    initial_token = get_access_token(request)
    async with gateway_from_request(request) as gateway:
        result = await create_khqr(gateway, order_id)
    if result is None:
        raise HTTPException(status_code=502, detail="Génération du QR de paiement impossible")
    response = JSONResponse(result.model_dump(by_alias=True))
    sync_session_cookie(response, gateway, initial_token)
    return response

@router.post("/{payment_ref}/verify", dependencies=[Depends(optional_rate_limit(times=60, seconds=60))])
async def payments_verify(payment_ref: str, request: Request):
    """
    Relaye une vérification de statut (un tick de polling côté client).
    - Erreurs backend typées via le handler HttpError (401, 429 + Retry-After, 502...)
    """
    initial_token = get_access_token(request)
    async with gateway_from_request(request) as gateway:
        result = await verify_payment(gateway, payment_ref)
    if result is None:
        raise HTTPException(status_code=502, detail="Réponse de vérification invalide")
    response = JSONResponse(result.model_dump(by_alias=True))
    sync_session_cookie(response, gateway, initial_token)
    return response
