"""
Appels paiement vers le backend commerce (génération KHQR, vérification par md5).
"""
import logging
from typing import Any, Dict, Optional

from pydantic import ValidationError

from storefront.auth.gateway import RequestGateway
from storefront.payments.models import KHQRResult, PaymentVerification
from storefront.utils.http_error import HttpError

logger = logging.getLogger(__name__)


def _envelope_data(body: Any) -> Optional[Dict[str, Any]]:
    if not isinstance(body, dict):
        return None
    data = body.get("data")
    return data if isinstance(data, dict) else None


async def create_khqr(gateway: RequestGateway, order_id: str) -> Optional[KHQRResult]:
    """
    Génère le QR de paiement d'une commande.
    Retourne None si le backend répond sans succès (l'historique de commandes reste le repli).
    """
    try:
        response = await gateway.post(f"/payments/khqr/{order_id}")
        body = response.json()
    except (HttpError, ValueError):
        logger.exception("Erreur create_khqr order_id=%s", order_id)
        return None
    if not (isinstance(body, dict) and body.get("success")):
        return None
    data = _envelope_data(body)
    if data is None:
        return None
    try:
        return KHQRResult.model_validate(data)
    except ValidationError:
        logger.warning("payments.khqr invalid payload order_id=%s", order_id)
        return None


async def verify_payment(gateway: RequestGateway, payment_ref: str) -> Optional[PaymentVerification]:
    """
    Vérifie le statut de règlement d'une référence de paiement (md5 du QR).
    - Retour: {isPaid, currency, message} ou None si l'enveloppe ne contient pas de données
    - Erreurs: HttpError typée (AuthExpired, RateLimited, NotFound, NetworkOrServerError...)
    """
    response = await gateway.post(f"/payments/verify/md5/{payment_ref}")
    try:
        body = response.json()
    except ValueError:
        return None
    data = _envelope_data(body)
    if data is None:
        return None
    try:
        return PaymentVerification.model_validate(data)
    except ValidationError:
        logger.warning("payments.verify invalid payload ref=%s", payment_ref)
        return None
