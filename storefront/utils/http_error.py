"""
Taxonomie des erreurs HTTP du backend commerce distant.

- HttpError: base commune (message, status_code, error_code, retry_after_seconds)
- Sous-classes selon le statut: AuthExpired (401), Forbidden (403), NotFound (404),
  ValidationFailed (400/409/422), RateLimited (429), NetworkOrServerError (le reste)
- error_from_response / error_from_exception: normalisent réponses httpx et exceptions transport
"""
import math
import time
from email.utils import parsedate_to_datetime
from typing import Any, Dict, Optional

import httpx

SESSION_EXPIRED_MESSAGE = "Session expirée, veuillez vous reconnecter."


class HttpError(Exception):
    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        error_code: Optional[str] = None,
        retry_after_seconds: Optional[int] = None,
    ):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.error_code = error_code
        self.retry_after_seconds = retry_after_seconds

    def to_dict(self) -> Dict[str, Any]:
        return {
            "message": self.message,
            "statusCode": self.status_code,
            "errorCode": self.error_code,
            "retryAfterSeconds": self.retry_after_seconds,
        }


class AuthExpired(HttpError):
    pass


class Forbidden(HttpError):
    pass


class NotFound(HttpError):
    pass


class ValidationFailed(HttpError):
    pass


class RateLimited(HttpError):
    pass


class NetworkOrServerError(HttpError):
    pass


class RefreshFailed(AuthExpired):
    """Échec terminal du refresh: le credential a été effacé."""


class RefreshTimeout(NetworkOrServerError):
    """Refresh bloqué au-delà du timeout: transitoire, credential conservé."""


_STATUS_CLASSES = {
    400: ValidationFailed,
    401: AuthExpired,
    403: Forbidden,
    404: NotFound,
    409: ValidationFailed,
    422: ValidationFailed,
    429: RateLimited,
}


def _normalize_text(value: Any) -> Optional[str]:
    if not isinstance(value, str):
        return None
    trimmed = value.strip()
    return trimmed or None


def parse_retry_after(value: Optional[str], now: Optional[float] = None) -> Optional[int]:
    """
    Interprète l'en-tête Retry-After:
    - entier de secondes (>= 0)
    - date HTTP convertie en délai positif arrondi au supérieur
    Retourne None si la valeur est absente ou illisible.
    """
    if value is None:
        return None
    raw = str(value).strip()
    if not raw:
        return None
    try:
        seconds = int(raw)
        return seconds if seconds >= 0 else None
    except ValueError:
        pass
    try:
        retry_at = parsedate_to_datetime(raw)
    except (TypeError, ValueError, IndexError):
        return None
    if retry_at is None:
        return None
    current = time.time() if now is None else now
    return max(0, math.ceil(retry_at.timestamp() - current))


def error_class_for_status(status_code: Optional[int]) -> type:
    if status_code is None:
        return NetworkOrServerError
    return _STATUS_CLASSES.get(status_code, NetworkOrServerError)


def error_from_response(response: httpx.Response, fallback: str) -> HttpError:
    """
    Construit l'erreur typée à partir d'une réponse non-2xx.
    - message: enveloppe backend {error|message}, sinon le fallback
    - error_code: champ "code" de l'enveloppe
    - retry_after_seconds: en-tête Retry-After
    """
    envelope: Dict[str, Any] = {}
    try:
        body = response.json()
        if isinstance(body, dict):
            envelope = body
    except ValueError:
        envelope = {}

    message = (
        _normalize_text(envelope.get("error"))
        or _normalize_text(envelope.get("message"))
        or fallback
    )
    cls = error_class_for_status(response.status_code)
    return cls(
        message,
        status_code=response.status_code,
        error_code=_normalize_text(envelope.get("code")),
        retry_after_seconds=parse_retry_after(response.headers.get("retry-after")),
    )


def error_from_exception(exc: BaseException, fallback: str) -> HttpError:
    if isinstance(exc, HttpError):
        return exc
    if isinstance(exc, httpx.HTTPStatusError):
        return error_from_response(exc.response, fallback)
    # httpx.TransportError (timeouts inclus) et le reste: transitoire
    return NetworkOrServerError(_normalize_text(str(exc)) or fallback)


def get_error_message(exc: BaseException, fallback: str) -> str:
    return error_from_exception(exc, fallback).message
