"""
Gestionnaires d’exceptions du BFF.
- HTTPException: body JSON FastAPI standard {"detail": ...}.
- HttpError (erreurs du backend commerce): statut d’origine, message utilisateur,
  Retry-After conservé sur 429, cookie de session effacé sur perte d’authentification.
"""
import logging
from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse

from storefront.utils.http_error import (
    SESSION_EXPIRED_MESSAGE,
    AuthExpired,
    HttpError,
    NetworkOrServerError,
)
from storefront.utils.security import clear_session_cookie

logger = logging.getLogger(__name__)

def http_error_status(exc: HttpError) -> int:
    # Toute perte d'authentification (refresh en échec compris) est un 401 pour le client
    if isinstance(exc, AuthExpired):
        return 401
    if isinstance(exc, NetworkOrServerError) or not exc.status_code:
        return 502
    return exc.status_code

def register_exception_handlers(app: FastAPI) -> None:
    """
    Enregistre les handlers HTTPException et HttpError.
    - API: JSON immuable pour clients programmatiques.
    """
    @app.exception_handler(HTTPException)
    async def json_http_exception(request: Request, exc: HTTPException):
        return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail}, headers=exc.headers)

    @app.exception_handler(HttpError)
    async def backend_http_error(request: Request, exc: HttpError):
        status = http_error_status(exc)
        detail = SESSION_EXPIRED_MESSAGE if isinstance(exc, AuthExpired) else exc.message
        headers = {}
        if exc.retry_after_seconds is not None:
            headers["Retry-After"] = str(exc.retry_after_seconds)
        logger.info("backend error path=%s status=%s code=%s", request.url.path, status, exc.error_code)
        response = JSONResponse(
            status_code=status,
            content={"detail": detail, "errorCode": exc.error_code, "retryAfterSeconds": exc.retry_after_seconds},
            headers=headers,
        )
        if isinstance(exc, AuthExpired):
            clear_session_cookie(response)
        return response
