from typing import Optional

from fastapi import Request
from fastapi.responses import Response

from storefront.auth.credentials import CredentialStore
from storefront.auth.gateway import RequestGateway
from storefront.config import API_BASE_URL, COOKIE_SECURE

COOKIE_NAME = "sb_access"
REFRESH_COOKIE_NAME = "refreshToken"

def get_access_token(request: Request) -> Optional[str]:
    # Hybride: priorité au Bearer, fallback cookie
    token = None
    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        token = auth_header[7:].strip()
    if not token:
        token = request.cookies.get(COOKIE_NAME)
    return token or None

def set_session_cookie(response: Response, access_token: str):
    response.set_cookie(
        key=COOKIE_NAME,
        value=access_token,
        httponly=True,
        secure=COOKIE_SECURE,
        samesite="Lax",
        max_age=7 * 24 * 60 * 60,
        path="/",
    )

def clear_session_cookie(response: Response):
    response.delete_cookie(COOKIE_NAME, path="/")

def gateway_from_request(request: Request) -> RequestGateway:
    """
    Gateway dédiée à la requête entrante (un utilisateur = un CredentialStore).
    - Credential initial: Bearer ou cookie de session
    - Le cookie refreshToken du navigateur est transmis à l'appel de refresh
    - Transport injectable via app.state.backend_transport (tests)
    """
    refresh_cookie = request.cookies.get(REFRESH_COOKIE_NAME)
    return RequestGateway(
        base_url=getattr(request.app.state, "api_base_url", None) or API_BASE_URL,
        credentials=CredentialStore(get_access_token(request)),
        transport=getattr(request.app.state, "backend_transport", None),
        cookies={REFRESH_COOKIE_NAME: refresh_cookie} if refresh_cookie else None,
    )

def sync_session_cookie(response: Response, gateway: RequestGateway, initial_token: Optional[str]) -> None:
    """Répercute sur le navigateur un token renouvelé (ou effacé) pendant la requête."""
    current = gateway.credentials.get()
    if current == initial_token:
        return
    if current:
        set_session_cookie(response, current)
    else:
        clear_session_cookie(response)
