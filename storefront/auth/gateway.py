"""
Passerelle des requêtes sortantes vers le backend commerce.

- Attache le credential courant (Authorization: Bearer <token>) à chaque requête
- Sur 401 (hors endpoint de refresh): rejoint l'unique refresh en vol puis rejoue la requête une seule fois
- Refresh réussi: token stocké dans le CredentialStore, toutes les requêtes en attente rejouées avec ce token
- Refresh en échec: credential effacé, toutes les requêtes en attente rejetées (terminal)
- Refresh bloqué: borné par refresh_timeout, rejet transitoire (RefreshTimeout) sans effacer le credential
"""
import asyncio
import inspect
import logging
from typing import Any, Callable, Dict, Optional, Set

import httpx

from storefront.config import (
    API_BASE_URL,
    REFRESH_PATH,
    REFRESH_TIMEOUT_SECONDS,
    REQUEST_TIMEOUT_SECONDS,
)
from storefront.auth.credentials import CredentialStore
from storefront.utils.http_error import (
    SESSION_EXPIRED_MESSAGE,
    HttpError,
    NetworkOrServerError,
    RefreshFailed,
    RefreshTimeout,
    error_from_response,
)

logger = logging.getLogger(__name__)


class RequestGateway:
    def __init__(
        self,
        base_url: str = API_BASE_URL,
        credentials: Optional[CredentialStore] = None,
        *,
        refresh_path: str = REFRESH_PATH,
        refresh_timeout: float = REFRESH_TIMEOUT_SECONDS,
        timeout: float = REQUEST_TIMEOUT_SECONDS,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        client: Optional[httpx.AsyncClient] = None,
        cookies: Optional[Dict[str, str]] = None,
        on_session_expired: Optional[Callable[[HttpError], Any]] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.credentials = credentials if credentials is not None else CredentialStore()
        self.refresh_path = "/" + refresh_path.strip("/")
        self.refresh_timeout = refresh_timeout
        self.on_session_expired = on_session_expired
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            base_url=self.base_url,
            headers={"Content-Type": "application/json"},
            timeout=timeout,
            transport=transport,
            cookies=cookies,
        )
        # Refresh en vol (un seul à la fois), partagé par toutes les requêtes en 401
        self._refresh_task: Optional[asyncio.Task] = None
        # Dernier épisode en échec: token rejeté et erreur renvoyée aux requêtes parties avec lui
        self._expired_token: Optional[str] = None
        self._expired_error: Optional[RefreshFailed] = None
        self._callback_tasks: Set[asyncio.Task] = set()

    async def __aenter__(self) -> "RequestGateway":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    @property
    def refresh_in_flight(self) -> bool:
        return self._refresh_task is not None

    def is_refresh_target(self, url: str) -> bool:
        path = httpx.URL(str(url)).path.rstrip("/")
        return path.endswith(self.refresh_path)

    # --- Requêtes ---

    async def request(
        self,
        method: str,
        url: str,
        *,
        json: Any = None,
        params: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> httpx.Response:
        """
        Émet une requête et retourne la réponse 2xx.
        - Lève AuthExpired si le 401 persiste après le rejeu (ou vient du refresh lui-même)
        - Lève la sous-classe HttpError correspondant au statut sinon
        - Lève NetworkOrServerError sur erreur transport
        """
        task = self._refresh_task
        if task is not None:
            # Ne jamais partir avec un token périmé pendant un refresh; son échec rejette aussi cette requête
            await asyncio.shield(task)

        request_headers = dict(headers or {})
        sent_token = self.credentials.get()
        if sent_token:
            request_headers["Authorization"] = f"Bearer {sent_token}"

        response = await self._send(method, url, json=json, params=params, headers=request_headers)

        if response.status_code == 401 and not self.is_refresh_target(url):
            if sent_token is not None and sent_token == self._expired_token:
                # Token déjà rejeté par un refresh en échec: même épisode, pas de nouveau refresh
                raise self._expired_error
            current = self.credentials.get()
            if self._refresh_task is None and current and current != sent_token:
                # Un refresh s'est terminé pendant l'envoi: rejouer avec le token courant
                token = current
            else:
                token = await self.refresh()
            request_headers["Authorization"] = f"Bearer {token}"
            response = await self._send(method, url, json=json, params=params, headers=request_headers)

        if response.is_success:
            return response
        if response.status_code == 401:
            raise error_from_response(response, fallback=SESSION_EXPIRED_MESSAGE)
        raise error_from_response(response, fallback=f"Échec de la requête {method.upper()} {url}")

    async def get(self, url: str, **kwargs) -> httpx.Response:
        return await self.request("GET", url, **kwargs)

    async def post(self, url: str, **kwargs) -> httpx.Response:
        return await self.request("POST", url, **kwargs)

    async def put(self, url: str, **kwargs) -> httpx.Response:
        return await self.request("PUT", url, **kwargs)

    async def delete(self, url: str, **kwargs) -> httpx.Response:
        return await self.request("DELETE", url, **kwargs)

    async def _send(self, method: str, url: str, **kwargs) -> httpx.Response:
        try:
            return await self._client.request(method, url, **kwargs)
        except httpx.TransportError as exc:
            logger.warning("gateway.network_error method=%s url=%s error=%s", method, url, exc)
            raise NetworkOrServerError(f"Erreur réseau: {exc}") from exc

    # --- Refresh single-flight ---

    async def refresh(self) -> str:
        """
        Retourne le nouveau token, en partageant le refresh en vol s'il existe.
        Exactement un appel au endpoint de refresh par épisode d'échec.
        """
        task = self._refresh_task
        if task is None:
            task = asyncio.ensure_future(self._run_refresh())
            self._refresh_task = task
        # shield: l'annulation d'un appelant n'interrompt pas le refresh des autres
        return await asyncio.shield(task)

    async def _run_refresh(self) -> str:
        logger.debug("gateway.refresh start url=%s", self.refresh_path)
        rejected_token = self.credentials.get()
        try:
            try:
                response = await asyncio.wait_for(
                    self._client.post(self.refresh_path, json={}),
                    timeout=self.refresh_timeout,
                )
            except (asyncio.TimeoutError, httpx.TimeoutException) as exc:
                logger.warning("gateway.refresh timeout after=%ss", self.refresh_timeout)
                raise RefreshTimeout("Le renouvellement de session a expiré, réessayez.") from exc
            except httpx.TransportError as exc:
                logger.warning("gateway.refresh network_error error=%s", exc)
                raise self._refresh_failed(RefreshFailed(SESSION_EXPIRED_MESSAGE, status_code=401), rejected_token) from exc

            if not response.is_success:
                parsed = error_from_response(response, fallback=SESSION_EXPIRED_MESSAGE)
                logger.warning(
                    "gateway.refresh failed status=%s code=%s message=%s",
                    parsed.status_code, parsed.error_code, parsed.message,
                )
                raise self._refresh_failed(
                    RefreshFailed(SESSION_EXPIRED_MESSAGE, status_code=401, error_code=parsed.error_code),
                    rejected_token,
                )

            token = None
            try:
                body = response.json()
            except ValueError:
                body = None
            if isinstance(body, dict):
                token = body.get("accessToken") or body.get("token")
            if not token:
                logger.warning("gateway.refresh failed: no access token returned")
                raise self._refresh_failed(RefreshFailed(SESSION_EXPIRED_MESSAGE, status_code=401), rejected_token)

            self.credentials.set(token)
            logger.debug("gateway.refresh success")
            return token
        finally:
            self._refresh_task = None

    def _refresh_failed(self, error: RefreshFailed, rejected_token: Optional[str]) -> RefreshFailed:
        """
        Termine l'épisode en échec: credential effacé, callback de session expirée notifié.
        Une requête encore en vol avec rejected_token sera rejetée avec la même erreur.
        """
        self.credentials.clear()
        self._expired_token = rejected_token
        self._expired_error = error
        if self.on_session_expired:
            result = self.on_session_expired(error)
            if inspect.isawaitable(result):
                # Callback async: planifié, le rejet des requêtes n'attend pas l'UI
                task = asyncio.ensure_future(result)
                self._callback_tasks.add(task)
                task.add_done_callback(self._callback_done)
        return error

    def _callback_done(self, task: asyncio.Task) -> None:
        self._callback_tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("gateway.on_session_expired callback failed: %r", exc)
