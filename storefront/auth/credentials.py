import time
from typing import Any, Dict, Optional

import jwt


def decode_token(token: Optional[str]) -> Optional[Dict[str, Any]]:
    """
    Décode le payload JWT sans vérifier la signature.
    Simple indice côté client (exp, sub...), jamais une preuve d'authentification.
    """
    if not token:
        return None
    try:
        payload = jwt.decode(token, options={"verify_signature": False})
    except jwt.PyJWTError:
        return None
    return payload if isinstance(payload, dict) else None


class CredentialStore:
    """
    Détenteur en mémoire du credential d'accès (bearer token opaque).
    - get/set/clear explicites, aucune persistance entre redémarrages
    - Une instance par gateway: seul le coordinateur de refresh y écrit après login/refresh
    """

    def __init__(self, token: Optional[str] = None):
        self._token: Optional[str] = token or None

    def get(self) -> Optional[str]:
        return self._token

    def set(self, token: str) -> None:
        if not token:
            raise ValueError("token is required")
        self._token = token

    def clear(self) -> None:
        self._token = None

    @property
    def present(self) -> bool:
        return self._token is not None

    def is_authenticated(self, now: Optional[float] = None) -> bool:
        payload = decode_token(self._token)
        if not payload:
            return False
        try:
            exp = float(payload.get("exp"))
        except (TypeError, ValueError):
            return False
        current = time.time() if now is None else now
        return exp > current
