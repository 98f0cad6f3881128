# storefront.config
from pathlib import Path
import os
from dotenv import load_dotenv

# Calculer le chemin du projet puis charger .env de manière explicite
BASE_DIR = Path(__file__).resolve().parent.parent
ENV_PATH = BASE_DIR / ".env"
load_dotenv(dotenv_path=ENV_PATH, override=True)

"""
Configuration centrale de la couche storefront.

- Charge le fichier .env à la racine du projet (BASE_DIR/.env)
- Normalise l'URL du backend commerce distant et le chemin de refresh
- Expose les réglages de fiabilité: timeouts, intervalle de polling, seuils de backoff
- Sécurité BFF: session, CORS/hosts, Redis du rate limiting
"""

def _clean_env(v: str) -> str:
    """
    Nettoie une valeur d'environnement:
    - supprime les espaces et guillemets (simples, doubles) et backticks
    - retourne toujours une chaîne (jamais None)
    """
    return (v or "").strip().strip("'").strip('"').strip("`")

def _float_env(name: str, default: float) -> float:
    try:
        return float(_clean_env(os.getenv(name) or "") or default)
    except ValueError:
        return default

def _int_env(name: str, default: int) -> int:
    try:
        return int(_clean_env(os.getenv(name) or "") or default)
    except ValueError:
        return default

# Backend commerce distant
# - API_BASE_URL peut parfois être sans schéma: on préfixe en https:// si nécessaire
API_BASE_URL = _clean_env(os.getenv("API_BASE_URL") or os.getenv("NEXT_PUBLIC_API_URL") or "http://localhost:8080/api")
if API_BASE_URL and not API_BASE_URL.startswith("http"):
    API_BASE_URL = "https://" + API_BASE_URL
API_BASE_URL = API_BASE_URL.rstrip("/")

REFRESH_PATH = _clean_env(os.getenv("REFRESH_PATH") or "/auth/refresh")

# Timeouts (secondes)
REQUEST_TIMEOUT_SECONDS = _float_env("REQUEST_TIMEOUT_SECONDS", 15.0)
REFRESH_TIMEOUT_SECONDS = _float_env("REFRESH_TIMEOUT_SECONDS", 10.0)

# Polling du statut de paiement
PAYMENT_POLL_INTERVAL_SECONDS = _float_env("PAYMENT_POLL_INTERVAL_SECONDS", 3.0)
PAYMENT_POLL_SLOW_INTERVAL_SECONDS = _float_env("PAYMENT_POLL_SLOW_INTERVAL_SECONDS", 6.0)
PAYMENT_POLL_SLOWDOWN_AFTER = _int_env("PAYMENT_POLL_SLOWDOWN_AFTER", 10)
PAYMENT_POLL_MAX_CONSECUTIVE_FAILURES = _int_env("PAYMENT_POLL_MAX_CONSECUTIVE_FAILURES", 5)

# Tentative de checkout: clé unique de stockage {fingerprint, seed}
CHECKOUT_ATTEMPT_STORAGE_KEY = _clean_env(os.getenv("CHECKOUT_ATTEMPT_STORAGE_KEY") or "checkout:attempt:v1")
CHECKOUT_ATTEMPT_TTL_SECONDS = _int_env("CHECKOUT_ATTEMPT_TTL_SECONDS", 24 * 60 * 60)

# Cookies / Sécurité
COOKIE_SECURE = (os.getenv("COOKIE_SECURE", "false").lower() == "true")
SESSION_SECRET_KEY = _clean_env(os.getenv("SESSION_SECRET_KEY") or "replace_me_with_a_long_random_secret")

# CORS (dev)
CORS_ORIGINS = [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]
ALLOWED_HOSTS = [h.strip() for h in os.getenv("ALLOWED_HOSTS", "localhost,127.0.0.1,testserver").split(",") if h.strip()]

RATE_LIMIT_REDIS_URL = _clean_env(os.getenv("RATE_LIMIT_REDIS_URL") or "redis://127.0.0.1:6379/0")

# Stockage des tentatives de checkout côté BFF: session Starlette par défaut, Redis si configuré
ATTEMPT_STORE_REDIS_URL = _clean_env(os.getenv("ATTEMPT_STORE_REDIS_URL") or "")
