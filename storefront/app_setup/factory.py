"""
Factory d’application recommandée pour les entrypoints (ex: storefront.asgi).
Ordonne les étapes d’initialisation de manière lisible et testable.
"""
from typing import Optional

import httpx
from fastapi import FastAPI
from storefront.checkout.storage import MemoryKeyValueStore
from storefront.config import CHECKOUT_ATTEMPT_TTL_SECONDS
from .lifespan import lifespan
from .middlewares import register_basic_middlewares, register_no_cache_middleware, register_security_middleware
from .exceptions import register_exception_handlers
from .routers import register_routers

def create_app(
    backend_transport: Optional[httpx.AsyncBaseTransport] = None,
    api_base_url: Optional[str] = None,
) -> FastAPI:
    """
    Construit l’app FastAPI avec le lifespan et enregistre:
      - middlewares de base, sécurité, no-cache
      - gestionnaires d’exceptions
      - tous les routers (API, health)
    Paramètres:
      - backend_transport: transport httpx vers le backend commerce (MockTransport en tests)
      - api_base_url: surcharge de API_BASE_URL
    Retour:
      FastAPI prêt à être utilisé par le serveur ASGI.
    """
    app = FastAPI(title="Storefront reliability API", lifespan=lifespan)
    app.state.backend_transport = backend_transport
    app.state.api_base_url = api_base_url
    # Tentatives de checkout partagées par les requêtes du processus (remplacé par Redis si configuré)
    app.state.attempt_store = MemoryKeyValueStore(ttl_seconds=CHECKOUT_ATTEMPT_TTL_SECONDS)
    app.state.attempt_redis = None
    register_basic_middlewares(app)
    register_security_middleware(app)
    register_no_cache_middleware(app)
    register_exception_handlers(app)
    register_routers(app)
    return app
