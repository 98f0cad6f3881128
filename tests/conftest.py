import os

# Rate limiting désactivé pour les tests HTTP (avant import de l'app)
os.environ.setdefault("DISABLE_FASTAPI_LIMITER_INIT_FOR_TESTS", "1")

import inspect
from typing import Callable, Dict, Generator, List, Optional, Tuple

import httpx
import pytest
from fastapi.testclient import TestClient

from storefront.app_setup.factory import create_app

BACKEND_URL = "https://api.test"

# Marquage automatique selon le dossier
def pytest_collection_modifyitems(config, items):
    for item in items:
        nodeid = item.nodeid.replace("\\", "/")
        if "tests/unit/" in nodeid:
            item.add_marker(pytest.mark.unit)
        elif "tests/integration/" in nodeid:
            item.add_marker(pytest.mark.integration)


def respond(status: int = 200, json=None, headers: Optional[Dict[str, str]] = None) -> Callable[[httpx.Request], httpx.Response]:
    """Réponse fraîche à chaque appel (un httpx.Response ne se relit pas entre requêtes)."""
    return lambda request: httpx.Response(status, json=json, headers=headers)


class FakeBackend:
    """
    Backend commerce simulé derrière httpx.MockTransport.
    - routes: (méthode, chemin) -> callable(request) -> httpx.Response
    - requests: historique des requêtes reçues
    """

    def __init__(self):
        self.routes: Dict[Tuple[str, str], Callable[[httpx.Request], httpx.Response]] = {}
        self.requests: List[httpx.Request] = []

    def on(self, method: str, path: str, responder: Callable[[httpx.Request], httpx.Response]) -> None:
        self.routes[(method.upper(), path)] = responder

    def calls(self, method: str, path: str) -> List[httpx.Request]:
        return [r for r in self.requests if r.method == method.upper() and r.url.path == path]

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        responder = self.routes.get((request.method, request.url.path))
        if responder is None:
            return httpx.Response(404, json={"error": "Not found"})
        result = responder(request)
        if inspect.isawaitable(result):
            result = await result
        return result

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self)


@pytest.fixture()
def backend() -> FakeBackend:
    return FakeBackend()


@pytest.fixture()
def app(backend):
    return create_app(backend_transport=backend.transport(), api_base_url=BACKEND_URL)


@pytest.fixture()
def client(app) -> Generator[TestClient, None, None]:
    with TestClient(app) as c:
        yield c


class _FakeHandle:
    def __init__(self):
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True


class FakeScheduler:
    """
    Horloge et timers manuels pour piloter le polling sans attendre.
    advance(s) exécute dans l'ordre chronologique tous les callbacks échus (y compris ceux
    planifiés pendant l'avance) et attend les callbacks asynchrones.
    """

    def __init__(self, start: float = 0.0):
        self.time = start
        self._timers: List[list] = []
        self._seq = 0

    def now(self) -> float:
        return self.time

    def call_later(self, delay: float, callback) -> _FakeHandle:
        handle = _FakeHandle()
        self._seq += 1
        self._timers.append([self.time + max(0.0, delay), self._seq, callback, handle])
        return handle

    @property
    def pending(self) -> int:
        return len([t for t in self._timers if not t[3].cancelled])

    async def advance(self, seconds: float) -> None:
        target = self.time + seconds
        while True:
            due = [t for t in self._timers if not t[3].cancelled and t[0] <= target]
            if not due:
                break
            entry = min(due, key=lambda t: (t[0], t[1]))
            self._timers.remove(entry)
            self.time = entry[0]
            result = entry[2]()
            if inspect.isawaitable(result):
                await result
        self._timers = [t for t in self._timers if not t[3].cancelled]
        self.time = target


@pytest.fixture()
def scheduler() -> FakeScheduler:
    return FakeScheduler()


@pytest.fixture(name="respond")
def respond_fixture():
    return respond
