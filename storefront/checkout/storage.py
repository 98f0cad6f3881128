"""
Stockage clé/valeur de la tentative de checkout (interface get/set/remove/update).

- MemoryKeyValueStore: partagé par tout le processus (app.state), tests et runtimes hors navigateur
- NamespacedKeyValueStore: vue d'un store préfixée par l'identifiant de session navigateur
- RedisKeyValueStore: BFF multi-processus, clés préfixées par l'identifiant de session

update(key, fn) est la seule opération de lecture-comparaison-écriture: fn reçoit la valeur
courante et retourne la nouvelle valeur, ou None pour la conserver. Le tout est atomique
pour le store entier, quel que soit le nombre de requêtes concurrentes.
"""
import threading
import time
from typing import Callable, Dict, Optional, Protocol, Tuple

Updater = Callable[[Optional[str]], Optional[str]]


class KeyValueStore(Protocol):
    def get(self, key: str) -> Optional[str]:
        ...

    def set(self, key: str, value: str) -> None:
        ...

    def remove(self, key: str) -> None:
        ...

    def update(self, key: str, fn: Updater) -> Optional[str]:
        ...


class MemoryKeyValueStore:
    """
    Dictionnaire protégé par un verrou.
    ttl_seconds: expiration paresseuse (vérifiée à la lecture) des tentatives jamais nettoyées.
    """

    def __init__(
        self,
        initial: Optional[Dict[str, str]] = None,
        ttl_seconds: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._ttl = ttl_seconds
        self._clock = clock
        self._lock = threading.RLock()
        self._data: Dict[str, Tuple[str, Optional[float]]] = {}
        for key, value in (initial or {}).items():
            self.set(key, value)

    def _read(self, key: str) -> Optional[str]:
        entry = self._data.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at is not None and self._clock() >= expires_at:
            del self._data[key]
            return None
        return value

    def _write(self, key: str, value: str) -> None:
        expires_at = self._clock() + self._ttl if self._ttl else None
        self._data[key] = (value, expires_at)

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            return self._read(key)

    def set(self, key: str, value: str) -> None:
        with self._lock:
            self._write(key, value)

    def remove(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)

    def update(self, key: str, fn: Updater) -> Optional[str]:
        with self._lock:
            current = self._read(key)
            new = fn(current)
            if new is None:
                return current
            self._write(key, new)
            return new


class NamespacedKeyValueStore:
    """Préfixe toutes les clés d'un store partagé (ex: "checkout:<sid>")."""

    def __init__(self, store: KeyValueStore, namespace: str):
        if not namespace:
            raise ValueError("namespace is required")
        self._store = store
        self._namespace = namespace

    def _key(self, key: str) -> str:
        return f"{self._namespace}:{key}"

    def get(self, key: str) -> Optional[str]:
        return self._store.get(self._key(key))

    def set(self, key: str, value: str) -> None:
        self._store.set(self._key(key), value)

    def remove(self, key: str) -> None:
        self._store.remove(self._key(key))

    def update(self, key: str, fn: Updater) -> Optional[str]:
        return self._store.update(self._key(key), fn)


def _decode(value) -> Optional[str]:
    if isinstance(value, bytes):
        return value.decode("utf-8")
    return value


class RedisKeyValueStore:
    """
    Stockage Redis (client synchrone redis-py).
    - namespace: identifiant de session navigateur, isole les tentatives par onglet/session
    - ttl_seconds: expiration des tentatives abandonnées sans nettoyage explicite
    - update: transaction WATCH/MULTI, rejouée par redis-py si la clé change entre-temps
    Client bloquant: à appeler hors de la boucle asyncio (asyncio.to_thread).
    """

    def __init__(self, client, namespace: str, ttl_seconds: Optional[int] = None):
        if not namespace:
            raise ValueError("namespace is required")
        self._client = client
        self._namespace = namespace
        self._ttl = ttl_seconds

    def _key(self, key: str) -> str:
        return f"{self._namespace}:{key}"

    def get(self, key: str) -> Optional[str]:
        return _decode(self._client.get(self._key(key)))

    def set(self, key: str, value: str) -> None:
        self._client.set(self._key(key), value, ex=self._ttl or None)

    def remove(self, key: str) -> None:
        self._client.delete(self._key(key))

    def update(self, key: str, fn: Updater) -> Optional[str]:
        full_key = self._key(key)

        def _txn(pipe) -> Optional[str]:
            current = _decode(pipe.get(full_key))
            new = fn(current)
            pipe.multi()
            if new is None:
                return current
            pipe.set(full_key, new, ex=self._ttl or None)
            return new

        return self._client.transaction(_txn, full_key, value_from_callable=True)
