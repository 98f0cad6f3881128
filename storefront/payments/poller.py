"""
Polling du statut de règlement d'une référence de paiement.

États: ACTIVE -> {PAUSED -> ACTIVE, SUCCEEDED, EXPIRED, TERMINAL_FAILURE}
- Tick (3s par défaut): expiration locale vérifiée avant tout appel backend
- isPaid=true: SUCCEEDED, callback de succès une seule fois
- 429 + Retry-After: PAUSED pendant la durée indiquée, puis reprise de l'intervalle
- 401/403: TERMINAL_FAILURE avec message utilisateur, plus aucun appel
- Autres erreurs: journalisées, le polling continue (arrêt après N échecs consécutifs)
"""
import inspect
import logging
import re
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from functools import partial
from typing import Any, Awaitable, Callable, Optional, Union

from storefront.config import (
    PAYMENT_POLL_INTERVAL_SECONDS,
    PAYMENT_POLL_MAX_CONSECUTIVE_FAILURES,
    PAYMENT_POLL_SLOW_INTERVAL_SECONDS,
    PAYMENT_POLL_SLOWDOWN_AFTER,
)
from storefront.payments.models import PaymentVerification
from storefront.payments.scheduler import AsyncioScheduler, Handle, IntervalTask, Scheduler
from storefront.utils.http_error import (
    SESSION_EXPIRED_MESSAGE,
    AuthExpired,
    Forbidden,
    HttpError,
    RateLimited,
)

logger = logging.getLogger(__name__)

EXPIRED_MESSAGE = "Transaction expirée. Veuillez générer un nouveau QR code."
SLOW_VERIFICATION_MESSAGE = (
    "La vérification du paiement prend plus de temps que prévu. "
    "Consultez l'historique de vos commandes."
)

_PENDING_PATTERN = re.compile(r"pending|processing|not found", re.IGNORECASE)
_EXPIRED_PATTERN = re.compile(r"expired|time.?out|timed out", re.IGNORECASE)
_TERMINAL_PATTERN = re.compile(r"amount or currency mismatch|does not belong to you|unauthorized", re.IGNORECASE)

VerifyFn = Callable[[str], Awaitable[Optional[PaymentVerification]]]
ExpiresAt = Union[None, float, int, str, datetime]


class PollingState(str, Enum):
    ACTIVE = "active"
    PAUSED = "paused"
    SUCCEEDED = "succeeded"
    EXPIRED = "expired"
    TERMINAL_FAILURE = "terminal_failure"


TERMINAL_STATES = {PollingState.SUCCEEDED, PollingState.EXPIRED, PollingState.TERMINAL_FAILURE}


@dataclass
class PollingSession:
    subject_id: str
    expires_at: Optional[float] = None
    paused_until: Optional[float] = None
    state: PollingState = PollingState.ACTIVE
    poll_count: int = 0
    consecutive_failures: int = 0


def to_epoch_seconds(value: ExpiresAt) -> Optional[float]:
    """Accepte epoch (s), datetime ou ISO-8601 ("Z" toléré); naïf = UTC."""
    if value is None or value == "":
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        value = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.timestamp()


async def _notify(callback: Optional[Callable[..., Any]], *args: Any) -> None:
    if callback is None:
        return
    result = callback(*args)
    if inspect.isawaitable(result):
        await result


class PaymentStatusPoller:
    def __init__(
        self,
        verify: VerifyFn,
        *,
        on_success: Callable[[PaymentVerification], Any],
        on_terminal_failure: Optional[Callable[[str], Any]] = None,
        on_expired: Optional[Callable[[str], Any]] = None,
        scheduler: Optional[Scheduler] = None,
        clock: Callable[[], float] = time.time,
        interval: float = PAYMENT_POLL_INTERVAL_SECONDS,
        slow_interval: float = PAYMENT_POLL_SLOW_INTERVAL_SECONDS,
        slowdown_after: int = PAYMENT_POLL_SLOWDOWN_AFTER,
        max_consecutive_failures: int = PAYMENT_POLL_MAX_CONSECUTIVE_FAILURES,
    ):
        self._verify = verify
        self.on_success = on_success
        self.on_terminal_failure = on_terminal_failure
        self.on_expired = on_expired
        self.scheduler = scheduler or AsyncioScheduler()
        self.clock = clock
        self.interval = interval
        self.slow_interval = slow_interval
        self.slowdown_after = slowdown_after
        self.max_consecutive_failures = max_consecutive_failures
        self._session: Optional[PollingSession] = None
        self._task: Optional[IntervalTask] = None
        self._resume_handle: Optional[Handle] = None

    @classmethod
    def for_gateway(cls, gateway, **kwargs) -> "PaymentStatusPoller":
        from storefront.payments.service import verify_payment
        return cls(partial(verify_payment, gateway), **kwargs)

    @property
    def session(self) -> Optional[PollingSession]:
        return self._session

    @property
    def state(self) -> Optional[PollingState]:
        return self._session.state if self._session else None

    # --- Cycle de vie ---

    def start(self, payment_ref: str, expires_at: ExpiresAt = None) -> Optional[PollingSession]:
        """
        Démarre (ou redémarre) le polling pour une référence de paiement.
        Changer de référence remet l'état à ACTIVE et abandonne l'ancienne session.
        """
        self.stop()
        if not payment_ref:
            return None
        session = PollingSession(subject_id=payment_ref, expires_at=to_epoch_seconds(expires_at))
        self._session = session
        self._task = IntervalTask(self.scheduler, self.interval, self.tick)
        if self._is_expired(session):
            # QR déjà expiré: aucun appel backend
            session.state = PollingState.EXPIRED
            logger.info("payments.poller expired before start ref=%s", payment_ref)
            return session
        self._task.start()
        logger.debug("payments.poller start ref=%s interval=%ss", payment_ref, self.interval)
        return session

    def stop(self) -> None:
        """Annule le timer et la reprise éventuelle; aucun tick ne sera délivré ensuite."""
        self._cancel_timers()
        self._session = None
        self._task = None

    def _cancel_timers(self) -> None:
        if self._task is not None:
            self._task.stop()
        if self._resume_handle is not None:
            self._resume_handle.cancel()
            self._resume_handle = None

    def _is_expired(self, session: PollingSession) -> bool:
        return session.expires_at is not None and self.clock() > session.expires_at

    # --- Tick ---

    async def tick(self) -> None:
        session = self._session
        if session is None or session.state is not PollingState.ACTIVE:
            return

        if self._is_expired(session):
            await self._finish(session, PollingState.EXPIRED, self.on_expired, EXPIRED_MESSAGE)
            return

        session.poll_count += 1
        try:
            result = await self._verify(session.subject_id)
        except (AuthExpired, Forbidden) as e:
            if self._session is session:
                logger.warning("payments.poller auth lost ref=%s status=%s", session.subject_id, e.status_code)
                await self._finish(session, PollingState.TERMINAL_FAILURE, self.on_terminal_failure, SESSION_EXPIRED_MESSAGE)
            return
        except RateLimited as e:
            if self._session is session:
                delay = e.retry_after_seconds if e.retry_after_seconds is not None else self.interval
                self._pause(session, delay)
                self._maybe_slow_down(session)
            return
        except HttpError as e:
            if self._session is session:
                await self._transient_failure(session, e)
                self._maybe_slow_down(session)
            return

        if self._session is not session or session.state is not PollingState.ACTIVE:
            # arrêté ou référence changée pendant l'appel: résultat ignoré
            return
        session.consecutive_failures = 0
        if result is not None:
            await self._handle_result(session, result)
        self._maybe_slow_down(session)

    async def _handle_result(self, session: PollingSession, result: PaymentVerification) -> None:
        if result.is_paid:
            logger.info("payments.poller paid ref=%s currency=%s", session.subject_id, result.currency)
            await self._finish(session, PollingState.SUCCEEDED, self.on_success, result)
            return

        message = result.message or ""
        if _PENDING_PATTERN.search(message):
            return
        if result.expired is True or _EXPIRED_PATTERN.search(message):
            await self._finish(session, PollingState.EXPIRED, self.on_expired, message or EXPIRED_MESSAGE)
            return
        if _TERMINAL_PATTERN.search(message):
            await self._finish(session, PollingState.TERMINAL_FAILURE, self.on_terminal_failure, message)

    async def _transient_failure(self, session: PollingSession, error: HttpError) -> None:
        session.consecutive_failures += 1
        logger.warning(
            "payments.poller transient error ref=%s status=%s failures=%s message=%s",
            session.subject_id, error.status_code, session.consecutive_failures, error.message,
        )
        if session.consecutive_failures >= self.max_consecutive_failures:
            await self._finish(session, PollingState.TERMINAL_FAILURE, self.on_terminal_failure, SLOW_VERIFICATION_MESSAGE)

    def _maybe_slow_down(self, session: PollingSession) -> None:
        """Passe au rythme lent dès slowdown_after appels, quelle que soit l'issue du dernier."""
        task = self._task
        if task is None or self._session is not session or session.state in TERMINAL_STATES:
            return
        if session.poll_count < self.slowdown_after or task.interval != self.interval:
            return
        logger.debug("payments.poller slow down ref=%s interval=%ss", session.subject_id, self.slow_interval)
        if task.running:
            task.reset(self.slow_interval)
        else:
            # en pause: la reprise repart au rythme lent
            task.interval = self.slow_interval

    # --- Pause / reprise ---

    def _pause(self, session: PollingSession, seconds: float) -> None:
        session.state = PollingState.PAUSED
        session.paused_until = self.scheduler.now() + seconds
        if self._task is not None:
            self._task.stop()
        logger.info("payments.poller rate limited ref=%s retry_after=%ss", session.subject_id, seconds)
        self._resume_handle = self.scheduler.call_later(seconds, partial(self._resume, session))

    def _resume(self, session: PollingSession) -> None:
        self._resume_handle = None
        if self._session is not session or session.state is not PollingState.PAUSED:
            return
        session.state = PollingState.ACTIVE
        session.paused_until = None
        if self._task is not None:
            self._task.start()

    async def _finish(self, session: PollingSession, state: PollingState, callback, payload: Any) -> None:
        session.state = state
        self._cancel_timers()
        await _notify(callback, payload)
