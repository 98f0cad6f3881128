"""
Module 'payments' (feature-first): point d'entrée public.
Réunit appels backend (KHQR, vérification), ordonnanceur et poller de statut.
"""

from .models import KHQRResult, PaymentVerification
from .service import create_khqr, verify_payment
from .scheduler import AsyncioScheduler, IntervalTask, Scheduler
from .poller import PaymentStatusPoller, PollingSession, PollingState

__all__ = [
    # models
    "KHQRResult",
    "PaymentVerification",
    # service
    "create_khqr",
    "verify_payment",
    # scheduler
    "AsyncioScheduler",
    "IntervalTask",
    "Scheduler",
    # poller
    "PaymentStatusPoller",
    "PollingSession",
    "PollingState",
]
