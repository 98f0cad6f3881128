"""
Module 'checkout' (feature-first): point d'entrée public.
Réunit empreinte/graine de tentative, stockage clé/valeur et soumission multi-marchands.
"""

from .attempt import (
    UNKNOWN_MERCHANT_KEY,
    CheckoutAttemptCoordinator,
    MerchantGroup,
    build_fingerprint,
    build_idempotency_key,
    group_by_merchant,
)
from .storage import KeyValueStore, MemoryKeyValueStore, NamespacedKeyValueStore, RedisKeyValueStore
from .service import abandon_checkout, preview_checkout, submit_checkout

__all__ = [
    # attempt
    "UNKNOWN_MERCHANT_KEY",
    "CheckoutAttemptCoordinator",
    "MerchantGroup",
    "build_fingerprint",
    "build_idempotency_key",
    "group_by_merchant",
    # storage
    "KeyValueStore",
    "MemoryKeyValueStore",
    "RedisKeyValueStore",
    "NamespacedKeyValueStore",
    # service
    "abandon_checkout",
    "preview_checkout",
    "submit_checkout",
]
