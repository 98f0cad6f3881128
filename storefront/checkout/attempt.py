"""
Empreinte de tentative de checkout et clés d'idempotence par marchand.

- build_fingerprint: représentation canonique, indépendante de l'ordre du panier
- group_by_merchant: regroupement déterministe (clé marchand puis ordre total des articles)
- build_idempotency_key: "{seed}:{group_index}"
- CheckoutAttemptCoordinator: un seul enregistrement {fingerprint, seed} dans le KeyValueStore
"""
import json
import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from storefront.config import CHECKOUT_ATTEMPT_STORAGE_KEY
from storefront.checkout.storage import KeyValueStore, MemoryKeyValueStore

logger = logging.getLogger(__name__)

UNKNOWN_MERCHANT_KEY = "unknown-merchant"

# Noms acceptés pour chaque champ (modèle pydantic, dict snake_case ou camelCase)
_FIELDS = {
    "product_id": ("product_id", "productId"),
    "variant_id": ("variant_id", "variantId"),
    "merchant_id": ("merchant_id", "merchantId"),
    "quantity": ("quantity",),
    "items": ("items",),
    "shipping_address_id": ("shipping_address_id", "shippingAddressId"),
    "payment_method": ("payment_method", "paymentMethod"),
    "coupon_code": ("coupon_code", "couponCode"),
}


@dataclass
class MerchantGroup:
    merchant_key: str
    items: List[Any] = field(default_factory=list)


def _normalize(value: Optional[Any]) -> str:
    return str(value if value is not None else "").strip()


def _field(item: Any, name: str) -> Any:
    for key in _FIELDS[name]:
        if isinstance(item, dict):
            if key in item:
                return item[key]
        elif hasattr(item, key):
            return getattr(item, key)
    return None


def _quantity(item: Any) -> int:
    try:
        return int(_field(item, "quantity") or 0)
    except (TypeError, ValueError):
        return 0


def _sort_key(item: Any) -> Tuple[str, str, str, int]:
    return (
        _normalize(_field(item, "merchant_id")),
        _normalize(_field(item, "product_id")),
        _normalize(_field(item, "variant_id")),
        _quantity(item),
    )


def sort_items(items: Iterable[Any]) -> List[Any]:
    """Ordre total: marchand, produit, variante, quantité."""
    return sorted(items, key=_sort_key)


def build_fingerprint(checkout: Any) -> str:
    """
    Empreinte canonique d'une intention de checkout.
    checkout: CheckoutRequest ou dict {items, shippingAddressId, paymentMethod, couponCode}
    - identifiants nettoyés (trim), vide si absent
    - articles triés par (marchand, produit, variante, quantité)
    - moyen de paiement et coupon en majuscules
    """
    normalized_items = [
        {
            "productId": _normalize(_field(it, "product_id")),
            "variantId": _normalize(_field(it, "variant_id")),
            "quantity": _quantity(it),
            "merchantId": _normalize(_field(it, "merchant_id")),
        }
        for it in sort_items(_field(checkout, "items") or [])
    ]
    payload = {
        "items": normalized_items,
        "shippingAddressId": _normalize(_field(checkout, "shipping_address_id")),
        "paymentMethod": _normalize(_field(checkout, "payment_method")).upper(),
        "couponCode": _normalize(_field(checkout, "coupon_code")).upper(),
    }
    return json.dumps(payload, separators=(",", ":"), ensure_ascii=False)


def group_by_merchant(items: Iterable[Any]) -> List[MerchantGroup]:
    grouped: Dict[str, List[Any]] = {}
    for it in items:
        merchant_key = _normalize(_field(it, "merchant_id")) or UNKNOWN_MERCHANT_KEY
        grouped.setdefault(merchant_key, []).append(it)
    return [MerchantGroup(merchant_key=key, items=sort_items(grouped[key])) for key in sorted(grouped)]


def build_idempotency_key(seed: str, group_index: int) -> str:
    return f"{seed}:{group_index}"


build_checkout_idempotency_key = build_idempotency_key


def _new_seed() -> str:
    return str(uuid.uuid4())


class CheckoutAttemptCoordinator:
    """
    Associe l'empreinte de checkout active à une graine de tentative.
    - Même empreinte: même graine (retries, rechargements de page)
    - Nouvelle empreinte: rotation de la graine, l'ancienne tentative n'est plus suivie
    - clear_seed après succès ou abandon
    """

    def __init__(
        self,
        store: Optional[KeyValueStore] = None,
        storage_key: str = CHECKOUT_ATTEMPT_STORAGE_KEY,
        seed_factory: Callable[[], str] = _new_seed,
    ):
        self.store = store if store is not None else MemoryKeyValueStore()
        self.storage_key = storage_key
        self._seed_factory = seed_factory

    build_fingerprint = staticmethod(build_fingerprint)
    group_by_merchant = staticmethod(group_by_merchant)
    build_idempotency_key = staticmethod(build_idempotency_key)

    def read_record(self) -> Optional[Dict[str, str]]:
        return self._parse(self.store.get(self.storage_key))

    @staticmethod
    def _parse(raw: Optional[str]) -> Optional[Dict[str, str]]:
        if not raw:
            return None
        try:
            parsed = json.loads(raw)
        except ValueError:
            logger.warning("checkout.attempt unreadable record ignored")
            return None
        if not isinstance(parsed, dict):
            return None
        fingerprint = parsed.get("fingerprint")
        seed = parsed.get("seed")
        if not fingerprint or not seed:
            return None
        return {"fingerprint": fingerprint, "seed": seed}

    def get_or_create_seed(self, fingerprint: str) -> str:
        """
        Lecture-comparaison-écriture en une seule opération atomique du store:
        deux soumissions concurrentes du même panier obtiennent la même graine.
        Appel bloquant si le store est distant (Redis).
        """
        outcome: Dict[str, Any] = {}

        def _rotate(raw: Optional[str]) -> Optional[str]:
            existing = self._parse(raw)
            if existing and existing["fingerprint"] == fingerprint:
                outcome.update(seed=existing["seed"], rotated=False)
                return None
            seed = self._seed_factory()
            outcome.update(seed=seed, rotated=True, replaced=bool(existing))
            return json.dumps({"fingerprint": fingerprint, "seed": seed})

        self.store.update(self.storage_key, _rotate)
        if outcome["rotated"]:
            logger.info("checkout.attempt seed rotated replaced=%s", outcome["replaced"])
        return outcome["seed"]

    def clear_seed(self) -> None:
        self.store.remove(self.storage_key)

    def idempotency_keys(self, seed: str, items: Iterable[Any]) -> List[Tuple[MerchantGroup, str]]:
        """Associe chaque groupe marchand (ordre déterministe) à sa clé d'idempotence."""
        return [
            (group, build_idempotency_key(seed, index))
            for index, group in enumerate(group_by_merchant(items))
        ]
