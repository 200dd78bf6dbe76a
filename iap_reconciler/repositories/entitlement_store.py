"""Entitlement store - the local cache of entitlements, purchases and product details.

Thread-safe dictionary-based storage, optionally backed by a JSON file so a
restarted process sees exactly what was last persisted.
"""

import threading
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional

from iap_reconciler.logging_config import get_logger, shorten_token
from iap_reconciler.models import (
    Entitlement,
    ProductCategory,
    ProductDetails,
    Purchase,
    parse_entitlement,
)
from iap_reconciler.state_logger import log_entitlement_change, log_purchasability_change
from iap_reconciler.utils.persistence import read_json, write_json_atomic

logger = get_logger(__name__)

EntitlementObserver = Callable[[Entitlement], None]

STORE_FILE_NAME = "entitlements.json"


class EntitlementStore:
    """Local cache consumed by the reconciliation engine.

    Holds three tables:
    - entitlements keyed by entitlement key
    - cached purchase records keyed by purchase token (insertion ordered)
    - product details keyed by product ID, carrying the purchasability flag
    """

    def __init__(self, state_dir: Optional[Path] = None):
        """Initialize the store.

        Args:
            state_dir: Directory for the backing JSON file; in-memory if None
        """
        self._path = Path(state_dir) / STORE_FILE_NAME if state_dir else None
        self._entitlements: Dict[str, Entitlement] = {}
        self._purchases: Dict[str, Purchase] = {}
        self._product_details: Dict[str, ProductDetails] = {}
        self._observers: Dict[str, List[EntitlementObserver]] = {}
        self._lock = threading.RLock()
        self._load()

    # -- persistence -------------------------------------------------------

    def _load(self) -> None:
        if self._path is None:
            return
        data = read_json(self._path)
        if data is None:
            return

        for key, raw in data.get("entitlements", {}).items():
            self._entitlements[key] = parse_entitlement(raw)
        for raw in data.get("purchases", []):
            purchase = Purchase.model_validate(raw)
            self._purchases[purchase.purchase_token] = purchase
        for product_id, raw in data.get("product_details", {}).items():
            self._product_details[product_id] = ProductDetails.model_validate(raw)

        logger.info(
            "entitlement_store_loaded",
            path=str(self._path),
            entitlements=len(self._entitlements),
            purchases=len(self._purchases),
        )

    def _persist(self) -> None:
        """Write the whole cache. Caller must hold the lock."""
        if self._path is None:
            return
        write_json_atomic(
            self._path,
            {
                "entitlements": {
                    key: entitlement.model_dump(mode="json")
                    for key, entitlement in self._entitlements.items()
                },
                "purchases": [p.model_dump(mode="json") for p in self._purchases.values()],
                "product_details": {
                    product_id: details.model_dump(mode="json")
                    for product_id, details in self._product_details.items()
                },
            },
        )

    # -- entitlements ------------------------------------------------------

    def get_entitlement(self, key: str) -> Optional[Entitlement]:
        """Get the entitlement for a key, or None if never granted."""
        with self._lock:
            return self._entitlements.get(key)

    def get_all_entitlements(self) -> List[Entitlement]:
        """Get all entitlements."""
        with self._lock:
            return list(self._entitlements.values())

    def upsert_entitlement(self, entitlement: Entitlement, reason: Optional[str] = None) -> None:
        """Insert or replace an entitlement and notify its observers.

        Args:
            entitlement: Entitlement to store
            reason: Why it changed (logged)
        """
        with self._lock:
            old = self._entitlements.get(entitlement.key)
            self._entitlements[entitlement.key] = entitlement
            self._persist()
            observers = list(self._observers.get(entitlement.key, []))

        if old != entitlement:
            log_entitlement_change(entitlement.key, old, entitlement, reason=reason)

        for observer in observers:
            try:
                observer(entitlement)
            except Exception as e:
                logger.error(
                    "entitlement_observer_failed",
                    key=entitlement.key,
                    error=str(e),
                    error_type=type(e).__name__,
                    exc_info=True,
                )

    def subscribe(self, key: str, observer: EntitlementObserver) -> Callable[[], None]:
        """Observe an entitlement key.

        The observer is called immediately with the current value (if any) and
        after every subsequent upsert of that key.

        Returns:
            Callable that removes the observer
        """
        with self._lock:
            self._observers.setdefault(key, []).append(observer)
            current = self._entitlements.get(key)

        if current is not None:
            observer(current)

        def unsubscribe() -> None:
            with self._lock:
                observers = self._observers.get(key, [])
                if observer in observers:
                    observers.remove(observer)

        return unsubscribe

    # -- purchases ---------------------------------------------------------

    def get_cached_purchases(self) -> List[Purchase]:
        """Get all cached purchase records in insertion order."""
        with self._lock:
            return list(self._purchases.values())

    def get_cached_tokens(self) -> set[str]:
        """Get the tokens of all cached purchases."""
        with self._lock:
            return set(self._purchases.keys())

    def find_purchase(self, token: str) -> Optional[Purchase]:
        """Find a cached purchase by token (returns None if not found)."""
        with self._lock:
            return self._purchases.get(token)

    def insert_purchases(self, purchases: Iterable[Purchase]) -> int:
        """Append purchase records. Records whose token is already cached are kept as-is.

        Returns:
            Number of records actually inserted
        """
        inserted = 0
        with self._lock:
            for purchase in purchases:
                if purchase.purchase_token in self._purchases:
                    continue
                self._purchases[purchase.purchase_token] = purchase
                inserted += 1
            if inserted:
                self._persist()

        logger.debug("purchases_cached", inserted=inserted)
        return inserted

    def delete_purchase(self, purchase: Purchase) -> bool:
        """Delete a cached purchase.

        Returns:
            True if a record was deleted, False if the token was not cached
        """
        with self._lock:
            if purchase.purchase_token not in self._purchases:
                return False
            del self._purchases[purchase.purchase_token]
            self._persist()

        logger.debug("purchase_removed_from_cache", token=shorten_token(purchase.purchase_token))
        return True

    # -- product details ---------------------------------------------------

    def set_product_purchasable(
        self,
        product_id: str,
        can_purchase: bool,
        category: Optional[ProductCategory] = None,
    ) -> None:
        """Set a product's purchasability, creating a stub record if needed.

        Args:
            product_id: Product ID
            can_purchase: New flag
            category: Category for a stub record (defaults to inapp)
        """
        with self._lock:
            existing = self._product_details.get(product_id)
            old_value = existing.can_purchase if existing is not None else None
            if existing is None:
                existing = ProductDetails(
                    product_id=product_id,
                    category=category or ProductCategory.INAPP,
                )
            if old_value == can_purchase:
                return
            self._product_details[product_id] = existing.model_copy(
                update={"can_purchase": can_purchase}
            )
            self._persist()

        log_purchasability_change(product_id, old_value, can_purchase)

    def upsert_product_details(self, details: ProductDetails) -> None:
        """Store fresh details from the billing service.

        An existing purchasability flag always wins over the incoming default.
        """
        with self._lock:
            existing = self._product_details.get(details.product_id)
            if existing is not None:
                details = details.model_copy(update={"can_purchase": existing.can_purchase})
            self._product_details[details.product_id] = details
            self._persist()

    def get_product_details(
        self, category: Optional[ProductCategory] = None
    ) -> List[ProductDetails]:
        """Get product details, optionally filtered by category."""
        with self._lock:
            details = list(self._product_details.values())
        if category is None:
            return details
        return [d for d in details if d.category == category]

    def find_product_details(self, product_id: str) -> Optional[ProductDetails]:
        with self._lock:
            return self._product_details.get(product_id)

    # -- housekeeping ------------------------------------------------------

    def clear(self) -> None:
        """Clear all cached data.

        Warning: This removes all entitlements. Use with caution.
        """
        with self._lock:
            self._entitlements.clear()
            self._purchases.clear()
            self._product_details.clear()
            self._persist()

    def __repr__(self) -> str:
        with self._lock:
            return (
                f"EntitlementStore(entitlements={len(self._entitlements)}, "
                f"purchases={len(self._purchases)})"
            )
