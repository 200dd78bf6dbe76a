"""Reconciliation engine - keeps local entitlements in step with the billing service.

One reconciliation run takes a purchase snapshot and executes, strictly in order:

1. partition: new = signature verified, PURCHASED, token not cached
2. notify the verification server of the new batch
3. mutate entitlements (permanent unlocks, subscriptions, exclusive family)
4. persist the new purchase records
5. consume every cached consumable in the snapshot

With no new purchases, a stale throttle mark sends the run down the expensive
branch (consume, then pull server-side purchases). Otherwise the run is a no-op.

Consume acknowledgements arrive later through ``on_consume_response`` and merge
consumable balances under a per-entitlement-key lock. At most one consume per
token is in flight; the billing client answers every consume request.
"""

import threading
import uuid
from concurrent.futures import Executor
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, List, Optional

from iap_reconciler.clients.billing_client import (
    BillingClient,
    BillingFeature,
    BillingResponse,
)
from iap_reconciler.clients.verification_server import (
    VerificationServerClient,
    VerificationServerError,
)
from iap_reconciler.logging_config import get_logger, shorten_token
from iap_reconciler.models import (
    ConsumableBalance,
    PermanentUnlock,
    ProductCategory,
    Purchase,
    PurchaseLifecycle,
    PurchaseState,
    SubscriptionStatus,
    dedupe_by_token,
)
from iap_reconciler.repositories.entitlement_store import EntitlementStore
from iap_reconciler.repositories.product_repository import ProductRepository
from iap_reconciler.services.connection_supervisor import ConnectionSupervisor
from iap_reconciler.services.signature_verifier import SignatureVerifier
from iap_reconciler.services.throttle import ThrottleGate
from iap_reconciler.state_logger import log_purchase_lifecycle
from iap_reconciler.utils.keyed_lock import KeyedLock

logger = get_logger(__name__)


@dataclass
class ReconciliationResult:
    """Outcome of one reconciliation run."""

    new_purchases: List[Purchase] = field(default_factory=list)
    consume_requested: List[str] = field(default_factory=list)
    server_notified: bool = False
    server_queried: bool = False


class ReconciliationEngine:
    """Reconciles billing-service purchases into the entitlement store.

    Thread-safe. Runs triggered by different callbacks may overlap; the
    partition against the cache is the only deduplication boundary, and
    consumable merges are serialized per entitlement key.
    """

    def __init__(
        self,
        billing_client: BillingClient,
        store: EntitlementStore,
        verification_server: VerificationServerClient,
        verifier: SignatureVerifier,
        throttle: ThrottleGate,
        products: ProductRepository,
        supervisor: ConnectionSupervisor,
        executor: Optional[Executor] = None,
    ):
        """Initialize the engine.

        Args:
            billing_client: Billing service adapter
            store: Local entitlement cache
            verification_server: Remote verification server adapter
            verifier: Purchase signature verifier
            throttle: Gate for expensive server queries
            products: Catalog lookups
            supervisor: Connection supervisor for the billing client
            executor: Background executor for runs (inline if None)
        """
        self._client = billing_client
        self._store = store
        self._server = verification_server
        self._verifier = verifier
        self._throttle = throttle
        self._products = products
        self._supervisor = supervisor
        self._executor = executor
        self._merge_locks = KeyedLock()
        self._consuming: set[str] = set()
        self._consuming_lock = threading.Lock()

    # -- background execution ----------------------------------------------

    def _submit(self, fn: Callable[..., Any], *args: Any) -> None:
        if self._executor is None:
            self._run_guarded(fn, *args)
        else:
            self._executor.submit(self._run_guarded, fn, *args)

    def _run_guarded(self, fn: Callable[..., Any], *args: Any) -> None:
        try:
            fn(*args)
        except Exception as e:
            logger.error(
                "background_task_failed",
                task=getattr(fn, "__name__", repr(fn)),
                error=str(e),
                error_type=type(e).__name__,
                exc_info=True,
            )

    # -- snapshot ------------------------------------------------------------

    def query_purchases_async(self) -> None:
        """Once connected, collect a snapshot and reconcile it in the background."""
        self._supervisor.ensure_connected_then(lambda: self._submit(self.reconcile_snapshot))

    def reconcile_snapshot(self) -> ReconciliationResult:
        """Collect the current snapshot and run one reconciliation pass over it."""
        return self.process_purchases(self.collect_snapshot())

    def collect_snapshot(self) -> List[Purchase]:
        """Fetch INAPP purchases, plus SUBS purchases when subscriptions are supported."""
        purchases: List[Purchase] = []

        result = self._client.query_purchases(ProductCategory.INAPP)
        if result.response_code == BillingResponse.OK:
            purchases.extend(result.purchases)
        else:
            logger.warning(
                "purchase_query_failed",
                category=ProductCategory.INAPP.value,
                response=result.response_code.name,
            )

        support = self._client.is_feature_supported(BillingFeature.SUBSCRIPTIONS)
        if support == BillingResponse.OK:
            result = self._client.query_purchases(ProductCategory.SUBS)
            if result.response_code == BillingResponse.OK:
                purchases.extend(result.purchases)
            else:
                logger.warning(
                    "purchase_query_failed",
                    category=ProductCategory.SUBS.value,
                    response=result.response_code.name,
                )
        else:
            logger.info("subscriptions_not_supported", response=support.name)

        snapshot = dedupe_by_token(purchases)
        logger.debug("purchase_snapshot_collected", count=len(snapshot))
        return snapshot

    # -- reconciliation run -----------------------------------------------

    def partition(self, purchases: Iterable[Purchase], run_id: Optional[str] = None) -> List[Purchase]:
        """Select the purchases that are new to the local cache.

        A purchase is new when its signature verifies, it is in the PURCHASED
        state and its token is not cached. Unverified purchases are discarded.
        """
        cached_tokens = self._store.get_cached_tokens()
        new_purchases = []
        for purchase in purchases:
            if not self._verifier.verify(purchase.original_json, purchase.signature):
                log_purchase_lifecycle(
                    purchase.purchase_token,
                    purchase.product_id,
                    PurchaseLifecycle.DISCARDED,
                    reason="signature_not_verified",
                    run_id=run_id,
                )
                continue
            if purchase.purchase_token in cached_tokens:
                continue
            if purchase.purchase_state != PurchaseState.PURCHASED:
                logger.info(
                    "purchase_not_completed",
                    token=shorten_token(purchase.purchase_token),
                    product_id=purchase.product_id,
                    purchase_state=purchase.purchase_state.name,
                )
                continue
            new_purchases.append(purchase)
        return new_purchases

    def process_purchases(self, purchases: Iterable[Purchase]) -> ReconciliationResult:
        """Run one reconciliation pass over a purchase snapshot."""
        snapshot = dedupe_by_token(purchases)
        run_id = uuid.uuid4().hex[:8]
        result = ReconciliationResult()

        for purchase in snapshot:
            log_purchase_lifecycle(
                purchase.purchase_token, purchase.product_id, PurchaseLifecycle.OBSERVED, run_id=run_id
            )

        new_purchases = self.partition(snapshot, run_id=run_id)
        result.new_purchases = new_purchases

        if new_purchases:
            logger.info("reconciliation_new_purchases", run_id=run_id, count=len(new_purchases))
            result.server_notified = self._notify_server(new_purchases)
            self._dispatch_entitlements(new_purchases)
            self._store.insert_purchases(new_purchases)
            for purchase in new_purchases:
                log_purchase_lifecycle(
                    purchase.purchase_token,
                    purchase.product_id,
                    PurchaseLifecycle.CACHED_ENTITLED,
                    run_id=run_id,
                )
            result.consume_requested = self.handle_consumable_purchases(self._cached_only(snapshot))
        elif self._throttle.is_stale():
            logger.info(
                "reconciliation_throttle_stale",
                run_id=run_id,
                last_invocation_time_millis=self._throttle.last_invocation_time_millis,
            )
            result.consume_requested = self.handle_consumable_purchases(self._cached_only(snapshot))
            result.server_queried = self.pull_server_purchases()
        else:
            logger.debug("reconciliation_no_op", run_id=run_id, snapshot=len(snapshot))

        return result

    def _cached_only(self, purchases: Iterable[Purchase]) -> List[Purchase]:
        cached_tokens = self._store.get_cached_tokens()
        return [p for p in purchases if p.purchase_token in cached_tokens]

    def _notify_server(self, purchases: List[Purchase]) -> bool:
        try:
            return self._server.notify_new_purchases(purchases)
        except VerificationServerError as e:
            logger.warning("server_notification_failed", count=len(purchases), error=str(e))
            return False

    # -- entitlement dispatch ---------------------------------------------

    def _dispatch_entitlements(self, purchases: List[Purchase]) -> None:
        family: List[Purchase] = []

        for purchase in purchases:
            product = self._products.find_by_id(purchase.product_id)
            if product is None:
                logger.info("unknown_product_ignored", product_id=purchase.product_id)
                continue

            if self._products.is_one_time(product.id):
                self._store.upsert_entitlement(
                    PermanentUnlock(key=product.key, entitled=True), reason="one_time_purchase"
                )
                self._store.set_product_purchasable(product.id, False, category=product.category)
            elif self._products.is_exclusive_member(product.id):
                family.append(purchase)
            elif self._products.is_subscription(product.id):
                self._store.upsert_entitlement(
                    SubscriptionStatus(key=product.key, product_id=product.id, entitled=True),
                    reason="subscription_purchase",
                )
                self._store.set_product_purchasable(product.id, False, category=product.category)
            # consumables change balance on consume acknowledgement only

        if family:
            self._resolve_exclusive_family(family)

    def _resolve_exclusive_family(self, family: List[Purchase]) -> None:
        """Activate one family member, disable the rest.

        Latest purchase time wins; equal times go to the earliest in the snapshot.
        """
        winner = max(family, key=lambda p: p.purchase_time_millis)
        if len(family) > 1:
            logger.warning(
                "exclusive_family_conflict",
                winner=winner.product_id,
                candidates=[p.product_id for p in family],
            )

        product = self._products.get_by_id(winner.product_id)
        self._store.upsert_entitlement(
            SubscriptionStatus(key=product.key, product_id=product.id, entitled=True),
            reason="subscription_purchase",
        )
        self._store.set_product_purchasable(product.id, False, category=product.category)

        for sibling_id in self._products.exclusive_siblings(product.id):
            sibling = self._products.get_by_id(sibling_id)
            self._store.set_product_purchasable(sibling.id, False, category=sibling.category)
            existing = self._store.get_entitlement(sibling.key)
            if isinstance(existing, SubscriptionStatus) and existing.entitled:
                self._store.upsert_entitlement(
                    existing.model_copy(update={"entitled": False}),
                    reason=f"superseded_by_{product.id}",
                )

    # -- consumables -------------------------------------------------------

    def handle_consumable_purchases(self, purchases: Iterable[Purchase]) -> List[str]:
        """Ask the billing service to consume every completed consumable purchase.

        Returns:
            Tokens for which consume was requested
        """
        requested = []
        for purchase in purchases:
            if not self._products.is_consumable(purchase.product_id):
                continue
            if purchase.purchase_state != PurchaseState.PURCHASED:
                continue
            if not self._claim_consume(purchase.purchase_token):
                logger.debug("consume_already_pending", token=shorten_token(purchase.purchase_token))
                continue
            log_purchase_lifecycle(
                purchase.purchase_token, purchase.product_id, PurchaseLifecycle.CONSUME_PENDING
            )
            try:
                self._client.consume(purchase.purchase_token, self.on_consume_response)
            except Exception:
                self._release_consume(purchase.purchase_token)
                raise
            requested.append(purchase.purchase_token)
        return requested

    def _claim_consume(self, purchase_token: str) -> bool:
        with self._consuming_lock:
            if purchase_token in self._consuming:
                return False
            self._consuming.add(purchase_token)
            return True

    def _release_consume(self, purchase_token: str) -> None:
        with self._consuming_lock:
            self._consuming.discard(purchase_token)

    def acknowledge_consumption(self, purchase_token: str) -> Optional[ConsumableBalance]:
        """Merge a consumed purchase into its balance and drop it from the cache.

        Unknown tokens and non-consumable purchases are ignored, so a repeated
        acknowledgement is harmless.

        Returns:
            The merged balance, or None if nothing was merged
        """
        cached = self._store.find_purchase(purchase_token)
        if cached is None:
            logger.info("consume_ack_unknown_token", token=shorten_token(purchase_token))
            return None

        product = self._products.find_by_id(cached.product_id)
        if product is None or not self._products.is_consumable(product.id):
            logger.info("consume_ack_not_consumable", product_id=cached.product_id)
            return None

        increment = product.increment * cached.quantity
        with self._merge_locks.hold(product.key):
            # another ack for the same token may have won the race
            purchase = self._store.find_purchase(purchase_token)
            if purchase is None:
                return None

            existing = self._store.get_entitlement(product.key)
            if isinstance(existing, ConsumableBalance):
                balance = existing.merged(increment)
            else:
                balance = ConsumableBalance(key=product.key, level=increment, max_level=product.max_balance)

            self._store.upsert_entitlement(balance, reason="consume_acknowledged")
            log_purchase_lifecycle(
                purchase.purchase_token,
                purchase.product_id,
                PurchaseLifecycle.BALANCE_MERGED,
                level=balance.level,
            )
            self._store.set_product_purchasable(
                product.id, balance.may_purchase(), category=product.category
            )
            self._store.delete_purchase(purchase)
            log_purchase_lifecycle(
                purchase.purchase_token, purchase.product_id, PurchaseLifecycle.REMOVED_FROM_CACHE
            )

        return balance

    # -- billing callbacks -------------------------------------------------

    def on_purchases_updated(self, response: BillingResponse, purchases: List[Purchase]) -> None:
        """Handle a purchases-updated push from the billing service."""
        if response == BillingResponse.OK:
            self._submit(self.process_purchases, list(purchases))
        elif response == BillingResponse.ITEM_ALREADY_OWNED:
            logger.info("purchase_item_already_owned")
            self.query_purchases_async()
        elif response == BillingResponse.USER_CANCELED:
            logger.info("purchase_user_canceled")
        else:
            logger.warning("purchases_updated_error", response=response.name)

    def on_consume_response(self, response: BillingResponse, purchase_token: str) -> None:
        """Handle the billing service's answer to a consume request.

        ITEM_NOT_OWNED means the purchase was already consumed (or revoked), so
        its cached row is dropped instead of being retried forever.
        """
        if response == BillingResponse.OK:
            self._submit(self._finish_consumption, purchase_token)
        elif response == BillingResponse.ITEM_NOT_OWNED:
            self._submit(self._finish_consumption, purchase_token, self.discard_unowned_consumable)
        else:
            self._release_consume(purchase_token)
            logger.warning(
                "consume_failed",
                token=shorten_token(purchase_token),
                response=response.name,
            )

    def _finish_consumption(
        self,
        purchase_token: str,
        handler: Optional[Callable[[str], Any]] = None,
    ) -> None:
        try:
            (handler or self.acknowledge_consumption)(purchase_token)
        finally:
            self._release_consume(purchase_token)

    def discard_unowned_consumable(self, purchase_token: str) -> bool:
        """Drop a cached consumable the billing service no longer owns.

        Returns:
            True if a cached row was removed
        """
        cached = self._store.find_purchase(purchase_token)
        if cached is None or not self._products.is_consumable(cached.product_id):
            return False

        product = self._products.get_by_id(cached.product_id)
        with self._merge_locks.hold(product.key):
            if not self._store.delete_purchase(cached):
                return False

        logger.info(
            "consume_not_owned_dropped",
            token=shorten_token(purchase_token),
            product_id=cached.product_id,
        )
        log_purchase_lifecycle(
            purchase_token, cached.product_id, PurchaseLifecycle.REMOVED_FROM_CACHE, reason="not_owned"
        )
        return True

    # -- verification server ---------------------------------------------

    def pull_server_purchases(self) -> bool:
        """Pull server-side purchases the device may be missing.

        Verified, uncached, non-consumable purchases are entitled and cached.
        The throttle mark is refreshed only if the query succeeded.

        Returns:
            True if the server was queried successfully
        """
        try:
            server_purchases = self._server.query_server_purchases()
        except VerificationServerError as e:
            logger.warning("server_query_failed", error=str(e))
            return False

        candidates = [
            p
            for p in self.partition(dedupe_by_token(server_purchases))
            if not self._products.is_consumable(p.product_id)
        ]
        if candidates:
            self._dispatch_entitlements(candidates)
            self._store.insert_purchases(candidates)
            for purchase in candidates:
                log_purchase_lifecycle(
                    purchase.purchase_token,
                    purchase.product_id,
                    PurchaseLifecycle.CACHED_ENTITLED,
                    reason="server_purchase",
                )

        mark = self._throttle.refresh()
        logger.info("server_purchases_reconciled", restored=len(candidates), throttle_mark=mark)
        return True
