"""Billing coordinator - owns the reconciler's object graph.

Created once at process start and passed to whoever needs it (the FastAPI app
keeps it on ``app.state.coordinator``). Wires the billing client callbacks to
the engine and the supervisor as plain closures.
"""

from concurrent.futures import Executor, ThreadPoolExecutor
from pathlib import Path
from typing import Callable, List, Optional

from iap_reconciler.clients.billing_client import (
    BillingClient,
    BillingFeature,
    BillingResponse,
)
from iap_reconciler.clients.local_billing_client import (
    LocalBillingClient,
    generate_private_key,
    load_private_key,
)
from iap_reconciler.clients.verification_server import VerificationServerClient
from iap_reconciler.config import Config
from iap_reconciler.logging_config import get_logger
from iap_reconciler.models import ProductCategory, ProductDetails
from iap_reconciler.repositories.entitlement_store import EntitlementStore
from iap_reconciler.repositories.preferences_store import PreferencesStore
from iap_reconciler.repositories.product_repository import ProductRepository
from iap_reconciler.services.connection_supervisor import ConnectionSupervisor, Scheduler
from iap_reconciler.services.purchase_publisher import PurchasePublisher
from iap_reconciler.services.reconciliation_engine import ReconciliationEngine
from iap_reconciler.services.signature_verifier import SignatureVerifier
from iap_reconciler.services.throttle import ThrottleGate

logger = get_logger(__name__)


class BillingCoordinator:
    """Explicitly owned billing service plus everything that depends on it."""

    def __init__(
        self,
        config: Config,
        billing_client: BillingClient,
        store: EntitlementStore,
        verification_server: VerificationServerClient,
        executor: Optional[Executor] = None,
        scheduler: Optional[Scheduler] = None,
        clock: Optional[Callable[[], int]] = None,
    ):
        """Build the verifier, throttle, supervisor and engine.

        Args:
            config: Loaded configuration
            billing_client: Billing service adapter
            store: Local entitlement cache
            verification_server: Verification server adapter
            executor: Background executor (a thread pool is created if None)
            scheduler: Delayed-call scheduler for the supervisor
            clock: Callable returning Unix millis for the throttle
        """
        settings = config.settings
        self._config = config
        self._client = billing_client
        self._store = store
        self._server = verification_server
        self._products = ProductRepository(config.catalog)

        self._owns_executor = executor is None
        self._executor = executor or ThreadPoolExecutor(
            max_workers=settings.worker_threads, thread_name_prefix="reconciler"
        )

        public_key = settings.signature.public_key or getattr(billing_client, "public_key_base64", None)
        self._verifier = SignatureVerifier(public_key, digest=settings.signature.digest)

        preferences = PreferencesStore(settings.throttle.namespace, config.state_dir)
        self._throttle = ThrottleGate(
            preferences, dead_band_millis=settings.throttle.dead_band_millis, clock=clock
        )

        self._supervisor = ConnectionSupervisor(
            billing_client,
            max_retry=settings.connection.max_retry,
            base_delay_millis=settings.connection.base_delay_millis,
            task_delay_millis=settings.connection.task_delay_millis,
            scheduler=scheduler,
        )

        self._engine = ReconciliationEngine(
            billing_client=billing_client,
            store=store,
            verification_server=verification_server,
            verifier=self._verifier,
            throttle=self._throttle,
            products=self._products,
            supervisor=self._supervisor,
            executor=self._executor,
        )

        self._supervisor.add_connection_hook(self._on_connection_established)
        self._client.set_purchases_updated_listener(self._engine.on_purchases_updated)

    @property
    def config(self) -> Config:
        return self._config

    @property
    def billing_client(self) -> BillingClient:
        return self._client

    @property
    def store(self) -> EntitlementStore:
        return self._store

    @property
    def products(self) -> ProductRepository:
        return self._products

    @property
    def engine(self) -> ReconciliationEngine:
        return self._engine

    @property
    def supervisor(self) -> ConnectionSupervisor:
        return self._supervisor

    @property
    def throttle(self) -> ThrottleGate:
        return self._throttle

    @property
    def verifier(self) -> SignatureVerifier:
        return self._verifier

    def start_data_source_connections(self) -> None:
        """Connect to the billing service; product details and purchases follow on setup."""
        logger.info("data_source_connections_starting")
        if not self._supervisor.connect():
            self._on_connection_established()

    def end_data_source_connections(self) -> None:
        """Disconnect and release background resources."""
        self._supervisor.shutdown()
        self._client.end_connection()
        if self._owns_executor:
            self._executor.shutdown(wait=True)
        self._server.close()
        logger.info("data_source_connections_ended")

    def reconcile(self) -> None:
        """Trigger a reconciliation run."""
        self._engine.query_purchases_async()

    def _on_connection_established(self) -> None:
        self.query_product_details_async()
        self._engine.query_purchases_async()

    def query_product_details_async(self) -> None:
        """Fetch product details for every catalog product once connected."""

        def task() -> None:
            for category in (ProductCategory.INAPP, ProductCategory.SUBS):
                product_ids = self._products.get_ids_by_category(category)
                if not product_ids:
                    continue
                if category == ProductCategory.SUBS:
                    support = self._client.is_feature_supported(BillingFeature.SUBSCRIPTIONS)
                    if support != BillingResponse.OK:
                        logger.info("product_details_subs_skipped", response=support.name)
                        continue
                self._client.query_product_details(category, product_ids, self._on_product_details)

        self._supervisor.ensure_connected_then(task)

    def _on_product_details(self, response: BillingResponse, details: List[ProductDetails]) -> None:
        if response != BillingResponse.OK:
            logger.warning("product_details_query_failed", response=response.name)
            return
        for item in details:
            self._store.upsert_product_details(item)
        logger.info("product_details_received", count=len(details))


def build_coordinator(config: Config, executor: Optional[Executor] = None) -> BillingCoordinator:
    """Wire the local billing client, file-backed store and verification server.

    Args:
        config: Loaded configuration
        executor: Background executor (a thread pool is created if None)

    Returns:
        Ready-to-start coordinator
    """
    settings = config.settings
    products = ProductRepository(config.catalog)

    key_path = settings.local_billing.private_key_path
    private_key = load_private_key(Path(key_path)) if key_path else generate_private_key()

    billing_client = LocalBillingClient(
        products,
        package_name=settings.package_name,
        private_key=private_key,
        digest=settings.signature.digest,
        subscriptions_supported=settings.local_billing.subscriptions_supported,
        token_prefix=settings.local_billing.token_prefix,
    )

    publisher = PurchasePublisher(settings.pubsub, settings.package_name)
    verification_server = VerificationServerClient(
        base_url=settings.verification_server.base_url,
        publisher=publisher,
        timeout=settings.verification_server.timeout_seconds,
    )

    logger.info(
        "coordinator_built",
        package_name=settings.package_name,
        products=len(products),
        state_dir=str(config.state_dir) if config.state_dir else None,
        pubsub_enabled=publisher.is_enabled(),
    )
    return BillingCoordinator(
        config,
        billing_client,
        EntitlementStore(config.state_dir),
        verification_server,
        executor=executor,
    )
