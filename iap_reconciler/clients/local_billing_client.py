"""Local billing service - an in-process stand-in for the store's billing client.

Signs purchase payloads with its own RSA key, tracks owned (unconsumed)
purchases and delivers callbacks the way the real billing client does:
connection setup, purchase updates, consume results and product details.
Used by the control API for local development and by integration tests.
"""

import base64
import json
import threading
import time
from concurrent.futures import Executor
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa

from iap_reconciler.clients.billing_client import (
    BillingClient,
    BillingFeature,
    BillingResponse,
    ConnectionListener,
    ConsumeListener,
    ProductDetailsListener,
    PurchasesResult,
    PurchasesUpdatedListener,
)
from iap_reconciler.logging_config import get_logger, shorten_token
from iap_reconciler.models import (
    ProductCategory,
    ProductDetails,
    ProductKind,
    Purchase,
    PurchaseState,
)
from iap_reconciler.repositories.product_repository import ProductRepository
from iap_reconciler.services.signature_verifier import SUPPORTED_DIGESTS
from iap_reconciler.utils.token_generator import (
    generate_order_id,
    generate_purchase_token,
)

logger = get_logger(__name__)


class PurchaseLaunchError(Exception):
    """Raised when the local billing service refuses a purchase."""

    def __init__(self, response_code: BillingResponse, message: str):
        super().__init__(message)
        self.response_code = response_code


def generate_private_key() -> rsa.RSAPrivateKey:
    """Generate a fresh 2048-bit signing key."""
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


def load_private_key(path: Path) -> rsa.RSAPrivateKey:
    """Load a PEM private key from disk.

    Raises:
        ValueError: If the file does not hold an unencrypted RSA private key
    """
    with open(path, "rb") as f:
        key = serialization.load_pem_private_key(f.read(), password=None)
    if not isinstance(key, rsa.RSAPrivateKey):
        raise ValueError(f"Signing key in {path} must be RSA")
    return key


def format_price(price_micros: int, currency: str) -> str:
    amount = price_micros / 1_000_000
    if currency == "USD":
        return f"${amount:.2f}"
    return f"{amount:.2f} {currency}"


class LocalBillingClient(BillingClient):
    """In-process billing service.

    Thread-safe. Callbacks run inline unless a ``callback_executor`` is given,
    in which case they are submitted to it to mimic the real client's
    asynchronous delivery.
    """

    def __init__(
        self,
        products: ProductRepository,
        package_name: str,
        private_key: Optional[rsa.RSAPrivateKey] = None,
        digest: str = "SHA1",
        subscriptions_supported: bool = True,
        token_prefix: str = "local",
        callback_executor: Optional[Executor] = None,
        clock: Optional[Callable[[], int]] = None,
    ):
        """Initialize the local billing service.

        Args:
            products: Catalog lookups
            package_name: Package name written into payloads
            private_key: Signing key (generated if not provided)
            digest: Digest used for signatures
            subscriptions_supported: Whether SUBSCRIPTIONS is reported as supported
            token_prefix: Purchase token prefix
            callback_executor: Executor for callback delivery (inline if None)
            clock: Callable returning Unix millis
        """
        self._products = products
        self._package_name = package_name
        self._private_key = private_key or generate_private_key()
        self._digest = SUPPORTED_DIGESTS[digest.upper().replace("-", "")]()
        self._subscriptions_supported = subscriptions_supported
        self._token_prefix = token_prefix
        self._callback_executor = callback_executor
        self._clock = clock or (lambda: int(time.time() * 1000))

        self._lock = threading.RLock()
        self._ready = False
        self._connection_listener: Optional[ConnectionListener] = None
        self._purchases_listener: Optional[PurchasesUpdatedListener] = None
        self._owned: Dict[str, Purchase] = {}
        self._failures_pending = 0

    # -- keys and signing --------------------------------------------------

    @property
    def public_key_base64(self) -> str:
        """Base64 X.509 SubjectPublicKeyInfo of the signing key."""
        der = self._private_key.public_key().public_bytes(
            encoding=serialization.Encoding.DER,
            format=serialization.PublicFormat.SubjectPublicKeyInfo,
        )
        return base64.b64encode(der).decode("ascii")

    def sign(self, payload: str) -> str:
        """Sign a payload and return the base64 signature."""
        signature = self._private_key.sign(payload.encode("utf-8"), padding.PKCS1v15(), self._digest)
        return base64.b64encode(signature).decode("ascii")

    def build_purchase(
        self,
        product_id: str,
        quantity: int = 1,
        purchase_time_millis: Optional[int] = None,
        purchase_token: Optional[str] = None,
    ) -> Purchase:
        """Build a signed purchase without recording it as owned.

        Raises:
            ProductNotFoundError: If the product is not in the catalog
        """
        product = self._products.get_by_id(product_id)
        now = purchase_time_millis if purchase_time_millis is not None else self._clock()
        token = purchase_token or generate_purchase_token(
            prefix=self._token_prefix, category=product.category, now_millis=now
        )
        payload = json.dumps(
            {
                "orderId": generate_order_id(),
                "packageName": self._package_name,
                "productId": product_id,
                "purchaseTime": now,
                "purchaseState": int(PurchaseState.PURCHASED),
                "purchaseToken": token,
                "quantity": quantity,
                "acknowledged": False,
            },
            separators=(",", ":"),
        )
        return Purchase.from_original_json(payload, self.sign(payload))

    # -- callback delivery -------------------------------------------------

    def _deliver(self, callback: Callable[..., Any], *args: Any) -> None:
        if self._callback_executor is not None:
            self._callback_executor.submit(callback, *args)
        else:
            callback(*args)

    # -- connection --------------------------------------------------------

    def set_purchases_updated_listener(self, listener: PurchasesUpdatedListener) -> None:
        with self._lock:
            self._purchases_listener = listener

    def is_ready(self) -> bool:
        with self._lock:
            return self._ready

    def start_connection(self, listener: ConnectionListener) -> None:
        with self._lock:
            self._connection_listener = listener
            if self._failures_pending > 0:
                self._failures_pending -= 1
                response = BillingResponse.SERVICE_UNAVAILABLE
            else:
                self._ready = True
                response = BillingResponse.OK

        logger.info("local_billing_connection_setup", response=response.name)
        self._deliver(listener.on_setup_finished, response)

    def end_connection(self) -> None:
        with self._lock:
            self._ready = False
        logger.info("local_billing_connection_ended")

    def disconnect(self) -> None:
        """Simulate the billing service dropping the connection."""
        with self._lock:
            self._ready = False
            listener = self._connection_listener
        logger.info("local_billing_disconnected")
        if listener is not None:
            self._deliver(listener.on_disconnected)

    def fail_next_connections(self, count: int) -> None:
        """Make the next ``count`` connection attempts fail."""
        with self._lock:
            self._failures_pending = count

    # -- queries -----------------------------------------------------------

    def is_feature_supported(self, feature: BillingFeature) -> BillingResponse:
        if not self.is_ready():
            return BillingResponse.SERVICE_DISCONNECTED
        if feature == BillingFeature.SUBSCRIPTIONS and not self._subscriptions_supported:
            return BillingResponse.FEATURE_NOT_SUPPORTED
        return BillingResponse.OK

    def query_purchases(self, category: ProductCategory) -> PurchasesResult:
        if not self.is_ready():
            return PurchasesResult(BillingResponse.SERVICE_DISCONNECTED)
        if category == ProductCategory.SUBS and not self._subscriptions_supported:
            return PurchasesResult(BillingResponse.FEATURE_NOT_SUPPORTED)

        with self._lock:
            purchases = [
                purchase
                for purchase in self._owned.values()
                if self._category_of(purchase.product_id) == category
            ]
        return PurchasesResult(BillingResponse.OK, purchases)

    def _category_of(self, product_id: str) -> Optional[ProductCategory]:
        product = self._products.find_by_id(product_id)
        return product.category if product is not None else None

    def query_product_details(
        self,
        category: ProductCategory,
        product_ids: List[str],
        on_details: ProductDetailsListener,
    ) -> None:
        if not self.is_ready():
            self._deliver(on_details, BillingResponse.SERVICE_DISCONNECTED, [])
            return

        details = []
        for product_id in product_ids:
            product = self._products.find_by_id(product_id)
            if product is None or product.category != category:
                continue
            price = format_price(product.price_micros, product.currency)
            details.append(
                ProductDetails(
                    product_id=product.id,
                    category=product.category,
                    title=product.title,
                    description=product.description,
                    price=price,
                    original_json=json.dumps(
                        {
                            "productId": product.id,
                            "type": product.category.value,
                            "title": product.title,
                            "description": product.description,
                            "price": price,
                            "price_amount_micros": product.price_micros,
                            "price_currency_code": product.currency,
                        }
                    ),
                )
            )
        self._deliver(on_details, BillingResponse.OK, details)

    # -- purchase flow -----------------------------------------------------

    def launch_purchase(self, product_id: str, quantity: int = 1, notify: bool = True) -> Purchase:
        """Buy a product.

        The new purchase is delivered to the purchases-updated listener unless
        ``notify`` is False.

        Raises:
            PurchaseLaunchError: If disconnected, the product is unknown, or a
                non-consumable is already owned
        """
        if not self.is_ready():
            raise PurchaseLaunchError(
                BillingResponse.SERVICE_DISCONNECTED, "Billing service is not connected"
            )

        product = self._products.find_by_id(product_id)
        if product is None:
            raise PurchaseLaunchError(
                BillingResponse.ITEM_UNAVAILABLE, f"Product not available: {product_id}"
            )

        with self._lock:
            if product.kind != ProductKind.CONSUMABLE and any(
                p.product_id == product_id for p in self._owned.values()
            ):
                listener = self._purchases_listener
                already_owned = True
            else:
                purchase = self.build_purchase(product_id, quantity=quantity)
                self._owned[purchase.purchase_token] = purchase
                listener = self._purchases_listener
                already_owned = False

        if already_owned:
            logger.info("local_billing_item_already_owned", product_id=product_id)
            if notify and listener is not None:
                self._deliver(listener, BillingResponse.ITEM_ALREADY_OWNED, [])
            raise PurchaseLaunchError(
                BillingResponse.ITEM_ALREADY_OWNED, f"Product already owned: {product_id}"
            )

        logger.info(
            "local_billing_purchase_completed",
            product_id=product_id,
            token=shorten_token(purchase.purchase_token),
            order_id=purchase.order_id,
        )
        if notify and listener is not None:
            self._deliver(listener, BillingResponse.OK, [purchase])
        return purchase

    def grant(self, purchase: Purchase) -> None:
        """Record an externally built purchase as owned, without callbacks."""
        with self._lock:
            self._owned[purchase.purchase_token] = purchase

    def consume(self, purchase_token: str, on_consumed: ConsumeListener) -> None:
        if not self.is_ready():
            self._deliver(on_consumed, BillingResponse.SERVICE_DISCONNECTED, purchase_token)
            return

        with self._lock:
            purchase = self._owned.get(purchase_token)
            if purchase is None or not self._products.is_consumable(purchase.product_id):
                response = BillingResponse.ITEM_NOT_OWNED
            else:
                del self._owned[purchase_token]
                response = BillingResponse.OK

        logger.info(
            "local_billing_consume",
            token=shorten_token(purchase_token),
            response=response.name,
        )
        self._deliver(on_consumed, response, purchase_token)

    def owned_purchases(self) -> List[Purchase]:
        """Purchases the service still reports as owned."""
        with self._lock:
            return list(self._owned.values())

    def reset(self) -> None:
        """Forget every owned purchase."""
        with self._lock:
            self._owned.clear()
