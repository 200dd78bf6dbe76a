"""Billing service client contract.

The reconciler talks to the billing service only through this interface.
Callbacks are plain callables handed in per call (or once, for purchase
updates) rather than one listener object implementing every interface.
"""

from dataclasses import dataclass, field
from enum import Enum, IntEnum
from typing import Callable, List

from iap_reconciler.models import ProductCategory, ProductDetails, Purchase


class BillingResponse(IntEnum):
    """Billing service response codes."""

    SERVICE_TIMEOUT = -3
    FEATURE_NOT_SUPPORTED = -2
    SERVICE_DISCONNECTED = -1
    OK = 0
    USER_CANCELED = 1
    SERVICE_UNAVAILABLE = 2
    BILLING_UNAVAILABLE = 3
    ITEM_UNAVAILABLE = 4
    DEVELOPER_ERROR = 5
    ERROR = 6
    ITEM_ALREADY_OWNED = 7
    ITEM_NOT_OWNED = 8


class BillingFeature(str, Enum):
    """Optional billing service capabilities."""

    SUBSCRIPTIONS = "subscriptions"


@dataclass(frozen=True)
class ConnectionListener:
    """Connection state callbacks for ``start_connection``."""

    on_setup_finished: Callable[[BillingResponse], None]
    on_disconnected: Callable[[], None]


@dataclass(frozen=True)
class PurchasesResult:
    """Result of a synchronous purchases query."""

    response_code: BillingResponse
    purchases: List[Purchase] = field(default_factory=list)


PurchasesUpdatedListener = Callable[[BillingResponse, List[Purchase]], None]
ConsumeListener = Callable[[BillingResponse, str], None]
ProductDetailsListener = Callable[[BillingResponse, List[ProductDetails]], None]


class BillingClient:
    """Opaque RPC client for the billing service.

    Subclasses implement the transport; the reconciler only depends on these
    methods.
    """

    def set_purchases_updated_listener(self, listener: PurchasesUpdatedListener) -> None:
        """Register the callback for asynchronous purchase updates."""
        raise NotImplementedError

    def is_ready(self) -> bool:
        """Whether the connection to the billing service is live."""
        raise NotImplementedError

    def start_connection(self, listener: ConnectionListener) -> None:
        """Request a connection; outcome is reported through ``listener``."""
        raise NotImplementedError

    def end_connection(self) -> None:
        """Close the connection."""
        raise NotImplementedError

    def query_purchases(self, category: ProductCategory) -> PurchasesResult:
        """Return the owned purchases of one category."""
        raise NotImplementedError

    def is_feature_supported(self, feature: BillingFeature) -> BillingResponse:
        """OK if the feature is supported, another code otherwise."""
        raise NotImplementedError

    def consume(self, purchase_token: str, on_consumed: ConsumeListener) -> None:
        """Consume a purchase; the result arrives through ``on_consumed``."""
        raise NotImplementedError

    def query_product_details(
        self,
        category: ProductCategory,
        product_ids: List[str],
        on_details: ProductDetailsListener,
    ) -> None:
        """Fetch product details; the result arrives through ``on_details``."""
        raise NotImplementedError
