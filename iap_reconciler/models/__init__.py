"""Pydantic models for purchases, entitlements, catalog, settings and API payloads."""

# Product catalog models
from .product import (
    MutuallyExclusiveGroup,
    ProductCatalog,
    ProductCategory,
    ProductDefinition,
    ProductDetails,
    ProductKind,
)

# Settings models
from .settings import (
    ConnectionConfig,
    LocalBillingConfig,
    PubSubConfig,
    ReconcilerSettings,
    SignatureConfig,
    StorageConfig,
    ThrottleConfig,
    VerificationServerConfig,
)

# Purchase models
from .purchase import (
    InvalidPurchasePayloadError,
    Purchase,
    PurchaseLifecycle,
    PurchaseState,
    dedupe_by_token,
)

# Entitlement models
from .entitlement import (
    ConsumableBalance,
    Entitlement,
    PermanentUnlock,
    SubscriptionStatus,
    parse_entitlement,
)

# Event models
from .events import PurchaseNotification

# API models (Control API)
from .api_request import LaunchPurchaseRequest
from .api_response import (
    CachedPurchaseListResponse,
    EntitlementListResponse,
    ErrorResponse,
    LaunchPurchaseResponse,
    ProductListResponse,
    StatusResponse,
)

__all__ = [
    # Catalog
    "MutuallyExclusiveGroup",
    "ProductCatalog",
    "ProductCategory",
    "ProductDefinition",
    "ProductDetails",
    "ProductKind",
    # Settings
    "ConnectionConfig",
    "LocalBillingConfig",
    "PubSubConfig",
    "ReconcilerSettings",
    "SignatureConfig",
    "StorageConfig",
    "ThrottleConfig",
    "VerificationServerConfig",
    # Purchase
    "InvalidPurchasePayloadError",
    "Purchase",
    "PurchaseLifecycle",
    "PurchaseState",
    "dedupe_by_token",
    # Entitlement
    "ConsumableBalance",
    "Entitlement",
    "PermanentUnlock",
    "SubscriptionStatus",
    "parse_entitlement",
    # Events
    "PurchaseNotification",
    # API
    "LaunchPurchaseRequest",
    "LaunchPurchaseResponse",
    "EntitlementListResponse",
    "ProductListResponse",
    "CachedPurchaseListResponse",
    "StatusResponse",
    "ErrorResponse",
]
