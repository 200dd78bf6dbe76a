"""Control API for driving and inspecting the reconciler.

Implements:
- GET  /control/entitlements - List cached entitlements
- GET  /control/entitlements/{key} - Get one entitlement
- GET  /control/products - Product details with purchasability
- GET  /control/purchases - Cached purchase records
- POST /control/purchases - Buy a product on the local billing service
- POST /control/reconcile - Trigger a reconciliation run
- POST /control/connection/disconnect - Simulate a billing service disconnect
"""

from typing import Any

from fastapi import APIRouter, HTTPException, Request

from iap_reconciler.clients.billing_client import BillingResponse
from iap_reconciler.clients.local_billing_client import LocalBillingClient, PurchaseLaunchError
from iap_reconciler.logging_config import get_logger, shorten_token
from iap_reconciler.models import (
    CachedPurchaseListResponse,
    EntitlementListResponse,
    ErrorResponse,
    LaunchPurchaseRequest,
    LaunchPurchaseResponse,
    ProductListResponse,
    StatusResponse,
)
from iap_reconciler.services.billing_coordinator import BillingCoordinator

logger = get_logger(__name__)
router = APIRouter(tags=["Control API"], prefix="/control")

LAUNCH_ERROR_STATUS = {
    BillingResponse.ITEM_UNAVAILABLE: 404,
    BillingResponse.ITEM_ALREADY_OWNED: 409,
    BillingResponse.SERVICE_DISCONNECTED: 503,
}


def _coordinator(request: Request) -> BillingCoordinator:
    return request.app.state.coordinator


def _local_billing(coordinator: BillingCoordinator) -> LocalBillingClient:
    client = coordinator.billing_client
    if not isinstance(client, LocalBillingClient):
        raise HTTPException(
            status_code=501,
            detail=ErrorResponse(
                error="Not supported",
                message="Purchases can only be launched on the local billing service",
            ).model_dump(),
        )
    return client


@router.get("/entitlements", response_model=EntitlementListResponse, summary="List entitlements")
async def list_entitlements(request: Request) -> EntitlementListResponse:
    store = _coordinator(request).store
    entitlements = [e.model_dump(mode="json") for e in store.get_all_entitlements()]
    return EntitlementListResponse(entitlements=entitlements, count=len(entitlements))


@router.get("/entitlements/{key}", summary="Get entitlement")
async def get_entitlement(key: str, request: Request) -> dict[str, Any]:
    """Get one entitlement by key.

    Raises:
        404: No entitlement recorded under this key
    """
    entitlement = _coordinator(request).store.get_entitlement(key)
    if entitlement is None:
        logger.warning("entitlement_not_found", key=key)
        raise HTTPException(
            status_code=404,
            detail=ErrorResponse(
                error="Entitlement not found",
                message=f"No entitlement recorded for '{key}'",
            ).model_dump(),
        )
    return entitlement.model_dump(mode="json")


@router.get("/products", response_model=ProductListResponse, summary="List product details")
async def list_products(request: Request) -> ProductListResponse:
    details = [d.model_dump(mode="json") for d in _coordinator(request).store.get_product_details()]
    return ProductListResponse(products=details, count=len(details))


@router.get("/purchases", response_model=CachedPurchaseListResponse, summary="List cached purchases")
async def list_cached_purchases(request: Request) -> CachedPurchaseListResponse:
    purchases = [p.model_dump(mode="json") for p in _coordinator(request).store.get_cached_purchases()]
    return CachedPurchaseListResponse(purchases=purchases, count=len(purchases))


@router.post(
    "/purchases",
    response_model=LaunchPurchaseResponse,
    status_code=201,
    summary="Launch purchase",
)
async def launch_purchase(body: LaunchPurchaseRequest, request: Request) -> LaunchPurchaseResponse:
    """Buy a product on the local billing service.

    The purchase reaches the reconciler through the purchases-updated
    callback, exactly like a purchase made in the store UI.

    Raises:
        404: Product not in the catalog
        409: Non-consumable product already owned
        503: Billing service not connected
    """
    logger.info("launch_purchase_request", product_id=body.product_id, quantity=body.quantity)
    client = _local_billing(_coordinator(request))

    try:
        purchase = client.launch_purchase(body.product_id, quantity=body.quantity)
    except PurchaseLaunchError as e:
        status_code = LAUNCH_ERROR_STATUS.get(e.response_code, 400)
        logger.warning(
            "launch_purchase_rejected",
            product_id=body.product_id,
            response=e.response_code.name,
            status_code=status_code,
        )
        raise HTTPException(
            status_code=status_code,
            detail=ErrorResponse(error=e.response_code.name, message=str(e)).model_dump(),
        )

    logger.info(
        "launch_purchase_success",
        product_id=purchase.product_id,
        token=shorten_token(purchase.purchase_token),
        order_id=purchase.order_id,
    )
    return LaunchPurchaseResponse(
        token=purchase.purchase_token,
        product_id=purchase.product_id,
        order_id=purchase.order_id,
        purchase_time_millis=purchase.purchase_time_millis,
        message="Purchase delivered to reconciler",
    )


@router.post("/reconcile", response_model=StatusResponse, status_code=202, summary="Reconcile now")
async def reconcile(request: Request) -> StatusResponse:
    _coordinator(request).reconcile()
    logger.info("reconcile_requested")
    return StatusResponse(status="accepted", message="Reconciliation run scheduled")


@router.post(
    "/connection/disconnect",
    response_model=StatusResponse,
    summary="Simulate billing service disconnect",
)
async def disconnect(request: Request) -> StatusResponse:
    """Drop the local billing connection; the supervisor schedules a reconnect."""
    client = _local_billing(_coordinator(request))
    client.disconnect()
    return StatusResponse(status="disconnected", message="Billing service connection dropped")
