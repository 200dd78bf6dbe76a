"""API response models for control endpoints."""

from typing import Any, Optional

from pydantic import BaseModel, Field


class LaunchPurchaseResponse(BaseModel):
    """Response after a purchase was made on the local billing service."""

    token: str = Field(..., description="Generated purchase token")
    product_id: str = Field(..., description="Product ID")
    order_id: Optional[str] = Field(None, description="Order ID")
    purchase_time_millis: int = Field(..., description="Purchase time (Unix millis)")
    message: str = Field(..., description="Status message")

    class Config:
        json_schema_extra = {
            "example": {
                "token": "local_purchase_a1b2c3d4e5f6g7h8_1700000000000",
                "product_id": "gas",
                "order_id": "GPA.1234-5678-9012-3456",
                "purchase_time_millis": 1700000000000,
                "message": "Purchase delivered to reconciler",
            }
        }


class EntitlementListResponse(BaseModel):
    """All cached entitlements."""

    entitlements: list[dict[str, Any]] = Field(default_factory=list)
    count: int = Field(..., description="Number of entitlements")


class ProductListResponse(BaseModel):
    """Product details with current purchasability."""

    products: list[dict[str, Any]] = Field(default_factory=list)
    count: int = Field(..., description="Number of products")


class CachedPurchaseListResponse(BaseModel):
    """Purchase records held in the local cache."""

    purchases: list[dict[str, Any]] = Field(default_factory=list)
    count: int = Field(..., description="Number of cached purchases")


class StatusResponse(BaseModel):
    """Generic acknowledgement for control actions."""

    status: str = Field(..., description="Action status")
    message: str = Field(..., description="Human-readable message")


class ErrorResponse(BaseModel):
    """Error payload."""

    error: str = Field(..., description="Error code")
    message: str = Field(..., description="Error message")
