"""Notification models published to the verification server's Pub/Sub topic."""

from pydantic import BaseModel, Field


class PurchaseNotification(BaseModel):
    """New verified purchase reported to the verification server.

    Carries the signed payload untouched so the server can re-verify it.
    """

    version: str = Field(default="1.0", description="Notification version")
    package_name: str = Field(..., description="Application package name")
    event_time_millis: int = Field(..., description="Event timestamp (Unix millis)")
    purchase_token: str = Field(..., description="Purchase token")
    product_id: str = Field(..., description="Product ID")
    original_json: str = Field(..., description="Signed purchase payload")
    signature: str = Field(..., description="Base64 signature of original_json")

    class Config:
        json_schema_extra = {
            "example": {
                "version": "1.0",
                "package_name": "com.example.trivialdrive",
                "event_time_millis": 1700000000000,
                "purchase_token": "local_purchase_a1b2c3d4e5f6g7h8_1700000000000",
                "product_id": "premium_car",
                "original_json": '{"productId": "premium_car", "purchaseToken": "..."}',
                "signature": "MEUCIQ...",
            }
        }
