"""API request models for control endpoints."""

from pydantic import BaseModel, Field


class LaunchPurchaseRequest(BaseModel):
    """Request to buy a product through the local billing service."""

    product_id: str = Field(..., description="Product ID to purchase (e.g. gas)")
    quantity: int = Field(default=1, ge=1, description="Quantity to purchase")

    class Config:
        json_schema_extra = {
            "example": {
                "product_id": "gas",
                "quantity": 1,
            }
        }
