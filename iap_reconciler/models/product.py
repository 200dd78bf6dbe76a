"""Product catalog models.

Models from the catalog section of reconciler.yaml plus the product details
reported by the billing service.
"""

from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field, model_validator


class ProductCategory(str, Enum):
    """Billing service product category."""

    INAPP = "inapp"
    SUBS = "subs"


class ProductKind(str, Enum):
    """How a product maps onto an entitlement."""

    ONE_TIME = "one_time"  # Permanent unlock
    CONSUMABLE = "consumable"  # Accumulating balance
    SUBSCRIPTION = "subscription"  # Subscription-derived status


class ProductDefinition(BaseModel):
    """Product definition from configuration."""

    id: str = Field(..., description="Product ID as known to the billing service")
    category: ProductCategory = Field(..., description="Billing category: 'inapp' or 'subs'")
    kind: ProductKind = Field(..., description="Entitlement kind granted by this product")
    title: str = Field(default="", description="Human-readable title")
    description: str = Field(default="", description="Product description")
    price_micros: int = Field(default=0, description="Price in micros (1,000,000 = $1.00)")
    currency: str = Field(default="USD", description="ISO 4217 currency code")

    # Entitlement mapping
    entitlement_key: Optional[str] = Field(
        None, description="Entitlement key (defaults to the product ID)"
    )
    increment: int = Field(default=1, ge=1, description="Balance added per consumable purchase")
    max_balance: Optional[int] = Field(
        None, ge=1, description="Balance at which a consumable stops being purchasable"
    )

    @model_validator(mode="after")
    def _check_category(self) -> "ProductDefinition":
        is_subscription = self.kind == ProductKind.SUBSCRIPTION
        if is_subscription != (self.category == ProductCategory.SUBS):
            raise ValueError(
                f"Product '{self.id}': kind '{self.kind.value}' does not match "
                f"category '{self.category.value}'"
            )
        return self

    @property
    def key(self) -> str:
        """Entitlement key this product mutates."""
        return self.entitlement_key or self.id

    class Config:
        json_schema_extra = {
            "example": {
                "id": "gas",
                "category": "inapp",
                "kind": "consumable",
                "title": "Gas",
                "description": "A quarter tank of gas",
                "price_micros": 990000,
                "currency": "USD",
                "entitlement_key": "gas_tank",
                "increment": 1,
                "max_balance": 4,
            }
        }


class MutuallyExclusiveGroup(BaseModel):
    """Family of subscription products of which only one may be owned."""

    name: str = Field(..., description="Family name (e.g. gold_status)")
    members: list[str] = Field(..., min_length=2, description="Member product IDs")


class ProductCatalog(BaseModel):
    """Static product catalog.

    The engine branches on set membership, so the derived sets below are
    part of the contract rather than convenience accessors.
    """

    products: list[ProductDefinition] = Field(default_factory=list)
    mutually_exclusive_group: Optional[MutuallyExclusiveGroup] = Field(
        None, description="The single mutually exclusive subscription family"
    )

    @model_validator(mode="after")
    def _check_catalog(self) -> "ProductCatalog":
        ids = [p.id for p in self.products]
        duplicates = sorted({i for i in ids if ids.count(i) > 1})
        if duplicates:
            raise ValueError(f"Duplicate product IDs in catalog: {duplicates}")

        if self.mutually_exclusive_group is not None:
            subscriptions = self.subscription_products
            for member in self.mutually_exclusive_group.members:
                if member not in subscriptions:
                    raise ValueError(
                        f"Mutually exclusive member '{member}' is not a subscription product"
                    )
        return self

    def _ids_of(self, kind: ProductKind) -> frozenset[str]:
        return frozenset(p.id for p in self.products if p.kind == kind)

    @property
    def one_time_products(self) -> frozenset[str]:
        return self._ids_of(ProductKind.ONE_TIME)

    @property
    def consumable_products(self) -> frozenset[str]:
        return self._ids_of(ProductKind.CONSUMABLE)

    @property
    def subscription_products(self) -> frozenset[str]:
        return self._ids_of(ProductKind.SUBSCRIPTION)

    @property
    def exclusive_members(self) -> tuple[str, ...]:
        if self.mutually_exclusive_group is None:
            return ()
        return tuple(self.mutually_exclusive_group.members)


class ProductDetails(BaseModel):
    """Product details from the billing service, augmented with purchasability."""

    product_id: str = Field(..., description="Product ID")
    category: ProductCategory = Field(..., description="Billing category")
    title: str = Field(default="", description="Store title")
    description: str = Field(default="", description="Store description")
    price: str = Field(default="", description="Formatted price")
    can_purchase: bool = Field(default=True, description="Whether the user may buy it now")
    original_json: Optional[str] = Field(None, description="Raw details payload")

    class Config:
        json_schema_extra = {
            "example": {
                "product_id": "premium_car",
                "category": "inapp",
                "title": "Premium Car",
                "description": "Drive a premium car",
                "price": "$2.99",
                "can_purchase": False,
            }
        }
