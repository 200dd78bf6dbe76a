"""Purchase models - snapshots of transactions reported by the billing service.

A Purchase is immutable once issued. Its identity is the purchase token.
"""

import json
from enum import Enum, IntEnum
from typing import Iterable, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError


class InvalidPurchasePayloadError(Exception):
    """Raised when a signed purchase payload cannot be parsed."""

    pass


class PurchaseState(IntEnum):
    """Purchase state as reported in the signed payload."""

    PURCHASED = 0  # Purchase completed
    CANCELED = 1  # Purchase canceled
    PENDING = 2  # Purchase pending


class PurchaseLifecycle(str, Enum):
    """Local lifecycle of a single purchase inside the reconciler."""

    OBSERVED = "OBSERVED"
    DISCARDED = "DISCARDED"
    CACHED_ENTITLED = "CACHED_ENTITLED"
    CONSUME_PENDING = "CONSUME_PENDING"
    BALANCE_MERGED = "BALANCE_MERGED"
    REMOVED_FROM_CACHE = "REMOVED_FROM_CACHE"


class Purchase(BaseModel):
    """Purchase snapshot from the billing service."""

    model_config = ConfigDict(frozen=True)

    product_id: str = Field(..., description="Product ID")
    purchase_token: str = Field(..., description="Unique purchase token")
    original_json: str = Field(..., description="Signed purchase payload")
    signature: str = Field(default="", description="Base64 signature over original_json")
    order_id: Optional[str] = Field(None, description="Order ID")
    purchase_time_millis: int = Field(default=0, description="Purchase time (Unix millis)")
    purchase_state: PurchaseState = Field(default=PurchaseState.PURCHASED, description="Purchase state")
    quantity: int = Field(default=1, ge=1, description="Quantity purchased")
    acknowledged: bool = Field(default=False, description="Acknowledged with the billing service")

    @classmethod
    def from_original_json(cls, original_json: str, signature: str) -> "Purchase":
        """Build a Purchase from the billing service's signed payload.

        Args:
            original_json: Signed JSON payload
            signature: Base64 signature of the payload

        Returns:
            Purchase

        Raises:
            InvalidPurchasePayloadError: If the payload is not valid JSON, lacks
                productId/purchaseToken or carries malformed fields
        """
        try:
            data = json.loads(original_json)
        except (TypeError, ValueError) as e:
            raise InvalidPurchasePayloadError(f"Purchase payload is not valid JSON: {e}")

        if not isinstance(data, dict):
            raise InvalidPurchasePayloadError("Purchase payload must be a JSON object")

        product_id = data.get("productId")
        token = data.get("purchaseToken")
        if not product_id or not token:
            raise InvalidPurchasePayloadError("Purchase payload missing productId or purchaseToken")

        try:
            state = PurchaseState(int(data.get("purchaseState", PurchaseState.PURCHASED)))
        except (TypeError, ValueError):
            raise InvalidPurchasePayloadError(
                f"Unknown purchaseState: {data.get('purchaseState')}"
            )

        try:
            return cls(
                product_id=product_id,
                purchase_token=token,
                original_json=original_json,
                signature=signature or "",
                order_id=data.get("orderId"),
                purchase_time_millis=int(data.get("purchaseTime", 0)),
                purchase_state=state,
                quantity=int(data.get("quantity", 1)),
                acknowledged=bool(data.get("acknowledged", False)),
            )
        except ValidationError as e:
            raise InvalidPurchasePayloadError(f"Invalid purchase fields: {e.error_count()} error(s)")
        except (TypeError, ValueError) as e:
            raise InvalidPurchasePayloadError(f"Invalid purchase fields: {e}")


def dedupe_by_token(purchases: Iterable[Purchase]) -> list[Purchase]:
    """Collapse purchases sharing a token, keeping first occurrence and order."""
    seen: set[str] = set()
    unique: list[Purchase] = []
    for purchase in purchases:
        if purchase.purchase_token in seen:
            continue
        seen.add(purchase.purchase_token)
        unique.append(purchase)
    return unique
