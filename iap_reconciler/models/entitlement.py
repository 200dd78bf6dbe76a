"""Entitlement models - what the user currently owns.

Three variants share a discriminated ``kind`` field so cached records can be
restored from JSON without knowing their type up front.
"""

from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter


class ConsumableBalance(BaseModel):
    """Accumulating balance (e.g. a gas tank level)."""

    kind: Literal["consumable"] = "consumable"
    key: str = Field(..., description="Entitlement key")
    level: int = Field(default=0, ge=0, description="Current balance")
    max_level: Optional[int] = Field(None, description="Balance at which purchases are disabled")

    def merged(self, increment: int) -> "ConsumableBalance":
        """Return a new balance with ``increment`` added."""
        return self.model_copy(update={"level": self.level + increment})

    def may_purchase(self) -> bool:
        if self.max_level is None:
            return True
        return self.level < self.max_level


class PermanentUnlock(BaseModel):
    """One-time unlock (e.g. a premium car). Never reverts to False."""

    kind: Literal["permanent"] = "permanent"
    key: str = Field(..., description="Entitlement key")
    entitled: bool = Field(default=False, description="Whether the unlock is owned")

    def may_purchase(self) -> bool:
        return not self.entitled


class SubscriptionStatus(BaseModel):
    """Status derived from owning a subscription product."""

    kind: Literal["subscription"] = "subscription"
    key: str = Field(..., description="Entitlement key (the subscription product ID)")
    product_id: str = Field(..., description="Subscription product ID")
    entitled: bool = Field(default=False, description="Whether the subscription is active")

    def may_purchase(self) -> bool:
        return not self.entitled


Entitlement = Annotated[
    Union[ConsumableBalance, PermanentUnlock, SubscriptionStatus],
    Field(discriminator="kind"),
]

_entitlement_adapter: TypeAdapter = TypeAdapter(Entitlement)


def parse_entitlement(data: Any) -> Union[ConsumableBalance, PermanentUnlock, SubscriptionStatus]:
    """Validate a stored dict into the matching entitlement variant."""
    return _entitlement_adapter.validate_python(data)
