"""State change logging for purchases, entitlements and purchasability.

Tracks transitions with before/after values for debugging and auditing.
"""

from typing import Any, Optional

from iap_reconciler.logging_config import get_logger, shorten_token

logger = get_logger(__name__)


def log_purchase_lifecycle(
    token: str,
    product_id: str,
    new_state: Any,
    reason: Optional[str] = None,
    **extra_context: Any,
) -> None:
    """Log a purchase moving through the reconciler lifecycle.

    Args:
        token: Purchase token
        product_id: Product ID
        new_state: PurchaseLifecycle value reached
        reason: Why the transition happened
        **extra_context: Additional context (run_id, etc.)
    """
    logger.info(
        "purchase_lifecycle_changed",
        token=shorten_token(token),
        product_id=product_id,
        new_state=getattr(new_state, "value", str(new_state)),
        reason=reason,
        **extra_context,
    )


def log_entitlement_change(
    key: str,
    old_value: Any,
    new_value: Any,
    reason: Optional[str] = None,
    **extra_context: Any,
) -> None:
    """Log an entitlement mutation.

    Args:
        key: Entitlement key
        old_value: Previous entitlement (or None)
        new_value: New entitlement
        reason: Reason for the change
        **extra_context: Additional context
    """
    logger.info(
        "entitlement_changed",
        key=key,
        old_value=old_value.model_dump() if old_value is not None else None,
        new_value=new_value.model_dump(),
        reason=reason,
        **extra_context,
    )


def log_purchasability_change(
    product_id: str,
    old_value: Optional[bool],
    new_value: bool,
    **extra_context: Any,
) -> None:
    """Log a product's purchasability flag flipping.

    Args:
        product_id: Product ID
        old_value: Previous flag (None if no record existed)
        new_value: New flag
        **extra_context: Additional context
    """
    logger.info(
        "purchasability_changed",
        product_id=product_id,
        old_value=old_value,
        new_value=new_value,
        **extra_context,
    )
