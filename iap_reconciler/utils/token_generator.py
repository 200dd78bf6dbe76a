"""Token and order ID generation for the local billing service.

Produces purchase tokens and order IDs shaped like the ones Google Play
Billing hands out, so cached records look realistic.
"""

import random
import re
import time
import uuid
from typing import Optional

from iap_reconciler.models import ProductCategory

_TOKEN_PATTERN = re.compile(r"^[a-zA-Z0-9_-]+_(purchase|sub)_[a-f0-9]{16}_\d{13}$")
_ORDER_ID_PATTERN = re.compile(r"^[A-Z]{2,4}\.\d{4}-\d{4}-\d{4}-\d{4}$")


def generate_purchase_token(
    prefix: str = "local",
    category: ProductCategory = ProductCategory.INAPP,
    now_millis: Optional[int] = None,
) -> str:
    """Generate a unique purchase token.

    Format: {prefix}_{purchase|sub}_{uuid}_{timestamp}
    Example: local_purchase_a1b2c3d4e5f6a7b8_1700000000000

    Args:
        prefix: Token prefix
        category: Product category (subscriptions get the "sub" marker)
        now_millis: Timestamp to embed (defaults to now)

    Returns:
        Unique purchase token string
    """
    marker = "sub" if category == ProductCategory.SUBS else "purchase"
    token_id = uuid.uuid4().hex[:16]
    timestamp = now_millis if now_millis is not None else int(time.time() * 1000)
    return f"{prefix}_{marker}_{token_id}_{timestamp:013d}"


def generate_order_id(prefix: str = "GPA") -> str:
    """Generate a Google Play-style order ID.

    Format: {prefix}.{rand}-{rand}-{rand}-{rand}
    Example: GPA.1234-5678-9012-3456
    """
    parts = [random.randint(1000, 9999) for _ in range(4)]
    return f"{prefix}.{parts[0]}-{parts[1]}-{parts[2]}-{parts[3]}"


def validate_token(token: str) -> bool:
    """Check that a token has the local billing service's format."""
    if not token or not isinstance(token, str):
        return False
    return bool(_TOKEN_PATTERN.match(token))


def validate_order_id(order_id: str) -> bool:
    """Check that an order ID has the PREFIX.NNNN-NNNN-NNNN-NNNN format."""
    if not order_id or not isinstance(order_id, str):
        return False
    return bool(_ORDER_ID_PATTERN.match(order_id))
