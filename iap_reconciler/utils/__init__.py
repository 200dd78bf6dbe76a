"""Utility functions and helpers for the reconciler."""

from iap_reconciler.utils.keyed_lock import KeyedLock
from iap_reconciler.utils.persistence import read_json, write_json_atomic
from iap_reconciler.utils.token_generator import (
    generate_order_id,
    generate_purchase_token,
    validate_order_id,
    validate_token,
)

__all__ = [
    # Locking
    "KeyedLock",
    # Persistence
    "read_json",
    "write_json_atomic",
    # Token generation
    "generate_purchase_token",
    "generate_order_id",
    # Token validation
    "validate_token",
    "validate_order_id",
]
