"""Tests for token generation utilities."""

import re
import time

from iap_reconciler.models import ProductCategory
from iap_reconciler.utils.token_generator import (
    generate_order_id,
    generate_purchase_token,
    validate_order_id,
    validate_token,
)


class TestPurchaseTokenGeneration:
    """Test purchase token generation."""

    def test_generate_purchase_token_format(self):
        token = generate_purchase_token()
        assert re.match(r"^[a-zA-Z0-9_-]+_purchase_[a-f0-9]{16}_\d{13}$", token)

    def test_subscription_marker(self):
        token = generate_purchase_token(category=ProductCategory.SUBS)
        assert "_sub_" in token

    def test_uniqueness(self):
        tokens = [generate_purchase_token() for _ in range(100)]
        assert len(tokens) == len(set(tokens))

    def test_custom_prefix(self):
        assert generate_purchase_token(prefix="custom").startswith("custom_purchase_")

    def test_default_prefix(self):
        assert generate_purchase_token().startswith("local_purchase_")

    def test_embedded_timestamp(self):
        before = int(time.time() * 1000)
        token = generate_purchase_token()
        after = int(time.time() * 1000)

        assert before <= int(token.rsplit("_", 1)[1]) <= after

    def test_explicit_timestamp(self):
        assert generate_purchase_token(now_millis=1_700_000_000_000).endswith("_1700000000000")


class TestOrderIdGeneration:
    """Test order ID generation."""

    def test_format(self):
        assert re.match(r"^GPA\.\d{4}-\d{4}-\d{4}-\d{4}$", generate_order_id())

    def test_custom_prefix(self):
        assert generate_order_id(prefix="TEST").startswith("TEST.")


class TestValidation:
    """Test token and order ID validation."""

    def test_valid_token(self):
        assert validate_token(generate_purchase_token())

    def test_invalid_tokens(self):
        assert not validate_token("")
        assert not validate_token("random-string")
        assert not validate_token(None)

    def test_valid_order_id(self):
        assert validate_order_id(generate_order_id())

    def test_invalid_order_ids(self):
        assert not validate_order_id("GPA-1234")
        assert not validate_order_id("")
