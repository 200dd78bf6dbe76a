"""Tests for ProductRepository - catalog lookups."""

import pytest

from iap_reconciler.models import ProductCategory
from iap_reconciler.repositories.product_repository import ProductNotFoundError


class TestProductRepositoryBasics:
    """Test basic repository functionality."""

    def test_length_and_membership(self, products):
        assert len(products) == 4
        assert "gas" in products
        assert "mystery_box" not in products

    def test_repr(self, products):
        assert repr(products) == "ProductRepository(products=4)"


class TestProductLookup:
    """Test product lookup methods."""

    def test_get_by_id_success(self, products):
        assert products.get_by_id("premium_car").title == "Premium Car"

    def test_get_by_id_not_found_raises(self, products):
        with pytest.raises(ProductNotFoundError, match="mystery_box"):
            products.get_by_id("mystery_box")

    def test_find_by_id_returns_none(self, products):
        assert products.find_by_id("mystery_box") is None

    def test_ids_by_category(self, products):
        assert products.get_ids_by_category(ProductCategory.INAPP) == ["gas", "premium_car"]
        assert products.get_ids_by_category(ProductCategory.SUBS) == ["gold_monthly", "gold_yearly"]


class TestSetMembership:
    """Kind checks used by the engine."""

    def test_kinds(self, products):
        assert products.is_consumable("gas")
        assert products.is_one_time("premium_car")
        assert products.is_subscription("gold_monthly")
        assert not products.is_consumable("premium_car")

    def test_exclusive_siblings(self, products):
        assert products.is_exclusive_member("gold_yearly")
        assert products.exclusive_siblings("gold_yearly") == ["gold_monthly"]
        assert products.exclusive_siblings("gas") == []
