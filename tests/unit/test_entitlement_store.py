"""Tests for the entitlement store."""

import json

import pytest

from iap_reconciler.models import (
    ConsumableBalance,
    PermanentUnlock,
    ProductCategory,
    ProductDetails,
    SubscriptionStatus,
)
from iap_reconciler.repositories.entitlement_store import STORE_FILE_NAME, EntitlementStore


@pytest.fixture
def store():
    """Create a fresh in-memory store for each test."""
    return EntitlementStore()


class TestEntitlements:
    """Entitlement upserts and observers."""

    def test_get_missing_returns_none(self, store):
        assert store.get_entitlement("premium_car") is None

    def test_upsert_and_get(self, store):
        unlock = PermanentUnlock(key="premium_car", entitled=True)
        store.upsert_entitlement(unlock)

        assert store.get_entitlement("premium_car") == unlock
        assert store.get_all_entitlements() == [unlock]

    def test_upsert_replaces(self, store):
        store.upsert_entitlement(ConsumableBalance(key="gas_tank", level=1))
        store.upsert_entitlement(ConsumableBalance(key="gas_tank", level=2))

        assert store.get_entitlement("gas_tank").level == 2
        assert len(store.get_all_entitlements()) == 1

    def test_subscribe_receives_current_and_updates(self, store):
        store.upsert_entitlement(ConsumableBalance(key="gas_tank", level=1))
        seen = []

        store.subscribe("gas_tank", lambda e: seen.append(e.level))
        store.upsert_entitlement(ConsumableBalance(key="gas_tank", level=2))

        assert seen == [1, 2]

    def test_subscribe_only_sees_its_key(self, store):
        seen = []
        store.subscribe("gas_tank", seen.append)

        store.upsert_entitlement(PermanentUnlock(key="premium_car", entitled=True))

        assert seen == []

    def test_unsubscribe(self, store):
        seen = []
        unsubscribe = store.subscribe("gas_tank", seen.append)
        unsubscribe()

        store.upsert_entitlement(ConsumableBalance(key="gas_tank", level=3))

        assert seen == []

    def test_failing_observer_does_not_break_upsert(self, store):
        def broken(_):
            raise RuntimeError("observer bug")

        store.subscribe("premium_car", broken)
        store.upsert_entitlement(PermanentUnlock(key="premium_car", entitled=True))

        assert store.get_entitlement("premium_car").entitled is True


class TestPurchases:
    """Cached purchase records."""

    def test_insert_appends(self, store, make_purchase):
        first = make_purchase("premium_car")
        second = make_purchase("gas")

        assert store.insert_purchases([first, second]) == 2
        assert store.get_cached_purchases() == [first, second]

    def test_insert_never_overwrites(self, store, make_purchase):
        original = make_purchase("premium_car")
        store.insert_purchases([original])
        variant = original.model_copy(update={"acknowledged": True})

        assert store.insert_purchases([variant]) == 0
        assert store.find_purchase(original.purchase_token).acknowledged is False

    def test_delete_purchase(self, store, make_purchase):
        purchase = make_purchase("gas")
        store.insert_purchases([purchase])

        assert store.delete_purchase(purchase) is True
        assert store.delete_purchase(purchase) is False
        assert store.find_purchase(purchase.purchase_token) is None

    def test_cached_tokens(self, store, make_purchase):
        purchase = make_purchase("gas")
        store.insert_purchases([purchase])
        assert store.get_cached_tokens() == {purchase.purchase_token}


class TestProductDetails:
    """Product details and purchasability."""

    def test_set_purchasable_creates_stub(self, store):
        store.set_product_purchasable("gold_monthly", False, category=ProductCategory.SUBS)

        details = store.find_product_details("gold_monthly")
        assert details.can_purchase is False
        assert details.category == ProductCategory.SUBS

    def test_fresh_details_keep_existing_flag(self, store):
        store.set_product_purchasable("premium_car", False)
        store.upsert_product_details(
            ProductDetails(product_id="premium_car", category=ProductCategory.INAPP, price="$2.99")
        )

        details = store.find_product_details("premium_car")
        assert details.can_purchase is False
        assert details.price == "$2.99"

    def test_filter_by_category(self, store):
        store.upsert_product_details(ProductDetails(product_id="gas", category=ProductCategory.INAPP))
        store.upsert_product_details(
            ProductDetails(product_id="gold_yearly", category=ProductCategory.SUBS)
        )

        subs = store.get_product_details(ProductCategory.SUBS)
        assert [d.product_id for d in subs] == ["gold_yearly"]
        assert len(store.get_product_details()) == 2


class TestPersistence:
    """File-backed store survives restarts."""

    def test_new_instance_reproduces_state(self, tmp_path, make_purchase):
        purchase = make_purchase("gold_yearly")
        first = EntitlementStore(tmp_path)
        first.upsert_entitlement(ConsumableBalance(key="gas_tank", level=3, max_level=4))
        first.upsert_entitlement(
            SubscriptionStatus(key="gold_yearly", product_id="gold_yearly", entitled=True)
        )
        first.insert_purchases([purchase])
        first.set_product_purchasable("gold_monthly", False, category=ProductCategory.SUBS)

        second = EntitlementStore(tmp_path)

        assert second.get_entitlement("gas_tank") == ConsumableBalance(
            key="gas_tank", level=3, max_level=4
        )
        assert isinstance(second.get_entitlement("gold_yearly"), SubscriptionStatus)
        assert second.get_cached_purchases() == [purchase]
        assert second.find_product_details("gold_monthly").can_purchase is False

    def test_file_is_json(self, tmp_path):
        EntitlementStore(tmp_path).upsert_entitlement(PermanentUnlock(key="premium_car", entitled=True))

        data = json.loads((tmp_path / STORE_FILE_NAME).read_text())
        assert data["entitlements"]["premium_car"]["kind"] == "permanent"

    def test_clear(self, tmp_path, make_purchase):
        store = EntitlementStore(tmp_path)
        store.upsert_entitlement(PermanentUnlock(key="premium_car", entitled=True))
        store.insert_purchases([make_purchase("premium_car")])

        store.clear()

        reloaded = EntitlementStore(tmp_path)
        assert reloaded.get_all_entitlements() == []
        assert reloaded.get_cached_purchases() == []
