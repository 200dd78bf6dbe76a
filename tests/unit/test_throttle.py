"""Tests for the throttle gate and its preferences store."""

import pytest

from iap_reconciler.repositories.preferences_store import PreferencesStore
from iap_reconciler.services.throttle import (
    DEFAULT_DEAD_BAND_MILLIS,
    LAST_INVOCATION_KEY,
    ThrottleGate,
)

NAMESPACE = "BillingRepository.Throttle"


@pytest.fixture
def preferences():
    return PreferencesStore(NAMESPACE)


@pytest.fixture
def gate(preferences):
    return ThrottleGate(preferences, dead_band_millis=1000)


class TestThrottleGate:
    """Stale/fresh decisions."""

    def test_default_dead_band_is_two_hours(self, preferences):
        assert ThrottleGate(preferences).dead_band_millis == 2 * 60 * 60 * 1000
        assert DEFAULT_DEAD_BAND_MILLIS == 7_200_000

    def test_never_refreshed_is_stale(self, gate):
        """A missing mark counts as epoch 0."""
        assert gate.last_invocation_time_millis == 0
        assert gate.is_stale(now_millis=5000) is True

    def test_fresh_immediately_after_refresh(self, gate):
        gate.refresh(now_millis=10_000)
        assert gate.is_stale(now_millis=10_000) is False

    def test_boundary_is_not_stale(self, gate):
        """Stale only when now - mark is strictly greater than the dead band."""
        gate.refresh(now_millis=10_000)
        assert gate.is_stale(now_millis=11_000) is False
        assert gate.is_stale(now_millis=11_001) is True

    def test_refresh_returns_and_stores_mark(self, gate, preferences):
        mark = gate.refresh(now_millis=42_000)
        assert mark == 42_000
        assert preferences.get_int(LAST_INVOCATION_KEY) == 42_000

    def test_injected_clock(self, preferences):
        now = {"value": 100_000}
        gate = ThrottleGate(preferences, dead_band_millis=1000, clock=lambda: now["value"])

        gate.refresh()
        assert gate.is_stale() is False

        now["value"] += 1001
        assert gate.is_stale() is True

    def test_concurrent_callers_may_both_see_stale(self, gate):
        """The gate is not a mutex: checking does not claim the slot."""
        assert gate.is_stale(now_millis=50_000) is True
        assert gate.is_stale(now_millis=50_000) is True


class TestPreferencesStore:
    """Namespace-scoped key-value persistence."""

    def test_default_when_unset(self, preferences):
        assert preferences.get_int("missing", default=7) == 7

    def test_in_memory_put_get(self, preferences):
        preferences.put("answer", 42)
        assert preferences.get_int("answer") == 42

    def test_mark_survives_restart(self, tmp_path):
        """A new store over the same directory sees the persisted mark."""
        first = ThrottleGate(PreferencesStore(NAMESPACE, tmp_path), dead_band_millis=1000)
        first.refresh(now_millis=123_456)

        second = ThrottleGate(PreferencesStore(NAMESPACE, tmp_path), dead_band_millis=1000)
        assert second.last_invocation_time_millis == 123_456
        assert (tmp_path / f"{NAMESPACE}.json").exists()

    def test_namespaces_are_isolated(self, tmp_path):
        PreferencesStore("a", tmp_path).put("k", 1)
        assert PreferencesStore("b", tmp_path).get_int("k", default=0) == 0

    def test_clear(self, tmp_path):
        store = PreferencesStore(NAMESPACE, tmp_path)
        store.put(LAST_INVOCATION_KEY, 99)
        store.clear()

        assert PreferencesStore(NAMESPACE, tmp_path).get_int(LAST_INVOCATION_KEY) == 0
