"""
Unit tests for MarketRegistry.

Tests:
- Discovery reconciliation and eviction after repeated misses
- Failure counters, deactivation threshold and reactivation
- Snapshots for the reporting surface
"""

import pytest

from keeper.models import MarketConfig
from keeper.registry import MarketRegistry


def config(slab: str) -> MarketConfig:
    return MarketConfig(slab_address=slab, program_id="prog")


class TestReconcile:
    """Tests for merging discovery results."""

    def test_new_markets_are_added(self):
        registry = MarketRegistry()
        report = registry.reconcile({"a": config("a"), "b": config("b")})

        assert sorted(report.added) == ["a", "b"]
        assert len(registry) == 2
        assert registry.get("a").config.slab_address == "a"

    def test_accepts_plain_id_set(self):
        registry = MarketRegistry()
        registry.reconcile({"a", "b"})
        assert sorted(registry.market_ids()) == ["a", "b"]
        assert registry.get("a").config is None

    def test_market_removed_after_three_missed_discoveries(self):
        registry = MarketRegistry()
        registry.reconcile({"a", "b"})

        for _ in range(2):
            report = registry.reconcile({"a"})
            assert report.missing == ["b"]
            assert "b" in registry

        report = registry.reconcile({"a"})
        assert report.removed == ["b"]
        assert "b" not in registry
        assert "a" in registry

    def test_reappearance_resets_miss_counter(self):
        registry = MarketRegistry()
        registry.reconcile({"a"})
        registry.reconcile(set())
        registry.reconcile(set())
        assert registry.get("a").missing_discovery_count == 2

        registry.reconcile({"a"})
        assert registry.get("a").missing_discovery_count == 0

        # Needs three fresh misses again before eviction
        registry.reconcile(set())
        registry.reconcile(set())
        assert "a" in registry

    def test_reobserved_market_keeps_counters_and_refreshes_config(self):
        registry = MarketRegistry()
        registry.reconcile({"a": config("a")})
        registry.record_result("a", True, now=1.0)

        updated = MarketConfig(slab_address="a", program_id="prog", authority_price_e6=5)
        report = registry.reconcile({"a": updated})

        assert report.added == []
        assert registry.get("a").success_count == 1
        assert registry.get("a").config.authority_price_e6 == 5

    def test_custom_missing_limit(self):
        registry = MarketRegistry(missing_discovery_limit=1)
        registry.reconcile({"a"})
        report = registry.reconcile(set())
        assert report.removed == ["a"]

    def test_invalid_limits_rejected(self):
        with pytest.raises(ValueError):
            MarketRegistry(failure_threshold=0)
        with pytest.raises(ValueError):
            MarketRegistry(missing_discovery_limit=0)


class TestRecordResult:
    """Tests for crank outcome bookkeeping."""

    def test_success_resets_consecutive_failures(self):
        registry = MarketRegistry()
        registry.reconcile({"a"})

        for _ in range(4):
            registry.record_result("a", False, "boom", now=1.0)
        assert registry.get("a").consecutive_failures == 4

        registry.record_result("a", True, now=2.0)
        entry = registry.get("a")
        assert entry.consecutive_failures == 0
        assert entry.failure_count == 4
        assert entry.success_count == 1
        assert entry.last_error is None
        assert entry.last_crank_timestamp == 2.0

    def test_deactivates_at_threshold(self):
        registry = MarketRegistry(failure_threshold=3)
        registry.reconcile({"a"})

        changes = [registry.record_result("a", False, RuntimeError("rpc down")) for _ in range(3)]

        assert [c.deactivated for c in changes] == [False, False, True]
        assert registry.get("a").is_active is False
        assert registry.active_set() == []
        assert [e.market_id for e in registry.inactive_set()] == ["a"]

    def test_inactive_market_is_not_removed(self):
        registry = MarketRegistry(failure_threshold=1)
        registry.reconcile({"a"})
        registry.record_result("a", False, "x")
        assert "a" in registry

    def test_success_reactivates(self):
        registry = MarketRegistry(failure_threshold=2)
        registry.reconcile({"a"})
        registry.record_result("a", False, "x")
        registry.record_result("a", False, "x")

        change = registry.record_result("a", True)

        assert change.reactivated is True
        assert registry.get("a").is_active is True

    def test_error_message_is_truncated(self):
        registry = MarketRegistry()
        registry.reconcile({"a"})
        registry.record_result("a", False, "x" * 1000)
        assert len(registry.get("a").last_error) == 200

    def test_unknown_market_is_ignored(self):
        registry = MarketRegistry()
        change = registry.record_result("ghost", True)
        assert not change.deactivated and not change.reactivated
        assert len(registry) == 0


def test_snapshot_shape():
    registry = MarketRegistry()
    registry.reconcile({"a"})
    registry.record_result("a", True, now=10.0)

    snapshot = registry.snapshot()

    assert snapshot["a"]["success_count"] == 1
    assert snapshot["a"]["failure_count"] == 0
    assert snapshot["a"]["is_active"] is True
    assert snapshot["a"]["last_crank_timestamp"] == 10.0
