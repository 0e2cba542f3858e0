"""
Unit tests for cost accounting.

Tests transaction cost booking, the storage cost meter and session replay.
"""

import asyncio
import os
import tempfile
from datetime import timedelta

import pytest
from conftest import T0, model_turn, user_turn

from story_context.core.accounting import (
    EXPIRED,
    CostAccountant,
    StorageCostMeter,
    compare_models,
    format_countdown,
    replay_session_cost,
)
from story_context.core.pricing import PRICING_TABLE
from story_context.storage import repository as keys
from story_context.storage.models import UsageRecord
from story_context.storage.repository import MemoryStore, fetch_usage_events, initialize_schema

FLASH = PRICING_TABLE.get_pricing("gemini-2.5-flash")


class TestCountdown:
    """Test cache countdown formatting."""

    def test_minutes_and_seconds(self):
        """Test countdown renders minutes and zero-padded seconds."""
        assert format_countdown(T0 + timedelta(seconds=125), T0) == "2:05"

    def test_expired(self):
        """Test a past or current expiry renders as expired."""
        assert format_countdown(T0 - timedelta(seconds=1), T0) == EXPIRED
        assert format_countdown(T0, T0) == EXPIRED

    def test_no_cache(self):
        """Test no countdown without a cache."""
        assert format_countdown(None, T0) is None


class TestStorageCostMeter:
    """Test per-second storage accrual."""

    def _meter(self, store=None):
        meter = StorageCostMeter(store, clock=lambda: T0)
        meter.update_state(1_000_000, T0 + timedelta(minutes=30), FLASH, "cachedContents/1")
        return meter

    def test_tick_accrues_per_second_rate(self):
        """Test one tick accrues one second of storage cost."""
        meter = self._meter()
        assert meter.tick(T0) == pytest.approx(1 / 3600)
        assert meter.accumulated == pytest.approx(1 / 3600)
        assert meter.countdown == "30:00"

    def test_no_accrual_after_expiry(self):
        """Test nothing accrues once the cache has expired."""
        meter = self._meter()
        assert meter.tick(T0 + timedelta(minutes=31)) == 0.0
        assert meter.countdown == EXPIRED

    def test_no_accrual_without_pricing_or_tokens(self):
        """Test nothing accrues without pricing or cached tokens."""
        meter = StorageCostMeter(clock=lambda: T0)
        meter.update_state(1000, T0 + timedelta(minutes=5), None, "c")
        assert meter.tick(T0) == 0.0
        meter.update_state(0, T0 + timedelta(minutes=5), FLASH, "c")
        assert meter.tick(T0) == 0.0

    def test_release_moves_to_history(self):
        """Test release folds the running accumulator into history."""
        store = MemoryStore()
        meter = self._meter(store)
        meter.tick(T0)
        meter.tick(T0)
        meter.release()
        assert meter.accumulated == 0.0
        assert meter.history_accumulated == pytest.approx(2 / 3600)
        assert meter.total == pytest.approx(2 / 3600)
        assert store.load(keys.HISTORY_STORAGE_COST_ACC) == pytest.approx(2 / 3600)

    def test_accumulators_restored_from_store(self):
        """Test accumulators are reloaded from the store."""
        store = MemoryStore({keys.STORAGE_COST_ACC: 0.5, keys.HISTORY_STORAGE_COST_ACC: 1.5})
        meter = StorageCostMeter(store)
        assert meter.total == pytest.approx(2.0)

    async def test_single_tick_task(self):
        """Test restarting the meter replaces the running tick task."""
        meter = self._meter()
        meter.interval = 0.01
        meter.start()
        first = meter._task
        meter.start()
        assert first is not meter._task
        await asyncio.sleep(0.05)
        assert first.cancelled()
        assert meter.running
        assert meter.accumulated > 0
        meter.stop()
        assert not meter.running


class TestCostAccountant:
    """Test per-turn booking."""

    def test_record_turn(self, usage):
        """Test a turn is priced and added to the persisted totals."""
        store = MemoryStore()
        accountant = CostAccountant(store)
        cost = accountant.record_turn(usage, "gemini-3-flash-preview", "m1")
        assert cost == pytest.approx(0.00092)
        assert accountant.estimated_cost == pytest.approx(0.00092)
        assert accountant.totals.fresh_input == 600
        assert accountant.totals.cached == 400
        assert accountant.totals.output == 200
        assert accountant.totals.total == 1200
        assert store.load(keys.ESTIMATED_COST) == pytest.approx(0.00092)
        assert store.load(keys.USAGE_STATS)["freshInput"] == 600

    def test_totals_restored(self, usage):
        """Test totals survive a new accountant on the same store."""
        store = MemoryStore()
        CostAccountant(store).record_turn(usage, "gemini-3-flash-preview")
        restored = CostAccountant(store)
        assert restored.totals.total == 1200
        assert restored.estimated_cost == pytest.approx(0.00092)

    def test_unknown_model(self, usage):
        """Test an unpriced model is rejected."""
        with pytest.raises(ValueError, match="Unsupported model"):
            CostAccountant(MemoryStore()).record_turn(usage, "mystery")

    def test_cache_creation_cost(self):
        """Test cache creation is billed at the input rate."""
        accountant = CostAccountant(MemoryStore())
        assert accountant.record_cache_creation(100_000, "gemini-2.5-flash") == pytest.approx(0.03)
        assert accountant.estimated_cost == pytest.approx(0.03)

    def test_sunk_history_append_only(self):
        """Test sunk usage is only ever appended."""
        store = MemoryStore()
        accountant = CostAccountant(store)
        accountant.add_sunk([UsageRecord(prompt=10)])
        accountant.add_sunk([UsageRecord(prompt=20)])
        accountant.add_sunk([])
        assert [u.prompt for u in accountant.sunk_history] == [10, 20]
        assert len(store.load(keys.SUNK_USAGE_HISTORY)) == 2

    def test_reset_zeroes_spend(self, usage):
        """Test reset clears the totals and spend but keeps sunk usage."""
        store = MemoryStore()
        accountant = CostAccountant(store)
        accountant.record_turn(usage, "gemini-3-flash-preview")
        accountant.add_sunk([UsageRecord(prompt=10)])
        accountant.reset()
        assert accountant.estimated_cost == 0.0
        assert accountant.totals.total == 0
        assert accountant.last_turn_cost == 0.0
        assert store.load(keys.ESTIMATED_COST) is None
        assert len(accountant.sunk_history) == 1

    def test_ledger_written(self, usage):
        """Test each turn is written to the usage ledger."""
        with tempfile.TemporaryDirectory() as temp_dir:
            db_path = os.path.join(temp_dir, "ledger.db")
            initialize_schema(db_path)
            accountant = CostAccountant(MemoryStore(), session_id="s1", ledger_db=db_path)
            accountant.record_turn(usage, "gemini-3-flash-preview", "m1")
            events = fetch_usage_events(session_id="s1", db_path=db_path)
            assert len(events) == 1
            assert events[0].turn_id == "m1"
            assert events[0].prompt_tokens == 1000
            assert events[0].cached_tokens == 400
            assert events[0].completion_tokens == 200


class TestReplay:
    """Test cost replay against other models."""

    def test_replay_includes_sunk_usage(self, usage):
        """Test replayed cost adds sunk usage."""
        turns = [user_turn("u0"), model_turn("m0", usage=usage)]
        pricing = PRICING_TABLE.get_pricing("gemini-3-flash-preview")
        assert replay_session_cost(turns, [], pricing) == pytest.approx(0.00092)
        assert replay_session_cost(turns, [usage], pricing) == pytest.approx(0.00184)

    def test_user_turn_usage_ignored(self, usage):
        """Test usage on user turns is not priced."""
        turns = [user_turn("u0", usage=usage)]
        assert replay_session_cost(turns, [], FLASH) == 0.0

    def test_compare_models(self, usage):
        """Test the same usage priced against two models."""
        turns = [model_turn("m0", usage=usage)]
        costs = compare_models(turns, [], ["gemini-3-flash-preview", "gpt-4o"])
        assert costs["gemini-3-flash-preview"] == pytest.approx(0.00092)
        # 600/1e6*2.5 + 200/1e6*10 + 400/1e6*1.25
        assert costs["gpt-4o"] == pytest.approx(0.0040)

    def test_compare_unknown_model(self, usage):
        """Test comparing against an unknown model raises."""
        with pytest.raises(ValueError):
            compare_models([], [], ["mystery"])
