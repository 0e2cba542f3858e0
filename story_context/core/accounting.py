"""
Cost accounting.

Per-turn transaction cost, continuously accrued cache storage cost, and
replay of a whole session's spend against another model's prices.
"""

import asyncio
from datetime import datetime, timezone
from decimal import Decimal
from typing import Callable, Dict, Iterable, List, Optional, Sequence

from story_context.core.pricing import (
    PRICING_TABLE,
    ModelPricing,
    PricingTable,
    calculate_cache_creation_cost,
    calculate_turn_cost,
    storage_cost_per_second,
)
from story_context.logger import get_logger
from story_context.storage import repository as keys
from story_context.storage.models import ROLE_MODEL, TokenUsageTotals, Turn, UsageEvent, UsageRecord
from story_context.storage.repository import KeyValueStore, insert_usage_event

log = get_logger(__name__)

TICK_SECONDS = 1.0
EXPIRED = "EXPIRED"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def format_countdown(expire_time: Optional[datetime], now: datetime) -> Optional[str]:
    """Remaining cache lifetime as ``M:SS``, ``EXPIRED``, or None without a cache."""
    if expire_time is None:
        return None
    remaining = max(0, int((expire_time - now).total_seconds()))
    if remaining <= 0:
        return EXPIRED
    minutes, seconds = divmod(remaining, 60)
    return f"{minutes}:{seconds:02d}"


class StorageCostMeter:
    """Accrues cache storage cost on a one-second tick.

    At most one tick task is alive: ``start`` cancels the previous one.
    Accrual only happens while a cache with tokens exists and has not
    expired.
    """

    def __init__(
        self,
        store: Optional[KeyValueStore] = None,
        clock: Callable[[], datetime] = utcnow,
        interval: float = TICK_SECONDS,
    ):
        self.store = store
        self.clock = clock
        self.interval = interval
        self.tokens = 0
        self.expire_time: Optional[datetime] = None
        self.pricing: Optional[ModelPricing] = None
        self.cache_name: Optional[str] = None
        self.countdown: Optional[str] = None
        self.accumulated = 0.0
        self.history_accumulated = 0.0
        self._task: Optional[asyncio.Task] = None
        if store is not None:
            self.accumulated = float(store.load(keys.STORAGE_COST_ACC, 0.0) or 0.0)
            self.history_accumulated = float(store.load(keys.HISTORY_STORAGE_COST_ACC, 0.0) or 0.0)

    def update_state(
        self,
        tokens: int,
        expire_time: Optional[datetime],
        pricing: Optional[ModelPricing],
        cache_name: Optional[str],
    ) -> None:
        """Point the meter at the current cache (or at nothing)."""
        self.tokens = tokens
        self.expire_time = expire_time
        self.pricing = pricing
        self.cache_name = cache_name
        self._update_countdown(self.clock())

    def _update_countdown(self, now: datetime) -> None:
        if not self.cache_name:
            self.countdown = None
            return
        self.countdown = format_countdown(self.expire_time, now)

    def tick(self, now: Optional[datetime] = None) -> float:
        """Advance one second. Returns the cost accrued by this tick."""
        now = now or self.clock()
        self._update_countdown(now)
        if (
            self.pricing is None
            or self.tokens <= 0
            or self.expire_time is None
            or self.expire_time <= now
        ):
            return 0.0
        increment = storage_cost_per_second(self.tokens, self.pricing)
        self.accumulated += increment
        return increment

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            self.tick()

    def start(self) -> None:
        """Start ticking on the running loop, replacing any earlier task."""
        self.stop()
        self._task = asyncio.get_running_loop().create_task(self._run())

    def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            self._task = None
        self.persist()

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def release(self) -> None:
        """Move the live accumulator into history (cache released)."""
        self.history_accumulated += self.accumulated
        self.accumulated = 0.0
        self.persist()

    @property
    def total(self) -> float:
        return self.history_accumulated + self.accumulated

    def persist(self) -> None:
        if self.store is None:
            return
        self.store.save(keys.STORAGE_COST_ACC, self.accumulated)
        self.store.save(keys.HISTORY_STORAGE_COST_ACC, self.history_accumulated)


class CostAccountant:
    """Running token totals and spend for a session.

    Args:
        store: Persistence port for totals and sunk usage
        table: Pricing table used to price turns
        session_id: Identifier written to the usage ledger
        ledger_db: SQLite path of the append-only usage ledger (optional)
    """

    def __init__(
        self,
        store: KeyValueStore,
        table: PricingTable = PRICING_TABLE,
        session_id: str = "",
        ledger_db: Optional[str] = None,
    ):
        self.store = store
        self.table = table
        self.session_id = session_id
        self.ledger_db = ledger_db
        self.totals = TokenUsageTotals.from_dict(store.load(keys.USAGE_STATS, {}) or {})
        self.estimated_cost = float(store.load(keys.ESTIMATED_COST, 0.0) or 0.0)
        self.sunk_history: List[UsageRecord] = [
            UsageRecord.from_dict(u) for u in store.load(keys.SUNK_USAGE_HISTORY, []) or []
        ]
        self.last_turn_usage: Optional[UsageRecord] = None
        self.last_turn_cost = 0.0

    def record_turn(self, usage: UsageRecord, model_id: str, turn_id: Optional[str] = None) -> float:
        """Price a finished turn and add it to the totals.

        Raises:
            ValueError: If the model has no pricing
        """
        cost = calculate_turn_cost(usage, self.table.get_pricing(model_id))
        self.totals = self.totals.add(usage)
        self.last_turn_usage = usage
        self.last_turn_cost = cost
        self.estimated_cost += cost
        self._persist()

        if self.ledger_db:
            insert_usage_event(UsageEvent(
                timestamp=datetime.now(),
                session_id=self.session_id,
                model=model_id,
                prompt_tokens=usage.prompt,
                cached_tokens=usage.cached,
                completion_tokens=usage.candidates,
                estimated_cost=cost,
                turn_id=turn_id,
            ), self.ledger_db)
        log.info(
            "turn %s cost $%.6f (prompt=%d cached=%d output=%d)",
            turn_id or "-", cost, usage.prompt, usage.cached, usage.candidates,
        )
        return cost

    def record_cache_creation(self, tokens: int, model_id: str) -> float:
        """Add the one-off cost of writing a cache."""
        cost = calculate_cache_creation_cost(tokens, self.table.get_pricing(model_id))
        self.estimated_cost += cost
        self._persist()
        return cost

    def add_sunk(self, usages: Iterable[UsageRecord]) -> None:
        """Append usage of removed turns to the sunk history."""
        added = list(usages)
        if not added:
            return
        self.sunk_history = self.sunk_history + added
        self.store.save(keys.SUNK_USAGE_HISTORY, [u.to_dict() for u in self.sunk_history])

    def reset(self) -> None:
        """Zero the running totals and spend, in memory and in the store."""
        self.totals = TokenUsageTotals()
        self.estimated_cost = 0.0
        self.last_turn_usage = None
        self.last_turn_cost = 0.0
        self.store.delete_many((keys.ESTIMATED_COST, keys.USAGE_STATS))

    def _persist(self) -> None:
        self.store.save(keys.USAGE_STATS, self.totals.to_dict())
        self.store.save(keys.ESTIMATED_COST, self.estimated_cost)


def replay_session_cost(
    turns: Sequence[Turn],
    sunk_history: Sequence[UsageRecord],
    pricing: ModelPricing,
) -> float:
    """Recompute a session's transaction cost under ``pricing``.

    Every model turn with usage and every sunk record is priced with the
    tier matching its own prompt size. No network calls are made.
    """
    total = Decimal("0")
    for turn in turns:
        if turn.role == ROLE_MODEL and turn.usage is not None:
            total += Decimal(str(calculate_turn_cost(turn.usage, pricing)))
    for usage in sunk_history:
        total += Decimal(str(calculate_turn_cost(usage, pricing)))
    return float(total)


def compare_models(
    turns: Sequence[Turn],
    sunk_history: Sequence[UsageRecord],
    model_ids: Iterable[str],
    table: PricingTable = PRICING_TABLE,
) -> Dict[str, float]:
    """Replay cost per model id.

    Raises:
        ValueError: If a model is not in the table
    """
    return {
        model_id: replay_session_cost(turns, sunk_history, table.get_pricing(model_id))
        for model_id in model_ids
    }
