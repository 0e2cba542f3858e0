"""
Unit tests for the remote knowledge-base context lifecycle.
"""

import pytest
from conftest import T0, FakeProvider

from story_context.core.accounting import CostAccountant
from story_context.core.cache_manager import CacheLifecycleManager, CacheState
from story_context.core.errors import SessionExpired
from story_context.core.knowledge import build_knowledge_base_text, calculate_kb_hash
from story_context.sdk.provider import CacheInfo, FileInfo
from story_context.storage import repository as keys
from story_context.storage.models import TokenUsageTotals, UsageRecord
from story_context.storage.repository import MemoryStore

MODEL = "gemini-2.5-flash"
SI = "You narrate."
KB = {"world.md": "A river city."}


@pytest.fixture
async def manager(provider, store):
    manager = CacheLifecycleManager(provider, store, accountant=CostAccountant(store))
    yield manager
    manager.meter.stop()


def _kb_hash(files=KB):
    return calculate_kb_hash(build_knowledge_base_text(files), MODEL, SI)


class TestCacheMode:
    """Test validation, refresh and self-healing with context caching."""

    async def test_creates_cache_when_empty(self, manager, provider, store):
        """Test a cache is created, persisted and billed from empty."""
        state = await manager.check_and_refresh(KB, SI, MODEL, True)
        assert state == CacheState.VALID
        assert manager.active_cache_name == "cachedContents/1"
        assert store.load(keys.KB_CACHE_NAME) == "cachedContents/1"
        assert store.load(keys.KB_CACHE_HASH) == _kb_hash()
        # 50k tokens at $0.30/1M
        assert manager.accountant.estimated_cost == pytest.approx(0.015)
        assert manager.meter.running

    async def test_existing_cache_validated_and_extended(self, manager, provider):
        """Test a valid cache gets its TTL extended instead of recreated."""
        await manager.check_and_refresh(KB, SI, MODEL, True)
        first_expiry = manager.record.expire_time
        await manager.check_and_refresh(KB, SI, MODEL, True)
        assert provider.created == 1
        assert manager.record.expire_time > first_expiry

    async def test_missing_cache_is_recreated(self, manager, provider):
        """Test a cache gone from the server is recovered."""
        transitions = []
        manager.subscribe(lambda old, new, reason: transitions.append(new))
        await manager.check_and_refresh(KB, SI, MODEL, True)
        provider.caches.clear()
        transitions.clear()

        state = await manager.check_and_refresh(KB, SI, MODEL, True)
        assert state == CacheState.VALID
        assert manager.active_cache_name == "cachedContents/2"
        assert transitions == [CacheState.INVALID, CacheState.RECOVERING, CacheState.VALID]

    async def test_changed_knowledge_replaces_cache(self, manager, provider):
        """Test changed knowledge replaces the old cache."""
        await manager.check_and_refresh(KB, SI, MODEL, True)
        await manager.check_and_refresh({"world.md": "A desert city."}, SI, MODEL, True)
        assert manager.active_cache_name == "cachedContents/2"
        assert "cachedContents/1" not in provider.caches

    async def test_ttl_failure_is_soft(self, manager, provider):
        """Test a failed TTL update keeps the cache."""
        await manager.check_and_refresh(KB, SI, MODEL, True)
        provider.fail_ttl = True
        state = await manager.check_and_refresh(KB, SI, MODEL, True)
        assert state == CacheState.VALID
        assert provider.created == 1

    async def test_unrecoverable_raises_session_expired(self, manager):
        """Test recovery without local files fails the session."""
        with pytest.raises(SessionExpired):
            await manager.check_and_refresh({}, SI, MODEL, True)
        assert manager.state == CacheState.FAILED

    async def test_creation_failure_raises_session_expired(self, manager, provider):
        """Test a failed cache creation fails the session."""
        provider.fail_create = True
        with pytest.raises(SessionExpired):
            await manager.check_and_refresh(KB, SI, MODEL, True)
        assert manager.active_cache_name is None

    async def test_leftover_file_removed(self, manager, provider):
        """Test switching to cache mode deletes the uploaded file."""
        await manager.check_and_refresh(KB, SI, MODEL, False)
        assert provider.files
        await manager.check_and_refresh(KB, SI, MODEL, True)
        assert provider.files == {}
        assert manager.active_file_uri is None

    async def test_surviving_file_used_as_fallback(self, manager, provider, store):
        """Test a surviving file serves when the cache cannot be rebuilt."""
        await manager.check_and_refresh(KB, SI, MODEL, False)
        state = await manager.check_and_refresh({}, SI, MODEL, True)
        assert state == CacheState.VALID
        assert manager.active_file_uri == "files/1"
        assert manager.active_cache_name is None


class TestFileMode:
    """Test the file-upload mode."""

    async def test_uploads_file(self, manager, provider, store):
        """Test file mode uploads and persists the file reference."""
        state = await manager.check_and_refresh(KB, SI, MODEL, False)
        assert state == CacheState.VALID
        assert manager.active_file_uri == "files/1"
        assert store.load(keys.KB_FILE_URI) == "files/1"

    async def test_missing_file_reuploaded(self, manager, provider):
        """Test a vanished file is uploaded again."""
        await manager.check_and_refresh(KB, SI, MODEL, False)
        provider.files.clear()
        await manager.check_and_refresh(KB, SI, MODEL, False)
        assert manager.active_file_uri == "files/2"

    async def test_leftover_cache_removed(self, manager, provider):
        """Test switching to file mode deletes the cache."""
        await manager.check_and_refresh(KB, SI, MODEL, True)
        await manager.check_and_refresh(KB, SI, MODEL, False)
        assert provider.caches == {}
        assert manager.active_cache_name is None


class TestRestore:
    """Test re-validation of persisted records."""

    def _persisted(self, content_hash):
        return MemoryStore({
            keys.KB_CACHE_NAME: "cachedContents/9",
            keys.KB_CACHE_HASH: content_hash,
            keys.KB_CACHE_TOKENS: 1000,
            keys.KB_CACHE_EXPIRE: T0.isoformat(),
        })

    async def test_valid_record(self):
        """Test a matching persisted record is restored."""
        provider = FakeProvider()
        provider.caches["cachedContents/9"] = CacheInfo(name="cachedContents/9", token_count=1000, expire_time=T0)
        manager = CacheLifecycleManager(provider, self._persisted(_kb_hash()))
        state = await manager.restore(expected_hash=_kb_hash(), model_id=MODEL)
        assert state == CacheState.VALID
        assert manager.active_cache_name == "cachedContents/9"
        manager.meter.stop()

    async def test_hash_mismatch_deletes_remote(self):
        """Test a stale record is deleted locally and remotely."""
        provider = FakeProvider()
        provider.caches["cachedContents/9"] = CacheInfo(name="cachedContents/9")
        store = self._persisted("stale")
        manager = CacheLifecycleManager(provider, store)
        state = await manager.restore(expected_hash=_kb_hash(), model_id=MODEL)
        assert state == CacheState.INVALID
        assert provider.caches == {}
        assert store.load(keys.KB_CACHE_NAME) is None

    async def test_missing_on_server(self):
        """Test a record missing on the server is invalid."""
        manager = CacheLifecycleManager(FakeProvider(), self._persisted(_kb_hash()))
        assert await manager.restore(expected_hash=_kb_hash()) == CacheState.INVALID

    async def test_stale_file_dropped(self):
        """Test a persisted file missing on the server is dropped."""
        store = MemoryStore({keys.KB_FILE_URI: "files/7"})
        manager = CacheLifecycleManager(FakeProvider(), store)
        assert await manager.restore() == CacheState.EMPTY
        assert store.load(keys.KB_FILE_URI) is None

    async def test_surviving_file(self):
        """Test a persisted file still on the server is restored."""
        provider = FakeProvider()
        provider.files["files/7"] = FileInfo(uri="files/7")
        manager = CacheLifecycleManager(provider, MemoryStore({keys.KB_FILE_URI: "files/7"}))
        assert await manager.restore() == CacheState.VALID
        assert manager.active_file_uri == "files/7"


class TestRelease:
    """Test release, clear and reset."""

    async def test_release_keeps_storage_cost(self, manager, provider):
        """Test release keeps the storage cost in history."""
        await manager.check_and_refresh(KB, SI, MODEL, True)
        manager.meter.accumulated = 0.2
        await manager.release()
        assert manager.state == CacheState.EMPTY
        assert provider.caches == {}
        assert manager.meter.history_accumulated == pytest.approx(0.2)
        assert manager.meter.accumulated == 0.0

    async def test_clear_all(self, manager, provider, store):
        """Test clearing removes server data and local cost records."""
        await manager.check_and_refresh(KB, SI, MODEL, True)
        count = await manager.clear_all()
        assert count == 1
        assert manager.state == CacheState.EMPTY
        assert store.load(keys.ESTIMATED_COST) is None
        assert manager.meter.total == 0.0

    async def test_clear_all_resets_accountant(self, manager, store):
        """Test clearing zeroes the running spend so the next turn starts from nothing."""
        await manager.check_and_refresh(KB, SI, MODEL, True)
        manager.accountant.record_turn(UsageRecord(prompt=1000, cached=400, candidates=200), MODEL)
        await manager.clear_all()

        assert manager.accountant.estimated_cost == 0.0
        assert manager.accountant.totals == TokenUsageTotals()
        assert manager.accountant.last_turn_usage is None

        manager.accountant.record_turn(UsageRecord(prompt=100), MODEL)
        assert manager.accountant.totals.fresh_input == 100
        assert store.load(keys.ESTIMATED_COST) == pytest.approx(0.00003)

    async def test_reset_and_snapshot(self, manager):
        """Test the snapshot reflects the cache and reset empties it."""
        await manager.check_and_refresh(KB, SI, MODEL, True)
        snapshot = manager.snapshot()
        assert snapshot["state"] == "valid"
        assert snapshot["cache_name"] == "cachedContents/1"
        assert snapshot["token_count"] == 50_000
        manager.reset()
        assert manager.state == CacheState.EMPTY
        assert manager.active_cache_name is None

    async def test_invalidate(self, manager):
        """Test invalidation forgets the active cache."""
        await manager.check_and_refresh(KB, SI, MODEL, True)
        manager.invalidate("model changed")
        assert manager.state == CacheState.INVALID
        assert manager.active_cache_name is None
