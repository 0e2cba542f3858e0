"""
Remote knowledge-base context lifecycle.

Keeps one server-side copy of the knowledge base alive: a prompt cache
when caching is enabled, an uploaded file otherwise. Before each turn the
active copy is validated and, when lost, rebuilt from local files.
Whichever mode is not in use is cleaned up so two resources are never
paid for at once.

State machine::

    EMPTY --create--> VALID --ttl refresh--> VALID
    VALID --hash mismatch / missing--> INVALID --> RECOVERING --> VALID | FAILED
"""

from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, Dict, List, Mapping, Optional

from story_context.core.accounting import StorageCostMeter, utcnow
from story_context.core.errors import ProviderTransportError, SessionExpired
from story_context.core.knowledge import build_knowledge_base_text, calculate_kb_hash
from story_context.core.pricing import PRICING_TABLE, PricingTable
from story_context.logger import get_logger
from story_context.storage import repository as keys
from story_context.storage.models import CacheRecord, ROLE_USER
from story_context.storage.repository import KeyValueStore

log = get_logger(__name__)

DEFAULT_TTL_SECONDS = 1800


class CacheState(Enum):
    EMPTY = "empty"
    VALID = "valid"
    INVALID = "invalid"
    RECOVERING = "recovering"
    FAILED = "failed"


Listener = Callable[[CacheState, CacheState, str], None]


def _parse_time(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromisoformat(value)


class CacheLifecycleManager:
    """Validates, refreshes and self-heals the remote knowledge-base context.

    Args:
        provider: LLMProvider used for cache and file operations
        store: Persistence port for the cache record
        meter: Storage cost meter driven while a cache is alive
        ttl_seconds: Lifetime requested on creation and refresh
        table: Pricing used by the storage meter
        accountant: Optional CostAccountant charged for cache creation
        clock: Source of the current time (timezone-aware)
    """

    def __init__(
        self,
        provider,
        store: KeyValueStore,
        meter: Optional[StorageCostMeter] = None,
        ttl_seconds: int = DEFAULT_TTL_SECONDS,
        table: PricingTable = PRICING_TABLE,
        accountant=None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.provider = provider
        self.store = store
        self.meter = meter or StorageCostMeter(store, clock=clock)
        self.ttl_seconds = ttl_seconds
        self.table = table
        self.accountant = accountant
        self.clock = clock
        self.state = CacheState.EMPTY
        self.record: Optional[CacheRecord] = None
        self.file_uri: Optional[str] = None
        self.model_id: Optional[str] = None
        self._listeners: List[Listener] = []

    # Observers

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register ``listener(old, new, reason)``; returns an unsubscribe function."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _transition(self, new_state: CacheState, reason: str) -> None:
        old = self.state
        self.state = new_state
        if old != new_state:
            log.info("cache %s -> %s (%s)", old.value, new_state.value, reason)
        for listener in list(self._listeners):
            listener(old, new_state, reason)

    # Accessors used when building requests

    @property
    def active_cache_name(self) -> Optional[str]:
        return self.record.resource_name if self.record else None

    @property
    def active_file_uri(self) -> Optional[str]:
        return self.file_uri

    # Persistence

    def _persist_record(self) -> None:
        if self.record is None:
            self.store.delete_many((keys.KB_CACHE_NAME, keys.KB_CACHE_HASH, keys.KB_CACHE_TOKENS, keys.KB_CACHE_EXPIRE))
            return
        self.store.save(keys.KB_CACHE_NAME, self.record.resource_name)
        self.store.save(keys.KB_CACHE_HASH, self.record.content_hash)
        self.store.save(keys.KB_CACHE_TOKENS, self.record.token_count)
        expire = self.record.expire_time.isoformat() if self.record.expire_time else None
        self.store.save(keys.KB_CACHE_EXPIRE, expire)

    def _persist_file(self) -> None:
        if self.file_uri:
            self.store.save(keys.KB_FILE_URI, self.file_uri)
        else:
            self.store.delete(keys.KB_FILE_URI)

    def _drop_record(self) -> None:
        self.record = None
        self._persist_record()
        self.meter.stop()
        self.meter.update_state(0, None, None, None)

    def _drop_file(self) -> None:
        self.file_uri = None
        self._persist_file()

    def _start_meter(self) -> None:
        if self.record is None:
            return
        pricing = self.table.prices.get(self.model_id or "")
        self.meter.update_state(
            self.record.token_count, self.record.expire_time, pricing, self.record.resource_name
        )
        self.meter.start()

    # Lifecycle

    async def restore(self, expected_hash: Optional[str] = None, model_id: Optional[str] = None) -> CacheState:
        """Reload the persisted record and re-validate it against the service.

        Persisted data is never trusted on its own: a hash mismatch
        invalidates immediately, otherwise the remote resource must still
        exist.
        """
        self.model_id = model_id or self.model_id
        name = self.store.load(keys.KB_CACHE_NAME)
        content_hash = self.store.load(keys.KB_CACHE_HASH)
        tokens = int(self.store.load(keys.KB_CACHE_TOKENS, 0) or 0)
        expire = _parse_time(self.store.load(keys.KB_CACHE_EXPIRE))
        self.file_uri = self.store.load(keys.KB_FILE_URI)

        if self.file_uri and not await self._file_available(self.file_uri):
            log.info("persisted file %s no longer available", self.file_uri)
            self._drop_file()

        if not name:
            self._transition(CacheState.VALID if self.file_uri else CacheState.EMPTY, "restored")
            return self.state

        if expected_hash is not None and content_hash != expected_hash:
            await self._delete_cache_quietly(name)
            self._drop_record()
            self._transition(CacheState.INVALID, "content hash mismatch on restore")
            return self.state

        info = await self._get_cache(name)
        if info is None:
            self._drop_record()
            self._transition(CacheState.INVALID, "persisted cache missing on server")
            return self.state

        self.record = CacheRecord(
            resource_name=name,
            content_hash=content_hash or "",
            token_count=tokens or info.token_count,
            create_time=info.create_time,
            expire_time=info.expire_time or expire,
        )
        self._persist_record()
        self._start_meter()
        self._transition(CacheState.VALID, "restored")
        return self.state

    async def check_and_refresh(
        self,
        kb_files: Mapping[str, str],
        system_instruction: str,
        model_id: str,
        use_cache: bool,
    ) -> CacheState:
        """Make sure the knowledge base is reachable before a generation call.

        Args:
            kb_files: Local knowledge-base files (path -> content)
            system_instruction: System instruction baked into a new cache
            model_id: Model the cache is created for
            use_cache: Cache mode when true, file-upload mode otherwise

        Returns:
            CacheState.VALID

        Raises:
            SessionExpired: If the context is lost and cannot be rebuilt
        """
        self.model_id = model_id
        kb_text = build_knowledge_base_text(kb_files) if kb_files else ""
        new_hash = calculate_kb_hash(kb_text, model_id, system_instruction) if kb_files else None

        validated = False
        used_fallback = False

        if use_cache:
            if self.record and new_hash is not None and self.record.content_hash != new_hash:
                await self._delete_cache_quietly(self.record.resource_name)
                self._drop_record()
                self._transition(CacheState.INVALID, "knowledge base changed")
            if self.record:
                validated = await self._validate_cache()
        elif self.file_uri:
            if await self._file_available(self.file_uri):
                validated = True
                log.info("remote file validated: %s", self.file_uri)
            else:
                self._drop_file()
                self._transition(CacheState.INVALID, "remote file missing")

        if not validated:
            self._transition(CacheState.RECOVERING, "recovering knowledge base context")
            if kb_files:
                validated = await self._recreate(kb_text, new_hash or "", system_instruction, model_id, use_cache)
            else:
                validated = await self._fallback(use_cache)
                used_fallback = validated

        if not validated:
            self._drop_record()
            self._drop_file()
            self._transition(CacheState.FAILED, "context lost and cannot be recovered")
            raise SessionExpired()

        if not used_fallback:
            await self._cleanup_other_mode(use_cache)
        self._transition(CacheState.VALID, "validated")
        return self.state

    async def _validate_cache(self) -> bool:
        name = self.record.resource_name
        info = await self._get_cache(name)
        if info is None:
            self._drop_record()
            self._transition(CacheState.INVALID, "remote cache missing")
            return False
        try:
            updated = await self.provider.update_cache_ttl(name, self.ttl_seconds)
        except ProviderTransportError as e:
            log.warning("cache TTL extension failed, cache still exists: %s", e)
            updated = None
        if updated is not None and updated.expire_time is not None:
            self.record = CacheRecord(
                resource_name=name,
                content_hash=self.record.content_hash,
                token_count=self.record.token_count,
                create_time=self.record.create_time,
                expire_time=updated.expire_time,
            )
            self._persist_record()
            log.info("cache validated and TTL extended: %s", name)
        else:
            log.info("cache exists, TTL not extended: %s", name)
        self._start_meter()
        return True

    async def _recreate(
        self,
        kb_text: str,
        content_hash: str,
        system_instruction: str,
        model_id: str,
        use_cache: bool,
    ) -> bool:
        try:
            if use_cache:
                info = await self.provider.create_cache(
                    model_id,
                    system_instruction,
                    [{"role": ROLE_USER, "parts": [{"text": kb_text}]}],
                    self.ttl_seconds,
                )
                if info is None or not info.name:
                    log.error("cache creation returned no resource")
                    return False
                now = self.clock()
                self.record = CacheRecord(
                    resource_name=info.name,
                    content_hash=content_hash,
                    token_count=info.token_count,
                    create_time=info.create_time or now,
                    expire_time=info.expire_time or now + timedelta(seconds=self.ttl_seconds),
                )
                self._persist_record()
                if self.accountant is not None and info.token_count:
                    self.accountant.record_cache_creation(info.token_count, model_id)
                self._start_meter()
                log.info("cache recreated: %s (%d tokens)", info.name, info.token_count)
            else:
                uploaded = await self.provider.upload_file(kb_text, "text/plain")
                self.file_uri = uploaded.uri
                self._persist_file()
                log.info("knowledge base uploaded: %s", uploaded.uri)
            return True
        except (ProviderTransportError, NotImplementedError) as e:
            log.error("%s failed: %s", "cache creation" if use_cache else "file upload", e)
            return False

    async def _fallback(self, use_cache: bool) -> bool:
        """Without local files, settle for the other mode's surviving resource."""
        if use_cache and self.file_uri:
            if await self._file_available(self.file_uri):
                log.info("cache missing, using existing file %s as fallback", self.file_uri)
                return True
        elif not use_cache and self.record:
            if await self._get_cache(self.record.resource_name) is not None:
                log.info("file missing, using existing cache %s as fallback", self.record.resource_name)
                return True
        return False

    async def _cleanup_other_mode(self, use_cache: bool) -> None:
        try:
            if use_cache and self.file_uri:
                log.info("removing leftover file after cache validation")
                await self.provider.delete_all_files()
                self._drop_file()
            elif not use_cache and self.record:
                log.info("removing leftover cache after file validation")
                await self.provider.delete_cache(self.record.resource_name)
                self.meter.release()
                self._drop_record()
        except ProviderTransportError as e:
            log.warning("cleanup of the unused mode failed: %s", e)

    def invalidate(self, reason: str) -> None:
        """Forget the active cache record without touching the server."""
        if self.record is not None:
            self._drop_record()
        self._transition(CacheState.INVALID, reason)

    async def release(self) -> None:
        """Delete the active cache, keeping its storage cost in history."""
        if self.record is not None:
            log.info("releasing cache %s", self.record.resource_name)
            await self._delete_cache_quietly(self.record.resource_name)
        self.meter.release()
        self._drop_record()
        self._transition(CacheState.EMPTY, "released")

    async def clear_all(self) -> int:
        """Delete every server-side cache and file and reset local state."""
        count = 0
        try:
            count = await self.provider.delete_all_caches()
            await self.provider.delete_all_files()
        except ProviderTransportError as e:
            log.error("failed to clear server data: %s", e)
        self._drop_record()
        self._drop_file()
        self.meter.accumulated = 0.0
        self.meter.history_accumulated = 0.0
        self.meter.persist()
        if self.accountant is not None:
            self.accountant.reset()
        else:
            self.store.delete_many((keys.ESTIMATED_COST, keys.USAGE_STATS))
        self._transition(CacheState.EMPTY, "cleared")
        return count

    def reset(self) -> None:
        """Reset cache state without any server calls."""
        self._drop_record()
        self._transition(CacheState.EMPTY, "reset")

    # Provider helpers

    async def _get_cache(self, name: str):
        try:
            return await self.provider.get_cache(name)
        except ProviderTransportError as e:
            log.warning("cache lookup failed for %s: %s", name, e)
            return None

    async def _file_available(self, uri: str) -> bool:
        try:
            return await self.provider.is_file_available(uri)
        except ProviderTransportError as e:
            log.warning("file lookup failed for %s: %s", uri, e)
            return False

    async def _delete_cache_quietly(self, name: str) -> None:
        try:
            await self.provider.delete_cache(name)
        except ProviderTransportError as e:
            log.warning("could not delete cache %s: %s", name, e)

    def snapshot(self) -> Dict[str, object]:
        """Plain view of the manager for status displays."""
        return {
            "state": self.state.value,
            "cache_name": self.active_cache_name,
            "file_uri": self.file_uri,
            "token_count": self.record.token_count if self.record else 0,
            "countdown": self.meter.countdown,
        }
