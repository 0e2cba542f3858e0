"""
Shared fixtures: turn builders and an in-memory provider.
"""

import asyncio
import json
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import pytest

from story_context.core.errors import ProviderTransportError
from story_context.core.history import Intent
from story_context.core.pricing import PRICING_TABLE
from story_context.sdk.provider import (
    CacheInfo,
    FileInfo,
    LLMProvider,
    ModelInfo,
    ProviderCapabilities,
    StreamChunk,
)
from story_context.storage.models import ROLE_MODEL, ROLE_USER, Part, Turn, UsageRecord
from story_context.storage.repository import MemoryStore

T0 = datetime(2026, 1, 1, 12, 0, 0, tzinfo=timezone.utc)


def user_turn(turn_id: str, text: str = "I look around.", **kwargs) -> Turn:
    return Turn(id=turn_id, role=ROLE_USER, content=text, parts=(Part(text=text),), intent=Intent.ACTION, **kwargs)


def model_turn(turn_id: str, story: str = "The hall is quiet.", summary: str = "", **kwargs) -> Turn:
    kwargs.setdefault("intent", Intent.ACTION)
    return Turn(id=turn_id, role=ROLE_MODEL, content=story, parts=(Part(text=story),), summary=summary, **kwargs)


def story_json(story: str = "The door opens.", summary: str = "Door opened.", analysis: str = "ok", **response) -> str:
    body = {"story": story, "summary": summary}
    body.update(response)
    return json.dumps({"analysis": analysis, "response": body}, ensure_ascii=False)


def split_chunks(text: str, count: int) -> List[str]:
    size = max(1, len(text) // count)
    pieces = [text[i:i + size] for i in range(0, len(text), size)]
    return pieces


class FakeProvider(LLMProvider):
    """Provider double with server-side caches and files held in dicts."""

    provider_name = "fake"

    def __init__(self, caching: bool = True, files: bool = True):
        self.caching = caching
        self.files_supported = files
        self.caches: Dict[str, CacheInfo] = {}
        self.files: Dict[str, FileInfo] = {}
        self.created = 0
        self.uploaded = 0
        self.fail_ttl = False
        self.fail_create = False
        self.fail_stream = False
        self.responses: List[List[StreamChunk]] = []
        self.requests: List[Dict[str, Any]] = []

    # Generation

    def queue_text(self, text: str, chunks: int = 3, usage: Optional[Dict[str, int]] = None) -> None:
        pieces = [StreamChunk(text=p) for p in split_chunks(text, chunks)]
        pieces.append(StreamChunk(finish_reason="STOP", usage=usage or {
            "promptTokens": 1000, "completionTokens": 200, "cachedTokens": 400,
        }))
        self.responses.append(pieces)

    async def generate_content_stream(self, model_id, contents, system_instruction, config=None, cancel_event=None):
        self.requests.append({
            "model": model_id,
            "contents": contents,
            "system_instruction": system_instruction,
            "config": config or {},
        })
        if self.fail_stream:
            raise ProviderTransportError("connection reset")
        for chunk in self.responses.pop(0):
            if cancel_event is not None and cancel_event.is_set():
                return
            await asyncio.sleep(0)
            yield chunk

    async def count_tokens(self, model_id, contents):
        return 42

    def get_capabilities(self):
        return ProviderCapabilities(
            supports_file_upload=self.files_supported,
            supports_context_caching=self.caching,
        )

    def get_available_models(self):
        pricing = PRICING_TABLE.get_pricing("gemini-2.5-flash")
        return [ModelInfo(id="gemini-2.5-flash", name=pricing.name, pricing=pricing)]

    def get_default_model_id(self):
        return "gemini-2.5-flash"

    # Files

    async def upload_file(self, content, mime_type="text/plain"):
        self.uploaded += 1
        info = FileInfo(uri=f"files/{self.uploaded}", name="kb")
        self.files[info.uri] = info
        return info

    async def is_file_available(self, uri):
        return uri in self.files

    async def delete_all_files(self, exclude_uri=None):
        for uri in list(self.files):
            if uri != exclude_uri:
                del self.files[uri]

    # Caches

    async def create_cache(self, model_id, system_instruction, contents, ttl_seconds):
        if self.fail_create:
            raise ProviderTransportError("quota exceeded")
        self.created += 1
        info = CacheInfo(
            name=f"cachedContents/{self.created}",
            model=model_id,
            token_count=50_000,
            create_time=T0,
            expire_time=T0 + timedelta(seconds=ttl_seconds),
        )
        self.caches[info.name] = info
        return info

    async def get_cache(self, name):
        return self.caches.get(name)

    async def update_cache_ttl(self, name, ttl_seconds):
        if self.fail_ttl:
            raise ProviderTransportError("ttl update failed")
        info = self.caches.get(name)
        if info is None:
            return None
        updated = CacheInfo(
            name=name,
            model=info.model,
            token_count=info.token_count,
            create_time=info.create_time,
            expire_time=T0 + timedelta(seconds=2 * ttl_seconds),
        )
        self.caches[name] = updated
        return updated

    async def delete_cache(self, name):
        self.caches.pop(name, None)

    async def delete_all_caches(self):
        count = len(self.caches)
        self.caches.clear()
        return count


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def usage():
    return UsageRecord(prompt=1000, cached=400, candidates=200)
