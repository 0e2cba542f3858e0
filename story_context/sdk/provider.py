"""
Provider contract.

Vendor-neutral interface the engine drives. Required operations are
abstract; caching and file operations are optional and report themselves
unsupported by default, so callers consult ``get_capabilities`` first.
"""

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, AsyncIterator, Dict, List, Optional

from story_context.core.pricing import ModelPricing


@dataclass(frozen=True)
class StreamChunk:
    """One piece of a streamed response.

    ``usage`` uses the keys ``promptTokens``, ``completionTokens`` and
    ``cachedTokens``; any of them may be zero or missing on a given chunk.
    """
    text: Optional[str] = None
    thought: bool = False
    thought_signature: Optional[str] = None
    function_call: Optional[Dict[str, Any]] = None
    finish_reason: Optional[str] = None
    usage: Optional[Dict[str, int]] = None


@dataclass(frozen=True)
class CacheInfo:
    """Remote prompt cache as reported by the provider."""
    name: str
    model: str = ""
    token_count: int = 0
    create_time: Optional[datetime] = None
    expire_time: Optional[datetime] = None


@dataclass(frozen=True)
class FileInfo:
    """Remote uploaded file."""
    uri: str
    name: str = ""


@dataclass(frozen=True)
class ProviderCapabilities:
    """Feature flags used to pick between cache and file modes."""
    supports_file_upload: bool = False
    supports_context_caching: bool = False
    supports_thinking: bool = False
    supports_structured_output: bool = True
    is_local_provider: bool = False


@dataclass(frozen=True)
class ModelInfo:
    """A model the provider can serve, with its pricing."""
    id: str
    name: str
    pricing: ModelPricing
    supports_thinking: bool = False


class LLMProvider(ABC):
    """Abstract LLM backend."""

    provider_name: str = "base"

    @abstractmethod
    def generate_content_stream(
        self,
        model_id: str,
        contents: List[Dict[str, Any]],
        system_instruction: str,
        config: Optional[Dict[str, Any]] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> AsyncIterator[StreamChunk]:
        """Stream a response.

        Implementations are async generators; they stop yielding once
        ``cancel_event`` is set and raise ProviderTransportError on
        network failures.
        """

    @abstractmethod
    async def count_tokens(self, model_id: str, contents: List[Dict[str, Any]]) -> int:
        """Count tokens, raising TokenCountUnavailable when the tokenizer fails."""

    @abstractmethod
    def get_capabilities(self) -> ProviderCapabilities:
        ...

    @abstractmethod
    def get_available_models(self) -> List[ModelInfo]:
        ...

    @abstractmethod
    def get_default_model_id(self) -> str:
        ...

    # File operations

    async def upload_file(self, content: str, mime_type: str = "text/plain") -> FileInfo:
        raise NotImplementedError(f"{self.provider_name} does not support file upload")

    async def is_file_available(self, uri: str) -> bool:
        return False

    async def delete_all_files(self, exclude_uri: Optional[str] = None) -> None:
        return None

    # Context caching

    async def create_cache(
        self,
        model_id: str,
        system_instruction: str,
        contents: List[Dict[str, Any]],
        ttl_seconds: int,
    ) -> Optional[CacheInfo]:
        raise NotImplementedError(f"{self.provider_name} does not support context caching")

    async def get_cache(self, name: str) -> Optional[CacheInfo]:
        return None

    async def update_cache_ttl(self, name: str, ttl_seconds: int) -> Optional[CacheInfo]:
        return None

    async def delete_cache(self, name: str) -> None:
        return None

    async def delete_all_caches(self) -> int:
        return 0
