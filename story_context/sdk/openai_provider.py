"""
OpenAI provider.

Streams chat completions and maps them onto the provider contract. OpenAI
has no explicit context caches, and chat completions only take PDF file
inputs, so the knowledge base always travels inline in the system message.
"""

import asyncio
from typing import Any, AsyncIterator, Dict, List, Optional

import openai
from openai import AsyncOpenAI

from story_context.core.errors import ProviderTransportError, TokenCountUnavailable
from story_context.core.pricing import PRICING_TABLE, PricingTable
from story_context.logger import get_logger
from story_context.sdk.provider import LLMProvider, ModelInfo, ProviderCapabilities, StreamChunk

log = get_logger(__name__)

OPENAI_MODELS = ("gpt-4o", "gpt-4o-mini")


def to_messages(contents: List[Dict[str, Any]], system_instruction: str) -> List[Dict[str, Any]]:
    """Convert role/parts contents into chat messages.

    Thought parts are dropped, as are parts without text.
    """
    messages: List[Dict[str, Any]] = []
    if system_instruction:
        messages.append({"role": "system", "content": system_instruction})

    for content in contents:
        role = "assistant" if content.get("role") == "model" else "user"
        texts = [
            part["text"] for part in content.get("parts", [])
            if part.get("text") and not part.get("thought")
        ]
        if texts:
            messages.append({"role": role, "content": "\n".join(texts)})
    return messages


def _usage_dict(usage: Any) -> Optional[Dict[str, int]]:
    if usage is None:
        return None
    details = getattr(usage, "prompt_tokens_details", None)
    cached = getattr(details, "cached_tokens", 0) if details is not None else 0
    return {
        "promptTokens": usage.prompt_tokens or 0,
        "completionTokens": usage.completion_tokens or 0,
        "cachedTokens": cached or 0,
    }


class OpenAIProvider(LLMProvider):
    """LLMProvider backed by the OpenAI chat completions API.

    Args:
        client: Preconfigured AsyncOpenAI client (one is created from the
            environment by default)
        table: Pricing table for the served models
    """

    provider_name = "openai"

    def __init__(self, client: Optional[AsyncOpenAI] = None, table: PricingTable = PRICING_TABLE):
        self.client = client or AsyncOpenAI()
        self.table = table

    async def generate_content_stream(
        self,
        model_id: str,
        contents: List[Dict[str, Any]],
        system_instruction: str,
        config: Optional[Dict[str, Any]] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> AsyncIterator[StreamChunk]:
        config = config or {}
        kwargs: Dict[str, Any] = {}
        if config.get("responseMimeType") == "application/json":
            kwargs["response_format"] = {"type": "json_object"}

        try:
            stream = await self.client.chat.completions.create(
                model=model_id,
                messages=to_messages(contents, system_instruction),
                stream=True,
                stream_options={"include_usage": True},
                **kwargs
            )
            async for chunk in stream:
                if cancel_event is not None and cancel_event.is_set():
                    log.info("stream cancelled for %s", model_id)
                    break
                usage = _usage_dict(chunk.usage)
                if not chunk.choices:
                    if usage:
                        yield StreamChunk(usage=usage)
                    continue
                choice = chunk.choices[0]
                yield StreamChunk(
                    text=choice.delta.content,
                    finish_reason=choice.finish_reason,
                    usage=usage,
                )
        except openai.APIError as e:
            raise ProviderTransportError(f"OpenAI request failed: {e}", cause=e)

    async def count_tokens(self, model_id: str, contents: List[Dict[str, Any]]) -> int:
        raise TokenCountUnavailable("OpenAI exposes no token counting endpoint")

    def get_capabilities(self) -> ProviderCapabilities:
        return ProviderCapabilities()

    def get_available_models(self) -> List[ModelInfo]:
        return [
            ModelInfo(id=model_id, name=self.table.get_pricing(model_id).name, pricing=self.table.get_pricing(model_id))
            for model_id in OPENAI_MODELS
        ]

    def get_default_model_id(self) -> str:
        return OPENAI_MODELS[0]

