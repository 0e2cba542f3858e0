"""
Token counting and usage tracking.

Counts tokens through the provider when it can, and falls back to a
character-based estimate when the tokenizer is unavailable.
"""

from typing import Any, Dict, List, Optional

from story_context.core.errors import ProviderTransportError, TokenCountUnavailable
from story_context.logger import get_logger
from story_context.storage.models import UsageRecord

log = get_logger(__name__)

CHARS_PER_TOKEN = 4


def merge_sticky(previous: UsageRecord, reported: Optional[Dict[str, Any]]) -> UsageRecord:
    """Merge streamed usage counters into ``previous``.

    A field reported as zero (or missing) keeps its earlier non-zero value;
    providers often omit usage on intermediate chunks.

    Args:
        previous: Usage observed so far in this stream
        reported: Usage metadata from the latest chunk, with keys
            ``promptTokens``, ``completionTokens`` and ``cachedTokens``

    Returns:
        Merged UsageRecord
    """
    if not reported:
        return previous
    return UsageRecord(
        prompt=int(reported.get("promptTokens") or 0) or previous.prompt,
        candidates=int(reported.get("completionTokens") or 0) or previous.candidates,
        cached=int(reported.get("cachedTokens") or 0) or previous.cached,
    )


def estimate_tokens(text: str) -> int:
    """Rough token estimate: about four characters per token."""
    if not text:
        return 0
    return max(1, len(text) // CHARS_PER_TOKEN)


def estimate_contents_tokens(contents: List[Dict[str, Any]]) -> int:
    """Estimate tokens for a list of role/parts contents."""
    total = 0
    for content in contents:
        for part in content.get("parts", []):
            total += estimate_tokens(part.get("text") or "")
    return total


async def count_tokens_or_estimate(provider: Any, model_id: str, contents: List[Dict[str, Any]]) -> int:
    """Count tokens with the provider, absorbing tokenizer failures.

    Args:
        provider: LLMProvider used for counting
        model_id: Model whose tokenizer to use
        contents: Role/parts contents to count

    Returns:
        Provider count, or the heuristic estimate if counting failed
    """
    try:
        return await provider.count_tokens(model_id, contents)
    except (TokenCountUnavailable, ProviderTransportError) as e:
        estimate = estimate_contents_tokens(contents)
        log.warning("token count unavailable (%s); using estimate %d", e, estimate)
        return estimate
