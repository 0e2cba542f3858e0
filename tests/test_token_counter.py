"""
Unit tests for usage merging and token counting.
"""

from conftest import FakeProvider

from story_context.config.loader import EngineConfig
from story_context.core.engine import TurnEngine
from story_context.core.errors import ProviderTransportError, TokenCountUnavailable
from story_context.core.token_counter import (
    count_tokens_or_estimate,
    estimate_contents_tokens,
    estimate_tokens,
    merge_sticky,
)
from story_context.storage.models import UsageRecord
from story_context.storage.repository import MemoryStore

CONTENTS = [
    {"role": "user", "parts": [{"text": "x" * 40}]},
    {"role": "model", "parts": [{"text": "y" * 20}, {"fileData": {"fileUri": "files/1"}}]},
]


class _NoTokenizer(FakeProvider):
    def __init__(self, error):
        super().__init__()
        self.error = error

    async def count_tokens(self, model_id, contents):
        raise self.error


class TestMergeSticky:
    """Test streamed usage merging."""

    def test_zero_keeps_previous(self):
        """Test zero counts keep the previous values."""
        previous = UsageRecord(prompt=100, cached=40, candidates=10)
        merged = merge_sticky(previous, {"promptTokens": 0, "completionTokens": 25})
        assert merged == UsageRecord(prompt=100, cached=40, candidates=25)

    def test_missing_usage(self):
        """Test a chunk without usage keeps the previous record."""
        previous = UsageRecord(prompt=1)
        assert merge_sticky(previous, None) is previous


class TestEstimates:
    """Test the character heuristic."""

    def test_estimate_tokens(self):
        """Test the four-characters-per-token estimate."""
        assert estimate_tokens("") == 0
        assert estimate_tokens("abc") == 1
        assert estimate_tokens("a" * 400) == 100

    def test_estimate_contents(self):
        """Test estimates over role/parts contents."""
        assert estimate_contents_tokens(CONTENTS) == 15


class TestCountTokens:
    """Test provider counting with the heuristic fallback."""

    async def test_provider_count(self):
        """Test the provider's own count is preferred."""
        assert await count_tokens_or_estimate(FakeProvider(), "m", CONTENTS) == 42

    async def test_unavailable_falls_back(self):
        """Test an unavailable tokenizer falls back to the estimate."""
        provider = _NoTokenizer(TokenCountUnavailable("no tokenizer"))
        assert await count_tokens_or_estimate(provider, "m", CONTENTS) == 15

    async def test_transport_error_falls_back(self):
        """Test a failed count falls back to the estimate."""
        provider = _NoTokenizer(ProviderTransportError("timeout"))
        assert await count_tokens_or_estimate(provider, "m", CONTENTS) == 15

    async def test_engine_request_count(self):
        """Test the engine counts the request it would send."""
        engine = TurnEngine(_NoTokenizer(TokenCountUnavailable("x")), EngineConfig(model_id="gpt-4o"), MemoryStore())
        count = await engine.count_request_tokens("a" * 400)
        assert count >= 100
