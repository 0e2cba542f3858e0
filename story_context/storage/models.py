"""
Data models for storage layer.

Defines the chat turn, usage and cache records that are persisted
between sessions.
"""

from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple


ROLE_USER = "user"
ROLE_MODEL = "model"

LOG_FIELDS = ("character_log", "inventory_log", "quest_log", "world_log")


@dataclass(frozen=True)
class Part:
    """A single piece of turn content as exchanged with the provider."""
    text: Optional[str] = None
    thought: bool = False
    thought_signature: Optional[str] = None
    function_call: Optional[Dict[str, Any]] = None
    function_response: Optional[Dict[str, Any]] = None
    file_data: Optional[Dict[str, str]] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to the provider wire shape, omitting empty keys."""
        data: Dict[str, Any] = {}
        if self.text is not None:
            data["text"] = self.text
        if self.thought:
            data["thought"] = True
        if self.thought_signature:
            data["thoughtSignature"] = self.thought_signature
        if self.function_call is not None:
            data["functionCall"] = self.function_call
        if self.function_response is not None:
            data["functionResponse"] = self.function_response
        if self.file_data is not None:
            data["fileData"] = self.file_data
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Part":
        return cls(
            text=data.get("text"),
            thought=bool(data.get("thought", False)),
            thought_signature=data.get("thoughtSignature"),
            function_call=data.get("functionCall"),
            function_response=data.get("functionResponse"),
            file_data=data.get("fileData"),
        )


@dataclass(frozen=True)
class UsageRecord:
    """Token counts reported for a single generation call.

    Records are immutable; once a turn is deleted its usage is moved to the
    sunk usage history instead of being discarded.
    """
    prompt: int = 0
    cached: int = 0
    candidates: int = 0

    def __post_init__(self):
        """Validate counts are not negative."""
        if self.prompt < 0 or self.cached < 0 or self.candidates < 0:
            raise ValueError("token counts cannot be negative")

    @property
    def fresh(self) -> int:
        """Prompt tokens not served from cache.

        Providers disagree on whether ``prompt`` includes cached tokens; when
        cached exceeds prompt the prompt count is taken as already exclusive.
        """
        if self.prompt >= self.cached:
            return self.prompt - self.cached
        return self.prompt

    def to_dict(self) -> Dict[str, int]:
        return {"prompt": self.prompt, "cached": self.cached, "candidates": self.candidates}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "UsageRecord":
        return cls(
            prompt=int(data.get("prompt", 0) or 0),
            cached=int(data.get("cached", 0) or 0),
            candidates=int(data.get("candidates", 0) or 0),
        )


@dataclass(frozen=True)
class TokenUsageTotals:
    """Running token totals for a session."""
    fresh_input: int = 0
    cached: int = 0
    output: int = 0
    total: int = 0

    def add(self, usage: UsageRecord) -> "TokenUsageTotals":
        """Return new totals including ``usage``."""
        return TokenUsageTotals(
            fresh_input=self.fresh_input + usage.fresh,
            cached=self.cached + usage.cached,
            output=self.output + usage.candidates,
            total=self.total + usage.prompt + usage.candidates,
        )

    def to_dict(self) -> Dict[str, int]:
        return {
            "freshInput": self.fresh_input,
            "cached": self.cached,
            "output": self.output,
            "total": self.total,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TokenUsageTotals":
        return cls(
            fresh_input=int(data.get("freshInput", 0) or 0),
            cached=int(data.get("cached", 0) or 0),
            output=int(data.get("output", 0) or 0),
            total=int(data.get("total", 0) or 0),
        )


@dataclass(frozen=True)
class Turn:
    """One chat turn.

    Turns are never mutated in place: corrections and edits produce a new
    instance through ``evolve``.
    """
    id: str
    role: str
    content: str = ""
    parts: Tuple[Part, ...] = ()
    usage: Optional[UsageRecord] = None
    is_ref_only: bool = False
    is_hidden: bool = False
    is_correction: bool = False
    is_manual_ref_only: bool = False
    intent: Optional[str] = None
    analysis: str = ""
    summary: str = ""
    thought: str = ""
    character_log: Tuple[str, ...] = ()
    inventory_log: Tuple[str, ...] = ()
    quest_log: Tuple[str, ...] = ()
    world_log: Tuple[str, ...] = ()

    def __post_init__(self):
        if self.role not in (ROLE_USER, ROLE_MODEL):
            raise ValueError(f"Unsupported role: {self.role}")

    def evolve(self, **changes: Any) -> "Turn":
        """Return a copy with ``changes`` applied."""
        return replace(self, **changes)

    @property
    def has_function_response(self) -> bool:
        return any(p.function_response is not None for p in self.parts)

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "id": self.id,
            "role": self.role,
            "content": self.content,
            "parts": [p.to_dict() for p in self.parts],
            "isRefOnly": self.is_ref_only,
            "isHidden": self.is_hidden,
            "isCorrection": self.is_correction,
            "isManualRefOnly": self.is_manual_ref_only,
            "analysis": self.analysis,
            "summary": self.summary,
            "thought": self.thought,
        }
        if self.usage is not None:
            data["usage"] = self.usage.to_dict()
        if self.intent is not None:
            data["intent"] = self.intent
        for name in LOG_FIELDS:
            data[name] = list(getattr(self, name))
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Turn":
        usage = data.get("usage")
        return cls(
            id=str(data["id"]),
            role=data["role"],
            content=data.get("content") or "",
            parts=tuple(Part.from_dict(p) for p in data.get("parts") or []),
            usage=UsageRecord.from_dict(usage) if usage else None,
            is_ref_only=bool(data.get("isRefOnly", False)),
            is_hidden=bool(data.get("isHidden", False)),
            is_correction=bool(data.get("isCorrection", False)),
            is_manual_ref_only=bool(data.get("isManualRefOnly", False)),
            intent=data.get("intent"),
            analysis=data.get("analysis") or "",
            summary=data.get("summary") or "",
            thought=data.get("thought") or "",
            character_log=tuple(data.get("character_log") or ()),
            inventory_log=tuple(data.get("inventory_log") or ()),
            quest_log=tuple(data.get("quest_log") or ()),
            world_log=tuple(data.get("world_log") or ()),
        )


@dataclass(frozen=True)
class CacheRecord:
    """Remote prompt cache owned by the cache lifecycle manager."""
    resource_name: str
    content_hash: str
    token_count: int
    create_time: Optional[datetime] = None
    expire_time: Optional[datetime] = None


@dataclass
class SessionSave:
    """Serializable snapshot of a whole session."""
    id: str
    name: str
    timestamp: datetime
    turns: List[Turn]
    token_usage: TokenUsageTotals = field(default_factory=TokenUsageTotals)
    estimated_cost: float = 0.0
    sunk_usage_history: List[UsageRecord] = field(default_factory=list)
    story_preview: str = ""
    kb_hash: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "timestamp": self.timestamp.isoformat(),
            "messages": [t.to_dict() for t in self.turns],
            "tokenUsage": self.token_usage.to_dict(),
            "estimatedCost": self.estimated_cost,
            "sunkUsageHistory": [u.to_dict() for u in self.sunk_usage_history],
            "storyPreview": self.story_preview,
            "kbHash": self.kb_hash,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SessionSave":
        timestamp = data.get("timestamp")
        if isinstance(timestamp, (int, float)):
            # Saves written by the browser client carry epoch milliseconds
            parsed = datetime.fromtimestamp(timestamp / 1000)
        elif timestamp:
            parsed = datetime.fromisoformat(timestamp)
        else:
            parsed = datetime.now()
        return cls(
            id=str(data.get("id", "")),
            name=data.get("name", ""),
            timestamp=parsed,
            turns=[Turn.from_dict(m) for m in data.get("messages") or []],
            token_usage=TokenUsageTotals.from_dict(data.get("tokenUsage") or {}),
            estimated_cost=float(data.get("estimatedCost", 0.0) or 0.0),
            sunk_usage_history=[UsageRecord.from_dict(u) for u in data.get("sunkUsageHistory") or []],
            story_preview=data.get("storyPreview", ""),
            kb_hash=data.get("kbHash"),
        )


@dataclass(frozen=True)
class UsageEvent:
    """Immutable ledger entry for one billed generation call."""
    timestamp: datetime
    session_id: str
    model: str
    prompt_tokens: int
    cached_tokens: int
    completion_tokens: int
    estimated_cost: float
    turn_id: Optional[str] = None

    def __post_init__(self):
        """Validate token counts and cost are not negative."""
        if self.prompt_tokens < 0 or self.cached_tokens < 0 or self.completion_tokens < 0:
            raise ValueError("token counts cannot be negative")
        if self.estimated_cost < 0:
            raise ValueError("estimated_cost cannot be negative")

    @property
    def usage(self) -> UsageRecord:
        return UsageRecord(
            prompt=self.prompt_tokens,
            cached=self.cached_tokens,
            candidates=self.completion_tokens,
        )
