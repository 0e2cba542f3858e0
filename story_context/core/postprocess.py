"""
Sandboxed post-processing of decoded response fields.

User customisation is expressed as declarative regex substitution rules,
never as executable code. A processor is a pure ``Fields -> Fields``
transform: it sees only the fields it is given and returns new ones.
"""

import time
from dataclasses import dataclass, field, replace
from typing import List, Optional, Sequence, Tuple

import regex

from story_context.logger import get_logger

log = get_logger(__name__)

FIELD_NAMES = ("story", "summary", "character_log", "inventory_log", "quest_log", "world_log")
ALL_FIELDS = "*"
DEFAULT_TIME_BUDGET_MS = 50

# Terms common in Mainland usage with accepted Taiwan equivalents
SAFE_ZH_TW_REPLACEMENTS: Tuple[Tuple[str, str], ...] = (
    ("當前", "目前"),
    ("數據", "資料"),
    ("信息", "訊息"),
    ("用戶", "使用者"),
    ("屏幕", "螢幕"),
    ("激活", "啟用"),
    ("網絡", "網路"),
    ("軟件", "軟體"),
    ("硬件", "硬體"),
    ("硬盤", "硬碟"),
    ("視頻", "影片"),
    ("音頻", "音訊"),
)


@dataclass(frozen=True)
class Fields:
    """The user-editable fields of a decoded response."""
    story: str = ""
    summary: str = ""
    character_log: Tuple[str, ...] = ()
    inventory_log: Tuple[str, ...] = ()
    quest_log: Tuple[str, ...] = ()
    world_log: Tuple[str, ...] = ()


MOCK_FIELDS = Fields(
    story="Test story content.",
    summary="Test summary.",
    character_log=("[New] Test Character",),
    inventory_log=("[Add]: Test Item / 1",),
    quest_log=("[New]: Test Quest",),
    world_log=("[Discovery]: Test Location",),
)


@dataclass(frozen=True)
class SubstitutionRule:
    """Replace ``pattern`` with ``replacement`` in one field (or ``*`` for all)."""
    field: str
    pattern: str
    replacement: str = ""
    count: int = 0

    def __post_init__(self):
        if self.field != ALL_FIELDS and self.field not in FIELD_NAMES:
            raise ValueError(f"Unknown post-process field: {self.field}")
        if self.count < 0:
            raise ValueError("count cannot be negative")


# Make sure a leading [date/location] header is followed by a newline
STORY_HEADER_NEWLINE = SubstitutionRule(
    field="story",
    pattern=r"^(\[[^\]]+\])([^\n])",
    replacement=r"\1\n\2",
    count=1,
)


@dataclass(frozen=True)
class PostProcessValidation:
    valid: bool
    error: Optional[str] = None


def apply_safe_replacements(text: str) -> str:
    result = text
    for source, target in SAFE_ZH_TW_REPLACEMENTS:
        result = result.replace(source, target)
    return result


def _map_field(fields: Fields, name: str, fn) -> Fields:
    value = getattr(fields, name)
    if isinstance(value, tuple):
        return replace(fields, **{name: tuple(fn(v) for v in value)})
    return replace(fields, **{name: fn(value)})


@dataclass
class PostProcessor:
    """Applies substitution rules in order under a wall-clock budget.

    Every substitution gets the time left in the budget as a hard match
    timeout, so a backtracking-heavy pattern is cut off mid-match. Running
    over the budget, or any rule failing, returns the input fields unchanged.
    """
    rules: Sequence[SubstitutionRule] = field(default_factory=tuple)
    time_budget_ms: int = DEFAULT_TIME_BUDGET_MS
    language: str = "en"

    def __post_init__(self):
        self._compiled: List[Tuple[SubstitutionRule, regex.Pattern]] = []
        self._error: Optional[str] = None
        for rule in self.rules:
            try:
                self._compiled.append((rule, regex.compile(rule.pattern, regex.MULTILINE)))
            except regex.error as e:
                self._error = f"Invalid pattern {rule.pattern!r}: {e}"
                log.warning("post-process rule rejected: %s", self._error)
                break

    def safe_text(self, text: str) -> str:
        """Language-specific safe replacements for a single preview string."""
        if self.language != "zh-TW" or not text:
            return text
        return apply_safe_replacements(text)

    def _run(self, fields: Fields) -> Fields:
        if self._error:
            raise ValueError(self._error)
        deadline = time.monotonic() + self.time_budget_ms / 1000.0
        result = fields
        for rule, pattern in self._compiled:
            if time.monotonic() > deadline:
                raise TimeoutError(f"post-processing exceeded {self.time_budget_ms} ms")
            targets = FIELD_NAMES if rule.field == ALL_FIELDS else (rule.field,)
            for name in targets:
                result = _map_field(
                    result, name,
                    lambda v, p=pattern, r=rule: p.sub(
                        r.replacement, v, count=r.count, timeout=max(deadline - time.monotonic(), 0.001)
                    ),
                )
        if time.monotonic() > deadline:
            raise TimeoutError(f"post-processing exceeded {self.time_budget_ms} ms")
        return result

    def process(self, fields: Fields) -> Fields:
        """Return processed fields, or ``fields`` unchanged if a rule fails."""
        result = fields
        if self.language == "zh-TW":
            for name in FIELD_NAMES:
                result = _map_field(result, name, apply_safe_replacements)
        if not self._compiled and not self._error:
            return result
        try:
            return self._run(result)
        except (ValueError, TimeoutError, regex.error, IndexError) as e:
            log.warning("post-processing skipped: %s", e)
            return fields

    def validate(self) -> PostProcessValidation:
        """Dry-run the rules against mock fields."""
        try:
            self._run(MOCK_FIELDS)
        except (ValueError, TimeoutError, regex.error, IndexError) as e:
            return PostProcessValidation(valid=False, error=str(e))
        return PostProcessValidation(valid=True)
