"""
Summary compression for archived turns.

Archived model turns are folded into compact delta lines. Every
``block_size`` delta-bearing turns the buffer is sealed into a stable block
that stays byte-identical across calls, so a prefix-matching prompt cache
keeps hitting. The unsealed remainder is returned as leftover text and is
rebuilt on every call.
"""

import json
import re
from dataclasses import dataclass, field
from typing import List, Sequence

from story_context.core.history import is_story_intent
from story_context.core.locales import strip_save_points
from story_context.storage.models import ROLE_MODEL, ROLE_USER, Turn

SUMMARY_BLOCK_SIZE = 10

# e.g. "[Spring, 1024年 3月5日 Tuesday]"
_CALENDAR_RE = re.compile(r"\[\s*[^\]]*\d+年\s*\d+月\d+日[^\]]*\]")
# e.g. "[Day 3, 1024-03-05]"; "[T ...]" markers are handled separately
_ISO_CALENDAR_RE = re.compile(r"\[(?!\s*T\s)[^\]]*\d{3,4}-\d{1,2}-\d{1,2}[^\]]*\]")
_TIME_RE = re.compile(r"\[T\s*([^\]]+)\]")

# Order the log deltas are written in
_DELTA_LOGS = ("inventory_log", "quest_log", "character_log", "world_log")


@dataclass(frozen=True)
class ContextBlock:
    """A user-role block of folded summaries.

    Sealed blocks are never reopened once created.
    """
    text: str
    turn_count: int

    def to_content(self) -> dict:
        return {"role": ROLE_USER, "parts": [{"text": self.text}]}


@dataclass
class SummaryResult:
    """Output of one compression pass."""
    sealed_blocks: List[ContextBlock] = field(default_factory=list)
    leftover_text: str = ""
    leftover_count: int = 0
    header_placed: bool = False


def detail_fields(turn: Turn) -> List[str]:
    """State-delta lines for a model turn.

    Story turns contribute their summary; other intents (system, save)
    contribute their content. Non-empty logs follow as inline JSON lists.
    """
    lines: List[str] = []
    if is_story_intent(turn.intent):
        if turn.summary:
            lines.append(f"summary: {turn.summary}")
    elif turn.content:
        lines.append(f"story: {strip_save_points(turn.content)}")

    for name in _DELTA_LOGS:
        entries = getattr(turn, name)
        if entries:
            lines.append(f"{name}:{json.dumps(list(entries), ensure_ascii=False)}")
    return lines


def extract_time_header(text: str) -> str:
    """Build a date/time header from markers in a turn's raw text.

    Multiple ``[T ...]`` markers collapse into a ``[T start~T end]`` range.
    """
    if not text:
        return ""
    match = _CALENDAR_RE.search(text) or _ISO_CALENDAR_RE.search(text)
    base_header = match.group(0) if match else ""

    times = list(_TIME_RE.finditer(text))
    time_header = ""
    if len(times) > 1:
        start = times[0].group(1).strip()
        end = times[-1].group(1).strip()
        time_header = f"[T {start}~T {end}]"
    elif len(times) == 1:
        time_header = times[0].group(0)

    return " ".join(h for h in (base_header, time_header) if h)


def delta_entry(turn: Turn) -> str:
    """One buffer entry for a model turn, or "" when it carries no state."""
    lines = detail_fields(turn)
    if not lines:
        return ""
    header = extract_time_header(turn.content)
    prefix = f"{header} " if header else ""
    body = "\n".join(lines)
    return f"{prefix}---\n{body}\n---\n"


def compress(
    archived: Sequence[Turn],
    act_header: str,
    block_size: int = SUMMARY_BLOCK_SIZE,
) -> SummaryResult:
    """Fold archived turns into sealed blocks plus a leftover buffer.

    Args:
        archived: Archived turns, oldest first
        act_header: Header prefixed once to the first sealed block
        block_size: Delta-bearing model turns per sealed block

    Returns:
        SummaryResult with ``len(sealed_blocks) == n // block_size`` and
        ``leftover_count == n % block_size`` for n delta-bearing turns
    """
    if block_size <= 0:
        raise ValueError("block_size must be > 0")

    result = SummaryResult()
    if not archived:
        return result

    buffer: List[str] = []
    for turn in archived:
        if turn.role != ROLE_MODEL:
            continue
        entry = delta_entry(turn)
        if not entry:
            continue
        buffer.append(entry)
        if len(buffer) >= block_size:
            result.sealed_blocks.append(ContextBlock(text="".join(buffer), turn_count=len(buffer)))
            buffer = []

    if result.sealed_blocks and act_header:
        first = result.sealed_blocks[0]
        result.sealed_blocks[0] = ContextBlock(
            text=act_header + "\n" + first.text,
            turn_count=first.turn_count,
        )
        result.header_placed = True

    result.leftover_text = "".join(buffer)
    result.leftover_count = len(buffer)
    return result
