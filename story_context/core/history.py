"""
History filtering and windowing.

Selects the turns eligible for context, splits them into archived and
recent halves, and implements the history edits (correction, rewind,
delete) as pure functions over turn lists.
"""

from enum import Enum
from typing import Callable, List, Optional, Sequence, Tuple

from story_context.logger import get_logger
from story_context.storage.models import ROLE_MODEL, Turn, UsageRecord

log = get_logger(__name__)


class ContextMode(Enum):
    """How much raw history is sent to the model."""
    SMART = "smart"
    FULL = "full"
    SUMMARIZED = "summarized"


# Number of trailing turns kept verbatim per mode
RECENT_WINDOWS = {
    ContextMode.SMART: 20,
    ContextMode.SUMMARIZED: 2,
}


class Intent:
    """Turn intents understood by the engine."""
    ACTION = "action"
    FAST_FORWARD = "fast_forward"
    SYSTEM = "system"
    SAVE = "save"
    CONTINUE = "continue"


STORY_INTENTS = frozenset({Intent.ACTION, Intent.CONTINUE, Intent.FAST_FORWARD})


def is_story_intent(intent: Optional[str]) -> bool:
    return intent in STORY_INTENTS


def default_filter(turn: Turn) -> bool:
    """Keep turns that are not reference-only, plus any carrying a tool response."""
    return not turn.is_ref_only or turn.has_function_response


def filter_history(
    turns: Sequence[Turn],
    predicate: Optional[Callable[[Turn], bool]] = None,
) -> List[Turn]:
    """Return the turns eligible for context, in order.

    Reference-only turns are dropped unless they carry a function response,
    so tool call/response pairs stay intact.
    """
    keep = predicate or default_filter
    return [t for t in turns if keep(t)]


def split_index(count: int, mode: ContextMode, windows: Optional[dict] = None) -> int:
    """Index at which the filtered history splits into archived and recent."""
    if mode == ContextMode.FULL:
        return 0
    window = (windows or RECENT_WINDOWS)[mode]
    return max(0, count - window)


def split_window(
    turns: Sequence[Turn],
    mode: ContextMode,
    windows: Optional[dict] = None,
) -> Tuple[List[Turn], List[Turn]]:
    """Split filtered turns into ``(archived, recent)``.

    Args:
        turns: Filtered turns, oldest first
        mode: Context mode deciding the recent window
        windows: Optional per-mode window overrides

    Returns:
        Tuple of archived turns and recent turns
    """
    index = split_index(len(turns), mode, windows)
    return list(turns[:index]), list(turns[index:])


def apply_correction(
    turns: Sequence[Turn],
    current_turn_id: str,
    user_turn_id: Optional[str] = None,
) -> Tuple[List[Turn], Optional[str]]:
    """Retire the story turn a correction replaces.

    Searches backward from just before ``current_turn_id`` for the latest
    model turn that is not reference-only and has a story intent, and marks
    it reference-only. The user turn that prompted the correction is marked
    reference-only as well. Nothing is deleted.

    Args:
        turns: Full turn list
        current_turn_id: The correcting model turn (excluded from the search)
        user_turn_id: The user turn paired with the correcting turn

    Returns:
        Updated turn list and the intent of the corrected turn (None if no
        eligible turn was found)
    """
    updated = list(turns)
    start = len(updated) - 1
    for i, turn in enumerate(updated):
        if turn.id == current_turn_id:
            start = i - 1
            break

    corrected_intent = None
    for i in range(start, -1, -1):
        turn = updated[i]
        if turn.role == ROLE_MODEL and not turn.is_ref_only and is_story_intent(turn.intent):
            updated[i] = turn.evolve(is_ref_only=True)
            corrected_intent = turn.intent
            log.info("correction retired turn %s (intent=%s)", turn.id, turn.intent)
            break

    if user_turn_id is not None:
        for i, turn in enumerate(updated):
            if turn.id == user_turn_id:
                updated[i] = turn.evolve(is_ref_only=True)
                break

    return updated, corrected_intent


def _index_of(turns: Sequence[Turn], turn_id: str) -> int:
    for i, turn in enumerate(turns):
        if turn.id == turn_id:
            return i
    return -1


def delete_turn(turns: Sequence[Turn], turn_id: str) -> Tuple[List[Turn], List[Turn]]:
    """Remove one turn. Returns ``(remaining, removed)``."""
    index = _index_of(turns, turn_id)
    if index == -1:
        return list(turns), []
    return list(turns[:index]) + list(turns[index + 1:]), [turns[index]]


def delete_from(turns: Sequence[Turn], turn_id: str) -> Tuple[List[Turn], List[Turn]]:
    """Remove a turn and everything after it. Returns ``(remaining, removed)``."""
    index = _index_of(turns, turn_id)
    if index == -1:
        return list(turns), []
    return list(turns[:index]), list(turns[index:])


def rewind_to(turns: Sequence[Turn], turn_id: str) -> Tuple[List[Turn], List[Turn]]:
    """Rewind history to just before ``turn_id``."""
    remaining, removed = delete_from(turns, turn_id)
    if removed:
        log.info("rewound history before %s (removed %d turns)", turn_id, len(removed))
    return remaining, removed


def toggle_ref_only(turns: Sequence[Turn], turn_id: str) -> List[Turn]:
    """Flip a turn's reference-only flag and mark the change as manual."""
    updated = list(turns)
    index = _index_of(updated, turn_id)
    if index != -1:
        turn = updated[index]
        updated[index] = turn.evolve(is_ref_only=not turn.is_ref_only, is_manual_ref_only=True)
    return updated


def sunk_usage(removed: Sequence[Turn]) -> List[UsageRecord]:
    """Usage records carried by removed model turns."""
    return [t.usage for t in removed if t.role == ROLE_MODEL and t.usage is not None]
