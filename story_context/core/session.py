"""
Session state.

The whole session is one immutable ``SessionState``. Every change is an
updater function from the previous state to a new one, applied by
``SessionStore.update``, which then notifies subscribers. There is a
single writer; callers serialize their own updates.
"""

import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Callable, List, Optional, Tuple

from story_context.core import history
from story_context.logger import get_logger
from story_context.storage.models import SessionSave, TokenUsageTotals, Turn, UsageRecord

log = get_logger(__name__)


@dataclass(frozen=True)
class SessionState:
    """Snapshot of a session."""
    session_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    name: str = ""
    turns: Tuple[Turn, ...] = ()
    token_usage: TokenUsageTotals = field(default_factory=TokenUsageTotals)
    estimated_cost: float = 0.0
    sunk_usage_history: Tuple[UsageRecord, ...] = ()
    story_preview: str = ""
    kb_hash: Optional[str] = None

    def find(self, turn_id: str) -> Optional[Turn]:
        for turn in self.turns:
            if turn.id == turn_id:
                return turn
        return None


Updater = Callable[[SessionState], SessionState]
Subscriber = Callable[[SessionState], None]


class SessionStore:
    """Holds the current SessionState and publishes every new one."""

    def __init__(self, initial: Optional[SessionState] = None):
        self._state = initial or SessionState()
        self._subscribers: List[Subscriber] = []

    @property
    def state(self) -> SessionState:
        return self._state

    def subscribe(self, subscriber: Subscriber) -> Callable[[], None]:
        """Register ``subscriber(state)``; returns an unsubscribe function."""
        self._subscribers.append(subscriber)

        def unsubscribe() -> None:
            if subscriber in self._subscribers:
                self._subscribers.remove(subscriber)

        return unsubscribe

    def update(self, updater: Updater) -> SessionState:
        """Apply ``updater`` and notify subscribers if the state changed."""
        new_state = updater(self._state)
        if new_state is self._state:
            return new_state
        self._state = new_state
        for subscriber in list(self._subscribers):
            subscriber(new_state)
        return new_state

    # Turn operations

    def append_turn(self, turn: Turn) -> SessionState:
        return self.update(lambda s: replace(s, turns=s.turns + (turn,)))

    def replace_turn(self, turn: Turn) -> SessionState:
        """Swap in a new version of an existing turn (matched by id)."""
        def updater(s: SessionState) -> SessionState:
            turns = tuple(turn if t.id == turn.id else t for t in s.turns)
            return replace(s, turns=turns)
        return self.update(updater)

    def _remove(self, remover, turn_id: str) -> List[Turn]:
        removed: List[Turn] = []

        def updater(s: SessionState) -> SessionState:
            remaining, gone = remover(s.turns, turn_id)
            if not gone:
                return s
            removed.extend(gone)
            return replace(
                s,
                turns=tuple(remaining),
                sunk_usage_history=s.sunk_usage_history + tuple(history.sunk_usage(gone)),
            )

        self.update(updater)
        return removed

    def delete_turn(self, turn_id: str) -> List[Turn]:
        """Delete one turn. Its usage moves to the sunk history."""
        return self._remove(history.delete_turn, turn_id)

    def delete_from(self, turn_id: str) -> List[Turn]:
        """Delete a turn and everything after it."""
        return self._remove(history.delete_from, turn_id)

    def rewind_to(self, turn_id: str) -> List[Turn]:
        """Rewind to just before ``turn_id``."""
        return self._remove(history.rewind_to, turn_id)

    def toggle_ref_only(self, turn_id: str) -> SessionState:
        return self.update(lambda s: replace(s, turns=tuple(history.toggle_ref_only(s.turns, turn_id))))

    def apply_correction(self, current_turn_id: str, user_turn_id: Optional[str] = None) -> Optional[str]:
        """Retire the story turn replaced by a correction; returns its intent."""
        corrected: List[Optional[str]] = [None]

        def updater(s: SessionState) -> SessionState:
            turns, intent = history.apply_correction(s.turns, current_turn_id, user_turn_id)
            corrected[0] = intent
            return replace(s, turns=tuple(turns))

        self.update(updater)
        return corrected[0]

    def record_usage(self, usage: UsageRecord, cost: float) -> SessionState:
        return self.update(lambda s: replace(
            s,
            token_usage=s.token_usage.add(usage),
            estimated_cost=s.estimated_cost + cost,
        ))

    # Snapshots

    def export_session(self, name: Optional[str] = None) -> SessionSave:
        """Serializable snapshot of the current state."""
        s = self._state
        return SessionSave(
            id=s.session_id,
            name=name or s.name,
            timestamp=datetime.now(),
            turns=list(s.turns),
            token_usage=s.token_usage,
            estimated_cost=s.estimated_cost,
            sunk_usage_history=list(s.sunk_usage_history),
            story_preview=s.story_preview,
            kb_hash=s.kb_hash,
        )

    def load_session(self, save: SessionSave) -> SessionState:
        """Replace the current state with a saved session."""
        log.info("loading session %s (%d turns)", save.id, len(save.turns))
        return self.update(lambda _: SessionState(
            session_id=save.id or uuid.uuid4().hex,
            name=save.name,
            turns=tuple(save.turns),
            token_usage=save.token_usage,
            estimated_cost=save.estimated_cost,
            sunk_usage_history=tuple(save.sunk_usage_history),
            story_preview=save.story_preview,
            kb_hash=save.kb_hash,
        ))
