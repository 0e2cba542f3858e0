"""
Background auto-save.

Saves never run concurrently. A save requested while another is in flight
sets a pending flag; the running save loops once more with the latest
snapshot instead of starting a second writer.
"""

import asyncio
import inspect
import json
import sqlite3
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Awaitable, Callable, Optional, Union

from story_context.logger import get_logger
from story_context.storage.models import SessionSave
from story_context.storage.repository import CHAT_HISTORY, KeyValueStore

log = get_logger(__name__)

AUTOSAVE_ID = "autosave"
AUTOSAVE_NAME = "AutoSave"

Writer = Callable[[SessionSave], Union[None, Awaitable[None]]]


def store_writer(store: KeyValueStore) -> Writer:
    """Writer that keeps the session under the chat history key."""
    def write(save: SessionSave) -> None:
        store.save(CHAT_HISTORY, save.to_dict())
    return write


def file_writer(directory: str) -> Writer:
    """Writer that writes ``<id>.json`` into ``directory``."""
    def write(save: SessionSave) -> None:
        path = Path(directory)
        path.mkdir(parents=True, exist_ok=True)
        (path / f"{save.id}.json").write_text(
            json.dumps(save.to_dict(), ensure_ascii=False, indent=2), encoding="utf-8"
        )
    return write


class AutoSaveQueue:
    """Coalescing save queue.

    Args:
        snapshot: Returns the current session snapshot
        writer: Persists a snapshot (sync or async)
    """

    def __init__(self, snapshot: Callable[[], SessionSave], writer: Writer):
        self.snapshot = snapshot
        self.writer = writer
        self.saving = False
        self.save_count = 0
        self._pending = False
        self._task: Optional[asyncio.Task] = None

    def request(self) -> Optional[asyncio.Task]:
        """Ask for a save. Returns the task doing the work, if one was started."""
        self._pending = True
        if self.saving:
            return None
        self.saving = True
        self._task = asyncio.get_running_loop().create_task(self._process())
        return self._task

    async def _process(self) -> None:
        try:
            while self._pending:
                # Cleared before the write so a request made during it loops again
                self._pending = False
                await self._perform()
        finally:
            self.saving = False

    async def _perform(self) -> None:
        current = self.snapshot()
        if not current.turns:
            return
        save = replace(current, id=AUTOSAVE_ID, name=AUTOSAVE_NAME, timestamp=datetime.now())
        try:
            result = self.writer(save)
            if inspect.isawaitable(result):
                await result
            self.save_count += 1
            log.info("auto-save complete (%d turns)", len(save.turns))
        except (OSError, ValueError, sqlite3.Error) as e:
            log.error("auto-save failed: %s", e)

    async def wait(self) -> None:
        """Wait for the in-flight save loop, if any."""
        if self._task is not None:
            await self._task
