"""
Repository pattern for data access.

Defines the key-value persistence port the engine components depend on,
an in-memory and a SQLite implementation of it, and the append-only usage
ledger.
"""

import json
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, List, Optional

from .db import DEFAULT_DB_PATH, get_connection
from .models import UsageEvent

# Persisted keys
KB_CACHE_NAME = "kb_cache_name"
KB_CACHE_HASH = "kb_cache_hash"
KB_CACHE_TOKENS = "kb_cache_tokens"
KB_CACHE_EXPIRE = "kb_cache_expire"
KB_FILE_URI = "kb_file_uri"
USAGE_STATS = "usage_stats"
ESTIMATED_COST = "estimated_cost"
STORAGE_COST_ACC = "storage_cost_acc"
HISTORY_STORAGE_COST_ACC = "history_storage_cost_acc"
SUNK_USAGE_HISTORY = "sunk_usage_history"
CHAT_HISTORY = "chat_history"

CACHE_KEYS = (KB_CACHE_NAME, KB_CACHE_HASH, KB_CACHE_TOKENS, KB_CACHE_EXPIRE, KB_FILE_URI)


class KeyValueStore(ABC):
    """Persistence port: JSON-serializable values under string keys."""

    @abstractmethod
    def load(self, key: str, default: Any = None) -> Any:
        ...

    @abstractmethod
    def save(self, key: str, value: Any) -> None:
        ...

    @abstractmethod
    def delete(self, key: str) -> None:
        ...

    def delete_many(self, keys) -> None:
        for key in keys:
            self.delete(key)


class MemoryStore(KeyValueStore):
    """Dict-backed store for tests and ephemeral sessions."""

    def __init__(self, initial: Optional[Dict[str, Any]] = None):
        self._data: Dict[str, Any] = {}
        for key, value in (initial or {}).items():
            self.save(key, value)

    def load(self, key: str, default: Any = None) -> Any:
        if key not in self._data:
            return default
        return json.loads(self._data[key])

    def save(self, key: str, value: Any) -> None:
        # Round-trip through JSON so callers cannot share mutable state
        self._data[key] = json.dumps(value, ensure_ascii=False)

    def delete(self, key: str) -> None:
        self._data.pop(key, None)

    def keys(self) -> List[str]:
        return sorted(self._data)


class SqliteKeyValueStore(KeyValueStore):
    """Key-value store kept in the ``kv_store`` table.

    Values are written as JSON text; a save replaces the previous value.
    """

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        """Initialize the store with a database path.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = db_path
        initialize_schema(db_path)

    def load(self, key: str, default: Any = None) -> Any:
        conn = get_connection(self.db_path)
        try:
            row = conn.execute("SELECT value FROM kv_store WHERE key = ?", (key,)).fetchone()
        finally:
            conn.close()
        if row is None:
            return default
        return json.loads(row[0])

    def save(self, key: str, value: Any) -> None:
        conn = get_connection(self.db_path)
        try:
            conn.execute(
                """
                INSERT INTO kv_store (key, value, updated_at) VALUES (?, ?, ?)
                ON CONFLICT(key) DO UPDATE SET value = excluded.value,
                                               updated_at = excluded.updated_at
                """,
                (key, json.dumps(value, ensure_ascii=False), datetime.now().isoformat()),
            )
            conn.commit()
        finally:
            conn.close()

    def delete(self, key: str) -> None:
        conn = get_connection(self.db_path)
        try:
            conn.execute("DELETE FROM kv_store WHERE key = ?", (key,))
            conn.commit()
        finally:
            conn.close()


def initialize_schema(db_path: str = DEFAULT_DB_PATH) -> None:
    """Create the key-value and usage ledger tables if they don't exist.

    ``usage_event`` is an append-only ledger: no UPDATE or DELETE is ever
    performed on it, so historical spend never decreases.

    Args:
        db_path: Path to SQLite database file
    """
    conn = get_connection(db_path)
    try:
        conn.execute("""
            CREATE TABLE IF NOT EXISTS kv_store (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        """)
        conn.execute("""
            CREATE TABLE IF NOT EXISTS usage_event (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                timestamp TEXT NOT NULL,
                session_id TEXT NOT NULL,
                model TEXT NOT NULL,
                prompt_tokens INTEGER NOT NULL,
                cached_tokens INTEGER NOT NULL,
                completion_tokens INTEGER NOT NULL,
                estimated_cost REAL NOT NULL,
                turn_id TEXT
            )
        """)
        conn.commit()
    finally:
        conn.close()


def insert_usage_event(event: UsageEvent, db_path: str = DEFAULT_DB_PATH) -> None:
    """Append a single usage event to the ledger.

    Args:
        event: The usage event to record
        db_path: Path to SQLite database file
    """
    conn = get_connection(db_path)
    try:
        conn.execute("""
            INSERT INTO usage_event
            (timestamp, session_id, model, prompt_tokens, cached_tokens,
             completion_tokens, estimated_cost, turn_id)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
        """, (
            event.timestamp.isoformat(),
            event.session_id,
            event.model,
            event.prompt_tokens,
            event.cached_tokens,
            event.completion_tokens,
            event.estimated_cost,
            event.turn_id,
        ))
        conn.commit()
    finally:
        conn.close()


def fetch_usage_events(
    session_id: Optional[str] = None,
    model: Optional[str] = None,
    limit: int = 100,
    db_path: str = DEFAULT_DB_PATH,
) -> List[UsageEvent]:
    """Fetch recent usage events, optionally filtered by session and model.

    Args:
        session_id: Optional filter for a specific session
        model: Optional filter for a specific model
        limit: Maximum number of events to return
        db_path: Path to SQLite database file

    Returns:
        List of usage events ordered by timestamp (newest first)
    """
    conn = get_connection(db_path)
    try:
        query = """
            SELECT timestamp, session_id, model, prompt_tokens, cached_tokens,
                   completion_tokens, estimated_cost, turn_id
            FROM usage_event
        """
        params: List[Any] = []
        conditions = []
        if session_id:
            conditions.append("session_id = ?")
            params.append(session_id)
        if model:
            conditions.append("model = ?")
            params.append(model)
        if conditions:
            query += " WHERE " + " AND ".join(conditions)
        query += " ORDER BY timestamp DESC, id DESC LIMIT ?"
        params.append(limit)

        cursor = conn.execute(query, params)
        return [
            UsageEvent(
                timestamp=datetime.fromisoformat(row[0]),
                session_id=row[1],
                model=row[2],
                prompt_tokens=row[3],
                cached_tokens=row[4],
                completion_tokens=row[5],
                estimated_cost=row[6],
                turn_id=row[7],
            )
            for row in cursor.fetchall()
        ]
    finally:
        conn.close()


def get_usage_summary(session_id: Optional[str] = None, db_path: str = DEFAULT_DB_PATH) -> Dict[str, float]:
    """Aggregate ledger totals.

    Returns:
        Dictionary with total_requests, total_cost, prompt/cached/completion tokens
    """
    conn = get_connection(db_path)
    try:
        query = """
            SELECT COUNT(*), SUM(estimated_cost), SUM(prompt_tokens),
                   SUM(cached_tokens), SUM(completion_tokens)
            FROM usage_event
        """
        params: List[Any] = []
        if session_id:
            query += " WHERE session_id = ?"
            params.append(session_id)
        row = conn.execute(query, params).fetchone()
        return {
            "total_requests": row[0] or 0,
            "total_cost": float(row[1] or 0),
            "prompt_tokens": row[2] or 0,
            "cached_tokens": row[3] or 0,
            "completion_tokens": row[4] or 0,
        }
    finally:
        conn.close()
