from __future__ import annotations

import json
import sqlite3
import threading
import uuid
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator

from .time_utils import to_iso, utc_now


class SQLiteMemoryDB:
    def __init__(self, db_path: str) -> None:
        self._path = Path(db_path).expanduser().resolve()
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        self._init_schema()

    @property
    def path(self) -> str:
        return str(self._path)

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self._path), timeout=30.0, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    @contextmanager
    def connection(self) -> Iterator[sqlite3.Connection]:
        conn = self._connect()
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _init_schema(self) -> None:
        with self._lock, self.connection() as conn:
            conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS episodes (
                  id TEXT PRIMARY KEY,
                  user_id TEXT NOT NULL,
                  title TEXT NOT NULL,
                  for_whom TEXT NOT NULL,
                  age REAL,
                  age_group TEXT,
                  relationship TEXT,
                  triage_level TEXT,
                  escalated INTEGER NOT NULL DEFAULT 0,
                  is_active INTEGER NOT NULL DEFAULT 1,
                  last_message_snippet TEXT NOT NULL,
                  message_count INTEGER NOT NULL DEFAULT 0,
                  created_at TEXT NOT NULL,
                  updated_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS messages (
                  seq INTEGER PRIMARY KEY AUTOINCREMENT,
                  id TEXT UNIQUE NOT NULL,
                  episode_id TEXT NOT NULL REFERENCES episodes(id) ON DELETE CASCADE,
                  role TEXT NOT NULL,
                  text TEXT NOT NULL,
                  created_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS feedback_entries (
                  seq INTEGER PRIMARY KEY AUTOINCREMENT,
                  id TEXT UNIQUE NOT NULL,
                  user_id TEXT NOT NULL,
                  episode_id TEXT NOT NULL,
                  message_id TEXT NOT NULL,
                  rating TEXT NOT NULL,
                  reason TEXT,
                  custom_reason TEXT,
                  message_snippet TEXT,
                  created_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS rated_messages (
                  user_id TEXT NOT NULL,
                  message_id TEXT NOT NULL,
                  rated_at TEXT NOT NULL,
                  PRIMARY KEY (user_id, message_id)
                );

                CREATE TABLE IF NOT EXISTS memory_candidates (
                  id TEXT PRIMARY KEY,
                  user_id TEXT NOT NULL,
                  episode_id TEXT,
                  type TEXT NOT NULL,
                  label TEXT NOT NULL,
                  value TEXT NOT NULL,
                  confidence TEXT NOT NULL,
                  reason TEXT,
                  payload_hash TEXT NOT NULL,
                  status TEXT NOT NULL DEFAULT 'pending',
                  created_at TEXT NOT NULL,
                  decided_at TEXT
                );

                CREATE TABLE IF NOT EXISTS memory_items (
                  id TEXT PRIMARY KEY,
                  user_id TEXT NOT NULL,
                  type TEXT NOT NULL,
                  label TEXT NOT NULL,
                  value TEXT NOT NULL,
                  confidence TEXT NOT NULL,
                  source TEXT NOT NULL,
                  source_episode_id TEXT,
                  created_at TEXT NOT NULL,
                  updated_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS policy_events (
                  id TEXT PRIMARY KEY,
                  user_id TEXT,
                  session_key TEXT,
                  episode_id TEXT,
                  event_type TEXT NOT NULL,
                  details_json TEXT NOT NULL,
                  created_at TEXT NOT NULL
                );

                CREATE INDEX IF NOT EXISTS idx_episodes_user_updated
                  ON episodes(user_id, updated_at DESC);
                CREATE INDEX IF NOT EXISTS idx_messages_episode_seq
                  ON messages(episode_id, seq);
                CREATE INDEX IF NOT EXISTS idx_feedback_user_episode
                  ON feedback_entries(user_id, episode_id, seq);
                CREATE INDEX IF NOT EXISTS idx_candidates_user_status
                  ON memory_candidates(user_id, status);
                CREATE INDEX IF NOT EXISTS idx_memory_items_user_type
                  ON memory_items(user_id, type);
                """
            )


def insert_policy_event(
    conn: sqlite3.Connection,
    *,
    user_id: str | None,
    session_key: str | None,
    episode_id: str | None,
    event_type: str,
    details: dict[str, Any],
) -> None:
    conn.execute(
        """
        INSERT INTO policy_events (id, user_id, session_key, episode_id, event_type, details_json, created_at)
        VALUES (?, ?, ?, ?, ?, ?, ?)
        """,
        (
            uuid.uuid4().hex,
            user_id,
            session_key,
            episode_id,
            event_type,
            json.dumps(details, sort_keys=True),
            to_iso(utc_now()),
        ),
    )
