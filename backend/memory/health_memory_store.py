from __future__ import annotations

import sqlite3
import uuid
from typing import Any

from .database import SQLiteMemoryDB
from .memory_policy_guard import MemoryPolicyError
from .models import Confidence, MemoryCandidate, MemoryItem, MemoryType
from .time_utils import to_iso, utc_now

CANDIDATE_STATUSES = {"pending", "approved", "dismissed"}


def _row_to_candidate(row: sqlite3.Row) -> dict[str, Any]:
    return {
        "id": row["id"],
        "user_id": row["user_id"],
        "episode_id": row["episode_id"],
        "type": row["type"],
        "label": row["label"],
        "value": row["value"],
        "confidence": row["confidence"],
        "reason": row["reason"],
        "payload_hash": row["payload_hash"],
        "status": row["status"],
        "created_at": row["created_at"],
        "decided_at": row["decided_at"],
    }


def _row_to_item(row: sqlite3.Row) -> MemoryItem:
    return MemoryItem(
        id=row["id"],
        user_id=row["user_id"],
        type=MemoryType(row["type"]),
        label=row["label"],
        value=row["value"],
        confidence=Confidence(row["confidence"]),
        source=row["source"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
        source_episode_id=row["source_episode_id"],
    )


class HealthMemoryStore:
    def __init__(self, db: SQLiteMemoryDB) -> None:
        self._db = db

    def stage_candidate(
        self,
        *,
        user_id: str,
        episode_id: str | None,
        candidate: MemoryCandidate,
        payload_hash: str,
    ) -> dict[str, Any]:
        now = to_iso(utc_now())
        with self._db.connection() as conn:
            existing = conn.execute(
                """
                SELECT *
                FROM memory_candidates
                WHERE user_id = ? AND payload_hash = ? AND status = 'pending'
                LIMIT 1
                """,
                (user_id, payload_hash),
            ).fetchone()
            if existing:
                return _row_to_candidate(existing)
            conn.execute(
                """
                INSERT INTO memory_candidates (
                  id, user_id, episode_id, type, label, value, confidence, reason,
                  payload_hash, status, created_at, decided_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, 'pending', ?, NULL)
                """,
                (
                    candidate.id,
                    user_id,
                    episode_id,
                    candidate.type.value,
                    candidate.label,
                    candidate.value,
                    candidate.confidence.value,
                    candidate.reason,
                    payload_hash,
                    now,
                ),
            )
            row = conn.execute("SELECT * FROM memory_candidates WHERE id = ?", (candidate.id,)).fetchone()
        return _row_to_candidate(row)

    def get_candidate(self, candidate_id: str) -> dict[str, Any] | None:
        with self._db.connection() as conn:
            row = conn.execute("SELECT * FROM memory_candidates WHERE id = ?", (candidate_id,)).fetchone()
        return _row_to_candidate(row) if row else None

    def list_candidates(self, user_id: str, status: str = "pending") -> list[dict[str, Any]]:
        with self._db.connection() as conn:
            rows = conn.execute(
                """
                SELECT *
                FROM memory_candidates
                WHERE user_id = ? AND status = ?
                ORDER BY created_at ASC
                """,
                (user_id, status),
            ).fetchall()
        return [_row_to_candidate(row) for row in rows]

    def approve_candidate(self, candidate: dict[str, Any]) -> MemoryItem:
        now = to_iso(utc_now())
        item = MemoryItem(
            id=f"mem_{uuid.uuid4().hex}",
            user_id=candidate["user_id"],
            type=MemoryType(candidate["type"]),
            label=candidate["label"],
            value=candidate["value"],
            confidence=Confidence(candidate["confidence"]),
            source="conversation",
            created_at=now,
            updated_at=now,
            source_episode_id=candidate["episode_id"],
        )
        with self._db.connection() as conn:
            updated = conn.execute(
                """
                UPDATE memory_candidates
                SET status = 'approved', decided_at = ?
                WHERE id = ? AND status = 'pending'
                """,
                (now, candidate["id"]),
            ).rowcount
            if updated != 1:
                raise MemoryPolicyError("Memory candidate was already decided.")
            conn.execute(
                """
                INSERT INTO memory_items (
                  id, user_id, type, label, value, confidence, source, source_episode_id, created_at, updated_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    item.id,
                    item.user_id,
                    item.type.value,
                    item.label,
                    item.value,
                    item.confidence.value,
                    item.source,
                    item.source_episode_id,
                    now,
                    now,
                ),
            )
        return item

    def dismiss_candidate(self, candidate_id: str) -> bool:
        with self._db.connection() as conn:
            updated = conn.execute(
                """
                UPDATE memory_candidates
                SET status = 'dismissed', decided_at = ?
                WHERE id = ? AND status = 'pending'
                """,
                (to_iso(utc_now()), candidate_id),
            ).rowcount
        return updated == 1

    def list_items(self, user_id: str, memory_type: MemoryType | None = None) -> list[MemoryItem]:
        sql = "SELECT * FROM memory_items WHERE user_id = ?"
        params: list[Any] = [user_id]
        if memory_type is not None:
            sql += " AND type = ?"
            params.append(memory_type.value)
        sql += " ORDER BY created_at ASC"
        with self._db.connection() as conn:
            rows = conn.execute(sql, tuple(params)).fetchall()
        return [_row_to_item(row) for row in rows]

    def delete_item(self, user_id: str, item_id: str) -> bool:
        with self._db.connection() as conn:
            deleted = conn.execute(
                "DELETE FROM memory_items WHERE id = ? AND user_id = ?",
                (item_id, user_id),
            ).rowcount
        return deleted == 1
