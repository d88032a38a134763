from __future__ import annotations

import logging
import sqlite3
import uuid
from typing import Any

from .database import SQLiteMemoryDB, insert_policy_event
from .episode_titles import generate_episode_title
from .models import (
    AgeGroup,
    Episode,
    ExternalTriageLevel,
    ForWhom,
    InvalidInput,
    Message,
    NotFound,
    Role,
    SessionContext,
    age_group_for,
    coerce_enum,
)
from .time_utils import to_iso, utc_now

logger = logging.getLogger(__name__)

SNIPPET_LENGTH = 100
MAX_AGE_YEARS = 130

_UPDATABLE_FIELDS = {"title", "triage_level", "relationship", "is_active", "escalated"}


def _parse_age(age: Any) -> float | None:
    if age is None or (isinstance(age, str) and not age.strip()):
        return None
    if isinstance(age, bool):
        raise InvalidInput("Age must be a number of years.")
    try:
        parsed = float(age)
    except (TypeError, ValueError):
        raise InvalidInput("Age must be a number of years.") from None
    if parsed != parsed or parsed < 0 or parsed > MAX_AGE_YEARS:
        raise InvalidInput(f"Age must be between 0 and {MAX_AGE_YEARS} years.")
    return parsed


def _row_to_episode(row: sqlite3.Row) -> Episode:
    return Episode(
        id=row["id"],
        user_id=row["user_id"],
        title=row["title"],
        for_whom=ForWhom(row["for_whom"]),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
        last_message_snippet=row["last_message_snippet"],
        message_count=row["message_count"],
        is_active=bool(row["is_active"]),
        age=row["age"],
        age_group=AgeGroup(row["age_group"]) if row["age_group"] else None,
        relationship=row["relationship"],
        triage_level=ExternalTriageLevel(row["triage_level"]) if row["triage_level"] else None,
        escalated=bool(row["escalated"]),
    )


def _row_to_message(row: sqlite3.Row) -> Message:
    return Message(
        id=row["id"],
        episode_id=row["episode_id"],
        role=Role(row["role"]),
        text=row["text"],
        created_at=row["created_at"],
        seq=row["seq"],
    )


class EpisodeStore:
    def __init__(self, db: SQLiteMemoryDB) -> None:
        self._db = db

    def start_episode(
        self,
        session: SessionContext,
        *,
        symptom_text: str,
        for_whom: ForWhom | str = ForWhom.SELF,
        age: Any = None,
        relationship: str | None = None,
    ) -> Episode:
        text = (symptom_text or "").strip()
        if not text:
            raise InvalidInput("Please describe what is going on before starting a conversation.")
        subject = coerce_enum(ForWhom, for_whom, "for_whom")
        parsed_age = _parse_age(age)
        relationship = (relationship or "").strip() or None
        if subject == ForWhom.FAMILY_MEMBER:
            if relationship is None:
                raise InvalidInput("Relationship is required when asking for a family member.")
            if parsed_age is None:
                raise InvalidInput("Age is required when asking for a family member.")

        age_group = age_group_for(parsed_age)
        now = to_iso(utc_now())
        episode = Episode(
            id=f"episode_{uuid.uuid4().hex}",
            user_id=session.user_id,
            title=generate_episode_title(text, subject, age_group, relationship),
            for_whom=subject,
            created_at=now,
            updated_at=now,
            last_message_snippet=text[:SNIPPET_LENGTH],
            message_count=1,
            is_active=True,
            age=parsed_age,
            age_group=age_group,
            relationship=relationship,
        )
        with self._db.connection() as conn:
            conn.execute(
                """
                INSERT INTO episodes (
                  id, user_id, title, for_whom, age, age_group, relationship, triage_level,
                  escalated, is_active, last_message_snippet, message_count, created_at, updated_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, NULL, 0, 1, ?, 1, ?, ?)
                """,
                (
                    episode.id,
                    episode.user_id,
                    episode.title,
                    subject.value,
                    parsed_age,
                    age_group.value if age_group else None,
                    relationship,
                    episode.last_message_snippet,
                    now,
                    now,
                ),
            )
            self._insert_message(conn, episode.id, Role.USER, text, now)
        session.active_episode_id = episode.id
        logger.info("episode started id=%s for_whom=%s title=%s", episode.id, subject.value, episode.title)
        return episode

    def _insert_message(self, conn: sqlite3.Connection, episode_id: str, role: Role, text: str, now: str) -> Message:
        message_id = f"msg_{uuid.uuid4().hex}"
        cursor = conn.execute(
            """
            INSERT INTO messages (id, episode_id, role, text, created_at)
            VALUES (?, ?, ?, ?, ?)
            """,
            (message_id, episode_id, role.value, text, now),
        )
        return Message(
            id=message_id,
            episode_id=episode_id,
            role=role,
            text=text,
            created_at=now,
            seq=cursor.lastrowid or 0,
        )

    def _require_row(self, conn: sqlite3.Connection, session: SessionContext, episode_id: str) -> sqlite3.Row:
        row = conn.execute(
            "SELECT * FROM episodes WHERE id = ? AND user_id = ?",
            (episode_id, session.user_id),
        ).fetchone()
        if not row:
            raise NotFound(f"Episode not found: {episode_id}")
        return row

    def add_message(self, session: SessionContext, episode_id: str, role: Role | str, text: str) -> Message:
        speaker = coerce_enum(Role, role, "role")
        body = (text or "").strip()
        if not body:
            raise InvalidInput("Message text cannot be empty.")
        now = to_iso(utc_now())
        with self._db.connection() as conn:
            self._require_row(conn, session, episode_id)
            message = self._insert_message(conn, episode_id, speaker, body, now)
            conn.execute(
                """
                UPDATE episodes
                SET message_count = message_count + 1,
                    last_message_snippet = ?,
                    updated_at = ?
                WHERE id = ?
                """,
                (body[:SNIPPET_LENGTH], now, episode_id),
            )
        return message

    def update_episode(self, session: SessionContext, episode_id: str, **fields: Any) -> Episode:
        unknown = sorted(set(fields) - _UPDATABLE_FIELDS)
        if unknown:
            raise InvalidInput(f"Unsupported episode fields: {', '.join(unknown)}")

        columns: dict[str, Any] = {}
        if "title" in fields:
            title = str(fields["title"] or "").strip()
            if not title:
                raise InvalidInput("Title cannot be empty.")
            columns["title"] = title
        if "triage_level" in fields:
            level = fields["triage_level"]
            columns["triage_level"] = (
                coerce_enum(ExternalTriageLevel, level, "triage_level").value if level is not None else None
            )
        if "relationship" in fields:
            columns["relationship"] = (str(fields["relationship"] or "").strip() or None)
        if "is_active" in fields:
            columns["is_active"] = 1 if fields["is_active"] else 0
        if "escalated" in fields:
            columns["escalated"] = 1 if fields["escalated"] else 0

        now = to_iso(utc_now())
        columns["updated_at"] = now
        assignments = ", ".join(f"{column} = ?" for column in columns)
        with self._db.connection() as conn:
            self._require_row(conn, session, episode_id)
            conn.execute(
                f"UPDATE episodes SET {assignments} WHERE id = ?",
                (*columns.values(), episode_id),
            )
            return _row_to_episode(self._require_row(conn, session, episode_id))

    def set_triage_level(
        self, session: SessionContext, episode_id: str, level: ExternalTriageLevel | str
    ) -> Episode:
        return self.update_episode(session, episode_id, triage_level=level)

    def record_escalation(
        self,
        session: SessionContext,
        episode_id: str,
        text: str,
        *,
        event_type: str,
        details: dict[str, Any],
    ) -> tuple[Message, Episode]:
        """Write the escalation reply, the emergency flag and its audit event together.

        All three land in one transaction, so a failure leaves the episode as
        it was before the turn's assistant reply.
        """
        now = to_iso(utc_now())
        with self._db.connection() as conn:
            self._require_row(conn, session, episode_id)
            message = self._insert_message(conn, episode_id, Role.ASSISTANT, text, now)
            conn.execute(
                """
                UPDATE episodes
                SET message_count = message_count + 1,
                    last_message_snippet = ?,
                    triage_level = ?,
                    escalated = 1,
                    updated_at = ?
                WHERE id = ?
                """,
                (text[:SNIPPET_LENGTH], ExternalTriageLevel.EMERGENCY.value, now, episode_id),
            )
            insert_policy_event(
                conn,
                user_id=session.user_id,
                session_key=session.session_key,
                episode_id=episode_id,
                event_type=event_type,
                details=details,
            )
            episode = _row_to_episode(self._require_row(conn, session, episode_id))
        return message, episode

    def close_episode(self, session: SessionContext, episode_id: str) -> Episode:
        episode = self.update_episode(session, episode_id, is_active=False)
        if session.active_episode_id == episode_id:
            session.active_episode_id = None
        logger.info("episode closed id=%s", episode_id)
        return episode

    def resume_episode(self, session: SessionContext, episode_id: str) -> Episode | None:
        if self.get_episode(session, episode_id) is None:
            # UI retries may race a delete; resuming nothing is fine.
            return None
        episode = self.update_episode(session, episode_id, is_active=True)
        session.active_episode_id = episode_id
        return episode

    def delete_episode(self, session: SessionContext, episode_id: str) -> None:
        with self._db.connection() as conn:
            self._require_row(conn, session, episode_id)
            conn.execute("DELETE FROM episodes WHERE id = ?", (episode_id,))
        if session.active_episode_id == episode_id:
            session.active_episode_id = None
        logger.info("episode deleted id=%s", episode_id)

    def get_episode(self, session: SessionContext, episode_id: str) -> Episode | None:
        with self._db.connection() as conn:
            row = conn.execute(
                "SELECT * FROM episodes WHERE id = ? AND user_id = ?",
                (episode_id, session.user_id),
            ).fetchone()
        return _row_to_episode(row) if row else None

    def get_messages(self, session: SessionContext, episode_id: str) -> list[Message]:
        with self._db.connection() as conn:
            rows = conn.execute(
                """
                SELECT m.seq, m.id, m.episode_id, m.role, m.text, m.created_at
                FROM messages AS m
                JOIN episodes AS e ON e.id = m.episode_id
                WHERE m.episode_id = ? AND e.user_id = ?
                ORDER BY m.seq ASC
                """,
                (episode_id, session.user_id),
            ).fetchall()
        return [_row_to_message(row) for row in rows]

    def get_active_episode(self, session: SessionContext) -> Episode | None:
        if not session.active_episode_id:
            return None
        return self.get_episode(session, session.active_episode_id)

    def get_all_episodes(self, session: SessionContext) -> list[Episode]:
        with self._db.connection() as conn:
            rows = conn.execute(
                "SELECT * FROM episodes WHERE user_id = ? ORDER BY created_at DESC, rowid DESC",
                (session.user_id,),
            ).fetchall()
        return [_row_to_episode(row) for row in rows]

    def get_recent_episodes(self, session: SessionContext, limit: int = 10) -> list[Episode]:
        with self._db.connection() as conn:
            rows = conn.execute(
                """
                SELECT *
                FROM episodes
                WHERE user_id = ?
                ORDER BY updated_at DESC, rowid DESC
                LIMIT ?
                """,
                (session.user_id, max(1, int(limit))),
            ).fetchall()
        return [_row_to_episode(row) for row in rows]
