from __future__ import annotations

import json
import logging
import math
import sqlite3
import uuid
from dataclasses import dataclass, field
from typing import Any

from .database import SQLiteMemoryDB
from .models import (
    FEEDBACK_REASON_LABELS,
    FeedbackEntry,
    FeedbackRating,
    FeedbackReason,
    InvalidInput,
    coerce_enum,
)
from .time_utils import to_iso, utc_now

logger = logging.getLogger(__name__)

SNIPPET_LENGTH = 100


@dataclass
class ReasonBreakdown:
    too_long: int = 0
    didnt_answer: int = 0
    felt_unsafe: int = 0
    other: int = 0

    def increment(self, reason: FeedbackReason) -> None:
        if reason is FeedbackReason.TOO_LONG:
            self.too_long += 1
        elif reason is FeedbackReason.DIDNT_ANSWER:
            self.didnt_answer += 1
        elif reason is FeedbackReason.FELT_UNSAFE:
            self.felt_unsafe += 1
        elif reason is FeedbackReason.OTHER:
            self.other += 1
        else:
            raise InvalidInput(f"Unhandled feedback reason: {reason!r}")

    def as_dict(self) -> dict[str, int]:
        return {
            FeedbackReason.TOO_LONG.value: self.too_long,
            FeedbackReason.DIDNT_ANSWER.value: self.didnt_answer,
            FeedbackReason.FELT_UNSAFE.value: self.felt_unsafe,
            FeedbackReason.OTHER.value: self.other,
        }


@dataclass
class FeedbackSummary:
    total_feedback: int
    helpful_count: int
    not_helpful_count: int
    helpful_percentage: int
    reason_breakdown: ReasonBreakdown
    recent_feedback: list[FeedbackEntry] = field(default_factory=list)

    def as_dict(self) -> dict[str, Any]:
        return {
            "totalFeedback": self.total_feedback,
            "helpfulCount": self.helpful_count,
            "notHelpfulCount": self.not_helpful_count,
            "helpfulPercentage": self.helpful_percentage,
            "reasonBreakdown": self.reason_breakdown.as_dict(),
            "recentFeedback": [entry.as_dict() for entry in self.recent_feedback],
        }


def helpful_percentage(helpful: int, total: int) -> int:
    if total <= 0:
        return 0
    # Half-up, not Python's banker's rounding.
    return int(math.floor(helpful / total * 100 + 0.5))


def _row_to_entry(row: sqlite3.Row) -> FeedbackEntry:
    return FeedbackEntry(
        id=row["id"],
        user_id=row["user_id"],
        episode_id=row["episode_id"],
        message_id=row["message_id"],
        rating=FeedbackRating(row["rating"]),
        created_at=row["created_at"],
        reason=FeedbackReason(row["reason"]) if row["reason"] else None,
        custom_reason=row["custom_reason"],
        message_snippet=row["message_snippet"],
    )


class FeedbackStore:
    """Per-message ratings on assistant responses.

    Entries are historical records owned by the user who submitted them and
    keyed by episode and message id. Every read is filtered by that user.
    They carry no foreign key, so deleting an episode leaves its feedback
    intact.
    """

    def __init__(self, db: SQLiteMemoryDB) -> None:
        self._db = db

    def submit_feedback(
        self,
        *,
        user_id: str,
        episode_id: str,
        message_id: str,
        rating: FeedbackRating | str,
        reason: FeedbackReason | str | None = None,
        custom_reason: str | None = None,
        snippet: str | None = None,
    ) -> FeedbackEntry:
        if not (episode_id or "").strip() or not (message_id or "").strip():
            raise InvalidInput("Feedback needs both an episode id and a message id.")
        parsed_rating = coerce_enum(FeedbackRating, rating, "rating")
        parsed_reason = coerce_enum(FeedbackReason, reason, "reason") if reason else None
        entry = FeedbackEntry(
            id=f"fb_{uuid.uuid4().hex}",
            user_id=user_id,
            episode_id=episode_id,
            message_id=message_id,
            rating=parsed_rating,
            created_at=to_iso(utc_now()),
            reason=parsed_reason,
            custom_reason=(custom_reason or "").strip()[:500] or None,
            message_snippet=snippet[:SNIPPET_LENGTH] if snippet else None,
        )
        with self._db.connection() as conn:
            conn.execute(
                """
                INSERT INTO feedback_entries (
                  id, user_id, episode_id, message_id, rating, reason, custom_reason, message_snippet, created_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    entry.id,
                    entry.user_id,
                    entry.episode_id,
                    entry.message_id,
                    entry.rating.value,
                    entry.reason.value if entry.reason else None,
                    entry.custom_reason,
                    entry.message_snippet,
                    entry.created_at,
                ),
            )
            conn.execute(
                "INSERT OR IGNORE INTO rated_messages (user_id, message_id, rated_at) VALUES (?, ?, ?)",
                (user_id, message_id, entry.created_at),
            )
        logger.info(
            "feedback recorded rating=%s reason=%s episode=%s message=%s",
            entry.rating.value,
            FEEDBACK_REASON_LABELS[entry.reason] if entry.reason else None,
            episode_id,
            message_id,
        )
        return entry

    def has_rated_message(self, user_id: str, message_id: str) -> bool:
        with self._db.connection() as conn:
            row = conn.execute(
                "SELECT 1 FROM rated_messages WHERE user_id = ? AND message_id = ?",
                (user_id, message_id),
            ).fetchone()
        return row is not None

    def _all_entries(self, user_id: str) -> list[FeedbackEntry]:
        with self._db.connection() as conn:
            rows = conn.execute(
                "SELECT * FROM feedback_entries WHERE user_id = ? ORDER BY seq ASC",
                (user_id,),
            ).fetchall()
        return [_row_to_entry(row) for row in rows]

    def get_feedback_summary(self, user_id: str, recent_limit: int = 10) -> FeedbackSummary:
        entries = self._all_entries(user_id)
        helpful = sum(1 for entry in entries if entry.rating is FeedbackRating.HELPFUL)
        not_helpful = sum(1 for entry in entries if entry.rating is FeedbackRating.NOT_HELPFUL)
        breakdown = ReasonBreakdown()
        for entry in entries:
            if entry.rating is FeedbackRating.NOT_HELPFUL and entry.reason:
                breakdown.increment(entry.reason)
        return FeedbackSummary(
            total_feedback=len(entries),
            helpful_count=helpful,
            not_helpful_count=not_helpful,
            helpful_percentage=helpful_percentage(helpful, len(entries)),
            reason_breakdown=breakdown,
            recent_feedback=list(reversed(entries[-recent_limit:])) if recent_limit > 0 else [],
        )

    def get_recent_feedback(self, user_id: str, limit: int = 20) -> list[FeedbackEntry]:
        with self._db.connection() as conn:
            rows = conn.execute(
                "SELECT * FROM feedback_entries WHERE user_id = ? ORDER BY seq DESC LIMIT ?",
                (user_id, max(1, int(limit))),
            ).fetchall()
        return [_row_to_entry(row) for row in rows]

    def get_feedback_for_episode(self, user_id: str, episode_id: str) -> list[FeedbackEntry]:
        with self._db.connection() as conn:
            rows = conn.execute(
                "SELECT * FROM feedback_entries WHERE user_id = ? AND episode_id = ? ORDER BY seq ASC",
                (user_id, episode_id),
            ).fetchall()
        return [_row_to_entry(row) for row in rows]

    def get_feedback(self, user_id: str, feedback_id: str) -> FeedbackEntry | None:
        with self._db.connection() as conn:
            row = conn.execute(
                "SELECT * FROM feedback_entries WHERE id = ? AND user_id = ?",
                (feedback_id, user_id),
            ).fetchone()
        return _row_to_entry(row) if row else None

    def export_feedback_json(self, user_id: str) -> str:
        summary = self.get_feedback_summary(user_id)
        export = {
            "exportedAt": to_iso(utc_now()),
            "summary": summary.as_dict(),
            "entries": [entry.as_dict() for entry in self._all_entries(user_id)],
        }
        return json.dumps(export, indent=2)

    def log_feedback_summary(self, user_id: str) -> FeedbackSummary:
        summary = self.get_feedback_summary(user_id)
        logger.info(
            "feedback summary total=%d helpful=%d (%d%%) not_helpful=%d",
            summary.total_feedback,
            summary.helpful_count,
            summary.helpful_percentage,
            summary.not_helpful_count,
        )
        for reason, count in summary.reason_breakdown.as_dict().items():
            if count:
                logger.info("  %s: %d", FEEDBACK_REASON_LABELS[FeedbackReason(reason)], count)
        return summary

    def clear_all_feedback(self) -> None:
        with self._db.connection() as conn:
            conn.execute("DELETE FROM feedback_entries")
            conn.execute("DELETE FROM rated_messages")
        logger.warning("all feedback cleared")
