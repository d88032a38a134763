from __future__ import annotations

import hashlib
import json
import logging
from typing import Any, Iterable

from .database import SQLiteMemoryDB, insert_policy_event
from .episode_store import EpisodeStore
from .feedback_store import FeedbackStore
from .health_memory_store import HealthMemoryStore
from .memory_policy_guard import MemoryPolicyError, MemoryPolicyGuard
from .models import FeedbackEntry, MemoryCandidate, MemoryItem, MemoryType, NotFound, SessionContext

logger = logging.getLogger(__name__)


def canonical_payload_hash(payload: dict[str, Any]) -> str:
    encoded = json.dumps(payload, sort_keys=True, separators=(",", ":")).encode("utf-8")
    return hashlib.sha256(encoded).hexdigest()


class MemoryService:
    """Persistence façade shared by the conversation engine and the HTTP layer.

    Health memory is only ever written through ``approve_candidate``; the
    extractor proposes, the user decides.
    """

    def __init__(self, db: SQLiteMemoryDB) -> None:
        self.db = db
        self.guard = MemoryPolicyGuard()
        self.episodes = EpisodeStore(db)
        self.feedback = FeedbackStore(db)
        self.health = HealthMemoryStore(db)

    def propose_candidates(
        self,
        *,
        user_id: str,
        episode_id: str | None,
        candidates: Iterable[MemoryCandidate],
    ) -> list[dict[str, Any]]:
        staged: list[dict[str, Any]] = []
        for candidate in candidates:
            check = self.guard.check_candidate(candidate.type.value, candidate.value)
            if not check.allowed:
                logger.info("memory candidate skipped type=%s reason=%s", candidate.type.value, check.reason)
                continue
            staged.append(
                self.health.stage_candidate(
                    user_id=user_id,
                    episode_id=episode_id,
                    candidate=candidate,
                    payload_hash=canonical_payload_hash(candidate.payload()),
                )
            )
        return staged

    def list_pending_candidates(self, user_id: str) -> list[dict[str, Any]]:
        return self.health.list_candidates(user_id, status="pending")

    def _owned_candidate(self, user_id: str, candidate_id: str) -> dict[str, Any]:
        candidate = self.health.get_candidate(candidate_id)
        if candidate is None:
            raise NotFound(f"Memory candidate not found: {candidate_id}")
        self.guard.ensure_user_scope(user_id, candidate["user_id"])
        return candidate

    def approve_candidate(self, *, user_id: str, candidate_id: str, session_key: str | None = None) -> MemoryItem:
        candidate = self._owned_candidate(user_id, candidate_id)
        if candidate["status"] != "pending":
            raise MemoryPolicyError("Memory candidate was already decided.")
        payload = {
            "type": candidate["type"],
            "label": candidate["label"],
            "value": candidate["value"],
            "confidence": candidate["confidence"],
        }
        if canonical_payload_hash(payload) != candidate["payload_hash"]:
            raise MemoryPolicyError("Memory candidate payload mismatch.")
        self.guard.ensure_candidate_allowed(candidate["type"], candidate["value"])
        item = self.health.approve_candidate(candidate)
        self.append_policy_event(
            user_id=user_id,
            session_key=session_key,
            episode_id=candidate["episode_id"],
            event_type="memory_approved",
            details={"candidate_id": candidate_id, "memory_id": item.id, "type": item.type.value},
        )
        logger.info("memory candidate approved id=%s type=%s", candidate_id, item.type.value)
        return item

    def dismiss_candidate(self, *, user_id: str, candidate_id: str) -> bool:
        self._owned_candidate(user_id, candidate_id)
        return self.health.dismiss_candidate(candidate_id)

    def list_memory_items(self, user_id: str, memory_type: MemoryType | None = None) -> list[MemoryItem]:
        return self.health.list_items(user_id, memory_type)

    def delete_memory_item(self, *, user_id: str, item_id: str) -> None:
        if not self.health.delete_item(user_id, item_id):
            raise NotFound(f"Memory item not found: {item_id}")

    def memory_snapshot(self, user_id: str) -> dict[str, list[str]]:
        snapshot: dict[str, list[str]] = {member.value: [] for member in MemoryType}
        for item in self.health.list_items(user_id):
            snapshot[item.type.value].append(item.value)
        return snapshot

    def submit_feedback(
        self,
        session: SessionContext,
        *,
        episode_id: str,
        message_id: str,
        **fields: Any,
    ) -> FeedbackEntry:
        """Rate a message, but only one that lives in an episode the caller owns."""
        messages = self.episodes.get_messages(session, episode_id)
        if not any(message.id == message_id for message in messages):
            raise NotFound(f"Message not found: {message_id}")
        return self.feedback.submit_feedback(
            user_id=session.user_id,
            episode_id=episode_id,
            message_id=message_id,
            **fields,
        )

    def append_policy_event(
        self,
        *,
        user_id: str | None,
        session_key: str | None,
        episode_id: str | None,
        event_type: str,
        details: dict[str, Any],
    ) -> None:
        with self.db.connection() as conn:
            insert_policy_event(
                conn,
                user_id=user_id,
                session_key=session_key,
                episode_id=episode_id,
                event_type=event_type,
                details=details,
            )

    def list_policy_events(self, *, user_id: str, episode_id: str | None = None) -> list[dict[str, Any]]:
        sql = "SELECT * FROM policy_events WHERE user_id = ?"
        params: list[Any] = [user_id]
        if episode_id is not None:
            sql += " AND episode_id = ?"
            params.append(episode_id)
        sql += " ORDER BY created_at ASC, rowid ASC"
        with self.db.connection() as conn:
            rows = conn.execute(sql, tuple(params)).fetchall()
        return [
            {
                "id": row["id"],
                "episode_id": row["episode_id"],
                "event_type": row["event_type"],
                "details": json.loads(row["details_json"]),
                "created_at": row["created_at"],
            }
            for row in rows
        ]
