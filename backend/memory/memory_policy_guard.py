from __future__ import annotations

import re
from dataclasses import dataclass

from .models import MemoryType


class MemoryPolicyError(Exception):
    pass


@dataclass(frozen=True)
class CandidateCheck:
    allowed: bool
    reason: str | None = None


class MemoryPolicyGuard:
    _ALLOWED_TYPES = {member.value for member in MemoryType}

    # Transient state is never worth remembering, whatever the category says.
    _TRANSIENT_PATTERNS = [
        re.compile(r"\b(today|tonight|this (morning|afternoon|evening|week)|right now|since yesterday)\b", re.IGNORECASE),
        re.compile(r"\b(feel(ing)?|felt) (sad|anxious|scared|worried|upset|stressed|angry|down)\b", re.IGNORECASE),
        re.compile(r"\b(might|maybe|possibly|probably|could be)\b", re.IGNORECASE),
    ]

    def ensure_user_scope(self, requested_user_id: str, scoped_user_id: str) -> None:
        if requested_user_id != scoped_user_id:
            raise MemoryPolicyError("Cross-user access is blocked.")

    def ensure_session_scope(self, session_key: str) -> None:
        if not session_key or len(session_key) > 128:
            raise MemoryPolicyError("Invalid session scope.")

    def check_candidate(self, memory_type: str, value: str) -> CandidateCheck:
        if memory_type not in self._ALLOWED_TYPES:
            return CandidateCheck(allowed=False, reason=f"Memory type '{memory_type}' is not stored.")
        cleaned = (value or "").strip()
        if not cleaned or len(cleaned) > 120:
            return CandidateCheck(allowed=False, reason="Memory value must be a short, non-empty phrase.")
        for pattern in self._TRANSIENT_PATTERNS:
            if pattern.search(cleaned):
                return CandidateCheck(allowed=False, reason="Transient or uncertain facts are not stored.")
        return CandidateCheck(allowed=True)

    def ensure_candidate_allowed(self, memory_type: str, value: str) -> None:
        result = self.check_candidate(memory_type, value)
        if not result.allowed:
            raise MemoryPolicyError(result.reason or "Memory candidate rejected by policy.")
