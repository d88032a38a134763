from .database import SQLiteMemoryDB
from .episode_store import EpisodeStore
from .feedback_store import FeedbackStore, FeedbackSummary, ReasonBreakdown
from .health_memory_store import HealthMemoryStore
from .memory_policy_guard import MemoryPolicyError, MemoryPolicyGuard
from .service import MemoryService, canonical_payload_hash

__all__ = [
    "SQLiteMemoryDB",
    "EpisodeStore",
    "FeedbackStore",
    "FeedbackSummary",
    "ReasonBreakdown",
    "HealthMemoryStore",
    "MemoryService",
    "MemoryPolicyGuard",
    "MemoryPolicyError",
    "canonical_payload_hash",
]
