from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from memory import MemoryService
from memory.models import Episode, ExternalTriageLevel, ForWhom, Message, NotFound, Role, SessionContext

from .classifier import RuleBasedClassifier, TriageClassifier
from .emergency import EmergencyDetector, EmergencyVerdict, reconcile
from .extraction import MemoryExtractor
from .follow_up import FollowUpEngine
from .models import InternalTriageLevel, TriageContext
from .responses import (
    CTAConfig,
    assessment_message,
    cta_for,
    escalation_message,
    follow_up_message,
    reinforcement_message,
)

logger = logging.getLogger(__name__)

DEFAULT_MAX_FOLLOW_UP_ROUNDS = 2


class TurnKind(str, Enum):
    SAFETY_OVERRIDE = "safety_override"
    FOLLOW_UP = "follow_up"
    ASSESSMENT = "assessment"


@dataclass
class TurnResult:
    kind: TurnKind
    episode: Episode
    user_message: Message
    assistant_message: Message
    triage_level: ExternalTriageLevel | None = None
    questions: list[str] = field(default_factory=list)
    verdict: EmergencyVerdict | None = None
    cta: CTAConfig | None = None
    completeness: int | None = None

    @property
    def is_safety_override(self) -> bool:
        return self.kind == TurnKind.SAFETY_OVERRIDE

    def as_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind.value,
            "episode": self.episode.as_dict(),
            "user_message": self.user_message.as_dict(),
            "assistant_message": self.assistant_message.as_dict(),
            "triage_level": self.triage_level.value if self.triage_level else None,
            "questions": list(self.questions),
            "emergency": self.verdict.as_dict() if self.verdict else None,
            "cta": self.cta.as_dict() if self.cta else None,
            "completeness": self.completeness,
        }


class ConversationEngine:
    """Runs one user turn: screen, ask, or assess.

    The emergency screen always runs first. A positive verdict ends the
    interview for the episode, and later turns only repeat the escalation.
    """

    def __init__(
        self,
        service: MemoryService,
        *,
        classifier: TriageClassifier | None = None,
        detector: EmergencyDetector | None = None,
        follow_up: FollowUpEngine | None = None,
        extractor: MemoryExtractor | None = None,
        max_follow_up_rounds: int = DEFAULT_MAX_FOLLOW_UP_ROUNDS,
    ) -> None:
        self.service = service
        self.store = service.episodes
        self.classifier = classifier or RuleBasedClassifier()
        self.detector = detector or EmergencyDetector()
        self.follow_up = follow_up or FollowUpEngine()
        self.extractor = extractor or MemoryExtractor()
        self.max_follow_up_rounds = max(0, int(max_follow_up_rounds))

    def start_and_handle(
        self,
        session: SessionContext,
        *,
        symptom_text: str,
        for_whom: ForWhom | str = ForWhom.SELF,
        age: Any = None,
        relationship: str | None = None,
    ) -> TurnResult:
        episode = self.store.start_episode(
            session,
            symptom_text=symptom_text,
            for_whom=for_whom,
            age=age,
            relationship=relationship,
        )
        opening = self.store.get_messages(session, episode.id)[0]
        return self._run_turn(session, episode.id, opening)

    def handle_user_message(self, session: SessionContext, episode_id: str, text: str) -> TurnResult:
        if self.store.get_episode(session, episode_id) is None:
            raise NotFound(f"Episode not found: {episode_id}")
        user_message = self.store.add_message(session, episode_id, Role.USER, text)
        return self._run_turn(session, episode_id, user_message)

    def _require_episode(self, session: SessionContext, episode_id: str) -> Episode:
        episode = self.store.get_episode(session, episode_id)
        if episode is None:
            raise NotFound(f"Episode not found: {episode_id}")
        return episode

    def _run_turn(self, session: SessionContext, episode_id: str, user_message: Message) -> TurnResult:
        episode = self._require_episode(session, episode_id)
        transcript = self.store.get_messages(session, episode_id)
        context = TriageContext.from_episode(episode, transcript)

        verdict = self.detector.screen(user_message.text, context)
        if episode.escalated:
            return self._reinforce(session, episode, user_message, verdict)
        if verdict.is_emergency:
            return self._escalate(session, episode, user_message, verdict)

        # Age-based emergencies escalate before any follow-up round.
        internal = self.classifier.classify(transcript, context)
        verdict = self.detector.screen(user_message.text, context, internal_level=internal)
        if verdict.is_emergency:
            return self._escalate(session, episode, user_message, verdict, internal)

        rounds_used = sum(1 for message in transcript if message.role == Role.ASSISTANT)
        if rounds_used < self.max_follow_up_rounds:
            decision = self.follow_up.next_questions(transcript, context)
            if decision.needed:
                assistant = self.store.add_message(
                    session,
                    episode_id,
                    Role.ASSISTANT,
                    follow_up_message(decision.questions, context, first_turn=rounds_used == 0),
                )
                return TurnResult(
                    kind=TurnKind.FOLLOW_UP,
                    episode=self._require_episode(session, episode_id),
                    user_message=user_message,
                    assistant_message=assistant,
                    triage_level=episode.triage_level,
                    questions=decision.questions,
                    verdict=verdict,
                    completeness=self.follow_up.completeness(transcript, context),
                )

        level = reconcile(verdict, internal)
        self.store.set_triage_level(session, episode_id, level)
        assistant = self.store.add_message(session, episode_id, Role.ASSISTANT, assessment_message(level, context))
        logger.info("episode assessed id=%s internal=%s external=%s", episode_id, internal.value, level.value)
        return TurnResult(
            kind=TurnKind.ASSESSMENT,
            episode=self._require_episode(session, episode_id),
            user_message=user_message,
            assistant_message=assistant,
            triage_level=level,
            verdict=verdict,
            cta=cta_for(level),
            completeness=self.follow_up.completeness(transcript, context),
        )

    def _escalate(
        self,
        session: SessionContext,
        episode: Episode,
        user_message: Message,
        verdict: EmergencyVerdict,
        internal: InternalTriageLevel | None = None,
    ) -> TurnResult:
        assistant, updated = self.store.record_escalation(
            session,
            episode.id,
            escalation_message(verdict),
            event_type="emergency_escalation",
            details={
                "rule_ids": verdict.rule_ids,
                "confidence": verdict.confidence,
                "immediate_action": verdict.immediate_action,
                "internal_level": internal.value if internal else None,
            },
        )
        logger.warning(
            "episode escalated id=%s rules=%s",
            episode.id,
            ",".join(verdict.rule_ids) or (internal.value if internal else "-"),
        )
        return TurnResult(
            kind=TurnKind.SAFETY_OVERRIDE,
            episode=updated,
            user_message=user_message,
            assistant_message=assistant,
            triage_level=ExternalTriageLevel.EMERGENCY,
            verdict=verdict,
            cta=cta_for(ExternalTriageLevel.EMERGENCY),
        )

    def _last_escalation(self, session: SessionContext, episode_id: str) -> EmergencyVerdict | None:
        events = self.service.list_policy_events(user_id=session.user_id, episode_id=episode_id)
        for event in reversed(events):
            if event["event_type"] == "emergency_escalation":
                details = event["details"]
                return EmergencyVerdict(
                    is_emergency=True,
                    rule_ids=list(details.get("rule_ids") or []),
                    confidence=float(details.get("confidence") or 0.0),
                    immediate_action=details.get("immediate_action"),
                )
        return None

    def _reinforce(
        self,
        session: SessionContext,
        episode: Episode,
        user_message: Message,
        verdict: EmergencyVerdict,
    ) -> TurnResult:
        if not verdict.is_emergency:
            verdict = self._last_escalation(session, episode.id) or verdict
        assistant, updated = self.store.record_escalation(
            session,
            episode.id,
            reinforcement_message(verdict),
            event_type="emergency_reinforced",
            details={"rule_ids": verdict.rule_ids},
        )
        return TurnResult(
            kind=TurnKind.SAFETY_OVERRIDE,
            episode=updated,
            user_message=user_message,
            assistant_message=assistant,
            triage_level=ExternalTriageLevel.EMERGENCY,
            verdict=verdict,
            cta=cta_for(ExternalTriageLevel.EMERGENCY),
        )

    def propose_memory(self, session: SessionContext, episode_id: str) -> list[dict[str, Any]]:
        self._require_episode(session, episode_id)
        transcript = self.store.get_messages(session, episode_id)
        candidates = self.extractor.extract_candidates(transcript)
        return self.service.propose_candidates(
            user_id=session.user_id,
            episode_id=episode_id,
            candidates=candidates,
        )
