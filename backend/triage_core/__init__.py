from .classifier import ModelTriageClassifier, RuleBasedClassifier, TriageClassifier
from .emergency import EmergencyDetector, EmergencyVerdict, reconcile
from .engine import ConversationEngine, TurnKind, TurnResult
from .extraction import MemoryExtractor
from .follow_up import FollowUpDecision, FollowUpEngine, FollowUpGap
from .levels import map_to_external, parse_internal_level
from .models import InternalTriageLevel, TriageContext, UnhandledTriageLevel
from .responses import CTAConfig, cta_for

__all__ = [
    "CTAConfig",
    "ConversationEngine",
    "EmergencyDetector",
    "EmergencyVerdict",
    "FollowUpDecision",
    "FollowUpEngine",
    "FollowUpGap",
    "InternalTriageLevel",
    "MemoryExtractor",
    "ModelTriageClassifier",
    "RuleBasedClassifier",
    "TriageClassifier",
    "TriageContext",
    "TurnKind",
    "TurnResult",
    "UnhandledTriageLevel",
    "cta_for",
    "map_to_external",
    "parse_internal_level",
    "reconcile",
]
