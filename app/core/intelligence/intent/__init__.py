"""Intent detection module."""

from .types import ConfirmationType, DetectionContext, Intent, IntentResult
from .keywords import KeywordIntentDetector, detect_confirmation
from .classifier import ClaudeIntentDetector, IntentDetectionError
from .chain import (
    IntentDetectionChain,
    IntentDetector,
    build_default_chain,
    detect_intents,
    get_intent_detector,
)

__all__ = [
    # Types
    "ConfirmationType",
    "DetectionContext",
    "Intent",
    "IntentResult",
    # Detectors
    "KeywordIntentDetector",
    "detect_confirmation",
    "ClaudeIntentDetector",
    "IntentDetectionError",
    # Chain
    "IntentDetectionChain",
    "IntentDetector",
    "build_default_chain",
    "detect_intents",
    "get_intent_detector",
]
