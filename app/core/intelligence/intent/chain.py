"""
Intent detection strategy chain.

Detectors are tried in order; a detector that errors or times out hands
over to the next one. The keyword detector never fails, so it closes the
default chain.
"""

import asyncio
import logging
from typing import Optional, Protocol, Sequence

from app.config import settings
from .classifier import ClaudeIntentDetector, IntentDetectionError
from .keywords import KeywordIntentDetector
from .types import DetectionContext, IntentResult

logger = logging.getLogger(__name__)


class IntentDetector(Protocol):
    """Anything that can turn a message into a set of intents."""

    name: str

    async def detect(
        self,
        message: str,
        context: Optional[DetectionContext] = None,
    ) -> IntentResult: ...


class IntentDetectionChain:
    """Try each detector in turn until one answers."""

    def __init__(self, detectors: Sequence[IntentDetector], timeout: Optional[float] = None):
        """Initialize chain.

        Args:
            detectors: Detectors in priority order
            timeout: Per-detector time limit in seconds (defaults to settings)
        """
        if not detectors:
            raise ValueError("At least one intent detector is required")
        self._detectors = list(detectors)
        self._timeout = timeout or settings.external_call_timeout_seconds

    @property
    def detectors(self) -> list[IntentDetector]:
        return list(self._detectors)

    async def detect(
        self,
        message: str,
        context: Optional[DetectionContext] = None,
    ) -> IntentResult:
        """Detect intents, falling back along the chain on failure."""
        failed = False

        for detector in self._detectors:
            try:
                result = await asyncio.wait_for(
                    detector.detect(message, context),
                    timeout=self._timeout,
                )
                result.fallback_used = failed
                return result

            except asyncio.TimeoutError:
                logger.warning(f"Intent detector {detector.name} timed out after {self._timeout}s")
            except IntentDetectionError as e:
                logger.warning(f"Intent detector {detector.name} failed: {e}")
            except Exception as e:
                logger.error(f"Intent detector {detector.name} crashed: {e}")
            failed = True

        logger.error("All intent detectors failed, treating message as intent-free")
        return IntentResult(source="none", fallback_used=True)


def build_default_chain() -> IntentDetectionChain:
    """Claude first when an API key is configured, keywords always last."""
    detectors: list[IntentDetector] = []
    if settings.anthropic_api_key:
        detectors.append(ClaudeIntentDetector())
    detectors.append(KeywordIntentDetector())
    return IntentDetectionChain(detectors)


# Singleton
_chain: Optional[IntentDetectionChain] = None


def get_intent_detector() -> IntentDetectionChain:
    """Get singleton detection chain."""
    global _chain
    if _chain is None:
        _chain = build_default_chain()
    return _chain


async def detect_intents(
    message: str,
    context: Optional[DetectionContext] = None,
) -> IntentResult:
    """Convenience function to detect intents."""
    return await get_intent_detector().detect(message, context)
