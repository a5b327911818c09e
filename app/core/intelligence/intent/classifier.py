"""
LLM-based intent detection using Claude.

Returns every intent present in the message (possibly none). Failures
raise IntentDetectionError so the detection chain can fall back.
"""

import json
import logging
import re
import time
from typing import Optional

from app.config import settings
from app.infra.claude import ClaudeClient, get_claude_client, ClaudeClientError
from .types import DetectionContext, Intent, IntentResult

logger = logging.getLogger(__name__)


class IntentDetectionError(Exception):
    """Raised when a detector cannot produce a usable answer."""
    pass


CLASSIFICATION_PROMPT = """You are an intent detection system for a dental clinic appointment assistant.

Detect ALL intents present in the patient's message.

## Intents

- booking: wants to book/make/schedule a NEW appointment
- cancel: wants to CANCEL an existing appointment
- reschedule: wants to CHANGE/MOVE an existing appointment to a different time
- price_inquiry: asks about prices, costs, fees or charges
- appointment_inquiry: wants to check/view their existing appointment (date, time, doctor)

## Rules

1. A message may carry several intents, or none.
2. Negated requests do not count ("I don't want to cancel" is not cancel).
3. Plain replies such as "yes", "no", "ok", a name or a date carry no new intent.
4. If the patient is already in a booking flow and just answers, return [].
5. Never default to booking.

## Context

{context}

## Patient Message

"{message}"

## Response

Respond with ONLY a JSON array of intent strings, for example ["booking"],
["price_inquiry", "booking"] or []."""


_ARRAY_RE = re.compile(r"\[.*?\]", re.DOTALL)


class ClaudeIntentDetector:
    """
    Intent detector backed by Claude.

    Uses the fast intent model; the client itself falls back to the larger
    model when the first call errors.
    """

    name = "claude"

    def __init__(self, claude_client: Optional[ClaudeClient] = None):
        """Initialize detector.

        Args:
            claude_client: Optional Claude client (for testing)
        """
        self._client = claude_client

    async def _get_client(self) -> ClaudeClient:
        """Get or create Claude client."""
        if self._client is None:
            self._client = await get_claude_client()
        return self._client

    async def detect(
        self,
        message: str,
        context: Optional[DetectionContext] = None,
    ) -> IntentResult:
        """
        Detect intents in a patient message.

        Args:
            message: Patient's message
            context: Recent history and known intents

        Returns:
            IntentResult with zero or more intents

        Raises:
            IntentDetectionError: If the API call or parsing fails
        """
        message = message.strip()
        start_time = time.time()

        if not message:
            return IntentResult(source=self.name)

        prompt = CLASSIFICATION_PROMPT.format(
            context=self._build_context(context) or "New conversation, no prior context.",
            message=message,
        )

        try:
            client = await self._get_client()
            response = await client.generate(
                prompt=prompt,
                model=settings.claude_intent_model,
                max_tokens=50,
                temperature=0,  # Deterministic
            )
        except (ClaudeClientError, ValueError) as e:
            raise IntentDetectionError(f"Claude intent detection failed: {e}") from e

        result = self._parse_response(response.content)
        result.processing_time_ms = (time.time() - start_time) * 1000
        logger.debug(f"Claude intents: {sorted(i.value for i in result.intents)}")
        return result

    def _build_context(self, context: Optional[DetectionContext]) -> str:
        """Build context string for the prompt."""
        if context is None:
            return ""

        parts = []

        if context.known_intents:
            parts.append(f"Intents already active: {', '.join(context.known_intents)}")

        if context.state:
            parts.append(f"Current step: {context.state}")

        if context.recent_history:
            lines = []
            for msg in context.recent_history[-4:]:
                role = "Patient" if msg.get("role") == "user" else "Assistant"
                lines.append(f"{role}: {str(msg.get('text', ''))[:200]}")
            parts.append("Recent conversation:\n" + "\n".join(lines))

        return "\n".join(parts)

    def _parse_response(self, response: str) -> IntentResult:
        """Parse the LLM's JSON array (tolerates code fences and wrappers)."""
        response = response.strip()
        if response.startswith("```"):
            lines = response.split("\n")[1:]
            if lines and lines[-1].strip() == "```":
                lines = lines[:-1]
            response = "\n".join(lines).strip()

        try:
            match = _ARRAY_RE.search(response)
            data = json.loads(match.group(0) if match else response)
        except json.JSONDecodeError as e:
            logger.error(f"Failed to parse: {e}\nResponse: {response}")
            raise IntentDetectionError("Unparsable intent response") from e

        if isinstance(data, dict):
            data = data.get("intents") or ([data["intent"]] if data.get("intent") else [])
        if not isinstance(data, list):
            raise IntentDetectionError(f"Unexpected intent payload: {response}")

        intents = set()
        for value in data:
            if not isinstance(value, str):
                continue
            try:
                intents.add(Intent(value.strip().lower()))
            except ValueError:
                logger.debug(f"Ignoring unknown intent {value!r}")

        return IntentResult(
            intents=frozenset(intents),
            source=self.name,
            raw_response=response,
        )
