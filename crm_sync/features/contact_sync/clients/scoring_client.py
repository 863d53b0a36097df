"""
Lead scoring collaborator backed by OpenAI chat completions.

Reads a contact's conversation and returns a 0-100 lead score plus a short
summary stored as the contact's AI context. Every failure degrades to
"no classification" (None); scoring never aborts a conversation.
"""

import asyncio
import json
from typing import Any, Protocol

import openai
from openai import AsyncOpenAI

from crm_sync.config import settings
from crm_sync.features.contact_sync.domain import CachedMessage, LeadClassification, PipelineStage
from crm_sync.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

MAX_RETRIES = 2
MAX_TRANSCRIPT_MESSAGES = 60
MAX_MESSAGE_CHARS = 500

LEAD_STATUSES = frozenset(
    {"NEW", "CONTACTED", "QUALIFIED", "PROPOSAL_SENT", "NEGOTIATING", "WON", "LOST", "UNRESPONSIVE"}
)


class ScoringServiceError(Exception):
    """Raised internally when a scoring attempt cannot produce a result."""

    def __init__(self, message: str, recoverable: bool = True):
        super().__init__(message)
        self.recoverable = recoverable


class LeadScorer(Protocol):
    async def classify(
        self, messages: list[CachedMessage], stages: list[PipelineStage] | None = None
    ) -> LeadClassification | None: ...


SYSTEM_MESSAGE = """### Role
You are a sales assistant scoring inbound social-media conversations for a CRM.

### Output Requirements
- Return ONLY valid JSON (no backticks, no prose)
- Structure:
  {
    "summary": "3-5 sentence summary of who the contact is and what they want",
    "lead_score": 0-100 integer (0 = no buying intent, 100 = ready to buy),
    "lead_status": "NEW|CONTACTED|QUALIFIED|PROPOSAL_SENT|NEGOTIATING|WON|LOST|UNRESPONSIVE",
    "recommended_stage": "name of the best matching pipeline stage, or empty string",
    "confidence": 0-100 integer
  }
- Base every value on the conversation only
"""


class LeadScoringService:
    """
    Scores contacts with an LLM.

    Construct once per worker; the underlying AsyncOpenAI client is reused
    across jobs.
    """

    def __init__(self, client: AsyncOpenAI | None = None, model: str | None = None):
        self.model = model or settings.OPENAI_MODEL
        if client is not None:
            self.client = client
            return

        if not settings.OPENAI_API_KEY:
            raise ScoringServiceError("OPENAI_API_KEY not configured in settings", recoverable=False)

        self.client = AsyncOpenAI(
            api_key=settings.OPENAI_API_KEY,
            timeout=settings.OPENAI_TIMEOUT_SECONDS,
        )
        logger.info("Lead scoring client initialized", model=self.model)

    async def classify(
        self, messages: list[CachedMessage], stages: list[PipelineStage] | None = None
    ) -> LeadClassification | None:
        if not messages:
            return None

        try:
            raw = await self._call_with_retry(self._build_user_message(messages, stages))
            return self._parse(raw)
        except ScoringServiceError as e:
            logger.warning("Lead scoring unavailable", error=str(e))
            return None

    def _build_user_message(
        self, messages: list[CachedMessage], stages: list[PipelineStage] | None
    ) -> str:
        transcript = "\n".join(
            f"[{m.timestamp.isoformat() if m.timestamp else 'unknown'}] {m.sender}: "
            f"{m.text[:MAX_MESSAGE_CHARS]}"
            for m in messages[-MAX_TRANSCRIPT_MESSAGES:]
        )

        parts = ["### Conversation (oldest first)", transcript]
        if stages:
            stage_lines = "\n".join(
                f"- {s.name} ({s.type}): score {s.lead_score_min}-{s.lead_score_max}"
                + (f" - {s.description}" if s.description else "")
                for s in sorted(stages, key=lambda s: s.order)
            )
            parts += ["### Pipeline stages", stage_lines]
        return "\n\n".join(parts)

    async def _call_with_retry(self, user_message: str) -> str:
        last_error: Exception | None = None

        for attempt in range(MAX_RETRIES):
            try:
                response = await self.client.chat.completions.create(
                    model=self.model,
                    messages=[
                        {"role": "system", "content": SYSTEM_MESSAGE},
                        {"role": "user", "content": user_message},
                    ],
                    temperature=0.2,
                    response_format={"type": "json_object"},
                )

                if not response.choices or not response.choices[0].message.content:
                    raise ScoringServiceError("Empty response from OpenAI API")

                return response.choices[0].message.content.strip()

            except openai.RateLimitError as e:
                last_error = e
                wait_time = min(2**attempt, 30)
                logger.warning(
                    "OpenAI rate limit hit, retrying",
                    attempt=attempt + 1,
                    wait_time=wait_time,
                )
                if attempt < MAX_RETRIES - 1:
                    await asyncio.sleep(wait_time)

            except openai.APIStatusError as e:
                last_error = e
                # 4xx other than rate limits will not succeed on retry
                if 400 <= e.status_code < 500:
                    logger.error("OpenAI client error (not retrying)", status_code=e.status_code)
                    break
                logger.warning("OpenAI API error, retrying", attempt=attempt + 1, error=str(e))

            except openai.APIError as e:
                last_error = e
                logger.warning("OpenAI API error, retrying", attempt=attempt + 1, error=str(e))

        raise ScoringServiceError(f"OpenAI scoring failed: {last_error}") from last_error

    @staticmethod
    def _parse(raw: str) -> LeadClassification:
        try:
            data: dict[str, Any] = json.loads(raw)
        except json.JSONDecodeError as e:
            raise ScoringServiceError(f"Scoring response is not JSON: {e}") from e

        try:
            score = int(round(float(data["lead_score"])))
        except (KeyError, TypeError, ValueError) as e:
            raise ScoringServiceError("Scoring response has no usable lead_score") from e

        confidence = data.get("confidence")
        try:
            confidence = int(confidence) if confidence is not None else None
        except (TypeError, ValueError):
            confidence = None

        status = str(data.get("lead_status") or "").upper()

        return LeadClassification(
            lead_score=max(0, min(100, score)),
            summary=(data.get("summary") or None),
            lead_status=status if status in LEAD_STATUSES else None,
            recommended_stage=(data.get("recommended_stage") or None),
            confidence=confidence,
        )
