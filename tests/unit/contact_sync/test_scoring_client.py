import json
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import openai
import pytest

from crm_sync.features.contact_sync.clients import LeadScoringService, ScoringServiceError
from crm_sync.features.contact_sync.domain import CachedMessage, PipelineStage


def completion(content):
    return SimpleNamespace(choices=[SimpleNamespace(message=SimpleNamespace(content=content))])


def scoring_service(*responses):
    client = MagicMock()
    client.chat.completions.create = AsyncMock(side_effect=list(responses))
    return LeadScoringService(client=client, model="test-model"), client


MESSAGES = [
    CachedMessage(sender="Ana", text="How much is the premium plan?"),
    CachedMessage(sender="Acme Store", text="It is $49 per month."),
]


@pytest.mark.asyncio
async def test_classify_parses_scores_and_summary():
    payload = {"summary": "Asked about premium pricing.", "lead_score": 72, "confidence": "80"}
    service, client = scoring_service(completion(json.dumps(payload)))

    result = await service.classify(MESSAGES)

    assert result.lead_score == 72
    assert result.summary == "Asked about premium pricing."
    assert result.confidence == 80
    kwargs = client.chat.completions.create.call_args.kwargs
    assert kwargs["model"] == "test-model"
    assert kwargs["response_format"] == {"type": "json_object"}


@pytest.mark.asyncio
async def test_out_of_range_scores_are_clamped():
    service, _ = scoring_service(completion('{"lead_score": 140}'))

    assert (await service.classify(MESSAGES)).lead_score == 100


@pytest.mark.asyncio
async def test_invalid_json_degrades_to_no_classification():
    service, _ = scoring_service(completion("not json"))

    assert await service.classify(MESSAGES) is None


@pytest.mark.asyncio
async def test_empty_conversation_is_not_sent():
    service, client = scoring_service()

    assert await service.classify([]) is None
    client.chat.completions.create.assert_not_called()


@pytest.mark.asyncio
async def test_transient_errors_are_retried_then_give_up():
    request = httpx.Request("POST", "https://api.openai.test/v1/chat/completions")
    error = openai.APIConnectionError(request=request)
    service, client = scoring_service(error, error)

    assert await service.classify(MESSAGES) is None
    assert client.chat.completions.create.await_count == 2


@pytest.mark.asyncio
async def test_client_errors_are_not_retried():
    request = httpx.Request("POST", "https://api.openai.test/v1/chat/completions")
    error = openai.BadRequestError(
        "bad request", response=httpx.Response(400, request=request), body=None
    )
    service, client = scoring_service(error, completion('{"lead_score": 10}'))

    assert await service.classify(MESSAGES) is None
    assert client.chat.completions.create.await_count == 1


def test_prompt_lists_stages_in_order():
    service, _ = scoring_service()
    stages = [
        PipelineStage("s-2", "Hot", "LEAD", 2, 50, 100, description="Ready to buy"),
        PipelineStage("s-1", "Cold", "LEAD", 1, 0, 49),
    ]

    prompt = service._build_user_message(MESSAGES, stages)

    assert "Ana: How much is the premium plan?" in prompt
    assert prompt.index("Cold (LEAD): score 0-49") < prompt.index("Hot (LEAD): score 50-100")
    assert "Ready to buy" in prompt


def test_missing_api_key_is_a_configuration_error():
    with patch("crm_sync.features.contact_sync.clients.scoring_client.settings.OPENAI_API_KEY", None):
        with pytest.raises(ScoringServiceError) as exc_info:
            LeadScoringService()

    assert exc_info.value.recoverable is False


@pytest.mark.asyncio
async def test_lead_status_kept_only_when_known():
    known = {"lead_score": 60, "lead_status": "qualified", "recommended_stage": "Warm"}
    unknown = {"lead_score": 60, "lead_status": "MAYBE"}
    service, _ = scoring_service(completion(json.dumps(known)), completion(json.dumps(unknown)))

    first = await service.classify(MESSAGES)
    second = await service.classify(MESSAGES)

    assert first.lead_status == "QUALIFIED"
    assert first.recommended_stage == "Warm"
    assert second.lead_status is None
