from __future__ import annotations

import json

import pytest

from lexybrain.core.errors import GenerationFailed, ModelUnavailable, OutputValidationFailed
from lexybrain.domain.capabilities import OutputType
from lexybrain.providers.llm.fake import FakeLLMProvider, canned_output
from lexybrain.services.generation import InsightGenerator, validate_output
from lexybrain.services.prompt import RETRY_INSTRUCTIONS, PromptConfig
from lexybrain.tests.utils.fakes import RecordingFailureRecorder, ScriptedLLMProvider


CONTEXT = {
    "market": "etsy",
    "niche_terms": ["boho wall art"],
    "keywords": [{"term": "boho wall art"}],
    "metadata": {},
}


def _generator(provider, recorder=None) -> InsightGenerator:
    return InsightGenerator(
        provider,
        model_version="llama-3-8b",
        max_tokens=512,
        temperature=0.3,
        retry_temperature=0.1,
        max_retries=1,
        failure_recorder=recorder,
    )


@pytest.mark.asyncio
async def test_valid_first_attempt_returns_metadata_with_estimated_tokens() -> None:
    provider = ScriptedLLMProvider([json.dumps(canned_output("radar"))])

    result = await _generator(provider).generate(OutputType.RADAR, CONTEXT, PromptConfig(), user_id="u1")

    assert result.output["items"][0]["term"] == "personalized gifts"
    assert result.metadata["retry_count"] == 0
    assert result.metadata["model_version"] == "llama-3-8b"
    assert result.metadata["prompt_tokens"] > 0
    assert result.metadata["output_tokens"] > 0
    assert result.metadata["request_id"]
    assert provider.calls[0]["temperature"] == 0.3
    assert provider.calls[0]["max_tokens"] == 512


@pytest.mark.asyncio
async def test_provider_usage_overrides_estimates() -> None:
    provider = ScriptedLLMProvider([json.dumps(canned_output("risk"))], prompt_tokens=111, output_tokens=22)

    result = await _generator(provider).generate(OutputType.RISK, CONTEXT, PromptConfig())

    assert result.metadata["prompt_tokens"] == 111
    assert result.metadata["output_tokens"] == 22


@pytest.mark.asyncio
async def test_invalid_output_retries_once_with_stricter_prompt() -> None:
    provider = ScriptedLLMProvider(
        [
            '{"niche": "x"}',
            "```json\n" + json.dumps(canned_output("market_brief")) + "\n```",
        ]
    )

    result = await _generator(provider).generate(OutputType.MARKET_BRIEF, CONTEXT, PromptConfig())

    assert result.metadata["retry_count"] == 1
    assert len(provider.calls) == 2
    assert provider.calls[1]["temperature"] == 0.1
    assert RETRY_INSTRUCTIONS not in provider.calls[0]["prompt"]
    assert RETRY_INSTRUCTIONS in provider.calls[1]["prompt"]


@pytest.mark.asyncio
async def test_model_unavailable_is_retried() -> None:
    provider = ScriptedLLMProvider(
        [ModelUnavailable("Model endpoint returned 503", status_code=503), json.dumps(canned_output("ad_insight"))]
    )

    result = await _generator(provider).generate(OutputType.AD_INSIGHT, CONTEXT, PromptConfig())

    assert result.output["notes"]
    assert result.metadata["retry_count"] == 1


@pytest.mark.asyncio
async def test_two_failures_raise_and_record_failure() -> None:
    recorder = RecordingFailureRecorder()
    provider = ScriptedLLMProvider(["not json at all", '{"alerts": [{"term": "x"}]}'])

    with pytest.raises(OutputValidationFailed) as excinfo:
        await _generator(provider, recorder).generate(OutputType.RISK, CONTEXT, PromptConfig(), user_id="u7")

    assert isinstance(excinfo.value, GenerationFailed)
    assert excinfo.value.kind == "generation_failed"
    assert len(provider.calls) == 2
    assert len(recorder.failures) == 1
    failure = recorder.failures[0]
    assert failure["user_id"] == "u7"
    assert failure["output_type"] == "risk"
    assert failure["error_code"] == "OutputValidationFailed"
    assert failure["payload"]["errors"]


@pytest.mark.asyncio
async def test_zero_retries_makes_a_single_attempt() -> None:
    provider = ScriptedLLMProvider([ModelUnavailable("down", status_code=500)])
    generator = InsightGenerator(
        provider, model_version="m", max_tokens=10, temperature=0.3, retry_temperature=0.1, max_retries=0
    )

    with pytest.raises(ModelUnavailable):
        await generator.generate(OutputType.RADAR, CONTEXT, PromptConfig())
    assert len(provider.calls) == 1


@pytest.mark.asyncio
async def test_negative_retry_count_still_surfaces_the_attempt_error() -> None:
    provider = ScriptedLLMProvider([ModelUnavailable("down", status_code=503)])
    generator = InsightGenerator(
        provider, model_version="m", max_tokens=10, temperature=0.3, retry_temperature=0.1, max_retries=-3
    )

    with pytest.raises(ModelUnavailable) as excinfo:
        await generator.generate(OutputType.RADAR, CONTEXT, PromptConfig())
    assert excinfo.value.status_code == 503
    assert len(provider.calls) == 1


@pytest.mark.asyncio
async def test_fake_provider_answers_with_schema_valid_json_per_type() -> None:
    provider = FakeLLMProvider()
    generator = _generator(provider)

    for output_type in OutputType:
        result = await generator.generate(output_type, CONTEXT, PromptConfig())
        assert result.output == validate_output(output_type, json.dumps(canned_output(output_type.value)))
    assert len(provider.calls) == len(OutputType)


def test_validate_output_enforces_bounds() -> None:
    brief = dict(canned_output("market_brief"), confidence=1.5)
    with pytest.raises(OutputValidationFailed) as excinfo:
        validate_output(OutputType.MARKET_BRIEF, json.dumps(brief))
    assert any(error.startswith("confidence") for error in excinfo.value.errors)

    alert = canned_output("risk")["alerts"][0]
    with pytest.raises(OutputValidationFailed):
        validate_output(OutputType.RISK, json.dumps({"alerts": [dict(alert, severity="extreme")]}))
