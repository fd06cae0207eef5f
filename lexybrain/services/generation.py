from __future__ import annotations

from dataclasses import dataclass
import json
import logging
import time
from typing import Any, Callable, Protocol
from uuid import uuid4

from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from lexybrain.core.config import get_settings
from lexybrain.core.errors import GenerationFailed, OutputValidationFailed
from lexybrain.domain.capabilities import OutputType
from lexybrain.domain.schemas import OUTPUT_SCHEMAS
from lexybrain.persistence.repos import audit as audit_repo
from lexybrain.providers.llm.base import LLMProvider
from lexybrain.services.costs import estimate_tokens
from lexybrain.services.prompt import PromptConfig, build_prompt, extract_json_from_output


logger = logging.getLogger(__name__)

RAW_OUTPUT_EXCERPT_CHARS = 2000


@dataclass(frozen=True)
class GenerationResult:
    output: dict[str, Any]
    metadata: dict[str, Any]


class FailureRecorder(Protocol):
    async def record_failure(
        self,
        *,
        user_id: str | None,
        output_type: str,
        error_code: str,
        error_message: str,
        payload: dict[str, Any],
    ) -> None:
        # Persist the failed attempt for offline review.
        ...


class SqlFailureRecorder:
    def __init__(self, session_factory: Callable[[], AsyncSession]) -> None:
        self._session_factory = session_factory

    async def record_failure(
        self,
        *,
        user_id: str | None,
        output_type: str,
        error_code: str,
        error_message: str,
        payload: dict[str, Any],
    ) -> None:
        # Failure rows are diagnostics only; losing one never changes the response.
        try:
            async with self._session_factory() as session:
                await audit_repo.insert_failure(
                    session,
                    user_id=user_id,
                    type=output_type,
                    error_code=error_code,
                    error_message=error_message,
                    payload=payload,
                )
                await session.commit()
        except SQLAlchemyError as exc:
            logger.warning("ai_failure_write_failed type=%s error_code=%s", output_type, error_code, exc_info=exc)


def validate_output(output_type: OutputType, raw_output: str) -> dict[str, Any]:
    # Extract JSON from raw model text and validate it against the output schema.
    candidate = extract_json_from_output(raw_output or "")
    try:
        parsed = json.loads(candidate)
    except ValueError as exc:
        raise OutputValidationFailed(
            "Model output is not valid JSON",
            errors=[str(exc)],
            raw_output=raw_output[:RAW_OUTPUT_EXCERPT_CHARS],
        ) from exc
    try:
        model = OUTPUT_SCHEMAS[output_type].model_validate(parsed)
    except ValidationError as exc:
        errors = [
            f"{'.'.join(str(part) for part in error['loc']) or '<root>'}: {error['msg']}"
            for error in exc.errors()
        ]
        raise OutputValidationFailed(
            f"Model output does not match the {output_type.value} schema",
            errors=errors,
            raw_output=raw_output[:RAW_OUTPUT_EXCERPT_CHARS],
        ) from exc
    return model.model_dump(mode="json")


class InsightGenerator:
    def __init__(
        self,
        provider: LLMProvider,
        *,
        model_version: str,
        max_tokens: int,
        temperature: float,
        retry_temperature: float,
        max_retries: int = 1,
        failure_recorder: FailureRecorder | None = None,
    ) -> None:
        self._provider = provider
        self._model_version = model_version
        self._max_tokens = max_tokens
        self._temperature = temperature
        self._retry_temperature = retry_temperature
        self._max_retries = max(max_retries, 0)
        self._failure_recorder = failure_recorder

    async def generate(
        self,
        output_type: OutputType,
        context: dict[str, Any],
        prompt_config: PromptConfig,
        *,
        user_id: str | None = None,
    ) -> GenerationResult:
        # First attempt with the configured prompt, then retries with stricter instructions.
        started = time.monotonic()
        last_error = GenerationFailed("Insight generation made no attempts")
        for attempt in range(self._max_retries + 1):
            retry = attempt > 0
            prompt = build_prompt(output_type, context, prompt_config.for_retry() if retry else prompt_config)
            try:
                completion = await self._provider.complete(
                    prompt,
                    max_tokens=self._max_tokens,
                    temperature=self._retry_temperature if retry else self._temperature,
                )
                output = validate_output(output_type, completion.text)
            except GenerationFailed as exc:
                last_error = exc
                logger.warning(
                    "insight_generation_attempt_failed type=%s attempt=%s error=%s",
                    output_type.value,
                    attempt + 1,
                    exc.message,
                )
                continue

            latency_ms = int((time.monotonic() - started) * 1000)
            prompt_tokens = completion.prompt_tokens
            output_tokens = completion.output_tokens
            metadata = {
                "latency_ms": latency_ms,
                "prompt_tokens": prompt_tokens if prompt_tokens is not None else estimate_tokens(prompt),
                "output_tokens": output_tokens if output_tokens is not None else estimate_tokens(completion.text),
                "model_version": self._model_version,
                "request_id": str(uuid4()),
                "retry_count": attempt,
            }
            logger.info(
                "insight_generated type=%s latency_ms=%s retry_count=%s",
                output_type.value,
                latency_ms,
                attempt,
            )
            return GenerationResult(output=output, metadata=metadata)

        await self._record_failure(output_type, last_error, user_id=user_id)
        raise last_error

    async def _record_failure(self, output_type: OutputType, error: GenerationFailed, *, user_id: str | None) -> None:
        # Log the final failure, then hand it to the recorder when one is configured.
        logger.error("insight_generation_failed type=%s error=%s", output_type.value, error.message)
        if self._failure_recorder is None:
            return
        payload: dict[str, Any] = {"model_version": self._model_version, **error.details()}
        raw_output = getattr(error, "raw_output", "")
        if raw_output:
            payload["raw_output"] = raw_output
        await self._failure_recorder.record_failure(
            user_id=user_id,
            output_type=output_type.value,
            error_code=type(error).__name__,
            error_message=error.message,
            payload=payload,
        )


def build_generator(provider: LLMProvider, failure_recorder: FailureRecorder | None = None) -> InsightGenerator:
    # Wire the configured model provider into a generator.
    settings = get_settings()
    return InsightGenerator(
        provider,
        model_version=settings.model_version,
        max_tokens=settings.model_max_tokens,
        temperature=settings.model_temperature,
        retry_temperature=settings.model_retry_temperature,
        max_retries=settings.generation_max_retries,
        failure_recorder=failure_recorder,
    )
