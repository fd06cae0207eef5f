from __future__ import annotations

import logging
from typing import Any

import httpx

from lexybrain.core.errors import ModelUnavailable, ProviderConfigError
from lexybrain.providers.llm.base import Completion


logger = logging.getLogger(__name__)

_BODY_EXCERPT_CHARS = 500


class HttpModelProvider:
    def __init__(
        self,
        *,
        base_url: str,
        api_key: str | None = None,
        timeout_s: float = 55.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        if not base_url:
            raise ProviderConfigError("model_base_url is required for the http provider")
        self._url = f"{base_url.rstrip('/')}/generate"
        self._api_key = api_key
        self._timeout_s = timeout_s
        # Injected clients let tests use httpx.MockTransport.
        self._client = client

    async def complete(self, prompt: str, *, max_tokens: int, temperature: float) -> Completion:
        payload = {"prompt": prompt, "max_tokens": max_tokens, "temperature": temperature}
        headers = {"Content-Type": "application/json"}
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"

        try:
            if self._client is not None:
                response = await self._client.post(self._url, json=payload, headers=headers, timeout=self._timeout_s)
            else:
                async with httpx.AsyncClient(timeout=self._timeout_s) as client:
                    response = await client.post(self._url, json=payload, headers=headers)
        except httpx.TimeoutException as exc:
            logger.warning("model_request_timeout url=%s timeout_s=%s", self._url, self._timeout_s)
            raise ModelUnavailable("Model request timed out") from exc
        except httpx.HTTPError as exc:
            logger.warning("model_request_failed url=%s error=%s", self._url, type(exc).__name__)
            raise ModelUnavailable("Model endpoint unreachable") from exc

        if not response.is_success:
            excerpt = response.text[:_BODY_EXCERPT_CHARS]
            logger.warning("model_non_success status=%s", response.status_code)
            raise ModelUnavailable(
                f"Model endpoint returned {response.status_code}",
                status_code=response.status_code,
                body_excerpt=excerpt,
            )

        try:
            data = response.json()
        except ValueError as exc:
            raise ModelUnavailable(
                "Model endpoint returned a non-JSON body",
                status_code=response.status_code,
                body_excerpt=response.text[:_BODY_EXCERPT_CHARS],
            ) from exc
        return _parse_completion(data, status_code=response.status_code)


def _parse_completion(data: Any, *, status_code: int) -> Completion:
    if not isinstance(data, dict):
        raise ModelUnavailable("Model response must be an object", status_code=status_code)
    if data.get("error"):
        raise ModelUnavailable(
            "Model endpoint reported an error",
            status_code=status_code,
            body_excerpt=str(data["error"])[:_BODY_EXCERPT_CHARS],
        )
    completion = data.get("completion")
    if completion is None:
        # Some deployments wrap the text in an output field or list.
        output = data.get("output")
        completion = output[0] if isinstance(output, list) and output else output
    if not isinstance(completion, str):
        raise ModelUnavailable("Model response missing completion", status_code=status_code)

    usage = data.get("usage") if isinstance(data.get("usage"), dict) else {}
    return Completion(
        text=completion,
        model=data.get("model"),
        prompt_tokens=_optional_int(usage.get("prompt_tokens")),
        output_tokens=_optional_int(usage.get("completion_tokens") or usage.get("output_tokens")),
    )


def _optional_int(value: Any) -> int | None:
    if value is None:
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None
