"""
Client for the LLM text-completion collaborator.

The engine treats the model as an opaque service: it sends a message list and
receives text plus token counts. This module owns the HTTP details (an
OpenAI-compatible chat-completions endpoint over httpx), the mandatory
per-call timeout, the single retry for transient failures and the provider
probe used by the administrative health view.

Error mapping:
- timeout, transport failure, HTTP 429 and 5xx -> TransientProviderError
  (retried once after ``llm_retry_backoff_seconds``)
- other HTTP 4xx -> TransientProviderError without retry
- undecodable body or missing content -> MalformedResponse
"""

import asyncio
import json
import logging
import re
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import httpx

from evolution_engine.core.config import Settings
from evolution_engine.core.errors import MalformedResponse, TransientProviderError
from evolution_engine.models.enums import ProviderStatus
from evolution_engine.models.schemas import ProviderCheck


logger = logging.getLogger(__name__)

_FENCE_RE = re.compile(r"```(?:json)?\s*(.*?)```", re.DOTALL)


@dataclass
class Completion:
    text: str
    input_tokens: int = 0
    output_tokens: int = 0


def _is_retryable(error: TransientProviderError) -> bool:
    return error.status_code is None or error.status_code == 429 or error.status_code >= 500


def extract_json_object(text: str) -> Dict[str, Any]:
    """
    Pull the first JSON object out of model output.

    Accepts bare JSON, fenced ```json blocks, and objects surrounded by prose.

    Raises:
        MalformedResponse: If no JSON object can be decoded.
    """
    candidates: List[str] = []
    match = _FENCE_RE.search(text)
    if match:
        candidates.append(match.group(1))
    start, end = text.find('{'), text.rfind('}')
    if start != -1 and end > start:
        candidates.append(text[start:end + 1])

    for candidate in candidates:
        try:
            value = json.loads(candidate)
        except ValueError:
            continue
        if isinstance(value, dict):
            return value

    raise MalformedResponse("No JSON object in model output", raw_text=text[:2000])


class LLMClient:
    """
    Thin async client around a chat-completions endpoint.

    Args:
        settings: Endpoint, key, model, timeouts and sampling parameters.
        http_client: Optional pre-built ``httpx.AsyncClient`` (tests inject a
            client backed by ``httpx.MockTransport``).
    """

    def __init__(self, settings: Settings, http_client: Optional[httpx.AsyncClient] = None):
        self._settings = settings
        self._client = http_client or httpx.AsyncClient(
            timeout=httpx.Timeout(settings.llm_timeout_seconds)
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    @property
    def configured(self) -> bool:
        return bool(self._settings.llm_api_key)

    async def complete(
        self,
        messages: List[Dict[str, str]],
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
    ) -> Completion:
        """
        Send a chat completion request and return the generated text.

        Raises:
            TransientProviderError: After the retry is exhausted, or at once
                for non-retryable HTTP errors.
            MalformedResponse: If the provider's body cannot be understood.
        """
        payload = {
            'model': self._settings.llm_model,
            'messages': messages,
            'stream': False,
            'temperature': self._settings.llm_temperature if temperature is None else temperature,
            'max_tokens': max_tokens or self._settings.llm_max_tokens,
        }

        try:
            return await self._post(payload, self._settings.llm_timeout_seconds)
        except TransientProviderError as e:
            if not _is_retryable(e):
                raise
            logger.warning(
                "LLM call failed (%s), retrying in %.1fs",
                e, self._settings.llm_retry_backoff_seconds,
            )

        await asyncio.sleep(self._settings.llm_retry_backoff_seconds)
        return await self._post(payload, self._settings.llm_timeout_seconds)

    async def _post(self, payload: Dict[str, Any], timeout: float) -> Completion:
        if not self.configured:
            raise TransientProviderError("LLM API key not configured")

        headers = {
            'Content-Type': 'application/json',
            'Authorization': f"Bearer {self._settings.llm_api_key}",
        }

        try:
            response = await asyncio.wait_for(
                self._client.post(self._settings.llm_endpoint, json=payload, headers=headers),
                timeout=timeout,
            )
        except (asyncio.TimeoutError, httpx.TimeoutException) as e:
            raise TransientProviderError(f"LLM call timed out after {timeout:.0f}s") from e
        except httpx.HTTPError as e:
            raise TransientProviderError(f"LLM transport error: {e}") from e

        if response.status_code >= 400:
            raise TransientProviderError(
                f"LLM API error {response.status_code}: {response.text[:200]}",
                status_code=response.status_code,
            )

        try:
            body = response.json()
            text = body['choices'][0]['message']['content']
        except (ValueError, KeyError, IndexError, TypeError) as e:
            raise MalformedResponse(
                f"Unexpected completion body: {e}", raw_text=response.text[:2000]
            ) from e

        if not isinstance(text, str):
            raise MalformedResponse("Completion content is not text")

        usage = body.get('usage') or {}
        return Completion(
            text=text,
            input_tokens=int(usage.get('prompt_tokens') or 0),
            output_tokens=int(usage.get('completion_tokens') or 0),
        )

    async def check_provider(self) -> ProviderCheck:
        """
        Probe the provider with a one-token request and classify the result.

        Never raises; the classification is the result.
        """
        provider = self._settings.llm_provider
        if not self.configured:
            return ProviderCheck(provider=provider, status=ProviderStatus.NOT_CONFIGURED)

        payload = {
            'model': self._settings.llm_model,
            'messages': [{'role': 'user', 'content': 'ping'}],
            'max_tokens': 1,
            'stream': False,
        }
        started = time.monotonic()
        try:
            await self._post(payload, self._settings.llm_probe_timeout_seconds)
        except TransientProviderError as e:
            return ProviderCheck(
                provider=provider,
                status=self._classify(e),
                latency_ms=round((time.monotonic() - started) * 1000, 1),
                detail=str(e)[:200],
            )
        except MalformedResponse as e:
            return ProviderCheck(provider=provider, status=ProviderStatus.ERROR, detail=str(e)[:200])

        return ProviderCheck(
            provider=provider,
            status=ProviderStatus.OK,
            latency_ms=round((time.monotonic() - started) * 1000, 1),
        )

    @staticmethod
    def _classify(error: TransientProviderError) -> ProviderStatus:
        code = error.status_code
        if code == 429:
            return ProviderStatus.RATE_LIMITED
        if code in (401, 403):
            return ProviderStatus.AUTH_FAILED
        if code == 402:
            return ProviderStatus.BALANCE_EMPTY
        if code is None and 'timed out' in str(error):
            return ProviderStatus.TIMEOUT
        return ProviderStatus.ERROR
