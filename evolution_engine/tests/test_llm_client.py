"""
Tests for the LLM client over an ``httpx.MockTransport``.
"""

import json

import httpx
import pytest

from evolution_engine.core.errors import MalformedResponse, TransientProviderError
from evolution_engine.models.enums import ProviderStatus
from evolution_engine.services.llm_client import LLMClient, extract_json_object


def chat_body(text: str) -> dict:
    return {
        'choices': [{'message': {'role': 'assistant', 'content': text}}],
        'usage': {'prompt_tokens': 120, 'completion_tokens': 45},
    }


def client_for(settings, responses):
    """LLMClient whose transport replays ``responses`` in order and records requests."""
    requests = []
    queue = list(responses)

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return queue.pop(0)

    http_client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    configured = settings.model_copy(update={'llm_api_key': 'sk-test'})
    return LLMClient(configured, http_client=http_client), requests


class TestExtractJsonObject:

    def test_fenced_block(self) -> None:
        assert extract_json_object('结果如下：\n```json\n{"a": 1}\n```') == {'a': 1}

    def test_object_inside_prose(self) -> None:
        assert extract_json_object('好的 {"decision": "approve"} 以上') == {'decision': 'approve'}

    def test_no_object(self) -> None:
        with pytest.raises(MalformedResponse):
            extract_json_object('[1, 2, 3]')


@pytest.mark.asyncio
class TestComplete:

    async def test_success(self, settings) -> None:
        llm, requests = client_for(settings, [httpx.Response(200, json=chat_body('你好'))])

        completion = await llm.complete([{'role': 'user', 'content': 'hi'}])

        assert completion.text == '你好'
        assert completion.input_tokens == 120
        assert completion.output_tokens == 45
        assert requests[0].headers['Authorization'] == 'Bearer sk-test'
        assert json.loads(requests[0].content)['model'] == settings.llm_model

    async def test_retries_once_on_server_error(self, settings) -> None:
        llm, requests = client_for(settings, [
            httpx.Response(503, text='overloaded'),
            httpx.Response(200, json=chat_body('ok')),
        ])

        completion = await llm.complete([{'role': 'user', 'content': 'hi'}])

        assert completion.text == 'ok'
        assert len(requests) == 2

    async def test_gives_up_after_retry(self, settings) -> None:
        llm, requests = client_for(settings, [httpx.Response(429), httpx.Response(429)])

        with pytest.raises(TransientProviderError) as exc_info:
            await llm.complete([{'role': 'user', 'content': 'hi'}])

        assert exc_info.value.status_code == 429
        assert len(requests) == 2

    async def test_client_error_is_not_retried(self, settings) -> None:
        llm, requests = client_for(settings, [httpx.Response(401, text='invalid key')])

        with pytest.raises(TransientProviderError):
            await llm.complete([{'role': 'user', 'content': 'hi'}])

        assert len(requests) == 1

    async def test_unexpected_body(self, settings) -> None:
        llm, _ = client_for(settings, [httpx.Response(200, json={'error': 'nothing'})])

        with pytest.raises(MalformedResponse):
            await llm.complete([{'role': 'user', 'content': 'hi'}])

    async def test_unconfigured(self, settings) -> None:
        llm = LLMClient(settings)

        assert llm.configured is False
        with pytest.raises(TransientProviderError):
            await llm.complete([{'role': 'user', 'content': 'hi'}])
        await llm.aclose()


@pytest.mark.asyncio
class TestCheckProvider:

    @pytest.mark.parametrize('status_code,expected', [
        (402, ProviderStatus.BALANCE_EMPTY),
        (403, ProviderStatus.AUTH_FAILED),
        (429, ProviderStatus.RATE_LIMITED),
        (500, ProviderStatus.ERROR),
    ])
    async def test_classification(self, settings, status_code, expected) -> None:
        llm, _ = client_for(settings, [httpx.Response(status_code)])

        check = await llm.check_provider()

        assert check.status == expected

    async def test_ok(self, settings) -> None:
        llm, _ = client_for(settings, [httpx.Response(200, json=chat_body('pong'))])

        check = await llm.check_provider()

        assert check.status == ProviderStatus.OK
        assert check.latency_ms is not None

    async def test_not_configured(self, settings) -> None:
        check = await LLMClient(settings).check_provider()

        assert check.status == ProviderStatus.NOT_CONFIGURED
