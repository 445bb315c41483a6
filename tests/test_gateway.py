"""Tests for the completion gateway over a mocked HTTP transport."""

import json

import httpx
import pytest

from forkchat.config import GatewayConfig, ModelConfig
from forkchat.errors import (
    ContinuationNotFound,
    GatewayTimeout,
    Malformed,
    RateLimited,
    Unauthorized,
    UnknownGatewayError,
    is_continuation_broken,
)
from forkchat.gateway import (
    DEFAULT_CHAT_MODEL,
    CompletionGateway,
    ModelPolicy,
    RequestKind,
    classify_error,
    extract_output_text,
)
from forkchat.models import Mode


def _ok(response_id="resp_abc", text="hi there"):
    return {
        "id": response_id,
        "status": "completed",
        "model": "gpt-5-mini",
        "output": [
            {"type": "reasoning", "summary": []},
            {"type": "message", "content": [{"type": "output_text", "text": text}]},
        ],
    }


def _gateway(handler, **config_overrides):
    config = GatewayConfig(api_key="sk-test", base_url="https://api.test/v1", **config_overrides)
    return CompletionGateway(config, ModelConfig(), transport=httpx.MockTransport(handler))


class TestComplete:
    """Successful calls and request shape."""

    @pytest.mark.asyncio
    async def test_chat_request_payload(self):
        seen = {}

        def handler(request):
            seen["url"] = str(request.url)
            seen["auth"] = request.headers["Authorization"]
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json=_ok())

        async with _gateway(handler) as gateway:
            response = await gateway.complete(
                "hello", kind=RequestKind.CHAT_DEEP, continuation_token="resp_prev"
            )

        assert response.continuation_token == "resp_abc"
        assert response.output_text == "hi there"
        assert seen["url"] == "https://api.test/v1/responses"
        assert seen["auth"] == "Bearer sk-test"
        body = seen["body"]
        assert body["model"] == DEFAULT_CHAT_MODEL
        assert body["store"] is True
        assert body["previous_response_id"] == "resp_prev"
        assert body["reasoning"] == {"effort": "high"}
        assert body["text"]["verbosity"] == "low"
        assert body["input"] == [{"role": "user", "content": "hello"}]
        assert "instructions" in body
        assert "temperature" not in body
        assert "max_output_tokens" not in body

    @pytest.mark.asyncio
    async def test_summarize_is_unchained(self):
        seen = {}

        def handler(request):
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json=_ok())

        async with _gateway(handler) as gateway:
            await gateway.complete("summarize this", kind=RequestKind.SUMMARIZE)

        body = seen["body"]
        assert body["store"] is False
        assert body["model"] == "gpt-5-nano"
        assert body["reasoning"] == {"effort": "low"}
        assert "previous_response_id" not in body
        assert "instructions" not in body

    @pytest.mark.asyncio
    async def test_missing_api_key(self):
        gateway = CompletionGateway(GatewayConfig(api_key=""))
        with pytest.raises(Unauthorized):
            await gateway.complete("hi", kind=RequestKind.CHAT_FAST)

    @pytest.mark.asyncio
    async def test_missing_id_is_error(self):
        async with _gateway(lambda r: httpx.Response(200, json={"output_text": "x"})) as gateway:
            with pytest.raises(UnknownGatewayError):
                await gateway.complete("hi", kind=RequestKind.CHAT_FAST)

    @pytest.mark.asyncio
    async def test_stats(self):
        async with _gateway(lambda r: httpx.Response(200, json=_ok())) as gateway:
            await gateway.complete("hi", kind=RequestKind.CHAT_FAST)
            stats = gateway.get_stats()
        assert stats["request_count"] == 1
        assert stats["failure_count"] == 0


class TestErrors:
    """HTTP failures map onto the error taxonomy."""

    @pytest.mark.asyncio
    async def test_previous_response_not_found(self):
        def handler(request):
            return httpx.Response(400, json={"error": {
                "message": "Previous response with id 'resp_x' not found.",
                "type": "invalid_request_error",
                "code": "previous_response_not_found",
            }})

        async with _gateway(handler) as gateway:
            with pytest.raises(ContinuationNotFound) as exc_info:
                await gateway.complete("hi", kind=RequestKind.CHAT_FAST, continuation_token="resp_x")
        assert is_continuation_broken(exc_info.value)
        assert exc_info.value.status_code == 400

    @pytest.mark.asyncio
    async def test_timeout(self):
        def handler(request):
            raise httpx.ReadTimeout("timed out", request=request)

        async with _gateway(handler) as gateway:
            with pytest.raises(GatewayTimeout):
                await gateway.complete("hi", kind=RequestKind.CHAT_FAST)

    @pytest.mark.asyncio
    async def test_connection_error(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        async with _gateway(handler) as gateway:
            with pytest.raises(UnknownGatewayError):
                await gateway.complete("hi", kind=RequestKind.CHAT_FAST)
            assert gateway.get_stats()["failure_count"] == 1

    def test_classify_chain_broken(self):
        error = classify_error(409, {"code": "chain_broken", "message": "chain broken"})
        assert isinstance(error, ContinuationNotFound)

    def test_classify_by_status(self):
        assert isinstance(classify_error(429, {"error": {"message": "slow"}}), RateLimited)
        assert isinstance(classify_error(401, {"error": {"message": "bad key"}}), Unauthorized)
        assert isinstance(classify_error(400, {"error": {"message": "bad"}}), Malformed)
        assert isinstance(classify_error(502, {}), UnknownGatewayError)

    def test_classify_non_json_body(self):
        error = classify_error(500, {})
        assert "500" in error.message
        assert not is_continuation_broken(error)


class TestOutputExtraction:

    def test_prefers_output_text(self):
        assert extract_output_text({"output_text": "direct"}) == "direct"

    def test_walks_message_items(self):
        assert extract_output_text(_ok(text="nested")) == "nested"

    def test_empty(self):
        assert extract_output_text({"output": []}) == ""


class TestModelPolicy:
    """Chained kinds always share one model."""

    def test_explicit_chat_model(self):
        policy = ModelPolicy(ModelConfig(chat="m-chat", fast="m-fast", deep="m-deep"))
        assert policy.model_for(RequestKind.CHAT_FAST) == "m-chat"
        assert policy.model_for(RequestKind.CHAT_DEEP) == "m-chat"

    def test_mismatch_uses_deep(self):
        policy = ModelPolicy(ModelConfig(fast="m-fast", deep="m-deep"))
        assert policy.model_for(RequestKind.CHAT_FAST) == "m-deep"
        assert policy.model_for(RequestKind.CHAT_DEEP) == "m-deep"

    def test_single_override(self):
        policy = ModelPolicy(ModelConfig(fast="m-fast"))
        assert policy.chained_chat_model() == "m-fast"

    def test_summarize_model_independent(self):
        policy = ModelPolicy(ModelConfig(chat="m-chat", summarize="m-small"))
        assert policy.model_for(RequestKind.SUMMARIZE) == "m-small"

    def test_kind_for_mode(self):
        assert RequestKind.for_mode(Mode.FAST) is RequestKind.CHAT_FAST
        assert RequestKind.for_mode(Mode.DEEP) is RequestKind.CHAT_DEEP
        assert not RequestKind.SUMMARIZE.chained
