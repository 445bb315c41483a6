"""Completion gateway: client for a stateful Responses-style completion API.

Each successful call returns a response id that a later call can pass as
previous_response_id to continue the same server-side conversation. The
gateway owns the per-kind policy (model, reasoning effort, verbosity,
storage) and maps wire failures onto the typed taxonomy in
forkchat.errors.

Architecture:
    ChainController / BranchManager / Summarizer
        -> CompletionGateway.complete()
        -> HTTP POST {base_url}/responses
"""

import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any

import httpx

from forkchat.config import GatewayConfig, ModelConfig
from forkchat.errors import (
    CONTINUATION_ERROR_CODES,
    CONTINUATION_ERROR_MARKERS,
    ContinuationNotFound,
    GatewayError,
    GatewayTimeout,
    Malformed,
    RateLimited,
    Unauthorized,
    UnknownGatewayError,
)
from forkchat.models import Mode

logger = logging.getLogger(__name__)

DEFAULT_CHAT_MODEL = "gpt-5-mini"


class RequestKind(Enum):
    """Call kinds with pre-configured settings."""
    CHAT_FAST = "chat_fast"
    CHAT_DEEP = "chat_deep"
    SUMMARIZE = "summarize"

    @classmethod
    def for_mode(cls, mode: Mode) -> "RequestKind":
        return cls.CHAT_FAST if mode is Mode.FAST else cls.CHAT_DEEP

    @property
    def chained(self) -> bool:
        """Chained kinds must be stored server-side and share one model."""
        return self in (RequestKind.CHAT_FAST, RequestKind.CHAT_DEEP)


# Reasoning effort never goes below "low" for this model family
REASONING_EFFORT: dict[RequestKind, str] = {
    RequestKind.CHAT_FAST: "low",
    RequestKind.CHAT_DEEP: "high",
    RequestKind.SUMMARIZE: "low",
}

TEXT_VERBOSITY: dict[RequestKind, str] = {
    RequestKind.CHAT_FAST: "low",
    RequestKind.CHAT_DEEP: "low",
    RequestKind.SUMMARIZE: "low",
}


@dataclass
class GatewayResponse:
    """Successful completion."""
    continuation_token: str
    output_text: str
    status: str = "completed"
    model: str = ""


class ModelPolicy:
    """Resolves the model for each request kind."""

    def __init__(self, models: ModelConfig):
        self.models = models
        self._mismatch_warned = False

    def chained_chat_model(self) -> str:
        """One model for both chat kinds so chaining survives mode switches.

        Priority: explicit chat model, then deep, then fast, then default.
        """
        if self.models.chat:
            return self.models.chat

        fast, deep = self.models.fast, self.models.deep
        if fast and deep and fast != deep:
            if not self._mismatch_warned:
                logger.warning(
                    f"Fast model ({fast}) != deep model ({deep}); using {deep} for both "
                    f"so response chaining keeps working. Set models.chat to pin one."
                )
                self._mismatch_warned = True
            return deep
        return deep or fast or DEFAULT_CHAT_MODEL

    def model_for(self, kind: RequestKind) -> str:
        if kind.chained:
            return self.chained_chat_model()
        return self.models.summarize

    def describe(self, kind: RequestKind) -> dict[str, str]:
        return {
            "model": self.model_for(kind),
            "reasoning": REASONING_EFFORT[kind],
            "verbosity": TEXT_VERBOSITY[kind],
        }


def extract_output_text(payload: dict) -> str:
    """Pull the generated text out of a response body."""
    if payload.get("output_text"):
        return payload["output_text"]

    for item in payload.get("output") or []:
        if item.get("type") != "message":
            continue
        for content in item.get("content") or []:
            if content.get("type") == "output_text":
                return content.get("text", "")
    return ""


def classify_error(status_code: int, payload: Any) -> GatewayError:
    """Map an HTTP failure onto the gateway error taxonomy."""
    error_body: dict = {}
    if isinstance(payload, dict):
        raw = payload.get("error", payload)
        error_body = raw if isinstance(raw, dict) else {"message": str(raw)}

    code = error_body.get("code") or (payload.get("code") if isinstance(payload, dict) else None)
    message = error_body.get("message") or f"Completion request failed ({status_code})"
    lowered = message.lower()

    if code in CONTINUATION_ERROR_CODES or any(m in lowered for m in CONTINUATION_ERROR_MARKERS):
        return ContinuationNotFound(message, status_code=status_code, code=code)
    if status_code == 429:
        return RateLimited(message, status_code=status_code, code=code)
    if status_code in (401, 403):
        return Unauthorized(message, status_code=status_code, code=code)
    if status_code in (400, 404, 422):
        return Malformed(message, status_code=status_code, code=code)
    return UnknownGatewayError(message, status_code=status_code, code=code)


class CompletionGateway:
    """Async client for the completion service."""

    def __init__(
        self,
        config: GatewayConfig | None = None,
        models: ModelConfig | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.config = config or GatewayConfig()
        self.policy = ModelPolicy(models or ModelConfig())
        self._transport = transport
        self._client: httpx.AsyncClient | None = None
        self._request_count = 0
        self._failure_count = 0
        self._total_latency_ms = 0.0

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            timeout = httpx.Timeout(
                self.config.request_timeout,
                connect=self.config.connect_timeout,
            )
            self._client = httpx.AsyncClient(
                base_url=self.config.base_url.rstrip("/"),
                timeout=timeout,
                transport=self._transport,
            )
        return self._client

    def build_payload(
        self,
        input_text: str,
        kind: RequestKind,
        continuation_token: str | None = None,
        instructions: str | None = None,
    ) -> dict[str, Any]:
        """Request body for a kind. Never sends temperature or token caps."""
        payload: dict[str, Any] = {
            "model": self.policy.model_for(kind),
            "input": [{"role": "user", "content": input_text}],
            "store": kind.chained,
            "reasoning": {"effort": REASONING_EFFORT[kind]},
            "text": {
                "format": {"type": "text"},
                "verbosity": TEXT_VERBOSITY[kind],
            },
        }
        if continuation_token:
            payload["previous_response_id"] = continuation_token
        if instructions:
            payload["instructions"] = instructions
        return payload

    async def complete(
        self,
        input_text: str,
        *,
        kind: RequestKind,
        continuation_token: str | None = None,
        instructions: str | None = None,
    ) -> GatewayResponse:
        """Run one completion call.

        Args:
            input_text: User-visible input for this turn
            kind: Request kind (selects model, effort, storage)
            continuation_token: Response id to continue from, if any
            instructions: System instructions; chat kinds default to config

        Raises:
            GatewayError subclass describing the failure
        """
        if not self.config.api_key:
            raise Unauthorized("OPENAI_API_KEY not configured")

        if instructions is None and kind.chained:
            instructions = self.config.instructions
        payload = self.build_payload(input_text, kind, continuation_token, instructions)
        info = self.policy.describe(kind)
        logger.info(
            f"[{kind.value}] request model={info['model']} reasoning={info['reasoning']} "
            f"verbosity={info['verbosity']} continued={bool(continuation_token)}"
        )

        start = time.monotonic()
        self._request_count += 1
        try:
            response = await self._get_client().post(
                "/responses",
                json=payload,
                headers={"Authorization": f"Bearer {self.config.api_key}"},
            )
        except httpx.TimeoutException as e:
            self._failure_count += 1
            raise GatewayTimeout(f"Completion request timed out: {e}") from e
        except httpx.HTTPError as e:
            self._failure_count += 1
            raise UnknownGatewayError(f"Completion request failed: {e}") from e
        finally:
            self._total_latency_ms += (time.monotonic() - start) * 1000

        try:
            body = response.json()
        except ValueError:
            body = {}

        if response.status_code != 200:
            self._failure_count += 1
            error = classify_error(response.status_code, body)
            logger.error(
                f"[{kind.value}] API error status={response.status_code} "
                f"code={error.code} model={info['model']}: {error.message}"
            )
            raise error

        response_id = body.get("id")
        if not response_id:
            self._failure_count += 1
            raise UnknownGatewayError("Completion response carried no id")

        output_text = extract_output_text(body)
        status = body.get("status", "completed")
        if not output_text:
            logger.warning(f"[{kind.value}] empty output_text for response {response_id}")
        if status == "incomplete":
            logger.warning(
                f"[{kind.value}] response incomplete: {body.get('incomplete_details')}"
            )

        logger.info(f"[{kind.value}] response id={response_id} status={status}")
        return GatewayResponse(
            continuation_token=response_id,
            output_text=output_text,
            status=status,
            model=body.get("model", info["model"]),
        )

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> "CompletionGateway":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.aclose()

    def get_stats(self) -> dict[str, Any]:
        """Get client statistics."""
        avg_ms = (
            self._total_latency_ms / self._request_count
            if self._request_count > 0
            else 0
        )
        return {
            "request_count": self._request_count,
            "failure_count": self._failure_count,
            "avg_latency_ms": round(avg_ms, 1),
            "base_url": self.config.base_url,
            "chat_model": self.policy.chained_chat_model(),
        }
