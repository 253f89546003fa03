"""Multi-provider LLM client with streaming support.

OpenAI, Groq and Google (through its OpenAI-compatible endpoint) share the
chat-completions wire format. Anthropic speaks the messages API; requests are
translated on the way out and both its JSON responses and SSE events are
normalized into the same ``LLMResponse`` / ``StreamingChunk`` types.
"""

import asyncio
import json
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from typing import Any

import httpx
import structlog

from firestarter_api.config import get_settings
from firestarter_api.providers import ProviderSelection

logger = structlog.get_logger()

ANTHROPIC_VERSION = "2023-06-01"

# Anthropic stop reasons mapped onto OpenAI finish reasons
ANTHROPIC_FINISH_REASONS = {
    "end_turn": "stop",
    "stop_sequence": "stop",
    "max_tokens": "length",
    "tool_use": "tool_calls",
}


class LLMError(Exception):
    """Base exception for LLM client errors."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class LLMAuthError(LLMError):
    """Raised when authentication fails or no credential is configured."""

    pass


class LLMRateLimitError(LLMError):
    """Raised when rate limit is exceeded."""

    pass


@dataclass
class LLMUsage:
    """Token usage information."""

    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0


@dataclass
class LLMResponse:
    """Non-streaming response from the LLM."""

    content: str
    model: str
    finish_reason: str | None = None
    usage: LLMUsage = field(default_factory=LLMUsage)

    @property
    def tokens_used(self) -> int:
        return self.usage.total_tokens


@dataclass
class StreamingChunk:
    """A chunk from a streaming response."""

    content: str = ""
    finish_reason: str | None = None
    tokens_used: int = 0


async def _sse_data(lines: AsyncIterator[str]) -> AsyncIterator[str]:
    """Yield the payload of each SSE `data:` line."""
    async for line in lines:
        if line.startswith("data:"):
            yield line[5:].strip()


def to_anthropic_messages(
    messages: list[dict[str, str]],
) -> tuple[str, list[dict[str, str]]]:
    """Split OpenAI-style messages into an Anthropic system prompt and turns.

    System messages are joined into the system prompt. Roles other than user
    and assistant become user turns, and consecutive turns of the same role are
    merged because the messages API requires alternation.
    """
    system_parts: list[str] = []
    turns: list[dict[str, str]] = []

    for msg in messages:
        role = msg.get("role", "user")
        content = msg.get("content") or ""
        if role == "system":
            if content:
                system_parts.append(content)
            continue
        if role not in ("user", "assistant"):
            name = msg.get("name")
            content = f"[{role} {name}]: {content}" if name else content
            role = "user"
        if turns and turns[-1]["role"] == role:
            turns[-1]["content"] += f"\n\n{content}"
        else:
            turns.append({"role": role, "content": content})

    # The first turn must come from the user
    if turns and turns[0]["role"] != "user":
        turns.insert(0, {"role": "user", "content": "(conversation continues)"})

    return "\n\n".join(system_parts), turns


class LLMClient:
    """Async client for one LLM provider."""

    def __init__(
        self,
        selection: ProviderSelection,
        temperature: float | None = None,
        max_tokens: int | None = None,
        timeout: float | None = None,
    ):
        """Initialize the client.

        Args:
            selection: Provider, credential and model to use.
            temperature: Sampling temperature. Defaults to config value.
            max_tokens: Maximum tokens in response. Defaults to config value.
            timeout: Request timeout in seconds. Defaults to config value.
        """
        settings = get_settings()
        self._selection = selection
        self._provider = selection.provider
        self._api_key = selection.api_key
        self._model = selection.model
        self._temperature = settings.llm_temperature if temperature is None else temperature
        self._max_tokens = max_tokens or settings.llm_max_tokens
        self._timeout = timeout or settings.llm_timeout_seconds
        self._client: httpx.AsyncClient | None = None

    async def __aenter__(self) -> "LLMClient":
        """Enter async context."""
        await self.connect()
        return self

    async def __aexit__(self, _exc_type: Any, _exc_val: Any, _exc_tb: Any) -> None:
        """Exit async context."""
        await self.close()

    @property
    def provider_name(self) -> str:
        return self._provider.name

    @property
    def model(self) -> str:
        return self._model

    @property
    def is_configured(self) -> bool:
        """Check if the client has a credential for its provider."""
        return bool(self._api_key)

    def _headers(self) -> dict[str, str]:
        if self._provider.wire_format == "anthropic":
            return {
                "x-api-key": self._api_key,
                "anthropic-version": ANTHROPIC_VERSION,
                "Content-Type": "application/json",
            }
        return {
            "Authorization": f"Bearer {self._api_key}",
            "Content-Type": "application/json",
        }

    async def connect(self) -> None:
        """Create the HTTP client.

        Unconfigured clients skip this; their requests are served by the mock
        handlers or rejected.
        """
        if not self.is_configured or self._client is not None:
            return

        self._client = httpx.AsyncClient(
            base_url=self._provider.base_url,
            headers=self._headers(),
            timeout=httpx.Timeout(self._timeout, connect=10.0),
        )
        logger.debug("LLM client connected", provider=self.provider_name, model=self._model)

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None

    def _endpoint(self) -> str:
        return "/messages" if self._provider.wire_format == "anthropic" else "/chat/completions"

    def _build_payload(
        self,
        messages: list[dict[str, str]],
        stream: bool,
        temperature: float | None,
        max_tokens: int | None,
    ) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "model": self._model,
            "max_tokens": max_tokens or self._max_tokens,
            "temperature": self._temperature if temperature is None else temperature,
            "stream": stream,
        }
        if self._provider.wire_format == "anthropic":
            system, turns = to_anthropic_messages(messages)
            if system:
                payload["system"] = system
            payload["messages"] = turns
        else:
            payload["messages"] = messages
            if stream and self._provider.name == "openai":
                payload["stream_options"] = {"include_usage": True}
        return payload

    def _check_configured(self) -> bool:
        """Return True when requests should be mocked.

        Raises:
            LLMAuthError: If the client has no credential and mock mode is off.
        """
        if self.is_configured:
            return False
        if get_settings().mock_llm:
            logger.info("MOCK_LLM=true: Using mock LLM response", provider=self.provider_name)
            return True
        error_msg = (
            f"{self._provider.env_var} not configured with MOCK_LLM=false. "
            f"Either set {self._provider.env_var} or set MOCK_LLM=true for testing."
        )
        logger.error(error_msg)
        raise LLMAuthError(error_msg, status_code=500)

    async def chat(
        self,
        messages: list[dict[str, str]],
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> LLMResponse:
        """Send a chat completion request (non-streaming).

        Raises:
            LLMError: If the request fails.
            LLMAuthError: If the credential is missing or rejected.
        """
        if self._check_configured():
            return await self._mock_chat(messages)

        if not self._client:
            await self.connect()

        payload = self._build_payload(messages, False, temperature, max_tokens)

        try:
            response = await self._client.post(self._endpoint(), json=payload)
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPStatusError as e:
            self._handle_http_error(e)
            raise
        except httpx.HTTPError as e:
            logger.error("LLM transport error", provider=self.provider_name, error=str(e))
            raise LLMError(f"{self._provider.label} request failed: {e}") from e

        if self._provider.wire_format == "anthropic":
            result = self._parse_anthropic_response(data)
        else:
            result = self._parse_openai_response(data)

        logger.info(
            "LLM response received",
            provider=self.provider_name,
            tokens=result.tokens_used,
            finish_reason=result.finish_reason,
        )
        return result

    def _parse_openai_response(self, data: dict[str, Any]) -> LLMResponse:
        choice = (data.get("choices") or [{}])[0]
        usage = data.get("usage") or {}
        return LLMResponse(
            content=(choice.get("message") or {}).get("content") or "",
            model=data.get("model") or self._model,
            finish_reason=choice.get("finish_reason"),
            usage=LLMUsage(
                prompt_tokens=usage.get("prompt_tokens", 0),
                completion_tokens=usage.get("completion_tokens", 0),
                total_tokens=usage.get("total_tokens", 0),
            ),
        )

    def _parse_anthropic_response(self, data: dict[str, Any]) -> LLMResponse:
        text = "".join(
            block.get("text", "") for block in data.get("content", []) if block.get("type") == "text"
        )
        usage = data.get("usage") or {}
        prompt_tokens = usage.get("input_tokens", 0)
        completion_tokens = usage.get("output_tokens", 0)
        stop_reason = data.get("stop_reason")
        return LLMResponse(
            content=text,
            model=data.get("model") or self._model,
            finish_reason=ANTHROPIC_FINISH_REASONS.get(stop_reason, stop_reason),
            usage=LLMUsage(
                prompt_tokens=prompt_tokens,
                completion_tokens=completion_tokens,
                total_tokens=prompt_tokens + completion_tokens,
            ),
        )

    async def chat_stream(
        self,
        messages: list[dict[str, str]],
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> AsyncIterator[StreamingChunk]:
        """Send a streaming chat completion request.

        Yields:
            StreamingChunk objects; the last one carries a finish_reason.

        Raises:
            LLMError: If the request fails.
            LLMAuthError: If the credential is missing or rejected.
        """
        if self._check_configured():
            async for chunk in self._mock_chat_stream(messages):
                yield chunk
            return

        if not self._client:
            await self.connect()

        payload = self._build_payload(messages, True, temperature, max_tokens)
        if self._provider.wire_format == "anthropic":
            parse = self._parse_anthropic_events
        else:
            parse = self._parse_openai_events

        try:
            async with self._client.stream("POST", self._endpoint(), json=payload) as response:
                if response.is_error:
                    await response.aread()
                response.raise_for_status()
                async for chunk in parse(response.aiter_lines()):
                    yield chunk
                    if chunk.finish_reason:
                        break

            logger.info("Streaming response completed", provider=self.provider_name)

        except httpx.HTTPStatusError as e:
            self._handle_http_error(e)
            raise
        except httpx.HTTPError as e:
            logger.error("LLM stream transport error", provider=self.provider_name, error=str(e))
            raise LLMError(f"{self._provider.label} stream failed: {e}") from e

    async def _parse_openai_events(self, lines: AsyncIterator[str]) -> AsyncIterator[StreamingChunk]:
        total_tokens = 0
        finish_reason: str | None = None

        async for data_str in _sse_data(lines):
            if data_str == "[DONE]":
                break
            try:
                data = json.loads(data_str)
            except json.JSONDecodeError:
                logger.warning("Failed to parse streaming chunk", data=data_str[:200])
                continue

            if "usage" in data and data["usage"]:
                total_tokens = data["usage"].get("total_tokens", total_tokens)

            choices = data.get("choices") or []
            if not choices:
                continue
            choice = choices[0]
            content = (choice.get("delta") or {}).get("content") or ""
            if choice.get("finish_reason"):
                # Usage arrives in a trailing chunk; hold the finish until [DONE]
                finish_reason = choice["finish_reason"]
            if content:
                yield StreamingChunk(content=content, tokens_used=total_tokens)

        yield StreamingChunk(finish_reason=finish_reason or "stop", tokens_used=total_tokens)

    async def _parse_anthropic_events(
        self, lines: AsyncIterator[str]
    ) -> AsyncIterator[StreamingChunk]:
        prompt_tokens = 0
        completion_tokens = 0
        finish_reason: str | None = None

        async for data_str in _sse_data(lines):
            try:
                data = json.loads(data_str)
            except json.JSONDecodeError:
                logger.warning("Failed to parse streaming chunk", data=data_str[:200])
                continue

            event_type = data.get("type")
            if event_type == "message_start":
                usage = (data.get("message") or {}).get("usage") or {}
                prompt_tokens = usage.get("input_tokens", 0)
            elif event_type == "content_block_delta":
                delta = data.get("delta") or {}
                if delta.get("type") == "text_delta" and delta.get("text"):
                    yield StreamingChunk(
                        content=delta["text"], tokens_used=prompt_tokens + completion_tokens
                    )
            elif event_type == "message_delta":
                stop_reason = (data.get("delta") or {}).get("stop_reason")
                if stop_reason:
                    finish_reason = ANTHROPIC_FINISH_REASONS.get(stop_reason, stop_reason)
                completion_tokens = (data.get("usage") or {}).get(
                    "output_tokens", completion_tokens
                )
            elif event_type == "message_stop":
                break
            elif event_type == "error":
                message = (data.get("error") or {}).get("message", "unknown error")
                raise LLMError(f"{self._provider.label} stream error: {message}")

        yield StreamingChunk(
            finish_reason=finish_reason or "stop",
            tokens_used=prompt_tokens + completion_tokens,
        )

    def _handle_http_error(self, error: httpx.HTTPStatusError) -> None:
        """Translate HTTP errors from the provider API into client errors."""
        status = error.response.status_code
        try:
            body = error.response.json()
            detail = (body.get("error") or {}).get("message") or str(error)
        except Exception:
            detail = str(error)

        logger.error("LLM API error", provider=self.provider_name, status=status, detail=detail)

        label = self._provider.label
        if status in (401, 403):
            raise LLMAuthError(f"{label} authentication failed: {detail}", status_code=status)
        elif status == 429:
            raise LLMRateLimitError(f"{label} rate limit exceeded: {detail}", status_code=status)
        else:
            raise LLMError(f"{label} API error ({status}): {detail}", status_code=status)

    async def _mock_chat(self, messages: list[dict[str, str]]) -> LLMResponse:
        """Return mock LLM response for testing."""
        user_messages = [m.get("content") or "" for m in messages if m.get("role") == "user"]
        question = user_messages[-1] if user_messages else ""
        content = (
            "This is a mock LLM response (MOCK_LLM=true). "
            f"In production, this would be a real AI response to: '{question[:50]}...'. "
            "Set a provider API key to enable real LLM responses."
        )
        return LLMResponse(
            content=content,
            model=self._model,
            finish_reason="stop",
            usage=LLMUsage(prompt_tokens=25, completion_tokens=25, total_tokens=50),
        )

    async def _mock_chat_stream(
        self, messages: list[dict[str, str]]
    ) -> AsyncIterator[StreamingChunk]:
        """Return mock streaming LLM response for testing."""
        mock_words = "This is a mock streaming response (MOCK_LLM=true).".split()

        for word in mock_words:
            await asyncio.sleep(0.01)
            yield StreamingChunk(content=word + " ")

        yield StreamingChunk(content="", finish_reason="stop", tokens_used=len(mock_words))
