"""
OpenAI-compatible provider adapter.

Wraps the official ``openai`` SDK. xAI and Ollama expose the same chat
completions API, so they are served by pointing ``base_url`` at them.
SDK retries are disabled; retrying is the retry executor's job.
"""

import time
from email.utils import parsedate_to_datetime
from typing import Any, Dict, Iterator, List, Optional, Sequence

import openai
from openai import OpenAI

from ai_spend_guard.core.errors import (
    InvalidCredentialsError,
    InvalidRequestError,
    ProviderError,
    RateLimitError,
    ServerError,
)
from ai_spend_guard.core.messages import Message
from ai_spend_guard.core.periods import utc_now
from ai_spend_guard.core.token_counter import TokenUsage

from .base import Response, StreamChunk

# Request options passed straight through to chat.completions.create
_PASSTHROUGH_OPTIONS = (
    "temperature",
    "max_tokens",
    "top_p",
    "stop",
    "presence_penalty",
    "frequency_penalty",
    "tools",
    "tool_choice",
    "response_format",
    "seed",
    "user",
)


def _retry_after_ms(response) -> Optional[int]:
    """Parse ``retry-after-ms`` / ``retry-after`` headers into milliseconds."""
    if response is None:
        return None
    headers = response.headers

    value = headers.get("retry-after-ms")
    if value:
        try:
            return max(0, int(float(value)))
        except ValueError:
            pass

    value = headers.get("retry-after")
    if not value:
        return None
    try:
        return max(0, int(float(value) * 1000))
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    return max(0, int((when - utc_now()).total_seconds() * 1000))


def map_openai_error(error: Exception, provider: str) -> ProviderError:
    """Translate an ``openai`` SDK exception into the package taxonomy."""
    message = str(error)

    if isinstance(error, openai.RateLimitError):
        return RateLimitError(message, provider=provider, retry_after_ms=_retry_after_ms(error.response))
    if isinstance(error, openai.APIConnectionError):
        # Includes APITimeoutError
        return ServerError(message, provider=provider)
    if isinstance(error, (openai.AuthenticationError, openai.PermissionDeniedError)):
        return InvalidCredentialsError(message, provider=provider, status_code=error.status_code)
    if isinstance(error, openai.APIStatusError):
        status = error.status_code
        if status >= 500 or status == 408:
            return ServerError(message, provider=provider, status_code=status)
        if status == 429:
            return RateLimitError(message, provider=provider, retry_after_ms=_retry_after_ms(error.response))
        return InvalidRequestError(message, provider=provider, status_code=status)
    return ProviderError(message, provider=provider)


class OpenAIProvider:
    """Chat completions over the OpenAI API or a compatible endpoint."""

    def __init__(
        self,
        name: str = "openai",
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: float = 30.0,
        default_model: str = "gpt-4o-mini",
        client: Optional[OpenAI] = None,
    ):
        self.name = name
        self.default_model = default_model
        self.client = client or OpenAI(
            api_key=api_key,
            base_url=base_url,
            timeout=timeout,
            max_retries=0,
        )

    def send(self, messages: Sequence[Message], options: Dict[str, Any]) -> Response:
        params = self._params(messages, options)
        started = time.monotonic()
        try:
            completion = self.client.chat.completions.create(**params)
        except openai.OpenAIError as e:
            raise map_openai_error(e, self.name) from e

        if not completion.choices:
            raise ServerError("Provider returned no choices", provider=self.name)
        choice = completion.choices[0]
        return Response(
            content=choice.message.content or "",
            usage=self._usage(completion.usage),
            finish_reason=choice.finish_reason,
            model=completion.model or params["model"],
            provider=self.name,
            response_time_ms=(time.monotonic() - started) * 1000,
            request_id=completion.id,
        )

    def stream(self, messages: Sequence[Message], options: Dict[str, Any]) -> Iterator[StreamChunk]:
        params = self._params(messages, options)
        params["stream"] = True
        params["stream_options"] = {"include_usage": True}
        return self._stream_chunks(params)

    def list_models(self) -> List[str]:
        try:
            return sorted(model.id for model in self.client.models.list())
        except openai.OpenAIError as e:
            raise map_openai_error(e, self.name) from e

    def _stream_chunks(self, params: Dict[str, Any]) -> Iterator[StreamChunk]:
        finish_reason = None
        usage = None
        model = params["model"]
        try:
            for chunk in self.client.chat.completions.create(**params):
                model = chunk.model or model
                if chunk.usage is not None:
                    usage = self._usage(chunk.usage)
                if not chunk.choices:
                    continue
                choice = chunk.choices[0]
                if choice.finish_reason:
                    finish_reason = choice.finish_reason
                content = choice.delta.content if choice.delta else None
                if content:
                    yield StreamChunk(content=content, model=model)
        except openai.OpenAIError as e:
            raise map_openai_error(e, self.name) from e

        # Usage arrives in a chunk after the finish reason, so the terminal
        # chunk is emitted once the source is drained
        yield StreamChunk(finish_reason=finish_reason or "stop", usage=usage, model=model)

    def _params(self, messages: Sequence[Message], options: Dict[str, Any]) -> Dict[str, Any]:
        params: Dict[str, Any] = {
            "model": options.get("model") or self.default_model,
            "messages": [message.to_dict() for message in messages],
        }
        for key in _PASSTHROUGH_OPTIONS:
            if options.get(key) is not None:
                params[key] = options[key]
        return params

    @staticmethod
    def _usage(usage) -> Optional[TokenUsage]:
        if usage is None:
            return None
        return TokenUsage(
            input_tokens=usage.prompt_tokens or 0,
            output_tokens=usage.completion_tokens or 0,
            total=usage.total_tokens,
        )
