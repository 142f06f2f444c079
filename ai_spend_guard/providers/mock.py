"""
Scripted provider for tests and local dry runs.
"""

from collections import deque
from typing import Any, Deque, Dict, Iterator, List, Optional, Sequence, Union

from ai_spend_guard.core.messages import Message, messages_text
from ai_spend_guard.core.token_counter import TokenUsage, estimate_tokens

from .base import Response, StreamChunk

ScriptItem = Union[Response, BaseException, str]


class MockProvider:
    """Provider that replays queued outcomes.

    Each call consumes the next scripted item: a ``Response`` is returned
    as is, an exception is raised and a string becomes the response text.
    When the script is empty ``default_content`` is returned. Every call is
    recorded in ``calls``.
    """

    def __init__(
        self,
        name: str = "mock",
        responses: Sequence[ScriptItem] = (),
        default_content: str = "This is a mock response.",
        model: str = "mock-model",
        usage: Optional[TokenUsage] = None,
    ):
        self.name = name
        self.model = model
        self.default_content = default_content
        self.usage = usage
        self._script: Deque[ScriptItem] = deque(responses)
        self.calls: List[Dict[str, Any]] = []

    def queue(self, *items: ScriptItem) -> None:
        self._script.extend(items)

    def send(self, messages: Sequence[Message], options: Dict[str, Any]) -> Response:
        self.calls.append({"messages": tuple(messages), "options": dict(options), "stream": False})
        item = self._next_item()
        if isinstance(item, BaseException):
            raise item
        if isinstance(item, Response):
            return item
        return self._response(messages, options, item)

    def stream(self, messages: Sequence[Message], options: Dict[str, Any]) -> Iterator[StreamChunk]:
        self.calls.append({"messages": tuple(messages), "options": dict(options), "stream": True})
        return self._chunks(messages, options)

    def list_models(self) -> List[str]:
        return [self.model]

    def _chunks(self, messages: Sequence[Message], options: Dict[str, Any]) -> Iterator[StreamChunk]:
        # Failures surface when the stream is first read, like a real connection
        item = self._next_item()
        if isinstance(item, BaseException):
            raise item
        response = item if isinstance(item, Response) else self._response(messages, options, item)

        words = response.content.split(" ")
        for index, word in enumerate(words):
            text = word if index == 0 else " " + word
            if index < len(words) - 1:
                yield StreamChunk(content=text, model=response.model)
            else:
                yield StreamChunk(
                    content=text,
                    finish_reason=response.finish_reason or "stop",
                    usage=response.usage,
                    model=response.model,
                )

    def _next_item(self) -> ScriptItem:
        if self._script:
            return self._script.popleft()
        return self.default_content

    def _response(self, messages: Sequence[Message], options: Dict[str, Any], content: str) -> Response:
        usage = self.usage or TokenUsage(
            input_tokens=estimate_tokens(messages_text(messages)),
            output_tokens=estimate_tokens(content),
        )
        return Response(
            content=content,
            usage=usage,
            finish_reason="stop",
            model=options.get("model", self.model),
            provider=self.name,
            request_id=f"mock-{len(self.calls)}",
        )
