"""
Streaming response wrapper.

Turns a provider's chunk iterator into a lazy, finite, non-restartable
stream that assembles the final response once the terminal chunk is seen.
"""

import time
from typing import Callable, Iterator, List, Optional

import structlog

from ai_spend_guard.providers.base import Response, StreamChunk
from .token_counter import TokenUsage

logger = structlog.get_logger(__name__)

CompletionCallback = Callable[[Response], None]


class ResponseStream:
    """Pull-based stream of response chunks.

    Iterate to consume chunks. When the terminal chunk is consumed (or the
    source is exhausted) the assembled ``Response`` is handed to every
    completion callback. ``close()`` cancels mid-stream. Cancelled streams
    and streams whose source raised never complete.
    """

    def __init__(
        self,
        chunks: Iterator[StreamChunk],
        provider: str,
        model: str,
        request_id: Optional[str] = None,
        first_chunk: Optional[StreamChunk] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._chunks = chunks
        self._pending = first_chunk
        self.provider = provider
        self.model = model
        self.request_id = request_id
        self._clock = clock
        self._started = clock()
        self._parts: List[str] = []
        self._usage: Optional[TokenUsage] = None
        self._finish_reason: Optional[str] = None
        self._callbacks: List[CompletionCallback] = []
        self._finished = False
        self._cancelled = False
        self._failed = False
        self.response: Optional[Response] = None

    @property
    def finished(self) -> bool:
        return self._finished

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def failed(self) -> bool:
        return self._failed

    def add_completion_callback(self, callback: CompletionCallback) -> None:
        """Run ``callback(response)`` when the stream completes.

        Registering on an already completed stream runs the callback now.
        """
        if self.response is not None:
            self._run_callback(callback, self.response)
        else:
            self._callbacks.append(callback)

    def __iter__(self) -> "ResponseStream":
        return self

    def __next__(self) -> StreamChunk:
        if self._finished or self._cancelled or self._failed:
            raise StopIteration

        if self._pending is not None:
            chunk, self._pending = self._pending, None
        else:
            try:
                chunk = next(self._chunks)
            except StopIteration:
                self._complete()
                raise
            except Exception as e:
                # A failed stream never completes, so nothing is recorded
                self._failed = True
                logger.warning(
                    "stream_failed",
                    provider=self.provider,
                    model=self.model,
                    request_id=self.request_id,
                    error_type=type(e).__name__,
                    error=str(e),
                )
                raise

        self._absorb(chunk)
        if chunk.finish_reason is not None:
            self._complete()
        return chunk

    def close(self) -> None:
        """Cancel the stream. Remaining chunks are discarded."""
        if self._finished or self._cancelled or self._failed:
            return
        self._cancelled = True
        close = getattr(self._chunks, "close", None)
        if close is not None:
            close()
        logger.info("stream_cancelled", provider=self.provider, model=self.model, request_id=self.request_id)

    def read(self) -> Response:
        """Consume the remaining chunks and return the assembled response."""
        for _ in self:
            pass
        if self.response is None:
            raise RuntimeError("stream was cancelled or failed before completion")
        return self.response

    def _absorb(self, chunk: StreamChunk) -> None:
        if chunk.content:
            self._parts.append(chunk.content)
        if chunk.usage is not None:
            self._usage = chunk.usage
        if chunk.finish_reason is not None:
            self._finish_reason = chunk.finish_reason
        if chunk.model:
            self.model = chunk.model

    def _complete(self) -> None:
        if self._finished:
            return
        self._finished = True
        self.response = Response(
            content="".join(self._parts),
            usage=self._usage,
            finish_reason=self._finish_reason or "stop",
            model=self.model,
            provider=self.provider,
            response_time_ms=(self._clock() - self._started) * 1000,
            request_id=self.request_id,
            metadata={"streamed": True},
        )
        callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            self._run_callback(callback, self.response)

    def _run_callback(self, callback: CompletionCallback, response: Response) -> None:
        try:
            callback(response)
        except Exception as e:
            logger.error("stream_completion_callback_failed", error=str(e), request_id=self.request_id)
