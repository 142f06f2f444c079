"""
Structured request logging.
"""

import time
from typing import Callable

import structlog

from ai_spend_guard.core.pipeline import MiddlewareContext, Next
from ai_spend_guard.core.streaming import ResponseStream

logger = structlog.get_logger(__name__)


class RequestLoggingMiddleware:
    name = "request_logging"

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock

    def handle(self, context: MiddlewareContext, next_: Next):
        log = logger.bind(
            request_id=context.request_id,
            provider=context.provider,
            model=context.model,
        )
        log.info("ai_request_started", message_count=len(context.messages), stream=context.stream)

        started = self._clock()
        try:
            result = next_(context)
        except Exception as e:
            log.warning(
                "ai_request_failed",
                duration_ms=round((self._clock() - started) * 1000, 2),
                error_type=type(e).__name__,
                error=str(e),
            )
            raise

        if isinstance(result, ResponseStream):
            result.add_completion_callback(
                lambda response: self._log_completed(log, context, response, started)
            )
        else:
            self._log_completed(log, context, result, started)
        return result

    def _log_completed(self, log, context: MiddlewareContext, response, started: float) -> None:
        usage = response.usage
        log.info(
            "ai_request_completed",
            duration_ms=round((self._clock() - started) * 1000, 2),
            input_tokens=usage.input_tokens if usage else None,
            output_tokens=usage.output_tokens if usage else None,
            finish_reason=response.finish_reason,
            middleware=list(context.metadata.get("middleware_applied", [])),
        )
