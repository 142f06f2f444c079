"""
Hands completed requests to the recording sink.
"""

import structlog

from ai_spend_guard.core.pipeline import MiddlewareContext, Next
from ai_spend_guard.core.recording import RecordingSink
from ai_spend_guard.core.streaming import ResponseStream

logger = structlog.get_logger(__name__)


class CostTrackingMiddleware:
    """Queues cost recording once the response is complete.

    For streams, recording waits for the terminal chunk; a stream closed
    early records nothing.
    """

    name = "cost_tracking"

    def __init__(self, sink: RecordingSink, enabled: bool = True):
        self.sink = sink
        self.enabled = enabled

    def handle(self, context: MiddlewareContext, next_: Next):
        result = next_(context)
        if not self.enabled:
            return result

        if isinstance(result, ResponseStream):
            result.add_completion_callback(lambda response: self.sink.submit(context, response))
        else:
            self.sink.submit(context, result)
        context.metadata["cost_tracked"] = True
        return result
