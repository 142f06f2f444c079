"""
Request lifecycle events and their dispatcher.

Listeners run on a single background worker by default, so events are
delivered in the order they were dispatched and never add latency to
the caller. Listener failures are logged and dropped.
"""

import threading
from collections import defaultdict
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Callable, DefaultDict, List, Optional, Tuple, Type

import structlog

from .budget import Scope, ThresholdLevel
from .messages import Message, RequestScope
from .periods import PeriodType, utc_now

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class MessageSent:
    """Fired right before the provider is called."""
    request_id: str
    provider: str
    model: str
    messages: Tuple[Message, ...]
    scope: RequestScope
    timestamp: datetime = field(default_factory=utc_now)


@dataclass(frozen=True)
class ResponseGenerated:
    """Fired after the provider returned successfully."""
    request_id: str
    provider: str
    model: str
    response: Any
    processing_time_ms: float
    scope: RequestScope
    timestamp: datetime = field(default_factory=utc_now)


@dataclass(frozen=True)
class CostCalculated:
    """Fired once the actual cost of a completed request is known."""
    request_id: str
    record: Any
    timestamp: datetime = field(default_factory=utc_now)


@dataclass(frozen=True)
class BudgetThresholdReached:
    """A budget crossed its warning or critical threshold this period."""
    scope: Scope
    period_type: PeriodType
    level: ThresholdLevel
    threshold_pct: float
    current_spend: Decimal
    limit: Decimal
    usage_pct: float
    timestamp: datetime = field(default_factory=utc_now)


Listener = Callable[[Any], None]


class EventDispatcher:
    """Publishes events to listeners, inline or on a background worker."""

    def __init__(self, background: bool = True):
        self.background = background
        self._listeners: DefaultDict[Type, List[Listener]] = defaultdict(list)
        self._executor: Optional[ThreadPoolExecutor] = (
            ThreadPoolExecutor(max_workers=1, thread_name_prefix="ai-spend-guard")
            if background else None
        )
        self._pending: List[Future] = []
        self._pending_lock = threading.Lock()

    def listen(self, event_type: Type, listener: Listener) -> None:
        """Subscribe ``listener`` to events of ``event_type``."""
        self._listeners[event_type].append(listener)

    def dispatch(self, event: Any) -> None:
        """Deliver an event to its listeners."""
        listeners = list(self._listeners.get(type(event), ()))
        if listeners:
            self.submit(self._deliver, event, listeners)

    def submit(self, fn: Callable[..., Any], *args: Any) -> None:
        """Queue a task behind every event dispatched so far."""
        if self._executor is None:
            self._run(fn, *args)
            return
        try:
            future = self._executor.submit(self._run, fn, *args)
        except RuntimeError:
            # Executor is shutting down; tasks queued from the worker run inline
            self._run(fn, *args)
            return
        with self._pending_lock:
            self._pending = [f for f in self._pending if not f.done()]
            self._pending.append(future)

    def flush(self, timeout: Optional[float] = None) -> None:
        """Block until every queued event and task has run.

        Tasks queued by running tasks are waited for too.
        """
        while True:
            with self._pending_lock:
                pending, self._pending = self._pending, []
            if not pending:
                return
            for future in pending:
                future.result(timeout=timeout)

    def shutdown(self) -> None:
        """Drain the queue and stop the worker."""
        if self._executor is not None:
            self._executor.shutdown(wait=True)
            self._executor = None
        self._pending = []

    def _deliver(self, event: Any, listeners: List[Listener]) -> None:
        for listener in listeners:
            try:
                listener(event)
            except Exception as e:
                logger.error(
                    "event_listener_failed",
                    event_type=type(event).__name__,
                    listener=getattr(listener, "__qualname__", repr(listener)),
                    error=str(e),
                )

    @staticmethod
    def _run(fn: Callable[..., Any], *args: Any) -> None:
        try:
            fn(*args)
        except Exception as e:
            logger.error("background_task_failed", task=getattr(fn, "__qualname__", repr(fn)), error=str(e))
