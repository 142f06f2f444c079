"""
Middleware pipeline.

Runs an ordered chain of middleware around a terminal provider dispatch.
Global middleware always run first, then per-request middleware in the
caller's order. Every stage can pass through, mutate the context,
post-process the result or short-circuit by raising.
"""

import threading
import time
import uuid
from dataclasses import dataclass, field
from functools import reduce
from typing import Any, Callable, Dict, Iterable, List, Optional, Protocol, Sequence, Tuple, Union

import structlog

from .errors import PipelineError, SpendGuardError
from .messages import Message, MessageInput, RequestScope, normalize_messages

logger = structlog.get_logger(__name__)

# A single stage slower than this is logged
SLOW_STAGE_MS = 100.0
DEFAULT_STACK_TARGET_MS = 10.0


@dataclass
class MiddlewareContext:
    """Per-request state shared by every stage of the chain."""
    messages: Tuple[Message, ...]
    model: str
    provider: str
    scope: RequestScope = field(default_factory=RequestScope)
    options: Dict[str, Any] = field(default_factory=dict)
    metadata: Dict[str, Any] = field(default_factory=dict)
    stream: bool = False
    request_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    started_at: float = field(default_factory=time.monotonic)
    cancel: Optional[threading.Event] = None
    timeout: Optional[float] = None
    response: Any = None


Next = Callable[[MiddlewareContext], Any]


class Middleware(Protocol):
    def handle(self, context: MiddlewareContext, next_: Next) -> Any:
        """Process the request, calling ``next_(context)`` to continue the chain."""
        ...


MiddlewareLike = Union[Middleware, Callable[[MiddlewareContext, Next], Any]]


class MiddlewarePipeline:
    """Named middleware registry plus the chain runner.

    Args:
        terminal: Called with the context once every stage has passed;
            returns a ``Response`` or ``ResponseStream``
        global_middleware: Names that run on every request, in order
        registry: Initial name to middleware mapping
        stack_target_ms: Middleware overhead above this is logged
    """

    def __init__(
        self,
        terminal: Next,
        global_middleware: Sequence[str] = (),
        registry: Optional[Dict[str, MiddlewareLike]] = None,
        stack_target_ms: float = DEFAULT_STACK_TARGET_MS,
        clock: Callable[[], float] = time.perf_counter,
    ):
        self.terminal = terminal
        self.registry: Dict[str, MiddlewareLike] = dict(registry or {})
        self.global_middleware: List[str] = []
        for name in global_middleware:
            self.register_global(name)
        self.stack_target_ms = stack_target_ms
        self._clock = clock

    def register(self, name: str, middleware: MiddlewareLike) -> None:
        self.registry[name] = middleware

    def register_global(self, name: str) -> None:
        if name not in self.global_middleware:
            self.global_middleware.append(name)

    def resolve(self, middleware: Iterable[str] = ()) -> List[str]:
        """Effective stage order for a request.

        A name listed both globally and per request runs once, at its
        global position.

        Raises:
            PipelineError: If any name is not registered
        """
        names = list(self.global_middleware)
        for name in middleware:
            if name not in names:
                names.append(name)
        unknown = [name for name in names if name not in self.registry]
        if unknown:
            raise PipelineError(f"Unknown middleware: {', '.join(unknown)}", stage=unknown[0])
        return names

    def process(
        self,
        messages: MessageInput,
        middleware: Iterable[str] = (),
        *,
        model: str,
        provider: str,
        scope: Optional[RequestScope] = None,
        options: Optional[Dict[str, Any]] = None,
        stream: bool = False,
        request_id: Optional[str] = None,
        cancel: Optional[threading.Event] = None,
        timeout: Optional[float] = None,
    ) -> Any:
        """Run the chain for one request and return the terminal's result."""
        names = self.resolve(middleware)
        context = MiddlewareContext(
            messages=normalize_messages(messages),
            model=model,
            provider=provider,
            scope=scope or RequestScope(),
            options=dict(options or {}),
            stream=stream,
            cancel=cancel,
            timeout=timeout,
        )
        if request_id:
            context.request_id = request_id
        context.metadata["middleware_applied"] = []
        return self.run(context, names)

    def run(self, context: MiddlewareContext, names: Sequence[str]) -> Any:
        """Run resolved stages over an existing context."""
        timings = {"terminal": 0.0}

        def terminal(ctx: MiddlewareContext) -> Any:
            started = self._clock()
            try:
                return self.terminal(ctx)
            finally:
                timings["terminal"] = (self._clock() - started) * 1000

        chain = reduce(
            lambda next_, name: self._stage(name, self.registry[name], next_),
            reversed(names),
            terminal,
        )

        started = self._clock()
        try:
            result = chain(context)
        finally:
            overhead_ms = (self._clock() - started) * 1000 - timings["terminal"]
            context.metadata["middleware_time_ms"] = round(overhead_ms, 3)
            if names and overhead_ms > self.stack_target_ms:
                logger.warning(
                    "middleware_stack_slow",
                    duration_ms=round(overhead_ms, 2),
                    target_ms=self.stack_target_ms,
                    middleware=list(names),
                    request_id=context.request_id,
                )
        context.response = result
        return result

    def _stage(self, name: str, middleware: MiddlewareLike, next_: Next) -> Next:
        handler = getattr(middleware, "handle", middleware)

        def stage(context: MiddlewareContext) -> Any:
            context.metadata.setdefault("middleware_applied", []).append(name)
            downstream = {"failed": False, "ms": 0.0}

            def call_next(ctx: MiddlewareContext) -> Any:
                started = self._clock()
                try:
                    return next_(ctx)
                except BaseException:
                    downstream["failed"] = True
                    raise
                finally:
                    downstream["ms"] += (self._clock() - started) * 1000

            started = self._clock()
            try:
                return handler(context, call_next)
            except SpendGuardError:
                raise
            except Exception as e:
                if downstream["failed"]:
                    raise
                logger.error("middleware_failed", middleware=name, error=str(e), request_id=context.request_id)
                raise PipelineError(f"Middleware '{name}' failed: {e}", stage=name) from e
            finally:
                own_ms = (self._clock() - started) * 1000 - downstream["ms"]
                if own_ms > SLOW_STAGE_MS:
                    logger.warning(
                        "slow_middleware",
                        middleware=name,
                        duration_ms=round(own_ms, 2),
                        request_id=context.request_id,
                    )

        return stage
