"""
Guarded AI client.

Wires the middleware pipeline, retry executor, cost estimator, budget
ledger and recording sink around a provider client.
"""

import os
import threading
import time
from decimal import Decimal
from typing import Any, Dict, Iterable, Mapping, Optional, Sequence

import structlog

from ai_spend_guard.config.loader import DEFAULT_GLOBAL_MIDDLEWARE, ProviderSettings, SpendGuardConfig
from ai_spend_guard.core.errors import InvalidCredentialsError
from ai_spend_guard.core.estimator import CostEstimator
from ai_spend_guard.core.events import EventDispatcher, MessageSent, ResponseGenerated
from ai_spend_guard.core.ledger import BudgetLedger
from ai_spend_guard.core.messages import MessageInput, RequestScope
from ai_spend_guard.core.notifications import LoggingNotifier, Notifier
from ai_spend_guard.core.periods import PeriodType
from ai_spend_guard.core.pipeline import MiddlewareContext, MiddlewarePipeline
from ai_spend_guard.core.pricing import DEFAULT_PRICING
from ai_spend_guard.core.rate_limiter import RateLimit, RateLimiter
from ai_spend_guard.core.recording import RecordingSink
from ai_spend_guard.core.retry import RetryExecutor, RetryPolicy
from ai_spend_guard.core.streaming import ResponseStream
from ai_spend_guard.middleware import (
    BudgetEnforcementMiddleware,
    CostTrackingMiddleware,
    RateLimitMiddleware,
    RequestLoggingMiddleware,
)
from ai_spend_guard.providers.base import ProviderClient, Response
from ai_spend_guard.providers.mock import MockProvider
from ai_spend_guard.providers.openai_provider import OpenAIProvider
from ai_spend_guard.storage.budget_store import InMemoryBudgetStore

logger = structlog.get_logger(__name__)


def create_provider(name: str, settings: ProviderSettings) -> ProviderClient:
    """Build a provider client from its configured settings.

    Raises:
        InvalidCredentialsError: If the configured API key variable is unset
    """
    if settings.driver == "mock":
        return MockProvider(name=name, model=settings.default_model or "mock-model")

    if settings.api_key_env:
        api_key = os.environ.get(settings.api_key_env)
        if not api_key:
            raise InvalidCredentialsError(f"{settings.api_key_env} is not set", provider=name, status_code=None)
    else:
        # Local OpenAI-compatible servers such as Ollama ignore the key
        api_key = "unused"

    return OpenAIProvider(
        name=name,
        api_key=api_key,
        base_url=settings.base_url,
        timeout=settings.timeout,
        default_model=settings.default_model or "gpt-4o-mini",
    )


class GuardedClient:
    """AI client that enforces budgets before dispatch and records costs after.

    Args:
        provider: Provider client to dispatch to
        ledger: Budget ledger used for enforcement and recording
        estimator: Cost estimator; defaults to the built-in pricing table
        dispatcher: Event dispatcher; defaults to a background worker
        retry: Retry executor for provider calls
        repository: Optional cost record repository
        rate_limiter: Optional client-side rate limiter
        global_middleware: Names run on every request, in order
    """

    def __init__(
        self,
        provider: ProviderClient,
        *,
        ledger: BudgetLedger,
        estimator: Optional[CostEstimator] = None,
        dispatcher: Optional[EventDispatcher] = None,
        retry: Optional[RetryExecutor] = None,
        repository=None,
        rate_limiter: Optional[RateLimiter] = None,
        global_middleware: Sequence[str] = DEFAULT_GLOBAL_MIDDLEWARE,
        default_model: Optional[str] = None,
        budget_enforcement: bool = True,
        strict_mode: bool = False,
        fail_open: Optional[bool] = None,
        cache_ttl: float = 0,
        default_limits: Optional[Mapping[PeriodType, Decimal]] = None,
        budget_defaults: Optional[Mapping[str, Any]] = None,
        cost_tracking: bool = True,
        stack_target_ms: float = 10.0,
    ):
        self.provider = provider
        self.ledger = ledger
        self.estimator = estimator or CostEstimator()
        self.dispatcher = dispatcher or EventDispatcher()
        self.retry = retry or RetryExecutor()
        self.default_model = default_model or getattr(provider, "default_model", None)
        self.sink = RecordingSink(self.estimator, ledger, self.dispatcher, repository)

        self.budget_enforcement = BudgetEnforcementMiddleware(
            ledger,
            self.estimator,
            enabled=budget_enforcement,
            strict_mode=strict_mode,
            fail_open=fail_open,
            cache_ttl=cache_ttl,
            default_limits=default_limits,
            budget_defaults=budget_defaults,
        )
        self.pipeline = MiddlewarePipeline(
            self._dispatch,
            registry={
                BudgetEnforcementMiddleware.name: self.budget_enforcement,
                CostTrackingMiddleware.name: CostTrackingMiddleware(self.sink, enabled=cost_tracking),
                RequestLoggingMiddleware.name: RequestLoggingMiddleware(),
                RateLimitMiddleware.name: RateLimitMiddleware(rate_limiter or RateLimiter({}), self.estimator),
            },
            global_middleware=global_middleware,
            stack_target_ms=stack_target_ms,
        )

    @classmethod
    def from_config(
        cls,
        config: SpendGuardConfig,
        provider: Optional[ProviderClient] = None,
        *,
        provider_name: Optional[str] = None,
        store=None,
        repository=None,
        notifier: Optional[Notifier] = None,
        dispatcher: Optional[EventDispatcher] = None,
    ) -> "GuardedClient":
        """Build a client from loaded configuration."""
        name = provider_name or (provider.name if provider is not None else config.default_provider)
        settings = config.get_provider(name) if name in config.providers else ProviderSettings()
        if provider is None:
            provider = create_provider(name, settings)

        ledger = BudgetLedger(store or InMemoryBudgetStore(), notifier or LoggingNotifier())
        tracking = config.cost_tracking
        estimator = CostEstimator(
            pricing=DEFAULT_PRICING.with_overrides(config.pricing),
            precision=tracking.precision,
            currency=tracking.currency,
        )
        retry = RetryExecutor(RetryPolicy(
            max_attempts=settings.retry_attempts,
            base_delay_ms=settings.retry_delay_ms,
            max_delay_ms=settings.max_retry_delay_ms,
        ))

        limits = {}
        if config.rate_limiting.enabled and name in config.rate_limiting.per_provider:
            entry = config.rate_limiting.per_provider[name]
            limits[name] = RateLimit(entry.requests_per_minute, entry.tokens_per_minute)

        enforcement = config.budget_enforcement
        default_limits = {
            period_type: limit
            for period_type, limit in (
                (PeriodType.PER_REQUEST, enforcement.per_request_limit),
                (PeriodType.DAILY, enforcement.daily_limit),
                (PeriodType.MONTHLY, enforcement.monthly_limit),
            )
            if limit is not None
        }

        return cls(
            provider,
            ledger=ledger,
            estimator=estimator,
            dispatcher=dispatcher,
            retry=retry,
            repository=repository,
            rate_limiter=RateLimiter(limits),
            global_middleware=config.middleware.global_middleware,
            default_model=settings.default_model,
            budget_enforcement=enforcement.enabled,
            strict_mode=enforcement.strict_mode,
            fail_open=enforcement.effective_fail_open,
            cache_ttl=enforcement.cache_ttl,
            default_limits=default_limits,
            budget_defaults={
                "currency": tracking.currency,
                "warning_threshold": enforcement.warning_threshold,
                "critical_threshold": enforcement.critical_threshold,
            },
            cost_tracking=tracking.enabled,
            stack_target_ms=config.middleware.stack_target_ms,
        )

    def send(
        self,
        messages: MessageInput,
        *,
        model: Optional[str] = None,
        scope: Optional[RequestScope] = None,
        middleware: Iterable[str] = (),
        options: Optional[Dict[str, Any]] = None,
        cancel: Optional[threading.Event] = None,
        timeout: Optional[float] = None,
    ) -> Response:
        """Send messages through the pipeline and return the provider's response.

        Args:
            messages: A string, a message, a ``{"role", "content"}`` mapping
                or a sequence of messages/mappings
            model: Model to use; defaults to the provider's default model
            scope: Who the request is charged to
            middleware: Extra middleware names for this request
            options: Provider options such as ``temperature``
            cancel: Event that aborts retry waits when set
            timeout: Overall deadline in seconds for attempts plus retries

        Raises:
            BudgetExceededError: A budget would be exceeded
            ProviderError: The provider failed and retrying did not help
        """
        return self.pipeline.process(
            messages,
            middleware,
            model=self._model(model),
            provider=self.provider.name,
            scope=scope,
            options=options,
            cancel=cancel,
            timeout=timeout,
        )

    def stream(
        self,
        messages: MessageInput,
        *,
        model: Optional[str] = None,
        scope: Optional[RequestScope] = None,
        middleware: Iterable[str] = (),
        options: Optional[Dict[str, Any]] = None,
        cancel: Optional[threading.Event] = None,
        timeout: Optional[float] = None,
    ) -> ResponseStream:
        """Like ``send`` but returns a lazy stream of chunks.

        Cost is recorded once the stream has been fully consumed; a stream
        closed early or failing midway records nothing.
        """
        return self.pipeline.process(
            messages,
            middleware,
            model=self._model(model),
            provider=self.provider.name,
            scope=scope,
            options=options,
            stream=True,
            cancel=cancel,
            timeout=timeout,
        )

    def flush(self, timeout: Optional[float] = None) -> None:
        """Wait for queued events and cost recording to finish."""
        self.dispatcher.flush(timeout)

    def close(self) -> None:
        self.dispatcher.flush()
        self.dispatcher.shutdown()

    def __enter__(self) -> "GuardedClient":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def _model(self, model: Optional[str]) -> str:
        model = model or self.default_model
        if not model or not model.strip():
            raise ValueError("model is required and cannot be empty")
        return model

    def _dispatch(self, context: MiddlewareContext):
        """Terminal stage: call the provider under the retry executor."""
        self.dispatcher.dispatch(MessageSent(
            request_id=context.request_id,
            provider=context.provider,
            model=context.model,
            messages=context.messages,
            scope=context.scope,
        ))
        options = dict(context.options)
        options["model"] = context.model
        started = time.monotonic()

        if context.stream:
            return self._open_stream(context, options, started)

        response = self.retry.execute(
            lambda: self.provider.send(context.messages, options),
            cancel=context.cancel,
            timeout=context.timeout,
        )
        self._response_generated(context, response, started)
        return response

    def _open_stream(self, context: MiddlewareContext, options: Dict[str, Any], started: float) -> ResponseStream:
        def establish():
            chunks = iter(self.provider.stream(context.messages, options))
            return chunks, next(chunks, None)

        # Only establishing the stream is retried; a stream failing midway surfaces to the reader
        chunks, first = self.retry.execute(establish, cancel=context.cancel, timeout=context.timeout)
        stream = ResponseStream(
            chunks,
            provider=self.provider.name,
            model=context.model,
            request_id=context.request_id,
            first_chunk=first,
        )
        stream.add_completion_callback(lambda response: self._response_generated(context, response, started))
        return stream

    def _response_generated(self, context: MiddlewareContext, response: Response, started: float) -> None:
        self.dispatcher.dispatch(ResponseGenerated(
            request_id=context.request_id,
            provider=context.provider,
            model=context.model,
            response=response,
            processing_time_ms=(time.monotonic() - started) * 1000,
            scope=context.scope,
        ))
