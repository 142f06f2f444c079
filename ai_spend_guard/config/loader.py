"""
Configuration management and loading.

Reads the YAML configuration into frozen dataclasses. Validation is
strict: unknown keys and out-of-range values are rejected rather than
ignored, so a typo can never silently disable a budget.
"""

from dataclasses import dataclass, field
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Tuple

import yaml

from ai_spend_guard.core.pricing import DEFAULT_CURRENCY, DEFAULT_PRECISION, ModelPricing, to_decimal

DEFAULT_GLOBAL_MIDDLEWARE = ("budget_enforcement", "rate_limit", "cost_tracking", "request_logging")

_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}


@dataclass(frozen=True)
class ProviderSettings:
    """Connection and retry settings for one provider."""
    driver: str = "openai"
    base_url: Optional[str] = None
    api_key_env: Optional[str] = None
    timeout: float = 30.0
    retry_attempts: int = 3
    retry_delay_ms: float = 1000
    max_retry_delay_ms: float = 30000
    default_model: Optional[str] = None

    def __post_init__(self):
        """Validate provider values."""
        if self.driver not in ("openai", "mock"):
            raise ValueError("driver must be one of: ['openai', 'mock']")
        if not 0 < self.timeout <= 300:
            raise ValueError("timeout must be in (0, 300]")
        if not 1 <= self.retry_attempts <= 10:
            raise ValueError("retry_attempts must be between 1 and 10")
        if self.retry_delay_ms < 0:
            raise ValueError("retry_delay_ms cannot be negative")
        if self.max_retry_delay_ms < self.retry_delay_ms:
            raise ValueError("max_retry_delay_ms must be >= retry_delay_ms")


@dataclass(frozen=True)
class CostTrackingConfig:
    enabled: bool = True
    currency: str = DEFAULT_CURRENCY
    precision: int = DEFAULT_PRECISION

    def __post_init__(self):
        if not 0 <= self.precision <= 12:
            raise ValueError("precision must be between 0 and 12")


@dataclass(frozen=True)
class BudgetEnforcementConfig:
    """Pre-flight enforcement settings and default user limits."""
    enabled: bool = True
    strict_mode: bool = False
    fail_open: Optional[bool] = None
    cache_ttl: float = 0
    daily_limit: Optional[Decimal] = None
    monthly_limit: Optional[Decimal] = None
    per_request_limit: Optional[Decimal] = None
    warning_threshold: float = 80.0
    critical_threshold: float = 90.0

    def __post_init__(self):
        """Validate enforcement values."""
        if self.cache_ttl < 0:
            raise ValueError("cache_ttl cannot be negative")
        for name in ("daily_limit", "monthly_limit", "per_request_limit"):
            value = getattr(self, name)
            if value is not None and value <= 0:
                raise ValueError(f"{name} must be > 0")
        if not 0 < self.warning_threshold <= 100:
            raise ValueError("warning_threshold must be in (0, 100]")
        if not 0 < self.critical_threshold <= 100:
            raise ValueError("critical_threshold must be in (0, 100]")
        if self.warning_threshold > self.critical_threshold:
            raise ValueError("warning_threshold cannot exceed critical_threshold")

    @property
    def effective_fail_open(self) -> bool:
        return (not self.strict_mode) if self.fail_open is None else self.fail_open


@dataclass(frozen=True)
class MiddlewareConfig:
    global_middleware: Tuple[str, ...] = DEFAULT_GLOBAL_MIDDLEWARE
    stack_target_ms: float = 10.0

    def __post_init__(self):
        if self.stack_target_ms <= 0:
            raise ValueError("stack_target_ms must be > 0")


@dataclass(frozen=True)
class ProviderRateLimit:
    requests_per_minute: Optional[int] = None
    tokens_per_minute: Optional[int] = None

    def __post_init__(self):
        if self.requests_per_minute is not None and self.requests_per_minute < 1:
            raise ValueError("requests_per_minute must be >= 1")
        if self.tokens_per_minute is not None and self.tokens_per_minute < 1:
            raise ValueError("tokens_per_minute must be >= 1")


@dataclass(frozen=True)
class RateLimitingConfig:
    enabled: bool = True
    per_provider: Mapping[str, ProviderRateLimit] = field(default_factory=dict)


@dataclass(frozen=True)
class LoggingConfig:
    level: str = "INFO"
    json: bool = False

    def __post_init__(self):
        if self.level.upper() not in _LOG_LEVELS:
            raise ValueError(f"logging level must be one of: {sorted(_LOG_LEVELS)}")


@dataclass(frozen=True)
class SpendGuardConfig:
    """Complete configuration."""
    default_provider: str
    providers: Mapping[str, ProviderSettings]
    cost_tracking: CostTrackingConfig = field(default_factory=CostTrackingConfig)
    budget_enforcement: BudgetEnforcementConfig = field(default_factory=BudgetEnforcementConfig)
    middleware: MiddlewareConfig = field(default_factory=MiddlewareConfig)
    rate_limiting: RateLimitingConfig = field(default_factory=RateLimitingConfig)
    pricing: Mapping[str, ModelPricing] = field(default_factory=dict)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    def __post_init__(self):
        if self.default_provider not in self.providers:
            raise ValueError(f"default_provider '{self.default_provider}' is not configured")

    def get_provider(self, name: Optional[str] = None) -> ProviderSettings:
        """Settings for a provider, the default one when no name is given."""
        name = name or self.default_provider
        if name not in self.providers:
            raise ValueError(f"Unknown provider: {name}")
        return self.providers[name]


def _default_providers() -> Dict[str, ProviderSettings]:
    return {
        "openai": ProviderSettings(
            base_url="https://api.openai.com/v1",
            api_key_env="OPENAI_API_KEY",
            default_model="gpt-4o-mini",
        ),
        "xai": ProviderSettings(
            base_url="https://api.x.ai/v1",
            api_key_env="XAI_API_KEY",
            default_model="grok-beta",
        ),
        "ollama": ProviderSettings(
            base_url="http://localhost:11434/v1",
            timeout=120.0,
            retry_attempts=1,
            default_model="llama2",
        ),
        "mock": ProviderSettings(driver="mock", default_model="mock-model"),
    }


def _default_rate_limits() -> Dict[str, ProviderRateLimit]:
    return {
        "openai": ProviderRateLimit(requests_per_minute=50, tokens_per_minute=40000),
        "xai": ProviderRateLimit(requests_per_minute=30, tokens_per_minute=20000),
        "gemini": ProviderRateLimit(requests_per_minute=60, tokens_per_minute=32000),
    }


def default_config() -> SpendGuardConfig:
    """Built-in configuration used when no file is given."""
    return SpendGuardConfig(
        default_provider="openai",
        providers=_default_providers(),
        rate_limiting=RateLimitingConfig(per_provider=_default_rate_limits()),
    )


def load_config(path: str) -> SpendGuardConfig:
    """Load and validate configuration from a YAML file.

    Sections that are left out keep their defaults; provider and rate
    limit entries are merged over the built-in ones.

    Args:
        path: Path to YAML configuration file

    Returns:
        Validated SpendGuardConfig object

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If configuration is invalid
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    with open(config_path, "r", encoding="utf-8") as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in config file {path}: {e}")

    if not raw_config:
        raise ValueError("Configuration file is empty")
    return parse_config(raw_config)


def parse_config(raw_config: Mapping[str, Any]) -> SpendGuardConfig:
    """Validate an already-parsed configuration mapping."""
    if not isinstance(raw_config, Mapping):
        raise ValueError("Configuration must be a mapping")

    _check_keys(
        raw_config,
        {
            "default_provider", "providers", "cost_tracking", "budget_enforcement",
            "middleware", "rate_limiting", "pricing", "logging",
        },
        "configuration",
    )

    providers = _default_providers()
    for name, data in _section(raw_config, "providers").items():
        providers[name] = _parse_provider(_mapping(data, f"providers.{name}"), f"providers.{name}")

    return SpendGuardConfig(
        default_provider=str(raw_config.get("default_provider", "openai")),
        providers=providers,
        cost_tracking=_parse_cost_tracking(_section(raw_config, "cost_tracking")),
        budget_enforcement=_parse_budget_enforcement(_section(raw_config, "budget_enforcement")),
        middleware=_parse_middleware(_section(raw_config, "middleware")),
        rate_limiting=_parse_rate_limiting(_section(raw_config, "rate_limiting")),
        pricing=_parse_pricing(_section(raw_config, "pricing")),
        logging=_parse_logging(_section(raw_config, "logging")),
    )


def _section(raw: Mapping[str, Any], name: str) -> Mapping[str, Any]:
    return _mapping(raw.get(name) or {}, name)


def _mapping(data: Any, path: str) -> Mapping[str, Any]:
    if not isinstance(data, Mapping):
        raise ValueError(f"'{path}' must be a dictionary")
    return data


def _check_keys(data: Mapping[str, Any], allowed: set, path: str) -> None:
    unknown_keys = set(data.keys()) - allowed
    if unknown_keys:
        raise ValueError(f"Unknown keys in {path}: {unknown_keys}")


def _number(data: Mapping[str, Any], key: str, path: str, default):
    value = data.get(key, default)
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"'{key}' in {path} must be a number")
    return value


def _flag(data: Mapping[str, Any], key: str, path: str, default: Optional[bool]) -> Optional[bool]:
    value = data.get(key, default)
    if value is not None and not isinstance(value, bool):
        raise ValueError(f"'{key}' in {path} must be true or false")
    return value


def _amount(data: Mapping[str, Any], key: str, path: str) -> Optional[Decimal]:
    value = _number(data, key, path, None)
    return None if value is None else to_decimal(value)


def _parse_provider(data: Mapping[str, Any], path: str) -> ProviderSettings:
    _check_keys(
        data,
        {
            "driver", "base_url", "api_key_env", "timeout", "retry_attempts",
            "retry_delay_ms", "max_retry_delay_ms", "default_model",
        },
        path,
    )
    defaults = ProviderSettings()
    retry_attempts = _number(data, "retry_attempts", path, defaults.retry_attempts)
    if not isinstance(retry_attempts, int):
        raise ValueError(f"'retry_attempts' in {path} must be an integer")
    return ProviderSettings(
        driver=str(data.get("driver", defaults.driver)),
        base_url=data.get("base_url"),
        api_key_env=data.get("api_key_env"),
        timeout=float(_number(data, "timeout", path, defaults.timeout)),
        retry_attempts=retry_attempts,
        retry_delay_ms=float(_number(data, "retry_delay_ms", path, defaults.retry_delay_ms)),
        max_retry_delay_ms=float(_number(data, "max_retry_delay_ms", path, defaults.max_retry_delay_ms)),
        default_model=data.get("default_model"),
    )


def _parse_cost_tracking(data: Mapping[str, Any]) -> CostTrackingConfig:
    path = "cost_tracking"
    _check_keys(data, {"enabled", "currency", "precision"}, path)
    precision = _number(data, "precision", path, DEFAULT_PRECISION)
    if not isinstance(precision, int):
        raise ValueError(f"'precision' in {path} must be an integer")
    return CostTrackingConfig(
        enabled=_flag(data, "enabled", path, True),
        currency=str(data.get("currency", DEFAULT_CURRENCY)).upper(),
        precision=precision,
    )


def _parse_budget_enforcement(data: Mapping[str, Any]) -> BudgetEnforcementConfig:
    path = "budget_enforcement"
    _check_keys(
        data,
        {
            "enabled", "strict_mode", "fail_open", "cache_ttl", "daily_limit",
            "monthly_limit", "per_request_limit", "warning_threshold", "critical_threshold",
        },
        path,
    )
    return BudgetEnforcementConfig(
        enabled=_flag(data, "enabled", path, True),
        strict_mode=_flag(data, "strict_mode", path, False),
        fail_open=_flag(data, "fail_open", path, None),
        cache_ttl=float(_number(data, "cache_ttl", path, 0)),
        daily_limit=_amount(data, "daily_limit", path),
        monthly_limit=_amount(data, "monthly_limit", path),
        per_request_limit=_amount(data, "per_request_limit", path),
        warning_threshold=float(_number(data, "warning_threshold", path, 80.0)),
        critical_threshold=float(_number(data, "critical_threshold", path, 90.0)),
    )


def _parse_middleware(data: Mapping[str, Any]) -> MiddlewareConfig:
    path = "middleware"
    _check_keys(data, {"global", "stack_target_ms"}, path)
    names = data.get("global", list(DEFAULT_GLOBAL_MIDDLEWARE))
    if not isinstance(names, list) or not all(isinstance(n, str) for n in names):
        raise ValueError(f"'global' in {path} must be a list of middleware names")
    return MiddlewareConfig(
        global_middleware=tuple(names),
        stack_target_ms=float(_number(data, "stack_target_ms", path, 10.0)),
    )


def _parse_rate_limiting(data: Mapping[str, Any]) -> RateLimitingConfig:
    path = "rate_limiting"
    _check_keys(data, {"enabled", "per_provider"}, path)
    limits = _default_rate_limits()
    for name, entry in _mapping(data.get("per_provider") or {}, f"{path}.per_provider").items():
        entry_path = f"{path}.per_provider.{name}"
        entry = _mapping(entry, entry_path)
        _check_keys(entry, {"requests_per_minute", "tokens_per_minute"}, entry_path)
        limits[name] = ProviderRateLimit(
            requests_per_minute=_number(entry, "requests_per_minute", entry_path, None),
            tokens_per_minute=_number(entry, "tokens_per_minute", entry_path, None),
        )
    return RateLimitingConfig(enabled=_flag(data, "enabled", path, True), per_provider=limits)


def _parse_pricing(data: Mapping[str, Any]) -> Dict[str, ModelPricing]:
    prices = {}
    for model, entry in data.items():
        path = f"pricing.{model}"
        entry = _mapping(entry, path)
        _check_keys(entry, {"input_per_1k", "output_per_1k", "currency"}, path)
        for key in ("input_per_1k", "output_per_1k"):
            if key not in entry:
                raise ValueError(f"Missing required '{key}' in {path}")
        prices[str(model)] = ModelPricing(
            input_per_1k=to_decimal(_number(entry, "input_per_1k", path, None)),
            output_per_1k=to_decimal(_number(entry, "output_per_1k", path, None)),
            currency=str(entry.get("currency", DEFAULT_CURRENCY)).upper(),
        )
    return prices


def _parse_logging(data: Mapping[str, Any]) -> LoggingConfig:
    path = "logging"
    _check_keys(data, {"level", "json"}, path)
    return LoggingConfig(
        level=str(data.get("level", "INFO")).upper(),
        json=_flag(data, "json", path, False),
    )
