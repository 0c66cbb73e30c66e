"""
Configuration classes for the orchestration engine.

Every component takes its own config dataclass; ``PitwallConfig`` aggregates
them and can be built from a plain dict or from ``PITWALL_*`` environment
variables.
"""

import logging
import os
from dataclasses import dataclass, field, fields
from typing import Any, Dict, Literal, Optional

from pydantic import BaseModel, Field, model_validator

from .exceptions import ConfigurationError

logger = logging.getLogger(__name__)

ENV_PREFIX = "PITWALL_"


def _coerce(raw: str, current: Any) -> Any:
    """Convert an environment string to the type of the field's default."""
    if isinstance(current, bool):
        return raw.strip().lower() in ("1", "true", "yes", "on")
    if isinstance(current, int):
        return int(raw)
    if isinstance(current, float):
        return float(raw)
    return raw


class _EnvMixin:
    """Shared from_dict/from_env helpers for the section dataclasses."""

    section: str = ""

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]] = None):
        data = data or {}
        known = {f.name for f in fields(cls)}
        unknown = set(data) - known
        if unknown:
            raise ConfigurationError(
                f"Unknown {cls.__name__} keys: {', '.join(sorted(unknown))}",
                config_key=sorted(unknown)[0],
            )
        return cls(**data)

    @classmethod
    def from_env(cls, environ: Optional[Dict[str, str]] = None):
        """Read ``PITWALL_<SECTION>_<FIELD>`` variables over the defaults."""
        environ = os.environ if environ is None else environ
        defaults = cls()
        values = {}
        for f in fields(cls):
            key = f"{ENV_PREFIX}{cls.section}_{f.name}".upper()
            if key in environ:
                try:
                    values[f.name] = _coerce(environ[key], getattr(defaults, f.name))
                except ValueError as e:
                    raise ConfigurationError(
                        f"Invalid value for {key}: {environ[key]!r}", config_key=key
                    ) from e
        return cls(**values)


def _require_unit_interval(name: str, value: float) -> None:
    if not 0.0 <= value <= 1.0:
        raise ConfigurationError(f"{name} must be between 0.0 and 1.0, got {value}", config_key=name)


def _require_positive(name: str, value: float) -> None:
    if value <= 0:
        raise ConfigurationError(f"{name} must be positive, got {value}", config_key=name)


@dataclass
class RouterConfig(_EnvMixin):
    """Thresholds and fixed confidences for the routing tiers."""
    section = "router"

    explicit_threshold: float = 0.9
    keyword_threshold: float = 0.7
    context_threshold: float = 0.5
    model_threshold: float = 0.3

    explicit_confidence: float = 0.95
    fallback_confidence: float = 0.1
    default_handler: str = "season"

    model_tier_enabled: bool = True
    model_timeout: float = 10.0  # seconds

    def __post_init__(self):
        for name in ("explicit_threshold", "keyword_threshold", "context_threshold",
                     "model_threshold", "explicit_confidence", "fallback_confidence"):
            _require_unit_interval(name, getattr(self, name))
        _require_positive("model_timeout", self.model_timeout)


@dataclass
class EngineConfig(_EnvMixin):
    """Workflow engine timeouts and synthesis constants."""
    section = "engine"

    handler_timeout: float = 150.0  # seconds per handler call
    analysis_timeout: float = 30.0  # seconds for the intent extraction call
    synthesis_timeout: float = 60.0  # seconds for the enhancement call

    direct_confidence_threshold: float = 0.7
    enhancement_fallback_confidence: float = 0.5
    error_confidence: float = 0.3
    max_steps: int = 20

    checkpointing_enabled: bool = True
    checkpoint_namespace: str = ""

    def __post_init__(self):
        for name in ("handler_timeout", "analysis_timeout", "synthesis_timeout", "max_steps"):
            _require_positive(name, getattr(self, name))
        for name in ("direct_confidence_threshold", "enhancement_fallback_confidence", "error_confidence"):
            _require_unit_interval(name, getattr(self, name))


@dataclass
class CheckpointConfig(_EnvMixin):
    """Checkpoint backend selection and retention."""
    section = "checkpoint"

    backend: Literal["sqlite", "memory"] = "sqlite"
    db_path: str = "./data/checkpoints.db"
    max_age_days: float = 7.0
    cleanup_interval_hours: float = 24.0
    auto_cleanup: bool = True

    def __post_init__(self):
        if self.backend not in ("sqlite", "memory"):
            raise ConfigurationError(f"Unknown checkpoint backend '{self.backend}'", config_key="backend")
        _require_positive("max_age_days", self.max_age_days)
        _require_positive("cleanup_interval_hours", self.cleanup_interval_hours)


@dataclass
class StreamingConfig(_EnvMixin):
    """Connection limits and heartbeat timing for the event broadcaster."""
    section = "streaming"

    max_connections: int = 100
    heartbeat_interval: float = 30.0  # seconds
    stale_factor: int = 5  # inactive for stale_factor * heartbeat_interval -> evicted
    send_timeout: float = 5.0  # seconds before a slow delivery counts as failed
    queue_size: int = 1000  # buffer for queue-backed subscribers

    def __post_init__(self):
        _require_positive("max_connections", self.max_connections)
        _require_positive("heartbeat_interval", self.heartbeat_interval)
        _require_positive("stale_factor", self.stale_factor)
        _require_positive("send_timeout", self.send_timeout)
        _require_positive("queue_size", self.queue_size)

    @property
    def stale_after(self) -> float:
        return self.heartbeat_interval * self.stale_factor


@dataclass
class MemoryConfig(_EnvMixin):
    """Conversation log location and retention."""
    section = "memory"

    db_path: str = "./data/conversations.db"
    max_age_days: int = 30
    max_messages_per_thread: int = 100

    def __post_init__(self):
        _require_positive("max_age_days", self.max_age_days)
        _require_positive("max_messages_per_thread", self.max_messages_per_thread)


@dataclass
class RetryConfig(_EnvMixin):
    """Retry and circuit-breaker settings for model calls."""
    section = "retry"

    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 10.0
    jitter: float = 0.1

    failure_threshold: int = 5
    recovery_timeout: float = 60.0
    success_threshold: int = 3

    def __post_init__(self):
        _require_positive("max_attempts", self.max_attempts)
        _require_positive("failure_threshold", self.failure_threshold)
        _require_positive("success_threshold", self.success_threshold)
        if self.base_delay < 0 or self.max_delay < 0:
            raise ConfigurationError("Retry delays must not be negative", config_key="base_delay")
        _require_unit_interval("jitter", self.jitter)


@dataclass
class DataApiConfig(_EnvMixin):
    """Upstream F1 data API endpoint."""
    section = "data"

    base_url: str = "http://localhost:3001"
    timeout: float = 15.0
    mock_fallback: bool = True

    def __post_init__(self):
        _require_positive("timeout", self.timeout)


class ModelConfig(BaseModel):
    """
    Pydantic schema for the OpenAI-compatible chat completion endpoint.

    Reads the API key from ``PITWALL_MODEL_API_KEY`` or ``OPENAI_API_KEY`` when
    it is not provided directly.
    """

    name: str = Field("gpt-4o-mini", description="Model identifier sent to the endpoint")
    base_url: str = Field("https://api.openai.com/v1", description="Chat completions API root")
    api_key: Optional[str] = Field(None, description="API key (read from env if None)")
    temperature: float = Field(0.1, ge=0.0, le=2.0, description="Sampling temperature")
    max_tokens: int = Field(2000, gt=0, description="Maximum tokens to generate")
    timeout: float = Field(60.0, gt=0, description="Per-request timeout in seconds")

    @model_validator(mode="after")
    def _read_api_key(self) -> "ModelConfig":
        if self.api_key is None:
            for env_var in ("PITWALL_MODEL_API_KEY", "OPENAI_API_KEY"):
                env_api_key = os.getenv(env_var)
                if env_api_key:
                    object.__setattr__(self, "api_key", env_api_key)
                    logger.debug(f"Read model API key from env var '{env_var}'.")
                    break
        return self


@dataclass
class PitwallConfig:
    """Aggregate configuration for the whole application."""

    router: RouterConfig = field(default_factory=RouterConfig)
    engine: EngineConfig = field(default_factory=EngineConfig)
    checkpoint: CheckpointConfig = field(default_factory=CheckpointConfig)
    streaming: StreamingConfig = field(default_factory=StreamingConfig)
    memory: MemoryConfig = field(default_factory=MemoryConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)
    data: DataApiConfig = field(default_factory=DataApiConfig)
    model: ModelConfig = field(default_factory=ModelConfig)

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]] = None) -> "PitwallConfig":
        """Build from a nested dict such as a parsed YAML or JSON file."""
        data = dict(data or {})
        sections = {
            "router": RouterConfig,
            "engine": EngineConfig,
            "checkpoint": CheckpointConfig,
            "streaming": StreamingConfig,
            "memory": MemoryConfig,
            "retry": RetryConfig,
            "data": DataApiConfig,
        }
        kwargs = {name: section_cls.from_dict(data.pop(name, None)) for name, section_cls in sections.items()}
        if "model" in data:
            kwargs["model"] = ModelConfig(**data.pop("model"))
        if data:
            raise ConfigurationError(
                f"Unknown config sections: {', '.join(sorted(data))}", config_key=sorted(data)[0]
            )
        return cls(**kwargs)

    @classmethod
    def from_env(cls, environ: Optional[Dict[str, str]] = None) -> "PitwallConfig":
        environ = os.environ if environ is None else environ
        model_kwargs = {}
        for name in ("name", "base_url", "temperature", "max_tokens", "timeout"):
            key = f"{ENV_PREFIX}MODEL_{name}".upper()
            if key in environ:
                model_kwargs[name] = environ[key]
        return cls(
            router=RouterConfig.from_env(environ),
            engine=EngineConfig.from_env(environ),
            checkpoint=CheckpointConfig.from_env(environ),
            streaming=StreamingConfig.from_env(environ),
            memory=MemoryConfig.from_env(environ),
            retry=RetryConfig.from_env(environ),
            data=DataApiConfig.from_env(environ),
            model=ModelConfig(**model_kwargs),
        )
