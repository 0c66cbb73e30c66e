"""
Tests for the pitwall.config module.

This module tests:
- Defaults of every section
- Range validation
- Building from nested dicts and from PITWALL_* environment variables
"""

import pytest

from pitwall.config import (
    CheckpointConfig,
    EngineConfig,
    MemoryConfig,
    ModelConfig,
    PitwallConfig,
    RouterConfig,
    StreamingConfig,
)
from pitwall.exceptions import ConfigurationError


class TestDefaults:
    def test_router_thresholds(self):
        config = RouterConfig()

        assert (config.explicit_threshold, config.keyword_threshold) == (0.9, 0.7)
        assert (config.context_threshold, config.model_threshold) == (0.5, 0.3)
        assert config.default_handler == "season"

    def test_engine(self):
        config = EngineConfig()

        assert config.handler_timeout == 150.0
        assert config.direct_confidence_threshold == 0.7
        assert config.enhancement_fallback_confidence == 0.5

    def test_streaming_stale_after(self):
        assert StreamingConfig(heartbeat_interval=30, stale_factor=5).stale_after == 150

    def test_retention(self):
        assert CheckpointConfig().max_age_days == 7
        assert MemoryConfig().max_age_days == 30
        assert MemoryConfig().max_messages_per_thread == 100


class TestValidation:
    @pytest.mark.parametrize(
        "factory",
        [
            lambda: RouterConfig(keyword_threshold=1.5),
            lambda: EngineConfig(handler_timeout=0),
            lambda: CheckpointConfig(backend="redis"),
            lambda: StreamingConfig(max_connections=0),
            lambda: MemoryConfig(max_messages_per_thread=-1),
        ],
    )
    def test_invalid_values(self, factory):
        with pytest.raises(ConfigurationError):
            factory()

    def test_model_config_bounds(self):
        with pytest.raises(ValueError):
            ModelConfig(temperature=3.0)


class TestFromDict:
    def test_nested(self):
        config = PitwallConfig.from_dict(
            {
                "router": {"model_tier_enabled": False},
                "checkpoint": {"backend": "memory"},
                "model": {"name": "local-llm", "base_url": "http://localhost:8000/v1"},
            }
        )

        assert config.router.model_tier_enabled is False
        assert config.checkpoint.backend == "memory"
        assert config.model.name == "local-llm"
        assert config.engine == EngineConfig()

    def test_unknown_section(self):
        with pytest.raises(ConfigurationError, match="sections"):
            PitwallConfig.from_dict({"telemetry": {}})

    def test_unknown_key(self):
        with pytest.raises(ConfigurationError) as exc_info:
            PitwallConfig.from_dict({"engine": {"handler_timeot": 10}})

        assert exc_info.value.config_key == "handler_timeot"


class TestFromEnv:
    def test_reads_prefixed_variables(self):
        environ = {
            "PITWALL_ENGINE_HANDLER_TIMEOUT": "30",
            "PITWALL_ROUTER_MODEL_TIER_ENABLED": "false",
            "PITWALL_STREAMING_MAX_CONNECTIONS": "5",
            "PITWALL_CHECKPOINT_BACKEND": "memory",
            "PITWALL_MODEL_NAME": "gpt-test",
        }

        config = PitwallConfig.from_env(environ)

        assert config.engine.handler_timeout == 30.0
        assert config.router.model_tier_enabled is False
        assert config.streaming.max_connections == 5
        assert config.checkpoint.backend == "memory"
        assert config.model.name == "gpt-test"

    def test_bad_number(self):
        with pytest.raises(ConfigurationError, match="PITWALL_ENGINE_MAX_STEPS"):
            EngineConfig.from_env({"PITWALL_ENGINE_MAX_STEPS": "lots"})
