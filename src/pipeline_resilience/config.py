"""Configuration with 4-layer resolution: defaults -> YAML -> env -> overrides.

Uses pydantic-settings with YamlConfigSettingsSource for layered configuration.
Supports ``.env`` file loading, ``PIPELINE_RESILIENCE_`` prefixed env vars,
and nested delimiter ``__`` for overriding sub-model fields.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, ClassVar, Literal

import structlog
from pydantic import BaseModel, Field, ValidationError, model_validator
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
    YamlConfigSettingsSource,
)

from pipeline_resilience.models import Stage

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)


# ---------------------------------------------------------------------------
# Sub-models
# ---------------------------------------------------------------------------


class BreakerSettings(BaseModel):
    """Per-stage circuit breaker configuration."""

    threshold: int = Field(default=5, ge=1, le=100)
    timeout_seconds: float = Field(
        default=60.0, gt=0.0, description="How long a tripped breaker stays open."
    )


class HistorySettings(BaseModel):
    """Error history ring buffer configuration."""

    max_entries_per_stage: int = Field(default=100, ge=1, le=10_000)


class StrategyOverrideSettings(BaseModel):
    """Data-driven override for one registered recovery strategy."""

    enabled: bool = True
    priority: int | None = Field(default=None, ge=0)
    stages: list[Stage] | None = None
    prevention_score: float | None = Field(default=None, ge=0.0, le=1.0)


class RecoverySettings(BaseModel):
    """Recovery orchestration settings."""

    max_retry_count: int = Field(default=3, ge=1, le=3)
    strategy_timeout_seconds: float = Field(
        default=30.0,
        gt=0.0,
        description="Deadline for a single strategy execution.",
    )
    strategies: dict[str, StrategyOverrideSettings] = Field(default_factory=dict)


class IndicatorSettings(BaseModel):
    """Warning thresholds for the predictive indicators."""

    memory_pressure: float = Field(default=0.8, gt=0.0, le=1.0)
    processing_latency_ms: float = Field(default=2000.0, gt=0.0)
    error_rate: float = Field(default=0.05, gt=0.0, le=1.0)
    cache_effectiveness: float = Field(default=0.3, gt=0.0, le=1.0)


class MonitorSettings(BaseModel):
    """Health monitor configuration."""

    interval_seconds: float = Field(default=30.0, gt=0.0)
    health_window_seconds: float = Field(
        default=300.0, gt=0.0, description="Trailing window for per-stage health."
    )
    errors_for_zero_health: int = Field(default=10, ge=1)
    telemetry_window_seconds: float = Field(default=300.0, gt=0.0)
    trend_samples: int = Field(default=20, ge=3, le=1000)
    snapshot_queue_size: int = Field(
        default=0,
        ge=0,
        le=1000,
        description="Bounded queue of health snapshots for the host (0 disables).",
    )
    indicators: IndicatorSettings = Field(default_factory=IndicatorSettings)


class RiskSettings(BaseModel):
    """Predictive risk assessment weights and buckets."""

    error_window_seconds: float = Field(default=3600.0, gt=0.0)
    health_floor: float = Field(default=0.7, ge=0.0, le=1.0)
    error_count_limit: int = Field(default=3, ge=0)
    complexity_limit: float = Field(default=0.8, ge=0.0, le=1.0)
    health_weight: float = Field(default=0.3, ge=0.0, le=1.0)
    memory_weight: float = Field(default=0.2, ge=0.0, le=1.0)
    error_weight: float = Field(default=0.4, ge=0.0, le=1.0)
    complexity_weight: float = Field(default=0.1, ge=0.0, le=1.0)
    medium_at: float = Field(default=0.2, ge=0.0, le=1.0)
    high_at: float = Field(default=0.5, ge=0.0, le=1.0)
    critical_at: float = Field(default=0.8, ge=0.0, le=1.0)

    @model_validator(mode="after")
    def _buckets_ascending(self) -> RiskSettings:
        if not self.medium_at <= self.high_at <= self.critical_at:
            msg = "risk buckets must satisfy medium_at <= high_at <= critical_at"
            raise ValueError(msg)
        return self


class GateSettings(BaseModel):
    """Execution gate (concurrency cap and request timeout)."""

    max_concurrent_requests: int = Field(default=10, ge=1, le=1000)
    request_timeout_seconds: float = Field(default=30.0, gt=0.0)
    shutdown_grace_seconds: float = Field(default=30.0, ge=0.0)
    response_time_baseline_seconds: float = Field(default=5.0, gt=0.0)


class LoggingSettings(BaseModel):
    """Logging / observability configuration."""

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"
    format: Literal["console", "json"] = "console"
    file: Path | None = None


# ---------------------------------------------------------------------------
# Main Settings (4-layer resolution)
# ---------------------------------------------------------------------------


class Settings(BaseSettings):
    """Top-level engine settings.

    Resolution order (last wins):
        1. Field defaults (defined above)
        2. YAML config file (``resilience.yaml`` or ``config_path``)
        3. Environment variables (prefixed ``PIPELINE_RESILIENCE_``)
        4. Programmatic overrides passed to :meth:`load`
    """

    model_config = SettingsConfigDict(
        env_prefix="PIPELINE_RESILIENCE_",
        env_nested_delimiter="__",
        env_file=".env",
        env_file_encoding="utf-8",
        yaml_file="resilience.yaml",
        yaml_file_encoding="utf-8",
        extra="ignore",
    )

    _config_path_override: ClassVar[Path | None] = None

    breaker: BreakerSettings = Field(default_factory=BreakerSettings)
    history: HistorySettings = Field(default_factory=HistorySettings)
    recovery: RecoverySettings = Field(default_factory=RecoverySettings)
    monitor: MonitorSettings = Field(default_factory=MonitorSettings)
    risk: RiskSettings = Field(default_factory=RiskSettings)
    gate: GateSettings = Field(default_factory=GateSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        """Customise settings source priority.

        Resolution order (first = highest priority):
            init_settings > env_settings > dotenv (.env) > yaml > defaults
        """
        yaml_file = cls._config_path_override or settings_cls.model_config.get(
            "yaml_file", "resilience.yaml"
        )
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            YamlConfigSettingsSource(settings_cls, yaml_file=yaml_file),
        )

    @classmethod
    def load(cls, config_path: Path | None = None, **overrides: Any) -> Settings:
        """Load settings with optional config path and overrides.

        Args:
            config_path: Optional path to a YAML config file.
            **overrides: Key-value overrides applied at highest priority.

        Returns:
            Fully-resolved Settings instance.

        Raises:
            ValidationError: If any setting value fails validation.
        """
        cls._config_path_override = config_path
        try:
            return cls(**overrides)
        finally:
            cls._config_path_override = None


def format_validation_error(exc: ValidationError) -> str:
    """Format a Pydantic ValidationError into a user-friendly message.

    Args:
        exc: The validation error to format.

    Returns:
        A multi-line string with each error on its own line.
    """
    lines: list[str] = []
    for error in exc.errors():
        loc = " -> ".join(str(part) for part in error["loc"])
        msg = error["msg"]
        raw_input = error.get("input")
        if raw_input is not None:
            lines.append(f"  {loc}: {msg} (got {raw_input!r})")
        else:
            lines.append(f"  {loc}: {msg}")
    return "Configuration error:\n" + "\n".join(lines)
