from __future__ import annotations

import os
from typing import Dict, List, Optional

import yaml
from pydantic import BaseModel, Field, ValidationError as PydanticValidationError
from pydantic import field_validator, model_validator

from .contracts import WorkerType
from .exceptions import ConfigurationError, ErrorCategory

CONFIG_ENV_VAR = "PLAYBOOK_ORCHESTRATOR_CONFIG"
DATABASE_URL_ENV_VARS = ("PLAYBOOK_ORCHESTRATOR_DATABASE_URL", "DATABASE_URL")


class RetryConfig(BaseModel):
    """Step-level retry settings."""

    delays: List[float] = Field(default_factory=lambda: [1.0, 2.0, 5.0, 10.0, 20.0])
    recoverable_categories: List[ErrorCategory] = Field(
        default_factory=lambda: [ErrorCategory.TIMEOUT, ErrorCategory.SYSTEM]
    )

    @field_validator("delays")
    @classmethod
    def _check_delays(cls, v: List[float]) -> List[float]:
        if not v:
            raise ValueError("retry delay ladder must not be empty")
        if any(d < 0 for d in v):
            raise ValueError("retry delays must be non-negative")
        return v


class IdempotencyConfig(BaseModel):
    expiration_seconds: float = Field(default=86400.0, gt=0)
    stuck_threshold_seconds: float = Field(default=300.0, gt=0)


class RateLimitRule(BaseModel):
    """Cap on executions of one worker type per user in a rolling window."""

    max_executions: int = Field(..., ge=1)
    window_seconds: float = Field(..., gt=0)


class AIConfig(BaseModel):
    primary_model: Optional[str] = None
    fallback_model: Optional[str] = None
    min_confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    system_prompt: Optional[str] = None


class OrchestratorConfig(BaseModel):
    """Top-level configuration model."""

    polling_interval: float = Field(default=5.0, gt=0)
    max_concurrent_runs: int = Field(default=10, ge=1)
    max_concurrent_steps_per_run: int = Field(default=3, ge=1)
    handler_timeout: float = Field(default=1800.0, gt=0)
    system_handler_timeout: float = Field(default=60.0, gt=0)
    drain_timeout: float = Field(default=30.0, ge=0)
    lease_seconds: Optional[float] = Field(default=None, gt=0)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    idempotency: IdempotencyConfig = Field(default_factory=IdempotencyConfig)
    rate_limits: Dict[WorkerType, RateLimitRule] = Field(default_factory=dict)
    organizations: List[str] = Field(default_factory=list)
    permissions: Dict[str, List[str]] = Field(default_factory=dict)
    ai: AIConfig = Field(default_factory=AIConfig)
    database_url: Optional[str] = None
    instance_id: Optional[str] = None
    log_level: str = "INFO"

    @model_validator(mode="after")
    def _default_lease(self) -> "OrchestratorConfig":
        if self.lease_seconds is None:
            self.lease_seconds = self.handler_timeout + 60.0
        return self

    def snapshot(self) -> dict:
        """Effective configuration without secrets, for health reporting."""
        return self.model_dump(mode="json", exclude={"permissions", "database_url"})


def parse_config(data: dict) -> OrchestratorConfig:
    """Validate a raw mapping, raising :class:`ConfigurationError` on failure."""
    try:
        return OrchestratorConfig(**data)
    except PydanticValidationError as exc:
        raise ConfigurationError(
            f"Invalid orchestrator configuration: {exc.error_count()} error(s)",
            {"errors": exc.errors(include_url=False, include_context=False)},
        ) from exc


def load_config(path: Optional[str] = None) -> OrchestratorConfig:
    """Load configuration from YAML file.

    Args:
        path: Optional path to config file. Falls back to the
            PLAYBOOK_ORCHESTRATOR_CONFIG env variable or 'config.yaml' in the
            current directory.
    """

    config_path = path or os.getenv(CONFIG_ENV_VAR, "config.yaml")
    if os.path.exists(config_path):
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        if not isinstance(data, dict):
            raise ConfigurationError(f"Configuration file {config_path} must be a mapping")
        config = parse_config(data)
    else:
        config = OrchestratorConfig()

    for env_var in DATABASE_URL_ENV_VARS:
        env_db_url = os.getenv(env_var)
        if env_db_url:
            config.database_url = env_db_url
            break
    return config
