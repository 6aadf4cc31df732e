"""Client configuration.

The runtime takes fully resolved values; this module is the only place
that looks at files or the environment. Precedence, highest first:
explicit overrides, ``JOBCLIENT_*`` environment variables, the YAML file,
built-in defaults.

Example YAML:
    base_url: https://api.example.com
    api_key: ${JOBS_API_KEY}
    timeout: 30
    max_concurrency: 8
    poll:
      poll_timeout: 600
      backoff: exponential
    circuit_breaker:
      failure_threshold: 3
    rate_limits:
      jobs:
        requests_per_second: 5
        burst_size: 10
"""

from __future__ import annotations

import copy
import logging
from pathlib import Path
from typing import Any, Dict, Optional, Union

import pydantic
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from jobclient.backoff import DEFAULT_INITIAL_BACKOFF, DEFAULT_MAX_BACKOFF, PollBackoff
from jobclient.env import load_env_file
from jobclient.errors import ConfigurationError
from jobclient.future import DEFAULT_HTTP_TIMEOUT, DEFAULT_PAUSED_DELAY, PollConfig
from jobclient.manifest import read_yaml
from jobclient.retry import RetryPolicy
from jobclient.stack import DEFAULT_IDEMPOTENCY_HEADER

logger = logging.getLogger(__name__)

__all__ = [
    "PollSettings",
    "BreakerSettings",
    "RateLimitSettings",
    "RetrySettings",
    "EnvironmentSettings",
    "ClientConfig",
    "load_config",
]


class PollSettings(BaseModel):
    model_config = ConfigDict(extra="forbid")

    initial_backoff: float = Field(default=DEFAULT_INITIAL_BACKOFF, gt=0)
    max_backoff: float = Field(default=DEFAULT_MAX_BACKOFF, gt=0)
    paused_delay: float = Field(default=DEFAULT_PAUSED_DELAY, ge=0)
    poll_timeout: Optional[float] = Field(default=None, gt=0, description="Overall deadline")
    http_timeout: Optional[float] = Field(default=None, gt=0, description="Per-poll HTTP timeout")
    backoff: Union[bool, str, Dict[str, float]] = Field(
        default="exponential",
        description="Backoff after 408/5xx: none, exponential, or {initial, max}",
    )

    @field_validator("backoff")
    @classmethod
    def validate_backoff(cls, v: Any) -> Any:
        PollBackoff.parse(v)
        return v

    @model_validator(mode="after")
    def check_backoff_range(self) -> "PollSettings":
        if self.max_backoff < self.initial_backoff:
            raise ValueError("poll.max_backoff must be >= poll.initial_backoff")
        return self


class BreakerSettings(BaseModel):
    model_config = ConfigDict(extra="forbid")

    failure_threshold: int = Field(default=5, ge=1)
    reset_timeout: float = Field(default=30.0, gt=0)
    half_open_max_calls: int = Field(default=1, ge=1)


class RateLimitSettings(BaseModel):
    model_config = ConfigDict(extra="forbid")

    requests_per_second: Optional[float] = Field(default=None, gt=0)
    burst_size: Optional[int] = Field(default=None, ge=1)


class RetrySettings(BaseModel):
    model_config = ConfigDict(extra="forbid")

    max_attempts: Optional[int] = Field(default=3, ge=1, description="None retries forever")
    initial_delay: float = Field(default=0.5, ge=0)
    max_delay: float = Field(default=10.0, ge=0)
    jitter: float = Field(default=0.25, ge=0.0, le=1.0)


class EnvironmentSettings(BaseSettings):
    """Values read from ``JOBCLIENT_*`` environment variables."""

    base_url: Optional[str] = None
    api_key: Optional[str] = None
    timeout: Optional[float] = None
    poll_timeout: Optional[float] = None

    model_config = SettingsConfigDict(env_prefix="JOBCLIENT_", extra="ignore")


class ClientConfig(BaseModel):
    """Resolved client configuration."""

    model_config = ConfigDict(extra="forbid")

    base_url: Optional[str] = Field(default=None, description="Overrides the manifest base_url")
    api_key: Optional[str] = Field(default=None, description="Sent as a bearer token")
    timeout: float = Field(default=DEFAULT_HTTP_TIMEOUT, gt=0, description="HTTP timeout")
    headers: Dict[str, str] = Field(default_factory=dict)
    user_metadata: Dict[str, Any] = Field(default_factory=dict)
    idempotency_header: str = Field(default=DEFAULT_IDEMPOTENCY_HEADER, min_length=1)
    max_concurrency: Optional[int] = Field(default=None, ge=1, description="Cap on in-flight requests")
    poll: PollSettings = Field(default_factory=PollSettings)
    circuit_breaker: BreakerSettings = Field(default_factory=BreakerSettings)
    rate_limit: RateLimitSettings = Field(default_factory=RateLimitSettings)
    rate_limits: Dict[str, RateLimitSettings] = Field(default_factory=dict)
    retry: RetrySettings = Field(default_factory=RetrySettings)

    @field_validator("base_url")
    @classmethod
    def strip_trailing_slash(cls, v: Optional[str]) -> Optional[str]:
        return v.rstrip("/") if v else v

    def to_poll_config(self) -> PollConfig:
        poll = self.poll
        return PollConfig(
            initial_backoff=poll.initial_backoff,
            max_backoff=poll.max_backoff,
            paused_delay=poll.paused_delay,
            poll_timeout=poll.poll_timeout,
            http_timeout=poll.http_timeout or self.timeout,
            poll_backoff=PollBackoff.parse(poll.backoff),
        )

    def to_retry_policy(self) -> RetryPolicy:
        return RetryPolicy(**self.retry.model_dump())

    def rate_limit_map(self) -> Dict[str, Dict[str, Any]]:
        return {key: value.model_dump() for key, value in self.rate_limits.items()}


def _deep_merge(base: Dict[str, Any], extra: Dict[str, Any]) -> Dict[str, Any]:
    merged = copy.deepcopy(base)
    for key, value in extra.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def load_config(
    path: Optional[Union[str, Path]] = None,
    *,
    env_file: Optional[Union[str, Path]] = None,
    overrides: Optional[Dict[str, Any]] = None,
) -> ClientConfig:
    """Resolve configuration from a YAML file, the environment and overrides.

    Args:
        path: Optional YAML file
        env_file: Optional ``.env`` file loaded before reading the environment
        overrides: Values that win over everything else

    Raises:
        ConfigurationError: If the file is unreadable or a value is invalid
    """
    if env_file is not None:
        load_env_file(env_file)

    data: Dict[str, Any] = read_yaml(path) if path is not None else {}

    try:
        env = EnvironmentSettings()
    except pydantic.ValidationError as e:
        raise ConfigurationError(
            f"Invalid JOBCLIENT_* environment variable: {e.error_count()} error(s)",
            data={"errors": e.errors(include_url=False)},
            cause=e,
        ) from e

    from_env: Dict[str, Any] = {}
    for name in ("base_url", "api_key", "timeout"):
        value = getattr(env, name)
        if value is not None:
            from_env[name] = value
    if env.poll_timeout is not None:
        from_env["poll"] = {"poll_timeout": env.poll_timeout}

    merged = _deep_merge(_deep_merge(data, from_env), overrides or {})
    try:
        config = ClientConfig.model_validate(merged)
    except pydantic.ValidationError as e:
        raise ConfigurationError(
            f"Invalid client configuration: {e.error_count()} error(s)",
            data={"errors": e.errors(include_url=False)},
            cause=e,
            suggestion="Check the YAML file and JOBCLIENT_* environment variables",
        ) from e

    logger.debug("Loaded client configuration for %s", config.base_url or "<manifest base_url>")
    return config
