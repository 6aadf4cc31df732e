"""Endpoint manifest.

A manifest describes every operation the client can call: method, path
template, which retry policy applies, which circuit-breaker and rate-limit
budgets it shares, and whether its response is a job handle to poll.

Example YAML:
    name: jobs-api
    base_url: ${JOBS_API_URL}
    retry_policies:
      patient:
        max_attempts: 6
        initial_delay: 1.0
    defaults:
      timeout: 30
      headers:
        X-Client: jobclient
    endpoints:
      - id: create_job
        method: POST
        path: /v1/jobs
        idempotent: true
        async: true
        poll_endpoint: retrieve_job
        rate_limit: jobs
      - id: retrieve_job
        method: POST
        path: /v1/jobs/retrieve
        retry: patient
"""

from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import pydantic
import yaml
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator, model_validator

from jobclient.env import expand_env
from jobclient.errors import ConfigurationError, ManifestError
from jobclient.retry import RetryPolicy

logger = logging.getLogger(__name__)

__all__ = [
    "EndpointDescriptor",
    "Manifest",
    "load_manifest",
    "read_yaml",
    "HTTP_METHODS",
    "IDEMPOTENT_METHODS",
    "PATH_PARAM_PATTERN",
    "ENDPOINT_DEFAULT_FIELDS",
]

HTTP_METHODS = frozenset({"GET", "POST", "PUT", "PATCH", "DELETE", "HEAD", "OPTIONS"})
IDEMPOTENT_METHODS = frozenset({"GET", "HEAD", "OPTIONS", "PUT", "DELETE"})
PATH_PARAM_PATTERN = re.compile(r"\{(\w+)\}|:(\w+)")
ENDPOINT_DEFAULT_FIELDS = frozenset(
    {"retry", "circuit_breaker", "rate_limit", "headers", "query", "timeout", "job_id_field"}
)


class EndpointDescriptor(BaseModel):
    """Immutable description of one operation."""

    model_config = ConfigDict(frozen=True, extra="forbid", populate_by_name=True)

    id: str = Field(..., min_length=1, description="Endpoint identifier")
    method: str = Field(default="GET", description="HTTP method")
    path: str = Field(..., min_length=1, description="Path template, e.g. /jobs/{job_id}")
    retry: Optional[str] = Field(default=None, description="Named retry policy")
    circuit_breaker: Optional[str] = Field(default=None, description="Breaker key (defaults to id)")
    rate_limit: Optional[str] = Field(default=None, description="Rate-limit key (defaults to id)")
    idempotent: bool = Field(default=False, description="Send an idempotency key")
    is_async: bool = Field(
        default=False,
        validation_alias=AliasChoices("is_async", "async"),
        description="Response is a job handle to poll",
    )
    headers: Dict[str, str] = Field(default_factory=dict)
    query: Dict[str, Any] = Field(default_factory=dict)
    timeout: Optional[float] = Field(default=None, gt=0, description="Per-call HTTP timeout")
    job_id_field: str = Field(default="request_id", min_length=1)
    poll_endpoint: Optional[str] = Field(default=None, description="Endpoint used to poll jobs")

    @field_validator("method")
    @classmethod
    def validate_method(cls, v: str) -> str:
        method = v.strip().upper()
        if method not in HTTP_METHODS:
            raise ValueError(f"Unsupported HTTP method '{v}'. Valid: {', '.join(sorted(HTTP_METHODS))}")
        return method

    @field_validator("path")
    @classmethod
    def validate_path(cls, v: str) -> str:
        if not v.startswith("/"):
            return "/" + v
        return v

    @property
    def breaker_key(self) -> str:
        return self.circuit_breaker or self.id

    @property
    def rate_limit_key(self) -> str:
        return self.rate_limit or self.id

    @property
    def path_params(self) -> List[str]:
        """Names of the parameters the path template needs, in order."""
        return [a or b for a, b in PATH_PARAM_PATTERN.findall(self.path)]

    @property
    def safe_method(self) -> bool:
        """Repeating the call cannot apply a mutation twice."""
        return self.method in IDEMPOTENT_METHODS


class Manifest(BaseModel):
    """Collection of endpoint descriptors plus shared retry policies.

    ``defaults`` holds endpoint fields applied to every endpoint that does
    not set them itself; ``headers`` and ``query`` are merged key by key.
    Endpoints passed in as ready-made descriptors are used as they are.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    name: str = "api"
    version: str = "1"
    base_url: Optional[str] = None
    endpoints: Dict[str, EndpointDescriptor] = Field(default_factory=dict)
    retry_policies: Dict[str, Dict[str, Any]] = Field(default_factory=dict)
    defaults: Dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="before")
    @classmethod
    def apply_defaults(cls, data: Any) -> Any:
        if not isinstance(data, dict) or not data.get("defaults"):
            return data
        defaults = data["defaults"]
        if not isinstance(defaults, dict):
            raise ValueError("defaults must be a mapping")
        unknown = set(defaults) - ENDPOINT_DEFAULT_FIELDS
        if unknown:
            raise ValueError(
                f"unsupported endpoint defaults {sorted(unknown)}. "
                f"Valid: {', '.join(sorted(ENDPOINT_DEFAULT_FIELDS))}"
            )

        def fill(item: Any) -> Any:
            if not isinstance(item, dict):
                return item
            merged = {**defaults, **item}
            for key in ("headers", "query"):
                if key in defaults and key in item:
                    merged[key] = {**defaults[key], **item[key]}
            return merged

        endpoints = data.get("endpoints")
        if isinstance(endpoints, list):
            endpoints = [fill(item) for item in endpoints]
        elif isinstance(endpoints, dict):
            endpoints = {key: fill(item or {}) for key, item in endpoints.items()}
        return {**data, "endpoints": endpoints}

    @field_validator("endpoints", mode="before")
    @classmethod
    def index_endpoints(cls, v: Any) -> Any:
        """Accept a list of endpoints or a mapping keyed by id."""
        if isinstance(v, list):
            indexed: Dict[str, Any] = {}
            for item in v:
                data = item.model_dump() if isinstance(item, EndpointDescriptor) else dict(item)
                endpoint_id = data.get("id")
                if not endpoint_id:
                    raise ValueError("every endpoint needs an 'id'")
                if endpoint_id in indexed:
                    raise ValueError(f"duplicate endpoint id '{endpoint_id}'")
                indexed[endpoint_id] = data
            return indexed
        if isinstance(v, dict):
            indexed = {}
            for key, item in v.items():
                if isinstance(item, EndpointDescriptor):
                    indexed[key] = item
                    continue
                data = dict(item or {})
                data.setdefault("id", key)
                indexed[key] = data
            return indexed
        return v

    @model_validator(mode="after")
    def check_references(self) -> "Manifest":
        for key, endpoint in self.endpoints.items():
            if key != endpoint.id:
                raise ValueError(f"endpoint key '{key}' does not match its id '{endpoint.id}'")
            if endpoint.retry is not None and endpoint.retry not in self.retry_policies:
                raise ValueError(
                    f"endpoint '{endpoint.id}' references unknown retry policy '{endpoint.retry}'"
                )
            if endpoint.is_async:
                if endpoint.poll_endpoint is None:
                    raise ValueError(f"async endpoint '{endpoint.id}' needs a poll_endpoint")
                if endpoint.poll_endpoint not in self.endpoints:
                    raise ValueError(
                        f"endpoint '{endpoint.id}' polls unknown endpoint '{endpoint.poll_endpoint}'"
                    )
                poll = self.endpoints[endpoint.poll_endpoint]
                unfilled = set(poll.path_params) - {poll.job_id_field, "job_id"}
                if unfilled:
                    raise ValueError(
                        f"poll endpoint '{poll.id}' needs path parameters {sorted(unfilled)}; "
                        f"polling only supplies '{poll.job_id_field}' and 'job_id'"
                    )
        for name, policy in self.retry_policies.items():
            try:
                RetryPolicy.from_dict(policy)
            except (TypeError, ValueError) as e:
                raise ValueError(f"retry policy '{name}' is invalid: {e}") from e
        return self

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Manifest":
        """Build a manifest, converting validation failures to ManifestError."""
        if not isinstance(data, dict):
            raise ManifestError(f"Manifest must be a mapping, got {type(data).__name__}")
        try:
            return cls.model_validate(data)
        except pydantic.ValidationError as e:
            raise ManifestError(
                f"Invalid manifest: {e.error_count()} error(s)",
                data={"errors": e.errors(include_url=False)},
                cause=e,
                suggestion="Check endpoint ids, methods and retry policy names",
            ) from e

    def fetch_endpoint(self, endpoint_id: str) -> EndpointDescriptor:
        try:
            return self.endpoints[endpoint_id]
        except KeyError:
            raise ManifestError(
                f"Unknown endpoint '{endpoint_id}'",
                data={"known_endpoints": sorted(self.endpoints)},
            ) from None

    def retry_policy_map(self) -> Dict[str, RetryPolicy]:
        return {name: RetryPolicy.from_dict(data) for name, data in self.retry_policies.items()}

    def endpoint_ids(self) -> List[str]:
        return sorted(self.endpoints)


def read_yaml(path: Union[str, Path], error_cls: type = ConfigurationError) -> Dict[str, Any]:
    """Read a YAML mapping and expand environment references."""
    path = Path(path)
    if not path.exists():
        raise error_cls(f"File not found: {path}")
    with path.open(encoding="utf-8") as f:
        try:
            data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise error_cls(f"Invalid YAML syntax in {path}: {e}", cause=e) from e
    if data is None:
        raise error_cls(f"Empty file: {path}")
    if not isinstance(data, dict):
        raise error_cls(f"Expected a mapping at the top of {path}, got {type(data).__name__}")
    return expand_env(data)


def load_manifest(path: Union[str, Path]) -> Manifest:
    """Load and validate a manifest from a YAML file."""
    manifest = Manifest.from_dict(read_yaml(path, ManifestError))
    logger.debug("Loaded manifest %s with %d endpoints", manifest.name, len(manifest.endpoints))
    return manifest
