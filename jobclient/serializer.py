"""Payload serialization."""

from __future__ import annotations

import json
from typing import Any, Optional, Protocol

import pydantic

from jobclient.errors import ResponseValidationError

__all__ = ["Serializer", "JsonSerializer"]


class Serializer(Protocol):
    content_type: str

    def encode(self, payload: Any) -> bytes:
        ...

    def decode(self, body: bytes, schema: Optional[Any] = None) -> Any:
        ...


class JsonSerializer:
    """JSON encoding with optional pydantic validation on decode."""

    content_type = "application/json"

    def encode(self, payload: Any) -> bytes:
        if payload is None:
            return b""
        if isinstance(payload, bytes):
            return payload
        if isinstance(payload, pydantic.BaseModel):
            return payload.model_dump_json(exclude_none=True).encode("utf-8")
        return json.dumps(payload, default=str, separators=(",", ":")).encode("utf-8")

    def decode(self, body: bytes, schema: Optional[Any] = None) -> Any:
        """Decode a response body.

        Args:
            body: Raw response bytes; empty means ``{}``
            schema: Optional pydantic model class to validate against

        Raises:
            ResponseValidationError: On invalid JSON or schema mismatch
        """
        if not body or not body.strip():
            data: Any = {}
        else:
            try:
                data = json.loads(body)
            except (ValueError, UnicodeDecodeError) as exc:
                raise ResponseValidationError(
                    f"JSON decode error: {exc}",
                    data={"body": body[:512].decode("utf-8", errors="replace")},
                    cause=exc,
                ) from exc

        if schema is None:
            return data
        try:
            return schema.model_validate(data)
        except pydantic.ValidationError as exc:
            raise ResponseValidationError(
                f"Response does not match {schema.__name__}: {exc.error_count()} error(s)",
                data={"errors": exc.errors(include_url=False)},
                cause=exc,
            ) from exc
