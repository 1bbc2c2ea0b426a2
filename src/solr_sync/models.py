from __future__ import annotations

import json
from collections.abc import Mapping
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError


class Operation(str, Enum):
    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"


class DecodeError(ValueError):
    """Raised when a message body is not a JSON object."""


class ChangeEvent(BaseModel):
    """Single Maxwell row-change notification decoded from the work queue.

    Fields are untyped; the event filter alone judges their contents.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    database: Any = None
    table: Any = None
    # Maxwell also emits bootstrap/DDL types; those decode and are rejected by the filter.
    operation: Any = Field(default=None, alias="type")
    row_data: Any = Field(default=None, alias="data")
    ts: Any = None
    xid: Any = None
    commit: Any = None
    old: Any = None
    primary_key: Any = None

    @property
    def row_id(self) -> Any:
        if not isinstance(self.row_data, Mapping):
            return None
        return self.row_data.get("id")


def decode_change_event(body: bytes) -> ChangeEvent:
    try:
        decoded = json.loads(body)
    except ValueError as exc:
        raise DecodeError(f"Message body is not valid JSON: {exc}") from exc

    if not isinstance(decoded, dict):
        raise DecodeError(f"Message body is a JSON {type(decoded).__name__}, expected an object")

    try:
        return ChangeEvent.model_validate(decoded)
    except ValidationError as exc:
        raise DecodeError(f"Invalid change event payload: {exc.error_count()} error(s)") from exc
