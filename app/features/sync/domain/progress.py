"""
Progress patch and view types for sync sessions.

``ProgressUpdate`` is a patch: only fields explicitly passed are applied,
which pydantic tracks in ``model_fields_set``. An explicit ``None`` for a
nullable column (``current_step``, ``total_items``, ``error_details``)
clears it; ``None`` for the other fields is ignored.
"""

import math
from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, ValidationError, field_validator

from app.features.sync.domain.exceptions import InvalidProgressUpdateError
from app.features.sync.domain.models import SyncServiceName, SyncStatus

COUNTER_FIELDS = ("total_items", "imported_items", "processed_items", "failed_items")
NULLABLE_FIELDS = frozenset({"current_step", "total_items", "error_details"})


class ProgressUpdate(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    status: SyncStatus | None = None
    progress_percentage: float | None = None
    current_step: str | None = None
    total_items: int | None = None
    imported_items: int | None = None
    processed_items: int | None = None
    failed_items: int | None = None
    error_details: dict[str, Any] | None = None

    @field_validator("progress_percentage", mode="before")
    @classmethod
    def _clamp_percentage(cls, value):
        if value is None:
            return None
        if isinstance(value, bool) or not isinstance(value, int | float):
            raise ValueError("progress_percentage must be a number")
        if math.isnan(value):
            raise ValueError("progress_percentage must not be NaN")
        return min(100.0, max(0.0, float(value)))

    @field_validator(*COUNTER_FIELDS, mode="before")
    @classmethod
    def _check_counter(cls, value, info):
        if value is None:
            return None
        if isinstance(value, bool) or not isinstance(value, int | float):
            raise ValueError(f"{info.field_name} must be an integer")
        if isinstance(value, float):
            if not math.isfinite(value) or not value.is_integer():
                raise ValueError(f"{info.field_name} must be a finite integer")
            value = int(value)
        if value < 0:
            raise ValueError(f"{info.field_name} must be non-negative")
        return value

    @classmethod
    def parse(cls, data: dict[str, Any], session_id: str | None = None) -> "ProgressUpdate":
        """Build a patch from untrusted input, rejecting it as a whole on any bad field."""
        try:
            return cls.model_validate(data)
        except ValidationError as e:
            raise InvalidProgressUpdateError(
                f"Invalid progress update: {e.errors(include_url=False)}", session_id=session_id
            ) from e

    def changes(self) -> dict[str, Any]:
        """Column -> value for every provided field."""
        provided = {}
        for name in self.model_fields_set:
            value = getattr(self, name)
            if value is None and name not in NULLABLE_FIELDS:
                continue
            if name == "progress_percentage":
                value = round(value)
            provided[name] = value
        return provided

    @property
    def is_empty(self) -> bool:
        return not self.changes()


class ProgressView(BaseModel):
    """What clients poll while a sync runs."""

    session_id: str
    service: SyncServiceName
    status: SyncStatus
    progress_percentage: int
    current_step: str | None = None
    total_items: int | None = None
    imported_items: int = 0
    processed_items: int = 0
    failed_items: int = 0
    error_details: dict[str, Any] | None = None
    started_at: datetime
    completed_at: datetime | None = None
    elapsed_seconds: float
    estimated_total_seconds: float | None = None
    estimated_remaining_seconds: float | None = None
