"""
Telemetry error types.

Failures on the metering path are carried as values internally and only
turned into log lines at the public boundary, so the request that
produced the event is never interrupted.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Generic, Optional, TypeVar

T = TypeVar("T")


class TelemetryError(Exception):
    """A metering or telemetry operation failed.

    ``context`` carries the identifiers needed for manual reconciliation
    (tenant, provider, model, feature).
    """

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.context = dict(context or {})


@dataclass(frozen=True)
class TelemetryResult(Generic[T]):
    """Outcome of a telemetry operation: a value or a TelemetryError."""
    value: Optional[T] = None
    error: Optional[TelemetryError] = field(default=None)

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def success(cls, value: T) -> "TelemetryResult[T]":
        return cls(value=value)

    @classmethod
    def failure(cls, error: TelemetryError) -> "TelemetryResult[T]":
        return cls(error=error)
