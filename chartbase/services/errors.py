"""
Chart Engine Errors

Exception and warning types raised by the chart generation services.
"""

from __future__ import annotations


class ChartError(Exception):
    """Base class for chart engine failures."""


class InvalidPeriodKey(ChartError, ValueError):
    """A period key (or period type) is malformed or cannot be resolved."""

    def __init__(self, period_type: str, period_key: str, reason: str | None = None) -> None:
        self.period_type = period_type
        self.period_key = period_key
        message = f"Invalid {period_type} period key: {period_key!r}"
        if reason:
            message = f"{message} ({reason})"
        super().__init__(message)


class PeriodOutOfRange(InvalidPeriodKey):
    """A date or period lies outside the supported calendar range."""


class SourceUnavailable(ChartError):
    """The play log or entity directory could not be queried."""


class GenerationConflict(ChartError):
    """Two writers raced on the same chart key and the write must be retried."""


class ChartWarning(UserWarning):
    """Base class for non-fatal chart data problems."""


class UnknownEntity(ChartWarning):
    """A chart entry references an id missing from the entity directory."""
