"""
Error taxonomy of the telemetry core.

Every failure the storage and alerting engine can surface to a caller is a
subclass of TelemetryError so that API handlers and background jobs can
catch the whole family in one place.

CHANGELOG:
- 2026-10-20: Add ReadingExpired
- 2026-10-05: Initial creation
"""

from datetime import datetime


class TelemetryError(Exception):
    """Base class for telemetry core errors."""


class UnknownUnit(TelemetryError):
    """The referenced unit is not registered or has been deactivated."""

    def __init__(self, serial_number: str, reason: str = "not registered") -> None:
        super().__init__(f"Unit '{serial_number}' is {reason}")
        self.serial_number = serial_number
        self.reason = reason


class DuplicateReading(TelemetryError):
    """A reading for the same (unit, timestamp) is already stored."""

    def __init__(self, serial_number: str, ts: datetime) -> None:
        super().__init__(
            f"Reading for unit '{serial_number}' at {ts.isoformat()} already exists"
        )
        self.serial_number = serial_number
        self.ts = ts


class PartitionUnavailable(TelemetryError):
    """The monthly partition covering a timestamp could not be materialized."""

    def __init__(self, partition_name: str) -> None:
        super().__init__(f"Partition '{partition_name}' is unavailable")
        self.partition_name = partition_name


class ReadingExpired(TelemetryError):
    """A reading is older than the raw retention window and cannot be stored."""

    def __init__(self, serial_number: str, ts: datetime, cutoff: datetime) -> None:
        super().__init__(
            f"Reading for unit '{serial_number}' at {ts.isoformat()} is older than "
            f"the raw retention cutoff {cutoff.isoformat()}"
        )
        self.serial_number = serial_number
        self.ts = ts
        self.cutoff = cutoff


class RuleEvaluationError(TelemetryError):
    """An alert rule definition cannot be evaluated (e.g. unknown field)."""

    def __init__(self, rule_id: object, reason: str) -> None:
        super().__init__(f"Rule {rule_id} cannot be evaluated: {reason}")
        self.rule_id = rule_id
        self.reason = reason


class RollupInconsistency(TelemetryError):
    """A previous rollup run did not finish; its output must be recomputed."""

    def __init__(self, tier: str, since: datetime) -> None:
        super().__init__(
            f"Unfinished {tier} rollup run detected (started from {since.isoformat()})"
        )
        self.tier = tier
        self.since = since
