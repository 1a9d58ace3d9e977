"""
HVAC telemetry core.

Partitioned raw ingestion, scheduled hourly/daily rollups with retention,
per-unit current-state materialization and rule-based alerting for
field-deployed HVAC units.

CHANGELOG:
- 2026-10-05: Initial creation

TODO:
- None
"""
