from __future__ import annotations

import logging
from collections import defaultdict


logger = logging.getLogger(__name__)

_counters: dict[str, int] = defaultdict(int)


def increment_counter(name: str, value: int = 1) -> None:
    _counters[name] += value


def record_external_call(*, integration: str, latency_ms: float, success: bool) -> None:
    # Count platform calls per outcome; latency only goes to the debug log.
    outcome = "ok" if success else "failed"
    _counters[f"external_calls_total.{integration}.{outcome}"] += 1
    logger.debug("external_call integration=%s outcome=%s latency_ms=%.1f", integration, outcome, latency_ms)


def counters_snapshot() -> dict[str, int]:
    # Return a copy of all counters for metrics reporting.
    return dict(_counters)


def reset_telemetry() -> None:
    # Clear in-process metrics for deterministic tests.
    _counters.clear()
