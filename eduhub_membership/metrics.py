"""
Session metrics with Prometheus text exposition.

Every metric the session records is declared in ``METRICS`` with its kind and
help text; the embedding application serves ``to_prometheus()`` wherever it
exposes metrics.
"""

from __future__ import annotations

import time

PREFIX = "membership_"

# name -> (kind, help)
METRICS: dict[str, tuple[str, str]] = {
    "snapshots_total": ("counter", "User record snapshots applied to the session"),
    "forced_sign_outs_total": ("counter", "Ghost identities signed out"),
    "joins_total": ("counter", "Organizations joined by invite code"),
    "leaves_total": ("counter", "Organizations left"),
    "subscriptions_active": ("gauge", "Live subscriptions held by the session"),
}


class MetricsCollector:
    """Holds the current value of each declared membership metric."""

    def __init__(self) -> None:
        self._values: dict[str, float] = {name: 0 for name in METRICS}
        self._start_time = time.monotonic()

    def _check(self, name: str, kind: str) -> None:
        declared = METRICS.get(name)
        if declared is None or declared[0] != kind:
            raise KeyError(f"Unknown {kind}: {name}")

    def inc(self, name: str, value: int = 1) -> None:
        self._check(name, "counter")
        self._values[name] += value

    def set_gauge(self, name: str, value: float) -> None:
        self._check(name, "gauge")
        self._values[name] = value

    def get(self, name: str) -> int | float:
        return self._values[name]

    def to_prometheus(self) -> str:
        """Export all metrics in Prometheus text format."""
        lines = []
        for name, (kind, help_text) in METRICS.items():
            full = f"{PREFIX}{name}"
            lines.append(f"# HELP {full} {help_text}")
            lines.append(f"# TYPE {full} {kind}")
            lines.append(f"{full} {self._values[name]}")
        lines.append(f"# TYPE {PREFIX}uptime_seconds gauge")
        lines.append(f"{PREFIX}uptime_seconds {time.monotonic() - self._start_time:.1f}")
        return "\n".join(lines) + "\n"
