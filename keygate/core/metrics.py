"""In-process metrics registry rendered as Prometheus text."""

from __future__ import annotations

from dataclasses import dataclass
from threading import Lock


@dataclass
class _DurationStat:
    count: int = 0
    total_seconds: float = 0.0


class MetricsRegistry:
    """In-process metrics registry that exposes Prometheus text format."""

    def __init__(self) -> None:
        self._request_counts: dict[tuple[str, str, str], int] = {}
        self._duration_stats: dict[tuple[str, str, str], _DurationStat] = {}
        self._gate_decisions: dict[tuple[str, str], int] = {}
        self._lock = Lock()

    def record(self, method: str, path: str, status: str, duration_seconds: float) -> None:
        """Record one request measurement for the label set."""
        key = (method, path, status)
        with self._lock:
            self._request_counts[key] = self._request_counts.get(key, 0) + 1
            stat = self._duration_stats.setdefault(key, _DurationStat())
            stat.count += 1
            stat.total_seconds += duration_seconds

    def record_gate_decision(self, outcome: str, source: str) -> None:
        """Count one gate verdict by outcome and the counter source that produced it."""
        key = (outcome, source)
        with self._lock:
            self._gate_decisions[key] = self._gate_decisions.get(key, 0) + 1

    def gate_decision_count(self, outcome: str, source: str) -> int:
        with self._lock:
            return self._gate_decisions.get((outcome, source), 0)

    def render_prometheus_text(self) -> str:
        """Render metrics in Prometheus exposition format."""
        lines = [
            "# HELP keygate_http_requests_total Total HTTP requests seen by the service.",
            "# TYPE keygate_http_requests_total counter",
        ]

        with self._lock:
            for labels_key in sorted(self._request_counts):
                labels = _format_labels(
                    method=labels_key[0], path=labels_key[1], status=labels_key[2]
                )
                lines.append(
                    f"keygate_http_requests_total{{{labels}}} {self._request_counts[labels_key]}"
                )

            lines.append(
                "# HELP keygate_http_request_duration_seconds End-to-end HTTP request duration in seconds."
            )
            lines.append("# TYPE keygate_http_request_duration_seconds summary")
            for labels_key in sorted(self._duration_stats):
                stat = self._duration_stats[labels_key]
                labels = _format_labels(
                    method=labels_key[0], path=labels_key[1], status=labels_key[2]
                )
                lines.append(f"keygate_http_request_duration_seconds_count{{{labels}}} {stat.count}")
                lines.append(
                    f"keygate_http_request_duration_seconds_sum{{{labels}}} {stat.total_seconds}"
                )

            lines.append("# HELP keygate_gate_decisions_total API gate verdicts by outcome.")
            lines.append("# TYPE keygate_gate_decisions_total counter")
            for outcome, source in sorted(self._gate_decisions):
                labels = _format_labels(outcome=outcome, source=source)
                count = self._gate_decisions[(outcome, source)]
                lines.append(f"keygate_gate_decisions_total{{{labels}}} {count}")

        return "\n".join(lines) + "\n"


def _escape_label(value: str) -> str:
    """Escape string values for Prometheus label rendering."""
    return value.replace("\\", "\\\\").replace('"', '\\"').replace("\n", "\\n")


def _format_labels(**labels: str) -> str:
    """Build a label set string in argument order."""
    return ",".join(f'{name}="{_escape_label(value)}"' for name, value in labels.items())


DEFAULT_METRICS_REGISTRY = MetricsRegistry()

