"""
In-memory metrics registry rendered in Prometheus text format.
"""
import time
from typing import Dict, Optional

# Simple in-memory metrics storage
_metrics = {
    "http_requests_total": {},  # {(method, path, status): count}
    "http_request_duration_seconds": {},  # {(method, path): [durations]}
    "events": {},  # {(name, labels): count}
    "gauges": {},  # {name: value}
    "startup_time": None,
}

_HELP = {
    "messages_sent_total": "Messages durably stored",
    "messages_view_total": "Mark-viewed calls by outcome",
    "messages_swept_total": "Ephemeral messages deleted by TTL housekeeping",
    "feed_subscribers": "Open change-feed streams",
}


def record_request(method: str, path: str, status_code: int, duration: float) -> None:
    """Record an HTTP request metric."""
    key = (method, path, status_code)
    _metrics["http_requests_total"][key] = _metrics["http_requests_total"].get(key, 0) + 1

    duration_key = (method, path)
    durations = _metrics["http_request_duration_seconds"].setdefault(duration_key, [])
    durations.append(duration)

    # Keep only last 1000 durations to prevent memory issues
    if len(durations) > 1000:
        _metrics["http_request_duration_seconds"][duration_key] = durations[-1000:]


def record_event(name: str, labels: Optional[Dict[str, str]] = None, amount: int = 1) -> None:
    """Increment a domain counter."""
    key = (name, tuple(sorted((labels or {}).items())))
    _metrics["events"][key] = _metrics["events"].get(key, 0) + amount


def adjust_gauge(name: str, delta: float) -> None:
    _metrics["gauges"][name] = _metrics["gauges"].get(name, 0) + delta


def get_event_count(name: str, labels: Optional[Dict[str, str]] = None) -> int:
    return _metrics["events"].get((name, tuple(sorted((labels or {}).items()))), 0)


def set_startup_time() -> None:
    """Record application startup time."""
    _metrics["startup_time"] = time.time()


def _format_labels(pairs) -> str:
    if not pairs:
        return ""
    return "{" + ",".join(f'{k}="{v}"' for k, v in pairs) + "}"


def generate_prometheus_metrics(version: str = "1.0.0") -> str:
    """Generate Prometheus-format metrics output."""
    lines = []

    # Application info
    lines.append("# HELP app_info Application information")
    lines.append("# TYPE app_info gauge")
    lines.append(f'app_info{{version="{version}"}} 1')
    lines.append("")

    # Startup time
    if _metrics["startup_time"]:
        lines.append("# HELP app_start_time_seconds Unix timestamp when the app started")
        lines.append("# TYPE app_start_time_seconds gauge")
        lines.append(f'app_start_time_seconds {_metrics["startup_time"]:.3f}')
        lines.append("")

    # HTTP requests total
    lines.append("# HELP http_requests_total Total number of HTTP requests")
    lines.append("# TYPE http_requests_total counter")
    for (method, path, status), count in _metrics["http_requests_total"].items():
        lines.append(f'http_requests_total{{method="{method}",path="{path}",status="{status}"}} {count}')
    lines.append("")

    # HTTP request duration (simplified histogram summary)
    lines.append("# HELP http_request_duration_seconds HTTP request duration in seconds")
    lines.append("# TYPE http_request_duration_seconds summary")
    for (method, path), durations in _metrics["http_request_duration_seconds"].items():
        if durations:
            lines.append(f'http_request_duration_seconds_sum{{method="{method}",path="{path}"}} {sum(durations):.6f}')
            lines.append(f'http_request_duration_seconds_count{{method="{method}",path="{path}"}} {len(durations)}')
    lines.append("")

    # Domain counters
    seen = set()
    for (name, labels), count in sorted(_metrics["events"].items()):
        if name not in seen:
            seen.add(name)
            lines.append(f"# HELP {name} {_HELP.get(name, name)}")
            lines.append(f"# TYPE {name} counter")
        lines.append(f"{name}{_format_labels(labels)} {count}")

    for name, value in sorted(_metrics["gauges"].items()):
        lines.append(f"# HELP {name} {_HELP.get(name, name)}")
        lines.append(f"# TYPE {name} gauge")
        lines.append(f"{name} {value}")

    return "\n".join(lines)
