"""
Thread-safe in-memory metrics for the orchestrator.

Tracks what an operator needs to see about the job pipeline:
  - Traffic: jobs created / submitted, per-minute time-series
  - Outcomes: terminal counts by status, failure rate
  - Latency: provider poll round-trips by provider
  - Saturation: in-flight jobs (workers holding a concurrency slot)
  - Billing: tokens charged, holds released

All data is ephemeral (resets on restart). Durable history lives in the
store and the token usage ledger.
"""

import time
import threading
from typing import Dict, List
from collections import defaultdict, deque

_lock = threading.Lock()

MAX_SAMPLES = 100
MAX_MINUTES = 60
MAX_ERRORS = 50
FAILURE_WINDOW_MINUTES = 5

TERMINAL_STATUSES = ("SUCCEEDED", "FAILED", "TIMED_OUT", "CANCELLED")
FAILURE_STATUSES = ("FAILED", "TIMED_OUT")

# ── Storage ──────────────────────────────────────────────────────────────────
_counters: Dict[str, int] = defaultdict(int)
# counter name -> minute bucket -> count
_per_minute: Dict[str, Dict[int, int]] = defaultdict(lambda: defaultdict(int))
# latency name (e.g. poll.kie) -> last MAX_SAMPLES samples in ms
_latency: Dict[str, deque] = defaultdict(lambda: deque(maxlen=MAX_SAMPLES))
_gauges: Dict[str, float] = {}
_errors: deque = deque(maxlen=MAX_ERRORS)


def _minute(ts: float) -> int:
    return int(ts) // 60 * 60


# ── Recording ────────────────────────────────────────────────────────────────

def inc_counter(name: str, amount: int = 1):
    """Increment a counter (e.g. 'jobs.created', 'jobs.TIMED_OUT', 'billing.charged_tokens')."""
    with _lock:
        _counters[name] += amount
        _per_minute[name][_minute(time.time())] += amount


def record_latency(name: str, duration_ms: float):
    """Record a latency sample in milliseconds (e.g. 'poll.kie')."""
    with _lock:
        _latency[name].append(duration_ms)


def set_gauge(name: str, value: float):
    """Set a gauge value (e.g. 'in_flight_jobs')."""
    with _lock:
        _gauges[name] = value


def record_error(source: str, error_type: str, message: str, job_id: str = ""):
    """Keep the last MAX_ERRORS errors for root-cause analysis."""
    with _lock:
        _errors.append({
            "timestamp": time.time(),
            "source": source,
            "error_type": error_type,
            "message": message[:300],
            "job_id": job_id,
        })


def get_counter(name: str) -> int:
    with _lock:
        return _counters.get(name, 0)


def reset():
    """Clear everything (tests)."""
    with _lock:
        _counters.clear()
        _per_minute.clear()
        _latency.clear()
        _gauges.clear()
        _errors.clear()


# ── Snapshot ─────────────────────────────────────────────────────────────────

def _latency_summary(samples: List[float]) -> dict:
    ordered = sorted(samples)
    n = len(ordered)
    return {
        "p50": ordered[n // 2],
        "p95": ordered[int(n * 0.95)] if n >= 20 else ordered[-1],
        "avg": sum(ordered) / n,
        "count": n,
    }


def _recent_total(name: str, since: int) -> int:
    return sum(count for bucket, count in _per_minute.get(name, {}).items() if bucket >= since)


def _prune(now_minute: int):
    cutoff = now_minute - MAX_MINUTES * 60
    for buckets in _per_minute.values():
        for bucket in [b for b in buckets if b < cutoff]:
            del buckets[bucket]


def get_snapshot() -> dict:
    """Everything above, grouped for the /metrics endpoint."""
    now = time.time()
    now_minute = _minute(now)

    with _lock:
        _prune(now_minute)

        window_start = now_minute - FAILURE_WINDOW_MINUTES * 60
        ended = {s: _recent_total(f"jobs.{s}", window_start) for s in TERMINAL_STATUSES}
        ended_total = sum(ended.values())
        failed = sum(ended[s] for s in FAILURE_STATUSES)

        series = {
            name: [
                {"t": now_minute - (MAX_MINUTES - 1 - i) * 60, "v": buckets.get(now_minute - (MAX_MINUTES - 1 - i) * 60, 0)}
                for i in range(MAX_MINUTES)
            ]
            for name, buckets in _per_minute.items()
        }

        error_patterns: Dict[str, int] = defaultdict(int)
        for err in _errors:
            error_patterns[f"{err['source']}:{err['error_type']}"] += 1

        return {
            "timestamp": now,
            "uptime_seconds": now - _gauges.get("start_time", now),
            "jobs": {
                "created": _counters.get("jobs.created", 0),
                "submitted": _counters.get("jobs.submitted", 0),
                "in_flight": int(_gauges.get("in_flight_jobs", 0)),
                "terminal": {s: _counters.get(f"jobs.{s}", 0) for s in TERMINAL_STATUSES},
            },
            "billing": {
                "charged_tokens": _counters.get("billing.charged_tokens", 0),
                "released": _counters.get("billing.released", 0),
            },
            "polls": {
                "transient_errors": _counters.get("polls.transient_errors", 0),
                "latency": {name: _latency_summary(list(s)) for name, s in _latency.items() if s},
            },
            "failure_rate_5m": round(failed / ended_total * 100, 2) if ended_total else 0,
            "counters": dict(_counters),
            "gauges": dict(_gauges),
            "timeseries": series,
            "recent_errors": list(_errors)[-10:],
            "error_patterns": dict(error_patterns),
        }
