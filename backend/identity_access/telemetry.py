"""
In-memory telemetry helpers for provisioning and audit paths.

Intent:
    Keep instrumentation simple (KISS) while providing introspection hooks for
    unit tests and local debugging. Secondary-step failures are otherwise only
    visible in logs; counting them per step makes drift between the credential
    and profile stores observable.
"""
from __future__ import annotations

from collections import defaultdict
from threading import Lock
from typing import Dict, Tuple

LabelKey = Tuple[Tuple[str, str], ...]
_counters: Dict[str, Dict[LabelKey, int]] = defaultdict(dict)
_lock = Lock()

CONSISTENCY_WARNINGS = "consistency_warnings_total"
AUDIT_APPEND_FAILURES = "audit_append_failures_total"
PROVISIONING_FAILURES = "provisioning_failures_total"


def _label_key(labels: dict[str, str] | None) -> LabelKey:
    if not labels:
        return tuple()
    return tuple(sorted((str(k), str(v)) for k, v in labels.items()))


def increment_counter(name: str, *, amount: int = 1, **labels: str) -> None:
    """Increase a named counter by `amount` (defaults to 1)."""
    if amount == 0:
        return
    key = _label_key(labels)
    with _lock:
        current = _counters[name].get(key, 0)
        _counters[name][key] = current + amount


def counter_value(name: str, **labels: str) -> int:
    key = _label_key(labels)
    with _lock:
        return _counters.get(name, {}).get(key, 0)


def counter_snapshot(name: str) -> dict[LabelKey, int]:
    """Return a shallow copy of the stored counter values."""
    with _lock:
        return dict(_counters.get(name, {}))


def reset_for_tests() -> None:
    """Clear all counters. Intended for pytest fixtures."""
    with _lock:
        _counters.clear()


__all__ = [
    "AUDIT_APPEND_FAILURES",
    "CONSISTENCY_WARNINGS",
    "PROVISIONING_FAILURES",
    "counter_snapshot",
    "counter_value",
    "increment_counter",
    "reset_for_tests",
]
