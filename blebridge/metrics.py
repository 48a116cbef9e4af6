"""Aggregate connection and resource counters for the diagnostic surface."""
from __future__ import annotations

import contextlib
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from time import monotonic, perf_counter
from typing import Any, Callable, Deque, Dict, Iterator, List, Optional

from blebridge.pressure import PressureSample

LISTENER_WARNING_THRESHOLD = 10
LEAK_LISTENER_THRESHOLD = 50
LEAK_PERIPHERAL_THRESHOLD = 10
SESSION_HISTORY = 100
EMA_ALPHA = 0.1


def _ensure_utc(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


@dataclass(slots=True)
class ConnectionMetrics:
    """Plain counters; :class:`MetricsTracker` owns and mutates them."""

    total_connections: int = 0
    successful_connections: int = 0
    failed_connections: int = 0
    total_reconnections: int = 0
    reconnections_per_session: Dict[str, int] = field(default_factory=dict)
    max_listener_count: int = 0
    max_peripheral_count: int = 0
    listener_warnings: int = 0
    resource_leak_detected: bool = False
    active_sessions: int = 0
    total_sessions: int = 0
    session_durations: Deque[float] = field(default_factory=lambda: deque(maxlen=SESSION_HISTORY))
    average_connection_time: float = 0.0
    last_connection_time: float = 0.0
    teardown_timeouts: int = 0
    cooldowns: int = 0
    last_cooldown: float = 0.0
    last_pressure: Optional[PressureSample] = None
    last_resource_check: Optional[datetime] = None


class MetricsTracker:
    """Collects lifecycle counters for ``GET /metrics``."""

    def __init__(self, *, clock: Callable[[], datetime] | None = None) -> None:
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self.started_at = _ensure_utc(self._clock())
        self._started_mono = monotonic()
        self._metrics = ConnectionMetrics()
        self._session_starts: Dict[str, float] = {}
        self._seen_sessions: set[str] = set()

    # ------------------------------------------------------------------
    # Connections
    # ------------------------------------------------------------------
    def record_connection_attempt(self) -> None:
        self._metrics.total_connections += 1

    def record_connection_success(self, duration: Optional[float] = None) -> None:
        self._metrics.successful_connections += 1
        if duration is None:
            return
        self._metrics.last_connection_time = duration
        if self._metrics.average_connection_time == 0:
            self._metrics.average_connection_time = duration
        else:
            self._metrics.average_connection_time = (
                EMA_ALPHA * duration + (1 - EMA_ALPHA) * self._metrics.average_connection_time
            )

    def record_connection_failure(self) -> None:
        self._metrics.failed_connections += 1

    @contextlib.contextmanager
    def timer(self) -> Iterator[None]:
        """Count one connection attempt and time it."""
        self.record_connection_attempt()
        start = perf_counter()
        try:
            yield
        except BaseException:
            self.record_connection_failure()
            raise
        else:
            self.record_connection_success(perf_counter() - start)

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------
    def record_session_start(self, session_id: str) -> None:
        if session_id in self._seen_sessions:
            self._metrics.total_reconnections += 1
            counts = self._metrics.reconnections_per_session
            counts[session_id] = counts.get(session_id, 0) + 1
        self._seen_sessions.add(session_id)
        self._metrics.total_sessions += 1
        self._metrics.active_sessions += 1
        self._session_starts[session_id] = monotonic()

    def record_session_end(self, session_id: str) -> None:
        self._metrics.active_sessions = max(0, self._metrics.active_sessions - 1)
        started = self._session_starts.pop(session_id, None)
        if started is not None:
            self._metrics.session_durations.append(monotonic() - started)

    # ------------------------------------------------------------------
    # Resources
    # ------------------------------------------------------------------
    def update_pressure(self, sample: PressureSample) -> None:
        m = self._metrics
        m.last_pressure = sample
        m.last_resource_check = _ensure_utc(self._clock())
        m.max_listener_count = max(m.max_listener_count, sample.listener_count)
        m.max_peripheral_count = max(m.max_peripheral_count, sample.tracked_peripheral_count)
        if sample.listener_count > LISTENER_WARNING_THRESHOLD:
            m.listener_warnings += 1
        if (
            sample.listener_count > LEAK_LISTENER_THRESHOLD
            or sample.tracked_peripheral_count > LEAK_PERIPHERAL_THRESHOLD
        ):
            m.resource_leak_detected = True

    def record_cooldown(self, duration: float) -> None:
        self._metrics.cooldowns += 1
        self._metrics.last_cooldown = duration

    def record_teardown_timeout(self) -> None:
        self._metrics.teardown_timeouts += 1

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------
    @property
    def uptime(self) -> float:
        return monotonic() - self._started_mono

    def snapshot(self) -> Dict[str, Any]:
        m = self._metrics
        durations = list(m.session_durations)
        return {
            "total_connections": m.total_connections,
            "successful_connections": m.successful_connections,
            "failed_connections": m.failed_connections,
            "total_reconnections": m.total_reconnections,
            "reconnections_per_session": dict(m.reconnections_per_session),
            "max_listener_count": m.max_listener_count,
            "max_peripheral_count": m.max_peripheral_count,
            "listener_warnings": m.listener_warnings,
            "resource_leak_detected": m.resource_leak_detected,
            "active_sessions": m.active_sessions,
            "total_sessions": m.total_sessions,
            "average_session_duration": sum(durations) / len(durations) if durations else 0.0,
            "average_connection_time": m.average_connection_time,
            "last_connection_time": m.last_connection_time,
            "teardown_timeouts": m.teardown_timeouts,
            "cooldowns": m.cooldowns,
            "last_cooldown": m.last_cooldown,
            "last_pressure": m.last_pressure.as_dict() if m.last_pressure else None,
            "last_resource_check": m.last_resource_check.isoformat(timespec="milliseconds")
            if m.last_resource_check
            else None,
            "service_start_time": self.started_at.isoformat(timespec="milliseconds"),
            "uptime": self.uptime,
        }

    def health_report(self) -> Dict[str, Any]:
        m = self._metrics
        issues: List[str] = []
        recommendations: List[str] = []

        if m.total_connections > 0:
            failure_rate = m.failed_connections / m.total_connections
            if failure_rate > 0.2:
                issues.append(f"High failure rate: {failure_rate * 100:.1f}%")
        if m.resource_leak_detected:
            issues.append("Resource leak detected")
            recommendations.append("Restart the bridge to clear transport resources")
        if m.listener_warnings:
            issues.append(f"Listener warnings: {m.listener_warnings}")
            recommendations.append("Check for transport listener leaks")
        if m.teardown_timeouts:
            issues.append(f"Teardown timeouts: {m.teardown_timeouts}")
            recommendations.append("Consider restarting the Bluetooth service")
        for session_id, count in m.reconnections_per_session.items():
            if count > 10:
                issues.append(f"Session {session_id} has {count} reconnections")

        return {
            "healthy": not issues,
            "issues": issues,
            "recommendations": recommendations,
        }


__all__ = ["ConnectionMetrics", "MetricsTracker"]
