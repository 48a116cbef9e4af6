"""Runtime settings read from ``BLEBRIDGE_*`` environment variables."""
from __future__ import annotations

import logging
import os
import sys
from dataclasses import dataclass, field, replace
from typing import Any, Optional

from blebridge.bridge import Bridge
from blebridge.log_buffer import DEFAULT_CAPACITY, LogRingBuffer
from blebridge.metrics import MetricsTracker
from blebridge.mutex import ConnectionMutex
from blebridge.pressure import CooldownPolicy, PressureMonitor, SignalPenalty

ENV_PREFIX = "BLEBRIDGE_"
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")

# Linux BlueZ needs the longest settle time before the adapter can be reused.
PLATFORM_COOLDOWN_BASE = {
    "linux": 10.0,
    "win32": 3.0,
    "darwin": 1.0,
}


def default_cooldown_base(platform: Optional[str] = None) -> float:
    return PLATFORM_COOLDOWN_BASE.get(platform or sys.platform, 1.0)


def _env(name: str, default: Any = None) -> Optional[str]:
    value = os.getenv(ENV_PREFIX + name)
    if value is None or value.strip() == "":
        return default
    return value.strip()


def _env_float(name: str, default: float) -> float:
    raw = _env(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError as exc:
        raise ValueError(f"{ENV_PREFIX}{name} must be a number, got {raw!r}") from exc


def _env_int(name: str, default: int) -> int:
    raw = _env(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise ValueError(f"{ENV_PREFIX}{name} must be an integer, got {raw!r}") from exc


def _env_bool(name: str, default: bool = False) -> bool:
    raw = _env(name)
    if raw is None:
        return default
    return raw.lower() in ("1", "true", "yes", "on")


def normalize_log_level(value: Optional[str], default: str = "INFO") -> str:
    """Accept any case and the ``WARN`` alias; unknown names fall back to ``default``."""
    if not value:
        return default
    level = value.strip().upper()
    if level == "WARN":
        level = "WARNING"
    return level if level in LOG_LEVELS else default


def configure_logging(level: Optional[str] = None) -> None:
    logging.basicConfig(
        level=getattr(logging, normalize_log_level(level)),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    # websockets logs every handshake at INFO
    logging.getLogger("websockets").setLevel(logging.WARNING)


@dataclass(slots=True)
class BridgeSettings:
    host: str = "127.0.0.1"
    port: int = 8080
    log_level: str = "INFO"
    log_buffer_size: int = DEFAULT_CAPACITY
    connect_timeout: float = 15.0
    teardown_timeout: float = 5.0
    scan_timeout: float = 15.0
    cooldown_base: float = field(default_factory=default_cooldown_base)
    cooldown_max: float = 30.0
    listener_threshold: int = 10
    listener_step: float = 0.5
    peripheral_threshold: int = 10
    peripheral_step: float = 1.0
    scan_threshold: int = 0
    scan_step: float = 2.0
    adapter: Optional[str] = None
    mock: bool = False

    @classmethod
    def from_env(cls) -> "BridgeSettings":
        defaults = cls()
        return cls(
            host=_env("HOST", defaults.host),
            port=_env_int("PORT", defaults.port),
            log_level=normalize_log_level(_env("LOG_LEVEL"), defaults.log_level),
            log_buffer_size=_env_int("LOG_BUFFER_SIZE", defaults.log_buffer_size),
            connect_timeout=_env_float("CONNECT_TIMEOUT", defaults.connect_timeout),
            teardown_timeout=_env_float("TEARDOWN_TIMEOUT", defaults.teardown_timeout),
            scan_timeout=_env_float("SCAN_TIMEOUT", defaults.scan_timeout),
            cooldown_base=_env_float("COOLDOWN_BASE", defaults.cooldown_base),
            cooldown_max=_env_float("COOLDOWN_MAX", defaults.cooldown_max),
            listener_threshold=_env_int("LISTENER_THRESHOLD", defaults.listener_threshold),
            listener_step=_env_float("LISTENER_STEP", defaults.listener_step),
            peripheral_threshold=_env_int("PERIPHERAL_THRESHOLD", defaults.peripheral_threshold),
            peripheral_step=_env_float("PERIPHERAL_STEP", defaults.peripheral_step),
            scan_threshold=_env_int("SCAN_THRESHOLD", defaults.scan_threshold),
            scan_step=_env_float("SCAN_STEP", defaults.scan_step),
            adapter=_env("ADAPTER"),
            mock=_env_bool("MOCK", defaults.mock),
        )

    def override(self, **changes: Any) -> "BridgeSettings":
        """Copy with the non-``None`` values applied (CLI flags win over env)."""
        return replace(self, **{key: value for key, value in changes.items() if value is not None})

    def cooldown_policy(self) -> CooldownPolicy:
        return CooldownPolicy(
            base=self.cooldown_base,
            maximum=self.cooldown_max,
            listeners=SignalPenalty(self.listener_threshold, self.listener_step),
            peripherals=SignalPenalty(self.peripheral_threshold, self.peripheral_step),
            scans=SignalPenalty(self.scan_threshold, self.scan_step),
        )


def build_bridge(settings: Optional[BridgeSettings] = None) -> Bridge:
    settings = settings or BridgeSettings.from_env()
    if settings.mock:
        from blebridge.mock import MockTransport

        transport: Any = MockTransport()
    else:
        from blebridge.transport import BleakTransport

        transport = BleakTransport(adapter=settings.adapter, connect_timeout=settings.connect_timeout)

    logs = LogRingBuffer(settings.log_buffer_size)
    metrics = MetricsTracker()
    return Bridge(
        transport,
        mutex=ConnectionMutex(logs),
        logs=logs,
        monitor=PressureMonitor(transport, metrics=metrics),
        policy=settings.cooldown_policy(),
        metrics=metrics,
        connect_timeout=settings.connect_timeout,
        teardown_timeout=settings.teardown_timeout,
        scan_timeout=settings.scan_timeout,
    )


__all__ = [
    "BridgeSettings",
    "build_bridge",
    "configure_logging",
    "default_cooldown_base",
    "normalize_log_level",
]
