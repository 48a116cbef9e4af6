"""Connection lifecycle manager: one BLE session at a time, with cooldowns.

The :class:`Bridge` is built once per process and handed to whatever accepts
inbound sessions (the FastAPI app in :mod:`blebridge.api`). It owns the
connection state and the session token; the mutex, pressure monitor, cooldown
policy and log buffer are injected.

State machine::

    IDLE -> CONNECTING -> CONNECTED -> DISCONNECTING -> COOLING_DOWN -> IDLE
               \\-> IDLE (connect failure or timeout)

Sessions arriving in any state other than ``IDLE`` are rejected at once with
:class:`~blebridge.errors.BusyError` or :class:`~blebridge.errors.CoolingDownError`.
Teardown always reaches ``COOLING_DOWN``, even when the transport disconnect
fails or hangs, so the mutex is guaranteed to free once the cooldown elapses.
"""
from __future__ import annotations

import asyncio
import contextlib
import functools
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from time import monotonic
from typing import Any, Callable, Dict, Mapping, Optional

from blebridge.errors import (
    BridgeError,
    BusyError,
    CoolingDownError,
    HardwareError,
    TeardownTimeoutError,
    ValidationError,
    hardware_error_from,
)
from blebridge.log_buffer import LogRingBuffer
from blebridge.metrics import MetricsTracker
from blebridge.mutex import ConnectionMutex
from blebridge.pressure import CooldownPolicy, PressureMonitor
from blebridge.transport import DeviceSelector, Transport
from blebridge.uuids import normalize_uuid

logger = logging.getLogger(__name__)

REQUIRED_PARAMS = ("device", "service", "write", "notify")
UUID_PARAMS = ("service", "write", "notify")


class ConnectionState(str, Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCONNECTING = "disconnecting"
    COOLING_DOWN = "cooling_down"


_TRANSITIONS = {
    ConnectionState.IDLE: {ConnectionState.CONNECTING},
    ConnectionState.CONNECTING: {ConnectionState.CONNECTED, ConnectionState.IDLE},
    ConnectionState.CONNECTED: {ConnectionState.DISCONNECTING},
    ConnectionState.DISCONNECTING: {ConnectionState.COOLING_DOWN},
    ConnectionState.COOLING_DOWN: {ConnectionState.IDLE},
}


@dataclass(slots=True, frozen=True)
class SessionParams:
    """Device-selection parameters carried by a session open request."""

    device: str = ""
    service: str = ""
    write: str = ""
    notify: str = ""
    session_id: Optional[str] = None

    @classmethod
    def from_query(cls, query: Mapping[str, Any]) -> "SessionParams":
        def _get(name: str) -> str:
            value = query.get(name)
            return str(value).strip() if value is not None else ""

        return cls(
            device=_get("device"),
            service=_get("service"),
            write=_get("write"),
            notify=_get("notify"),
            session_id=_get("session") or None,
        )

    def validate(self) -> "SessionParams":
        """Return a copy with normalized UUIDs or raise :class:`ValidationError`."""
        missing = [name for name in REQUIRED_PARAMS if not getattr(self, name).strip()]
        if missing:
            raise ValidationError(f"Missing required parameters: {', '.join(missing)}")

        normalized: Dict[str, str] = {}
        for name in UUID_PARAMS:
            value = getattr(self, name)
            try:
                normalized[name] = normalize_uuid(value)
            except ValueError as exc:
                raise ValidationError(f"Invalid UUID for {name}: {value!r}") from exc

        return SessionParams(
            device=self.device.strip(),
            session_id=self.session_id,
            **normalized,
        )

    def selector(self, scan_timeout: float) -> DeviceSelector:
        return DeviceSelector(
            device=self.device,
            service=self.service,
            write=self.write,
            notify=self.notify,
            scan_timeout=scan_timeout,
        )


@dataclass(slots=True)
class _ActiveSession:
    token: str
    params: SessionParams
    on_receive: Callable[[bytes], Any]
    on_disconnect: Callable[[], Any]
    close_requested: bool = field(default=False)

    @property
    def metrics_id(self) -> str:
        return self.params.session_id or self.token


class Bridge:
    """Single-actor lifecycle manager for the one BLE radio."""

    def __init__(
        self,
        transport: Transport,
        *,
        mutex: Optional[ConnectionMutex] = None,
        logs: Optional[LogRingBuffer] = None,
        monitor: Optional[PressureMonitor] = None,
        policy: Optional[CooldownPolicy] = None,
        metrics: Optional[MetricsTracker] = None,
        connect_timeout: float = 15.0,
        teardown_timeout: float = 5.0,
        scan_timeout: float = 15.0,
    ) -> None:
        self.transport = transport
        self.logs = logs if logs is not None else LogRingBuffer()
        self.mutex = mutex if mutex is not None else ConnectionMutex(self.logs)
        self.metrics = metrics if metrics is not None else MetricsTracker()
        self.monitor = monitor if monitor is not None else PressureMonitor(transport, metrics=self.metrics)
        self.policy = policy if policy is not None else CooldownPolicy()
        self.connect_timeout = connect_timeout
        self.teardown_timeout = teardown_timeout
        self.scan_timeout = scan_timeout

        self._state = ConnectionState.IDLE
        self._token: Optional[str] = None
        self._session: Optional[_ActiveSession] = None
        self._device_name: Optional[str] = None
        self._cooldown_until: Optional[float] = None
        self._recovering = False
        self._connect_task: Optional["asyncio.Future[str]"] = None
        self._teardown_task: Optional[asyncio.Task[None]] = None
        self._cooldown_task: Optional[asyncio.Task[None]] = None
        self._idle = asyncio.Event()
        self._idle.set()

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------
    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def device_name(self) -> Optional[str]:
        return self._device_name

    @property
    def recovering(self) -> bool:
        return self._recovering

    def cooldown_remaining(self) -> float:
        if self._cooldown_until is None:
            return 0.0
        return max(0.0, self._cooldown_until - monotonic())

    def is_free(self) -> bool:
        return self._state is ConnectionState.IDLE and self.mutex.is_free()

    def check_available(self) -> None:
        if self.is_free():
            return
        if self._state in (ConnectionState.DISCONNECTING, ConnectionState.COOLING_DOWN):
            raise CoolingDownError()
        raise BusyError()

    def snapshot(self) -> Dict[str, Any]:
        session = self._session
        return {
            "state": self._state.value,
            "connected": self._state is ConnectionState.CONNECTED,
            "device": self._device_name,
            "session_id": session.params.session_id if session else None,
            "recovering": self._recovering,
            "cooldown_remaining": round(self.cooldown_remaining(), 3),
            "free": self.is_free(),
        }

    def health(self) -> Dict[str, Any]:
        return {
            "type": "health",
            "status": "ok",
            "free": self.is_free(),
            "timestamp": datetime.now(timezone.utc).isoformat(timespec="milliseconds"),
        }

    # ------------------------------------------------------------------
    # Session lifecycle
    # ------------------------------------------------------------------
    async def open_session(
        self,
        params: SessionParams,
        *,
        on_receive: Callable[[bytes], Any],
        on_disconnect: Callable[[], Any],
    ) -> str:
        """Claim the radio and connect; returns the session token."""
        params = params.validate()
        self.check_available()

        token = uuid.uuid4().hex
        if not self.mutex.try_claim(token):
            raise BusyError()

        session = _ActiveSession(token, params, on_receive, on_disconnect)
        self._token = token
        self._session = session
        self._set_state(ConnectionState.CONNECTING, params.device)

        selector = params.selector(self.scan_timeout)
        connect = asyncio.ensure_future(
            asyncio.wait_for(
                self.transport.connect(
                    selector,
                    on_receive=functools.partial(self._handle_receive, token),
                    on_disconnect=functools.partial(self._handle_transport_disconnect, token),
                ),
                timeout=self.connect_timeout,
            )
        )
        self._connect_task = connect
        aborted = False
        try:
            with self.metrics.timer():
                try:
                    await asyncio.wait({connect})
                except asyncio.CancelledError:
                    connect.cancel()
                    raise
                # cancelled here only by shutdown()
                aborted = connect.cancelled()
                device_name = connect.result()
        except asyncio.TimeoutError:
            self._record("ERROR", f"connect to {params.device} timed out after {self.connect_timeout:.1f}s")
            await self._discard_transport()
            self.mutex.force_release()
            self._abandon_connect()
            raise HardwareError(f"Connection to {params.device} timed out")
        except asyncio.CancelledError:
            try:
                await self._discard_transport()
            finally:
                self.mutex.force_release()
                self._abandon_connect()
            if aborted:
                raise BridgeError("Bridge is shutting down") from None
            raise
        except Exception as exc:
            error = hardware_error_from(exc)
            self._record("ERROR", f"connect to {params.device} failed: {error}")
            if not self.mutex.release(token):
                self.mutex.force_release()
            self._abandon_connect()
            raise error from exc
        finally:
            self._connect_task = None

        if self._state is not ConnectionState.CONNECTING or token != self._token:
            self._record("WARN", f"connect to {device_name} finished after the session was reset")
            await self._discard_transport()
            if self.mutex.is_owner(token):
                self.mutex.release(token)
            raise BridgeError("Session aborted while connecting")

        self._device_name = device_name
        self._set_state(ConnectionState.CONNECTED, device_name)
        self.metrics.record_session_start(session.metrics_id)

        if session.close_requested:
            # the inbound side went away while we were connecting
            await self.close_session(token, "session closed while connecting")
            raise BridgeError("Session closed while connecting")
        return token

    async def send(self, token: str, data: bytes) -> None:
        if token != self._token or self._state is not ConnectionState.CONNECTED:
            raise BusyError()
        payload = bytes(data)
        self.logs.log_packet("TX", payload)
        try:
            await self.transport.send(payload)
        except Exception as exc:
            error = hardware_error_from(exc)
            self._record("ERROR", f"send failed: {error}")
            raise error from exc

    async def close_session(self, token: Optional[str], reason: str = "session closed") -> None:
        """Tear the session down; safe to call more than once."""
        if token is None or token != self._token:
            return
        session = self._session
        if self._state is ConnectionState.CONNECTING:
            if session is not None:
                session.close_requested = True
            return

        task = self._begin_teardown(token, reason)
        if task is not None:
            await asyncio.shield(task)

    async def force_cleanup(self, reason: str = "force cleanup") -> bool:
        """Administrative reset back to ``IDLE``; skipped while a connect is in flight."""
        if self._state is ConnectionState.CONNECTING:
            self._record("WARN", f"force cleanup skipped during connect: {reason}")
            return False

        self._record("WARN", f"force cleanup: {reason}")
        session = self._session
        if self._state is ConnectionState.CONNECTED and session is not None:
            self._notify_disconnect(session)
            await self.close_session(session.token, reason)
        elif self._teardown_task is not None and not self._teardown_task.done():
            await asyncio.shield(self._teardown_task)

        self._cancel_cooldown()
        self.mutex.force_release()
        self._finish_idle(forced=True)
        return True

    async def wait_idle(self, timeout: Optional[float] = None) -> None:
        await asyncio.wait_for(self._idle.wait(), timeout=timeout)

    async def shutdown(self) -> None:
        connect = self._connect_task
        if connect is not None and not connect.done():
            self._record("WARN", "shutdown: aborting connect in flight")
            connect.cancel()
            with contextlib.suppress(asyncio.TimeoutError):
                await asyncio.wait_for(self._idle.wait(), timeout=self.teardown_timeout + 1.0)

        session = self._session
        if self._state is ConnectionState.CONNECTED and session is not None:
            await self.close_session(session.token, "bridge shutting down")
        elif self._teardown_task is not None and not self._teardown_task.done():
            await asyncio.shield(self._teardown_task)
        self._cancel_cooldown()
        if not self.mutex.is_free():
            self.mutex.force_release()
        if self._state is not ConnectionState.IDLE:
            self._finish_idle(forced=True)

    # ------------------------------------------------------------------
    # Transport callbacks
    # ------------------------------------------------------------------
    def _handle_receive(self, token: str, data: bytes) -> None:
        session = self._session
        if token != self._token or session is None or self._state is not ConnectionState.CONNECTED:
            logger.debug("Dropping %d bytes received outside an active session", len(data))
            return
        self.logs.log_packet("RX", data)
        try:
            session.on_receive(bytes(data))
        except Exception:
            logger.exception("Session receive handler raised")

    def _handle_transport_disconnect(self, token: str) -> None:
        session = self._session
        if token != self._token or session is None:
            return
        self._record("WARN", "device disconnected")
        if self._state is not ConnectionState.CONNECTED:
            return
        self._notify_disconnect(session)
        self._begin_teardown(token, "device disconnected")

    # ------------------------------------------------------------------
    # Teardown and cooldown
    # ------------------------------------------------------------------
    def _begin_teardown(self, token: str, reason: str) -> Optional["asyncio.Task[None]"]:
        if self._state is ConnectionState.DISCONNECTING:
            return self._teardown_task
        if self._state is not ConnectionState.CONNECTED:
            return None
        self._set_state(ConnectionState.DISCONNECTING, reason)
        self._teardown_task = asyncio.get_running_loop().create_task(self._teardown(token))
        return self._teardown_task

    async def _teardown(self, token: str) -> None:
        session = self._session
        self._recovering = True
        timed_out = False
        try:
            await asyncio.wait_for(self.transport.disconnect(), timeout=self.teardown_timeout)
        except asyncio.TimeoutError:
            timed_out = True
            error = TeardownTimeoutError(f"transport disconnect exceeded {self.teardown_timeout:.1f}s")
            logger.error("%s; forcing cooldown", error)
            self._record("ERROR", str(error))
            self.metrics.record_teardown_timeout()
        except Exception as exc:
            logger.warning("Transport disconnect failed: %s", exc, exc_info=True)
            self._record("ERROR", f"teardown error: {hardware_error_from(exc)}")

        if session is not None:
            self.metrics.record_session_end(session.metrics_id)
        self._session = None
        self._device_name = None
        self._recovering = timed_out
        self._enter_cooldown(token, forced=timed_out)

    def _enter_cooldown(self, token: str, *, forced: bool) -> None:
        sample = self.monitor.sample()
        duration = self.policy.compute(sample)
        self.metrics.record_cooldown(duration)
        self._cooldown_until = monotonic() + duration
        detail = sample.as_dict() if sample is not None else "unavailable"
        self._set_state(ConnectionState.COOLING_DOWN, f"{duration:.2f}s, pressure {detail}")
        self._cooldown_task = asyncio.get_running_loop().create_task(
            self._finish_cooldown(token, duration, forced)
        )

    async def _finish_cooldown(self, token: str, duration: float, forced: bool) -> None:
        await asyncio.sleep(duration)
        if forced or not self.mutex.release(token):
            self.mutex.force_release()
        self._finish_idle()

    def _cancel_cooldown(self) -> None:
        task = self._cooldown_task
        self._cooldown_task = None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    def _finish_idle(self, *, forced: bool = False) -> None:
        self._token = None
        self._session = None
        self._device_name = None
        self._cooldown_until = None
        self._recovering = False
        self._cooldown_task = None
        self._set_state(ConnectionState.IDLE, "forced" if forced else "cooldown elapsed", force=forced)

    async def _discard_transport(self) -> None:
        with contextlib.suppress(Exception):
            await asyncio.wait_for(self.transport.disconnect(), timeout=self.teardown_timeout)

    def _abandon_connect(self) -> None:
        self._token = None
        self._session = None
        self._set_state(ConnectionState.IDLE, "connect abandoned")

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _notify_disconnect(self, session: _ActiveSession) -> None:
        try:
            session.on_disconnect()
        except Exception:
            logger.exception("Session disconnect handler raised")

    def _set_state(self, new: ConnectionState, context: str = "", *, force: bool = False) -> None:
        old = self._state
        if old is new:
            return
        if not force and new not in _TRANSITIONS[old]:
            raise RuntimeError(f"Invalid state transition: {old.value} -> {new.value}")
        self._state = new
        if new is ConnectionState.IDLE:
            self._idle.set()
        else:
            self._idle.clear()
        suffix = f" ({context})" if context else ""
        logger.info("State %s -> %s%s", old.value, new.value, suffix)
        self.logs.log_event("INFO", f"state {old.value} -> {new.value}{suffix}")

    def _record(self, level: str, message: str) -> None:
        getattr(logger, "warning" if level == "WARN" else level.lower())(message)
        self.logs.log_event(level, message)


__all__ = [
    "Bridge",
    "ConnectionState",
    "SessionParams",
    "REQUIRED_PARAMS",
]
