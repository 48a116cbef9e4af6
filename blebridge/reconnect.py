"""Client side of the bridge: open a session and retry politely while it is busy."""
from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Iterable, Optional
from urllib.parse import urlencode

import websockets

from blebridge.errors import (
    BridgeError,
    BusyError,
    CoolingDownError,
    RetriesExhaustedError,
    classify_rejection,
)

logger = logging.getLogger(__name__)

Opener = Callable[[str], Awaitable[Any]]
Sleeper = Callable[[float], Awaitable[None]]

RETRYABLE = (BusyError, CoolingDownError)


@dataclass(slots=True, frozen=True)
class RetryConfig:
    max_attempts: int = 5
    initial_delay: float = 1.0
    backoff_factor: float = 1.3
    max_delay: float = 10.0

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.initial_delay < 0 or self.max_delay < 0:
            raise ValueError("delays must be non-negative")
        if self.backoff_factor < 1.0:
            raise ValueError("backoff_factor must be >= 1.0")

    def delays(self) -> Iterable[float]:
        """Waits between consecutive attempts (one fewer than ``max_attempts``)."""
        delay = self.initial_delay
        for _ in range(self.max_attempts - 1):
            yield delay
            delay = min(delay * self.backoff_factor, self.max_delay)


def bridge_url(
    base: str,
    device: str,
    service: str,
    write: str,
    notify: str,
    *,
    session: Optional[str] = None,
) -> str:
    params: Dict[str, str] = {"device": device, "service": service, "write": write, "notify": notify}
    if session:
        params["session"] = session
    separator = "&" if "?" in base else "?"
    return f"{base}{separator}{urlencode(params)}"


def _default_opener(open_timeout: float) -> Opener:
    async def _open(url: str) -> Any:
        return await websockets.connect(url, open_timeout=open_timeout)

    return _open


async def _read_frame(ws: Any) -> Dict[str, Any]:
    raw = await ws.recv()
    if isinstance(raw, (bytes, bytearray)):
        raw = raw.decode("utf-8")
    message = json.loads(raw)
    if not isinstance(message, dict):
        raise BridgeError(f"Unexpected frame from bridge: {raw!r}")
    return message


class BridgeConnection:
    """An open bridge session."""

    def __init__(self, ws: Any, device: str) -> None:
        self._ws = ws
        self.device = device

    async def send(self, data: bytes) -> None:
        await self._ws.send(json.dumps({"type": "data", "data": list(bytes(data))}))

    async def receive(self) -> Dict[str, Any]:
        """Next decoded frame; ``data`` frames carry ``payload`` as bytes."""
        message = await _read_frame(self._ws)
        if message.get("type") == "data":
            message["payload"] = bytes(message.get("data") or [])
        return message

    async def force_cleanup(self) -> Dict[str, Any]:
        await self._ws.send(json.dumps({"type": "force_cleanup"}))
        while True:
            message = await _read_frame(self._ws)
            if message.get("type") in ("force_cleanup_complete", "error"):
                return message

    async def close(self) -> None:
        await self._ws.close()

    async def __aenter__(self) -> "BridgeConnection":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()


async def open_bridge(url: str, *, opener: Optional[Opener] = None, open_timeout: float = 10.0) -> BridgeConnection:
    """Open one session; raises the :mod:`blebridge.errors` type matching a rejection."""
    open_ws = opener or _default_opener(open_timeout)
    ws = await open_ws(url)
    try:
        message = await asyncio.wait_for(_read_frame(ws), timeout=open_timeout)
    except BaseException:
        with contextlib.suppress(Exception):
            await ws.close()
        raise

    kind = message.get("type")
    if kind == "connected":
        return BridgeConnection(ws, str(message.get("device", "")))

    with contextlib.suppress(Exception):
        await ws.close()
    if kind == "error":
        reason = str(message.get("error", ""))
        raise classify_rejection(reason)(reason)
    raise BridgeError(f"Unexpected first frame from bridge: {message!r}")


class Reconnector:
    """Open a bridge session, backing off while the bridge is busy or cooling down."""

    def __init__(
        self,
        url: str,
        config: Optional[RetryConfig] = None,
        *,
        opener: Optional[Opener] = None,
        sleep: Optional[Sleeper] = None,
        open_timeout: float = 10.0,
    ) -> None:
        self.url = url
        self.config = config or RetryConfig()
        self._opener = opener
        self._sleep = sleep or asyncio.sleep
        self.open_timeout = open_timeout
        self.attempts = 0

    async def connect_with_retry(self) -> BridgeConnection:
        config = self.config
        delays = iter(config.delays())
        self.attempts = 0

        while True:
            self.attempts += 1
            attempt = self.attempts
            logger.info("Bridge connection attempt %d/%d", attempt, config.max_attempts)
            try:
                connection = await open_bridge(self.url, opener=self._opener, open_timeout=self.open_timeout)
            except RETRYABLE as exc:
                delay = next(delays, None)
                if delay is None:
                    logger.error("Giving up after %d attempts: %s", attempt, exc)
                    raise RetriesExhaustedError(attempt, exc) from exc
                logger.warning("Bridge rejected attempt %d (%s); retrying in %.2fs", attempt, exc, delay)
                await self._sleep(delay)
                continue
            except BridgeError as exc:
                logger.error("Bridge connection failed: %s", exc)
                raise

            logger.info("Connected to %s after %d attempt(s)", connection.device, attempt)
            return connection


async def connect_with_retry(url: str, config: Optional[RetryConfig] = None, **kwargs: Any) -> BridgeConnection:
    return await Reconnector(url, config, **kwargs).connect_with_retry()


async def check_health(base: str, *, opener: Optional[Opener] = None, open_timeout: float = 5.0) -> Dict[str, Any]:
    """Send the health probe; never claims the bridge."""
    separator = "&" if "?" in base else "?"
    open_ws = opener or _default_opener(open_timeout)
    ws = await open_ws(f"{base}{separator}command=health")
    try:
        return await asyncio.wait_for(_read_frame(ws), timeout=open_timeout)
    finally:
        with contextlib.suppress(Exception):
            await ws.close()


__all__ = [
    "RetryConfig",
    "BridgeConnection",
    "Reconnector",
    "bridge_url",
    "open_bridge",
    "connect_with_retry",
    "check_health",
]
