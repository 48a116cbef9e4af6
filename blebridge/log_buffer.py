"""In-memory ring buffer of packet and lifecycle log entries.

The buffer is the diagnostic record that survives session boundaries: every
byte relayed through the bridge and every notable lifecycle event is appended
here, and debugging clients read it back through :meth:`LogRingBuffer.query`
using either a wall-clock cutoff or a per-client cursor.

Appends and queries run inline on the event loop; the bridge is the only
writer, so the buffer carries no lock.
"""
from __future__ import annotations

import logging
import re
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Deque, Dict, Iterable, List, Optional, Union

logger = logging.getLogger(__name__)

DEFAULT_CAPACITY = 10_000
MIN_CAPACITY = 100
MAX_CAPACITY = 1_000_000

KINDS = ("TX", "RX", "INFO", "WARN", "ERROR")
PACKET_KINDS = ("TX", "RX")
LAST_SEEN = "last"

_DURATION = re.compile(r"^(\d+)([smh])$")
_UNIT_SECONDS = {"s": 1, "m": 60, "h": 3600}
_WHITESPACE = re.compile(r"\s+")

Subscriber = Callable[["LogEntry"], None]


def format_hex(data: Union[bytes, bytearray, memoryview, Iterable[int]]) -> str:
    """Uppercase, space separated hex (``A7 B3 02``)."""
    return " ".join(f"{byte:02X}" for byte in bytes(data))


def _ensure_utc(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def _clamp_capacity(capacity: Optional[int]) -> int:
    if capacity is None:
        capacity = DEFAULT_CAPACITY
    return max(MIN_CAPACITY, min(MAX_CAPACITY, int(capacity)))


@dataclass(slots=True, frozen=True)
class LogEntry:
    """One retained diagnostic record."""

    id: int
    timestamp: datetime
    kind: str
    payload: str
    size: int = 0

    @property
    def is_packet(self) -> bool:
        return self.kind in PACKET_KINDS

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "timestamp": self.timestamp.isoformat(timespec="milliseconds"),
            "kind": self.kind,
            "payload": self.payload,
            "size": self.size,
        }


class LogRingBuffer:
    """Fixed-capacity, oldest-first-evicting log with per-client cursors."""

    def __init__(
        self,
        capacity: Optional[int] = None,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.capacity = _clamp_capacity(capacity)
        self._entries: Deque[LogEntry] = deque(maxlen=self.capacity)
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._next_id = 0
        self._cursors: Dict[str, int] = {}
        self._subscribers: List[Subscriber] = []
        logger.debug("Log buffer initialised with capacity %d", self.capacity)

    def __len__(self) -> int:
        return len(self._entries)

    # ------------------------------------------------------------------
    # Writing
    # ------------------------------------------------------------------
    def append(self, kind: str, payload: Union[str, bytes, bytearray, memoryview]) -> int:
        kind = kind.upper()
        if kind not in KINDS:
            raise ValueError(f"unknown log kind: {kind!r}")

        if isinstance(payload, (bytes, bytearray, memoryview)):
            raw = bytes(payload)
            text, size = format_hex(raw), len(raw)
        else:
            text, size = str(payload), 0

        entry = LogEntry(
            id=self._next_id,
            timestamp=self._now(),
            kind=kind,
            payload=text,
            size=size,
        )
        self._next_id += 1
        # deque(maxlen) drops from the left once full
        self._entries.append(entry)

        for callback in list(self._subscribers):
            try:
                callback(entry)
            except Exception:
                logger.exception("Log subscriber raised for entry %d", entry.id)
        return entry.id

    def log_packet(self, direction: str, data: Union[bytes, bytearray, memoryview]) -> int:
        if direction.upper() not in PACKET_KINDS:
            raise ValueError(f"packet direction must be TX or RX, got {direction!r}")
        return self.append(direction, bytes(data))

    def log_event(self, level: str, message: str) -> int:
        level = level.upper()
        if level == "WARNING":
            level = "WARN"
        if level in PACKET_KINDS:
            raise ValueError("use log_packet for TX/RX entries")
        return self.append(level, message)

    # ------------------------------------------------------------------
    # Reading
    # ------------------------------------------------------------------
    def query(self, since: str, limit: int, client_id: Optional[str] = None) -> List[LogEntry]:
        """Entries after ``since``, oldest first, at most ``limit`` of them.

        ``since`` is ``"last"`` (resume after ``client_id``'s cursor), a
        relative duration such as ``"30s"``/``"5m"``/``"1h"``, or an ISO-8601
        timestamp. A time cutoff that matches nothing falls back to the oldest
        retained entry; a cursor with nothing newer yields an empty list.
        """
        limit = max(0, int(limit))
        entries = list(self._entries)
        start = self._resolve_start(entries, since, client_id)
        result = entries[start:start + limit] if start is not None else []

        if client_id and result:
            self._cursors[client_id] = result[-1].id
        return result

    def search(self, pattern: str, limit: int) -> List[LogEntry]:
        """Newest-first scan for ``pattern``; matches come back chronologically."""
        limit = max(0, int(limit))
        if limit == 0:
            return []
        text_regex = self._compile(pattern)
        hex_regex = self._compile(_WHITESPACE.sub("", pattern))

        matches: List[LogEntry] = []
        for entry in reversed(self._entries):
            if entry.is_packet:
                found = hex_regex.search(_WHITESPACE.sub("", entry.payload))
            else:
                found = text_regex.search(entry.payload)
            if found:
                matches.append(entry)
                if len(matches) >= limit:
                    break
        matches.reverse()
        return matches

    def client_position(self, client_id: str) -> Optional[int]:
        return self._cursors.get(client_id)

    def update_client_position(self, client_id: str, last_seen_id: int) -> None:
        self._cursors[client_id] = int(last_seen_id)

    def latest(self) -> Optional[LogEntry]:
        return self._entries[-1] if self._entries else None

    def stats(self) -> Dict[str, int]:
        transmitted = sum(1 for entry in self._entries if entry.kind == "TX")
        received = sum(1 for entry in self._entries if entry.kind == "RX")
        return {
            "size": len(self._entries),
            "capacity": self.capacity,
            "next_id": self._next_id,
            "packets_transmitted": transmitted,
            "packets_received": received,
            "clients": len(self._cursors),
        }

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        self._subscribers.append(callback)

        def _unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return _unsubscribe

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    def _now(self) -> datetime:
        try:
            dt = self._clock()
        except Exception:  # pragma: no cover - guard against faulty clock
            dt = datetime.now(timezone.utc)
        return _ensure_utc(dt)

    def _resolve_start(self, entries: List[LogEntry], since: str, client_id: Optional[str]) -> Optional[int]:
        since = (since or "").strip()

        if since == LAST_SEEN:
            if not client_id:
                raise ValueError("since='last' requires a client id")
            cursor = self._cursors.get(client_id, -1)
            return next((idx for idx, entry in enumerate(entries) if entry.id > cursor), None)

        cutoff = self._parse_cutoff(since)
        idx = next((idx for idx, entry in enumerate(entries) if entry.timestamp > cutoff), None)
        return 0 if idx is None else idx

    def _parse_cutoff(self, since: str) -> datetime:
        match = _DURATION.match(since)
        if match:
            amount, unit = match.groups()
            try:
                return self._now() - timedelta(seconds=int(amount) * _UNIT_SECONDS[unit])
            except OverflowError:
                # reaches back past any representable time: everything qualifies
                return datetime.min.replace(tzinfo=timezone.utc)

        text = since[:-1] + "+00:00" if since.endswith(("Z", "z")) else since
        try:
            return _ensure_utc(datetime.fromisoformat(text))
        except ValueError as exc:
            raise ValueError(
                f"invalid since value {since!r}: expect 'last', a duration like '30s', or an ISO timestamp"
            ) from exc

    @staticmethod
    def _compile(pattern: str) -> "re.Pattern[str]":
        try:
            return re.compile(pattern, re.IGNORECASE)
        except re.error:
            return re.compile(re.escape(pattern), re.IGNORECASE)


__all__ = [
    "DEFAULT_CAPACITY",
    "LAST_SEEN",
    "LogEntry",
    "LogRingBuffer",
    "format_hex",
]
