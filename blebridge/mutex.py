"""Single-slot, token-keyed lock guarding the BLE radio."""
from __future__ import annotations

import logging
from typing import Optional

from blebridge.log_buffer import LogRingBuffer

logger = logging.getLogger(__name__)


class ConnectionMutex:
    """Non-blocking claim/release lock; callers retry instead of waiting."""

    def __init__(self, logs: Optional[LogRingBuffer] = None) -> None:
        self._holder: Optional[str] = None
        self._logs = logs

    @property
    def holder(self) -> Optional[str]:
        return self._holder

    def try_claim(self, token: str) -> bool:
        if not token:
            raise ValueError("token must be a non-empty string")
        if self._holder is not None:
            logger.debug("Claim denied for %s; held by %s", token, self._holder)
            return False
        self._holder = token
        logger.debug("Connection claimed by %s", token)
        self._record("INFO", f"mutex claimed by {token}")
        return True

    def release(self, token: str) -> bool:
        if self._holder is None or self._holder != token:
            logger.warning("Release refused: token mismatch (held=%s, provided=%s)", self._holder, token)
            self._record("WARN", f"mutex release refused for {token}")
            return False
        self._holder = None
        logger.debug("Connection released by %s", token)
        self._record("INFO", f"mutex released by {token}")
        return True

    def force_release(self) -> None:
        previous = self._holder
        self._holder = None
        logger.warning("Force released connection (previous holder=%s)", previous)
        self._record("WARN", f"mutex force released (previous holder {previous})")

    def is_free(self) -> bool:
        return self._holder is None

    def is_owner(self, token: str) -> bool:
        return self._holder is not None and self._holder == token

    def _record(self, level: str, message: str) -> None:
        if self._logs is not None:
            self._logs.log_event(level, message)


__all__ = ["ConnectionMutex"]
