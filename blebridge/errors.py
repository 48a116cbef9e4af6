"""Error taxonomy shared by the bridge server and its clients."""
from __future__ import annotations

import re
from typing import Any, Dict, Optional, Type


BUSY_MESSAGE = "Bridge is busy with another session"
COOLING_DOWN_MESSAGE = "Bridge is disconnecting/cooling down"

# Application close codes (RFC 6455 reserves 4000-4999 for applications).
CLOSE_NORMAL = 1000
CLOSE_POLICY_VIOLATION = 1008
CLOSE_HARDWARE_NOT_FOUND = 4001
CLOSE_GATT_CONNECTION_FAILED = 4002
CLOSE_SERVICE_NOT_FOUND = 4003
CLOSE_CHARACTERISTICS_NOT_FOUND = 4004
CLOSE_BLE_DISCONNECTED = 4005

CLOSE_CODE_MESSAGES: Dict[int, str] = {
    CLOSE_HARDWARE_NOT_FOUND: "BLE device not found - check hardware connection",
    CLOSE_GATT_CONNECTION_FAILED: "BLE zombie connection detected - restart the bridge service",
    CLOSE_SERVICE_NOT_FOUND: "Required BLE service not available on device",
    CLOSE_CHARACTERISTICS_NOT_FOUND: "Required BLE characteristics not found",
    CLOSE_BLE_DISCONNECTED: "BLE device disconnected unexpectedly",
}

HCI_ERROR_CODES: Dict[int, str] = {
    0x00: "Success",
    0x01: "Unknown HCI Command",
    0x02: "Unknown Connection Identifier",
    0x03: "Hardware Failure",
    0x04: "Page Timeout",
    0x05: "Authentication Failure",
    0x06: "PIN or Key Missing",
    0x07: "Memory Capacity Exceeded",
    0x08: "Connection Timeout",
    0x09: "Connection Limit Exceeded",
    0x0A: "Synchronous Connection Limit To A Device Exceeded",
    0x0B: "ACL Connection Already Exists",
    0x0C: "Command Disallowed",
    0x0D: "Connection Rejected due to Limited Resources",
    0x0E: "Connection Rejected Due To Security Reasons",
    0x0F: "Connection Rejected due to Unacceptable BD_ADDR",
    0x10: "Connection Accept Timeout Exceeded",
    0x11: "Unsupported Feature or Parameter Value",
    0x12: "Invalid HCI Command Parameters",
    0x13: "Remote User Terminated Connection",
    0x14: "Remote Device Terminated Connection due to Low Resources",
    0x15: "Remote Device Terminated Connection due to Power Off",
    0x16: "Connection Terminated By Local Host",
    0x17: "Repeated Attempts",
    0x18: "Pairing Not Allowed",
    0x19: "Unknown LMP PDU",
    0x1A: "Unsupported Remote Feature / Unsupported LMP Feature",
    0x1B: "SCO Offset Rejected",
    0x1C: "SCO Interval Rejected",
    0x1D: "SCO Air Mode Rejected",
    0x1E: "Invalid LMP Parameters",
    0x1F: "Unspecified Error",
    0x20: "Unsupported LMP Parameter Value",
    0x21: "Role Change Not Allowed",
    0x22: "LMP Response Timeout / LL Response Timeout",
    0x23: "LMP Error Transaction Collision",
    0x24: "LMP PDU Not Allowed",
    0x25: "Encryption Mode Not Acceptable",
    0x26: "Link Key cannot be Changed",
    0x27: "Requested QoS Not Supported",
    0x28: "Instant Passed",
    0x29: "Pairing With Unit Key Not Supported",
    0x2A: "Different Transaction Collision",
    0x2B: "Reserved",
    0x2C: "QoS Unacceptable Parameter",
    0x2D: "QoS Rejected",
    0x2E: "Channel Classification Not Supported",
    0x2F: "Insufficient Security",
    0x30: "Parameter Out Of Mandatory Range",
    0x31: "Reserved",
    0x32: "Role Switch Pending",
    0x33: "Reserved",
    0x34: "Reserved Slot Violation",
    0x35: "Role Switch Failed",
    0x36: "Extended Inquiry Response Too Large",
    0x37: "Secure Simple Pairing Not Supported By Host",
    0x38: "Host Busy - Pairing",
    0x39: "Connection Rejected due to No Suitable Channel Found",
    0x3A: "Controller Busy",
    0x3B: "Unacceptable Connection Parameters",
    0x3C: "Directed Advertising Timeout",
    0x3D: "Connection Terminated due to MIC Failure",
    0x3E: "Connection Failed to be Established",
    0x3F: "MAC Connection Failed",
    0x40: "Coarse Clock Adjustment Rejected but Will Try to Adjust Using Clock Dragging",
    # errno values surfaced by BlueZ sockets
    111: "Connection refused (ECONNREFUSED)",
    113: "No route to host (EHOSTUNREACH)",
}

_CODE_IN_TEXT = re.compile(r"\b(\d+)\b")


class BridgeError(Exception):
    """Base class for every error the bridge reports to a session."""

    retryable = False


class ValidationError(BridgeError):
    """Device-selection parameters are missing or malformed."""


class BusyError(BridgeError):
    """Another session holds the connection."""

    retryable = True

    def __init__(self, message: str = BUSY_MESSAGE) -> None:
        super().__init__(message)


class CoolingDownError(BridgeError):
    """The radio is tearing down or recovering from the last session."""

    retryable = True

    def __init__(self, message: str = COOLING_DOWN_MESSAGE) -> None:
        super().__init__(message)


class HardwareError(BridgeError):
    """Transport-level failure, with the low-level code when one is known."""

    def __init__(self, message: str, *, code: Optional[int] = None) -> None:
        super().__init__(message)
        self.code = code


class TeardownTimeoutError(BridgeError):
    """Transport disconnect exceeded its deadline; never sent to clients."""


class RetriesExhaustedError(BridgeError):
    """Client gave up after the configured number of attempts."""

    def __init__(self, attempts: int, last_error: BaseException) -> None:
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(f"Gave up after {attempts} attempts: {last_error}")


def translate_bluetooth_error(error: Any) -> str:
    """Return a human-readable cause for a transport failure."""
    if isinstance(error, str):
        return error
    if isinstance(error, int) and not isinstance(error, bool):
        return HCI_ERROR_CODES.get(error, f"Unknown Bluetooth error code: {error}")

    text = str(error) if error is not None else ""
    if text and not text.strip().isdigit():
        return text

    code = getattr(error, "code", None)
    if isinstance(code, int) and not isinstance(code, bool):
        return HCI_ERROR_CODES.get(code, f"Unknown Bluetooth error code: {code}")

    # bare numeric messages such as OSError(111)
    match = _CODE_IN_TEXT.search(text)
    if match and int(match.group(1)) in HCI_ERROR_CODES:
        return HCI_ERROR_CODES[int(match.group(1))]
    return text or "Unknown error"


def hardware_error_from(exc: BaseException) -> HardwareError:
    if isinstance(exc, HardwareError):
        return exc
    code = getattr(exc, "code", None)
    if not isinstance(code, int) or isinstance(code, bool):
        code = None
    return HardwareError(translate_bluetooth_error(exc), code=code)


def classify_rejection(message: str) -> Type[BridgeError]:
    """Map the text of an ``error`` frame back to an error class."""
    lowered = (message or "").lower()
    if "cooling down" in lowered or "disconnecting" in lowered:
        return CoolingDownError
    if "busy" in lowered or "another connection is active" in lowered:
        return BusyError
    if "missing required parameter" in lowered or "invalid" in lowered:
        return ValidationError
    return HardwareError


def close_code_for(exc: BaseException) -> int:
    """Pick the WebSocket close code that follows an ``error`` frame."""
    if isinstance(exc, ValidationError):
        return CLOSE_POLICY_VIOLATION
    if isinstance(exc, (BusyError, CoolingDownError)):
        return CLOSE_NORMAL

    message = str(exc).lower()
    if "no device found" in message or "device not found" in message or "no devices found" in message:
        return CLOSE_HARDWARE_NOT_FOUND
    if "gatt" in message or "connection failed" in message:
        return CLOSE_GATT_CONNECTION_FAILED
    if "service" in message and "not found" in message:
        return CLOSE_SERVICE_NOT_FOUND
    if "characteristic" in message and "not found" in message:
        return CLOSE_CHARACTERISTICS_NOT_FOUND
    if "disconnect" in message:
        return CLOSE_BLE_DISCONNECTED
    return CLOSE_HARDWARE_NOT_FOUND


__all__ = [
    "BUSY_MESSAGE",
    "COOLING_DOWN_MESSAGE",
    "CLOSE_CODE_MESSAGES",
    "HCI_ERROR_CODES",
    "BridgeError",
    "ValidationError",
    "BusyError",
    "CoolingDownError",
    "HardwareError",
    "TeardownTimeoutError",
    "RetriesExhaustedError",
    "translate_bluetooth_error",
    "hardware_error_from",
    "classify_rejection",
    "close_code_for",
]
