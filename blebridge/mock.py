"""Hardware-free transport used by ``blebridge serve --mock`` and the tests."""
from __future__ import annotations

import asyncio
import logging
from typing import List, Optional

from blebridge.errors import HardwareError
from blebridge.pressure import PressureSample
from blebridge.transport import DeviceSelector, DisconnectCallback, ReceiveCallback

logger = logging.getLogger(__name__)

MISSING_DEVICE_PREFIX = "NONEXISTENT"
BATTERY_COMMAND = (0xA0, 0x00)
BATTERY_RESPONSE = bytes([0xA7, 0xB3, 0x04, 0xD9, 0x82, 0x9E, 0x59, 0x8F, 0xA0, 0x00, 0x0F, 0xEB])


class MockTransport:
    """Simulated peripheral answering a battery-voltage command."""

    def __init__(
        self,
        *,
        connect_delay: float = 0.1,
        disconnect_delay: float = 0.05,
        response_delay: float = 0.05,
        pressure: Optional[PressureSample] = None,
    ) -> None:
        self.connect_delay = connect_delay
        self.disconnect_delay = disconnect_delay
        self.response_delay = response_delay
        self.pressure_sample = pressure or PressureSample()
        self.sent: List[bytes] = []
        self.connect_calls = 0
        self.disconnect_calls = 0
        self.device_name = ""
        self._on_receive: Optional[ReceiveCallback] = None
        self._on_disconnect: Optional[DisconnectCallback] = None
        self._connected = False

    @property
    def connected(self) -> bool:
        return self._connected

    async def connect(
        self,
        selector: DeviceSelector,
        *,
        on_receive: ReceiveCallback,
        on_disconnect: DisconnectCallback,
    ) -> str:
        self.connect_calls += 1
        logger.info("Simulating connection to %s", selector.device)
        await asyncio.sleep(self.connect_delay)
        if selector.device == MISSING_DEVICE_PREFIX:
            raise HardwareError(f"No device found with prefix: {selector.device}")

        self.device_name = f"{selector.device}-MOCK-12345"
        self._on_receive = on_receive
        self._on_disconnect = on_disconnect
        self._connected = True
        return self.device_name

    async def send(self, data: bytes) -> None:
        if not self._connected:
            raise HardwareError("Not connected")
        self.sent.append(bytes(data))
        if len(data) >= 10 and (data[8], data[9]) == BATTERY_COMMAND:
            asyncio.get_running_loop().call_later(self.response_delay, self.simulate_notification, BATTERY_RESPONSE)

    async def disconnect(self) -> None:
        self.disconnect_calls += 1
        await asyncio.sleep(self.disconnect_delay)
        self._connected = False
        self._on_receive = None
        self._on_disconnect = None

    def pressure(self) -> PressureSample:
        return self.pressure_sample

    def simulate_notification(self, data: bytes) -> None:
        if self._connected and self._on_receive is not None:
            self._on_receive(bytes(data))

    def simulate_disconnect(self) -> None:
        """Act as if the peripheral dropped the link."""
        callback = self._on_disconnect
        self._connected = False
        self._on_receive = None
        self._on_disconnect = None
        if callback is not None:
            callback()


__all__ = ["MockTransport", "BATTERY_RESPONSE", "MISSING_DEVICE_PREFIX"]
