"""BleakTransport against a fake client; no radio required."""
from __future__ import annotations

from typing import Any, Callable, Dict, List, Optional, Tuple
from unittest import IsolatedAsyncioTestCase
from unittest.mock import patch

from blebridge.errors import HardwareError
from blebridge.scanner import ScanResult
from blebridge.transport import BleakTransport, DeviceSelector

SERVICE = "00009800-0000-1000-8000-00805f9b34fb"
WRITE = "00009900-0000-1000-8000-00805f9b34fb"
NOTIFY = "00009901-0000-1000-8000-00805f9b34fb"


class _FakeService:
    def __init__(self, characteristics: List[str]) -> None:
        self.characteristics = characteristics

    def get_characteristic(self, uuid: str) -> Optional[str]:
        return uuid if uuid in self.characteristics else None


class _FakeServices:
    def __init__(self, services: Dict[str, _FakeService]) -> None:
        self._services = services

    def get_service(self, uuid: str) -> Optional[_FakeService]:
        return self._services.get(uuid)


class FakeBleakClient:
    instances: List["FakeBleakClient"] = []
    characteristics = [WRITE, NOTIFY]
    fail_connect: Optional[Exception] = None

    def __init__(self, device: Any, disconnected_callback: Callable[[Any], None], **kwargs: Any) -> None:
        self.device = device
        self.disconnected_callback = disconnected_callback
        self.kwargs = kwargs
        self.services = _FakeServices({SERVICE: _FakeService(list(self.characteristics))})
        self.notify_handler: Optional[Callable[[Any, bytearray], None]] = None
        self.writes: List[Tuple[str, bytes, bool]] = []
        self.disconnected = False
        FakeBleakClient.instances.append(self)

    async def connect(self) -> None:
        if self.fail_connect is not None:
            raise self.fail_connect

    async def start_notify(self, uuid: str, handler) -> None:
        self.notify_handler = handler

    async def stop_notify(self, uuid: str) -> None:
        self.notify_handler = None

    async def write_gatt_char(self, uuid: str, data: bytes, response: bool = True) -> None:
        self.writes.append((uuid, data, response))

    async def disconnect(self) -> None:
        self.disconnected = True
        self.disconnected_callback(self)


def _selector(device: str = "CS108") -> DeviceSelector:
    return DeviceSelector(device=device, service=SERVICE, write=WRITE, notify=NOTIFY, scan_timeout=0.1)


async def _found(name_prefix: str, **_: Any):
    return ScanResult(address="AA:01", name=f"{name_prefix}-1", rssi=-50, device="ble-device"), 4


async def _not_found(name_prefix: str, **_: Any):
    return None, 2


class BleakTransportTest(IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        FakeBleakClient.instances = []
        FakeBleakClient.characteristics = [WRITE, NOTIFY]
        FakeBleakClient.fail_connect = None
        self.received: List[bytes] = []
        self.drops = 0

    def _drop(self) -> None:
        self.drops += 1

    async def _connect(self, transport: BleakTransport, device: str = "CS108") -> str:
        return await transport.connect(_selector(device), on_receive=self.received.append, on_disconnect=self._drop)

    async def test_connect_relay_and_disconnect(self) -> None:
        transport = BleakTransport(adapter="hci1", client_factory=FakeBleakClient)
        with patch("blebridge.transport.find_device", _found):
            name = await self._connect(transport)

        self.assertEqual(name, "CS108-1")
        client = FakeBleakClient.instances[0]
        self.assertEqual(client.device, "ble-device")
        self.assertEqual(client.kwargs["adapter"], "hci1")

        client.notify_handler(None, bytearray(b"\x01\x02"))
        self.assertEqual(self.received, [b"\x01\x02"])

        await transport.send(b"\xa7\xb3")
        self.assertEqual(client.writes, [(WRITE, b"\xa7\xb3", False)])

        pressure = transport.pressure()
        self.assertEqual(pressure.listener_count, 2)
        self.assertEqual(pressure.tracked_peripheral_count, 4)

        await transport.disconnect()
        self.assertTrue(client.disconnected)
        # our own disconnect must not look like a peripheral drop
        self.assertEqual(self.drops, 0)
        self.assertEqual(transport.pressure().listener_count, 0)
        with self.assertRaises(HardwareError):
            await transport.send(b"\x00")

    async def test_peripheral_drop_invokes_callback_once(self) -> None:
        transport = BleakTransport(client_factory=FakeBleakClient)
        with patch("blebridge.transport.find_device", _found):
            await self._connect(transport)
        client = FakeBleakClient.instances[0]
        client.disconnected_callback(client)
        client.disconnected_callback(client)
        self.assertEqual(self.drops, 1)

    async def test_missing_device(self) -> None:
        transport = BleakTransport(client_factory=FakeBleakClient)
        with patch("blebridge.transport.find_device", _not_found):
            with self.assertRaises(HardwareError) as ctx:
                await self._connect(transport, "CS999")
        self.assertEqual(str(ctx.exception), "No device found with prefix: CS999")
        self.assertEqual(FakeBleakClient.instances, [])

    async def test_missing_characteristic_closes_client(self) -> None:
        FakeBleakClient.characteristics = [WRITE]
        transport = BleakTransport(client_factory=FakeBleakClient)
        with patch("blebridge.transport.find_device", _found):
            with self.assertRaises(HardwareError) as ctx:
                await self._connect(transport)
        self.assertIn("(notify) not found", str(ctx.exception))
        self.assertTrue(FakeBleakClient.instances[0].disconnected)
        self.assertEqual(transport.pressure().listener_count, 0)

    async def test_connect_error_is_translated(self) -> None:
        error = OSError("8")
        FakeBleakClient.fail_connect = error
        transport = BleakTransport(client_factory=FakeBleakClient)
        with patch("blebridge.transport.find_device", _found):
            with self.assertRaises(HardwareError) as ctx:
                await self._connect(transport)
        self.assertEqual(str(ctx.exception), "Connection Timeout")
