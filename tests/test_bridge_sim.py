"""Lifecycle simulations against the mock transport."""
from __future__ import annotations

import asyncio
import unittest
from typing import List

from blebridge.bridge import Bridge, ConnectionState, SessionParams
from blebridge.errors import BridgeError, BusyError, CoolingDownError, HardwareError, ValidationError
from blebridge.mock import BATTERY_RESPONSE, MockTransport
from blebridge.pressure import CooldownPolicy, PressureSample, SignalPenalty

BATTERY_COMMAND = bytes([0xA7, 0xB3, 0x02, 0xD9, 0x82, 0x37, 0x00, 0x00, 0xA0, 0x00])


def _params(device: str = "CS108", session_id: str | None = None) -> SessionParams:
    return SessionParams(device=device, service="9800", write="9900", notify="9901", session_id=session_id)


class _BrokenTeardown(MockTransport):
    async def disconnect(self) -> None:
        self.disconnect_calls += 1
        raise RuntimeError("adapter wedged")


class _HangingTeardown(MockTransport):
    async def disconnect(self) -> None:
        self.disconnect_calls += 1
        await asyncio.sleep(10)


class _Session:
    def __init__(self) -> None:
        self.received: List[bytes] = []
        self.disconnects = 0

    def on_receive(self, data: bytes) -> None:
        self.received.append(data)

    def on_disconnect(self) -> None:
        self.disconnects += 1


class BridgeSimulationTest(unittest.IsolatedAsyncioTestCase):
    def _bridge(self, transport: MockTransport | None = None, **kwargs) -> Bridge:
        self.transport = transport or MockTransport(connect_delay=0.01, disconnect_delay=0.01, response_delay=0.01)
        kwargs.setdefault("policy", CooldownPolicy(base=0.05, maximum=0.5))
        kwargs.setdefault("connect_timeout", 1.0)
        kwargs.setdefault("teardown_timeout", 0.2)
        return Bridge(self.transport, **kwargs)

    async def _open(self, bridge: Bridge, session: _Session, params: SessionParams | None = None) -> str:
        return await bridge.open_session(
            params or _params(),
            on_receive=session.on_receive,
            on_disconnect=session.on_disconnect,
        )

    async def test_full_lifecycle(self) -> None:
        bridge = self._bridge()
        session = _Session()
        self.assertTrue(bridge.is_free())

        token = await self._open(bridge, session)
        self.assertEqual(bridge.state, ConnectionState.CONNECTED)
        self.assertEqual(bridge.device_name, "CS108-MOCK-12345")
        self.assertFalse(bridge.mutex.is_free())
        self.assertTrue(bridge.mutex.is_owner(token))

        await bridge.send(token, BATTERY_COMMAND)
        await asyncio.sleep(0.05)
        self.assertEqual(session.received, [BATTERY_RESPONSE])
        kinds = [entry.kind for entry in bridge.logs.query("1h", 1000)]
        self.assertIn("TX", kinds)
        self.assertIn("RX", kinds)

        await bridge.close_session(token, "test done")
        self.assertEqual(bridge.state, ConnectionState.COOLING_DOWN)
        self.assertIsNone(bridge.device_name)
        self.assertGreater(bridge.cooldown_remaining(), 0.0)
        self.assertFalse(bridge.mutex.is_free())

        await bridge.wait_idle(timeout=2.0)
        self.assertEqual(bridge.state, ConnectionState.IDLE)
        self.assertTrue(bridge.mutex.is_free())
        self.assertEqual(self.transport.disconnect_calls, 1)

    async def test_second_session_is_rejected_as_busy(self) -> None:
        bridge = self._bridge()
        token = await self._open(bridge, _Session())
        with self.assertRaises(BusyError):
            await self._open(bridge, _Session())
        self.assertTrue(bridge.mutex.is_owner(token))
        self.assertEqual(self.transport.connect_calls, 1)
        await bridge.shutdown()

    async def test_disconnecting_and_cooldown_reject_as_cooling_down(self) -> None:
        bridge = self._bridge(MockTransport(connect_delay=0.01, disconnect_delay=0.1))
        token = await self._open(bridge, _Session())

        closing = asyncio.create_task(bridge.close_session(token))
        await asyncio.sleep(0)
        self.assertEqual(bridge.state, ConnectionState.DISCONNECTING)
        with self.assertRaises(CoolingDownError):
            await self._open(bridge, _Session())

        await closing
        self.assertEqual(bridge.state, ConnectionState.COOLING_DOWN)
        with self.assertRaises(CoolingDownError):
            await self._open(bridge, _Session())

        await bridge.wait_idle(timeout=2.0)
        token = await self._open(bridge, _Session())
        self.assertEqual(bridge.state, ConnectionState.CONNECTED)
        await bridge.shutdown()

    async def test_validation_happens_before_any_state_change(self) -> None:
        bridge = self._bridge()
        with self.assertRaises(ValidationError) as ctx:
            await self._open(bridge, _Session(), SessionParams(device="CS108"))
        self.assertIn("service", str(ctx.exception))
        self.assertIn("write", str(ctx.exception))
        self.assertIn("notify", str(ctx.exception))

        with self.assertRaises(ValidationError):
            await self._open(bridge, _Session(), SessionParams(device="CS108", service="zz", write="9900", notify="9901"))

        self.assertTrue(bridge.is_free())
        self.assertEqual(self.transport.connect_calls, 0)

    async def test_connect_failure_releases_mutex(self) -> None:
        bridge = self._bridge()
        with self.assertRaises(HardwareError) as ctx:
            await self._open(bridge, _Session(), _params("NONEXISTENT"))
        self.assertIn("No device found", str(ctx.exception))
        self.assertEqual(bridge.state, ConnectionState.IDLE)
        self.assertTrue(bridge.mutex.is_free())
        self.assertEqual(bridge.metrics.snapshot()["failed_connections"], 1)

    async def test_connect_timeout_force_releases(self) -> None:
        bridge = self._bridge(MockTransport(connect_delay=5.0, disconnect_delay=0.0), connect_timeout=0.05)
        with self.assertRaises(HardwareError) as ctx:
            await self._open(bridge, _Session())
        self.assertIn("timed out", str(ctx.exception))
        self.assertEqual(bridge.state, ConnectionState.IDLE)
        self.assertTrue(bridge.mutex.is_free())
        self.assertEqual(self.transport.disconnect_calls, 1)

    async def test_teardown_error_still_cools_down_and_releases(self) -> None:
        bridge = self._bridge(_BrokenTeardown(connect_delay=0.01))
        token = await self._open(bridge, _Session())
        await bridge.close_session(token)
        self.assertEqual(bridge.state, ConnectionState.COOLING_DOWN)
        await bridge.wait_idle(timeout=2.0)
        self.assertTrue(bridge.mutex.is_free())

    async def test_teardown_timeout_forces_progress(self) -> None:
        bridge = self._bridge(_HangingTeardown(connect_delay=0.01), teardown_timeout=0.05)
        token = await self._open(bridge, _Session())
        await bridge.close_session(token)
        self.assertEqual(bridge.state, ConnectionState.COOLING_DOWN)
        self.assertTrue(bridge.recovering)
        self.assertEqual(bridge.metrics.snapshot()["teardown_timeouts"], 1)
        await bridge.wait_idle(timeout=2.0)
        self.assertTrue(bridge.mutex.is_free())
        self.assertFalse(bridge.recovering)

    async def test_close_session_is_idempotent(self) -> None:
        bridge = self._bridge()
        token = await self._open(bridge, _Session())
        await asyncio.gather(bridge.close_session(token), bridge.close_session(token))
        await bridge.close_session(token)
        await bridge.close_session("someone-else")
        self.assertEqual(self.transport.disconnect_calls, 1)
        await bridge.wait_idle(timeout=2.0)

    async def test_hardware_drop_notifies_session_and_tears_down(self) -> None:
        bridge = self._bridge()
        session = _Session()
        await self._open(bridge, session)

        self.transport.simulate_disconnect()
        self.assertEqual(session.disconnects, 1)
        self.assertEqual(bridge.state, ConnectionState.DISCONNECTING)
        await bridge.wait_idle(timeout=2.0)
        self.assertTrue(bridge.mutex.is_free())
        self.assertTrue(bridge.logs.search("device disconnected", 5))

    async def test_send_requires_active_token(self) -> None:
        bridge = self._bridge()
        token = await self._open(bridge, _Session())
        with self.assertRaises(BusyError):
            await bridge.send("stale", b"\x01")
        await bridge.close_session(token)
        with self.assertRaises(BusyError):
            await bridge.send(token, b"\x01")
        await bridge.wait_idle(timeout=2.0)

    async def test_force_cleanup_returns_to_idle(self) -> None:
        bridge = self._bridge(policy=CooldownPolicy(base=5.0, maximum=10.0))
        session = _Session()
        await self._open(bridge, session)

        self.assertTrue(await bridge.force_cleanup("stuck"))
        self.assertEqual(bridge.state, ConnectionState.IDLE)
        self.assertTrue(bridge.mutex.is_free())
        self.assertEqual(session.disconnects, 1)
        self.assertEqual(bridge.cooldown_remaining(), 0.0)

    async def test_cooldown_scales_with_pressure(self) -> None:
        transport = MockTransport(
            connect_delay=0.01,
            disconnect_delay=0.0,
            pressure=PressureSample(active_scan_count=2),
        )
        policy = CooldownPolicy(base=0.05, maximum=0.5, scans=SignalPenalty(threshold=0, step=0.1))
        bridge = self._bridge(transport, policy=policy)
        token = await self._open(bridge, _Session())
        await bridge.close_session(token)
        self.assertAlmostEqual(bridge.metrics.snapshot()["last_cooldown"], 0.25)
        await bridge.wait_idle(timeout=2.0)

    async def test_reused_session_id_counts_reconnection(self) -> None:
        bridge = self._bridge()
        for _ in range(2):
            token = await self._open(bridge, _Session(), _params(session_id="suite-1"))
            await bridge.close_session(token)
            await bridge.wait_idle(timeout=2.0)
        snapshot = bridge.metrics.snapshot()
        self.assertEqual(snapshot["total_reconnections"], 1)
        self.assertEqual(snapshot["reconnections_per_session"], {"suite-1": 1})

    async def test_shutdown_during_connect_aborts_cleanly(self) -> None:
        bridge = self._bridge(MockTransport(connect_delay=0.2, disconnect_delay=0.01))
        opening = asyncio.create_task(self._open(bridge, _Session()))
        await asyncio.sleep(0.05)
        self.assertEqual(bridge.state, ConnectionState.CONNECTING)

        await bridge.shutdown()

        with self.assertRaises(BridgeError) as ctx:
            await opening
        self.assertEqual(str(ctx.exception), "Bridge is shutting down")
        self.assertEqual(bridge.state, ConnectionState.IDLE)
        self.assertTrue(bridge.mutex.is_free())
        self.assertFalse(self.transport.connected)
        # the connect must not complete later behind our back
        await asyncio.sleep(0.25)
        self.assertFalse(self.transport.connected)
        self.assertEqual(bridge.state, ConnectionState.IDLE)

    async def test_cancelled_open_releases_everything(self) -> None:
        bridge = self._bridge(MockTransport(connect_delay=0.2, disconnect_delay=0.01))
        opening = asyncio.create_task(self._open(bridge, _Session()))
        await asyncio.sleep(0.05)
        opening.cancel()
        with self.assertRaises(asyncio.CancelledError):
            await opening
        await asyncio.sleep(0.25)
        self.assertEqual(bridge.state, ConnectionState.IDLE)
        self.assertTrue(bridge.mutex.is_free())
        self.assertFalse(self.transport.connected)

    async def test_health_does_not_touch_mutex(self) -> None:
        bridge = self._bridge()
        frame = bridge.health()
        self.assertEqual(frame["type"], "health")
        self.assertTrue(frame["free"])
        self.assertTrue(bridge.mutex.is_free())


if __name__ == "__main__":
    unittest.main()
