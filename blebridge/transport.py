"""Byte-stream transports the bridge drives; the bleak one talks to real hardware."""
from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import dataclass
from typing import Any, Callable, Optional, Protocol, TYPE_CHECKING, TypeAlias

from blebridge.errors import HardwareError, hardware_error_from
from blebridge.pressure import PressureSample
from blebridge.scanner import Scanner, find_device
from blebridge.uuids import normalize_uuid

logger = logging.getLogger(__name__)

try:  # pragma: no cover - bleak optional at runtime
	from bleak import BleakClient
except Exception:  # pragma: no cover
	BleakClient = None  # type: ignore

if TYPE_CHECKING:  # pragma: no cover - typing hints
	from bleak import BleakClient as _BleakClientType
else:  # pragma: no cover - runtime fallback
	_BleakClientType = Any

BleakClientType: TypeAlias = _BleakClientType
ReceiveCallback = Callable[[bytes], None]
DisconnectCallback = Callable[[], None]


@dataclass(slots=True, frozen=True)
class DeviceSelector:
	"""Which peripheral to open and which characteristics carry the stream."""

	device: str
	service: str
	write: str
	notify: str
	scan_timeout: float = 15.0


class Transport(Protocol):
	async def connect(
		self,
		selector: DeviceSelector,
		*,
		on_receive: ReceiveCallback,
		on_disconnect: DisconnectCallback,
	) -> str:
		"""Open the device and return its display name."""
		...

	async def send(self, data: bytes) -> None:
		...

	async def disconnect(self) -> None:
		...

	def pressure(self) -> PressureSample:
		...


class BleakTransport:
	"""Scan, connect and relay through :class:`bleak.BleakClient`."""

	def __init__(
		self,
		*,
		adapter: Optional[str] = None,
		connect_timeout: float = 15.0,
		client_factory: Optional[Callable[..., BleakClientType]] = None,
	) -> None:
		self.adapter = adapter
		self.connect_timeout = connect_timeout
		self._client_factory = client_factory
		self._client: Optional[BleakClientType] = None
		self._selector: Optional[DeviceSelector] = None
		self._on_disconnect: Optional[DisconnectCallback] = None
		self._closing = False
		self._notifying = False
		self._tracked_peripherals = 0
		self._lock = asyncio.Lock()

	# ---------------------------------------------------------------------
	# Lifecycle helpers
	# ---------------------------------------------------------------------
	async def connect(
		self,
		selector: DeviceSelector,
		*,
		on_receive: ReceiveCallback,
		on_disconnect: DisconnectCallback,
	) -> str:
		factory = self._client_factory or BleakClient
		if factory is None:
			raise RuntimeError("bleak is required to use BleakTransport")

		async with self._lock:
			if self._client is not None:
				raise HardwareError("Transport already has an open connection")

			result, seen = await find_device(
				selector.device,
				service_uuid=selector.service,
				timeout=selector.scan_timeout,
				adapter=self.adapter,
			)
			self._tracked_peripherals = seen
			if result is None:
				raise HardwareError(f"No device found with prefix: {selector.device}")

			self._closing = False
			self._selector = selector
			self._on_disconnect = on_disconnect
			client = factory(
				result.device if result.device is not None else result.address,
				disconnected_callback=self._handle_disconnect,
				adapter=self.adapter,
				timeout=self.connect_timeout,
			)
			self._client = client

			try:
				await client.connect()
				self._check_gatt(client, selector)
				await client.start_notify(normalize_uuid(selector.notify), self._wrap_receive(on_receive))
				self._notifying = True
			except Exception as exc:
				logger.warning("Connection to %s failed: %s", result.display_name, exc)
				with contextlib.suppress(Exception):
					await self._close_client()
				raise hardware_error_from(exc) from exc

			logger.info("Connected to %s (%s)", result.display_name, result.address)
			return result.display_name

	async def send(self, data: bytes) -> None:
		client, selector = self._client, self._selector
		if client is None or selector is None:
			raise HardwareError("Transport is not connected")
		try:
			await client.write_gatt_char(normalize_uuid(selector.write), bytes(data), response=False)
		except Exception as exc:
			raise hardware_error_from(exc) from exc

	async def disconnect(self) -> None:
		async with self._lock:
			await self._close_client()

	def pressure(self) -> PressureSample:
		listeners = 0
		if self._client is not None:
			listeners += 1  # disconnected callback
		if self._notifying:
			listeners += 1
		return PressureSample(
			listener_count=listeners,
			tracked_peripheral_count=self._tracked_peripherals,
			active_scan_count=Scanner.active_scans(),
		)

	# ------------------------------------------------------------------
	# Internals
	# ------------------------------------------------------------------
	def _check_gatt(self, client: BleakClientType, selector: DeviceSelector) -> None:
		services = getattr(client, "services", None)
		if services is None:
			return
		service = services.get_service(normalize_uuid(selector.service))
		if service is None:
			raise HardwareError(f"Service {selector.service} not found")
		for role, uuid in (("write", selector.write), ("notify", selector.notify)):
			if service.get_characteristic(normalize_uuid(uuid)) is None:
				raise HardwareError(f"Characteristic {uuid} ({role}) not found")

	def _wrap_receive(self, on_receive: ReceiveCallback) -> Callable[[Any, bytearray], None]:
		def _wrapped(_: Any, data: bytearray) -> None:
			try:
				on_receive(bytes(data))
			except Exception:  # pragma: no cover - user callback failure
				logger.exception("Receive callback raised")

		return _wrapped

	def _handle_disconnect(self, _: Any) -> None:
		callback = self._on_disconnect
		if self._closing or callback is None:
			return
		logger.warning("Peripheral dropped the connection")
		self._on_disconnect = None
		try:
			callback()
		except Exception:  # pragma: no cover - user callback failure
			logger.exception("Disconnect callback raised")

	async def _close_client(self) -> None:
		client, selector = self._client, self._selector
		self._closing = True
		try:
			if client is None:
				return
			if self._notifying and selector is not None:
				with contextlib.suppress(Exception):
					await client.stop_notify(normalize_uuid(selector.notify))
			await client.disconnect()
		finally:
			self._client = None
			self._selector = None
			self._notifying = False
			self._on_disconnect = None


__all__ = [
	"DeviceSelector",
	"Transport",
	"BleakTransport",
]
