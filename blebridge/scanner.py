"""BLE discovery used to resolve a device-selection prefix to a peripheral."""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, TYPE_CHECKING, TypeAlias

from blebridge.uuids import normalize_uuid

logger = logging.getLogger(__name__)

try:  # pragma: no cover - bleak is optional in some environments
	from bleak import BleakScanner
except Exception:  # pragma: no cover
	BleakScanner = None  # type: ignore

if TYPE_CHECKING:  # pragma: no cover - typing helper only
	from bleak.backends.device import BLEDevice as _BLEDevice
	from bleak.backends.scanner import AdvertisementData as _AdvertisementData
else:  # pragma: no cover - runtime fallback when bleak unavailable
	_BLEDevice = Any
	_AdvertisementData = Any

BLEDevice: TypeAlias = _BLEDevice
AdvertisementData: TypeAlias = _AdvertisementData


@dataclass(slots=True)
class ScanResult:
	"""Represents a single BLE advertisement snapshot."""

	address: str
	name: Optional[str]
	rssi: Optional[int]
	uuids: tuple[str, ...] = ()
	device: Any = field(default=None, repr=False, compare=False)

	@classmethod
	def from_bleak(
		cls,
		device: BLEDevice,
		advertisement: AdvertisementData | None = None,
	) -> "ScanResult":
		uuids: Sequence[str] = ()
		name = device.name or None
		rssi = getattr(device, "rssi", None)
		if advertisement is not None:
			uuids = advertisement.service_uuids or ()
			name = getattr(advertisement, "local_name", None) or name
			if advertisement.rssi is not None:
				rssi = advertisement.rssi
		return cls(
			address=device.address,
			name=name,
			rssi=rssi,
			uuids=tuple(str(uuid) for uuid in uuids),
			device=device,
		)

	@property
	def display_name(self) -> str:
		return self.name or self.address

	def to_dict(self) -> Dict[str, Any]:
		return {
			"address": self.address,
			"name": self.name,
			"rssi": self.rssi,
			"uuids": list(self.uuids),
		}


@dataclass(slots=True)
class ScannerConfig:
	"""Configuration bundle used by :class:`Scanner`."""

	name_prefix: str = ""
	service_uuids: Sequence[str] | None = None
	adapter: Optional[str] = None
	max_devices: int | None = None
	detection_kwargs: Dict[str, Any] = field(default_factory=dict)
	_service_index: Optional[frozenset[str]] = field(init=False, repr=False, default=None)

	def __post_init__(self) -> None:
		if self.max_devices is not None and self.max_devices <= 0:
			raise ValueError("max_devices must be positive when provided")
		if self.service_uuids:
			self._service_index = frozenset(normalize_uuid(uuid) for uuid in self.service_uuids)

	def allows(self, device: BLEDevice, advertisement: AdvertisementData | None) -> bool:
		if self.name_prefix:
			names = [device.name or "", device.address or ""]
			if advertisement is not None and getattr(advertisement, "local_name", None):
				names.append(advertisement.local_name)
			prefix = self.name_prefix.lower()
			if not any(name.lower().startswith(prefix) for name in names):
				return False

		if self._service_index:
			observed: set[str] = set()
			if advertisement is not None and advertisement.service_uuids:
				for uuid in advertisement.service_uuids:
					try:
						observed.add(normalize_uuid(uuid))
					except ValueError:
						continue
			if not observed.issuperset(self._service_index):
				return False

		return True

	def bleak_kwargs(self) -> Dict[str, Any]:
		kwargs = dict(self.detection_kwargs)
		if self.service_uuids and "service_uuids" not in kwargs:
			kwargs["service_uuids"] = [normalize_uuid(uuid) for uuid in self.service_uuids]
		if self.adapter and "adapter" not in kwargs:
			kwargs["adapter"] = self.adapter
		return kwargs


class Scanner:
	"""Stateful BLE scanner that stops as soon as enough devices match."""

	_active = 0

	def __init__(self, config: ScannerConfig | None = None) -> None:
		self.config = config or ScannerConfig()
		self._results: Dict[str, ScanResult] = {}
		self._seen: set[str] = set()
		self._stop_event: Optional[asyncio.Event] = None

	@classmethod
	def active_scans(cls) -> int:
		return cls._active

	@property
	def seen_count(self) -> int:
		"""Distinct peripherals observed during the last run, matching or not."""
		return len(self._seen)

	async def run(self, timeout: float) -> List[ScanResult]:
		if BleakScanner is None:
			logger.warning("bleak is not installed; returning empty scan results")
			await asyncio.sleep(min(timeout, 0.1))
			return []

		self._results.clear()
		self._seen.clear()
		self._stop_event = asyncio.Event()

		scanner = BleakScanner(detection_callback=self._on_detection, **self.config.bleak_kwargs())
		Scanner._active += 1
		try:
			async with scanner:
				try:
					await asyncio.wait_for(self._stop_event.wait(), timeout=timeout)
				except asyncio.TimeoutError:
					pass
		except Exception as exc:  # pragma: no cover - hardware specific
			logger.exception("BLE scan failed: %s", exc)
			raise
		finally:
			Scanner._active -= 1

		return self.results()

	def results(self) -> List[ScanResult]:
		return list(self._results.values())

	def _on_detection(self, device: BLEDevice, advertisement: AdvertisementData | None) -> None:
		self._seen.add(device.address)
		if not self.config.allows(device, advertisement):
			return

		result = ScanResult.from_bleak(device, advertisement)
		self._results[result.address] = result

		if (
			self.config.max_devices is not None
			and len(self._results) >= self.config.max_devices
			and self._stop_event is not None
			and not self._stop_event.is_set()
		):
			self._stop_event.set()


async def find_device(
	name_prefix: str,
	*,
	service_uuid: Optional[str] = None,
	timeout: float = 15.0,
	adapter: Optional[str] = None,
) -> tuple[Optional[ScanResult], int]:
	"""Scan until the first matching device; returns it with the number of peripherals seen."""
	config = ScannerConfig(
		name_prefix=name_prefix,
		service_uuids=[service_uuid] if service_uuid else None,
		adapter=adapter,
		max_devices=1,
	)
	scanner = Scanner(config)
	results = await scanner.run(timeout)
	return (results[0] if results else None), scanner.seen_count


__all__ = [
	"ScanResult",
	"ScannerConfig",
	"Scanner",
	"find_device",
]
