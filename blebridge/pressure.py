"""Resource-pressure sampling and the post-disconnect cooldown policy."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Dict, Optional, Protocol

if TYPE_CHECKING:  # pragma: no cover - typing only
    from blebridge.metrics import MetricsTracker

logger = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class PressureSample:
    """Host transport counters read at a single instant."""

    listener_count: int = 0
    tracked_peripheral_count: int = 0
    active_scan_count: int = 0

    def __post_init__(self) -> None:
        for name in ("listener_count", "tracked_peripheral_count", "active_scan_count"):
            if getattr(self, name) < 0:
                raise ValueError(f"{name} must not be negative")

    def as_dict(self) -> Dict[str, int]:
        return {
            "listener_count": self.listener_count,
            "tracked_peripheral_count": self.tracked_peripheral_count,
            "active_scan_count": self.active_scan_count,
        }


class PressureSource(Protocol):
    def pressure(self) -> PressureSample:
        ...


class PressureMonitor:
    """Reads fresh counters from the transport whenever asked."""

    def __init__(self, source: PressureSource, *, metrics: Optional["MetricsTracker"] = None) -> None:
        self.source = source
        self.metrics = metrics

    def sample(self) -> Optional[PressureSample]:
        try:
            sample = self.source.pressure()
        except Exception:
            logger.warning("Pressure counters unavailable", exc_info=True)
            return None
        if self.metrics is not None:
            self.metrics.update_pressure(sample)
        return sample


@dataclass(slots=True, frozen=True)
class SignalPenalty:
    """Linear penalty above a free threshold: ``max(0, count - threshold) * step``."""

    threshold: int = 0
    step: float = 0.0

    def __post_init__(self) -> None:
        if self.step < 0:
            raise ValueError("step must not be negative")

    def penalty(self, count: int) -> float:
        return max(0, count - self.threshold) * self.step


@dataclass(slots=True)
class CooldownPolicy:
    """Cooldown = base + the largest per-signal penalty, capped at ``maximum``.

    Taking the maximum rather than the sum keeps correlated counters (a leaked
    listener usually comes with a leaked peripheral) from compounding.
    """

    base: float = 1.0
    maximum: float = 30.0
    listeners: SignalPenalty = field(default_factory=lambda: SignalPenalty(threshold=10, step=0.5))
    peripherals: SignalPenalty = field(default_factory=lambda: SignalPenalty(threshold=10, step=1.0))
    scans: SignalPenalty = field(default_factory=lambda: SignalPenalty(threshold=0, step=2.0))

    def __post_init__(self) -> None:
        if self.base < 0:
            raise ValueError("base cooldown must not be negative")
        self.maximum = max(self.base, self.maximum)

    def penalty(self, sample: PressureSample) -> float:
        worst = max(
            self.listeners.penalty(sample.listener_count),
            self.peripherals.penalty(sample.tracked_peripheral_count),
            self.scans.penalty(sample.active_scan_count),
        )
        return min(worst, self.maximum - self.base)

    def compute(self, sample: Optional[PressureSample]) -> float:
        if sample is None:
            return self.maximum
        return self.base + self.penalty(sample)


__all__ = [
    "PressureSample",
    "PressureSource",
    "PressureMonitor",
    "SignalPenalty",
    "CooldownPolicy",
]
