"""Performance probes — where the loop gets its measurements from.

The pipeline never invents numbers; it asks a probe. StaticPerformanceProbe
replays configured readings (tests, dry runs). ProcessPerformanceProbe
samples the current process with psutil.
"""

from __future__ import annotations

import time
from abc import ABC, abstractmethod

import psutil

from morphos.evolution.models import PerformanceCharacteristics, PerformanceMetrics


class PerformanceProbe(ABC):
    @abstractmethod
    async def measure(self) -> PerformanceMetrics:
        """System-wide metrics used as the improvement baseline."""

    @abstractmethod
    async def profile(self, component: str) -> PerformanceCharacteristics | None:
        """Measured profile of one component, or None if unknown."""


class StaticPerformanceProbe(PerformanceProbe):
    """Returns pre-configured readings.

    `readings` are consumed in order by measure(); the last one repeats.
    """

    def __init__(
        self,
        readings: list[PerformanceMetrics] | None = None,
        profiles: dict[str, PerformanceCharacteristics] | None = None,
    ) -> None:
        self._readings = list(readings or [PerformanceMetrics()])
        self._profiles = dict(profiles or {})
        self._index = 0

    async def measure(self) -> PerformanceMetrics:
        reading = self._readings[min(self._index, len(self._readings) - 1)]
        self._index += 1
        return reading.model_copy()

    async def profile(self, component: str) -> PerformanceCharacteristics | None:
        return self._profiles.get(component)

    def set_profile(self, component: str, profile: PerformanceCharacteristics) -> None:
        self._profiles[component] = profile


class ProcessPerformanceProbe(PerformanceProbe):
    """Samples the running process.

    Latency is the wall time of a calibration workload, throughput its
    inverse; errors are counted through record_operation().
    """

    def __init__(self, calibration_iterations: int = 20_000) -> None:
        self._process = psutil.Process()
        self._iterations = calibration_iterations
        self._operations = 0
        self._errors = 0

    def record_operation(self, failed: bool = False) -> None:
        self._operations += 1
        if failed:
            self._errors += 1

    async def measure(self) -> PerformanceMetrics:
        start = time.perf_counter()
        total = 0
        for i in range(self._iterations):
            total += i * i
        elapsed_ms = max((time.perf_counter() - start) * 1000, 1e-3)

        memory_mb = self._process.memory_info().rss / (1024 * 1024)
        error_rate = (self._errors + 1) / (self._operations + 100)
        return PerformanceMetrics(
            latency_ms=elapsed_ms,
            throughput_rps=1000.0 / elapsed_ms,
            memory_mb=max(memory_mb, 1e-3),
            error_rate=error_rate,
            cpu_percent=self._process.cpu_percent(interval=None),
        )

    async def profile(self, component: str) -> PerformanceCharacteristics | None:
        return None
