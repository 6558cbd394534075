"""System probes — host readings the safety checks are decided on."""

from __future__ import annotations

import asyncio
import os
from datetime import datetime
from pathlib import Path

import psutil
from pydantic import BaseModel, Field

from morphos.types import utcnow


class SystemSnapshot(BaseModel):
    cpu_percent: float = 0.0
    memory_percent: float = 0.0
    memory_available_percent: float = 100.0
    disk_free_percent: float = 100.0
    load_per_cpu: float = 0.0
    process_rss_mb: float = 0.0
    captured_at: datetime = Field(default_factory=utcnow)


class SystemThresholds(BaseModel):
    max_cpu_percent: float = 95.0
    max_load_per_cpu: float = 2.0
    min_memory_available_percent: float = 10.0
    min_disk_free_percent: float = 5.0


class SystemProbe:
    """psutil readings for the host the project lives on."""

    def __init__(self, path: Path | str = ".", thresholds: SystemThresholds | None = None) -> None:
        self._path = Path(path)
        self.thresholds = thresholds or SystemThresholds()
        self._process = psutil.Process()

    async def snapshot(self) -> SystemSnapshot:
        return await asyncio.to_thread(self._read)

    def is_stable(self, snap: SystemSnapshot) -> bool:
        return (
            snap.cpu_percent < self.thresholds.max_cpu_percent
            and snap.load_per_cpu < self.thresholds.max_load_per_cpu
        )

    def has_resources(self, snap: SystemSnapshot) -> bool:
        return (
            snap.memory_available_percent >= self.thresholds.min_memory_available_percent
            and snap.disk_free_percent >= self.thresholds.min_disk_free_percent
        )

    def _read(self) -> SystemSnapshot:
        vm = psutil.virtual_memory()
        disk = psutil.disk_usage(str(self._path.resolve()))
        try:
            load = psutil.getloadavg()[0] / (psutil.cpu_count(logical=True) or 1)
        except (AttributeError, OSError):
            load = 0.0
        return SystemSnapshot(
            cpu_percent=psutil.cpu_percent(interval=None),
            memory_percent=vm.percent,
            memory_available_percent=vm.available / vm.total * 100 if vm.total else 0.0,
            disk_free_percent=disk.free / disk.total * 100 if disk.total else 0.0,
            load_per_cpu=load,
            process_rss_mb=self._process.memory_info().rss / (1024 * 1024),
        )


class StaticSystemProbe(SystemProbe):
    """Always reports the same snapshot."""

    def __init__(
        self,
        snapshot: SystemSnapshot | None = None,
        thresholds: SystemThresholds | None = None,
    ) -> None:
        super().__init__(os.curdir, thresholds)
        self.current = snapshot or SystemSnapshot()

    async def snapshot(self) -> SystemSnapshot:
        return self.current.model_copy()
