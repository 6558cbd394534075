"""Backups — point-in-time file snapshots used exclusively for rollback.

A backup is a path → content mapping plus metadata. Ids are time-ordered,
so the most recent backup is simply the one with the greatest id. The
store prunes oldest-first once it holds more than `retention` backups and
can mirror itself to a directory as one JSON document per backup.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Literal

from pydantic import BaseModel, Field, ValidationError

from morphos.evolution.models import PerformanceMetrics
from morphos.exceptions import BackupError
from morphos.types import BackupId, MutationId, time_ordered_id, utcnow

_logger = logging.getLogger(__name__)


class BackupMetadata(BaseModel):
    mutations_count: int = 0
    performance_baseline: PerformanceMetrics | None = None
    system_state: dict[str, Any] = Field(default_factory=dict)
    scope: Literal["system", "mutation"] = "system"
    mutation_id: MutationId | None = None


class BackupState(BaseModel):
    """Full-fidelity snapshot. `missing` lists paths that did not exist."""

    id: BackupId = Field(default_factory=lambda: time_ordered_id("backup"))
    timestamp: datetime = Field(default_factory=utcnow)
    files: dict[str, str] = Field(default_factory=dict)
    missing: list[str] = Field(default_factory=list)
    metadata: BackupMetadata = Field(default_factory=BackupMetadata)

    def expected(self, path: str) -> str | None:
        """Content this backup says `path` should have (None = absent)."""
        return self.files.get(path)


class BackupStore:
    """Retention-bounded backup storage with optional JSON persistence."""

    def __init__(self, retention: int = 10, directory: Path | None = None) -> None:
        if retention < 1:
            raise ValueError("Backup retention must be at least 1")
        self._retention = retention
        self._directory = Path(directory) if directory else None
        self._backups: dict[str, BackupState] = {}

    @property
    def retention(self) -> int:
        return self._retention

    @property
    def directory(self) -> Path | None:
        return self._directory

    async def set_retention(self, retention: int) -> None:
        if retention < 1:
            raise ValueError("Backup retention must be at least 1")
        self._retention = retention
        await self._prune()

    async def add(self, backup: BackupState) -> BackupState:
        """Store a backup, persist it if configured, and prune to retention."""
        if backup.id in self._backups:
            raise BackupError(f"Backup {backup.id} already exists")
        if self._directory:
            try:
                await asyncio.to_thread(self._persist, backup)
            except OSError as e:
                raise BackupError(f"Failed to persist backup {backup.id}: {e}") from e
        self._backups[backup.id] = backup
        await self._prune()
        return backup

    def get(self, backup_id: str) -> BackupState | None:
        return self._backups.get(backup_id)

    def latest(self) -> BackupState | None:
        if not self._backups:
            return None
        return self._backups[max(self._backups)]

    def ids(self) -> list[str]:
        """Backup ids, oldest first."""
        return sorted(self._backups)

    def list(self) -> list[BackupState]:
        return [self._backups[i] for i in self.ids()]

    def __len__(self) -> int:
        return len(self._backups)

    async def load(self) -> int:
        """Load persisted backups from the directory. Returns how many loaded."""
        if not self._directory:
            return 0
        loaded = await asyncio.to_thread(self._read_all)
        for backup in loaded:
            self._backups.setdefault(backup.id, backup)
        await self._prune()
        return len(loaded)

    async def check_writable(self) -> bool:
        """Backup subsystem health: the directory (if any) accepts writes."""
        if not self._directory:
            return True
        return await asyncio.to_thread(self._probe_directory)

    # ── Internals ────────────────────────────────────────────────

    async def _prune(self) -> None:
        for backup_id in self.ids()[: max(0, len(self._backups) - self._retention)]:
            del self._backups[backup_id]
            if self._directory:
                await asyncio.to_thread(self._path(backup_id).unlink, True)
            _logger.debug("Pruned backup %s", backup_id)

    def _path(self, backup_id: str) -> Path:
        assert self._directory is not None
        return self._directory / f"{backup_id}.json"

    def _persist(self, backup: BackupState) -> None:
        self._directory.mkdir(parents=True, exist_ok=True)
        tmp = self._path(backup.id).with_suffix(".tmp")
        tmp.write_text(backup.model_dump_json(), encoding="utf-8")
        tmp.replace(self._path(backup.id))

    def _read_all(self) -> list[BackupState]:
        if not self._directory.is_dir():
            return []
        backups = []
        for path in sorted(self._directory.glob("*.json")):
            try:
                backups.append(BackupState.model_validate_json(path.read_text(encoding="utf-8")))
            except (OSError, ValidationError) as e:
                _logger.warning("Skipping unreadable backup %s: %s", path.name, e)
        return backups

    def _probe_directory(self) -> bool:
        try:
            self._directory.mkdir(parents=True, exist_ok=True)
            probe = self._directory / ".write_probe"
            probe.write_text("ok", encoding="utf-8")
            probe.unlink()
            return True
        except OSError:
            return False
