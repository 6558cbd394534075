"""Incident log — append-only record of everything the safety layer noticed.

Kept in memory (bounded, newest last) and optionally mirrored to SQLite.
"""

from __future__ import annotations

import asyncio
import json
from datetime import datetime, timedelta
from typing import Any

import aiosqlite
from pydantic import BaseModel, Field

from morphos.types import Severity, new_id, utcnow


class SafetyIncident(BaseModel):
    """A single safety incident."""

    id: str = Field(default_factory=new_id)
    timestamp: datetime = Field(default_factory=utcnow)
    type: str  # "rollback", "rollback_failure", "post_evolution_failure", ...
    severity: Severity = Severity.MEDIUM
    description: str = ""
    details: dict[str, Any] = Field(default_factory=dict)
    resolved: bool = False


class IncidentLog:
    """Bounded incident log, optionally backed by SQLite."""

    def __init__(self, limit: int = 100, db_path: str | None = None) -> None:
        self._limit = limit
        self._db_path = db_path
        self._incidents: list[SafetyIncident] = []
        self._lock = asyncio.Lock()
        self._db: aiosqlite.Connection | None = None

    async def initialize(self) -> None:
        """Open the database and create the incident table if needed."""
        if not self._db_path or self._db is not None:
            return
        self._db = await aiosqlite.connect(self._db_path)
        await self._db.execute("""
            CREATE TABLE IF NOT EXISTS safety_incidents (
                id TEXT PRIMARY KEY,
                timestamp TEXT NOT NULL,
                type TEXT NOT NULL,
                severity TEXT NOT NULL,
                description TEXT,
                details TEXT,
                resolved INTEGER DEFAULT 0
            )
        """)
        await self._db.commit()

    async def close(self) -> None:
        if self._db is not None:
            await self._db.close()
            self._db = None

    async def record(self, incident: SafetyIncident) -> SafetyIncident:
        """Append an incident (immutable once recorded)."""
        async with self._lock:
            self._incidents.append(incident)
            if len(self._incidents) > self._limit:
                self._incidents = self._incidents[-self._limit:]
            if self._db:
                await self._db.execute(
                    """INSERT INTO safety_incidents
                       (id, timestamp, type, severity, description, details, resolved)
                       VALUES (?, ?, ?, ?, ?, ?, ?)""",
                    (
                        incident.id,
                        incident.timestamp.isoformat(),
                        incident.type,
                        incident.severity.value,
                        incident.description,
                        json.dumps(incident.details, default=str),
                        int(incident.resolved),
                    ),
                )
                await self._db.commit()
        return incident

    async def log(
        self,
        type: str,
        description: str,
        severity: Severity = Severity.MEDIUM,
        **details: Any,
    ) -> SafetyIncident:
        """Convenience: build and record an incident."""
        return await self.record(
            SafetyIncident(type=type, description=description, severity=severity, details=details)
        )

    def recent(self, hours: float = 24.0) -> list[SafetyIncident]:
        """Incidents from the last `hours`, oldest first."""
        cutoff = utcnow() - timedelta(hours=hours)
        return [i for i in self._incidents if i.timestamp >= cutoff]

    def query(self, type: str = "", limit: int = 50) -> list[SafetyIncident]:
        """Most recent first, optionally filtered by type."""
        results = self._incidents
        if type:
            results = [i for i in results if i.type == type]
        return list(reversed(results))[:limit]

    async def load(self, limit: int = 100) -> list[SafetyIncident]:
        """Read persisted incidents back, most recent first."""
        if not self._db:
            return self.query(limit=limit)
        cursor = await self._db.execute(
            """SELECT id, timestamp, type, severity, description, details, resolved
               FROM safety_incidents ORDER BY timestamp DESC LIMIT ?""",
            (limit,),
        )
        rows = await cursor.fetchall()
        return [
            SafetyIncident(
                id=row[0],
                timestamp=datetime.fromisoformat(row[1]),
                type=row[2],
                severity=Severity(row[3]),
                description=row[4] or "",
                details=json.loads(row[5] or "{}"),
                resolved=bool(row[6]),
            )
            for row in rows
        ]

    def __len__(self) -> int:
        return len(self._incidents)

    def __repr__(self) -> str:
        return f"IncidentLog(incidents={len(self._incidents)})"
