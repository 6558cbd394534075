"""Tests for the incident log."""

from datetime import timedelta

import pytest
import pytest_asyncio

from morphos.safety.incidents import IncidentLog, SafetyIncident
from morphos.types import Severity, utcnow


@pytest_asyncio.fixture
async def persistent_log(tmp_path):
    log = IncidentLog(db_path=str(tmp_path / "incidents.db"))
    await log.initialize()
    yield log
    await log.close()


@pytest.mark.asyncio
async def test_log_and_query():
    log = IncidentLog()
    await log.log("rollback", "Emergency rollback performed", severity=Severity.HIGH, backup_id="b1")
    await log.log("post_evolution_failure", "Security posture degraded")

    assert len(log) == 2
    assert log.query()[0].type == "post_evolution_failure"  # most recent first
    rollbacks = log.query(type="rollback")
    assert len(rollbacks) == 1
    assert rollbacks[0].details == {"backup_id": "b1"}
    assert rollbacks[0].severity == Severity.HIGH


@pytest.mark.asyncio
async def test_recent_window():
    log = IncidentLog()
    await log.record(SafetyIncident(type="old", timestamp=utcnow() - timedelta(hours=30)))
    await log.record(SafetyIncident(type="new"))

    assert [i.type for i in log.recent(24)] == ["new"]
    assert len(log.recent(48)) == 2


@pytest.mark.asyncio
async def test_memory_is_bounded():
    log = IncidentLog(limit=3)
    for i in range(5):
        await log.log("rollback", f"rollback {i}")

    assert len(log) == 3
    assert log.query()[0].description == "rollback 4"


@pytest.mark.asyncio
async def test_incidents_persist_to_sqlite(persistent_log, tmp_path):
    await persistent_log.log("rollback_failure", "Emergency rollback failed", severity=Severity.CRITICAL, error="disk")

    reopened = IncidentLog(db_path=str(tmp_path / "incidents.db"))
    await reopened.initialize()
    try:
        loaded = await reopened.load()
    finally:
        await reopened.close()

    assert len(loaded) == 1
    assert loaded[0].type == "rollback_failure"
    assert loaded[0].severity == Severity.CRITICAL
    assert loaded[0].details == {"error": "disk"}
