"""Tests for backup storage — retention, ordering and JSON persistence."""

import pytest

from morphos.exceptions import BackupError
from morphos.safety.backup import BackupMetadata, BackupState, BackupStore


@pytest.mark.asyncio
async def test_latest_is_most_recent():
    store = BackupStore()
    first = await store.add(BackupState(files={"a.py": "1"}))
    second = await store.add(BackupState(files={"a.py": "2"}))

    assert store.latest() is second
    assert store.ids() == [first.id, second.id]
    assert len(store) == 2


@pytest.mark.asyncio
async def test_retention_prunes_oldest_first():
    store = BackupStore(retention=3)
    added = [await store.add(BackupState()) for _ in range(5)]

    assert store.ids() == [b.id for b in added[2:]]

    await store.set_retention(1)
    assert store.ids() == [added[-1].id]


@pytest.mark.asyncio
async def test_duplicate_id_is_refused():
    store = BackupStore()
    backup = await store.add(BackupState())

    with pytest.raises(BackupError):
        await store.add(BackupState(id=backup.id))


def test_retention_must_be_positive():
    with pytest.raises(ValueError):
        BackupStore(retention=0)


@pytest.mark.asyncio
async def test_persisted_backups_survive_reload(tmp_path):
    directory = tmp_path / "backups"
    store = BackupStore(retention=2, directory=directory)
    await store.add(BackupState(files={"a.py": "one"}))
    kept = await store.add(BackupState(
        files={"a.py": "two"},
        missing=["new.py"],
        metadata=BackupMetadata(scope="system", mutations_count=3),
    ))
    await store.add(BackupState(files={"a.py": "three"}))

    assert len(list(directory.glob("*.json"))) == 2

    reloaded = BackupStore(retention=2, directory=directory)
    assert await reloaded.load() == 2
    restored = reloaded.get(kept.id)
    assert restored.files == {"a.py": "two"}
    assert restored.missing == ["new.py"]
    assert restored.metadata.mutations_count == 3
    assert reloaded.latest().files["a.py"] == "three"


@pytest.mark.asyncio
async def test_unreadable_backup_file_is_skipped(tmp_path):
    directory = tmp_path / "backups"
    directory.mkdir()
    (directory / "backup-garbage.json").write_text("{not json")

    store = BackupStore(directory=directory)
    assert await store.load() == 0
    assert await store.check_writable()


def test_expected_content():
    backup = BackupState(files={"a.py": "x"}, missing=["b.py"])

    assert backup.expected("a.py") == "x"
    assert backup.expected("b.py") is None
