"""Tests for FileStore."""

import pytest

from morphos.evolution.files import FileStore


@pytest.mark.asyncio
async def test_write_read_list_delete(tmp_path):
    store = FileStore(tmp_path)

    await store.write("pkg/mod.py", "x = 1\n")

    assert await store.exists("pkg/mod.py")
    assert await store.read("pkg/mod.py") == "x = 1\n"
    assert await store.list("**/*.py") == ["pkg/mod.py"]

    await store.delete("pkg/mod.py")
    await store.delete("pkg/mod.py")  # missing is fine
    assert not await store.exists("pkg/mod.py")


@pytest.mark.parametrize("path", ["../outside.py", "/etc/passwd", "pkg/../../x.py"])
def test_paths_outside_root_are_refused(tmp_path, path):
    with pytest.raises(ValueError, match="escapes"):
        FileStore(tmp_path / "root").resolve(path)


def test_relative(tmp_path):
    store = FileStore(tmp_path)
    assert store.relative(tmp_path / "a" / "b.py") == "a/b.py"
    assert store.relative("a/./b.py") == "a/b.py"
