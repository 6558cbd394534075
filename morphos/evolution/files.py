"""FileStore — plain read/write/list over a local project tree.

The only shared mutable resource of the evolution loop. Paths are
relative to the store root; anything resolving outside the root is
refused. Blocking I/O is pushed onto a worker thread.
"""

from __future__ import annotations

import asyncio
from pathlib import Path


class FileStore:
    """Async file access confined to one directory tree."""

    def __init__(self, root: Path | str) -> None:
        self._root = Path(root).resolve()

    @property
    def root(self) -> Path:
        return self._root

    def resolve(self, path: str | Path) -> Path:
        """Absolute path for `path`, refusing anything outside the root."""
        candidate = Path(path)
        if not candidate.is_absolute():
            candidate = self._root / candidate
        candidate = candidate.resolve()
        if candidate != self._root and self._root not in candidate.parents:
            raise ValueError(f"Path escapes project root: {path}")
        return candidate

    def relative(self, path: str | Path) -> str:
        """Root-relative POSIX form of `path`."""
        return self.resolve(path).relative_to(self._root).as_posix()

    async def read(self, path: str | Path) -> str:
        target = self.resolve(path)
        return await asyncio.to_thread(target.read_text, encoding="utf-8")

    async def write(self, path: str | Path, content: str) -> None:
        target = self.resolve(path)

        def _write() -> None:
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_text(content, encoding="utf-8")

        await asyncio.to_thread(_write)

    async def exists(self, path: str | Path) -> bool:
        target = self.resolve(path)
        return await asyncio.to_thread(target.is_file)

    async def delete(self, path: str | Path) -> None:
        target = self.resolve(path)
        await asyncio.to_thread(target.unlink, True)

    async def list(self, pattern: str = "**/*") -> list[str]:
        """Root-relative paths of files matching a glob pattern, sorted."""

        def _list() -> list[str]:
            return sorted(
                p.relative_to(self._root).as_posix()
                for p in self._root.glob(pattern)
                if p.is_file()
            )

        return await asyncio.to_thread(_list)
