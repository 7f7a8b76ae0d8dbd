"""Local disk backend for artifacts."""

import asyncio
import os
import tempfile
from pathlib import Path
from typing import Any

from media_relay.core.errors import ValidationError


class LocalDiskStore:
    """Stores artifacts under a root directory using their storage key as path."""

    def __init__(self, root: Path | str):
        self.root = Path(root)

    def path_for(self, key: str) -> Path:
        """Resolve a storage key to a path that cannot escape the root.

        Raises:
            ValidationError: If the key points outside the root
        """
        root = self.root.resolve()
        path = (root / key).resolve()
        if root not in path.parents:
            raise ValidationError(f"Invalid storage key: {key}")
        return path

    async def exists(self, key: str) -> bool:
        path = self.path_for(key)
        return await asyncio.to_thread(path.is_file)

    async def write(self, key: str, data: bytes) -> Path:
        """Write bytes atomically and return the final path."""
        path = self.path_for(key)
        await asyncio.to_thread(self._write_atomic, path, data)
        return path

    async def read(self, key: str) -> bytes:
        path = self.path_for(key)
        return await asyncio.to_thread(path.read_bytes)

    async def size(self, key: str) -> int:
        path = self.path_for(key)
        stat = await asyncio.to_thread(path.stat)
        return stat.st_size

    @staticmethod
    def _write_atomic(path: Path, data: bytes) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=".tmp-")
        try:
            with os.fdopen(fd, "wb") as handle:
                handle.write(data)
            os.replace(tmp_name, path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    def statistics(self) -> dict[str, Any]:
        """Count files and bytes per top-level directory.

        Returns:
            Dictionary with per-directory counts and totals
        """
        by_dir: dict[str, dict[str, int]] = {}
        total_files = 0
        total_bytes = 0
        if self.root.exists():
            for path in self.root.rglob("*"):
                if not path.is_file() or path.name.startswith(".tmp-"):
                    continue
                relative = path.relative_to(self.root)
                bucket = relative.parts[0] if len(relative.parts) > 1 else "."
                size = path.stat().st_size
                entry = by_dir.setdefault(bucket, {"files": 0, "bytes": 0})
                entry["files"] += 1
                entry["bytes"] += size
                total_files += 1
                total_bytes += size
        return {
            "root": str(self.root),
            "total_files": total_files,
            "total_bytes": total_bytes,
            "by_directory": by_dir,
        }
