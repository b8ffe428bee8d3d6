"""File storage for run artifacts (screenshots and other output files)."""

import asyncio
from pathlib import Path
from typing import Protocol, Union

import structlog

logger = structlog.get_logger()


class StorageService(Protocol):
    """Artifact storage handed to actions."""

    async def upload_file(self, key: str, data: bytes, content_type: str) -> str: ...

    async def delete_file(self, key: str) -> None: ...

    async def list_files(self, prefix: str = "") -> list[str]: ...


class LocalFileStorage:
    """Writes uploads below a base directory and returns the key as the URL."""

    def __init__(self, base_dir: Union[str, Path] = "./data/output"):
        self.base_dir = Path(base_dir)

    def _target(self, key: str) -> Path:
        target = (self.base_dir / key.lstrip("/")).resolve()
        base = self.base_dir.resolve()
        if base != target and base not in target.parents:
            raise ValueError(f"storage key escapes base directory: {key}")
        return target

    async def upload_file(self, key: str, data: bytes, content_type: str) -> str:
        """Store ``data`` under ``key``."""
        target = self._target(key)
        await asyncio.to_thread(self._write, target, data)
        logger.info("file_stored", key=key, content_type=content_type, size=len(data))
        return key

    async def delete_file(self, key: str) -> None:
        """Remove the file stored under ``key``. Missing files are not an error."""
        target = self._target(key)
        if target == self.base_dir.resolve():
            raise ValueError(f"storage key does not name a file: {key}")
        existed = await asyncio.to_thread(self._delete, target)
        logger.info("file_deleted", key=key, existed=existed)

    async def list_files(self, prefix: str = "") -> list[str]:
        """Keys of stored files starting with ``prefix``, sorted."""
        keys = await asyncio.to_thread(self._keys)
        return [key for key in keys if key.startswith(prefix.lstrip("/"))]

    @staticmethod
    def _write(target: Path, data: bytes) -> None:
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(data)

    @staticmethod
    def _delete(target: Path) -> bool:
        if not target.is_file():
            return False
        target.unlink()
        return True

    def _keys(self) -> list[str]:
        if not self.base_dir.is_dir():
            return []
        return sorted(
            path.relative_to(self.base_dir).as_posix()
            for path in self.base_dir.rglob("*")
            if path.is_file()
        )
