"""
Durable key/value storage used by the queue and dead-letter stores.

Values are whole JSON documents; every write replaces the previous document
atomically so a crash leaves either the old or the new version on disk.
"""

import logging
from abc import ABC, abstractmethod
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional, Tuple

import aiofiles

from .errors import StorageError

ACTIVE_QUEUE_KEY = "active_queue"
DEAD_LETTER_KEY = "dead_letter"


class KeyValueStorage(ABC):
    """Storage interface injected into the sync engine."""

    @abstractmethod
    async def read(self, key: str) -> Optional[str]:
        """Return the stored document, or None if the key is absent."""

    @abstractmethod
    async def write(self, key: str, value: str) -> None:
        """Replace the stored document."""

    @abstractmethod
    async def delete(self, key: str) -> None:
        """Remove the key if present."""

    async def quarantine(self, key: str) -> None:
        """Set aside a document that could not be parsed."""
        await self.delete(key)


class MemoryStorage(KeyValueStorage):
    """In-process storage, mainly for tests.

    ``history`` records every write so tests can inspect intermediate states.
    """

    def __init__(self, initial: Optional[Dict[str, str]] = None):
        self.data: Dict[str, str] = dict(initial or {})
        self.history: List[Tuple[str, str]] = []
        self.quarantined: Dict[str, str] = {}

    async def read(self, key: str) -> Optional[str]:
        return self.data.get(key)

    async def write(self, key: str, value: str) -> None:
        self.data[key] = value
        self.history.append((key, value))

    async def delete(self, key: str) -> None:
        self.data.pop(key, None)

    async def quarantine(self, key: str) -> None:
        if key in self.data:
            self.quarantined[key] = self.data.pop(key)


class FileStorage(KeyValueStorage):
    """One JSON file per key inside a directory."""

    def __init__(self, directory: Path):
        self.directory = Path(directory)
        self.directory.mkdir(parents=True, exist_ok=True)
        self.logger = logging.getLogger(__name__)

    def path_for(self, key: str) -> Path:
        return self.directory / f"{key}.json"

    async def read(self, key: str) -> Optional[str]:
        file_path = self.path_for(key)
        if not file_path.exists():
            return None

        try:
            async with aiofiles.open(file_path, "r", encoding="utf-8") as f:
                return await f.read()
        except OSError as e:
            raise StorageError(f"Failed to read {file_path}: {e}") from e

    async def write(self, key: str, value: str) -> None:
        """
        Write a document atomically using a temporary file and rename.

        Args:
            key: Storage key
            value: Serialized JSON document
        """
        file_path = self.path_for(key)
        temp_path = file_path.with_suffix(f"{file_path.suffix}.tmp")

        try:
            async with aiofiles.open(temp_path, "w", encoding="utf-8") as f:
                await f.write(value)
                await f.flush()

            temp_path.replace(file_path)

        except OSError as e:
            if temp_path.exists():
                temp_path.unlink()
            raise StorageError(f"Failed to write {file_path}: {e}") from e

    async def delete(self, key: str) -> None:
        file_path = self.path_for(key)
        try:
            file_path.unlink()
        except FileNotFoundError:
            pass
        except OSError as e:
            raise StorageError(f"Failed to delete {file_path}: {e}") from e

    async def quarantine(self, key: str) -> None:
        """
        Back up a corrupted document for debugging.

        Args:
            key: Storage key whose file could not be parsed
        """
        file_path = self.path_for(key)
        if not file_path.exists():
            return

        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        backup_path = file_path.with_suffix(f".corrupted_{timestamp}{file_path.suffix}")

        try:
            file_path.rename(backup_path)
            self.logger.info(f"Backed up corrupted file to {backup_path}")
        except OSError as e:
            self.logger.error(f"Failed to backup corrupted file: {e}")
