"""Blob storage for uploaded and processed documents."""

import logging
from abc import ABC, abstractmethod
from pathlib import Path

from docqueue.errors import NotFound, PersistenceError, ValidationError

logger = logging.getLogger(__name__)


class BlobStore(ABC):
    """Opaque locator -> bytes storage."""

    @abstractmethod
    def put(self, locator: str, data: bytes) -> str:
        """Store data and return the locator it can be fetched with."""
        ...

    @abstractmethod
    def get(self, locator: str) -> bytes:
        """
        Fetch stored bytes.

        Raises:
            NotFound: If nothing is stored under the locator
            PersistenceError: If the storage backend failed
        """
        ...

    @abstractmethod
    def delete(self, locator: str) -> bool:
        """Delete stored bytes; returns False if already absent."""
        ...

    @abstractmethod
    def exists(self, locator: str) -> bool:
        ...


class FilesystemBlobStore(BlobStore):
    """Stores blobs as files under a root directory."""

    def __init__(self, root: str | Path) -> None:
        self._root = Path(root).resolve()
        self._root.mkdir(parents=True, exist_ok=True)

    @property
    def root(self) -> Path:
        return self._root

    def _path(self, locator: str) -> Path:
        if not locator:
            raise ValidationError("Blob locator must not be empty")
        path = (self._root / locator).resolve()
        if not path.is_relative_to(self._root):
            raise ValidationError(f"Blob locator escapes storage root: {locator}")
        return path

    def put(self, locator: str, data: bytes) -> str:
        path = self._path(locator)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(data)
        except OSError as e:
            logger.error(f"Could not store blob {locator}: {e}")
            raise PersistenceError(str(e)) from e
        logger.debug(f"Stored {len(data)} bytes at {locator}")
        return locator

    def get(self, locator: str) -> bytes:
        path = self._path(locator)
        try:
            return path.read_bytes()
        except (FileNotFoundError, IsADirectoryError) as e:
            raise NotFound(f"Blob {locator} not found") from e
        except OSError as e:
            logger.error(f"Could not read blob {locator}: {e}")
            raise PersistenceError(str(e)) from e

    def delete(self, locator: str) -> bool:
        path = self._path(locator)
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        except OSError as e:
            logger.error(f"Could not delete blob {locator}: {e}")
            raise PersistenceError(str(e)) from e
        return True

    def exists(self, locator: str) -> bool:
        return self._path(locator).is_file()
