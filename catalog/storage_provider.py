"""Storage provider boundary and the local-filesystem implementation."""

import os
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, BinaryIO, List

from common.logging_config import get_logger
from common.types import FileEntry

logger = get_logger(__name__)


class StorageProvider(ABC):
    """
    Hierarchical storage backing a FileCatalog.

    Handles are opaque to callers; only the provider interprets them.
    """

    @abstractmethod
    def root_handle(self, root: Any) -> Any:
        """Resolve a root location to a directory handle, creating it if needed."""

    @abstractmethod
    def enumerate(self, directory: Any) -> List[FileEntry]:
        """List the immediate children of a directory handle."""

    @abstractmethod
    def open_read(self, handle: Any) -> BinaryIO:
        """Open a file handle for binary reading."""

    @abstractmethod
    def create_entry(self, directory: Any, name: str) -> Any:
        """Create an empty file in a directory and return its handle."""

    @abstractmethod
    def open_write(self, handle: Any) -> BinaryIO:
        """Open a file handle for binary writing, truncating it."""

    @abstractmethod
    def commit(self, handle: Any, directory: Any, name: str) -> Any:
        """Atomically move a file to `name` inside a directory, replacing any existing file."""

    @abstractmethod
    def delete(self, handle: Any) -> bool:
        """Delete a file; return False if it did not exist."""


class LocalStorageProvider(StorageProvider):
    """Provider backed by a directory on the local filesystem."""

    def root_handle(self, root: Any) -> Path:
        path = Path(root)
        path.mkdir(parents=True, exist_ok=True)
        return path

    def enumerate(self, directory: Path) -> List[FileEntry]:
        """
        List directory children.

        Symlinks to files are listed with the target's size. Symlinks to
        directories are not followed, and dangling links or children removed
        mid-scan are skipped.

        Raises:
            OSError: If the directory itself cannot be read
        """
        entries = []
        with os.scandir(directory) as it:
            for child in it:
                is_dir = child.is_dir(follow_symlinks=False)
                if child.is_symlink() and child.is_dir():
                    logger.debug(f"Not following directory link {child.path}")
                    continue
                try:
                    size = 0 if is_dir else child.stat().st_size
                except FileNotFoundError:
                    logger.warning(f"Skipping {child.path}: target no longer exists")
                    continue
                entries.append(FileEntry(
                    name=child.name,
                    handle=Path(child.path),
                    size=size,
                    is_directory=is_dir
                ))
        entries.sort(key=lambda e: e.name)
        return entries

    def open_read(self, handle: Path) -> BinaryIO:
        return open(handle, 'rb')

    def create_entry(self, directory: Path, name: str) -> Path:
        path = directory / name
        path.touch(exist_ok=False)
        return path

    def open_write(self, handle: Path) -> BinaryIO:
        return open(handle, 'wb')

    def commit(self, handle: Path, directory: Path, name: str) -> Path:
        target = directory / name
        os.replace(handle, target)
        return target

    def delete(self, handle: Path) -> bool:
        if handle.exists():
            handle.unlink()
            return True
        return False
