"""Enumerates and opens the files of one shared root."""

import uuid
from contextlib import contextmanager
from pathlib import Path
from typing import Any, BinaryIO, Iterator, List, Optional, Tuple

from common.constants import TEMP_FILE_PREFIX, TEMP_FILE_SUFFIX
from common.exceptions import StorageError
from common.logging_config import get_logger
from common.types import FileEntry
from catalog.storage_provider import LocalStorageProvider, StorageProvider

logger = get_logger(__name__)


def is_temporary_name(name: str) -> bool:
    return name.startswith(TEMP_FILE_PREFIX) and name.endswith(TEMP_FILE_SUFFIX)


def validate_file_name(name: str) -> None:
    """
    Reject names that are not a single plain path component.

    Raises:
        StorageError: If the name is empty, '.', '..', contains a path
            separator or NUL, or collides with the temporary-file pattern
    """
    if not name or not name.strip():
        raise StorageError("File name is empty")
    if name in ('.', '..'):
        raise StorageError(f"Invalid file name: {name!r}")
    if '/' in name or '\\' in name or '\x00' in name:
        raise StorageError(f"File name must not contain path separators: {name!r}")
    if is_temporary_name(name):
        raise StorageError(f"File name is reserved: {name!r}")


class FileCatalog:
    """
    View over one storage root.

    Entries are computed fresh on every call; nothing is cached, so changes
    made by other processes are picked up by the next listing.
    """

    def __init__(self, root: Any, provider: Optional[StorageProvider] = None):
        """
        Args:
            root: Root location understood by the provider (a path for the local provider)
            provider: Storage provider; defaults to the local filesystem
        """
        self.provider = provider or LocalStorageProvider()
        try:
            self.root = self.provider.root_handle(root)
        except OSError as e:
            raise StorageError(f"Cannot open shared root {root}: {e}") from e

    def list_files(self, recursive: bool = True) -> List[FileEntry]:
        """
        List files below the root. Directories are traversed, never returned.

        Args:
            recursive: Descend into subdirectories when True, otherwise only
                immediate child files are listed

        Returns:
            FileEntry for every non-directory entry (order: depth-first, by name)

        Raises:
            StorageError: If the tree cannot be enumerated (e.g. a directory
                was removed concurrently)
        """
        try:
            return [entry for _, entry in self._walk(self.root, recursive)]
        except OSError as e:
            raise StorageError(f"Failed to enumerate {self.root}: {e}") from e

    def _walk(self, directory: Any, recursive: bool) -> Iterator[Tuple[Any, FileEntry]]:
        """Yield (parent directory handle, entry) for every listed file."""
        for entry in self.provider.enumerate(directory):
            if entry.is_directory:
                if recursive:
                    yield from self._walk(entry.handle, recursive)
            elif not is_temporary_name(entry.name):
                yield directory, entry

    def _directory_for(self, name: str) -> Any:
        """Directory holding the first file named `name`, or the root."""
        try:
            for directory, entry in self._walk(self.root, recursive=True):
                if entry.name == name:
                    return directory
        except OSError as e:
            raise StorageError(f"Failed to enumerate {self.root}: {e}") from e
        return self.root

    def get_file(self, name: str) -> Optional[FileEntry]:
        """
        Find a file by name anywhere below the root.

        When several subdirectories hold the same name the first match of the
        recursive listing is returned; duplicates are not disambiguated.

        Returns:
            FileEntry, or None if no file has that name
        """
        for entry in self.list_files(recursive=True):
            if entry.name == name:
                return entry
        return None

    def names(self) -> List[str]:
        return [entry.name for entry in self.list_files(recursive=True)]

    @contextmanager
    def open_read(self, entry: FileEntry) -> Iterator[BinaryIO]:
        """
        Open an entry for reading; the stream is closed on every exit path.

        Raises:
            StorageError: If the file cannot be opened
        """
        try:
            stream = self.provider.open_read(entry.handle)
        except OSError as e:
            raise StorageError(f"Failed to open {entry.name} for reading: {e}") from e
        try:
            yield stream
        finally:
            stream.close()

    @contextmanager
    def open_write(self, name: str) -> Iterator[BinaryIO]:
        """
        Write a file atomically.

        An existing file of that name is replaced where it lies (the first
        match, as with get_file); a new name lands in the root. Data goes to a
        hidden temporary sibling that replaces the target only when the block
        exits cleanly. Any exception leaves no trace of the write.

        Raises:
            StorageError: If the name is invalid or the destination cannot be
                created or committed
        """
        validate_file_name(name)
        directory = self._directory_for(name)
        temp_name = f"{TEMP_FILE_PREFIX}{uuid.uuid4().hex}{TEMP_FILE_SUFFIX}"
        try:
            temp = self.provider.create_entry(directory, temp_name)
        except OSError as e:
            raise StorageError(f"Failed to create destination for {name}: {e}") from e

        committed = False
        try:
            try:
                stream = self.provider.open_write(temp)
            except OSError as e:
                raise StorageError(f"Failed to open destination for {name}: {e}") from e
            try:
                yield stream
            finally:
                stream.close()
            try:
                self.provider.commit(temp, directory, name)
            except OSError as e:
                raise StorageError(f"Failed to store {name}: {e}") from e
            committed = True
        finally:
            if not committed:
                self._discard(temp, name)

    def _discard(self, temp: Any, name: str) -> None:
        try:
            self.provider.delete(temp)
            logger.debug(f"Discarded partial write of {name}")
        except OSError as e:
            logger.error(f"Failed to remove partial file for {name}: {e}")

    def __repr__(self) -> str:
        root = self.root if isinstance(self.root, Path) else repr(self.root)
        return f"FileCatalog(root={root})"
