"""Local shared-root catalog: enumeration and scoped byte streams."""

from catalog.file_catalog import FileCatalog
from catalog.storage_provider import LocalStorageProvider, StorageProvider

__all__ = [
    "FileCatalog",
    "LocalStorageProvider",
    "StorageProvider",
]
