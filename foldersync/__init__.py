"""Folder synchronization with one peer."""

from foldersync.service import FolderSyncService
from foldersync.sync_coordinator import SyncCoordinator, SyncReport

__all__ = [
    "FolderSyncService",
    "SyncCoordinator",
    "SyncReport",
]
