"""
Folder reconciliation by file name.

Compares the local catalog with the peer's listing, downloads what only the
peer has and uploads what only this side has. Files present on both sides
are left alone whatever their content.
"""

import asyncio
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from common.config import SyncConfig
from common.exceptions import PeerSyncError
from common.logging_config import get_logger
from common.types import FileEntry
from catalog.file_catalog import FileCatalog
from transfer.client import TransferClient

logger = get_logger(__name__)


@dataclass
class SyncReport:
    """Outcome of one sync run."""

    downloaded: List[str] = field(default_factory=list)
    uploaded: List[str] = field(default_factory=list)
    failures: Dict[str, str] = field(default_factory=dict)
    remote_files: List[str] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return not self.failures

    @property
    def transferred(self) -> int:
        return len(self.downloaded) + len(self.uploaded)


class SyncCoordinator:
    """
    Runs name-diff sync batches between a local catalog and one peer.
    """

    def __init__(
        self,
        catalog: FileCatalog,
        client: TransferClient,
        config: Optional[SyncConfig] = None
    ):
        """
        Args:
            catalog: Local shared root
            client: Client pointed at the peer
            config: Batch parallelism
        """
        self.catalog = catalog
        self.client = client
        self.config = config or SyncConfig()

    async def sync(self) -> SyncReport:
        """
        Reconcile both sides.

        Every transfer is attempted independently; failures are recorded in
        the report and never stop the batch.

        Returns:
            SyncReport including the peer's listing refreshed after the batch

        Raises:
            PeerSyncError: If the local root or the peer's listing cannot be read
        """
        local_entries = await asyncio.to_thread(self.catalog.list_files, True)
        local: Dict[str, FileEntry] = {}
        for entry in local_entries:
            local.setdefault(entry.name, entry)

        remote = set(await self.client.request_file_list())

        missing_locally = sorted(remote - local.keys())
        missing_remotely = sorted(local.keys() - remote)

        logger.info(
            f"Sync with {self.client.address}: "
            f"{len(missing_locally)} file(s) to download, "
            f"{len(missing_remotely)} file(s) to upload, "
            f"{len(remote & local.keys())} already on both sides"
        )

        report = SyncReport()
        semaphore = asyncio.Semaphore(self.config.max_parallel_transfers)

        await asyncio.gather(
            *(self._download(name, report, semaphore) for name in missing_locally),
            *(self._upload(local[name], report, semaphore) for name in missing_remotely)
        )

        try:
            report.remote_files = await self.client.request_file_list()
        except (PeerSyncError, ConnectionError, OSError) as e:
            logger.warning(f"Could not refresh remote listing after sync: {e}")
            report.remote_files = sorted(remote | set(report.uploaded))

        logger.info(
            f"Sync with {self.client.address} finished: "
            f"{len(report.downloaded)} downloaded, {len(report.uploaded)} uploaded, "
            f"{len(report.failures)} failed"
        )
        return report

    async def _download(self, name: str, report: SyncReport, semaphore: asyncio.Semaphore) -> None:
        async with semaphore:
            try:
                if await self.client.request_file(name, self.catalog):
                    report.downloaded.append(name)
                else:
                    report.failures[name] = "download failed"
            except Exception as e:
                logger.error(f"Error downloading {name}: {e}", exc_info=True)
                report.failures[name] = f"download failed: {e}"

    async def _upload(self, entry: FileEntry, report: SyncReport, semaphore: asyncio.Semaphore) -> None:
        async with semaphore:
            try:
                if await self.client.send_file(entry, self.catalog):
                    report.uploaded.append(entry.name)
                else:
                    report.failures[entry.name] = "upload failed"
            except Exception as e:
                logger.error(f"Error uploading {entry.name}: {e}", exc_info=True)
                report.failures[entry.name] = f"upload failed: {e}"
