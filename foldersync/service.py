"""Host-facing facade wiring the catalog, transfer roles and connection supervisor."""

import asyncio
import inspect
from typing import Any, Callable, List, Optional

from common.addressing import validate_peer_address
from common.config import KEEP_ALIVE_INTERVAL, SupervisorConfig, SyncConfig, TransferConfig
from common.exceptions import AddressValidationError, NotConnectedError, PeerSyncError, TransferCancelledError
from common.logging_config import get_logger, set_peer_id, setup_logging
from common.transfer_log import InMemoryTransferLog, TransferLogSink
from catalog.file_catalog import FileCatalog
from catalog.storage_provider import StorageProvider
from foldersync.sync_coordinator import SyncCoordinator, SyncReport
from link.supervisor import ConnectionSupervisor
from link.transport import LinkTransport
from transfer.client import TransferClient
from transfer.server import TransferServer

logger = get_logger(__name__)

LOG_COMPONENTS = ("catalog", "common", "transfer", "link", "foldersync")

SERVER_START_ATTEMPTS = 3
SERVER_RETRY_DELAY_SECONDS = 1.0
PEER_ATTACH_ATTEMPTS = 3
PEER_ATTACH_RETRY_DELAY_SECONDS = 1.0


class FolderSyncService:
    """
    Shares one folder with one peer.

    Runs the local TransferServer, follows the supervisor's connection info
    to point a TransferClient at the peer, and exposes listing, download,
    upload, push and sync operations. While connected the peer is polled
    every `monitor_interval` seconds; a failed poll marks the connection lost.
    """

    def __init__(
        self,
        root: Any,
        transport: Optional[LinkTransport] = None,
        provider: Optional[StorageProvider] = None,
        transfer_config: Optional[TransferConfig] = None,
        supervisor_config: Optional[SupervisorConfig] = None,
        sync_config: Optional[SyncConfig] = None,
        transfer_log: Optional[TransferLogSink] = None,
        on_file_received: Optional[Callable[[str], Any]] = None,
        peer_port: Optional[int] = None,
        monitor_interval: float = KEEP_ALIVE_INTERVAL,
        attach_retry_delay: float = PEER_ATTACH_RETRY_DELAY_SECONDS,
        configure_logging: bool = True,
        log_level: Optional[str] = None
    ):
        """
        Args:
            root: Shared root (a path for the local provider)
            transport: Link transport; without one only set_remote_peer() connects
            provider: Storage provider for the root
            transfer_config: Server bind address/port and client timeouts
            supervisor_config: Connection state machine timings
            sync_config: Sync batch parallelism
            transfer_log: Sink for completed transfers (in-memory when omitted)
            on_file_received: Called (or awaited) with each file uploaded or pushed to us
            peer_port: Transfer port of peers (defaults to our own configured port)
            monitor_interval: Seconds between reachability polls while connected
            attach_retry_delay: Base delay between attempts to reach a newly linked peer
            configure_logging: Install stdout handlers for the package loggers
            log_level: Log level for those handlers
        """
        if configure_logging:
            for component in LOG_COMPONENTS:
                setup_logging(component, log_level)

        self.catalog = FileCatalog(root, provider)
        self.transfer_config = transfer_config or TransferConfig()
        self.sync_config = sync_config or SyncConfig()
        self.transfer_log = transfer_log if transfer_log is not None else InMemoryTransferLog()
        self.on_file_received = on_file_received
        self.peer_port = peer_port if peer_port is not None else self.transfer_config.port
        self.monitor_interval = monitor_interval
        self.attach_retry_delay = attach_retry_delay

        self.supervisor = ConnectionSupervisor(transport, supervisor_config) if transport else None
        self.server: Optional[TransferServer] = None
        self.client: Optional[TransferClient] = None

        self.remote_files: List[str] = []
        self.error_message: Optional[str] = None

        self._info_task: Optional[asyncio.Task] = None
        self._attach_task: Optional[asyncio.Task] = None
        self._monitor_task: Optional[asyncio.Task] = None
        self._push_task: Optional[asyncio.Task] = None

    @property
    def is_connected(self) -> bool:
        return self.client is not None

    @property
    def server_port(self) -> Optional[int]:
        return self.server.port if self.server else None

    async def start(self) -> None:
        """
        Start the transfer server and, with a transport, the supervisor.

        Raises:
            PeerSyncError: If the server cannot bind after all attempts
        """
        await self._start_server()
        if self.supervisor is not None and not self.supervisor.running:
            await self.supervisor.start()
            self._info_task = asyncio.create_task(self._follow_connection_info())

    async def _start_server(self) -> None:
        if self.server is not None:
            await self.server.stop()

        last_error: Optional[OSError] = None
        for attempt in range(1, SERVER_START_ATTEMPTS + 1):
            server = TransferServer(
                self.catalog,
                self.transfer_config,
                on_file_received=self._file_received,
                transfer_log=self.transfer_log
            )
            try:
                await server.start()
                self.server = server
                return
            except OSError as e:
                last_error = e
                logger.error(f"Failed to start transfer server (attempt {attempt}/{SERVER_START_ATTEMPTS}): {e}")
                if attempt < SERVER_START_ATTEMPTS:
                    await asyncio.sleep(SERVER_RETRY_DELAY_SECONDS)

        self.error_message = f"Failed to start server: {last_error}"
        raise PeerSyncError(self.error_message) from last_error

    async def connect(self, peer_id: str) -> bool:
        """Ask the supervisor to connect to a peer by id."""
        if self.supervisor is None:
            raise PeerSyncError("No link transport configured")
        return await self.supervisor.connect(peer_id)

    async def _follow_connection_info(self) -> None:
        async for info in self.supervisor.connection_info.subscribe():
            self._cancel_attach()
            try:
                if info is not None and info.usable:
                    self._attach_task = asyncio.create_task(self._attach_peer(info.remote_address))
                elif self.client is not None:
                    message = self.supervisor.state.value.error_message
                    await self._drop_client()
                    self.remote_files = []
                    self.error_message = message
            except Exception as e:
                logger.error(f"Error following connection info: {e}", exc_info=True)

    async def _attach_peer(self, address: str) -> None:
        """
        Reach a peer the link layer reported, retrying while its server comes up.

        When every attempt fails the link is torn down so the supervisor does
        not stay connected without a usable client.
        """
        for attempt in range(1, PEER_ATTACH_ATTEMPTS + 1):
            try:
                await self.set_remote_peer(address)
                return
            except AddressValidationError as e:
                logger.error(f"Link reported an unusable peer address: {e}")
                break
            except (PeerSyncError, ConnectionError, OSError) as e:
                logger.warning(f"Could not reach peer at {address} "
                               f"(attempt {attempt}/{PEER_ATTACH_ATTEMPTS}): {e}")
                if attempt < PEER_ATTACH_ATTEMPTS:
                    await asyncio.sleep(self.attach_retry_delay * attempt)

        logger.error(f"Giving up on peer at {address}, disconnecting link")
        self._attach_task = None
        if self.supervisor is not None and self.supervisor.running:
            await self.supervisor.disconnect()

    def _cancel_attach(self) -> None:
        if self._attach_task is not None:
            self._attach_task.cancel()
            self._attach_task = None

    async def set_remote_peer(self, address: str, port: Optional[int] = None) -> List[str]:
        """
        Point the client at a peer and check that it answers.

        Args:
            address: Peer IP address or hostname
            port: Peer transfer port (defaults to peer_port)

        Returns:
            The peer's file listing

        Raises:
            AddressValidationError: If the address is malformed (no socket is opened)
            PeerSyncError: If the peer cannot be listed
        """
        address = validate_peer_address(address)
        if self.server is None or not self.server.running:
            await self._start_server()

        await self._drop_client()
        client = TransferClient(
            address,
            port=port if port is not None else self.peer_port,
            config=self.transfer_config,
            transfer_log=self.transfer_log
        )

        logger.info(f"Testing connection to peer at {client.address}")
        try:
            files = await client.request_file_list()
        except PeerSyncError as e:
            client.cleanup()
            self.error_message = f"Failed to connect to peer: {e}"
            raise

        self.client = client
        self.remote_files = files
        self.error_message = None
        set_peer_id(get_logger("foldersync"), client.address)
        logger.info(f"Connected to peer at {client.address}: {len(files)} file(s) available")

        self._monitor_task = asyncio.create_task(self._monitor_connection(client))
        self._push_task = asyncio.create_task(self._receive_pushes(client))
        return files

    async def _monitor_connection(self, client: TransferClient) -> None:
        while True:
            await asyncio.sleep(self.monitor_interval)
            try:
                files = await client.request_file_list()
            except TransferCancelledError:
                return
            except (PeerSyncError, ConnectionError, OSError) as e:
                logger.error(f"Connection check to {client.address} failed: {e}")
                if self.client is client:
                    await self._drop_client()
                    self.error_message = f"Connection lost: {e}"
                return
            if self.client is client:
                self.remote_files = files
            logger.debug(f"Connection check successful: {len(files)} file(s) available")

    async def _receive_pushes(self, client: TransferClient) -> None:
        try:
            await client.listen_for_pushes(self.catalog, on_file=self._file_received)
        except TransferCancelledError:
            logger.debug(f"Push subscription to {client.address} closed")
        except (PeerSyncError, ConnectionError, OSError) as e:
            logger.warning(f"Push subscription to {client.address} ended: {e}")

    async def _file_received(self, name: str) -> None:
        logger.info(f"New file available: {name}")
        if self.on_file_received is None:
            return
        result = self.on_file_received(name)
        if inspect.isawaitable(result):
            await result

    async def _drop_client(self) -> None:
        current = asyncio.current_task()
        tasks = [t for t in (self._monitor_task, self._push_task) if t is not None and t is not current]
        self._monitor_task = None
        self._push_task = None
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

        if self.client is not None:
            self.client.cleanup()
            self.client = None
            set_peer_id(get_logger("foldersync"), None)

    def _require_client(self) -> TransferClient:
        if self.client is None:
            raise NotConnectedError("Not connected to peer")
        return self.client

    async def refresh_remote_files(self) -> List[str]:
        """
        Re-read the peer's listing.

        Raises:
            NotConnectedError: If no peer is set
            PeerSyncError: If the listing fails
        """
        client = self._require_client()
        self.remote_files = await client.request_file_list()
        return self.remote_files

    async def download_file(self, name: str) -> bool:
        client = self._require_client()
        ok = await client.request_file(name, self.catalog)
        if not ok:
            self.error_message = f"Failed to download {name}"
        return ok

    async def upload_file(self, name: str) -> bool:
        """
        Upload a local file to the peer and refresh the remote listing.

        Returns:
            False if the file does not exist locally or the upload fails
        """
        client = self._require_client()
        entry = await asyncio.to_thread(self.catalog.get_file, name)
        if entry is None:
            logger.error(f"Cannot upload {name}: no such local file")
            self.error_message = f"File not found: {name}"
            return False

        ok = await client.send_file(entry, self.catalog)
        if not ok:
            self.error_message = f"Failed to upload {name}"
            return False
        await self.refresh_remote_files()
        return True

    async def sync_folders(self) -> SyncReport:
        """
        Reconcile the local folder with the peer by file name.

        Raises:
            NotConnectedError: If no peer is set
            PeerSyncError: If either listing fails
        """
        client = self._require_client()
        report = await SyncCoordinator(self.catalog, client, self.sync_config).sync()
        self.remote_files = report.remote_files
        if report.failures:
            self.error_message = f"Sync finished with {len(report.failures)} failure(s)"
        return report

    async def push_file(self, name: str) -> int:
        """Send a local file to every client subscribed to our server."""
        if self.server is None or not self.server.running:
            raise NotConnectedError("Transfer server is not running")
        return await self.server.push_file(name)

    async def disconnect(self) -> None:
        """Stop serving, forget the peer and tear the link down."""
        await self._drop_client()
        if self.server is not None:
            await self.server.stop()
            self.server = None
        self.remote_files = []
        if self.supervisor is not None and self.supervisor.running:
            await self.supervisor.disconnect()
        logger.info("Folder sync disconnected")

    async def close(self) -> None:
        """Full shutdown, including the supervisor."""
        if self._info_task is not None:
            self._info_task.cancel()
            await asyncio.gather(self._info_task, return_exceptions=True)
            self._info_task = None
        if self._attach_task is not None:
            attach = self._attach_task
            self._cancel_attach()
            await asyncio.gather(attach, return_exceptions=True)
        await self.disconnect()
        if self.supervisor is not None:
            await self.supervisor.stop()
