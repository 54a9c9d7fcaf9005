"""Concurrent file-transfer server answering listings, downloads and uploads."""

import asyncio
import inspect
from typing import Any, Callable, Dict, Optional

from common.config import TransferConfig
from common.constants import (
    ERR_FILE_NOT_FOUND,
    ERR_UNKNOWN_COMMAND,
    PROGRESS_LOG_INTERVAL_SECONDS,
    RESP_FAILED,
    RESP_OK,
    RESP_READY,
    RESP_SUCCESS,
    SERVER_FILE_PREFIX,
)
from common.exceptions import (
    IncompleteTransferError,
    PeerSyncError,
    StorageError,
)
from common.logging_config import get_logger
from common.protocol import (
    GetFile,
    ListFiles,
    PutFile,
    SubscribeTransfers,
    encode_file_list,
    encode_header,
    encode_line,
    error_line,
    parse_command,
    read_header,
    read_line,
    receive_payload,
    with_timeout,
)
from common.transfer_log import DIRECTION_RECEIVED, DIRECTION_SENT, TransferLogSink, report_transfer
from common.types import FileEntry, TransferDirection, TransferSession
from catalog.file_catalog import FileCatalog

logger = get_logger(__name__)

STOP_GRACE_SECONDS = 5.0


def _peer_name(writer: asyncio.StreamWriter) -> str:
    peer = writer.get_extra_info('peername')
    if isinstance(peer, tuple) and len(peer) >= 2:
        return f"{peer[0]}:{peer[1]}"
    return str(peer)


class TransferServer:
    """
    Serves one FileCatalog on the transfer port.

    Every accepted connection runs as its own task and carries exactly one
    command, so a slow transfer never blocks listings or other transfers.
    Clients that subscribe with READY_FOR_SERVER_TRANSFERS stay connected and
    receive files sent with push_file().
    """

    def __init__(
        self,
        catalog: FileCatalog,
        config: Optional[TransferConfig] = None,
        on_file_received: Optional[Callable[[str], Any]] = None,
        transfer_log: Optional[TransferLogSink] = None
    ):
        """
        Args:
            catalog: Catalog served to peers and receiving uploads
            config: Bind address, port and timeouts
            on_file_received: Called (or awaited) with the name of each completed upload
            transfer_log: Sink for completed transfers
        """
        self.catalog = catalog
        self.config = config or TransferConfig()
        self.on_file_received = on_file_received
        self.transfer_log = transfer_log

        self._server: Optional[asyncio.AbstractServer] = None
        self._connections: Dict[asyncio.Task, asyncio.StreamWriter] = {}
        self._ready_clients: Dict[asyncio.StreamWriter, asyncio.Lock] = {}
        self._lifecycle_lock = asyncio.Lock()

    @property
    def running(self) -> bool:
        return self._server is not None

    @property
    def port(self) -> Optional[int]:
        """Port actually bound (useful when configured with port 0)."""
        if self._server is None or not self._server.sockets:
            return None
        return self._server.sockets[0].getsockname()[1]

    @property
    def ready_client_count(self) -> int:
        return len(self._ready_clients)

    async def start(self) -> None:
        """
        Bind the listening socket and start accepting.

        Starting a running server is a no-op.

        Raises:
            OSError: If the port cannot be bound
        """
        async with self._lifecycle_lock:
            if self._server is not None:
                logger.debug("Transfer server is already running")
                return

            self._server = await asyncio.start_server(
                self._handle_client,
                self.config.host,
                self.config.port,
                reuse_address=True
            )
            logger.info(f"Transfer server listening on {self.config.host}:{self.port}")

    async def stop(self) -> None:
        """
        Close the listener and every open connection.

        A second call is a no-op.
        """
        async with self._lifecycle_lock:
            if self._server is None:
                return

            server = self._server
            self._server = None
            server.close()

            self._ready_clients.clear()
            tasks = list(self._connections)
            for writer in list(self._connections.values()):
                writer.close()
            for task in tasks:
                task.cancel()
            if tasks:
                await asyncio.gather(*tasks, return_exceptions=True)
            self._connections.clear()

            try:
                await asyncio.wait_for(server.wait_closed(), timeout=STOP_GRACE_SECONDS)
            except asyncio.TimeoutError:
                logger.warning("Timed out waiting for transfer server sockets to close")

            logger.info("Transfer server stopped")

    async def _handle_client(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        task = asyncio.current_task()
        self._connections[task] = writer
        peer = _peer_name(writer)
        logger.debug(f"Client connected from {peer}")

        try:
            line = await read_line(reader, self.config.response_timeout)
            command = parse_command(line)

            if isinstance(command, ListFiles):
                await self._send_file_list(writer, peer)
            elif isinstance(command, GetFile):
                await self._send_file(writer, command.name, peer)
            elif isinstance(command, PutFile):
                await self._receive_upload(reader, writer, peer)
            elif isinstance(command, SubscribeTransfers):
                await self._hold_subscription(reader, writer, peer)
            else:
                logger.error(f"Unknown command from {peer}: {line[:80]!r}")
                await self._reply(writer, error_line(ERR_UNKNOWN_COMMAND))
        except (PeerSyncError, ConnectionError, OSError) as e:
            logger.error(f"Error handling client {peer}: {e}")
        finally:
            self._connections.pop(task, None)
            self._ready_clients.pop(writer, None)
            writer.close()
            try:
                await writer.wait_closed()
            except (ConnectionError, OSError):
                pass

    async def _reply(self, writer: asyncio.StreamWriter, line: str) -> None:
        writer.write(encode_line(line))
        await with_timeout(writer.drain(), self.config.response_timeout, "client to accept data")

    async def _send_file_list(self, writer: asyncio.StreamWriter, peer: str) -> None:
        try:
            names = await asyncio.to_thread(self.catalog.names)
        except StorageError as e:
            logger.error(f"Cannot list shared root for {peer}: {e}")
            await self._reply(writer, error_line(str(e)))
            return

        await self._reply(writer, encode_file_list(names))
        logger.debug(f"Sent file list to {peer}: {len(names)} file(s)")

    async def _send_file(self, writer: asyncio.StreamWriter, name: str, peer: str) -> None:
        entry = await asyncio.to_thread(self.catalog.get_file, name)
        if entry is None:
            logger.error(f"File not found: {name} (requested by {peer})")
            await self._reply(writer, error_line(ERR_FILE_NOT_FOUND))
            return

        await self._reply(writer, RESP_OK)
        session = TransferSession(TransferDirection.DOWNLOAD, peer, file_name=name)
        await self._stream_entry(writer, entry, session)
        report_transfer(self.transfer_log, name, DIRECTION_SENT)
        logger.info(f"File download completed: {name} ({entry.size} bytes) to {peer}")

    async def _stream_entry(
        self,
        writer: asyncio.StreamWriter,
        entry: FileEntry,
        session: TransferSession
    ) -> None:
        """
        Write header and exactly entry.size bytes.

        Raises:
            IncompleteTransferError: If the file shrank since it was listed;
                the connection must then be dropped so the peer sees a short read
        """
        writer.write(encode_header(entry.name, entry.size))
        session.begin_payload(entry.size)

        with self.catalog.open_read(entry) as stream:
            while session.bytes_transferred < entry.size:
                piece = stream.read(min(self.config.chunk_size, entry.size - session.bytes_transferred))
                if not piece:
                    break
                writer.write(piece)
                await with_timeout(writer.drain(), self.config.response_timeout, "client to accept data")
                session.add_bytes(len(piece))
                if session.progress_due(PROGRESS_LOG_INTERVAL_SECONDS):
                    logger.debug(session.describe_progress())

        if not session.is_complete:
            session.fail()
            raise IncompleteTransferError(
                f"{entry.name} changed while sending: {session.bytes_transferred}/{entry.size} bytes",
                received=session.bytes_transferred,
                expected=entry.size
            )
        session.complete()

    async def _receive_upload(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        peer: str
    ) -> None:
        await self._reply(writer, RESP_READY)

        name, size = await read_header(reader, self.config.response_timeout)
        logger.info(f"Receiving file: {name} (size: {size} bytes) from {peer}")

        session = TransferSession(TransferDirection.UPLOAD, peer, file_name=name)
        session.begin_payload(size)

        def on_progress(count: int) -> None:
            session.add_bytes(count)
            if session.progress_due(PROGRESS_LOG_INTERVAL_SECONDS):
                logger.debug(session.describe_progress())

        try:
            with self.catalog.open_write(name) as out:
                await receive_payload(
                    reader,
                    size,
                    out.write,
                    self.config.response_timeout,
                    chunk_size=self.config.chunk_size,
                    on_progress=on_progress
                )
        except (IncompleteTransferError, StorageError, OSError, PeerSyncError) as e:
            session.fail()
            logger.error(f"File transfer from {peer} failed for {name}: {e}")
            await self._reply(writer, RESP_FAILED)
            return

        session.complete()
        await self._reply(writer, RESP_SUCCESS)
        logger.info(f"File received successfully: {name}")
        report_transfer(self.transfer_log, name, DIRECTION_RECEIVED)
        await self._notify_received(name)

    async def _notify_received(self, name: str) -> None:
        if self.on_file_received is None:
            return
        try:
            result = self.on_file_received(name)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            logger.error(f"File-received callback failed for {name}: {e}", exc_info=True)

    async def _hold_subscription(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        peer: str
    ) -> None:
        self._ready_clients[writer] = asyncio.Lock()
        await self._reply(writer, RESP_OK)
        logger.info(f"Client {peer} is ready for server transfers")

        # Nothing is expected from the client; EOF ends the subscription.
        while await reader.read(1024):
            pass
        logger.info(f"Client {peer} ended its transfer subscription")

    async def push_file(self, name: str) -> int:
        """
        Send a catalog file to every subscribed client.

        Clients that fail are dropped from the subscription list.

        Returns:
            Number of clients that received the whole file
        """
        entry = await asyncio.to_thread(self.catalog.get_file, name)
        if entry is None:
            logger.error(f"Cannot push {name}: file not found")
            return 0

        clients = list(self._ready_clients.items())
        if not clients:
            logger.warning("No clients ready for server-initiated transfers")
            return 0

        delivered = 0
        for writer, lock in clients:
            peer = _peer_name(writer)
            session = TransferSession(TransferDirection.PUSH, peer, file_name=name)
            try:
                async with lock:
                    writer.write(encode_line(f"{SERVER_FILE_PREFIX}{name}"))
                    await self._stream_entry(writer, entry, session)
                delivered += 1
                report_transfer(self.transfer_log, name, DIRECTION_SENT)
                logger.info(f"Server-initiated transfer completed: {name} to {peer}")
            except (PeerSyncError, ConnectionError, OSError) as e:
                logger.error(f"Error sending {name} to client {peer}: {e}")
                self._ready_clients.pop(writer, None)
                writer.close()
        return delivered
