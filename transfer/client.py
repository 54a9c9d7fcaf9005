"""Client side of the transfer protocol: listings, downloads, uploads and pushes."""

import asyncio
import inspect
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Awaitable, Callable, List, Optional, Set, Tuple, TypeVar

from common.addressing import validate_peer_address
from common.config import TransferConfig
from common.constants import (
    DEFAULT_TRANSFER_PORT,
    PROGRESS_LOG_INTERVAL_SECONDS,
    RESP_OK,
    RESP_READY,
    RESP_SUCCESS,
    SERVER_FILE_PREFIX,
    STREAM_LINE_LIMIT_BYTES,
)
from common.exceptions import (
    ConnectionTimeoutError,
    FailureReason,
    PeerSyncError,
    ProtocolError,
    StorageError,
    TransferCancelledError,
    TransportError,
)
from common.logging_config import get_logger
from common.protocol import (
    GetFile,
    ListFiles,
    PutFile,
    SubscribeTransfers,
    decode_file_list,
    encode_header,
    encode_line,
    parse_error,
    read_header,
    read_line,
    receive_payload,
    with_timeout,
)
from common.transfer_log import DIRECTION_RECEIVED, DIRECTION_SENT, TransferLogSink, report_transfer
from common.types import FileEntry, TransferDirection, TransferSession
from catalog.file_catalog import FileCatalog

logger = get_logger(__name__)

T = TypeVar("T")

Connection = Tuple[asyncio.StreamReader, asyncio.StreamWriter, TransferSession]


class TransferClient:
    """
    Talks to one peer's TransferServer.

    Each operation opens its own connection, so operations may run
    concurrently. cleanup() aborts everything in flight and retires the
    client; later calls raise TransferCancelledError.
    """

    def __init__(
        self,
        host: str,
        port: int = DEFAULT_TRANSFER_PORT,
        config: Optional[TransferConfig] = None,
        transfer_log: Optional[TransferLogSink] = None
    ):
        """
        Args:
            host: Peer address (IP literal or hostname)
            port: Peer transfer port
            config: Timeouts and retry policy; host/port fields are ignored
            transfer_log: Sink for completed transfers

        Raises:
            AddressValidationError: If the host is malformed
        """
        self.host = validate_peer_address(host)
        self.port = port
        self.config = config or TransferConfig()
        self.transfer_log = transfer_log

        self._writers: Set[asyncio.StreamWriter] = set()
        self._closed = asyncio.Event()

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    @property
    def address(self) -> str:
        return f"{self.host}:{self.port}"

    def cleanup(self) -> None:
        """
        Close every open connection and wake pending waits.

        Safe to call repeatedly.
        """
        if self._closed.is_set():
            return
        self._closed.set()
        writers = list(self._writers)
        self._writers.clear()
        for writer in writers:
            writer.close()
        logger.info(f"Transfer client for {self.address} cleaned up ({len(writers)} connection(s) closed)")

    async def _until_closed(self, awaitable: Awaitable[T], timeout: Optional[float], what: str) -> T:
        """
        Await something that closing a socket cannot interrupt (connects, sleeps).

        Raises:
            TransferCancelledError: If cleanup() runs first
            ConnectionTimeoutError: If the timeout expires first
        """
        operation = asyncio.ensure_future(awaitable)
        closed = asyncio.ensure_future(self._closed.wait())
        try:
            done, _ = await asyncio.wait(
                {operation, closed},
                timeout=timeout,
                return_when=asyncio.FIRST_COMPLETED
            )
        except BaseException:
            operation.cancel()
            raise
        finally:
            closed.cancel()

        if operation in done:
            return operation.result()
        operation.cancel()
        if closed in done:
            raise TransferCancelledError(f"Cancelled while waiting for {what}")
        raise ConnectionTimeoutError(f"Timed out after {timeout}s waiting for {what}")

    async def _open_connection(self) -> Tuple[asyncio.StreamReader, asyncio.StreamWriter]:
        """
        Connect with a bounded number of attempts and a growing delay between them.

        Raises:
            ConnectionTimeoutError: If the last attempt timed out
            TransportError: If the last attempt was refused or unreachable
            TransferCancelledError: If cleanup() runs meanwhile
        """
        max_retries = self.config.max_retries
        last_error: Optional[Exception] = None

        for attempt in range(1, max_retries + 1):
            try:
                logger.debug(f"Connecting to {self.address} (attempt {attempt}/{max_retries})")
                return await self._until_closed(
                    asyncio.open_connection(self.host, self.port, limit=STREAM_LINE_LIMIT_BYTES),
                    self.config.connect_timeout,
                    f"connection to {self.address}"
                )
            except (ConnectionTimeoutError, OSError) as e:
                last_error = e
                if attempt < max_retries:
                    delay = self.config.retry_delay * attempt
                    logger.warning(
                        f"Connection to {self.address} failed, retrying in {delay}s "
                        f"(attempt {attempt}/{max_retries}): {e}"
                    )
                    await self._until_closed(asyncio.sleep(delay), None, "connection retry")

        if isinstance(last_error, ConnectionTimeoutError):
            raise ConnectionTimeoutError(
                f"Connection to {self.address} timed out after {max_retries} attempt(s)"
            ) from last_error
        raise TransportError(
            f"Failed to connect to {self.address} after {max_retries} attempt(s): {last_error}",
            FailureReason.ERROR
        ) from last_error

    @asynccontextmanager
    async def _connection(self, direction: TransferDirection, file_name: str = "") -> AsyncIterator[Connection]:
        if self._closed.is_set():
            raise TransferCancelledError(f"Transfer client for {self.address} is closed")

        reader, writer = await self._open_connection()
        if self._closed.is_set():
            writer.close()
            raise TransferCancelledError(f"Transfer client for {self.address} is closed")

        self._writers.add(writer)
        session = TransferSession(direction, self.address, file_name=file_name)
        try:
            yield reader, writer, session
        except (PeerSyncError, ConnectionError, OSError) as e:
            session.fail()
            if self._closed.is_set() and not isinstance(e, TransferCancelledError):
                raise TransferCancelledError(f"{direction.value} of {file_name or 'listing'} cancelled") from e
            raise
        finally:
            self._writers.discard(writer)
            writer.close()
            try:
                await writer.wait_closed()
            except (ConnectionError, OSError):
                pass

    async def _send_line(self, writer: asyncio.StreamWriter, line: str) -> None:
        writer.write(encode_line(line))
        await with_timeout(writer.drain(), self.config.response_timeout, "peer to accept data")

    async def request_file_list(self) -> List[str]:
        """
        Fetch the names of every file the peer shares.

        Raises:
            ConnectionTimeoutError: If connecting or the response times out
            TransportError: If the peer is unreachable
            ProtocolError: If the peer answers with an error or malformed JSON
            TransferCancelledError: If cleanup() interrupts the request
        """
        async with self._connection(TransferDirection.LIST) as (reader, writer, session):
            await self._send_line(writer, ListFiles().to_line())
            line = await read_line(reader, self.config.response_timeout)
            names = decode_file_list(line)
            session.complete()

        logger.info(f"Received file list from {self.address}: {len(names)} file(s)")
        return names

    async def request_file(self, name: str, catalog: FileCatalog) -> bool:
        """
        Download one file into the catalog's root.

        The destination only appears once every declared byte has arrived.

        Returns:
            True if the file was stored, False on any refusal or failure

        Raises:
            TransferCancelledError: If cleanup() interrupts the download
        """
        try:
            async with self._connection(TransferDirection.DOWNLOAD, name) as (reader, writer, session):
                await self._send_line(writer, GetFile(name).to_line())

                status = await read_line(reader, self.config.response_timeout)
                if status != RESP_OK:
                    logger.error(f"Peer refused {name}: {parse_error(status) or status}")
                    session.fail()
                    return False

                header_name, size = await read_header(reader, self.config.response_timeout)
                if header_name != name:
                    raise ProtocolError(f"Requested {name!r} but peer sent {header_name!r}")

                logger.info(f"Receiving {name} ({size} bytes) from {self.address}")
                session.begin_payload(size)
                with catalog.open_write(name) as out:
                    await receive_payload(
                        reader,
                        size,
                        out.write,
                        self.config.response_timeout,
                        chunk_size=self.config.chunk_size,
                        on_progress=self._progress_logger(session)
                    )
                session.complete()
        except TransferCancelledError:
            raise
        except (PeerSyncError, ConnectionError, OSError) as e:
            logger.error(f"Download of {name} from {self.address} failed: {e}")
            return False

        report_transfer(self.transfer_log, name, DIRECTION_RECEIVED)
        logger.info(f"File downloaded successfully: {name}")
        return True

    async def send_file(self, entry: FileEntry, catalog: FileCatalog) -> bool:
        """
        Upload one catalog entry to the peer.

        Returns:
            True only if the peer confirmed the complete file

        Raises:
            TransferCancelledError: If cleanup() interrupts the upload
        """
        name = entry.name
        try:
            async with self._connection(TransferDirection.UPLOAD, name) as (reader, writer, session):
                await self._send_line(writer, PutFile().to_line())

                response = await read_line(reader, self.config.response_timeout)
                if response != RESP_READY:
                    raise ProtocolError(f"Peer not ready for upload: {response[:80]!r}")

                writer.write(encode_header(name, entry.size))
                session.begin_payload(entry.size)
                progress = self._progress_logger(session)

                with catalog.open_read(entry) as stream:
                    while session.bytes_transferred < entry.size:
                        piece = stream.read(min(self.config.chunk_size, entry.size - session.bytes_transferred))
                        if not piece:
                            break
                        writer.write(piece)
                        await with_timeout(writer.drain(), self.config.response_timeout, "peer to accept data")
                        progress(len(piece))

                if not session.is_complete:
                    raise StorageError(
                        f"{name} changed while sending: {session.bytes_transferred}/{entry.size} bytes"
                    )

                completion = await read_line(reader, self.config.response_timeout)
                if completion != RESP_SUCCESS:
                    logger.error(f"Peer did not store {name}: {completion}")
                    session.fail()
                    return False
                session.complete()
        except TransferCancelledError:
            raise
        except (PeerSyncError, ConnectionError, OSError) as e:
            logger.error(f"Upload of {name} to {self.address} failed: {e}")
            return False

        report_transfer(self.transfer_log, name, DIRECTION_SENT)
        logger.info(f"File uploaded successfully: {name}")
        return True

    async def listen_for_pushes(
        self,
        catalog: FileCatalog,
        on_file: Optional[Callable[[str], Any]] = None
    ) -> int:
        """
        Subscribe to server-initiated transfers and store each pushed file.

        Runs until the server closes the subscription.

        Args:
            catalog: Destination of pushed files
            on_file: Called (or awaited) with each stored file name

        Returns:
            Number of files received

        Raises:
            ProtocolError: If the server refuses the subscription or a push is malformed
            TransferCancelledError: If cleanup() ends the subscription
        """
        received = 0
        async with self._connection(TransferDirection.PUSH) as (reader, writer, session):
            await self._send_line(writer, SubscribeTransfers().to_line())
            response = await read_line(reader, self.config.response_timeout)
            if response != RESP_OK:
                raise ProtocolError(f"Peer refused transfer subscription: {response[:80]!r}")
            logger.info(f"Subscribed to transfers from {self.address}")

            while True:
                raw = await reader.readline()
                if not raw:
                    if self._closed.is_set():
                        raise TransferCancelledError(f"Transfer subscription to {self.address} cancelled")
                    break
                line = raw.decode("utf-8", errors="replace").rstrip("\r\n")
                if not raw.endswith(b"\n") or not line.startswith(SERVER_FILE_PREFIX):
                    raise ProtocolError(f"Unexpected push announcement: {line[:80]!r}")

                name, size = await read_header(reader, self.config.response_timeout)
                push = TransferSession(TransferDirection.PUSH, self.address, file_name=name)
                push.begin_payload(size)
                with catalog.open_write(name) as out:
                    await receive_payload(
                        reader,
                        size,
                        out.write,
                        self.config.response_timeout,
                        chunk_size=self.config.chunk_size,
                        on_progress=self._progress_logger(push)
                    )
                push.complete()
                received += 1
                report_transfer(self.transfer_log, name, DIRECTION_RECEIVED)
                logger.info(f"Received pushed file {name} ({size} bytes)")
                await self._notify(on_file, name)

            session.complete()

        logger.info(f"Transfer subscription to {self.address} ended after {received} file(s)")
        return received

    @staticmethod
    def _progress_logger(session: TransferSession) -> Callable[[int], None]:
        def on_progress(count: int) -> None:
            session.add_bytes(count)
            if session.progress_due(PROGRESS_LOG_INTERVAL_SECONDS):
                logger.debug(session.describe_progress())
        return on_progress

    @staticmethod
    async def _notify(callback: Optional[Callable[[str], Any]], name: str) -> None:
        if callback is None:
            return
        try:
            result = callback(name)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            logger.error(f"Pushed-file callback failed for {name}: {e}", exc_info=True)

    def __repr__(self) -> str:
        return f"TransferClient({self.address}, closed={self.closed})"
