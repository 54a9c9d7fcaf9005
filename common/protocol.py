"""Wire protocol: command variants, line framing and binary payload headers.

Every exchange is one command line from the client, followed by text
response lines and, for file payloads, a header made of a length-prefixed
UTF-8 name and an 8-byte big-endian size, then exactly that many raw bytes.
"""

import asyncio
import json
import struct
from dataclasses import dataclass
from typing import Awaitable, Callable, List, Literal, Optional, Tuple, TypeVar

from pydantic import TypeAdapter, ValidationError

from common.constants import (
    CMD_GET_FILE_LIST,
    CMD_GET_FILE_PREFIX,
    CMD_UPLOAD_FILE,
    CMD_READY_FOR_SERVER_TRANSFERS,
    MAX_NAME_BYTES,
    RESP_ERROR_PREFIX,
    STREAM_CHUNK_SIZE_BYTES,
)
from common.exceptions import (
    ConnectionTimeoutError,
    IncompleteTransferError,
    ProtocolError,
)

T = TypeVar("T")

_NAME_LENGTH = struct.Struct(">H")
_PAYLOAD_SIZE = struct.Struct(">q")

_FILE_LIST = TypeAdapter(List[str])


@dataclass(frozen=True)
class ListFiles:
    """Request the recursive listing of the peer's shared root."""

    command: Literal["list"] = "list"

    def to_line(self) -> str:
        return CMD_GET_FILE_LIST


@dataclass(frozen=True)
class GetFile:
    """Request one file by name."""

    name: str
    command: Literal["get"] = "get"

    def to_line(self) -> str:
        return f"{CMD_GET_FILE_PREFIX}{self.name}"


@dataclass(frozen=True)
class PutFile:
    """Announce an upload; the payload follows the server's READY."""

    command: Literal["put"] = "put"

    def to_line(self) -> str:
        return CMD_UPLOAD_FILE


@dataclass(frozen=True)
class SubscribeTransfers:
    """Keep the connection open to receive server-initiated pushes."""

    command: Literal["subscribe"] = "subscribe"

    def to_line(self) -> str:
        return CMD_READY_FOR_SERVER_TRANSFERS


Command = ListFiles | GetFile | PutFile | SubscribeTransfers


def parse_command(line: str) -> Optional[Command]:
    """
    Parse one protocol line into a Command.

    Args:
        line: Command line without its terminator

    Returns:
        The matching Command, or None when the line is not a known command
        (including GET_FILE with a blank name)
    """
    if line == CMD_GET_FILE_LIST:
        return ListFiles()
    if line.startswith(CMD_GET_FILE_PREFIX):
        name = line[len(CMD_GET_FILE_PREFIX):]
        return GetFile(name) if name.strip() else None
    if line == CMD_UPLOAD_FILE:
        return PutFile()
    if line == CMD_READY_FOR_SERVER_TRANSFERS:
        return SubscribeTransfers()
    return None


def error_line(reason: str) -> str:
    return f"{RESP_ERROR_PREFIX}{reason}"


def parse_error(line: str) -> Optional[str]:
    """
    Extract the reason from an ERROR response line.

    Returns:
        Reason text, or None if the line is not an error response
    """
    if line.startswith(RESP_ERROR_PREFIX):
        return line[len(RESP_ERROR_PREFIX):].strip()
    return None


def encode_line(text: str) -> bytes:
    return text.encode("utf-8") + b"\n"


def encode_file_list(names: List[str]) -> str:
    return json.dumps(names)


def decode_file_list(line: str) -> List[str]:
    """
    Validate a listing line.

    Raises:
        ProtocolError: If the line is not a JSON array of strings
    """
    reason = parse_error(line)
    if reason is not None:
        raise ProtocolError(f"Peer refused listing: {reason}")
    try:
        return _FILE_LIST.validate_json(line)
    except ValidationError as e:
        raise ProtocolError(f"Malformed file list: {line[:80]!r}") from e


def encode_header(name: str, size: int) -> bytes:
    """
    Encode the payload header (length-prefixed name + 8-byte size).

    Raises:
        ProtocolError: If the name is too long or the size is negative
    """
    raw = name.encode("utf-8")
    if len(raw) > MAX_NAME_BYTES:
        raise ProtocolError(f"File name too long ({len(raw)} bytes)")
    if size < 0:
        raise ProtocolError(f"Negative payload size {size}")
    return _NAME_LENGTH.pack(len(raw)) + raw + _PAYLOAD_SIZE.pack(size)


async def with_timeout(awaitable: Awaitable[T], timeout: float, what: str) -> T:
    """
    Await with a deadline, mapping expiry to ConnectionTimeoutError.
    """
    try:
        return await asyncio.wait_for(awaitable, timeout=timeout)
    except asyncio.TimeoutError as e:
        raise ConnectionTimeoutError(f"Timed out after {timeout}s waiting for {what}") from e


async def read_line(reader: asyncio.StreamReader, timeout: float) -> str:
    """
    Read one newline-terminated UTF-8 line.

    Raises:
        ConnectionTimeoutError: If no full line arrives in time
        ProtocolError: If the peer closes first or the line is not UTF-8
    """
    try:
        raw = await with_timeout(reader.readuntil(b"\n"), timeout, "response line")
    except asyncio.IncompleteReadError as e:
        raise ProtocolError("Connection closed before a full line was received") from e
    except asyncio.LimitOverrunError as e:
        raise ProtocolError("Response line exceeds stream limit") from e
    try:
        return raw.decode("utf-8").rstrip("\r\n")
    except UnicodeDecodeError as e:
        raise ProtocolError("Response line is not valid UTF-8") from e


async def read_header(reader: asyncio.StreamReader, timeout: float) -> Tuple[str, int]:
    """
    Read a payload header.

    Returns:
        Tuple of (file name, declared size)

    Raises:
        ProtocolError: If the header is truncated, undecodable or declares a negative size
        ConnectionTimeoutError: If the header does not arrive in time
    """
    try:
        (length,) = _NAME_LENGTH.unpack(
            await with_timeout(reader.readexactly(_NAME_LENGTH.size), timeout, "header")
        )
        raw_name = await with_timeout(reader.readexactly(length), timeout, "header")
        (size,) = _PAYLOAD_SIZE.unpack(
            await with_timeout(reader.readexactly(_PAYLOAD_SIZE.size), timeout, "header")
        )
    except asyncio.IncompleteReadError as e:
        raise ProtocolError("Connection closed inside payload header") from e
    try:
        name = raw_name.decode("utf-8")
    except UnicodeDecodeError as e:
        raise ProtocolError("Payload name is not valid UTF-8") from e
    if size < 0:
        raise ProtocolError(f"Negative payload size {size}")
    return name, size


async def receive_payload(
    reader: asyncio.StreamReader,
    size: int,
    write: Callable[[bytes], object],
    timeout: float,
    chunk_size: int = STREAM_CHUNK_SIZE_BYTES,
    on_progress: Optional[Callable[[int], None]] = None
) -> int:
    """
    Copy exactly `size` bytes from the stream into `write`.

    Args:
        reader: Source stream
        size: Declared payload size
        write: Callable receiving each piece
        timeout: Deadline for every individual read
        chunk_size: Maximum piece size
        on_progress: Called with the byte count of each piece

    Returns:
        Number of bytes received

    Raises:
        IncompleteTransferError: If the stream ends before `size` bytes
        ConnectionTimeoutError: If a read stalls past the deadline
    """
    received = 0
    while received < size:
        piece = await with_timeout(
            reader.read(min(chunk_size, size - received)), timeout, "payload data"
        )
        if not piece:
            break
        write(piece)
        received += len(piece)
        if on_progress:
            on_progress(len(piece))

    if received != size:
        raise IncompleteTransferError(
            f"Transfer incomplete: {received}/{size} bytes",
            received=received,
            expected=size
        )
    return received
