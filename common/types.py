"""Shared data type definitions (FileEntry, TransferSession, etc.)."""

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


@dataclass(frozen=True)
class FileEntry:
    """
    A file in a storage root.

    The handle is opaque to everything except the storage provider that
    produced it.
    """
    name: str
    handle: Any
    size: int
    is_directory: bool = False


class TransferDirection(str, Enum):
    LIST = "list"
    DOWNLOAD = "download"
    UPLOAD = "upload"
    PUSH = "push"


class SessionState(str, Enum):
    HANDSHAKING = "handshaking"
    TRANSMITTING = "transmitting"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class TransferSession:
    """
    Bookkeeping for one logical operation over one connection.

    Sessions are never reused: a new call gets a new session.
    """
    direction: TransferDirection
    peer: str
    file_name: str = ""
    state: SessionState = SessionState.HANDSHAKING
    bytes_transferred: int = 0
    total_bytes: int = 0
    started_at: float = field(default_factory=time.monotonic)
    _last_progress_log: float = field(default=0.0, repr=False)

    def begin_payload(self, total_bytes: int) -> None:
        self.total_bytes = total_bytes
        self.state = SessionState.TRANSMITTING

    def add_bytes(self, count: int) -> None:
        self.bytes_transferred += count

    def complete(self) -> None:
        self.state = SessionState.COMPLETED

    def fail(self) -> None:
        self.state = SessionState.FAILED

    @property
    def is_complete(self) -> bool:
        return self.bytes_transferred == self.total_bytes

    def progress_due(self, interval: float) -> bool:
        """Return True at most once per interval while transmitting."""
        now = time.monotonic()
        if now - self._last_progress_log >= interval:
            self._last_progress_log = now
            return True
        return False

    def describe_progress(self) -> str:
        elapsed = max(time.monotonic() - self.started_at, 1e-6)
        percent = (self.bytes_transferred * 100.0 / self.total_bytes) if self.total_bytes else 100.0
        speed_kib = self.bytes_transferred / elapsed / 1024
        return (
            f"{self.direction.value} progress [{self.file_name}]: {percent:.0f}% "
            f"({self.bytes_transferred}/{self.total_bytes} bytes), speed {speed_kib:.2f} KiB/s"
        )
