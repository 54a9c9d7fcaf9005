"""Data types of the peer connection state machine."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Optional


class PeerState(str, Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    FAILED = "failed"
    DISCONNECTING = "disconnecting"


@dataclass(frozen=True)
class ConnectionState:
    """Snapshot published to the host whenever the connection changes."""

    connecting: bool = False
    connected: bool = False
    failed: bool = False
    error_message: Optional[str] = None

    def __post_init__(self):
        if self.connecting and self.connected:
            raise ValueError("A connection cannot be connecting and connected at once")


@dataclass(frozen=True)
class ConnectionInfo:
    """What the link transport reports about the formed group."""

    group_formed: bool
    is_group_owner: bool = False
    remote_address: Optional[str] = None

    @property
    def usable(self) -> bool:
        return self.group_formed and bool(self.remote_address)


@dataclass(frozen=True)
class GroupInfo:
    """Current membership of the group."""

    owner: Optional[str] = None
    clients: tuple[str, ...] = ()

    def contains(self, peer_id: str) -> bool:
        return peer_id == self.owner or peer_id in self.clients


@dataclass
class PeerConnection:
    """
    Mutable record of the one peer a supervisor is working with.

    attempt_id identifies the connect attempt; results carrying another id
    belong to a superseded attempt.
    """

    peer_id: str
    attempt_id: int
    state: PeerState = PeerState.IDLE
    remote_address: Optional[str] = None
    keep_alive_failures: int = 0
    retry_count: int = 0
    last_keep_alive_check: float = field(default=0.0)
