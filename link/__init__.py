"""Peer link supervision: connection state machine and the link transport boundary."""

from link.models import ConnectionInfo, ConnectionState, GroupInfo, PeerConnection, PeerState
from link.static_transport import StaticAddressTransport
from link.supervisor import ConnectionSupervisor
from link.transport import LinkTransport

__all__ = [
    "ConnectionInfo",
    "ConnectionState",
    "ConnectionSupervisor",
    "GroupInfo",
    "LinkTransport",
    "PeerConnection",
    "PeerState",
    "StaticAddressTransport",
]
