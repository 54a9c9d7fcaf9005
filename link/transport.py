"""Boundary to the platform peer-to-peer link (discovery, pairing, groups)."""

from abc import ABC, abstractmethod
from typing import Optional

from link.models import ConnectionInfo, GroupInfo


class LinkTransport(ABC):
    """
    Operations the connection supervisor drives.

    Every method may raise TransportError; connect() must set its reason so
    that busy conditions can be retried.
    """

    @abstractmethod
    async def discover_peers(self) -> None:
        ...

    @abstractmethod
    async def stop_discovery(self) -> None:
        ...

    @abstractmethod
    async def connect(self, peer_id: str) -> None:
        """
        Ask the platform to connect to a peer.

        Returning means the request was accepted, not that the group formed.

        Raises:
            TransportError: With reason UNSUPPORTED, BUSY or ERROR
        """
        ...

    @abstractmethod
    async def cancel_connect(self) -> None:
        ...

    @abstractmethod
    async def remove_group(self) -> None:
        ...

    @abstractmethod
    async def request_group_info(self) -> Optional[GroupInfo]:
        """Return current group membership, or None when no group exists."""
        ...

    @abstractmethod
    async def request_connection_info(self) -> Optional[ConnectionInfo]:
        """Return the current connection info, or None when not available yet."""
        ...
