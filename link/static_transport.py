"""Link transport for peers already reachable at a known address."""

from typing import Dict, Optional

from common.addressing import validate_peer_address
from common.exceptions import FailureReason, TransportError
from common.logging_config import get_logger
from link.models import ConnectionInfo, GroupInfo
from link.transport import LinkTransport

logger = get_logger(__name__)


class StaticAddressTransport(LinkTransport):
    """
    Maps peer ids to fixed addresses, e.g. devices on the same LAN.

    "Connecting" forms a two-member group in which the remote peer is a
    client and this device is the owner.
    """

    def __init__(self, peers: Dict[str, str], local_id: str = "local"):
        """
        Args:
            peers: peer_id -> IP address or hostname
            local_id: Identifier of this device inside the group

        Raises:
            AddressValidationError: If any address is malformed
        """
        self.peers = {peer_id: validate_peer_address(addr) for peer_id, addr in peers.items()}
        self.local_id = local_id
        self.discovering = False
        self._pending: Optional[str] = None
        self._connected: Optional[str] = None

    def add_peer(self, peer_id: str, address: str) -> None:
        self.peers[peer_id] = validate_peer_address(address)

    async def discover_peers(self) -> None:
        self.discovering = True
        logger.debug(f"Known peers: {sorted(self.peers)}")

    async def stop_discovery(self) -> None:
        self.discovering = False

    async def connect(self, peer_id: str) -> None:
        if peer_id not in self.peers:
            raise TransportError(f"Unknown peer {peer_id}", FailureReason.ERROR)
        if self._connected is not None and self._connected != peer_id:
            raise TransportError(f"Already grouped with {self._connected}", FailureReason.BUSY)
        self._pending = peer_id
        self._connected = peer_id
        logger.info(f"Group formed with {peer_id} at {self.peers[peer_id]}")

    async def cancel_connect(self) -> None:
        if self._pending is not None:
            logger.debug(f"Cancelled pending connect to {self._pending}")
        self._pending = None

    async def remove_group(self) -> None:
        if self._connected is not None:
            logger.info(f"Group with {self._connected} removed")
        self._connected = None
        self._pending = None

    async def request_group_info(self) -> Optional[GroupInfo]:
        if self._connected is None:
            return None
        return GroupInfo(owner=self.local_id, clients=(self._connected,))

    async def request_connection_info(self) -> Optional[ConnectionInfo]:
        if self._connected is None:
            return None
        return ConnectionInfo(
            group_formed=True,
            is_group_owner=True,
            remote_address=self.peers[self._connected]
        )
