"""File-transfer protocol roles: per-operation client and concurrent server."""

from transfer.client import TransferClient
from transfer.server import TransferServer

__all__ = [
    "TransferClient",
    "TransferServer",
]
