"""Custom exception classes shared by every PeerSync component."""

from enum import Enum


class PeerSyncError(Exception):
    """
    Base exception class for all PeerSync errors.
    """
    pass


class FailureReason(str, Enum):
    """Reason codes reported by the link transport when a request fails."""
    UNSUPPORTED = "unsupported"
    BUSY = "busy"
    ERROR = "error"
    UNKNOWN = "unknown"


class TransportError(PeerSyncError):
    """
    Raised when the link transport or a socket connect fails.

    Busy failures are transient and may be retried.
    """

    def __init__(self, message: str, reason: FailureReason = FailureReason.UNKNOWN):
        super().__init__(message)
        self.reason = reason

    @property
    def is_transient(self) -> bool:
        return self.reason == FailureReason.BUSY


class ConnectionTimeoutError(PeerSyncError):
    """
    Raised when a connection or response does not arrive within its deadline.
    """
    pass


class ProtocolError(PeerSyncError):
    """
    Raised when the peer sends a malformed or unexpected response.
    """
    pass


class IncompleteTransferError(ProtocolError):
    """
    Raised when fewer bytes arrive than the peer declared.
    """

    def __init__(self, message: str, received: int = 0, expected: int = 0):
        super().__init__(message)
        self.received = received
        self.expected = expected


class StorageError(PeerSyncError):
    """
    Raised when the local storage root cannot be read or written.
    """
    pass


class AddressValidationError(PeerSyncError):
    """
    Raised when a peer address is malformed.
    """
    pass


class TransferCancelledError(PeerSyncError):
    """
    Raised when an in-flight operation is aborted by cleanup or disconnect.
    """
    pass


class NotConnectedError(PeerSyncError):
    """
    Raised when an operation needs a connected peer and there is none.
    """
    pass
