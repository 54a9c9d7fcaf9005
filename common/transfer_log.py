"""Transfer-history sink boundary.

Completed transfers are reported as TransferRecord values to whatever sink
the host installs. Persisting them is the host's business.
"""

import threading
import time
from dataclasses import dataclass, field
from typing import Callable, List, Optional

from common.logging_config import get_logger

logger = get_logger(__name__)

DIRECTION_SENT = "sent"
DIRECTION_RECEIVED = "received"


@dataclass(frozen=True)
class TransferRecord:
    """One completed transfer."""
    file_name: str
    direction: str
    timestamp: float = field(default_factory=time.time)


TransferLogSink = Callable[[TransferRecord], None]


class InMemoryTransferLog:
    """
    Thread-safe in-memory sink.

    Usable directly as a TransferLogSink since instances are callable.
    """

    def __init__(self):
        self._records: List[TransferRecord] = []
        self._lock = threading.Lock()

    def __call__(self, record: TransferRecord) -> None:
        with self._lock:
            self._records.append(record)

    def all_records(self) -> List[TransferRecord]:
        """Return records newest first."""
        with self._lock:
            return sorted(self._records, key=lambda r: r.timestamp, reverse=True)

    def names(self, direction: Optional[str] = None) -> List[str]:
        with self._lock:
            return [r.file_name for r in self._records if direction is None or r.direction == direction]


def report_transfer(sink: Optional[TransferLogSink], file_name: str, direction: str) -> None:
    """
    Hand a record to the sink, logging instead of raising if the sink fails.

    Args:
        sink: Installed sink or None
        file_name: Name of the transferred file
        direction: DIRECTION_SENT or DIRECTION_RECEIVED
    """
    if sink is None:
        return
    try:
        sink(TransferRecord(file_name=file_name, direction=direction))
    except Exception as e:
        logger.error(f"Transfer log sink failed for {file_name}: {e}", exc_info=True)
