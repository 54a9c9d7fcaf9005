"""Shared pytest fixtures for all tests."""

import asyncio
from pathlib import Path
from typing import Callable, List, Optional

import pytest
import pytest_asyncio

from catalog.file_catalog import FileCatalog
from common.config import SupervisorConfig, TransferConfig
from common.exceptions import FailureReason, TransportError
from common.transfer_log import InMemoryTransferLog
from link.models import ConnectionInfo, GroupInfo
from link.transport import LinkTransport
from transfer.client import TransferClient
from transfer.server import TransferServer


@pytest.fixture
def server_root(tmp_path) -> Path:
    root = tmp_path / "server"
    root.mkdir()
    return root


@pytest.fixture
def client_root(tmp_path) -> Path:
    root = tmp_path / "client"
    root.mkdir()
    return root


@pytest.fixture
def server_catalog(server_root) -> FileCatalog:
    return FileCatalog(server_root)


@pytest.fixture
def client_catalog(client_root) -> FileCatalog:
    return FileCatalog(client_root)


@pytest.fixture
def transfer_config() -> TransferConfig:
    """
    Loopback settings with short timeouts.
    """
    return TransferConfig(
        host="127.0.0.1",
        port=0,
        connect_timeout=2.0,
        response_timeout=2.0,
        max_retries=1,
        retry_delay=0.0
    )


@pytest.fixture
def server_log() -> InMemoryTransferLog:
    return InMemoryTransferLog()


@pytest.fixture
def client_log() -> InMemoryTransferLog:
    return InMemoryTransferLog()


@pytest_asyncio.fixture
async def server(server_catalog, transfer_config, server_log):
    """
    Running TransferServer on an ephemeral loopback port.
    """
    srv = TransferServer(server_catalog, transfer_config, transfer_log=server_log)
    await srv.start()
    yield srv
    await srv.stop()


@pytest_asyncio.fixture
async def client(server, transfer_config, client_log):
    """
    TransferClient pointed at the running server.
    """
    cli = TransferClient("127.0.0.1", port=server.port, config=transfer_config, transfer_log=client_log)
    yield cli
    cli.cleanup()


@pytest.fixture
def eventually() -> Callable:
    """
    Poll a predicate until it holds or the timeout expires.
    """
    async def wait(predicate: Callable[[], bool], timeout: float = 3.0, interval: float = 0.01) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while not predicate():
            if loop.time() > deadline:
                raise AssertionError("Condition not met before timeout")
            await asyncio.sleep(interval)
    return wait


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeLinkTransport(LinkTransport):
    """
    Scriptable link transport recording every call.

    connect_errors are raised by successive connect() calls; once exhausted
    connect() succeeds. connect_gates holds an Event per peer id that
    connect() waits on before returning. group_info_gate, when set, holds
    request_group_info() the same way.
    """

    def __init__(self, address: str = "192.168.49.1"):
        self.address = address
        self.calls: List[str] = []
        self.connect_errors: List[Exception] = []
        self.connect_gates: dict = {}
        self.connection_info: Optional[ConnectionInfo] = ConnectionInfo(
            group_formed=True, is_group_owner=False, remote_address=address
        )
        self.group_info: Optional[GroupInfo] = None
        self.failing_steps: dict = {}
        self.group_info_gate: Optional[asyncio.Event] = None

    def _record(self, name: str) -> None:
        self.calls.append(name)
        error = self.failing_steps.get(name)
        if error is not None:
            raise error

    def count(self, name: str) -> int:
        return sum(1 for call in self.calls if call == name)

    async def discover_peers(self) -> None:
        self._record("discover_peers")

    async def stop_discovery(self) -> None:
        self._record("stop_discovery")

    async def connect(self, peer_id: str) -> None:
        self._record("connect")
        gate = self.connect_gates.get(peer_id)
        if gate is not None:
            await gate.wait()
        if self.connect_errors:
            raise self.connect_errors.pop(0)
        self.group_info = GroupInfo(owner=peer_id, clients=("local",))

    async def cancel_connect(self) -> None:
        self._record("cancel_connect")

    async def remove_group(self) -> None:
        self._record("remove_group")
        self.group_info = None

    async def request_group_info(self) -> Optional[GroupInfo]:
        self._record("request_group_info")
        gate = self.group_info_gate
        if gate is not None:
            await gate.wait()
        return self.group_info

    async def request_connection_info(self) -> Optional[ConnectionInfo]:
        self._record("request_connection_info")
        return self.connection_info


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def fake_transport() -> FakeLinkTransport:
    return FakeLinkTransport()


@pytest.fixture
def supervisor_config() -> SupervisorConfig:
    """
    Timings short enough for tests; debounce disabled.
    """
    return SupervisorConfig(
        connection_timeout=0.5,
        min_action_interval=0.0,
        keep_alive_interval=0.05,
        keep_alive_min_check_interval=0.0,
        keep_alive_failure_threshold=3,
        max_connect_retries=2,
        retry_base_delay=0.01,
        discovery_restart_delay=0.01,
        teardown_step_timeout=0.5
    )


@pytest.fixture
def busy_error() -> Callable[[], TransportError]:
    return lambda: TransportError("busy", FailureReason.BUSY)


def write_file(root: Path, relative: str, data: bytes) -> Path:
    path = root / relative
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(data)
    return path


@pytest.fixture
def make_file() -> Callable[[Path, str, bytes], Path]:
    return write_file
