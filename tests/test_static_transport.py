"""Tests for StaticAddressTransport and its use by the supervisor."""

import pytest

from common.exceptions import AddressValidationError, FailureReason, TransportError
from link.static_transport import StaticAddressTransport
from link.supervisor import ConnectionSupervisor


class TestStaticAddressTransport:

    def test_rejects_malformed_address(self):
        with pytest.raises(AddressValidationError):
            StaticAddressTransport({"peer": "1.2.3.999"})

    @pytest.mark.asyncio
    async def test_unknown_peer(self):
        transport = StaticAddressTransport({"peer": "10.0.0.2"})

        with pytest.raises(TransportError) as exc_info:
            await transport.connect("stranger")

        assert exc_info.value.reason == FailureReason.ERROR

    @pytest.mark.asyncio
    async def test_group_lifecycle(self):
        transport = StaticAddressTransport({"peer": "10.0.0.2"}, local_id="me")
        assert await transport.request_group_info() is None

        await transport.connect("peer")

        group = await transport.request_group_info()
        info = await transport.request_connection_info()
        assert group.contains("peer") and group.owner == "me"
        assert info.remote_address == "10.0.0.2"
        assert info.is_group_owner

        await transport.remove_group()

        assert await transport.request_connection_info() is None

    @pytest.mark.asyncio
    async def test_second_peer_is_busy(self):
        transport = StaticAddressTransport({"a": "10.0.0.2", "b": "10.0.0.3"})
        await transport.connect("a")

        with pytest.raises(TransportError) as exc_info:
            await transport.connect("b")

        assert exc_info.value.is_transient

    @pytest.mark.asyncio
    async def test_supervisor_connects_through_static_transport(self, supervisor_config, eventually):
        transport = StaticAddressTransport({"peer": "10.0.0.2"})
        supervisor = ConnectionSupervisor(transport, supervisor_config)
        await supervisor.start()
        try:
            await supervisor.connect("peer")

            await eventually(lambda: supervisor.state.value.connected)
            assert supervisor.connection_info.value.remote_address == "10.0.0.2"

            await supervisor.disconnect()

            assert supervisor.connection_info.value is None
            await eventually(lambda: transport.discovering)
        finally:
            await supervisor.stop()
