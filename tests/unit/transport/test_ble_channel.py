"""
Tests for transport.ble_channel module.
"""

import asyncio
from types import SimpleNamespace

import pytest
from bleak.exc import BleakError

from errors import ConnectionFailure
from transport.ble_channel import (
    IMPROV_ERROR_STATE_UUID,
    IMPROV_RPC_COMMAND_UUID,
    IMPROV_RPC_RESULT_UUID,
    IMPROV_SERVICE_UUID,
    BLEProvisioningChannel,
    build_wifi_settings_packet,
    extract_address,
    parse_rpc_result,
)
from transport.models import Credentials, FailureReason, TransportOutcome

DEVICE = "AA:BB:CC:DD:EE:FF"
HOME = Credentials("HomeNet", "pw1234")


def result_frame(*strings: str) -> bytes:
    data = b"".join(bytes([len(s)]) + s.encode() for s in strings)
    frame = bytes([0x01, len(data)]) + data
    return frame + bytes([sum(frame) & 0xFF])


def char(uuid, *properties):
    return SimpleNamespace(uuid=uuid, properties=list(properties))


def improv_services():
    return [SimpleNamespace(uuid=IMPROV_SERVICE_UUID, characteristics=[
        char(IMPROV_RPC_COMMAND_UUID, "write"),
        char(IMPROV_RPC_RESULT_UUID, "read", "notify"),
        char(IMPROV_ERROR_STATE_UUID, "read", "notify"),
    ])]


class FakeBleakClient:
    """Stand-in for BleakClient that answers writes with scripted notifications."""

    def __init__(self, services=None, notify_on_write=None, connect_error=None, write_error=None,
                 connect_gate=None, services_error=None):
        self._services = services if services is not None else improv_services()
        self.connect_gate = connect_gate
        self.services_error = services_error
        self.disconnects = 0
        self.notify_on_write = notify_on_write or {}
        self.connect_error = connect_error
        self.write_error = write_error
        self.callbacks = {}
        self.written = []
        self.connected = False

    async def connect(self):
        if self.connect_gate is not None:
            await self.connect_gate.wait()
        if self.connect_error:
            raise self.connect_error
        self.connected = True

    @property
    def services(self):
        if self.services_error:
            raise self.services_error
        return self._services

    async def disconnect(self):
        self.disconnects += 1
        self.connected = False

    async def start_notify(self, characteristic, callback):
        self.callbacks[characteristic.uuid] = callback

    async def stop_notify(self, characteristic):
        self.callbacks.pop(characteristic.uuid, None)

    async def read_gatt_char(self, characteristic):
        return bytearray()

    async def write_gatt_char(self, characteristic, data, response=False):
        if self.write_error:
            raise self.write_error
        self.written.append(bytes(data))
        loop = asyncio.get_running_loop()
        for uuid, payload in self.notify_on_write.items():
            callback = self.callbacks.get(uuid)
            if callback:
                loop.call_soon(callback, None, bytearray(payload))


def make_channel(client, **overrides):
    config = {'connect_timeout': 1, 'write_timeout': 1, 'result_grace_seconds': 0.05}
    config.update(overrides)
    return BLEProvisioningChannel(config, client_factory=lambda device, timeout=None: client)


@pytest.fixture(autouse=True)
def release_held_devices():
    BLEProvisioningChannel._held_devices.clear()
    yield
    BLEProvisioningChannel._held_devices.clear()


class TestFraming:
    """Tests for the RPC frame helpers."""

    def test_wifi_settings_packet(self):
        """Test the exact frame for HomeNet / pw1234."""
        packet = build_wifi_settings_packet(HOME)

        assert packet == bytes([0x01, 15, 7]) + b"HomeNet" + bytes([6]) + b"pw1234" + bytes([0x7E])

    def test_packet_too_long(self):
        """Test an oversize network name is refused."""
        with pytest.raises(ValueError):
            build_wifi_settings_packet(Credentials("x" * 300, "pw"))

    def test_parse_result(self):
        """Test a valid result frame decodes into its strings."""
        assert parse_rpc_result(result_frame("http://192.168.1.44")) == ["http://192.168.1.44"]

    def test_parse_result_bad_checksum(self):
        """Test frames with a wrong checksum are dropped."""
        frame = bytearray(result_frame("http://192.168.1.44"))
        frame[-1] ^= 0xFF

        assert parse_rpc_result(bytes(frame)) is None

    def test_parse_result_other_command(self):
        """Test frames for another command are ignored."""
        frame = bytearray(result_frame("x"))
        frame[0] = 0x02

        assert parse_rpc_result(bytes(frame)) is None

    def test_extract_address(self):
        """Test addresses are found in URLs and free text."""
        assert extract_address("http://192.168.1.44/") == "192.168.1.44"
        assert extract_address("joined, ip 10.0.0.5") == "10.0.0.5"
        assert extract_address("no address here") is None
        assert extract_address("") is None


class TestConnect:
    """Tests for opening and releasing the BLE session."""

    @pytest.mark.asyncio
    async def test_connect_locates_improv_characteristics(self):
        """Test the command, result and error characteristics are resolved."""
        channel = make_channel(FakeBleakClient())

        handle = await channel.connect(DEVICE)

        assert handle.command_char.uuid == IMPROV_RPC_COMMAND_UUID
        assert handle.result_char.uuid == IMPROV_RPC_RESULT_UUID
        assert handle.error_char.uuid == IMPROV_ERROR_STATE_UUID
        assert BLEProvisioningChannel.is_held(DEVICE)

    @pytest.mark.asyncio
    async def test_device_held_exclusively(self):
        """Test a second connect to a held device fails until released."""
        channel = make_channel(FakeBleakClient())
        handle = await channel.connect(DEVICE)

        with pytest.raises(ConnectionFailure):
            await channel.connect(DEVICE)

        await channel.disconnect(handle)
        await channel.disconnect(handle)
        assert not BLEProvisioningChannel.is_held(DEVICE)
        assert handle.released

    @pytest.mark.asyncio
    async def test_connect_error_is_unreachable(self):
        """Test a radio error maps to UNREACHABLE and frees the device."""
        channel = make_channel(FakeBleakClient(connect_error=BleakError("device not found")))

        with pytest.raises(ConnectionFailure) as exc_info:
            await channel.connect(DEVICE)

        assert exc_info.value.reason is FailureReason.UNREACHABLE
        assert not BLEProvisioningChannel.is_held(DEVICE)

    @pytest.mark.asyncio
    async def test_ambiguous_characteristics_rejected(self):
        """Test more than one writable candidate without the known UUIDs is a protocol error."""
        services = [SimpleNamespace(uuid="0000ffe0-0000-1000-8000-00805f9b34fb", characteristics=[
            char("0000ffe1-0000-1000-8000-00805f9b34fb", "write"),
            char("0000ffe2-0000-1000-8000-00805f9b34fb", "write"),
        ])]
        channel = make_channel(FakeBleakClient(services=services))

        with pytest.raises(ConnectionFailure) as exc_info:
            await channel.connect(DEVICE)

        assert exc_info.value.reason is FailureReason.PROTOCOL_ERROR

    @pytest.mark.asyncio
    async def test_cancelled_connect_frees_device(self):
        """Test cancelling a connect in progress disconnects and releases the device."""
        client = FakeBleakClient(connect_gate=asyncio.Event())
        channel = make_channel(client)
        connecting = asyncio.create_task(channel.connect(DEVICE))
        for _ in range(10):
            await asyncio.sleep(0)
        assert BLEProvisioningChannel.is_held(DEVICE)

        connecting.cancel()
        with pytest.raises(asyncio.CancelledError):
            await connecting

        assert not BLEProvisioningChannel.is_held(DEVICE)
        assert client.disconnects == 1

    @pytest.mark.asyncio
    async def test_unexpected_error_after_connect_frees_device(self):
        """Test an error while reading services drops the link and the hold."""
        client = FakeBleakClient(services_error=RuntimeError("service discovery failed"))
        channel = make_channel(client)

        with pytest.raises(RuntimeError):
            await channel.connect(DEVICE)

        assert not BLEProvisioningChannel.is_held(DEVICE)
        assert client.disconnects == 1
        assert not client.connected

        # The device can be claimed again
        handle = await make_channel(FakeBleakClient()).connect(DEVICE)
        assert handle.device_id == DEVICE

    @pytest.mark.asyncio
    async def test_single_writable_characteristic_accepted(self):
        """Test a lone writable characteristic is used as the command channel."""
        services = [SimpleNamespace(uuid="0000ffe0-0000-1000-8000-00805f9b34fb", characteristics=[
            char("0000ffe1-0000-1000-8000-00805f9b34fb", "write"),
            char("0000ffe2-0000-1000-8000-00805f9b34fb", "notify"),
        ])]
        channel = make_channel(FakeBleakClient(services=services))

        handle = await channel.connect(DEVICE)

        assert handle.command_char.uuid.endswith("ffe1-0000-1000-8000-00805f9b34fb")
        assert handle.result_char.uuid.endswith("ffe2-0000-1000-8000-00805f9b34fb")


class TestSendCredentials:
    """Tests for credential delivery over BLE."""

    @pytest.mark.asyncio
    async def test_result_with_address(self):
        """Test the controller's reported address is returned."""
        client = FakeBleakClient(notify_on_write={IMPROV_RPC_RESULT_UUID: result_frame("http://192.168.1.44")})
        channel = make_channel(client)
        handle = await channel.connect(DEVICE)

        result = await channel.send_credentials(handle, HOME)

        assert result.outcome is TransportOutcome.SUCCESS_WITH_ADDRESS
        assert result.address == "192.168.1.44"
        assert client.written == [build_wifi_settings_packet(HOME)]
        assert client.callbacks == {}

    @pytest.mark.asyncio
    async def test_unable_to_connect_is_rejection(self):
        """Test error code 0x03 maps to rejected credentials."""
        client = FakeBleakClient(notify_on_write={IMPROV_ERROR_STATE_UUID: bytes([0x03])})
        channel = make_channel(client)
        handle = await channel.connect(DEVICE)

        result = await channel.send_credentials(handle, HOME)

        assert result.reason is FailureReason.REJECTED_CREDENTIALS

    @pytest.mark.asyncio
    async def test_silence_defers_to_discovery(self):
        """Test no answer within the grace period still counts as delivered."""
        channel = make_channel(FakeBleakClient())
        handle = await channel.connect(DEVICE)

        result = await channel.send_credentials(handle, HOME)

        assert result.outcome is TransportOutcome.SUCCESS_WITHOUT_ADDRESS

    @pytest.mark.asyncio
    async def test_write_error_is_unreachable(self):
        """Test a failed write maps to UNREACHABLE."""
        channel = make_channel(FakeBleakClient(write_error=BleakError("not connected")))
        handle = await channel.connect(DEVICE)

        result = await channel.send_credentials(handle, HOME)

        assert result.reason is FailureReason.UNREACHABLE


class TestScan:
    """Tests for nearby radio scanning."""

    @pytest.mark.asyncio
    async def test_scan_filters_and_sorts(self):
        """Test only controller-looking radios are listed, strongest first."""
        found = {
            "11:11:11:11:11:11": (SimpleNamespace(name=None),
                                  SimpleNamespace(local_name="WLED-Kitchen", service_uuids=[], rssi=-80)),
            "22:22:22:22:22:22": (SimpleNamespace(name="Headphones"),
                                  SimpleNamespace(local_name=None, service_uuids=[], rssi=-40)),
            "33:33:33:33:33:33": (SimpleNamespace(name=None),
                                  SimpleNamespace(local_name="", service_uuids=[IMPROV_SERVICE_UUID], rssi=-60)),
        }

        class FakeScanner:
            async def discover(self, timeout=None, return_adv=False):
                return found

        channel = BLEProvisioningChannel({}, scanner=FakeScanner())

        devices = await channel.scan(timeout=0.1)

        assert [d['device_handle'] for d in devices] == ["33:33:33:33:33:33", "11:11:11:11:11:11"]
        assert devices[0]['improv'] is True
        assert devices[1]['name'] == "WLED-Kitchen"
