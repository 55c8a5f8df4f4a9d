"""
Short-range RPC channel: hands Wi-Fi credentials to a controller over its
BLE pairing radio using the Improv Wi-Fi RPC framing.
"""

import asyncio
import ipaddress
import logging
import re
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Set, Tuple

from bleak import BleakClient, BleakScanner
from bleak.exc import BleakError

from errors import ConnectionFailure
from .models import Credentials, FailureReason, TransportResult

logger = logging.getLogger(__name__)

IMPROV_SERVICE_UUID = "00467768-6228-2272-4663-277478268000"
IMPROV_CURRENT_STATE_UUID = "00467768-6228-2272-4663-277478268001"
IMPROV_ERROR_STATE_UUID = "00467768-6228-2272-4663-277478268002"
IMPROV_RPC_COMMAND_UUID = "00467768-6228-2272-4663-277478268003"
IMPROV_RPC_RESULT_UUID = "00467768-6228-2272-4663-277478268004"

CMD_WIFI_SETTINGS = 0x01

ERROR_NONE = 0x00
ERROR_INVALID_RPC = 0x01
ERROR_UNKNOWN_RPC = 0x02
ERROR_UNABLE_TO_CONNECT = 0x03

_IPV4_PATTERN = re.compile(r"(\d{1,3}(?:\.\d{1,3}){3})")


def build_wifi_settings_packet(credentials: Credentials) -> bytes:
    """
    Encode credentials as an Improv "send Wi-Fi settings" RPC command.

    Layout: command, data length, ssid length, ssid, password length,
    password, checksum (low byte of the sum of all preceding bytes).
    """
    ssid = credentials.network_name.encode("utf-8")
    password = credentials.secret.encode("utf-8")
    if len(ssid) > 255 or len(password) > 255:
        raise ValueError("network name and secret must each encode to at most 255 bytes")

    data = bytes([len(ssid)]) + ssid + bytes([len(password)]) + password
    if len(data) > 255:
        raise ValueError("credential payload too long for a single RPC frame")

    frame = bytes([CMD_WIFI_SETTINGS, len(data)]) + data
    return frame + bytes([sum(frame) & 0xFF])


def parse_rpc_result(data: bytes) -> Optional[List[str]]:
    """Decode an RPC result frame for the Wi-Fi settings command into its strings"""
    if len(data) < 3:
        return None
    command, length = data[0], data[1]
    if command != CMD_WIFI_SETTINGS or length != len(data) - 3:
        return None
    if sum(data[:-1]) & 0xFF != data[-1]:
        logger.debug("Discarding RPC result frame with bad checksum")
        return None

    strings = []
    payload = data[2:-1]
    idx = 0
    while idx < len(payload):
        str_len = payload[idx]
        idx += 1
        chunk = payload[idx:idx + str_len]
        if len(chunk) != str_len:
            return None
        strings.append(chunk.decode("utf-8", errors="replace"))
        idx += str_len
    return strings


def extract_address(text: str) -> Optional[str]:
    """Pull an IPv4 address out of a redirect URL or free text"""
    if not text:
        return None
    if "://" in text:
        host = text.split("://", 1)[1].split("/")[0].split(":")[0]
        try:
            return str(ipaddress.IPv4Address(host))
        except ValueError:
            pass
    for match in _IPV4_PATTERN.findall(text):
        try:
            return str(ipaddress.IPv4Address(match))
        except ValueError:
            continue
    return None


def _uuid(char) -> str:
    return str(char.uuid).lower()


def _is_writable(char) -> bool:
    return "write" in char.properties or "write-without-response" in char.properties


def _can_notify(char) -> bool:
    return "notify" in char.properties or "indicate" in char.properties


def _is_readable(char) -> bool:
    return "read" in char.properties


@dataclass
class ChannelHandle:
    """Open BLE session with one controller"""
    device_id: str
    client: Any
    command_char: Any
    result_char: Optional[Any] = None
    error_char: Optional[Any] = None
    connected_at: float = field(default_factory=time.time)
    released: bool = False


class BLEProvisioningChannel:
    """Improv-over-BLE credential transport"""

    # Device handles currently owned by a live ChannelHandle
    _held_devices: Set[str] = set()

    def __init__(self, config: Dict, client_factory=None, scanner=None):
        self.config = config
        self.scan_timeout = config.get('scan_timeout', 15)
        self.connect_timeout = config.get('connect_timeout', 20)
        self.write_timeout = config.get('write_timeout', 10)
        self.result_grace_seconds = config.get('result_grace_seconds', 20)
        self.name_filters = config.get('name_filters', ['WLED', 'ESP', 'Dig-Octa'])
        self._client_factory = client_factory or BleakClient
        self._scanner = scanner or BleakScanner

    @staticmethod
    def _device_id(device_handle) -> str:
        if isinstance(device_handle, str):
            return device_handle
        return getattr(device_handle, 'address', str(device_handle))

    @classmethod
    def is_held(cls, device_handle) -> bool:
        return cls._device_id(device_handle) in cls._held_devices

    async def scan(self, timeout: Optional[float] = None) -> List[Dict[str, Any]]:
        """List nearby pairing radios that look like LED controllers"""
        timeout = timeout or self.scan_timeout
        logger.info(f"Scanning for pairing radios ({timeout}s)...")
        try:
            found = await self._scanner.discover(timeout=timeout, return_adv=True)
        except (BleakError, OSError) as e:
            raise ConnectionFailure("Bluetooth scan failed", detail=str(e), reason=FailureReason.UNREACHABLE) from e

        results = []
        for address, (device, adv) in found.items():
            name = adv.local_name or device.name or ""
            service_uuids = [u.lower() for u in (adv.service_uuids or [])]
            advertises_improv = IMPROV_SERVICE_UUID in service_uuids
            if not advertises_improv and not any(f.lower() in name.lower() for f in self.name_filters):
                continue
            results.append({
                'device_handle': address,
                'name': name,
                'rssi': adv.rssi,
                'improv': advertises_improv,
            })

        results.sort(key=lambda r: r['rssi'] if r['rssi'] is not None else -999, reverse=True)
        logger.info(f"Found {len(results)} candidate controllers via BLE")
        return results

    async def connect(self, device_handle) -> ChannelHandle:
        """Open a BLE session and locate the command/result characteristics"""
        device_id = self._device_id(device_handle)
        if device_id in self._held_devices:
            raise ConnectionFailure(
                "Controller is already in use by another setup session",
                detail=device_id,
                reason=FailureReason.UNREACHABLE,
            )
        self._held_devices.add(device_id)

        client = None
        link_open = False
        try:
            client = self._client_factory(device_handle, timeout=self.connect_timeout)
            logger.info(f"Connecting to pairing radio {device_id}...")
            try:
                await asyncio.wait_for(client.connect(), timeout=self.connect_timeout + 5)
            except asyncio.TimeoutError as e:
                raise ConnectionFailure("Timed out connecting over Bluetooth", detail=device_id,
                                        reason=FailureReason.TIMEOUT) from e
            except (BleakError, OSError) as e:
                raise ConnectionFailure("Bluetooth connection failed", detail=str(e),
                                        reason=FailureReason.UNREACHABLE) from e
            link_open = True
            command_char, result_char, error_char = self._locate_characteristics(client.services)
        except BaseException as e:
            # Any exit without a handle, cancellation included, frees the device
            try:
                if client is not None and (link_open or isinstance(e, asyncio.CancelledError)):
                    await self._safe_disconnect(client, device_id)
            finally:
                self._held_devices.discard(device_id)
            raise

        logger.info(f"[OK] Connected to {device_id}: command={_uuid(command_char)}, "
                    f"result={_uuid(result_char) if result_char else 'none'}")
        return ChannelHandle(
            device_id=device_id,
            client=client,
            command_char=command_char,
            result_char=result_char,
            error_char=error_char,
        )

    def _locate_characteristics(self, services) -> Tuple[Any, Optional[Any], Optional[Any]]:
        """Find exactly one writable command characteristic plus optional result/error ones"""
        services = list(services or [])
        improv = [s for s in services if str(s.uuid).lower() == IMPROV_SERVICE_UUID]
        scope = improv or services
        chars = [c for s in scope for c in s.characteristics]

        command = next((c for c in chars if _uuid(c) == IMPROV_RPC_COMMAND_UUID and _is_writable(c)), None)
        if command is None:
            writable = [c for c in chars if _is_writable(c)]
            if len(writable) != 1:
                raise ConnectionFailure(
                    "Controller does not expose a usable setup interface",
                    detail=f"{len(writable)} writable characteristics",
                    reason=FailureReason.PROTOCOL_ERROR,
                )
            command = writable[0]

        result = next((c for c in chars if _uuid(c) == IMPROV_RPC_RESULT_UUID), None)
        if result is None:
            skip = {IMPROV_CURRENT_STATE_UUID, IMPROV_ERROR_STATE_UUID}
            result = next(
                (c for c in chars
                 if c is not command and not _is_writable(c)
                 and (_is_readable(c) or _can_notify(c)) and _uuid(c) not in skip),
                None,
            )
        error = next((c for c in chars if _uuid(c) == IMPROV_ERROR_STATE_UUID), None)
        return command, result, error

    @staticmethod
    def _error_result(code: int) -> TransportResult:
        if code == ERROR_UNABLE_TO_CONNECT:
            return TransportResult.failure(FailureReason.REJECTED_CREDENTIALS,
                                           "controller could not join the network")
        if code in (ERROR_INVALID_RPC, ERROR_UNKNOWN_RPC):
            return TransportResult.failure(FailureReason.PROTOCOL_ERROR, f"controller error 0x{code:02x}")
        return TransportResult.failure(FailureReason.PROTOCOL_ERROR, f"unknown controller error 0x{code:02x}")

    async def send_credentials(self, handle: ChannelHandle, credentials: Credentials) -> TransportResult:
        """Write credentials and wait briefly for the controller's answer"""
        try:
            packet = build_wifi_settings_packet(credentials)
        except ValueError as e:
            return TransportResult.failure(FailureReason.PROTOCOL_ERROR, str(e))

        loop = asyncio.get_running_loop()
        outcome: asyncio.Future = loop.create_future()

        def on_result(_sender, data):
            if outcome.done():
                return
            strings = parse_rpc_result(bytes(data or b""))
            if strings is None:
                return
            address = next((a for a in (extract_address(s) for s in strings) if a), None)
            if address:
                outcome.set_result(TransportResult.with_address(address))
            else:
                outcome.set_result(TransportResult.without_address("acknowledged without an address"))

        def on_error(_sender, data):
            if outcome.done() or not data or data[0] == ERROR_NONE:
                return
            outcome.set_result(self._error_result(data[0]))

        subscribed = []
        try:
            for char, callback in ((handle.result_char, on_result), (handle.error_char, on_error)):
                if char is None or not _can_notify(char):
                    continue
                try:
                    await handle.client.start_notify(char, callback)
                    subscribed.append(char)
                except (BleakError, OSError) as e:
                    logger.warning(f"Could not subscribe to {_uuid(char)}: {e}")

            logger.info(f"Sending Wi-Fi settings for '{credentials.network_name}' "
                        f"(fingerprint {credentials.fingerprint()}, {len(packet)} bytes) to {handle.device_id}")
            try:
                await asyncio.wait_for(
                    handle.client.write_gatt_char(handle.command_char, packet,
                                                  response="write" in handle.command_char.properties),
                    timeout=self.write_timeout,
                )
            except asyncio.TimeoutError:
                return TransportResult.failure(FailureReason.TIMEOUT, "write timed out")
            except (BleakError, OSError) as e:
                return TransportResult.failure(FailureReason.UNREACHABLE, str(e))

            if handle.result_char is None:
                logger.info("No result characteristic; confirmation deferred to discovery")
                return TransportResult.without_address("no result characteristic")

            if _is_readable(handle.result_char):
                try:
                    data = await asyncio.wait_for(handle.client.read_gatt_char(handle.result_char),
                                                  timeout=self.write_timeout)
                    on_result(None, data)
                except (asyncio.TimeoutError, BleakError, OSError) as e:
                    logger.debug(f"Immediate result read failed: {e}")

            try:
                return await asyncio.wait_for(outcome, timeout=self.result_grace_seconds)
            except asyncio.TimeoutError:
                logger.info(f"No answer within {self.result_grace_seconds}s; confirmation deferred to discovery")
                return TransportResult.without_address("no acknowledgement within grace period")
        finally:
            for char in subscribed:
                try:
                    await handle.client.stop_notify(char)
                except (BleakError, OSError) as e:
                    logger.debug(f"stop_notify failed for {_uuid(char)}: {e}")
            if not outcome.done():
                outcome.cancel()

    async def disconnect(self, handle: Optional[ChannelHandle]) -> None:
        """Release the BLE session; safe to call more than once"""
        if handle is None or handle.released:
            return
        try:
            await self._safe_disconnect(handle.client, handle.device_id)
        finally:
            handle.released = True
            self._held_devices.discard(handle.device_id)

    async def _safe_disconnect(self, client, device_id: str) -> None:
        try:
            await asyncio.wait_for(client.disconnect(), timeout=self.write_timeout)
            logger.info(f"Disconnected from {device_id}")
        except (asyncio.TimeoutError, BleakError, OSError) as e:
            logger.warning(f"Disconnect from {device_id} did not complete cleanly: {e}")
