"""
In-memory stand-ins for the registry, transports, discovery and verifier.
"""

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Dict, List, Optional

from aiohttp import web
from aiohttp.test_utils import TestServer

from database.models import ControllerRecord, controller_key
from discovery.models import ControllerIdentity, DiscoveryCandidate, VerificationResult, VerificationStatus
from errors import ConnectionFailure, PersistenceFailure
from transport.ble_channel import ChannelHandle
from transport.models import FailureReason, TransportResult


async def drain(rounds: int = 50):
    """Let background tasks run until they block."""
    for _ in range(rounds):
        await asyncio.sleep(0)


def controller_at(address: str, name: str = "Controller", mac: Optional[str] = "aabbccddeeff") -> VerificationResult:
    """Positive verification result for a controller at address."""
    identity = ControllerIdentity(address=address, name=name, identifier=mac, version="0.14.0", led_count=30)
    return VerificationResult(VerificationStatus.CONTROLLER, address, identity=identity)


def unreachable(address: str) -> VerificationResult:
    return VerificationResult(VerificationStatus.UNREACHABLE, address, detail="timeout")


def not_a_controller(address: str) -> VerificationResult:
    return VerificationResult(VerificationStatus.NOT_A_CONTROLLER, address, detail="HTTP 404")


class RecordingSleep:
    """Returns immediately, remembering every requested delay."""

    def __init__(self):
        self.delays: List[float] = []

    async def __call__(self, delay: float):
        self.delays.append(delay)
        await asyncio.sleep(0)


class GatedSleep:
    """Blocks every sleep until released, so tests can act mid-wait."""

    def __init__(self):
        self.delays: List[float] = []
        self.gate = asyncio.Event()

    async def __call__(self, delay: float):
        self.delays.append(delay)
        await self.gate.wait()


class FakeRegistry:
    """Dict-backed registry with the same last-write-wins rule as the real one."""

    def __init__(self, owner_id: str = "owner-1"):
        self.owner_id = owner_id
        self.records: Dict[str, ControllerRecord] = {}
        self.saves: List[Dict] = []
        self.failures_remaining = 0
        self.pool = object()

    async def save_record(self, identifier, address, name=None, network_name=None, configured_flag=False,
                          verified=True, credential_fingerprint=None, updated_at=None) -> ControllerRecord:
        self.saves.append({
            'identifier': identifier, 'address': address, 'name': name, 'network_name': network_name,
            'configured_flag': configured_flag, 'verified': verified,
            'credential_fingerprint': credential_fingerprint,
        })
        if self.failures_remaining:
            self.failures_remaining -= 1
            raise PersistenceFailure("Could not save the controller record", detail="database unavailable")

        key = controller_key(identifier)
        updated_at = updated_at or datetime.now(timezone.utc)
        existing = self.records.get(key)
        if existing is not None and existing.updated_at > updated_at:
            return existing

        record = ControllerRecord(
            controller_id=key,
            ip_address=address,
            name=name,
            network_name=network_name,
            network_configured=configured_flag,
            verified=verified,
            credential_fingerprint=credential_fingerprint,
            owner_id=self.owner_id,
            created_at=existing.created_at if existing else updated_at,
            updated_at=updated_at,
        )
        self.records[key] = record
        return record

    async def get_record(self, identifier):
        return self.records.get(controller_key(identifier))

    async def delete_record(self, identifier) -> bool:
        return self.records.pop(controller_key(identifier), None) is not None

    async def list_records(self, owner_id=None):
        return sorted(self.records.values(), key=lambda r: r.updated_at, reverse=True)


class ScriptedBLEChannel:
    """BLE channel returning queued results."""

    def __init__(self, results: Optional[List[TransportResult]] = None,
                 connect_errors: Optional[List[Exception]] = None):
        self.results = list(results or [])
        self.connect_errors = list(connect_errors or [])
        # When set, connect or send blocks until the test opens the gate
        self.connect_gate: Optional[asyncio.Event] = None
        self.send_gate: Optional[asyncio.Event] = None
        self.connects: List[str] = []
        self.disconnects: List[str] = []
        self.sent = []

    async def connect(self, device_handle):
        self.connects.append(device_handle)
        if self.connect_gate is not None:
            await self.connect_gate.wait()
        if self.connect_errors:
            raise self.connect_errors.pop(0)
        return ChannelHandle(device_id=device_handle, client=None, command_char=None)

    async def send_credentials(self, handle, credentials) -> TransportResult:
        self.sent.append(credentials)
        if self.send_gate is not None:
            await self.send_gate.wait()
        return self.results.pop(0)

    async def disconnect(self, handle):
        if handle is None or handle.released:
            return
        handle.released = True
        self.disconnects.append(handle.device_id)

    async def scan(self, timeout=None):
        return [{'device_handle': 'AA:BB:CC:DD:EE:FF', 'name': 'WLED', 'rssi': -50, 'improv': True}]


class FailingScanChannel(ScriptedBLEChannel):
    async def scan(self, timeout=None):
        raise ConnectionFailure("Bluetooth scan failed", reason=FailureReason.UNREACHABLE)


class ScriptedHTTPChannel:
    """Hotspot channel returning queued results."""

    def __init__(self, results: Optional[List[TransportResult]] = None):
        self.results = list(results or [])
        self.sent = []

    async def send_credentials(self, credentials) -> TransportResult:
        self.sent.append(credentials)
        return self.results.pop(0)


class ScriptedDiscovery:
    """Each discover() call replays the next list of candidates."""

    def __init__(self, passes: Optional[List[List[DiscoveryCandidate]]] = None):
        self.passes = list(passes or [])
        self.calls = 0
        self.timeouts: List[float] = []

    async def discover(self, timeout=None):
        self.calls += 1
        self.timeouts.append(timeout)
        batch = self.passes.pop(0) if self.passes else []
        for candidate in batch:
            await asyncio.sleep(0)
            yield candidate


class ScriptedVerifier:
    """Answers per address; a list answers successive calls, repeating its last entry."""

    def __init__(self, answers: Optional[Dict[str, object]] = None):
        self.answers = dict(answers or {})
        self.calls: List[str] = []

    async def verify(self, address, expected_identifier=None) -> VerificationResult:
        self.calls.append(address)
        answer = self.answers.get(address)
        if isinstance(answer, list):
            answer = answer.pop(0) if len(answer) > 1 else answer[0]
        if answer is None:
            return unreachable(address)
        return answer


@asynccontextmanager
async def serve(app: web.Application):
    """Run an aiohttp app on a local port, yielding its base URL."""
    server = TestServer(app)
    await server.start_server()
    try:
        yield str(server.make_url("/")).rstrip("/")
    finally:
        await server.close()
