"""
Provisioning orchestrator: drives one controller from setup mode to a
verified registry record
"""

import asyncio
import ipaddress
import logging
import time
from contextlib import aclosing
from typing import AsyncIterator, Callable, Dict, List, Optional

from errors import (
    ConnectionFailure, CredentialRejected, DiscoveryTimeout, InvalidSessionState,
    PersistenceFailure, VerificationMismatch, user_message_for,
)
from transport.models import Credentials, FailureReason, TransportKind, TransportResult
from discovery.models import ControllerIdentity, DiscoveryCandidate, VerificationResult, VerificationStatus
from database.models import ControllerRecord
from .models import (
    POST_CREDENTIAL_STATES, TERMINAL_STATES, ProvisioningSession, SessionSnapshot, SessionState,
)

logger = logging.getLogger(__name__)

_FAILURE_MESSAGE_KEYS = {
    FailureReason.REJECTED_CREDENTIALS: "credential_rejected",
    FailureReason.UNREACHABLE: "credential_unreachable",
    FailureReason.TIMEOUT: "credential_timeout",
    FailureReason.PROTOCOL_ERROR: "credential_protocol",
}


def parse_manual_address(address: str) -> str:
    """Validate an operator-entered controller address"""
    text = (address or "").strip()
    try:
        return str(ipaddress.ip_address(text))
    except ValueError:
        raise ValueError("Please enter an IP address, for example 192.168.1.50") from None


class ProvisioningOrchestrator:
    """Runs a single provisioning session.

    The caller-facing methods (start, submit_credentials, submit_manual_address,
    retry_discovery, force_accept, cancel, retry_persistence) validate the
    current state and either act inline or hand over to one background
    pipeline task. Every state change is published to callbacks and watchers
    as a SessionSnapshot.
    """

    def __init__(self, config: Dict, registry, ble_channel=None, http_channel=None,
                 discovery=None, verifier=None, sleep=asyncio.sleep):
        self.config = config
        self.registry = registry
        self.ble_channel = ble_channel
        self.http_channel = http_channel
        self.discovery = discovery
        self.verifier = verifier
        self._sleep = sleep

        self.settle_delay = config.get('settle_delay_seconds', 45)
        self.max_credential_attempts = config.get('max_credential_attempts', 3)
        self.max_discovery_attempts = config.get('max_discovery_attempts', 3)
        self.discovery_timeout = config.get('discovery_timeout_seconds', 15)
        self.discovery_retry_delays = config.get('discovery_retry_delays', [2, 15])
        self.manual_verify_attempts = config.get('manual_verify_attempts', 3)
        self.manual_retry_delay = config.get('manual_retry_delay_seconds', 10)

        self.session: Optional[ProvisioningSession] = None
        self._handle = None
        self._pipeline: Optional[asyncio.Task] = None
        self._manual_active = False
        self._pending_write: Optional[Dict] = None
        self._callbacks: List[Callable[[SessionSnapshot], None]] = []
        self._watchers: List[asyncio.Queue] = []

    # ================== OBSERVATION ==================

    def add_state_callback(self, callback: Callable[[SessionSnapshot], None]):
        self._callbacks.append(callback)

    def remove_state_callback(self, callback: Callable[[SessionSnapshot], None]):
        if callback in self._callbacks:
            self._callbacks.remove(callback)

    def snapshot(self) -> Optional[SessionSnapshot]:
        return self.session.snapshot() if self.session else None

    async def watch(self) -> AsyncIterator[SessionSnapshot]:
        """Current snapshot followed by every later one, ending at a terminal state"""
        queue: asyncio.Queue = asyncio.Queue()
        self._watchers.append(queue)
        try:
            current = self.snapshot()
            if current is not None:
                yield current
                if current.terminal:
                    return
            while True:
                snapshot = await queue.get()
                yield snapshot
                if snapshot.terminal:
                    return
        finally:
            self._watchers.remove(queue)

    def _transition(self, state: SessionState, message: Optional[str] = None, error: Optional[str] = None):
        session = self.session
        previous = session.state
        session.state = state
        session.message = message
        if error:
            session.last_error = error
        if state in TERMINAL_STATES:
            session.finished_at = time.time()

        logger.info(f"[STATE] Session {session.session_id[:8]}: {previous.value} -> {state.value}")
        snapshot = session.snapshot()
        for callback in list(self._callbacks):
            try:
                callback(snapshot)
            except Exception as e:
                logger.error(f"State callback failed: {e}")
        for queue in list(self._watchers):
            queue.put_nowait(snapshot)

    def _require(self, *states: SessionState):
        if self.session is None:
            raise InvalidSessionState("No provisioning session has been started")
        if self.session.state not in states:
            allowed = ", ".join(s.value for s in states)
            raise InvalidSessionState(
                f"Operation not allowed in state {self.session.state.value}",
                detail=f"expected one of: {allowed}",
            )

    # ================== SESSION API ==================

    def prepare(self, device_handle: Optional[str] = None, transport=None,
                name: Optional[str] = None) -> SessionSnapshot:
        """Create the session in IDLE so it can be tracked and cancelled before start() connects"""
        if self.session is not None:
            raise InvalidSessionState("Session already started")

        if transport is None:
            transport = TransportKind.BLE if device_handle else TransportKind.HTTP
        transport = TransportKind(transport)
        if transport is TransportKind.BLE and not device_handle:
            raise InvalidSessionState("Bluetooth setup needs a device handle")
        channel = self.ble_channel if transport is TransportKind.BLE else self.http_channel
        if channel is None:
            raise InvalidSessionState(f"{transport.value} transport is not configured")

        self.session = ProvisioningSession(transport=transport, device_handle=device_handle,
                                           controller_name=name)
        return self.session.snapshot()

    async def start(self, device_handle: Optional[str] = None, transport=None,
                    name: Optional[str] = None) -> SessionSnapshot:
        """
        Open a session.

        With a device handle the BLE path connects to the pairing radio. Without
        one the HTTP path assumes this host already joined the controller's
        setup hotspot. A session created by prepare() is started with no
        arguments.
        """
        if self.session is None:
            self.prepare(device_handle, transport, name)
        elif self.session.state is not SessionState.IDLE:
            raise InvalidSessionState("Session already started")

        transport = self.session.transport
        device_handle = self.session.device_handle
        logger.info(f"[LAUNCH] Provisioning session {self.session.session_id[:8]} via {transport.value}"
                    f"{f' for {device_handle}' if device_handle else ''}")

        if transport is TransportKind.HTTP:
            self._transition(SessionState.CONNECTED)
            return self.session.snapshot()

        self._transition(SessionState.SCANNING)
        try:
            handle = await self.ble_channel.connect(device_handle)
        except ConnectionFailure as e:
            self.session.failure_history.append(f"connect: {e}")
            if self.session.state is SessionState.SCANNING:
                await self._finish(SessionState.FAILED, user_message_for(ConnectionFailure.kind),
                                   ConnectionFailure.kind)
            return self.session.snapshot()

        if self.session.state is SessionState.CANCELLED:
            await self.ble_channel.disconnect(handle)
            return self.session.snapshot()

        self._handle = handle
        self._transition(SessionState.CONNECTED)
        return self.session.snapshot()

    async def submit_credentials(self, credentials: Credentials) -> SessionSnapshot:
        """Deliver credentials; on success the automated discovery leg starts in the background"""
        self._require(SessionState.CONNECTED)
        session = self.session
        session.credentials = credentials
        self._transition(SessionState.SENDING_CREDENTIALS)
        logger.info(f"Credential attempt {session.credential_attempt}/{self.max_credential_attempts} "
                    f"for '{credentials.network_name}' (fingerprint {credentials.fingerprint()})")

        result = await self._deliver(credentials)

        if session.state is not SessionState.SENDING_CREDENTIALS:
            # Cancelled while the send was outstanding
            await self._release_transport()
            return session.snapshot()

        if result.succeeded:
            session.transport_address = result.address
            self._transition(SessionState.AWAITING_REBOOT,
                             message="Controller is restarting and joining your network")
            self._launch(self._run_automatic, result.address)
        else:
            await self._handle_delivery_failure(result)
        return session.snapshot()

    async def submit_manual_address(self, address: str) -> SessionSnapshot:
        """Verify an operator-supplied address, interrupting the automated leg"""
        self._require(*POST_CREDENTIAL_STATES)
        address = parse_manual_address(address)
        session = self.session
        session.manual_attempt = 0
        session.address = address
        self._manual_active = True
        self._transition(SessionState.VERIFYING, message=f"Connecting to {address}...")
        self._launch(self._run_manual, address)
        return session.snapshot()

    async def retry_discovery(self) -> SessionSnapshot:
        """Start a fresh automated discovery leg from manual fallback"""
        self._require(SessionState.MANUAL_FALLBACK)
        self.session.discovery_attempt = 0
        self._manual_active = False
        self._transition(SessionState.DISCOVERING, message="Searching your network again...")
        self._launch(self._run_automatic, None, False)
        return self.session.snapshot()

    async def force_accept(self, address: str, name: Optional[str] = None) -> ControllerRecord:
        """Record an unverified controller on the operator's word"""
        if not (self.session is not None and self._manual_active
                and self.session.state is SessionState.VERIFYING):
            self._require(SessionState.MANUAL_FALLBACK)
        address = parse_manual_address(address)
        await self._stop_pipeline()

        # One last identity read so the row is keyed by mac when the controller answers
        identity = None
        result = await self.verifier.verify(address)
        if result.confirmed:
            identity = result.identity
        session = self.session
        if session.terminal:
            raise InvalidSessionState(f"Session is {session.state.value}")

        session.address = address
        if name:
            session.controller_name = name
        logger.warning(f"[FORCE] Accepting unverified controller at {address}")
        self._pending_write = self._record_fields(identity, address, verified=False)
        return await self._write_pending()

    async def cancel(self) -> Optional[SessionSnapshot]:
        """Stop the session without writing anything; no-op once terminal"""
        if self.session is None or self.session.terminal:
            return self.snapshot()
        self._pending_write = None
        await self._stop_pipeline()
        await self._finish(SessionState.CANCELLED, "Setup cancelled")
        return self.session.snapshot()

    async def retry_persistence(self) -> ControllerRecord:
        """Retry the registry write of an already verified controller"""
        self._require(SessionState.PERSISTENCE_FAILED)
        return await self._write_pending()

    async def wait(self) -> Optional[SessionSnapshot]:
        """
        Wait for the background pipeline, following replacements.

        Raises:
            PersistenceFailure: the verified controller could not be saved
        """
        while True:
            task = self._pipeline
            if task is None:
                break
            try:
                await asyncio.shield(task)
            except asyncio.CancelledError:
                if not task.cancelled():
                    raise
                if self._pipeline is task:
                    break
                continue
            if self._pipeline is task:
                break
        return self.snapshot()

    # ================== CREDENTIAL DELIVERY ==================

    async def _deliver(self, credentials: Credentials) -> TransportResult:
        if self.session.transport is TransportKind.HTTP:
            return await self.http_channel.send_credentials(credentials)

        if self._handle is None or self._handle.released:
            try:
                self._handle = await self.ble_channel.connect(self.session.device_handle)
            except ConnectionFailure as e:
                return TransportResult.failure(e.reason or FailureReason.UNREACHABLE, str(e))

        result = await self.ble_channel.send_credentials(self._handle, credentials)
        if not result.succeeded and result.reason is not FailureReason.REJECTED_CREDENTIALS:
            # Link is suspect; the next attempt reconnects
            await self._release_transport()
        return result

    async def _handle_delivery_failure(self, result: TransportResult):
        session = self.session
        reason = result.reason or FailureReason.PROTOCOL_ERROR
        session.failure_history.append(f"credentials: {reason.value}: {result.detail or ''}".rstrip(': '))
        error = CredentialRejected.kind if reason is FailureReason.REJECTED_CREDENTIALS else ConnectionFailure.kind
        logger.warning(f"[ERROR] Credential attempt {session.credential_attempt} failed: {reason.value}"
                       f"{f' ({result.detail})' if result.detail else ''}")

        if session.credential_attempt >= self.max_credential_attempts:
            await self._finish(SessionState.FAILED, user_message_for("credential_attempts_exhausted"), error)
            return

        session.credential_attempt += 1
        self._transition(SessionState.CONNECTED, message=user_message_for(_FAILURE_MESSAGE_KEYS[reason]),
                         error=error)

    # ================== PIPELINES ==================

    def _launch(self, step, *args):
        """Replace the background pipeline; the new one starts after the old one unwinds"""
        previous = self._pipeline
        if previous is not None and not previous.done():
            previous.cancel()
        else:
            previous = None
        task = asyncio.create_task(self._guarded(previous, step, *args))
        task.add_done_callback(self._pipeline_done)
        self._pipeline = task

    async def _guarded(self, previous: Optional[asyncio.Task], step, *args):
        try:
            if previous is not None:
                await asyncio.gather(previous, return_exceptions=True)
            await step(*args)
        except (asyncio.CancelledError, PersistenceFailure):
            raise
        except Exception as e:
            logger.error(f"Provisioning pipeline failed: {e}")
            self.session.failure_history.append(f"internal: {e}")
            await self._finish(SessionState.FAILED, user_message_for("internal_error"), "internal_error")
            raise

    @staticmethod
    def _pipeline_done(task: asyncio.Task):
        # Retrieve the exception so an unobserved pipeline does not warn at shutdown
        if not task.cancelled():
            task.exception()

    async def _stop_pipeline(self):
        task = self._pipeline
        self._pipeline = None
        if task is None or task.done():
            return
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)

    async def _run_automatic(self, transport_address: Optional[str], settle: bool = True):
        session = self.session

        if transport_address:
            # The controller told us where it landed; check that before anything else
            self._transition(SessionState.VERIFYING, message=f"Checking {transport_address}...")
            result = await self._verify(DiscoveryCandidate(address=transport_address, source="transport"))
            if result.confirmed:
                await self._persist(result.identity, transport_address)
                return

        if settle:
            if session.state is not SessionState.AWAITING_REBOOT:
                self._transition(SessionState.AWAITING_REBOOT,
                                 message="Controller is restarting and joining your network")
            logger.info(f"Waiting {self.settle_delay}s for the controller to join the network...")
            await self._sleep(self.settle_delay)

        for attempt in range(1, self.max_discovery_attempts + 1):
            session.discovery_attempt = attempt
            found = await self._discovery_pass(attempt)
            if found is not None:
                await self._persist(found.identity, found.address)
                return

            session.failure_history.append(f"discovery: pass {attempt} found no controller")
            if attempt < self.max_discovery_attempts:
                delay = self.discovery_retry_delays[min(attempt - 1, len(self.discovery_retry_delays) - 1)]
                self._transition(SessionState.AWAITING_REBOOT,
                                 message=f"Not found yet. Searching again in {delay} seconds...")
                await self._sleep(delay)

        logger.warning(f"[WARNING] No controller found after {self.max_discovery_attempts} discovery passes")
        self._transition(SessionState.MANUAL_FALLBACK, message=user_message_for(DiscoveryTimeout.kind),
                         error=DiscoveryTimeout.kind)

    async def _discovery_pass(self, attempt: int) -> Optional[VerificationResult]:
        self._transition(SessionState.DISCOVERING,
                         message=f"Searching your network ({attempt}/{self.max_discovery_attempts})...")
        async with aclosing(self.discovery.discover(self.discovery_timeout)) as candidates:
            async for candidate in candidates:
                self._transition(SessionState.VERIFYING, message=f"Checking {candidate.address}...")
                result = await self._verify(candidate)
                if result.confirmed:
                    return result
                self._transition(SessionState.DISCOVERING,
                                 message=f"Searching your network ({attempt}/{self.max_discovery_attempts})...")
        return None

    async def _verify(self, candidate: DiscoveryCandidate) -> VerificationResult:
        result = await self.verifier.verify(candidate.host, expected_identifier=candidate.identity_token)
        if result.confirmed:
            # Record the bare address even if the candidate used a non-default port
            result = VerificationResult(result.status, candidate.address, result.identity, result.detail)
        else:
            self.session.failure_history.append(
                f"verify {candidate.address} ({candidate.source}): {result.status.value}"
                f"{f' ({result.detail})' if result.detail else ''}"
            )
        return result

    async def _run_manual(self, address: str):
        session = self.session
        last: Optional[VerificationResult] = None
        for attempt in range(1, self.manual_verify_attempts + 1):
            session.manual_attempt = attempt
            self._transition(SessionState.VERIFYING,
                             message=f"Connecting to {address} ({attempt}/{self.manual_verify_attempts})...")
            last = await self._verify(DiscoveryCandidate(address=address, source="manual"))
            if last.confirmed:
                await self._persist(last.identity, address)
                return
            if attempt < self.manual_verify_attempts:
                self._transition(
                    SessionState.VERIFYING,
                    message=(f"Attempt {attempt} failed. Retrying in {self.manual_retry_delay} seconds. "
                             f"The controller may still be rebooting."),
                )
                await self._sleep(self.manual_retry_delay)

        if last is not None and last.status is VerificationStatus.NOT_A_CONTROLLER:
            await self._finish(SessionState.FAILED, user_message_for(VerificationMismatch.kind),
                               VerificationMismatch.kind)
        else:
            await self._finish(SessionState.FAILED, user_message_for("manual_attempts_exhausted"),
                               ConnectionFailure.kind)

    # ================== PERSISTENCE ==================

    def _record_fields(self, identity: Optional[ControllerIdentity], address: str, verified: bool) -> Dict:
        session = self.session
        if identity is not None and identity.identifier:
            identifier = identity.identifier
        elif session.device_handle:
            identifier = session.device_handle
        else:
            identifier = address

        name = session.controller_name or (identity.name if identity else None) or f"Controller {address}"
        return {
            'identifier': identifier,
            'address': address,
            'name': name,
            'network_name': session.network_name,
            'configured_flag': verified,
            'verified': verified,
            'credential_fingerprint': session.credentials.fingerprint() if session.credentials else None,
        }

    async def _persist(self, identity: ControllerIdentity, address: str) -> ControllerRecord:
        self.session.address = address
        self._pending_write = self._record_fields(identity, address, verified=True)
        return await self._write_pending()

    async def _write_pending(self) -> ControllerRecord:
        session = self.session
        if session.record is not None:
            # Already persisted in this session
            return session.record

        try:
            record = await self.registry.save_record(**self._pending_write)
        except PersistenceFailure as e:
            session.failure_history.append(f"persist: {e}")
            self._transition(SessionState.PERSISTENCE_FAILED, message=user_message_for(PersistenceFailure.kind),
                             error=PersistenceFailure.kind)
            raise

        self._pending_write = None
        session.record = record
        session.credential_attempt = 1
        session.discovery_attempt = 0
        session.manual_attempt = 0
        session.failure_history.clear()
        session.last_error = None

        if record.verified:
            message = f"{record.name or 'Controller'} is online at {record.ip_address}"
        else:
            message = f"{record.name or 'Controller'} was added without verification"
        await self._finish(SessionState.SUCCEEDED, message)
        logger.info(f"[SUCCESS] Session {session.session_id[:8]} finished: {record.controller_id} "
                    f"at {record.ip_address}")
        return record

    # ================== TEARDOWN ==================

    async def _release_transport(self):
        handle = self._handle
        self._handle = None
        if handle is not None:
            await self.ble_channel.disconnect(handle)

    async def _finish(self, state: SessionState, message: Optional[str] = None, error: Optional[str] = None):
        self._manual_active = False
        await self._release_transport()
        self._transition(state, message=message, error=error)
