"""
Session manager: owns the live provisioning sessions of this host
"""

import asyncio
import logging
import time
from typing import Dict, List, Optional

from errors import InvalidSessionState
from transport.models import TransportKind
from .orchestrator import ProvisioningOrchestrator

logger = logging.getLogger(__name__)


class SessionManager:
    """Creates one orchestrator per session and keeps at most one live session per device"""

    def __init__(self, config: Dict, registry, ble_channel=None, http_channel=None,
                 discovery=None, verifier=None, sleep=asyncio.sleep):
        self.config = config
        self.registry = registry
        self.ble_channel = ble_channel
        self.http_channel = http_channel
        self.discovery = discovery
        self.verifier = verifier
        self._sleep = sleep
        self.session_ttl = config.get('session_ttl_seconds', 900)
        self.sessions: Dict[str, ProvisioningOrchestrator] = {}

    def _live_for(self, device_handle: str) -> bool:
        return any(
            o.session.device_handle == device_handle and not o.session.terminal
            for o in self.sessions.values()
        )

    async def create_session(self, transport=None, device_handle: Optional[str] = None,
                             name: Optional[str] = None) -> ProvisioningOrchestrator:
        """Start a new session; raises InvalidSessionState if the device is already being set up"""
        self.prune()
        if device_handle and self._live_for(device_handle):
            raise InvalidSessionState("This controller is already being set up", detail=device_handle)
        kind = TransportKind(transport) if transport else (
            TransportKind.BLE if device_handle else TransportKind.HTTP)
        if kind is TransportKind.HTTP and any(
            o.session.transport is TransportKind.HTTP and not o.session.terminal for o in self.sessions.values()
        ):
            # Only one hotspot can be joined at a time
            raise InvalidSessionState("A hotspot setup session is already running")

        orchestrator = ProvisioningOrchestrator(
            self.config, self.registry,
            ble_channel=self.ble_channel,
            http_channel=self.http_channel,
            discovery=self.discovery,
            verifier=self.verifier,
            sleep=self._sleep,
        )
        # Tracked before connecting so it can be listed and cancelled while scanning
        orchestrator.prepare(device_handle, kind, name)
        self.sessions[orchestrator.session.session_id] = orchestrator
        try:
            await orchestrator.start()
        except BaseException:
            # Interrupted connect: leave nothing live behind
            await orchestrator.cancel()
            raise
        return orchestrator

    def get(self, session_id: str) -> Optional[ProvisioningOrchestrator]:
        return self.sessions.get(session_id)

    def list_sessions(self) -> List[ProvisioningOrchestrator]:
        return list(self.sessions.values())

    def active_count(self) -> int:
        return sum(1 for o in self.sessions.values() if not o.session.terminal)

    def prune(self, now: Optional[float] = None) -> int:
        """Forget terminal sessions older than the TTL"""
        now = now or time.time()
        expired = [
            sid for sid, o in self.sessions.items()
            if o.session.terminal and o.session.finished_at
            and now - o.session.finished_at > self.session_ttl
        ]
        for sid in expired:
            del self.sessions[sid]
        if expired:
            logger.debug(f"Pruned {len(expired)} finished sessions")
        return len(expired)

    async def shutdown(self):
        """Cancel every live session"""
        live = [o for o in self.sessions.values() if not o.session.terminal]
        if live:
            logger.info(f"Cancelling {len(live)} live provisioning sessions...")
        await asyncio.gather(*(o.cancel() for o in live), return_exceptions=True)
