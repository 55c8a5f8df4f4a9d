"""
Provisioning session data structures
"""

import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from transport.models import Credentials, TransportKind
from database.models import ControllerRecord


class SessionState(Enum):
    """Orchestrator state machine"""
    IDLE = "idle"
    SCANNING = "scanning"
    CONNECTED = "connected"
    SENDING_CREDENTIALS = "sending_credentials"
    AWAITING_REBOOT = "awaiting_reboot"
    DISCOVERING = "discovering"
    VERIFYING = "verifying"
    MANUAL_FALLBACK = "manual_fallback"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"
    PERSISTENCE_FAILED = "persistence_failed"


TERMINAL_STATES = frozenset({SessionState.SUCCEEDED, SessionState.FAILED, SessionState.CANCELLED})

# States in which the credentials are already on the controller
POST_CREDENTIAL_STATES = frozenset({
    SessionState.AWAITING_REBOOT,
    SessionState.DISCOVERING,
    SessionState.VERIFYING,
    SessionState.MANUAL_FALLBACK,
})


@dataclass
class ProvisioningSession:
    """One end-to-end attempt to put a controller on the home network"""
    transport: TransportKind
    device_handle: Optional[str] = None
    controller_name: Optional[str] = None
    session_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    credentials: Optional[Credentials] = None
    credential_attempt: int = 1
    discovery_attempt: int = 0
    manual_attempt: int = 0
    state: SessionState = SessionState.IDLE
    started_at: float = field(default_factory=time.time)
    finished_at: Optional[float] = None
    last_error: Optional[str] = None
    message: Optional[str] = None
    failure_history: List[str] = field(default_factory=list)
    transport_address: Optional[str] = None
    address: Optional[str] = None
    record: Optional[ControllerRecord] = None

    @property
    def network_name(self) -> Optional[str]:
        return self.credentials.network_name if self.credentials else None

    @property
    def terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def snapshot(self) -> "SessionSnapshot":
        return SessionSnapshot(
            session_id=self.session_id,
            state=self.state,
            transport=self.transport,
            network_name=self.network_name,
            credential_attempt=self.credential_attempt,
            discovery_attempt=self.discovery_attempt,
            manual_attempt=self.manual_attempt,
            address=self.address,
            message=self.message,
            error=self.last_error,
            verified=self.record.verified if self.record else None,
            controller_id=self.record.controller_id if self.record else None,
            failure_history=tuple(self.failure_history),
        )


@dataclass(frozen=True)
class SessionSnapshot:
    """Immutable view of a session handed to observers"""
    session_id: str
    state: SessionState
    transport: TransportKind
    network_name: Optional[str]
    credential_attempt: int
    discovery_attempt: int
    manual_attempt: int
    address: Optional[str]
    message: Optional[str]
    error: Optional[str]
    verified: Optional[bool]
    controller_id: Optional[str]
    failure_history: tuple = ()
    timestamp: float = field(default_factory=time.time)

    @property
    def terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def to_dict(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "state": self.state.value,
            "transport": self.transport.value,
            "network_name": self.network_name,
            "credential_attempt": self.credential_attempt,
            "discovery_attempt": self.discovery_attempt,
            "manual_attempt": self.manual_attempt,
            "address": self.address,
            "message": self.message,
            "error": self.error,
            "verified": self.verified,
            "controller_id": self.controller_id,
            "failure_history": list(self.failure_history),
            "terminal": self.terminal,
            "timestamp": self.timestamp,
        }
