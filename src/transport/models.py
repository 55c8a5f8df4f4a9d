"""
Transport data structures shared by the BLE and HTTP credential channels
"""

import hashlib
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional


class TransportKind(Enum):
    """Credential delivery mechanism"""
    BLE = "ble"
    HTTP = "http"


class TransportOutcome(Enum):
    """Variant tag of a TransportResult"""
    SUCCESS_WITH_ADDRESS = "success_with_address"
    SUCCESS_WITHOUT_ADDRESS = "success_without_address"
    FAILURE = "failure"


class FailureReason(Enum):
    """Why a credential send failed"""
    UNREACHABLE = "unreachable"
    REJECTED_CREDENTIALS = "rejected_credentials"
    TIMEOUT = "timeout"
    PROTOCOL_ERROR = "protocol_error"


@dataclass(frozen=True)
class Credentials:
    """Home network credentials handed to the controller"""
    network_name: str
    secret: str = field(default="", repr=False)

    def __post_init__(self):
        if not isinstance(self.network_name, str) or not self.network_name.strip():
            raise ValueError("network_name must not be empty")
        if self.secret is None:
            object.__setattr__(self, "secret", "")
        object.__setattr__(self, "network_name", self.network_name.strip())

    def fingerprint(self) -> str:
        """Short digest identifying this credential pair without revealing it"""
        digest = hashlib.sha256(f"{self.network_name}\x00{self.secret}".encode("utf-8"))
        return digest.hexdigest()[:16]


@dataclass(frozen=True)
class TransportResult:
    """Outcome of one send-credentials attempt"""
    outcome: TransportOutcome
    address: Optional[str] = None
    reason: Optional[FailureReason] = None
    detail: Optional[str] = None

    @classmethod
    def with_address(cls, address: str, detail: Optional[str] = None) -> "TransportResult":
        return cls(TransportOutcome.SUCCESS_WITH_ADDRESS, address=address, detail=detail)

    @classmethod
    def without_address(cls, detail: Optional[str] = None) -> "TransportResult":
        return cls(TransportOutcome.SUCCESS_WITHOUT_ADDRESS, detail=detail)

    @classmethod
    def failure(cls, reason: FailureReason, detail: Optional[str] = None) -> "TransportResult":
        return cls(TransportOutcome.FAILURE, reason=reason, detail=detail)

    @property
    def succeeded(self) -> bool:
        return self.outcome is not TransportOutcome.FAILURE
