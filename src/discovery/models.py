"""
Discovery and verification data structures
"""

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from http_helper import format_host


@dataclass
class DiscoveryCandidate:
    """A network address that might be the controller being provisioned"""
    address: str
    name: Optional[str] = None
    identity_token: Optional[str] = None  # advertised mac, when the beacon carries one
    source: str = "mdns"  # "mdns", "hostname", "ip_scan", "manual", "transport"
    port: int = 80
    seen_at: float = field(default_factory=time.time)

    @property
    def host(self) -> str:
        """Address suitable for an HTTP URL"""
        return format_host(self.address, self.port)


@dataclass
class ControllerIdentity:
    """What a controller says about itself on its identity endpoint"""
    address: str
    name: str
    identifier: Optional[str]  # normalised mac, stable across address changes
    version: Optional[str] = None
    led_count: Optional[int] = None
    product: Optional[str] = None


class VerificationStatus(Enum):
    """Verifier verdict for one address"""
    CONTROLLER = "controller"
    NOT_A_CONTROLLER = "not_a_controller"
    UNREACHABLE = "unreachable"


@dataclass
class VerificationResult:
    """Outcome of probing one address"""
    status: VerificationStatus
    address: str
    identity: Optional[ControllerIdentity] = None
    detail: Optional[str] = None

    @property
    def confirmed(self) -> bool:
        return self.status is VerificationStatus.CONTROLLER and self.identity is not None


def normalize_mac(value) -> Optional[str]:
    """Lowercase hex mac without separators, or None if it does not look like one"""
    if not value or not isinstance(value, str):
        return None
    cleaned = ''.join(ch for ch in value.lower() if ch in '0123456789abcdef')
    if len(cleaned) != 12:
        return None
    return cleaned
