"""
Database models and data structures
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional


def _convert_ip_address(ip_addr) -> str:
    """Convert IPv4Address object to string if needed"""
    if ip_addr is None:
        return None
    return str(ip_addr)


def controller_key(identifier: str) -> str:
    """Registry key for a device identifier (mac, BLE address or network address)"""
    return identifier.strip().replace(':', '_').replace('.', '_')


@dataclass
class ControllerRecord:
    """Durable record for a provisioned controller"""
    controller_id: str
    ip_address: str
    name: Optional[str] = None
    network_name: Optional[str] = None
    network_configured: bool = False
    verified: bool = True  # False only for operator force-accepted records
    credential_fingerprint: Optional[str] = None
    owner_id: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "controller_id": self.controller_id,
            "ip_address": self.ip_address,
            "name": self.name,
            "network_name": self.network_name,
            "network_configured": self.network_configured,
            "verified": self.verified,
            "credential_fingerprint": self.credential_fingerprint,
            "owner_id": self.owner_id,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }
