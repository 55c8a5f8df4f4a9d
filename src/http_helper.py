# HTTP Helper for Controller Connections
# Session configuration for local LED controllers (setup hotspot and home network)

import ipaddress

import aiohttp
import logging
from typing import Optional

logger = logging.getLogger(__name__)

def create_controller_session(timeout_seconds: float = 5, connect_timeout: Optional[float] = None) -> aiohttp.ClientSession:
    """
    Create properly configured aiohttp session for local controller connections (always HTTP)
    Prevents connection leaks with proper cleanup and limits
    """
    connector = aiohttp.TCPConnector(
        limit_per_host=2,           # Controllers serve very few sockets at once
        ssl=False,                  # Local controllers use HTTP only
        force_close=True,           # Force connection cleanup
        enable_cleanup_closed=True  # Additional cleanup
    )

    return aiohttp.ClientSession(
        connector=connector,
        timeout=aiohttp.ClientTimeout(total=timeout_seconds, connect=connect_timeout)
    )

def format_host(address: str, port: Optional[int] = None) -> str:
    """URL authority for an address; IPv6 literals are bracketed"""
    host = address
    try:
        if ipaddress.ip_address(address).version == 6:
            host = f"[{address}]"
    except ValueError:
        pass
    if port and port != 80:
        return f"{host}:{port}"
    return host


def controller_url(address: str, path: str) -> str:
    """Build a controller URL from a bare address, host:port or full base URL"""
    base = address.rstrip('/')
    if '://' not in base:
        base = f"http://{_authority(base)}"
    if not path.startswith('/'):
        path = '/' + path
    return f"{base}{path}"

def _authority(text: str) -> str:
    """Bracket a bare IPv6 literal, or the IPv6 part of an "address:port" pair"""
    if text.startswith('['):
        return text
    if text.count(':') < 2:
        return text
    try:
        ipaddress.IPv6Address(text)
        return f"[{text}]"
    except ValueError:
        pass
    address, _, port = text.rpartition(':')
    if port.isdigit():
        try:
            ipaddress.IPv6Address(address)
            return f"[{address}]:{port}"
        except ValueError:
            pass
    return text
