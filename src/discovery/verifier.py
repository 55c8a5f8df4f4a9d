"""
Reachability verifier: confirms an address belongs to an LED controller
"""

import asyncio
import logging
from typing import Dict, Optional

import aiohttp

from http_helper import create_controller_session, controller_url
from .models import ControllerIdentity, VerificationResult, VerificationStatus, normalize_mac

logger = logging.getLogger(__name__)


class ReachabilityVerifier:
    """Issues a read-only identity request and validates the response shape"""

    def __init__(self, config: Dict):
        self.config = config
        self.timeout_seconds = config.get('timeout_seconds', 12)
        self.identity_path = config.get('identity_path', '/json/info')

    async def verify(self, address: str, expected_identifier: Optional[str] = None) -> VerificationResult:
        """
        Probe one address.

        Args:
            address: host, host:port or base URL of the candidate
            expected_identifier: advertised identity token; when given, the
                controller's own mac must match it
        """
        url = controller_url(address, self.identity_path)
        try:
            async with create_controller_session(self.timeout_seconds) as session:
                async with session.get(url) as response:
                    if response.status != 200:
                        return VerificationResult(VerificationStatus.NOT_A_CONTROLLER, address,
                                                  detail=f"HTTP {response.status}")
                    try:
                        info = await response.json(content_type=None)
                    except ValueError:
                        return VerificationResult(VerificationStatus.NOT_A_CONTROLLER, address,
                                                  detail="identity response is not JSON")
        except asyncio.TimeoutError:
            logger.debug(f"Identity request to {address} timed out")
            return VerificationResult(VerificationStatus.UNREACHABLE, address, detail="timeout")
        except aiohttp.ClientError as e:
            logger.debug(f"Identity request to {address} failed: {e}")
            return VerificationResult(VerificationStatus.UNREACHABLE, address, detail=str(e))

        identity = self._parse_identity(address, info)
        if identity is None:
            return VerificationResult(VerificationStatus.NOT_A_CONTROLLER, address,
                                      detail="response does not look like a controller")

        expected = normalize_mac(expected_identifier) if expected_identifier else None
        if expected and identity.identifier and expected != identity.identifier:
            logger.warning(f"[MISMATCH] {address} reports {identity.identifier}, expected {expected}")
            return VerificationResult(VerificationStatus.NOT_A_CONTROLLER, address, identity=None,
                                      detail="identity does not match the advertised device")

        logger.info(f"[OK] Verified controller '{identity.name}' at {address}")
        return VerificationResult(VerificationStatus.CONTROLLER, address, identity=identity)

    @staticmethod
    def _parse_identity(address: str, info) -> Optional[ControllerIdentity]:
        """Accept only a JSON object with a name and a capability marker"""
        if not isinstance(info, dict):
            return None
        name = info.get('name')
        if not isinstance(name, str) or not name.strip():
            return None

        leds = info.get('leds')
        version = info.get('ver')
        if not isinstance(leds, dict) and not isinstance(version, str):
            return None

        led_count = None
        if isinstance(leds, dict) and isinstance(leds.get('count'), int):
            led_count = leds['count']

        return ControllerIdentity(
            address=address,
            name=name.strip(),
            identifier=normalize_mac(info.get('mac')),
            version=version if isinstance(version, str) else None,
            led_count=led_count,
            product=info.get('product') if isinstance(info.get('product'), str) else None,
        )
