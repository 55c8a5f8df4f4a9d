"""
Local HTTP configuration channel for controllers in setup-hotspot mode.

The caller must already be associated with the controller's own access
point; this channel only talks HTTP to it.
"""

import asyncio
import logging
from typing import Dict, Optional

import aiohttp

from http_helper import create_controller_session, controller_url
from .models import Credentials, FailureReason, TransportResult

logger = logging.getLogger(__name__)


class ReadBackError(Exception):
    """Saved configuration could not be fetched from the controller"""

    def __init__(self, reason: FailureReason, detail: str):
        super().__init__(detail)
        self.reason = reason


class HTTPProvisioningChannel:
    """Submits credentials to the controller's temporary web endpoint"""

    def __init__(self, config: Dict, sleep=asyncio.sleep):
        self.config = config
        self.base_url = config.get('base_url', 'http://4.3.2.1')
        self.request_timeout = config.get('request_timeout', 15)
        self.flash_write_delay = config.get('flash_write_delay', 2)
        self.reboot_timeout = config.get('reboot_timeout', 5)
        self.settings_path = config.get('settings_path', '/settings/wifi')
        self.config_path = config.get('config_path', '/json/cfg')
        self.state_path = config.get('state_path', '/json/state')
        self._sleep = sleep

    async def send_credentials(self, credentials: Credentials) -> TransportResult:
        """
        Submit credentials, confirm the controller saved them, then reboot it.

        A 2xx/3xx on submission only means "delivered"; success is reported
        only after the saved network name reads back equal to what was sent.
        """
        logger.info(f"Submitting Wi-Fi settings for '{credentials.network_name}' "
                    f"(fingerprint {credentials.fingerprint()}) to {self.base_url}")
        form = {
            'CS': credentials.network_name,   # client network name
            'CP': credentials.secret,         # client secret
            'I0': '0',                        # DHCP
            'WS': '1',                        # persist to flash
        }
        try:
            async with create_controller_session(self.request_timeout) as session:
                async with session.post(controller_url(self.base_url, self.settings_path),
                                        data=form, allow_redirects=False) as response:
                    if not (200 <= response.status < 400):
                        return TransportResult.failure(
                            FailureReason.PROTOCOL_ERROR,
                            f"settings endpoint returned HTTP {response.status}",
                        )
                    logger.info(f"Settings delivered (HTTP {response.status})")
        except asyncio.TimeoutError:
            return TransportResult.failure(FailureReason.TIMEOUT, "settings submission timed out")
        except aiohttp.ClientError as e:
            return TransportResult.failure(FailureReason.UNREACHABLE, str(e))

        # Give the controller time to write settings to flash
        await self._sleep(self.flash_write_delay)

        try:
            saved_name = await self._read_saved_network_name()
        except ReadBackError as e:
            return TransportResult.failure(e.reason, f"could not read back saved settings: {e}")

        if saved_name != credentials.network_name:
            logger.warning(f"[MISMATCH] Controller saved network '{saved_name}', "
                           f"expected '{credentials.network_name}'")
            return TransportResult.failure(
                FailureReason.REJECTED_CREDENTIALS,
                f"saved network name {saved_name!r} does not match",
            )

        logger.info("[OK] Saved configuration matches; requesting reboot")
        await self.reboot()
        return TransportResult.without_address("settings saved, controller rebooting")

    async def verify_saved(self, credentials: Credentials) -> bool:
        """True when the controller's saved network name equals the one sent"""
        try:
            saved_name = await self._read_saved_network_name()
        except ReadBackError as e:
            logger.warning(f"Read-back failed: {e}")
            return False
        return saved_name == credentials.network_name

    async def _read_saved_network_name(self) -> Optional[str]:
        try:
            async with create_controller_session(self.request_timeout) as session:
                async with session.get(controller_url(self.base_url, self.config_path)) as response:
                    if response.status != 200:
                        raise ReadBackError(FailureReason.PROTOCOL_ERROR,
                                            f"config endpoint returned HTTP {response.status}")
                    cfg = await response.json(content_type=None)
        except asyncio.TimeoutError as e:
            raise ReadBackError(FailureReason.TIMEOUT, "config read timed out") from e
        except aiohttp.ClientError as e:
            raise ReadBackError(FailureReason.UNREACHABLE, str(e)) from e
        except ValueError as e:
            raise ReadBackError(FailureReason.PROTOCOL_ERROR, f"config is not JSON: {e}") from e

        if not isinstance(cfg, dict):
            return None
        interfaces = (cfg.get('nw') or {}).get('ins')
        if isinstance(interfaces, list) and interfaces and isinstance(interfaces[0], dict):
            return interfaces[0].get('ssid')
        return None

    async def reboot(self) -> None:
        """Ask the controller to restart; it usually drops the connection mid-response"""
        try:
            async with create_controller_session(self.reboot_timeout) as session:
                async with session.post(controller_url(self.base_url, self.state_path),
                                        json={'rb': True}) as response:
                    logger.info(f"Reboot requested (HTTP {response.status})")
        except (asyncio.TimeoutError, aiohttp.ClientError) as e:
            logger.debug(f"Reboot request ended without a response (expected): {e}")
