"""
Provisioning Server - Main orchestrator for all services
"""

import asyncio
import logging
from typing import Dict, List, Optional
import uvicorn

# Local imports
from config_loader import load_config, setup_logging
from database.manager import DeviceRegistry
from discovery.network_discovery import NetworkDiscovery
from discovery.verifier import ReachabilityVerifier
from transport.ble_channel import BLEProvisioningChannel
from transport.http_channel import HTTPProvisioningChannel
from provisioning.manager import SessionManager
from api.main_api import ProvisioningAPI

logger = logging.getLogger(__name__)


def build_components(config: Dict) -> Dict:
    """Wire registry, channels, discovery, verifier, sessions and API from config"""
    registry = DeviceRegistry(config)
    ble_channel = BLEProvisioningChannel(config['transport']['rpc'])
    http_channel = HTTPProvisioningChannel(config['transport']['http'])
    discovery = NetworkDiscovery(config['discovery'])
    verifier = ReachabilityVerifier(config['verification'])
    sessions = SessionManager(
        config['provisioning'], registry,
        ble_channel=ble_channel,
        http_channel=http_channel,
        discovery=discovery,
        verifier=verifier,
    )
    api = ProvisioningAPI(registry, sessions, config, ble_channel=ble_channel)
    return {
        'registry': registry,
        'ble_channel': ble_channel,
        'http_channel': http_channel,
        'discovery': discovery,
        'verifier': verifier,
        'sessions': sessions,
        'api': api,
    }


class ProvisioningServer:
    """Main server hosting the provisioning API and its background services"""

    def __init__(self, config_path: Optional[str] = None):
        self.config = load_config(config_path)
        setup_logging(self.config)

        components = build_components(self.config)
        self.registry = components['registry']
        self.sessions = components['sessions']
        self.api = components['api']

        self.running = False
        self.tasks: List[asyncio.Task] = []
        self._api_server: Optional[uvicorn.Server] = None

    async def start(self):
        """Start all server services"""
        logger.info("Starting LED Controller Provisioning Server...")

        try:
            await self.registry.initialize()
            logger.info("Registry initialized successfully")

            self.running = True
            self.tasks = [
                asyncio.create_task(self._session_cleanup_service()),
                asyncio.create_task(self._registry_watch_service()),
            ]
            logger.info(f"All services started successfully ({len(self.tasks)} background tasks)")

            await self._start_api_server()

        except Exception as e:
            logger.error(f"Server startup failed: {e}")
            await self.stop()
            raise

    async def stop(self):
        """Stop all server services gracefully"""
        if not self.running and not self.tasks:
            return
        logger.info("Stopping server...")
        self.running = False
        if self._api_server is not None:
            self._api_server.should_exit = True

        # Live sessions first so no transport stays held
        await self.sessions.shutdown()

        for task in self.tasks:
            task.cancel()
        if self.tasks:
            await asyncio.gather(*self.tasks, return_exceptions=True)
        self.tasks = []

        await self.registry.close()
        logger.info("Server stopped")

    async def _session_cleanup_service(self):
        """Forget finished sessions once their TTL passes"""
        interval = max(30, self.sessions.session_ttl // 10)
        while self.running:
            try:
                await asyncio.sleep(interval)
                self.sessions.prune()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Session cleanup error: {e}")

    async def _registry_watch_service(self):
        """Log controller records as they are created or change"""
        try:
            async for record in self.registry.stream_records():
                state = "verified" if record.verified else "unverified"
                logger.info(f"[DB] Controller {record.controller_id} ({record.name}) at {record.ip_address}, {state}")
        except asyncio.CancelledError:
            pass

    async def _start_api_server(self):
        """Start the FastAPI server"""
        config = uvicorn.Config(
            self.api.app,
            host=self.config['api']['host'],
            port=self.config['api']['port'],
            log_level="info",
            access_log=False  # We handle our own logging
        )

        server = uvicorn.Server(config)
        self._api_server = server

        logger.info(f"Starting API server on {self.config['api']['host']}:{self.config['api']['port']}")
        logger.info(f"API documentation: http://localhost:{self.config['api']['port']}/docs")

        await server.serve()
