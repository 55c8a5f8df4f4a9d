"""
Local HTTP API for the LED controller provisioning service
Exposes provisioning sessions, the controller registry and system health
"""

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from typing import Dict
import logging

# Import modular route factories
from .system_routes import create_system_routes
from .session_routes import create_session_routes
from .controller_routes import create_controller_routes

logger = logging.getLogger(__name__)


class ProvisioningAPI:
    """Local HTTP API for controller provisioning"""

    def __init__(self, registry, session_manager, config: Dict, ble_channel=None):
        self.registry = registry
        self.sessions = session_manager
        self.config = config
        self.ble_channel = ble_channel
        self.app = FastAPI(
            title="LED Controller Provisioning Server",
            description="Local API for putting LED controllers on the home network",
            version="1.0.0"
        )
        self._setup_middleware()
        self._setup_routes()

    def _setup_middleware(self):
        origins = self.config.get('api', {}).get('cors_origins', ['*'])
        self.app.add_middleware(
            CORSMiddleware,
            allow_origins=origins,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    def _setup_routes(self):
        """Setup FastAPI routes using modular approach"""
        system_router = create_system_routes(self.registry, self.sessions, self.config)
        session_router = create_session_routes(self.sessions, self.ble_channel)
        controller_router = create_controller_routes(self.registry)

        self.app.include_router(system_router)
        self.app.include_router(session_router)
        self.app.include_router(controller_router)
