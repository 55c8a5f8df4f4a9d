"""
API module for provisioning control and monitoring
"""

from .main_api import ProvisioningAPI
from .session_routes import create_session_routes
from .controller_routes import create_controller_routes
from .system_routes import create_system_routes

__all__ = ['ProvisioningAPI', 'create_session_routes', 'create_controller_routes', 'create_system_routes']
