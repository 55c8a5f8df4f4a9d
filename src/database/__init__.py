"""
Database module for the controller registry
"""

from .manager import DeviceRegistry
from .models import ControllerRecord, controller_key, _convert_ip_address

__all__ = ['DeviceRegistry', 'ControllerRecord', 'controller_key', '_convert_ip_address']
