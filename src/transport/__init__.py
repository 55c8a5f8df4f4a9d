"""
Transport module for credential delivery to controllers
"""

from .models import Credentials, TransportKind, TransportOutcome, FailureReason, TransportResult
from .ble_channel import BLEProvisioningChannel, ChannelHandle
from .http_channel import HTTPProvisioningChannel

__all__ = ['Credentials', 'TransportKind', 'TransportOutcome', 'FailureReason', 'TransportResult',
           'BLEProvisioningChannel', 'ChannelHandle', 'HTTPProvisioningChannel']
