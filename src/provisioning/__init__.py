"""
Provisioning module: session state machine and session management
"""

from .models import SessionState, ProvisioningSession, SessionSnapshot, TERMINAL_STATES, POST_CREDENTIAL_STATES
from .orchestrator import ProvisioningOrchestrator, parse_manual_address
from .manager import SessionManager

__all__ = ['SessionState', 'ProvisioningSession', 'SessionSnapshot', 'TERMINAL_STATES', 'POST_CREDENTIAL_STATES',
           'ProvisioningOrchestrator', 'parse_manual_address', 'SessionManager']
