"""
Discovery module for locating and verifying controllers on the home network
"""

from .models import DiscoveryCandidate, ControllerIdentity, VerificationStatus, VerificationResult, normalize_mac
from .network_discovery import NetworkDiscovery
from .verifier import ReachabilityVerifier

__all__ = ['DiscoveryCandidate', 'ControllerIdentity', 'VerificationStatus', 'VerificationResult',
           'normalize_mac', 'NetworkDiscovery', 'ReachabilityVerifier']
