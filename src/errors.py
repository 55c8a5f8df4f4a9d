"""
Provisioning error taxonomy and operator-facing messages
"""

from typing import Optional


class ProvisioningError(Exception):
    """Base class for all provisioning failures"""

    kind = "provisioning_error"

    def __init__(self, message: str, detail: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail

    def __str__(self) -> str:
        if self.detail:
            return f"{self.message} ({self.detail})"
        return self.message


class ConnectionFailure(ProvisioningError):
    """Pairing radio or device hotspot could not be reached"""

    kind = "connection_failure"

    def __init__(self, message: str, detail: Optional[str] = None, reason=None):
        super().__init__(message, detail)
        # FailureReason of the transport layer, when one applies
        self.reason = reason


class CredentialRejected(ProvisioningError):
    """Device refused the credentials or failed to persist them"""

    kind = "credential_rejected"


class DiscoveryTimeout(ProvisioningError):
    """No controller candidate appeared on the network in the window"""

    kind = "discovery_timeout"


class VerificationMismatch(ProvisioningError):
    """A host answered but it is not the expected controller"""

    kind = "verification_mismatch"


class PersistenceFailure(ProvisioningError):
    """Device registry write failed"""

    kind = "persistence_failure"


class InvalidSessionState(ProvisioningError):
    """Session API called in a state that does not accept the operation"""

    kind = "invalid_session_state"


# Messages shown to the operator. Raw transport strings never reach the UI.
USER_MESSAGES = {
    "connection_failure": (
        "Could not reach the controller. Make sure it is powered on, in setup "
        "mode, and within about 10 meters of this device."
    ),
    "credential_rejected": (
        "The controller did not accept the Wi-Fi settings. Check the network "
        "name (it is case-sensitive) and the password, then try again."
    ),
    "credential_unreachable": (
        "Lost contact with the controller while sending the Wi-Fi settings. "
        "Stay connected to the controller's setup network and try again."
    ),
    "credential_timeout": (
        "The controller took too long to answer. Move closer to it and try again."
    ),
    "credential_protocol": (
        "The controller answered in an unexpected way. Factory-reset it and "
        "start setup again."
    ),
    "discovery_timeout": (
        "The controller did not appear on your home network yet. It may still "
        "be rebooting. Check your router's device list for \"WLED\" and enter "
        "its IP address, or try searching again."
    ),
    "verification_mismatch": (
        "A device answered at that address but it is not an LED controller. "
        "Double-check the IP address in your router."
    ),
    "verification_unreachable": (
        "Nothing answered at that address. The controller may still be "
        "rebooting; confirm it joined your Wi-Fi and that this device is on "
        "the same network."
    ),
    "persistence_failure": (
        "The controller is online but could not be saved to your account. "
        "Try saving again."
    ),
    "credential_attempts_exhausted": (
        "The Wi-Fi settings were refused too many times. Power-cycle the "
        "controller and start setup again."
    ),
    "manual_attempts_exhausted": (
        "Could not connect to the controller at that address after several "
        "attempts. Power-cycle it and check the address in your router."
    ),
    "internal_error": "Setup stopped unexpectedly. Please start again.",
}


def user_message_for(key: str) -> str:
    """Look up the operator message for an error kind or message key"""
    return USER_MESSAGES.get(key, "Something went wrong during setup. Please try again.")
