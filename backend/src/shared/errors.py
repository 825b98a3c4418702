"""
Error taxonomy for verification and payment processing.

Fatal errors are deterministic and are never retried; anything else raised
while verifying a mission is treated as transient.
"""


class ClubRunError(Exception):
    """Base class for all platform errors."""


class FatalVerificationError(ClubRunError):
    """Raised when a verification attempt can never succeed (bad mission/runner data)."""


class MissionNotFoundError(FatalVerificationError):
    """Raised when the mission being verified does not exist."""

    def __init__(self, mission_id):
        self.mission_id = mission_id
        super().__init__("Mission not found")


class TransientVerificationError(ClubRunError):
    """Raised when a verification attempt failed for a reason that may clear up."""


class UnsupportedPaymentMethodError(ClubRunError):
    """Raised when a payment method is not one the router can dispatch."""

    def __init__(self, method):
        self.method = method
        super().__init__(f"Unsupported payment method: {method}")


class PaymentInstructionNotFoundError(ClubRunError):
    """Raised when a payment instruction id is unknown."""

    def __init__(self, instruction_id):
        self.instruction_id = instruction_id
        super().__init__(f"Payment instruction {instruction_id} not found")


class MissionAlreadyTerminalError(ClubRunError):
    """
    Raised when a terminal status write is rejected because the mission is
    already COMPLETED or FAILED, or no longer exists.
    """

    def __init__(self, mission_id):
        self.mission_id = mission_id
        super().__init__(f"Mission {mission_id} is already in a terminal state")


def is_fatal(error: Exception) -> bool:
    """Fatal errors skip the retry loop."""
    return isinstance(error, (FatalVerificationError, UnsupportedPaymentMethodError))
