"""
Lazily constructed, process-wide service instances for Lambda handlers.
Warm invocations reuse the same router and verification service.
"""
from .archiver import ProofArchiver
from .notifier import Notifier
from .payments import PaymentRouter
from .serato import SeratoClient
from .stores import (
    MissionStore,
    PaymentInstructionStore,
    RunnerStore,
    ScheduleStore,
    VerificationStatusStore,
)
from .verification import MissionVerificationService, VerificationQueue

_notifier = None
_payment_router = None
_verification_service = None


def get_notifier() -> Notifier:
    """Get or create the notification dispatcher."""
    global _notifier
    if _notifier is None:
        _notifier = Notifier()
    return _notifier


def get_payment_router() -> PaymentRouter:
    """Get or create the payment router."""
    global _payment_router
    if _payment_router is None:
        _payment_router = PaymentRouter(get_notifier(), PaymentInstructionStore())
    return _payment_router


def get_verification_service() -> MissionVerificationService:
    """
    Get or create the verification service.
    Inside Lambda the worker never sleeps on retry gates; waiting tasks go
    back to the durable schedule instead.
    """
    global _verification_service
    if _verification_service is None:
        queue = VerificationQueue(
            oracle=SeratoClient(),
            missions=MissionStore(),
            runners=RunnerStore(),
            archiver=ProofArchiver(),
            notifier=get_notifier(),
            payments=get_payment_router(),
            wait_for_retries=False,
        )
        _verification_service = MissionVerificationService(queue, ScheduleStore(), VerificationStatusStore())
    return _verification_service
