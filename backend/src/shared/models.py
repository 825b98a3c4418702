"""
Data models and status constants for mission verification and payments.
Based on the mission lifecycle: Pending → InProgress → Completed/Failed (terminal)
"""
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional


class MissionStatus:
    """Mission lifecycle statuses."""
    PENDING = 'PENDING'
    IN_PROGRESS = 'IN_PROGRESS'
    COMPLETED = 'COMPLETED'
    FAILED = 'FAILED'

    TERMINAL = (COMPLETED, FAILED)


class VerificationState:
    """Per-mission verification progress as reported by get_verification_status."""
    SCHEDULED = 'scheduled'
    QUEUED = 'queued'
    VERIFYING = 'verifying'
    DEFERRED = 'deferred'
    RETRYING = 'retrying'
    COMPLETED = 'completed'
    FAILED = 'failed'
    NOT_FOUND = 'not_found'


class PaymentMethod:
    """Supported payment methods."""
    MATIC = 'matic'
    USDC = 'usdc'
    CASHAPP = 'cashapp'
    ZELLE = 'zelle'
    VENMO = 'venmo'
    PAYPAL = 'paypal'

    CRYPTO = (MATIC, USDC)
    MANUAL = (CASHAPP, ZELLE, VENMO, PAYPAL)
    ALL = CRYPTO + MANUAL


class PaymentStatus:
    """Payment / payment-instruction statuses."""
    PENDING = 'pending'
    COMPLETED = 'completed'
    FAILED = 'failed'
    NOT_FOUND = 'not_found'


class NotificationType:
    """Notification payload types."""
    PAYMENT_REQUIRED = 'payment_required'
    PAYMENT_COMPLETED = 'payment_completed'
    MISSION_COMPLETED = 'mission_completed'
    MISSION_FAILED = 'mission_failed'


VERIFICATION_METHOD_SERATO = 'serato_automated'
TRACK_NOT_FOUND_REASON = 'Track not found in play history'


@dataclass(frozen=True)
class VerificationWindow:
    """Wall-clock bounds in which the required track must have played."""
    start_time: datetime
    end_time: datetime


@dataclass
class VerificationTask:
    """A unit of pending verification work, owned by the verification queue."""
    mission_id: str
    runner_id: str
    verification_window: VerificationWindow
    created_at: datetime
    max_attempts: int = 3
    attempts: int = 0
    retry_at: Optional[datetime] = None

    def is_ready(self, now: datetime) -> bool:
        return self.retry_at is None or self.retry_at <= now

    def to_dict(self) -> Dict[str, Any]:
        return {
            'missionId': self.mission_id,
            'runnerId': self.runner_id,
            'verificationWindow': {
                'startTime': self.verification_window.start_time.isoformat(),
                'endTime': self.verification_window.end_time.isoformat(),
            },
            'attempts': self.attempts,
            'maxAttempts': self.max_attempts,
            'retryAt': self.retry_at.isoformat() if self.retry_at else None,
            'createdAt': self.created_at.isoformat(),
        }


@dataclass
class VerificationResult:
    """Outcome of a single oracle lookup."""
    track_found: bool = False
    confidence: float = 0
    details: Optional[Dict[str, Any]] = None
    play_time: Optional[datetime] = None
    duration: float = 0
    venue: Optional[str] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'trackFound': self.track_found,
            'confidence': self.confidence,
            'details': self.details,
            'playTime': self.play_time.isoformat() if self.play_time else None,
            'duration': self.duration,
            'venue': self.venue,
        }
