"""
Configuration module for the mission verification backend.
Loads all environment variables needed by the platform.
"""
import os


class Config:
    """Centralized configuration from environment variables."""

    # AWS Region
    AWS_REGION = os.environ.get('AWS_REGION', 'us-east-1')

    # DynamoDB Tables
    MISSIONS_TABLE = os.environ.get('MISSIONS_TABLE', '')
    RUNNERS_TABLE = os.environ.get('RUNNERS_TABLE', '')
    SCHEDULED_VERIFICATIONS_TABLE = os.environ.get('SCHEDULED_VERIFICATIONS_TABLE', '')
    VERIFICATION_STATUS_TABLE = os.environ.get('VERIFICATION_STATUS_TABLE', '')
    PAYMENT_INSTRUCTIONS_TABLE = os.environ.get('PAYMENT_INSTRUCTIONS_TABLE', '')

    # Proof archive
    PROOF_BUCKET = os.environ.get('PROOF_BUCKET', '')
    IPFS_GATEWAY_URL = os.environ.get('IPFS_GATEWAY_URL', 'https://ipfs.io/ipfs/')

    # EventBridge
    EVENT_BUS_NAME = os.environ.get('EVENT_BUS_NAME', 'default')

    # Serato (track-match oracle)
    SERATO_CLIENT_ID = os.environ.get('SERATO_CLIENT_ID', '')
    SERATO_CLIENT_SECRET = os.environ.get('SERATO_CLIENT_SECRET', '')
    SERATO_REDIRECT_URI = os.environ.get('SERATO_REDIRECT_URI', '')
    SERATO_API_BASE_URL = os.environ.get('SERATO_API_BASE_URL', 'https://api.serato.com/v1')
    SERATO_OAUTH_URL = os.environ.get('SERATO_OAUTH_URL', 'https://oauth.serato.com')

    # Verification policy
    VERIFICATION_CONFIDENCE_THRESHOLD = float(os.environ.get('VERIFICATION_CONFIDENCE_THRESHOLD', '70'))
    VERIFICATION_MAX_ATTEMPTS = int(os.environ.get('VERIFICATION_MAX_ATTEMPTS', '3'))
    VERIFICATION_DEFER_MINUTES = int(os.environ.get('VERIFICATION_DEFER_MINUTES', '30'))
    VERIFICATION_RETRY_BACKOFF_MINUTES = int(os.environ.get('VERIFICATION_RETRY_BACKOFF_MINUTES', '5'))
    TOKEN_REFRESH_MARGIN_MINUTES = int(os.environ.get('TOKEN_REFRESH_MARGIN_MINUTES', '5'))
    ORACLE_TIMEOUT_SECONDS = float(os.environ.get('ORACLE_TIMEOUT_SECONDS', '30'))

    # Payments
    PAYMENT_INSTRUCTION_TTL_HOURS = int(os.environ.get('PAYMENT_INSTRUCTION_TTL_HOURS', '24'))

    # Check-ins
    CHECKIN_DEDUP_WINDOW_HOURS = int(os.environ.get('CHECKIN_DEDUP_WINDOW_HOURS', '2'))


config = Config()
