"""
Run Due Verifications Handler.
Triggered by EventBridge scheduler every minute to verify missions whose
scheduled time (window close or retry gate) has passed.
"""
import asyncio

from shared.logging import logger
from shared.services import get_verification_service


def handler(event, context):
    """
    Scheduled handler draining the durable verification schedule.

    Each due mission is verified once; missions that need another look
    (window still open, transient error) are written back with their retry time.
    """
    logger.info("Running due verification check...")

    result = asyncio.run(get_verification_service().run_due_verifications())

    logger.info(
        f"Verification run: {result['checked']} due, {result['enqueued']} enqueued, "
        f"{result['deferred']} rescheduled"
    )
    return result
