"""
Notification dispatcher.
Publishes curator/runner notifications to EventBridge; delivery (push, socket,
email) is handled by downstream subscribers.
"""
import json
from typing import Any, Dict

import boto3

from .config import config
from .logging import logger
from .utils import DecimalEncoder

NOTIFICATION_SOURCE = 'clubrun.missions'


def curator_audience(curator_id: str) -> str:
    return f"curator:{curator_id}"


def runner_audience(runner_id: str) -> str:
    return f"runner:{runner_id}"


class Notifier:
    """Fire-and-forget notifications; failures are logged, never raised."""

    def __init__(self, events_client=None, event_bus_name: str = None):
        self.events = events_client or boto3.client('events', region_name=config.AWS_REGION)
        self.event_bus_name = event_bus_name or config.EVENT_BUS_NAME

    def notify(self, audience: str, payload: Dict[str, Any]) -> None:
        try:
            self.events.put_events(
                Entries=[{
                    'Source': NOTIFICATION_SOURCE,
                    'DetailType': payload.get('type', 'notification'),
                    'EventBusName': self.event_bus_name,
                    'Detail': json.dumps({'audience': audience, **payload}, cls=DecimalEncoder)
                }]
            )
            logger.info(f"Notification {payload.get('type')} sent to {audience}")
        except Exception as e:
            logger.error(f"Failed to send notification to {audience}: {e}")
