"""
Queue Mission Verification Handler.
POST /missions/{missionId}/verification/run
Body: { "runnerId": "...", "startTime": "ISO-8601", "endTime": "ISO-8601" }

Verifies a mission right away. Outcomes are delivered asynchronously through
notifications; the response only reports the queued task and its current state.
"""
import asyncio

from shared.logging import logger, log_event
from shared.models import VerificationWindow
from shared.services import get_verification_service
from shared.utils import format_response, get_path_param, parse_body, parse_timestamp


async def _queue_and_process(service, mission_id, runner_id, window):
    task = service.queue_mission_for_verification(mission_id, runner_id, window)
    await service.process_queue()
    return task


def handler(event, context):
    log_event(event)

    body = parse_body(event)
    mission_id = get_path_param(event, 'missionId') or body.get('missionId')
    runner_id = body.get('runnerId')

    if not mission_id or not runner_id:
        return format_response(400, {'error': 'Missing missionId or runnerId'})

    try:
        start_time = parse_timestamp(body.get('startTime'))
        end_time = parse_timestamp(body.get('endTime'))
    except (TypeError, ValueError):
        return format_response(400, {'error': 'startTime and endTime must be ISO-8601 timestamps'})

    if not start_time or not end_time or end_time <= start_time:
        return format_response(400, {'error': 'A verification window with endTime after startTime is required'})

    service = get_verification_service()
    window = VerificationWindow(start_time=start_time, end_time=end_time)

    try:
        task = asyncio.run(_queue_and_process(service, mission_id, runner_id, window))
    except Exception as e:
        logger.error(f"Error queueing verification for mission {mission_id}: {e}")
        return format_response(500, {'error': 'Could not queue verification'})

    return format_response(202, {
        'task': task.to_dict(),
        'verification': service.get_verification_status(mission_id),
    })
