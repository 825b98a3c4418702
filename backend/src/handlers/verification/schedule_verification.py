"""
Schedule Mission Verification Handler.
POST /missions/{missionId}/verification
Body: { "runnerId": "...", "startTime": "ISO-8601", "endTime": "ISO-8601" }

Writes the mission to the durable verification schedule, due when its
verification window closes.
"""
from shared.logging import logger, log_event
from shared.services import get_verification_service
from shared.utils import format_response, get_path_param, parse_body, parse_timestamp


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

    if not start_time or not end_time:
        return format_response(400, {'error': 'Missing startTime or endTime'})

    try:
        result = get_verification_service().schedule_mission_verification(
            mission_id, runner_id, start_time, end_time
        )
    except ValueError as e:
        return format_response(400, {'error': str(e)})
    except Exception as e:
        logger.error(f"Error scheduling verification for mission {mission_id}: {e}")
        return format_response(500, {'error': 'Could not schedule verification'})

    return format_response(201, result)
