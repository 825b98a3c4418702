"""
Get Verification Status Handler.
GET /missions/{missionId}/verification
"""
from shared.services import get_verification_service
from shared.utils import format_response, get_path_param


def handler(event, context):
    mission_id = get_path_param(event, 'missionId')
    if not mission_id:
        return format_response(400, {'error': 'Missing missionId'})

    return format_response(200, get_verification_service().get_verification_status(mission_id))
