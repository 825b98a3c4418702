"""
Get Payment Status Handler.
GET /payments/{instructionId}
"""
from shared.models import PaymentStatus
from shared.services import get_payment_router
from shared.utils import format_response, get_path_param


def handler(event, context):
    instruction_id = get_path_param(event, 'instructionId')
    if not instruction_id:
        return format_response(400, {'error': 'Missing instructionId'})

    status = get_payment_router().get_payment_status(instruction_id)
    status_code = 404 if status == PaymentStatus.NOT_FOUND else 200
    return format_response(status_code, {'instructionId': instruction_id, 'status': status})
