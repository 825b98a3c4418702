"""
Confirm Manual Payment Handler.
POST /payments/{instructionId}/confirm
Body: { "transactionId": "...", "amount": 50, "method": "zelle" }

Called once the curator has paid out-of-band; settles the instruction and
notifies the runner.
"""
from shared.errors import PaymentInstructionNotFoundError
from shared.logging import logger, log_event
from shared.services import get_payment_router
from shared.utils import format_response, get_path_param, parse_body


def handler(event, context):
    log_event(event)

    instruction_id = get_path_param(event, 'instructionId')
    if not instruction_id:
        return format_response(400, {'error': 'Missing instructionId'})

    transaction_details = parse_body(event)

    try:
        instruction = get_payment_router().mark_payment_completed(instruction_id, transaction_details)
    except PaymentInstructionNotFoundError as e:
        logger.warning(str(e))
        return format_response(404, {'error': str(e)})

    return format_response(200, {
        'instructionId': instruction['id'],
        'status': instruction['status'],
        'completedAt': instruction['completed_at'],
    })
