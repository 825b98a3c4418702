"""
Mission, runner and verification-schedule stores backed by DynamoDB.

The verification worker only issues read/update intents through these
classes; table layout is owned by the wider application.
"""
from datetime import datetime
from typing import Any, Dict, List, Optional
from botocore.exceptions import ClientError
from .config import config
from .dynamo import get_item, put_item, update_item, delete_item, scan
from .errors import MissionAlreadyTerminalError
from .logging import logger
from .models import MissionStatus, PaymentStatus, VerificationTask, VerificationWindow
from .utils import parse_timestamp, to_iso


def _build_set_expression(fields: Dict[str, Any]):
    """Build a SET expression with one name/value placeholder per field."""
    parts = []
    names = {}
    values = {}
    for idx, (name, value) in enumerate(fields.items()):
        names[f'#f{idx}'] = name
        values[f':v{idx}'] = to_iso(value) if isinstance(value, datetime) else value
        parts.append(f'#f{idx} = :v{idx}')
    return 'SET ' + ', '.join(parts), names, values


class MissionStore:
    """Reads missions and writes their single terminal status update."""

    def __init__(self, table_name: str = None):
        self.table_name = table_name or config.MISSIONS_TABLE

    def get(self, mission_id: str) -> Optional[Dict[str, Any]]:
        return get_item(self.table_name, {'missionId': mission_id})

    def update_status(self, mission_id: str, status: str, details: Dict[str, Any]) -> None:
        """
        Write a status transition plus its metadata.

        Every write is conditional on the mission existing, so missing missions
        are never created. Writes into COMPLETED or FAILED additionally require
        the mission not to be terminal already. A rejected terminal write raises
        MissionAlreadyTerminalError.
        """
        fields = {'status': status}
        fields.update(details or {})
        expression, names, values = _build_set_expression(fields)

        names['#key'] = 'missionId'
        condition = 'attribute_exists(#key)'
        if status in MissionStatus.TERMINAL:
            names['#current'] = 'status'
            values[':completed'] = MissionStatus.COMPLETED
            values[':failed'] = MissionStatus.FAILED
            condition += ' AND (attribute_not_exists(#current) OR NOT #current IN (:completed, :failed))'

        try:
            update_item(
                self.table_name,
                {'missionId': mission_id},
                expression,
                values,
                expression_names=names,
                condition_expression=condition
            )
        except ClientError as e:
            if e.response['Error']['Code'] == 'ConditionalCheckFailedException' and status in MissionStatus.TERMINAL:
                raise MissionAlreadyTerminalError(mission_id) from e
            logger.error(f"Error updating mission {mission_id} to {status}: {e}")
            raise

        logger.info(f"Mission {mission_id} status set to {status}")

    def update_payment(self, mission_id: str, payment_status: str, details: Dict[str, Any]) -> None:
        """Record payment outcome metadata without touching the mission status."""
        fields = {'paymentStatus': payment_status}
        fields.update(details or {})
        expression, names, values = _build_set_expression(fields)
        names['#key'] = 'missionId'
        update_item(
            self.table_name,
            {'missionId': mission_id},
            expression,
            values,
            expression_names=names,
            condition_expression='attribute_exists(#key)'
        )


class RunnerStore:
    """Runner records holding linked Serato credentials and payout handles."""

    def __init__(self, table_name: str = None):
        self.table_name = table_name or config.RUNNERS_TABLE

    def get_with_oracle_credentials(self, runner_id: str) -> Optional[Dict[str, Any]]:
        runner = get_item(self.table_name, {'userId': runner_id})
        if not runner:
            return None
        return {
            'id': runner_id,
            'accessToken': runner.get('seratoAccessToken'),
            'refreshToken': runner.get('seratoRefreshToken'),
            'expiresAt': parse_timestamp(runner.get('seratoTokenExpiresAt')),
            'paymentInfo': runner.get('paymentInfo') or {},
        }

    def update_oracle_credentials(self, runner_id: str, credentials: Dict[str, Any]) -> None:
        update_item(
            self.table_name,
            {'userId': runner_id},
            'SET seratoAccessToken = :a, seratoRefreshToken = :r, seratoTokenExpiresAt = :e',
            {
                ':a': credentials['accessToken'],
                ':r': credentials.get('refreshToken'),
                ':e': to_iso(credentials.get('expiresAt')),
            }
        )
        logger.info(f"Updated Serato credentials for runner {runner_id}")


class ScheduleStore:
    """
    Durable verification schedule.

    One row per mission, due at `dueAt`. Rows survive process restarts and
    are drained by the scheduled run_due_verifications handler.
    """

    def __init__(self, table_name: str = None):
        self.table_name = table_name or config.SCHEDULED_VERIFICATIONS_TABLE

    def save(self, task: VerificationTask, due_at: datetime) -> None:
        put_item(self.table_name, {
            'missionId': task.mission_id,
            'runnerId': task.runner_id,
            'startTime': to_iso(task.verification_window.start_time),
            'endTime': to_iso(task.verification_window.end_time),
            'attempts': task.attempts,
            'maxAttempts': task.max_attempts,
            'createdAt': to_iso(task.created_at),
            'dueAt': to_iso(due_at),
        })

    def due(self, now: datetime) -> List[VerificationTask]:
        items = scan(
            self.table_name,
            filter_expression='dueAt <= :now',
            expression_values={':now': to_iso(now)}
        )
        tasks = []
        for item in items:
            tasks.append(VerificationTask(
                mission_id=item['missionId'],
                runner_id=item['runnerId'],
                verification_window=VerificationWindow(
                    start_time=parse_timestamp(item['startTime']),
                    end_time=parse_timestamp(item['endTime']),
                ),
                created_at=parse_timestamp(item.get('createdAt')) or now,
                max_attempts=int(item.get('maxAttempts', config.VERIFICATION_MAX_ATTEMPTS)),
                attempts=int(item.get('attempts', 0)),
            ))
        return tasks

    def delete(self, mission_id: str) -> None:
        delete_item(self.table_name, {'missionId': mission_id})


class PaymentInstructionStore:
    """
    Pending manual-fiat payment instructions, keyed by instruction id.

    Instructions are created by whichever function verified the mission and
    confirmed later by the payment API, so they live in DynamoDB rather than
    in process memory.
    """

    DATETIME_FIELDS = ('created_at', 'expires_at', 'completed_at')

    def __init__(self, table_name: str = None):
        self.table_name = table_name or config.PAYMENT_INSTRUCTIONS_TABLE

    def save(self, instruction: Dict[str, Any]) -> None:
        item = dict(instruction)
        for name in self.DATETIME_FIELDS:
            if item.get(name) is not None:
                item[name] = to_iso(item[name])
        item['curator_id'] = (instruction.get('payload') or {}).get('curatorId')
        put_item(self.table_name, item)

    def get(self, instruction_id: str) -> Optional[Dict[str, Any]]:
        item = get_item(self.table_name, {'id': instruction_id})
        if not item:
            return None
        for name in self.DATETIME_FIELDS:
            if item.get(name):
                item[name] = parse_timestamp(item[name])
        return item

    def for_curator(self, curator_id: str) -> List[Dict[str, Any]]:
        items = scan(
            self.table_name,
            filter_expression='curator_id = :curator',
            expression_values={':curator': curator_id}
        )
        return sorted(items, key=lambda item: item.get('created_at') or '')

    def mark_completed(self, instruction_id: str, completed_at: datetime, transaction_details: Dict[str, Any]) -> bool:
        """
        Settle a pending instruction. Returns False when it was no longer
        pending (another request settled it first).
        """
        try:
            update_item(
                self.table_name,
                {'id': instruction_id},
                'SET #status = :completed, completed_at = :at, transaction_details = :details',
                {
                    ':completed': PaymentStatus.COMPLETED,
                    ':pending': PaymentStatus.PENDING,
                    ':at': to_iso(completed_at),
                    ':details': transaction_details or {},
                },
                expression_names={'#status': 'status'},
                condition_expression='#status = :pending'
            )
        except ClientError as e:
            if e.response['Error']['Code'] == 'ConditionalCheckFailedException':
                return False
            logger.error(f"Error completing payment instruction {instruction_id}: {e}")
            raise
        return True


class VerificationStatusStore:
    """Latest verification status per mission, as returned by the status API."""

    def __init__(self, table_name: str = None):
        self.table_name = table_name or config.VERIFICATION_STATUS_TABLE

    def save(self, status: Dict[str, Any]) -> None:
        put_item(self.table_name, status)

    def get(self, mission_id: str) -> Optional[Dict[str, Any]]:
        return get_item(self.table_name, {'missionId': mission_id})
