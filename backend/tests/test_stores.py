"""
Tests for the DynamoDB-backed mission, runner and schedule stores.
"""
from datetime import timedelta
from unittest.mock import patch

import pytest
from botocore.exceptions import ClientError

from conftest import T0
from shared.errors import MissionAlreadyTerminalError
from shared.models import MissionStatus, PaymentStatus, VerificationTask, VerificationWindow
from shared.stores import (
    MissionStore,
    PaymentInstructionStore,
    RunnerStore,
    ScheduleStore,
    VerificationStatusStore,
)


def conditional_check_failed():
    return ClientError(
        {'Error': {'Code': 'ConditionalCheckFailedException', 'Message': 'The conditional request failed'}},
        'UpdateItem'
    )


class TestMissionStore:

    def test_terminal_update_is_conditional(self):
        store = MissionStore(table_name='missions')
        with patch('shared.stores.update_item') as mock_update:
            store.update_status('m1', MissionStatus.COMPLETED, {'proofHash': 'Qm' + 'a' * 44, 'completedAt': T0})

        args, kwargs = mock_update.call_args
        table, key, expression, values = args
        assert table == 'missions'
        assert key == {'missionId': 'm1'}
        assert expression.startswith('SET ')
        assert kwargs['condition_expression'] == (
            'attribute_exists(#key) AND '
            '(attribute_not_exists(#current) OR NOT #current IN (:completed, :failed))'
        )
        names = kwargs['expression_names']
        assert names['#key'] == 'missionId'
        written = {names[f'#f{i}']: values[f':v{i}'] for i in range(3)}
        assert written['status'] == MissionStatus.COMPLETED
        assert written['completedAt'] == T0.isoformat()

    def test_already_terminal_raises(self):
        store = MissionStore(table_name='missions')
        with patch('shared.stores.update_item', side_effect=conditional_check_failed()):
            with pytest.raises(MissionAlreadyTerminalError):
                store.update_status('m1', MissionStatus.FAILED, {'failureReason': 'x'})

    def test_non_terminal_update_requires_existing_mission(self):
        store = MissionStore(table_name='missions')
        with patch('shared.stores.update_item') as mock_update:
            store.update_status('m1', MissionStatus.IN_PROGRESS, {})

        assert mock_update.call_args.kwargs['condition_expression'] == 'attribute_exists(#key)'

    def test_missing_mission_is_not_created_by_non_terminal_update(self):
        store = MissionStore(table_name='missions')
        with patch('shared.stores.update_item', side_effect=conditional_check_failed()):
            with pytest.raises(ClientError):
                store.update_status('ghost', MissionStatus.IN_PROGRESS, {})

    def test_payment_update_requires_existing_mission(self):
        store = MissionStore(table_name='missions')
        with patch('shared.stores.update_item') as mock_update:
            store.update_payment('m1', PaymentStatus.FAILED, {'paymentError': 'boom'})

        assert mock_update.call_args.kwargs['condition_expression'] == 'attribute_exists(#key)'

    def test_other_client_errors_propagate(self):
        store = MissionStore(table_name='missions')
        error = ClientError({'Error': {'Code': 'ProvisionedThroughputExceededException', 'Message': ''}}, 'UpdateItem')
        with patch('shared.stores.update_item', side_effect=error):
            with pytest.raises(ClientError):
                store.update_status('m1', MissionStatus.FAILED, {})


class TestRunnerStore:

    def test_credentials_are_normalized(self):
        item = {
            'userId': 'r1',
            'seratoAccessToken': 'a',
            'seratoRefreshToken': 'r',
            'seratoTokenExpiresAt': '2026-10-18T22:00:00Z',
            'paymentInfo': {'venmoHandle': '@r1'},
        }
        with patch('shared.stores.get_item', return_value=item):
            runner = RunnerStore(table_name='runners').get_with_oracle_credentials('r1')

        assert runner['accessToken'] == 'a'
        assert runner['expiresAt'] == T0
        assert runner['paymentInfo'] == {'venmoHandle': '@r1'}

    def test_missing_runner(self):
        with patch('shared.stores.get_item', return_value=None):
            assert RunnerStore(table_name='runners').get_with_oracle_credentials('r1') is None


class TestScheduleStore:

    def test_round_trip_through_rows(self):
        task = VerificationTask(
            mission_id='m1',
            runner_id='r1',
            verification_window=VerificationWindow(T0, T0 + timedelta(hours=1)),
            created_at=T0,
            attempts=2,
        )
        store = ScheduleStore(table_name='schedule')

        with patch('shared.stores.put_item') as mock_put:
            store.save(task, due_at=T0 + timedelta(hours=1))
        row = mock_put.call_args[0][1]
        assert row['dueAt'] == (T0 + timedelta(hours=1)).isoformat()

        with patch('shared.stores.scan', return_value=[row]) as mock_scan:
            loaded = store.due(T0 + timedelta(hours=2))

        assert mock_scan.call_args.kwargs['expression_values'] == {':now': (T0 + timedelta(hours=2)).isoformat()}
        assert loaded[0].mission_id == 'm1'
        assert loaded[0].attempts == 2
        assert loaded[0].verification_window.end_time == T0 + timedelta(hours=1)


class TestPaymentInstructionStore:

    def _instruction(self):
        return {
            'id': 'abc123',
            'payment_method': 'zelle',
            'payload': {'amount': 40, 'missionId': 'm1', 'curatorId': 'c1'},
            'status': PaymentStatus.PENDING,
            'created_at': T0,
            'expires_at': T0 + timedelta(hours=24),
        }

    def test_save_serializes_times_and_curator(self):
        with patch('shared.stores.put_item') as mock_put:
            PaymentInstructionStore(table_name='instructions').save(self._instruction())

        item = mock_put.call_args[0][1]
        assert item['created_at'] == T0.isoformat()
        assert item['expires_at'] == (T0 + timedelta(hours=24)).isoformat()
        assert item['curator_id'] == 'c1'

    def test_get_parses_times(self):
        item = dict(self._instruction(), created_at=T0.isoformat(), expires_at=(T0 + timedelta(hours=24)).isoformat())
        with patch('shared.stores.get_item', return_value=item) as mock_get:
            instruction = PaymentInstructionStore(table_name='instructions').get('abc123')

        assert mock_get.call_args[0] == ('instructions', {'id': 'abc123'})
        assert instruction['expires_at'] - instruction['created_at'] == timedelta(hours=24)

    def test_mark_completed_only_from_pending(self):
        store = PaymentInstructionStore(table_name='instructions')
        with patch('shared.stores.update_item') as mock_update:
            assert store.mark_completed('abc123', T0, {'transactionId': 'z-1'}) is True

        assert mock_update.call_args.kwargs['condition_expression'] == '#status = :pending'
        assert mock_update.call_args[0][3][':completed'] == PaymentStatus.COMPLETED

        with patch('shared.stores.update_item', side_effect=conditional_check_failed()):
            assert store.mark_completed('abc123', T0, {}) is False


class TestVerificationStatusStore:

    def test_round_trip(self):
        status = {'missionId': 'm1', 'status': 'retrying', 'attempts': 1}
        store = VerificationStatusStore(table_name='statuses')

        with patch('shared.stores.put_item') as mock_put:
            store.save(status)
        assert mock_put.call_args[0] == ('statuses', status)

        with patch('shared.stores.get_item', return_value=status):
            assert store.get('m1') == status
