"""
Shared fixtures and in-memory fakes for the verification and payment tests.
"""
import asyncio
import copy
import json
import os
import sys
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from unittest.mock import MagicMock

import pytest

# Add src to path for import
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

from shared.archiver import compute_content_id
from shared.errors import MissionAlreadyTerminalError
from shared.models import MissionStatus, PaymentStatus, VerificationResult, VerificationWindow
from shared.payments import PaymentRouter
from shared.verification import VerificationQueue

T0 = datetime(2026, 10, 18, 22, 0, tzinfo=timezone.utc)


class FakeClock:
    """Controllable clock; sleep() advances time instead of waiting."""

    def __init__(self, now=T0, overshoot_seconds=0):
        self.now = now
        self.overshoot = timedelta(seconds=overshoot_seconds)
        self.sleeps = []

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)

    async def sleep(self, seconds):
        self.sleeps.append(seconds)
        self.now += timedelta(seconds=seconds) + self.overshoot
        await asyncio.sleep(0)


class FakeMissionStore:
    def __init__(self):
        self.missions = {}
        self.status_updates = []
        self.payment_updates = []

    def add(self, mission_id, **overrides):
        mission = {
            'missionId': mission_id,
            'status': MissionStatus.IN_PROGRESS,
            'requirements': json.dumps({
                'track': {'title': mission_id, 'artist': 'Test Artist', 'duration': 300, 'bpm': 128}
            }),
            'budget': Decimal('100'),
            'paymentMethod': 'matic',
            'curatorId': 'curator-1',
        }
        mission.update(overrides)
        self.missions[mission_id] = mission
        return mission

    def get(self, mission_id):
        mission = self.missions.get(mission_id)
        return dict(mission) if mission else None

    def update_status(self, mission_id, status, details):
        mission = self.missions.get(mission_id)
        if mission is None or (status in MissionStatus.TERMINAL and mission.get('status') in MissionStatus.TERMINAL):
            raise MissionAlreadyTerminalError(mission_id)
        mission['status'] = status
        mission.update(details)
        self.status_updates.append((mission_id, status, details))

    def update_payment(self, mission_id, payment_status, details):
        self.missions[mission_id]['paymentStatus'] = payment_status
        self.missions[mission_id].update(details)
        self.payment_updates.append((mission_id, payment_status, details))


class FakeRunnerStore:
    def __init__(self):
        self.runners = {}
        self.credential_updates = []

    def add(self, runner_id, **overrides):
        runner = {
            'id': runner_id,
            'accessToken': f'access-{runner_id}',
            'refreshToken': f'refresh-{runner_id}',
            'expiresAt': T0 + timedelta(hours=2),
            'paymentInfo': {'venmoHandle': f'@{runner_id}'},
        }
        runner.update(overrides)
        self.runners[runner_id] = runner
        return runner

    def get_with_oracle_credentials(self, runner_id):
        runner = self.runners.get(runner_id)
        return dict(runner) if runner else None

    def update_oracle_credentials(self, runner_id, credentials):
        self.runners[runner_id].update(credentials)
        self.credential_updates.append((runner_id, credentials))


class FakeOracle:
    """
    Scripted oracle. Results are keyed by the required track title (the
    mission id in FakeMissionStore); each entry is a VerificationResult or an
    exception to raise, consumed in order, the last one repeating.
    """

    def __init__(self, clock):
        self.clock = clock
        self.scripts = {}
        self.default = VerificationResult(track_found=True, confidence=85, details={'title': 'x'}, duration=300)
        self.calls = []
        self.refresh_calls = []

    def script(self, mission_id, *outcomes):
        self.scripts[mission_id] = list(outcomes)

    async def verify_track_play(self, access_token, requirement, start, end):
        mission_id = requirement.get('title')
        self.calls.append((mission_id, self.clock(), access_token))
        outcomes = self.scripts.get(mission_id)
        outcome = self.default
        if outcomes:
            outcome = outcomes.pop(0) if len(outcomes) > 1 else outcomes[0]
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    async def refresh_access_token(self, refresh_token):
        self.refresh_calls.append(refresh_token)
        return {
            'accessToken': 'fresh-token',
            'refreshToken': refresh_token,
            'expiresAt': self.clock() + timedelta(hours=1),
        }


class FakeInstructionStore:
    def __init__(self):
        self.items = {}

    def save(self, instruction):
        self.items[instruction['id']] = copy.deepcopy(instruction)

    def get(self, instruction_id):
        item = self.items.get(instruction_id)
        return copy.deepcopy(item) if item else None

    def for_curator(self, curator_id):
        return [
            copy.deepcopy(item) for item in self.items.values()
            if item['payload'].get('curatorId') == curator_id
        ]

    def mark_completed(self, instruction_id, completed_at, transaction_details):
        item = self.items[instruction_id]
        if item['status'] != PaymentStatus.PENDING:
            return False
        item.update(status=PaymentStatus.COMPLETED, completed_at=completed_at, transaction_details=transaction_details)
        return True


class FakeStatusStore:
    def __init__(self):
        self.items = {}

    def save(self, status):
        self.items[status['missionId']] = dict(status)

    def get(self, mission_id):
        status = self.items.get(mission_id)
        return dict(status) if status else None


class FakeArchiver:
    def __init__(self):
        self.documents = {}

    def upload(self, document):
        content_id = compute_content_id(document)
        self.documents[content_id] = document
        return content_id


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def missions():
    return FakeMissionStore()


@pytest.fixture
def runners():
    return FakeRunnerStore()


@pytest.fixture
def oracle(clock):
    return FakeOracle(clock)


@pytest.fixture
def archiver():
    return FakeArchiver()


@pytest.fixture
def notifier():
    return MagicMock()


@pytest.fixture
def instructions():
    return FakeInstructionStore()


@pytest.fixture
def payments(notifier, instructions, clock):
    return PaymentRouter(notifier, instructions, clock=clock)


@pytest.fixture
def make_queue(oracle, missions, runners, archiver, notifier, payments, clock):
    def _make(**kwargs):
        params = dict(
            oracle=oracle,
            missions=missions,
            runners=runners,
            archiver=archiver,
            notifier=notifier,
            payments=payments,
            clock=clock,
            sleep=clock.sleep,
            max_attempts=3,
            confidence_threshold=70,
        )
        params.update(kwargs)
        return VerificationQueue(**params)
    return _make


@pytest.fixture
def window():
    return VerificationWindow(start_time=T0 - timedelta(hours=1), end_time=T0)
