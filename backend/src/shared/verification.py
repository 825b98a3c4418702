"""
Mission verification queue and worker.

A mission reaching its verification window is queued as a VerificationTask.
A single cooperative worker drains the queue in FIFO order, asks the Serato
oracle whether the required track was played, and drives the mission to
COMPLETED (archive proof, record status, pay, notify) or FAILED.

Tasks carry a retry_at gate: deferred ("not played yet") and errored tasks go
back to the tail and are skipped until their gate passes. At most one
verification attempt is in flight at any time.
"""
import asyncio
import json
from collections import deque
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional

from .config import config
from .errors import (
    FatalVerificationError,
    MissionAlreadyTerminalError,
    MissionNotFoundError,
    TransientVerificationError,
    is_fatal,
)
from .logging import logger
from .models import (
    MissionStatus,
    NotificationType,
    PaymentStatus,
    TRACK_NOT_FOUND_REASON,
    VERIFICATION_METHOD_SERATO,
    VerificationResult,
    VerificationState,
    VerificationTask,
    VerificationWindow,
)
from .notifier import curator_audience, runner_audience
from .utils import to_iso, utc_now


def extract_track_requirement(mission: Dict[str, Any]) -> Dict[str, Any]:
    """
    Pull the track requirement (title/artist/duration/bpm...) out of a mission's
    serialized requirements.

    Raises:
        FatalVerificationError when requirements are missing or unparseable
    """
    raw = mission.get('requirements')
    try:
        requirements = json.loads(raw) if isinstance(raw, str) else raw
    except (json.JSONDecodeError, TypeError) as e:
        raise FatalVerificationError('Unparseable track requirements in mission') from e

    if isinstance(requirements, dict):
        track = requirements.get('track')
        if isinstance(track, dict) and (track.get('title') or track.get('artist')):
            return track
        if requirements.get('title') or requirements.get('artist'):
            return requirements

    raise FatalVerificationError('No track requirements found in mission')


def build_proof_document(task: VerificationTask, result: VerificationResult, verified_at: datetime) -> Dict[str, Any]:
    return {
        'missionId': task.mission_id,
        'runnerId': task.runner_id,
        'verificationTime': to_iso(verified_at),
        'trackPlayed': result.details,
        'playTime': to_iso(result.play_time),
        'duration': result.duration,
        'venue': result.venue,
        'confidence': result.confidence,
        'verificationMethod': VERIFICATION_METHOD_SERATO,
        'proofHash': None,
    }


class VerificationQueue:
    """
    In-process verification queue with a single cooperative worker.

    Collaborators are injected: `oracle` is async (SeratoClient), the stores,
    archiver, notifier and payment router are synchronous boto3-backed objects
    and are called through asyncio.to_thread.
    """

    COMPLETED = 'completed'
    DEFERRED = 'deferred'
    FAILED = 'failed'
    SKIPPED = 'skipped'

    def __init__(
        self,
        oracle,
        missions,
        runners,
        archiver,
        notifier,
        payments,
        clock: Callable[[], datetime] = utc_now,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        wait_for_retries: bool = True,
        max_attempts: int = None,
        confidence_threshold: float = None,
        defer_delay: timedelta = None,
        retry_backoff: timedelta = None,
        token_refresh_margin: timedelta = None,
        oracle_timeout: float = None,
    ):
        self.oracle = oracle
        self.missions = missions
        self.runners = runners
        self.archiver = archiver
        self.notifier = notifier
        self.payments = payments
        self.clock = clock
        self._sleep = sleep
        self.wait_for_retries = wait_for_retries

        self.max_attempts = config.VERIFICATION_MAX_ATTEMPTS if max_attempts is None else max_attempts
        self.confidence_threshold = (
            config.VERIFICATION_CONFIDENCE_THRESHOLD if confidence_threshold is None else confidence_threshold
        )
        self.defer_delay = defer_delay or timedelta(minutes=config.VERIFICATION_DEFER_MINUTES)
        self.retry_backoff = retry_backoff or timedelta(minutes=config.VERIFICATION_RETRY_BACKOFF_MINUTES)
        self.token_refresh_margin = token_refresh_margin or timedelta(minutes=config.TOKEN_REFRESH_MARGIN_MINUTES)
        self.oracle_timeout = oracle_timeout or config.ORACLE_TIMEOUT_SECONDS

        self._queue: deque = deque()
        self._in_flight: Dict[str, VerificationTask] = {}
        self._status: Dict[str, Dict[str, Any]] = {}
        self._changed: List[str] = []
        self._processing = False
        self._drain_task: Optional[asyncio.Task] = None
        self._wakeup: Optional[asyncio.Event] = None

    # =========================================================================
    # Queue operations
    # =========================================================================

    def enqueue(self, mission_id: str, runner_id: str, window: VerificationWindow) -> VerificationTask:
        """
        Queue a mission for verification and wake the worker.
        A mission already queued or being verified is coalesced into its existing task.
        """
        existing = self._in_flight.get(mission_id)
        if existing is not None:
            logger.warning(f"Mission {mission_id} already queued for verification, ignoring duplicate")
            return existing

        task = VerificationTask(
            mission_id=mission_id,
            runner_id=runner_id,
            verification_window=window,
            created_at=self.clock(),
            max_attempts=self.max_attempts,
        )
        self.add(task)
        return task

    def add(self, task: VerificationTask) -> VerificationTask:
        """Queue an existing task (e.g. one loaded from the durable schedule)."""
        existing = self._in_flight.get(task.mission_id)
        if existing is not None:
            logger.warning(f"Mission {task.mission_id} already queued for verification, ignoring duplicate")
            return existing

        self._in_flight[task.mission_id] = task
        self._queue.append(task)
        self._set_status(task, VerificationState.QUEUED)
        logger.info(f"Queued mission {task.mission_id} for verification (queue size {len(self._queue)})")
        self._start_worker()
        return task

    def pending_tasks(self) -> List[VerificationTask]:
        return list(self._queue)

    def take_pending(self) -> List[VerificationTask]:
        """Remove and return every queued task, e.g. to hand them to the durable schedule."""
        tasks = list(self._queue)
        self._queue.clear()
        for task in tasks:
            self._in_flight.pop(task.mission_id, None)
        return tasks

    def get_status(self, mission_id: str) -> Optional[Dict[str, Any]]:
        status = self._status.get(mission_id)
        return dict(status) if status else None

    @property
    def is_processing(self) -> bool:
        return self._processing

    def __len__(self):
        return len(self._queue)

    # =========================================================================
    # Worker
    # =========================================================================

    def _start_worker(self) -> None:
        if self._wakeup is not None:
            self._wakeup.set()
        if self._processing or (self._drain_task and not self._drain_task.done()):
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # No event loop yet; the owner calls drain()/join() later
            return
        self._drain_task = loop.create_task(self.drain())

    async def join(self) -> None:
        """Wait for the current drain pass, starting one if tasks are waiting."""
        if self._drain_task and not self._drain_task.done():
            await self._drain_task
        elif self._queue and not self._processing:
            await self.drain()

    async def drain(self) -> None:
        """
        Process queued tasks one at a time until the queue is empty.

        Tasks whose retry_at is in the future are skipped over. When nothing is
        ready the worker sleeps until the earliest gate (or until a new task is
        queued), unless wait_for_retries is off, in which case it returns and
        leaves the waiting tasks queued.
        """
        if self._processing:
            return
        self._processing = True
        self._wakeup = asyncio.Event()
        try:
            while self._queue:
                task = self._pop_ready()
                if task is None:
                    if not self.wait_for_retries:
                        break
                    await self._wait_for_next_ready()
                    continue
                await self._process(task)
        finally:
            self._processing = False
            self._wakeup = None

    def _pop_ready(self) -> Optional[VerificationTask]:
        now = self.clock()
        for task in self._queue:
            if task.is_ready(now):
                self._queue.remove(task)
                return task
        return None

    async def _wait_for_next_ready(self) -> None:
        wake_at = min(task.retry_at for task in self._queue if task.retry_at)
        delay = max((wake_at - self.clock()).total_seconds(), 0)
        logger.info(f"No verification ready, sleeping {delay:.0f}s")

        self._wakeup.clear()
        sleeper = asyncio.ensure_future(self._sleep(delay))
        waker = asyncio.ensure_future(self._wakeup.wait())
        done, pending = await asyncio.wait({sleeper, waker}, return_when=asyncio.FIRST_COMPLETED)
        for future in pending:
            future.cancel()

    async def _process(self, task: VerificationTask) -> None:
        self._set_status(task, VerificationState.VERIFYING)
        try:
            await self.attempt_verification(task)
        except Exception as e:
            logger.error(f"Verification failed for mission {task.mission_id}: {e}")
            await self._handle_error(task, e)

    async def _handle_error(self, task: VerificationTask, error: Exception) -> None:
        """
        Fatal errors fail the mission now. Transient ones back off linearly
        (5, 10, 15 min by default) while attempts remain.
        """
        if isinstance(error, MissionNotFoundError):
            await self._fail_mission(task, str(error), record=False)
            return
        if is_fatal(error):
            await self._fail_mission(task, str(error))
            return

        if task.attempts < task.max_attempts:
            task.attempts += 1
            task.retry_at = self.clock() + self.retry_backoff * task.attempts
            logger.warning(
                f"Retrying mission {task.mission_id} at {to_iso(task.retry_at)} "
                f"(attempt {task.attempts}/{task.max_attempts})"
            )
            self._requeue(task, VerificationState.RETRYING, reason=str(error))
        else:
            await self._fail_mission(task, str(error))

    def _requeue(self, task: VerificationTask, state: str, reason: str = None) -> None:
        self._queue.append(task)
        self._set_status(task, state, reason)

    def _finish(self, task: VerificationTask, state: str, reason: str = None) -> None:
        self._in_flight.pop(task.mission_id, None)
        self._set_status(task, state, reason)

    def take_status_changes(self) -> List[Dict[str, Any]]:
        """Return the latest status of every mission whose status changed since the last call."""
        changed, self._changed = self._changed, []
        return [dict(self._status[mission_id]) for mission_id in dict.fromkeys(changed)]

    def _set_status(self, task: VerificationTask, state: str, reason: str = None) -> None:
        self._status[task.mission_id] = {
            'missionId': task.mission_id,
            'status': state,
            'attempts': task.attempts,
            'lastChecked': to_iso(self.clock()),
            'retryAt': to_iso(task.retry_at),
            'reason': reason,
        }
        self._changed.append(task.mission_id)

    # =========================================================================
    # Verification attempt
    # =========================================================================

    async def attempt_verification(self, task: VerificationTask) -> str:
        """
        Run one verification attempt and apply its decision.

        Returns one of COMPLETED, DEFERRED, FAILED or SKIPPED. Errors propagate
        to the caller, which applies the retry policy.
        """
        mission = await asyncio.to_thread(self.missions.get, task.mission_id)
        if not mission:
            raise MissionNotFoundError(task.mission_id)

        current_status = mission.get('status')
        if current_status in MissionStatus.TERMINAL:
            logger.info(f"Mission {task.mission_id} already {current_status}, dropping verification")
            self._finish(task, current_status.lower(), reason='already terminal')
            return self.SKIPPED

        runner = await asyncio.to_thread(self.runners.get_with_oracle_credentials, task.runner_id)
        if not runner or not runner.get('accessToken'):
            raise FatalVerificationError('Runner not connected to Serato')

        access_token = await self._ensure_fresh_token(task.runner_id, runner)
        requirement = extract_track_requirement(mission)

        window = task.verification_window
        result = await self._call_oracle(
            self.oracle.verify_track_play(access_token, requirement, window.start_time, window.end_time)
        )

        now = self.clock()
        if result.track_found and result.confidence >= self.confidence_threshold:
            await self._complete_mission(task, mission, runner, result)
            return self.COMPLETED

        if now < window.end_time:
            task.retry_at = now + self.defer_delay
            logger.info(f"Track not found yet for mission {task.mission_id}, deferring to {to_iso(task.retry_at)}")
            self._requeue(task, VerificationState.DEFERRED)
            return self.DEFERRED

        await self._fail_mission(task, TRACK_NOT_FOUND_REASON)
        return self.FAILED

    async def _call_oracle(self, call: Awaitable):
        try:
            return await asyncio.wait_for(call, timeout=self.oracle_timeout)
        except asyncio.TimeoutError as e:
            raise TransientVerificationError(f"Serato call timed out after {self.oracle_timeout}s") from e

    async def _ensure_fresh_token(self, runner_id: str, runner: Dict[str, Any]) -> str:
        """Refresh credentials that are expired or expire within the refresh margin."""
        expires_at = runner.get('expiresAt')
        if expires_at is not None and self.clock() < expires_at - self.token_refresh_margin:
            return runner['accessToken']

        if not runner.get('refreshToken'):
            raise FatalVerificationError('Serato credentials expired and no refresh token is linked')

        logger.info(f"Refreshing Serato token for runner {runner_id}")
        tokens = await self._call_oracle(self.oracle.refresh_access_token(runner['refreshToken']))
        await asyncio.to_thread(self.runners.update_oracle_credentials, runner_id, tokens)
        return tokens['accessToken']

    async def _complete_mission(
        self,
        task: VerificationTask,
        mission: Dict[str, Any],
        runner: Dict[str, Any],
        result: VerificationResult
    ) -> None:
        verified_at = self.clock()
        proof = build_proof_document(task, result, verified_at)
        proof_hash = await asyncio.to_thread(self.archiver.upload, proof)

        try:
            await asyncio.to_thread(self.missions.update_status, task.mission_id, MissionStatus.COMPLETED, {
                'runnerId': task.runner_id,
                'completedAt': verified_at,
                'proofHash': proof_hash,
                'verificationDetails': result.to_dict(),
            })
        except MissionAlreadyTerminalError:
            logger.warning(f"Mission {task.mission_id} reached a terminal state elsewhere, skipping payment")
            self._finish(task, VerificationState.COMPLETED, reason='already terminal')
            return

        self._finish(task, VerificationState.COMPLETED)
        logger.info(f"Mission {task.mission_id} completed by runner {task.runner_id} (proof {proof_hash})")

        await self._pay_runner(task, mission, runner)

        await asyncio.to_thread(self.notifier.notify, curator_audience(mission.get('curatorId')), {
            'type': NotificationType.MISSION_COMPLETED,
            'missionId': task.mission_id,
            'runnerId': task.runner_id,
            'proof': dict(proof, proofHash=proof_hash),
        })

    async def _pay_runner(self, task: VerificationTask, mission: Dict[str, Any], runner: Dict[str, Any]) -> None:
        """
        Dispatch payment for a completed mission. Failures are recorded on the
        mission and not retried, so a payout is never dispatched twice.
        """
        try:
            payment = await asyncio.to_thread(self.payments.process_mission_payment, mission, runner)
            await asyncio.to_thread(self.missions.update_payment, task.mission_id, payment['status'], {
                'paymentTransactionId': payment['transactionId'],
                'paymentMethod': payment['paymentMethod'],
            })
            logger.info(f"Payment {payment['transactionId']} ({payment['status']}) for mission {task.mission_id}")
        except Exception as e:
            logger.error(f"Payment failed for mission {task.mission_id}: {e}")
            try:
                await asyncio.to_thread(self.missions.update_payment, task.mission_id, PaymentStatus.FAILED, {
                    'paymentError': str(e),
                })
            except Exception as store_error:
                logger.error(f"Error marking payment failed for mission {task.mission_id}: {store_error}")

    async def _fail_mission(self, task: VerificationTask, reason: str, record: bool = True) -> None:
        """
        Mark the mission FAILED and tell the runner. With record=False (the
        mission does not exist) nothing is written to the mission store.
        """
        if not record:
            logger.warning(f"Mission {task.mission_id} not found, nothing to mark failed")
        else:
            try:
                await asyncio.to_thread(self.missions.update_status, task.mission_id, MissionStatus.FAILED, {
                    'runnerId': task.runner_id,
                    'failedAt': self.clock(),
                    'failureReason': reason,
                })
            except MissionAlreadyTerminalError:
                logger.warning(f"Mission {task.mission_id} already terminal, not marking failed")
                self._finish(task, VerificationState.FAILED, reason='already terminal')
                return
            except Exception as e:
                logger.error(f"Error marking mission {task.mission_id} as failed: {e}")

        self._finish(task, VerificationState.FAILED, reason)
        logger.info(f"Mission {task.mission_id} marked as failed: {reason}")

        await asyncio.to_thread(self.notifier.notify, runner_audience(task.runner_id), {
            'type': NotificationType.MISSION_FAILED,
            'missionId': task.mission_id,
            'reason': reason,
        })


class MissionVerificationService:
    """
    Entry points used by the API and scheduled handlers.

    Scheduled verifications are written to the durable schedule table and
    picked up by run_due_verifications, so they survive process restarts.
    Verification status is written to `statuses` after every drain so any
    container can answer get_verification_status.
    """

    def __init__(self, queue: VerificationQueue, schedule, statuses=None, clock: Callable[[], datetime] = None):
        self.queue = queue
        self.schedule = schedule
        self.statuses = statuses
        self.clock = clock or queue.clock

    def queue_mission_for_verification(
        self,
        mission_id: str,
        runner_id: str,
        window: VerificationWindow
    ) -> VerificationTask:
        return self.queue.enqueue(mission_id, runner_id, window)

    def schedule_mission_verification(
        self,
        mission_id: str,
        runner_id: str,
        start_time: datetime,
        end_time: datetime
    ) -> Dict[str, Any]:
        """Arrange for the mission to be queued once its window closes."""
        if end_time <= start_time:
            raise ValueError('endTime must be after startTime')

        task = VerificationTask(
            mission_id=mission_id,
            runner_id=runner_id,
            verification_window=VerificationWindow(start_time=start_time, end_time=end_time),
            created_at=self.clock(),
            max_attempts=self.queue.max_attempts,
        )
        self.schedule.save(task, due_at=end_time)
        if self.statuses is not None:
            self.statuses.save({
                'missionId': mission_id,
                'status': VerificationState.SCHEDULED,
                'attempts': 0,
                'lastChecked': to_iso(self.clock()),
                'retryAt': to_iso(end_time),
                'reason': None,
            })
        logger.info(f"Scheduled verification for mission {mission_id} at {to_iso(end_time)}")
        return {'missionId': mission_id, 'scheduledFor': to_iso(end_time)}

    async def process_queue(self) -> List[VerificationTask]:
        """
        Drain whatever is ready, then move still-waiting tasks to the durable
        schedule (due at their retry_at). Returns the tasks handed back.
        """
        await self.queue.join()
        waiting = self.queue.take_pending()
        for task in waiting:
            await asyncio.to_thread(self.schedule.save, task, task.retry_at or self.clock())
        await self._save_statuses()
        return waiting

    async def _save_statuses(self) -> None:
        changes = self.queue.take_status_changes()
        if self.statuses is None:
            return
        for status in changes:
            await asyncio.to_thread(self.statuses.save, status)

    async def run_due_verifications(self, now: datetime = None) -> Dict[str, int]:
        now = now or self.clock()
        due = await asyncio.to_thread(self.schedule.due, now)
        logger.info(f"Found {len(due)} verifications due")

        enqueued = 0
        for task in due:
            if self.queue.add(task) is task:
                enqueued += 1

        waiting = await self.process_queue()
        waiting_ids = {task.mission_id for task in waiting}

        for task in due:
            if task.mission_id not in waiting_ids:
                await asyncio.to_thread(self.schedule.delete, task.mission_id)

        return {'checked': len(due), 'enqueued': enqueued, 'deferred': len(waiting)}

    def get_verification_status(self, mission_id: str) -> Dict[str, Any]:
        status = None
        if self.statuses is not None:
            status = self.statuses.get(mission_id)
        if status is None:
            status = self.queue.get_status(mission_id)
        if status is None:
            return {'missionId': mission_id, 'status': VerificationState.NOT_FOUND, 'attempts': 0}
        return status
