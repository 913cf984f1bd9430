"""
Exam attempt session state machine.

    NotStarted --start--> Active | PendingResume | Completed
    PendingResume --resume--> Active
    Active --answer/heartbeat/offline/exit--> Active
    Active --submit | expire | exit auto-submit | force-finish--> Completed

There is no in-process owner of an attempt: any number of request handlers
and the sweep may act on the same attempt at once. Correctness comes from the
store's conditional updates. Ordinary writes are guarded by the attempt
version (read, decide, write-if-unchanged, re-read on conflict); completion is
guarded by ``completed = false`` and whoever loses that race returns the
stored result instead of grading again.
"""
from datetime import datetime
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple
import logging

from ..config import HEARTBEAT_MIN_INTERVAL_SECONDS, SUBMIT_GRACE_SECONDS
from ..errors import (
    ConflictError,
    ForbiddenError,
    NotFoundError,
    TimeExceededError,
    TransientStoreError,
    ValidationError,
)
from . import session_clock
from .attempt_state import (
    ActivityType,
    AttemptResult,
    AttemptState,
    AutoSubmitReason,
    ExamConfig,
    ExitOutcome,
    HeartbeatOutcome,
    OfflineOutcome,
    StartOutcome,
    StartStatus,
    SuspiciousActivity,
    UpdatePredicate,
)
from .exam_catalog import shuffle_for_attempt
from .exit_guard import ExitGuard, ExitPhase
from .grading_service import grade_submission, normalize_selections
from .offline_tracker import OfflineGraceTracker, OnlineResult
from .retry import retry_transient

logger = logging.getLogger(__name__)

MAX_CAS_ATTEMPTS = 5

TIME_EXPIRED_MESSAGE = "Time expired, your exam was submitted with your last saved answers"
ALREADY_SUBMITTED_MESSAGE = "This attempt has already been submitted"


def normalize_student_name(name: Optional[str]) -> Tuple[str, str]:
    """Returns (display name, case-insensitive lookup key)."""
    display = " ".join((name or "").split())
    if not display:
        raise ValidationError("Student name is required")
    return display, display.lower()


class AttemptLifecycle:

    def __init__(self, store, catalog, submit_grace_seconds: int = SUBMIT_GRACE_SECONDS,
                 heartbeat_interval_seconds: int = HEARTBEAT_MIN_INTERVAL_SECONDS,
                 clock: Callable[[], datetime] = session_clock.utcnow):
        self.store = store
        self.catalog = catalog
        self.submit_grace_seconds = submit_grace_seconds
        self.heartbeat_interval_seconds = heartbeat_interval_seconds
        self._clock = clock

    def now(self, now: Optional[datetime] = None) -> datetime:
        return session_clock.to_naive_utc(now) if now is not None else self._clock()

    # ---- helpers -----------------------------------------------------------

    async def _config(self, exam_id: str, require_active: bool = True) -> ExamConfig:
        config = await self.catalog.get_exam_config(exam_id)
        if require_active and not config.is_active:
            raise ForbiddenError("This exam is not active")
        return config

    async def _attempt(self, attempt_id, exam_id=None) -> AttemptState:
        if not attempt_id:
            raise ValidationError("Attempt id is required")
        attempt = await self.store.get_attempt(str(attempt_id))
        if attempt is None:
            raise NotFoundError("Attempt not found")
        if exam_id is not None and str(exam_id) != attempt.exam_id:
            raise ForbiddenError("This attempt does not belong to this exam")
        return attempt

    async def _saved_selections(self, attempt_id: str) -> Dict[str, str]:
        records = await self.store.list_answers(attempt_id)
        return {r.question_id: r.selected_option_id for r in records if r.selected_option_id}

    @staticmethod
    def _paused_seconds(attempt: AttemptState, pending_credit: int) -> int:
        return (attempt.total_offline_seconds or 0) + pending_credit

    @staticmethod
    def _remaining(attempt: AttemptState, config: ExamConfig, now: datetime, pending_credit: int) -> int:
        return session_clock.remaining_seconds(
            config, attempt.last_activity_at, attempt.time_remaining_seconds, now, paused_seconds=pending_credit
        )

    def effective_remaining(self, attempt: AttemptState, config: ExamConfig, now: datetime) -> int:
        """Remaining time at ``now``, counting a running offline period against the grace budget."""
        credit = OfflineGraceTracker.from_attempt(attempt).pending_credit(now, config.offline_grace_seconds)
        return self._remaining(attempt, config, now, credit)

    def _submit_too_late(self, attempt: AttemptState, config: ExamConfig, now: datetime) -> bool:
        credit = OfflineGraceTracker.from_attempt(attempt).pending_credit(now, config.offline_grace_seconds)
        return session_clock.submit_window_closed(
            config, attempt.started_at, now, self.submit_grace_seconds + self._paused_seconds(attempt, credit)
        )

    def _checkpoint(self, attempt: AttemptState, config: ExamConfig, now: datetime) -> Tuple[int, dict, OnlineResult]:
        """Patch moving the stored clock to ``now``; closes a running offline period."""
        tracker = OfflineGraceTracker.from_attempt(attempt)
        online = tracker.mark_online(now, config.offline_grace_seconds)
        remaining = self._remaining(attempt, config, now, online.added)
        patch = {"last_activity_at": now, "time_remaining_seconds": remaining}
        if attempt.is_offline:
            patch["total_offline_seconds"] = online.total
            patch["went_offline_at"] = None
        return remaining, patch, online

    async def _mutate(self, attempt: AttemptState, build) -> Tuple[AttemptState, Any]:
        """
        Version-guarded read-decide-write on one attempt.

        ``build(attempt)`` returns ``(patch, info)``; a falsy patch writes
        nothing. A completed attempt is returned as is with ``info`` None.
        """
        for i in range(MAX_CAS_ATTEMPTS):
            if i:
                attempt = await self._attempt(attempt.id)
            if attempt.completed:
                return attempt, None
            patch, info = build(attempt)
            if not patch:
                return attempt, info
            try:
                updated = await self.store.update_attempt(
                    attempt.id, patch, UpdatePredicate(require_incomplete=True, expected_version=attempt.version)
                )
                return updated, info
            except ConflictError:
                logger.info("Attempt %s changed while updating, re-reading", attempt.id)
        raise TransientStoreError("The attempt is busy, please retry")

    async def _finalize(self, attempt: AttemptState, config: ExamConfig, selections: Mapping[str, Any],
                        reason: Optional[AutoSubmitReason], now: datetime) -> AttemptResult:
        answer_key = await self.catalog.get_answer_key(attempt.exam_id)
        graded = grade_submission(selections, answer_key)
        remaining = 0 if reason is AutoSubmitReason.TIME_EXPIRED else self.effective_remaining(attempt, config, now)
        patch = {
            "completed": True,
            "completed_at": now,
            "score": graded.score,
            "total_points": graded.total_points,
            "earned_points": graded.earned_points,
            "time_spent_seconds": session_clock.time_spent_seconds(config, attempt.started_at, now),
            "time_remaining_seconds": remaining,
            "last_activity_at": now,
            "auto_submitted": reason is not None,
            "auto_submit_reason": reason,
            "exit_pending_since": None,
        }
        if attempt.is_offline:
            online = OfflineGraceTracker.from_attempt(attempt).mark_online(now, config.offline_grace_seconds)
            patch["total_offline_seconds"] = online.total
            patch["went_offline_at"] = None

        try:
            final = await self.store.finalize_attempt(attempt.id, graded.records, patch)
        except ConflictError:
            current = await self._attempt(attempt.id)
            if not current.completed:
                raise
            logger.info("Attempt %s was already graded by a concurrent request", attempt.id)
            return AttemptResult.from_attempt(current, config, already_completed=True)

        if reason is None:
            logger.info("Attempt %s submitted: %.1f%% (%s/%s)", attempt.id, graded.score,
                        graded.earned_points, graded.total_points)
        else:
            logger.info("Attempt %s auto-submitted (%s): %.1f%% (%s/%s)", attempt.id, reason.value,
                        graded.score, graded.earned_points, graded.total_points)
        return AttemptResult.from_attempt(final, config)

    async def _close_with_saved_answers(self, attempt: AttemptState, config: ExamConfig,
                                        reason: AutoSubmitReason, now: datetime) -> AttemptResult:
        selections = await self._saved_selections(attempt.id)
        return await self._finalize(attempt, config, selections, reason, now)

    @staticmethod
    def _completed_outcome(attempt_id: str, result: AttemptResult, expired: bool = False) -> StartOutcome:
        return StartOutcome(
            status=StartStatus.COMPLETED,
            attempt_id=attempt_id,
            time_remaining_seconds=0,
            result=result,
            expired=expired,
        )

    async def _bring_up_to_date(self, attempt: AttemptState, config: ExamConfig, now: datetime,
                                status: StartStatus) -> StartOutcome:
        """Checkpoint an open attempt and describe it, or close it if its time ran out."""
        def build(current):
            remaining, patch, _ = self._checkpoint(current, config, now)
            return patch, remaining

        attempt, remaining = await self._mutate(attempt, build)
        if attempt.completed:
            return self._completed_outcome(attempt.id, AttemptResult.from_attempt(attempt, config, already_completed=True))
        if remaining <= 0:
            result = await self._close_with_saved_answers(attempt, config, AutoSubmitReason.TIME_EXPIRED, now)
            return self._completed_outcome(attempt.id, result, expired=True)

        answers = await self._saved_selections(attempt.id)
        return StartOutcome(
            status=status,
            attempt_id=attempt.id,
            time_remaining_seconds=remaining,
            answers=answers,
            exit_count=attempt.exit_count,
            started_at=attempt.started_at,
            last_activity_at=attempt.last_activity_at,
        )

    async def _lookup(self, config: ExamConfig, name_key: str, now: datetime) -> Optional[StartOutcome]:
        # open before completed: an attempt only ever moves from open to completed,
        # so one completing between the two reads is still found
        open_attempt = await self.store.find_incomplete(config.id, name_key)
        if open_attempt is not None:
            return await self._bring_up_to_date(open_attempt, config, now, StartStatus.RESUME_PENDING)
        completed = await self.store.find_completed(config.id, name_key)
        if completed is None:
            return None
        return self._completed_outcome(completed.id, AttemptResult.from_attempt(completed, config, already_completed=True))

    # ---- operations --------------------------------------------------------

    @retry_transient
    async def start(self, exam_id: str, student_name: str, access_code: Optional[str] = None,
                    client_ip: Optional[str] = None, now: Optional[datetime] = None) -> StartOutcome:
        """
        Begin an attempt, or find the one this student already has.

        A finished attempt is reported, never re-graded. An open one is
        checkpointed and returned as RESUME_PENDING; the caller confirms with
        ``resume``. An open one whose time ran out is graded first.
        """
        display, key = normalize_student_name(student_name)
        now = self.now(now)
        config = await self._config(exam_id)
        if not config.check_access_code(access_code):
            raise ForbiddenError("Invalid access code")

        outcome = await self._lookup(config, key, now)
        if outcome is not None:
            return outcome

        try:
            attempt = await self.store.create_attempt(config.id, display, key, now, config.duration_seconds, client_ip)
        except ConflictError:
            # a concurrent start for the same name won the insert
            outcome = await self._lookup(config, key, now)
            if outcome is None:
                raise TransientStoreError("Could not start the exam, please retry")
            return outcome

        logger.info("Attempt %s started for exam %s by %r from %s", attempt.id, config.id, display, client_ip or "unknown")
        return StartOutcome(
            status=StartStatus.ACTIVE,
            attempt_id=attempt.id,
            time_remaining_seconds=attempt.time_remaining_seconds,
            exit_count=0,
            started_at=attempt.started_at,
            last_activity_at=attempt.last_activity_at,
        )

    @retry_transient
    async def recover(self, exam_id: str, student_name: str, now: Optional[datetime] = None) -> StartOutcome:
        """Recovery query by name: everything needed to resume without client-side identifiers."""
        _, key = normalize_student_name(student_name)
        now = self.now(now)
        config = await self._config(exam_id)
        outcome = await self._lookup(config, key, now)
        return outcome if outcome is not None else StartOutcome(status=StartStatus.NOT_FOUND)

    @retry_transient
    async def resume(self, attempt_id: str, exam_id: Optional[str] = None, now: Optional[datetime] = None) -> StartOutcome:
        now = self.now(now)
        attempt = await self._attempt(attempt_id, exam_id)
        config = await self._config(attempt.exam_id)
        if attempt.completed:
            return self._completed_outcome(attempt.id, AttemptResult.from_attempt(attempt, config, already_completed=True))
        outcome = await self._bring_up_to_date(attempt, config, now, StartStatus.ACTIVE)
        if outcome.status is StartStatus.ACTIVE:
            logger.info("Attempt %s resumed with %ss left", attempt.id, outcome.time_remaining_seconds)
        return outcome

    @retry_transient
    async def answer(self, attempt_id: str, question_id: str, option_id: Optional[str],
                     sequence: Optional[int] = None, exam_id: Optional[str] = None,
                     now: Optional[datetime] = None) -> bool:
        """
        Save one selection. Correctness is never written here.

        Returns False when the write carried a ``sequence`` no newer than the
        stored one and was dropped.
        """
        if not question_id:
            raise ValidationError("Question id is required")
        if sequence is not None and sequence < 0:
            raise ValidationError("sequence must not be negative")
        now = self.now(now)
        attempt = await self._attempt(attempt_id, exam_id)
        if attempt.completed:
            raise ForbiddenError(ALREADY_SUBMITTED_MESSAGE)
        config = await self._config(attempt.exam_id)
        if self.effective_remaining(attempt, config, now) <= 0:
            result = await self._close_with_saved_answers(attempt, config, AutoSubmitReason.TIME_EXPIRED, now)
            raise TimeExceededError(TIME_EXPIRED_MESSAGE, result=result)

        answer_key = await self.catalog.get_answer_key(attempt.exam_id)
        question = answer_key.get(question_id)
        if question is None:
            raise NotFoundError("Question not found in this exam")
        option_id = str(option_id).strip() if option_id else None
        if option_id is not None and question.option_ids and option_id not in question.option_ids:
            raise ValidationError("Option does not belong to this question")

        try:
            applied = await self.store.upsert_answer(attempt.id, question.question_id, option_id, sequence)
        except ConflictError:
            raise ForbiddenError(ALREADY_SUBMITTED_MESSAGE)
        if not applied:
            logger.info("Dropped stale answer for attempt %s question %s (sequence %s)",
                        attempt.id, question.question_id, sequence)
        return applied

    @retry_transient
    async def heartbeat(self, attempt_id: str, exam_id: Optional[str] = None,
                        now: Optional[datetime] = None) -> HeartbeatOutcome:
        """
        Keep-alive from the exam page. Writes at most once per heartbeat
        interval; in between it only reports the server's remaining time.
        """
        now = self.now(now)
        attempt = await self._attempt(attempt_id, exam_id)
        config = await self._config(attempt.exam_id, require_active=False)
        if attempt.completed:
            return HeartbeatOutcome(0, False, AttemptResult.from_attempt(attempt, config, already_completed=True))

        if ExitGuard.for_attempt(attempt, config).check(now).phase is ExitPhase.AUTO_SUBMIT:
            result = await self._close_with_saved_answers(attempt, config, AutoSubmitReason.EXIT_TIMEOUT, now)
            return HeartbeatOutcome(0, True, result)

        remaining = self.effective_remaining(attempt, config, now)
        if remaining <= 0:
            result = await self._close_with_saved_answers(attempt, config, AutoSubmitReason.TIME_EXPIRED, now)
            return HeartbeatOutcome(0, True, result)
        if not attempt.is_offline and \
                session_clock.elapsed_seconds(attempt.last_activity_at, now) < self.heartbeat_interval_seconds:
            return HeartbeatOutcome(remaining, False)

        def build(current):
            remaining, patch, _ = self._checkpoint(current, config, now)
            return patch, remaining

        attempt, remaining = await self._mutate(attempt, build)
        if attempt.completed:
            return HeartbeatOutcome(0, False, AttemptResult.from_attempt(attempt, config, already_completed=True))
        if remaining <= 0:
            result = await self._close_with_saved_answers(attempt, config, AutoSubmitReason.TIME_EXPIRED, now)
            return HeartbeatOutcome(0, True, result)
        return HeartbeatOutcome(remaining, True)

    def _offline_outcome(self, attempt: AttemptState, config: ExamConfig, now: datetime,
                         added: int = 0, result: Optional[AttemptResult] = None) -> OfflineOutcome:
        tracker = OfflineGraceTracker.from_attempt(attempt)
        return OfflineOutcome(
            offline=tracker.is_offline,
            added=added,
            total=tracker.total_offline_seconds,
            grace_remaining=tracker.grace_remaining(config.offline_grace_seconds),
            time_remaining_seconds=0 if result else self.effective_remaining(attempt, config, now),
            result=result,
        )

    async def _expire_if_out_of_time(self, attempt, config, now) -> Optional[AttemptResult]:
        if attempt.completed:
            return AttemptResult.from_attempt(attempt, config, already_completed=True)
        if self.effective_remaining(attempt, config, now) <= 0:
            return await self._close_with_saved_answers(attempt, config, AutoSubmitReason.TIME_EXPIRED, now)
        return None

    @retry_transient
    async def mark_offline(self, attempt_id: str, exam_id: Optional[str] = None,
                           now: Optional[datetime] = None) -> OfflineOutcome:
        """Start an offline period; duplicate network-drop reports are no-ops."""
        now = self.now(now)
        attempt = await self._attempt(attempt_id, exam_id)
        config = await self._config(attempt.exam_id, require_active=False)

        def build(current):
            if current.is_offline:
                return None, None
            _, patch, _ = self._checkpoint(current, config, now)
            patch["went_offline_at"] = now
            return patch, None

        attempt, _ = await self._mutate(attempt, build)
        result = await self._expire_if_out_of_time(attempt, config, now)
        if result is None:
            logger.warning("Attempt %s went offline", attempt.id)
        return self._offline_outcome(attempt, config, now, result=result)

    @retry_transient
    async def mark_online(self, attempt_id: str, exam_id: Optional[str] = None,
                          now: Optional[datetime] = None) -> OfflineOutcome:
        """End an offline period, crediting at most the remaining grace budget."""
        now = self.now(now)
        attempt = await self._attempt(attempt_id, exam_id)
        config = await self._config(attempt.exam_id, require_active=False)

        def build(current):
            if not current.is_offline:
                return None, 0
            _, patch, online = self._checkpoint(current, config, now)
            return patch, online.added

        attempt, added = await self._mutate(attempt, build)
        result = await self._expire_if_out_of_time(attempt, config, now)
        if added:
            logger.info("Attempt %s back online, %ss of offline grace used (total %ss)",
                        attempt.id, added, attempt.total_offline_seconds)
        return self._offline_outcome(attempt, config, now, added=added or 0, result=result)

    @retry_transient
    async def fullscreen_exit(self, attempt_id: str, exam_id: Optional[str] = None,
                              client_ip: Optional[str] = None, now: Optional[datetime] = None) -> ExitOutcome:
        now = self.now(now)
        attempt = await self._attempt(attempt_id, exam_id)
        config = await self._config(attempt.exam_id, require_active=False)

        def build(current):
            guard = ExitGuard.for_attempt(current, config)
            transition = guard.fullscreen_lost(now)
            if not transition.changed:
                return None, (transition, guard)
            entry = SuspiciousActivity(
                type=ActivityType.FULLSCREEN_EXIT.value,
                timestamp=now,
                detail=f"Exit {guard.exit_count}/{config.max_exits}",
                client_ip=client_ip,
            )
            patch = {
                "exit_count": guard.exit_count,
                "exit_pending_since": guard.pending_since,
                "suspicious_activities": tuple(current.suspicious_activities) + (entry,),
            }
            return patch, (transition, guard)

        attempt, info = await self._mutate(attempt, build)
        if info is None:
            return ExitOutcome("completed", attempt.exit_count, config.max_exits,
                               result=AttemptResult.from_attempt(attempt, config, already_completed=True))
        transition, guard = info
        if transition.changed:
            logger.warning("Attempt %s left fullscreen (%s/%s) from %s", attempt.id, guard.exit_count,
                           config.max_exits, client_ip or "unknown")
        if transition.phase is ExitPhase.AUTO_SUBMIT:
            result = await self._close_with_saved_answers(attempt, config, transition.reason, now)
            return ExitOutcome(ExitPhase.AUTO_SUBMIT.value, guard.exit_count, config.max_exits, result=result)
        return ExitOutcome(guard.phase.value, guard.exit_count, config.max_exits, guard.seconds_to_return(now))

    @retry_transient
    async def fullscreen_return(self, attempt_id: str, exam_id: Optional[str] = None,
                                now: Optional[datetime] = None) -> ExitOutcome:
        now = self.now(now)
        attempt = await self._attempt(attempt_id, exam_id)
        config = await self._config(attempt.exam_id, require_active=False)

        def build(current):
            guard = ExitGuard.for_attempt(current, config)
            transition = guard.fullscreen_restored(now)
            patch = {"exit_pending_since": None} if transition.changed else None
            return patch, (transition, guard)

        attempt, info = await self._mutate(attempt, build)
        if info is None:
            return ExitOutcome("completed", attempt.exit_count, config.max_exits,
                               result=AttemptResult.from_attempt(attempt, config, already_completed=True))
        transition, guard = info
        if transition.phase is ExitPhase.AUTO_SUBMIT:
            result = await self._close_with_saved_answers(attempt, config, transition.reason, now)
            return ExitOutcome(ExitPhase.AUTO_SUBMIT.value, guard.exit_count, config.max_exits, result=result)
        return ExitOutcome(guard.phase.value, guard.exit_count, config.max_exits)

    @retry_transient
    async def record_activity(self, attempt_id: str, activity_type, detail: Optional[str] = None,
                              client_ip: Optional[str] = None, exam_id: Optional[str] = None,
                              now: Optional[datetime] = None) -> AttemptState:
        """Append to the suspicious-activity log. Window blurs are also counted."""
        try:
            activity_type = ActivityType(activity_type)
        except ValueError:
            raise ValidationError(f"Unknown activity type: {activity_type}")
        if activity_type is ActivityType.FULLSCREEN_EXIT:
            raise ValidationError("Fullscreen exits are reported through the exit endpoint")
        now = self.now(now)
        attempt = await self._attempt(attempt_id, exam_id)
        if attempt.completed:
            raise ForbiddenError(ALREADY_SUBMITTED_MESSAGE)
        config = await self._config(attempt.exam_id, require_active=False)
        entry = SuspiciousActivity(type=activity_type.value, timestamp=now, detail=detail, client_ip=client_ip)

        def build(current):
            patch = {"suspicious_activities": tuple(current.suspicious_activities) + (entry,)}
            if activity_type is ActivityType.WINDOW_BLUR:
                patch["window_switch_count"] = ExitGuard.for_attempt(current, config).window_blurred()
            return patch, None

        attempt, _ = await self._mutate(attempt, build)
        if attempt.completed:
            raise ForbiddenError(ALREADY_SUBMITTED_MESSAGE)
        logger.warning("Suspicious activity on attempt %s: %s (%s) from %s", attempt.id, activity_type.value,
                       detail or "-", client_ip or "unknown")
        return attempt

    @retry_transient
    async def submit(self, attempt_id: str, answers: Optional[Mapping[str, Any]] = None,
                     exam_id: Optional[str] = None, now: Optional[datetime] = None) -> AttemptResult:
        """
        Grade the attempt against the server answer key and close it.

        ``answers`` maps question id to option id and is merged over the last
        saved answers. Correctness flags sent by the client are ignored. A
        second submit returns the stored result with ``already_completed``
        set. A submit later than duration + grace is refused: the attempt is
        graded with its saved answers and TimeExceededError carries that result.
        """
        if answers is not None and not isinstance(answers, Mapping):
            raise ValidationError("answers must map question ids to option ids")
        now = self.now(now)
        attempt = await self._attempt(attempt_id, exam_id)
        config = await self._config(attempt.exam_id, require_active=False)
        if attempt.completed:
            logger.info("Attempt %s already completed, returning stored result", attempt.id)
            return AttemptResult.from_attempt(attempt, config, already_completed=True)
        if not config.is_active:
            raise ForbiddenError("This exam is no longer active")

        saved = await self._saved_selections(attempt.id)
        if self._submit_too_late(attempt, config, now):
            result = await self._finalize(attempt, config, saved, AutoSubmitReason.TIME_EXPIRED, now)
            logger.warning("Late submit for attempt %s refused, graded with saved answers", attempt.id)
            raise TimeExceededError(TIME_EXPIRED_MESSAGE, result=result)

        selections = dict(saved)
        selections.update(normalize_selections(answers))
        return await self._finalize(attempt, config, selections, None, now)

    @retry_transient
    async def expire(self, attempt_id: str, now: Optional[datetime] = None) -> Optional[AttemptResult]:
        """
        Grade an abandoned attempt with its saved answers once its time is
        fully used. Returns None while time remains.
        """
        now = self.now(now)
        attempt = await self._attempt(attempt_id)
        config = await self._config(attempt.exam_id, require_active=False)
        return await self._expire_if_out_of_time(attempt, config, now)

    async def close_if_lapsed(self, attempt: AttemptState, config: ExamConfig,
                              now: Optional[datetime] = None) -> Optional[AttemptResult]:
        """Sweep step for one attempt: exit countdown ran out, or time ran out. None otherwise."""
        now = self.now(now)
        if attempt.completed:
            return AttemptResult.from_attempt(attempt, config, already_completed=True)
        if ExitGuard.for_attempt(attempt, config).check(now).phase is ExitPhase.AUTO_SUBMIT:
            return await self._close_with_saved_answers(attempt, config, AutoSubmitReason.EXIT_TIMEOUT, now)
        return await self._expire_if_out_of_time(attempt, config, now)

    @retry_transient
    async def force_finish(self, attempt_id: str, admin_id, now: Optional[datetime] = None) -> AttemptResult:
        """Instructor closes an attempt early; it is graded with its saved answers."""
        now = self.now(now)
        attempt = await self._attempt(attempt_id)
        config = await self._config(attempt.exam_id, require_active=False)
        if config.owner_id is None or str(admin_id) != config.owner_id:
            raise ForbiddenError("You do not have permission to modify this attempt")
        if attempt.completed:
            return AttemptResult.from_attempt(attempt, config, already_completed=True)
        logger.info("Attempt %s force-finished by %s", attempt.id, admin_id)
        return await self._close_with_saved_answers(attempt, config, AutoSubmitReason.ADMIN_FORCED, now)

    async def get_result(self, attempt_id: str, exam_id: Optional[str] = None) -> AttemptResult:
        attempt = await self._attempt(attempt_id, exam_id)
        config = await self._config(attempt.exam_id, require_active=False)
        if not attempt.completed:
            raise ForbiddenError("This attempt is still in progress")
        return AttemptResult.from_attempt(attempt, config, already_completed=True)

    async def questions_for_attempt(self, attempt_id: str, exam_id: Optional[str] = None) -> List[dict]:
        """Questions without correctness flags, in this attempt's stable shuffled order."""
        attempt = await self._attempt(attempt_id, exam_id)
        if attempt.completed:
            raise ForbiddenError(ALREADY_SUBMITTED_MESSAGE)
        config = await self._config(attempt.exam_id)
        questions = await self.catalog.get_questions_for_student(attempt.exam_id)
        return shuffle_for_attempt(questions, config, attempt.id)
