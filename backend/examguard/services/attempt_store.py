"""
Persistence of attempts and their answer records.

``AttemptStore`` is the contract the session engine relies on. Every write
that matters for safety (completion, exit count, offline accounting) goes
through ``update_attempt``/``finalize_attempt`` with a predicate that is
checked inside the same UPDATE statement, so concurrent request handlers and
the sweep can never both win.
"""
from datetime import datetime
from typing import List, Optional, Protocol, Sequence
import functools
import logging
import uuid

from sqlalchemy import delete, func, insert, or_, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.exc import IntegrityError, InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import async_sessionmaker

from ..errors import ConflictError, NotFoundError, TransientStoreError
from ..models.attempt_model import AnswerRecordDB, Attempt
from .attempt_state import (
    PATCHABLE_FIELDS,
    AnswerRecord,
    AttemptState,
    SuspiciousActivity,
    UpdatePredicate,
)
from .session_clock import utcnow

logger = logging.getLogger(__name__)


class AttemptStore(Protocol):
    async def get_attempt(self, attempt_id: str) -> Optional[AttemptState]:
        ...

    async def find_incomplete(self, exam_id: str, name_key: str) -> Optional[AttemptState]:
        ...

    async def find_completed(self, exam_id: str, name_key: str) -> Optional[AttemptState]:
        ...

    async def create_attempt(self, exam_id: str, student_name: str, name_key: str, now: datetime,
                             time_remaining_seconds: int, client_ip: Optional[str] = None) -> AttemptState:
        """Raises ConflictError when an open attempt already exists for (exam, name_key)."""
        ...

    async def update_attempt(self, attempt_id: str, patch: dict,
                             predicate: Optional[UpdatePredicate] = None) -> AttemptState:
        """Apply ``patch`` only if ``predicate`` still holds; ConflictError otherwise."""
        ...

    async def list_answers(self, attempt_id: str) -> List[AnswerRecord]:
        ...

    async def upsert_answer(self, attempt_id: str, question_id: str, option_id: Optional[str],
                            sequence: Optional[int] = None) -> bool:
        """
        Save one selection. Returns False when ``sequence`` is not newer than the
        stored one. ConflictError when the attempt is already completed.
        """
        ...

    async def replace_answers(self, attempt_id: str, records: Sequence[AnswerRecord]) -> None:
        """Delete and reinsert all answer records of an attempt, all or nothing."""
        ...

    async def finalize_attempt(self, attempt_id: str, records: Sequence[AnswerRecord], patch: dict) -> AttemptState:
        """
        ``replace_answers`` plus ``update_attempt`` (incomplete-only) in one
        transaction. ConflictError when somebody else completed it first.
        """
        ...

    async def list_incomplete_expired(self, now: datetime) -> List[AttemptState]:
        """Open attempts that may have run out of time or have an exit countdown running."""
        ...

    async def list_attempts(self, exam_id: str) -> List[AttemptState]:
        ...


def as_uuid(value) -> Optional[uuid.UUID]:
    if value is None:
        return None
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except ValueError:
        return None


def _translate_db_errors(fn):
    @functools.wraps(fn)
    async def wrapper(*args, **kwargs):
        try:
            return await fn(*args, **kwargs)
        except (OperationalError, InterfaceError, OSError) as e:
            logger.warning("Attempt store call %s failed: %s", fn.__name__, e)
            raise TransientStoreError("Storage is temporarily unavailable, please retry") from e
    return wrapper


def _to_state(row: Attempt) -> AttemptState:
    return AttemptState(
        id=str(row.id),
        exam_id=str(row.exam_id),
        student_name=row.student_name,
        started_at=row.started_at,
        last_activity_at=row.last_activity_at,
        time_remaining_seconds=row.time_remaining_seconds,
        exit_count=row.exit_count or 0,
        exit_pending_since=row.exit_pending_since,
        window_switch_count=row.window_switch_count or 0,
        total_offline_seconds=row.total_offline_seconds or 0,
        went_offline_at=row.went_offline_at,
        suspicious_activities=tuple(SuspiciousActivity.from_dict(a) for a in (row.suspicious_activities or [])),
        completed=bool(row.completed),
        completed_at=row.completed_at,
        score=row.score,
        total_points=row.total_points,
        earned_points=row.earned_points,
        time_spent_seconds=row.time_spent_seconds,
        auto_submitted=bool(row.auto_submitted),
        auto_submit_reason=row.auto_submit_reason,
        client_ip=row.client_ip,
        version=row.version or 0,
    )


def _to_record(row: AnswerRecordDB) -> AnswerRecord:
    return AnswerRecord(
        question_id=str(row.question_id),
        selected_option_id=str(row.selected_option_id) if row.selected_option_id else None,
        is_correct=row.is_correct,
        sequence=row.sequence,
    )


def _patch_values(patch: dict) -> dict:
    unknown = set(patch) - PATCHABLE_FIELDS
    if unknown:
        raise ValueError(f"Attempt fields cannot be patched: {sorted(unknown)}")
    values = dict(patch)
    if "suspicious_activities" in values:
        values["suspicious_activities"] = [a.to_dict() for a in values["suspicious_activities"]]
    return values


def _record_rows(attempt_id: uuid.UUID, records: Sequence[AnswerRecord]) -> List[dict]:
    now = utcnow()
    return [
        {
            "id": uuid.uuid4(),
            "attempt_id": attempt_id,
            "question_id": as_uuid(r.question_id),
            "selected_option_id": as_uuid(r.selected_option_id),
            "is_correct": r.is_correct,
            "sequence": r.sequence,
            "answered_at": now,
        }
        for r in records
    ]


class SqlAttemptStore:
    """AttemptStore on PostgreSQL. Each call runs in its own short transaction."""

    def __init__(self, session_maker: async_sessionmaker):
        self._session_maker = session_maker

    @_translate_db_errors
    async def get_attempt(self, attempt_id: str) -> Optional[AttemptState]:
        aid = as_uuid(attempt_id)
        if aid is None:
            return None
        async with self._session_maker() as session:
            row = await session.get(Attempt, aid)
            return _to_state(row) if row else None

    async def _find(self, exam_id: str, name_key: str, completed: bool) -> Optional[AttemptState]:
        eid = as_uuid(exam_id)
        if eid is None:
            return None
        async with self._session_maker() as session:
            stmt = select(Attempt).where(
                Attempt.exam_id == eid,
                Attempt.student_name_key == name_key,
                Attempt.completed.is_(completed),
            ).limit(1)
            row = (await session.execute(stmt)).scalars().first()
            return _to_state(row) if row else None

    @_translate_db_errors
    async def find_incomplete(self, exam_id: str, name_key: str) -> Optional[AttemptState]:
        return await self._find(exam_id, name_key, False)

    @_translate_db_errors
    async def find_completed(self, exam_id: str, name_key: str) -> Optional[AttemptState]:
        return await self._find(exam_id, name_key, True)

    @_translate_db_errors
    async def create_attempt(self, exam_id: str, student_name: str, name_key: str, now: datetime,
                             time_remaining_seconds: int, client_ip: Optional[str] = None) -> AttemptState:
        row = Attempt(
            id=uuid.uuid4(),
            exam_id=as_uuid(exam_id),
            student_name=student_name,
            student_name_key=name_key,
            started_at=now,
            last_activity_at=now,
            time_remaining_seconds=time_remaining_seconds,
            exit_count=0,
            window_switch_count=0,
            total_offline_seconds=0,
            suspicious_activities=[],
            completed=False,
            auto_submitted=False,
            client_ip=client_ip,
            version=0,
        )
        async with self._session_maker() as session:
            session.add(row)
            try:
                await session.commit()
            except IntegrityError as ie:
                await session.rollback()
                raise ConflictError("An attempt for this student is already open") from ie
            return _to_state(row)

    async def _conditional_update(self, session, aid: uuid.UUID, values: dict, predicate: UpdatePredicate):
        stmt = update(Attempt).where(Attempt.id == aid)
        if predicate.require_incomplete:
            stmt = stmt.where(Attempt.completed.is_(False))
        if predicate.expected_version is not None:
            stmt = stmt.where(Attempt.version == predicate.expected_version)
        stmt = (
            stmt.values(**values, version=Attempt.version + 1)
            .returning(Attempt)
            .execution_options(synchronize_session=False)
        )
        row = (await session.execute(stmt)).scalars().first()
        if row is None:
            exists = await session.scalar(select(Attempt.id).where(Attempt.id == aid))
            if exists is None:
                raise NotFoundError("Attempt not found")
            raise ConflictError("Attempt was modified concurrently")
        return row

    @_translate_db_errors
    async def update_attempt(self, attempt_id: str, patch: dict,
                             predicate: Optional[UpdatePredicate] = None) -> AttemptState:
        aid = as_uuid(attempt_id)
        if aid is None:
            raise NotFoundError("Attempt not found")
        values = _patch_values(patch)
        async with self._session_maker() as session:
            async with session.begin():
                row = await self._conditional_update(session, aid, values, predicate or UpdatePredicate())
            return _to_state(row)

    @_translate_db_errors
    async def list_answers(self, attempt_id: str) -> List[AnswerRecord]:
        aid = as_uuid(attempt_id)
        if aid is None:
            return []
        async with self._session_maker() as session:
            res = await session.execute(select(AnswerRecordDB).where(AnswerRecordDB.attempt_id == aid))
            return [_to_record(r) for r in res.scalars().all()]

    @_translate_db_errors
    async def upsert_answer(self, attempt_id: str, question_id: str, option_id: Optional[str],
                            sequence: Optional[int] = None) -> bool:
        aid = as_uuid(attempt_id)
        if aid is None:
            raise NotFoundError("Attempt not found")
        async with self._session_maker() as session:
            async with session.begin():
                # shared row lock: grading takes the exclusive one when it completes the attempt
                completed = await session.scalar(
                    select(Attempt.completed).where(Attempt.id == aid).with_for_update(read=True)
                )
                if completed is None:
                    raise NotFoundError("Attempt not found")
                if completed:
                    raise ConflictError("Attempt already completed")

                stmt = pg_insert(AnswerRecordDB).values(
                    id=uuid.uuid4(),
                    attempt_id=aid,
                    question_id=as_uuid(question_id),
                    selected_option_id=as_uuid(option_id),
                    is_correct=None,
                    sequence=sequence,
                    answered_at=utcnow(),
                )
                newer = None
                if sequence is not None:
                    newer = or_(AnswerRecordDB.sequence.is_(None), AnswerRecordDB.sequence < stmt.excluded.sequence)
                stmt = stmt.on_conflict_do_update(
                    constraint="uq_attempt_question",
                    set_={
                        "selected_option_id": stmt.excluded.selected_option_id,
                        "sequence": stmt.excluded.sequence,
                        "answered_at": stmt.excluded.answered_at,
                        "is_correct": None,
                    },
                    where=newer,
                ).returning(AnswerRecordDB.id)
                applied = (await session.execute(stmt)).first() is not None
            return applied

    @staticmethod
    async def _rewrite_answers(session, aid: uuid.UUID, records: Sequence[AnswerRecord]) -> None:
        await session.execute(delete(AnswerRecordDB).where(AnswerRecordDB.attempt_id == aid))
        rows = _record_rows(aid, records)
        if rows:
            await session.execute(insert(AnswerRecordDB), rows)

    @_translate_db_errors
    async def replace_answers(self, attempt_id: str, records: Sequence[AnswerRecord]) -> None:
        aid = as_uuid(attempt_id)
        if aid is None:
            raise NotFoundError("Attempt not found")
        async with self._session_maker() as session:
            async with session.begin():
                await self._rewrite_answers(session, aid, records)

    @_translate_db_errors
    async def finalize_attempt(self, attempt_id: str, records: Sequence[AnswerRecord], patch: dict) -> AttemptState:
        aid = as_uuid(attempt_id)
        if aid is None:
            raise NotFoundError("Attempt not found")
        values = _patch_values(patch)
        async with self._session_maker() as session:
            try:
                async with session.begin():
                    # the completion CAS goes first so a losing grader writes nothing
                    row = await self._conditional_update(session, aid, values, UpdatePredicate(require_incomplete=True))
                    await self._rewrite_answers(session, aid, records)
            except IntegrityError as ie:
                # uq_attempt_done_per_student: this student already has a graded attempt
                raise ConflictError("This student already has a completed attempt for this exam") from ie
            return _to_state(row)

    @_translate_db_errors
    async def list_incomplete_expired(self, now: datetime) -> List[AttemptState]:
        deadline = Attempt.last_activity_at + func.make_interval(0, 0, 0, 0, 0, 0, Attempt.time_remaining_seconds)
        stmt = select(Attempt).where(
            Attempt.completed.is_(False),
            or_(
                Attempt.time_remaining_seconds <= 0,
                deadline <= now,
                Attempt.exit_pending_since.isnot(None),
            ),
        ).order_by(Attempt.last_activity_at)
        async with self._session_maker() as session:
            res = await session.execute(stmt)
            return [_to_state(r) for r in res.scalars().all()]

    @_translate_db_errors
    async def list_attempts(self, exam_id: str) -> List[AttemptState]:
        eid = as_uuid(exam_id)
        if eid is None:
            return []
        async with self._session_maker() as session:
            res = await session.execute(select(Attempt).where(Attempt.exam_id == eid).order_by(Attempt.started_at))
            return [_to_state(r) for r in res.scalars().all()]
