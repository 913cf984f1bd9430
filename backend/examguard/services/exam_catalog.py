from typing import List, Optional, Protocol
import random

from sqlalchemy import select
from sqlalchemy.ext.asyncio import async_sessionmaker
from sqlalchemy.orm import selectinload

from ..errors import NotFoundError
from ..models.exam_model import Exam
from ..models.question_model import Question
from .attempt_state import AnswerKey, ExamConfig, QuestionKey
from .attempt_store import as_uuid


class ExamCatalog(Protocol):
    """Read access to authored exams. Raises NotFoundError for unknown exams."""

    async def get_exam_config(self, exam_id: str) -> ExamConfig:
        ...

    async def get_questions_for_student(self, exam_id: str) -> List[dict]:
        ...

    async def get_answer_key(self, exam_id: str) -> AnswerKey:
        ...


def exam_config_from_model(exam: Exam) -> ExamConfig:
    return ExamConfig(
        id=str(exam.id),
        title=exam.title,
        duration_seconds=exam.duration_minutes * 60,
        pass_score_percent=exam.pass_score if exam.pass_score is not None else 0,
        max_exits=exam.max_exits,
        exit_warning_seconds=exam.exit_warning_seconds,
        offline_grace_seconds=(exam.offline_grace_minutes or 0) * 60,
        shuffle_questions=bool(exam.shuffle_questions),
        shuffle_options=bool(exam.shuffle_options),
        show_results=bool(exam.show_results),
        requires_access_code=bool(exam.requires_access_code),
        access_code=exam.access_code,
        is_active=bool(exam.is_active),
        owner_id=str(exam.owner_id) if exam.owner_id else None,
    )


def _sanitize_question(q: Question) -> dict:
    # correctness flags stay on the server
    return {
        "id": str(q.id),
        "question_text": q.question_text,
        "question_order": q.question_order,
        "points": q.points,
        "options": [
            {"id": str(o.id), "option_text": o.option_text, "option_order": o.option_order}
            for o in q.options
        ],
    }


def _answer_key(questions: List[Question]) -> AnswerKey:
    keys = []
    for q in questions:
        correct = next((o for o in q.options if o.is_correct), None)
        keys.append(QuestionKey(
            question_id=str(q.id),
            correct_option_id=str(correct.id) if correct else None,
            points=q.points or 0,
            option_ids=frozenset(str(o.id) for o in q.options),
        ))
    return AnswerKey(keys)


def shuffle_for_attempt(questions: List[dict], config: ExamConfig, seed: Optional[str]) -> List[dict]:
    """
    Apply the exam's shuffle flags. The order is derived from ``seed`` (the
    attempt id), so a resumed attempt sees the same order again.
    """
    if seed is None or not (config.shuffle_questions or config.shuffle_options):
        return questions
    rng = random.Random(f"{config.id}:{seed}")
    out = [dict(q) for q in questions]
    if config.shuffle_questions:
        rng.shuffle(out)
    if config.shuffle_options:
        for q in out:
            options = list(q.get("options") or [])
            rng.shuffle(options)
            q["options"] = options
    return out


class SqlExamCatalog:

    def __init__(self, session_maker: async_sessionmaker):
        self._session_maker = session_maker

    async def _get_exam(self, session, exam_id: str) -> Exam:
        eid = as_uuid(exam_id)
        exam = await session.get(Exam, eid) if eid else None
        if exam is None:
            raise NotFoundError("Exam not found")
        return exam

    async def _get_questions(self, session, exam_id: str) -> List[Question]:
        stmt = (
            select(Question)
            .where(Question.exam_id == as_uuid(exam_id))
            .options(selectinload(Question.options))
            .order_by(Question.question_order)
        )
        res = await session.execute(stmt)
        return list(res.scalars().all())

    async def get_exam_config(self, exam_id: str) -> ExamConfig:
        async with self._session_maker() as session:
            exam = await self._get_exam(session, exam_id)
            return exam_config_from_model(exam)

    async def get_questions_for_student(self, exam_id: str) -> List[dict]:
        async with self._session_maker() as session:
            await self._get_exam(session, exam_id)
            return [_sanitize_question(q) for q in await self._get_questions(session, exam_id)]

    async def get_answer_key(self, exam_id: str) -> AnswerKey:
        async with self._session_maker() as session:
            await self._get_exam(session, exam_id)
            return _answer_key(await self._get_questions(session, exam_id))
