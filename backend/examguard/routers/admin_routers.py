from fastapi import APIRouter, Depends, File, HTTPException, UploadFile, status
from typing import List
from uuid import UUID
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload
import logging
import os

from ..db import get_async_session
from ..dependencies import current_admin, get_attempt_lifecycle, get_attempt_store
from ..models.exam_model import Exam
from ..models.question_model import Option, Question
from ..schemas.attempt_schema import AnswerDetail, AttemptDetail, AttemptResultRead, AttemptSummary, SweepResponse
from ..schemas.exam_schema import ExamCreate, ExamRead, ExamStatusUpdate
from ..schemas.question_schema import QuestionCreate, QuestionRead
from ..services.attempt_lifecycle import AttemptLifecycle
from ..services.excel_service import REQUIRED_COLUMNS, parse_excel
from ..services.sweep_service import sweep_expired
from .errors import result_read, run_engine

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin", tags=["Admin"])


async def _owned_exam(session: AsyncSession, exam_id: UUID, user) -> Exam:
    stmt = (
        select(Exam)
        .where(Exam.id == exam_id)
        .options(selectinload(Exam.questions).selectinload(Question.options))
        .execution_options(populate_existing=True)
    )
    exam = (await session.execute(stmt)).scalar_one_or_none()
    if not exam:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Exam not found")
    if exam.owner_id != user.id:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Operation not permitted")
    return exam


def _add_questions(session: AsyncSession, exam: Exam, questions: List[QuestionCreate], start_order: int = 0):
    for idx, q in enumerate(questions, start=start_order):
        question = Question(exam_id=exam.id, question_text=q.question_text, question_order=idx, points=q.points)
        question.options = [
            Option(option_text=o.option_text, option_order=o_idx, is_correct=o.is_correct)
            for o_idx, o in enumerate(q.options)
        ]
        session.add(question)


@router.get("/exams", response_model=List[ExamRead])
async def list_my_exams(session: AsyncSession = Depends(get_async_session), user=Depends(current_admin)):
    stmt = (
        select(Exam)
        .where(Exam.owner_id == user.id)
        .options(selectinload(Exam.questions).selectinload(Question.options))
        .order_by(Exam.created_at.desc())
    )
    res = await session.execute(stmt)
    return res.scalars().all()


@router.post("/exams", response_model=ExamRead, status_code=status.HTTP_201_CREATED)
async def create_exam(payload: ExamCreate, session: AsyncSession = Depends(get_async_session),
                      user=Depends(current_admin)):
    # create exam and its questions in the order provided
    exam = Exam(
        owner_id=user.id,
        title=payload.title,
        description=payload.description,
        duration_minutes=payload.duration_minutes,
        pass_score=payload.pass_score,
        max_exits=payload.max_exits,
        exit_warning_seconds=payload.exit_warning_seconds,
        offline_grace_minutes=payload.offline_grace_minutes,
        shuffle_questions=payload.shuffle_questions,
        shuffle_options=payload.shuffle_options,
        show_results=payload.show_results,
        requires_access_code=payload.requires_access_code,
        access_code=payload.access_code.strip() if payload.access_code else None,
        is_active=True,
    )
    session.add(exam)
    await session.flush()
    _add_questions(session, exam, payload.questions)
    await session.commit()

    logger.info("Exam %s created by %s with %s questions", exam.id, user.id, len(payload.questions))
    return await _owned_exam(session, exam.id, user)


@router.get("/exams/{exam_id}", response_model=ExamRead)
async def get_exam(exam_id: UUID, session: AsyncSession = Depends(get_async_session), user=Depends(current_admin)):
    return await _owned_exam(session, exam_id, user)


@router.patch("/exams/{exam_id}/status", response_model=ExamRead)
async def set_exam_status(exam_id: UUID, payload: ExamStatusUpdate,
                          session: AsyncSession = Depends(get_async_session), user=Depends(current_admin)):
    exam = await _owned_exam(session, exam_id, user)
    exam.is_active = payload.is_active
    await session.commit()
    logger.info("Exam %s %s by %s", exam_id, "activated" if payload.is_active else "deactivated", user.id)
    return await _owned_exam(session, exam_id, user)


@router.post("/exams/{exam_id}/questions", response_model=List[QuestionRead], status_code=status.HTTP_201_CREATED)
async def add_questions(exam_id: UUID, questions: List[QuestionCreate],
                        session: AsyncSession = Depends(get_async_session), user=Depends(current_admin)):
    exam = await _owned_exam(session, exam_id, user)
    next_order = await session.scalar(
        select(func.coalesce(func.max(Question.question_order) + 1, 0)).where(Question.exam_id == exam.id)
    )
    _add_questions(session, exam, questions, next_order or 0)
    await session.commit()
    exam = await _owned_exam(session, exam_id, user)
    return exam.questions


# Upload Excel & Preview
@router.post("/questions/upload")
async def upload_excel(file: UploadFile = File(...), user=Depends(current_admin)):
    #  check file extension and return parsed preview
    file_extension = os.path.splitext(file.filename or "")[1]
    allowed_extension = {".xlsx", ".xlsm", ".xls", ".xlsb", ".ods"}

    if file_extension not in allowed_extension:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Invalid file extension. Only {allowed_extension} are allowed."
        )
    try:
        preview = parse_excel(file.file)
    except KeyError as e:
        raise HTTPException(
            status_code=400,
            detail=(
                f"Column not found :{str(e)}. File must contain these columns {REQUIRED_COLUMNS}. "
                "Columns are case sensitive."
            ),
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    return {"total": len(preview), "preview": preview}


@router.get("/exams/{exam_id}/attempts", response_model=List[AttemptSummary])
async def list_exam_attempts(exam_id: UUID, session: AsyncSession = Depends(get_async_session),
                             store=Depends(get_attempt_store), user=Depends(current_admin)):
    await _owned_exam(session, exam_id, user)
    attempts = await run_engine(store.list_attempts, str(exam_id))
    return [AttemptSummary.model_validate(a) for a in attempts]


@router.get("/attempts/{attempt_id}", response_model=AttemptDetail)
async def get_attempt_detail(attempt_id: UUID, session: AsyncSession = Depends(get_async_session),
                             store=Depends(get_attempt_store), user=Depends(current_admin)):
    attempt = await run_engine(store.get_attempt, str(attempt_id))
    if attempt is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Attempt not found")
    exam = await _owned_exam(session, UUID(attempt.exam_id), user)

    records = {r.question_id: r for r in await run_engine(store.list_answers, attempt.id)}
    answers = []
    for q in exam.questions:
        record = records.get(str(q.id))
        answers.append(AnswerDetail(
            question_id=str(q.id),
            question_text=q.question_text,
            selected_option_id=record.selected_option_id if record else None,
            is_correct=record.is_correct if record else None,
        ))

    detail = AttemptDetail.model_validate(attempt)
    detail.answers = answers
    return detail


@router.post("/attempts/{attempt_id}/force-finish", response_model=AttemptResultRead)
async def force_finish(attempt_id: UUID, lifecycle: AttemptLifecycle = Depends(get_attempt_lifecycle),
                       user=Depends(current_admin)):
    result = await run_engine(lifecycle.force_finish, str(attempt_id), user.id)
    # instructors always see the score
    return result_read(result).model_copy(update={
        "score": result.score,
        "total_points": result.total_points,
        "earned_points": result.earned_points,
        "passed": result.passed,
    })


@router.post("/sweep", response_model=SweepResponse)
async def run_sweep(lifecycle: AttemptLifecycle = Depends(get_attempt_lifecycle), user=Depends(current_admin)):
    report = await run_engine(sweep_expired, lifecycle)
    logger.info("Manual expiry sweep by %s", user.id)
    return report
