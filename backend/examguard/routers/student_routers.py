from fastapi import APIRouter, Depends, HTTPException, Request, status
from typing import List
import logging

from ..dependencies import client_ip, get_attempt_lifecycle, get_exam_catalog
from ..schemas.attempt_schema import (
    ActivityPayload,
    ActivityResponse,
    AnswerPayload,
    AnswerResponse,
    AttemptResultRead,
    ExitResponse,
    HeartbeatResponse,
    OfflineResponse,
    RecoverRequest,
    StartRequest,
    StartResponse,
    SubmitPayload,
)
from ..schemas.exam_schema import AccessCodePayload, ExamPublic
from ..schemas.question_schema import StudentQuestion
from ..services.attempt_lifecycle import AttemptLifecycle
from .errors import result_read, run_engine

logger = logging.getLogger(__name__)

router = APIRouter()


def _start_response(outcome) -> StartResponse:
    return StartResponse(
        status=outcome.status.value,
        attempt_id=outcome.attempt_id,
        time_remaining_seconds=outcome.time_remaining_seconds,
        answers=outcome.answers,
        exit_count=outcome.exit_count,
        started_at=outcome.started_at,
        last_activity_at=outcome.last_activity_at,
        expired=outcome.expired,
        result=result_read(outcome.result) if outcome.result else None,
    )


def _offline_response(outcome) -> OfflineResponse:
    return OfflineResponse(
        offline=outcome.offline,
        added_seconds=outcome.added,
        total_offline_seconds=outcome.total,
        grace_remaining_seconds=outcome.grace_remaining,
        time_remaining_seconds=outcome.time_remaining_seconds,
        result=result_read(outcome.result) if outcome.result else None,
    )


def _exit_response(outcome) -> ExitResponse:
    return ExitResponse(
        phase=outcome.phase,
        exit_count=outcome.exit_count,
        max_exits=outcome.max_exits,
        seconds_to_return=outcome.seconds_to_return,
        result=result_read(outcome.result) if outcome.result else None,
    )


@router.get("/exams/{exam_id}", response_model=ExamPublic)
async def get_exam(exam_id: str, catalog=Depends(get_exam_catalog)):
    config = await run_engine(catalog.get_exam_config, exam_id)
    if not config.is_active:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="This exam is not active")
    return ExamPublic(
        id=config.id,
        title=config.title,
        duration_seconds=config.duration_seconds,
        max_exits=config.max_exits,
        exit_warning_seconds=config.exit_warning_seconds,
        offline_grace_seconds=config.offline_grace_seconds,
        requires_access_code=config.requires_access_code,
        show_results=config.show_results,
    )


@router.post("/exams/{exam_id}/verify-code")
async def verify_access_code(exam_id: str, payload: AccessCodePayload, request: Request,
                             catalog=Depends(get_exam_catalog)):
    config = await run_engine(catalog.get_exam_config, exam_id)
    if not config.is_active:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="This exam is not active")
    if not config.check_access_code(payload.access_code):
        logger.warning("Wrong access code for exam %s from %s", exam_id, client_ip(request))
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Invalid access code")
    return {"valid": True}


@router.post("/exams/{exam_id}/start", response_model=StartResponse)
async def start_exam(exam_id: str, payload: StartRequest, request: Request,
                     lifecycle: AttemptLifecycle = Depends(get_attempt_lifecycle)):
    outcome = await run_engine(
        lifecycle.start, exam_id, payload.student_name,
        access_code=payload.access_code, client_ip=client_ip(request),
    )
    return _start_response(outcome)


@router.post("/exams/{exam_id}/recover", response_model=StartResponse)
async def recover_attempt(exam_id: str, payload: RecoverRequest,
                          lifecycle: AttemptLifecycle = Depends(get_attempt_lifecycle)):
    # lets a student continue after losing local storage, by name only
    outcome = await run_engine(lifecycle.recover, exam_id, payload.student_name)
    return _start_response(outcome)


@router.post("/exams/{exam_id}/attempts/{attempt_id}/resume", response_model=StartResponse)
async def resume_attempt(exam_id: str, attempt_id: str,
                         lifecycle: AttemptLifecycle = Depends(get_attempt_lifecycle)):
    outcome = await run_engine(lifecycle.resume, attempt_id, exam_id=exam_id)
    return _start_response(outcome)


@router.get("/exams/{exam_id}/attempts/{attempt_id}/questions", response_model=List[StudentQuestion])
async def get_attempt_questions(exam_id: str, attempt_id: str,
                                lifecycle: AttemptLifecycle = Depends(get_attempt_lifecycle)):
    return await run_engine(lifecycle.questions_for_attempt, attempt_id, exam_id=exam_id)


@router.put("/exams/{exam_id}/attempts/{attempt_id}/answers", response_model=AnswerResponse)
async def save_answer(exam_id: str, attempt_id: str, payload: AnswerPayload,
                      lifecycle: AttemptLifecycle = Depends(get_attempt_lifecycle)):
    saved = await run_engine(
        lifecycle.answer, attempt_id, payload.question_id, payload.option_id,
        sequence=payload.sequence, exam_id=exam_id,
    )
    return AnswerResponse(saved=saved)


@router.post("/exams/{exam_id}/attempts/{attempt_id}/heartbeat", response_model=HeartbeatResponse)
async def heartbeat(exam_id: str, attempt_id: str,
                    lifecycle: AttemptLifecycle = Depends(get_attempt_lifecycle)):
    outcome = await run_engine(lifecycle.heartbeat, attempt_id, exam_id=exam_id)
    return HeartbeatResponse(
        time_remaining_seconds=outcome.time_remaining_seconds,
        completed=outcome.result is not None,
        result=result_read(outcome.result) if outcome.result else None,
    )


@router.post("/exams/{exam_id}/attempts/{attempt_id}/offline", response_model=OfflineResponse)
async def went_offline(exam_id: str, attempt_id: str,
                       lifecycle: AttemptLifecycle = Depends(get_attempt_lifecycle)):
    outcome = await run_engine(lifecycle.mark_offline, attempt_id, exam_id=exam_id)
    return _offline_response(outcome)


@router.delete("/exams/{exam_id}/attempts/{attempt_id}/offline", response_model=OfflineResponse)
async def back_online(exam_id: str, attempt_id: str,
                      lifecycle: AttemptLifecycle = Depends(get_attempt_lifecycle)):
    outcome = await run_engine(lifecycle.mark_online, attempt_id, exam_id=exam_id)
    return _offline_response(outcome)


@router.post("/exams/{exam_id}/attempts/{attempt_id}/fullscreen-exit", response_model=ExitResponse)
async def fullscreen_exit(exam_id: str, attempt_id: str, request: Request,
                          lifecycle: AttemptLifecycle = Depends(get_attempt_lifecycle)):
    outcome = await run_engine(lifecycle.fullscreen_exit, attempt_id, exam_id=exam_id, client_ip=client_ip(request))
    return _exit_response(outcome)


@router.post("/exams/{exam_id}/attempts/{attempt_id}/fullscreen-return", response_model=ExitResponse)
async def fullscreen_return(exam_id: str, attempt_id: str,
                            lifecycle: AttemptLifecycle = Depends(get_attempt_lifecycle)):
    outcome = await run_engine(lifecycle.fullscreen_return, attempt_id, exam_id=exam_id)
    return _exit_response(outcome)


@router.post("/exams/{exam_id}/attempts/{attempt_id}/activity", response_model=ActivityResponse)
async def record_activity(exam_id: str, attempt_id: str, payload: ActivityPayload, request: Request,
                          lifecycle: AttemptLifecycle = Depends(get_attempt_lifecycle)):
    attempt = await run_engine(
        lifecycle.record_activity, attempt_id, payload.type, detail=payload.detail,
        client_ip=client_ip(request), exam_id=exam_id,
    )
    return ActivityResponse(recorded=True, window_switch_count=attempt.window_switch_count)


@router.post("/exams/{exam_id}/attempts/{attempt_id}/submit", response_model=AttemptResultRead)
async def submit_attempt(exam_id: str, attempt_id: str, payload: SubmitPayload,
                         lifecycle: AttemptLifecycle = Depends(get_attempt_lifecycle)):
    result = await run_engine(lifecycle.submit, attempt_id, payload.selections(), exam_id=exam_id)
    return result_read(result)


@router.get("/exams/{exam_id}/attempts/{attempt_id}/result", response_model=AttemptResultRead)
async def get_result(exam_id: str, attempt_id: str,
                     lifecycle: AttemptLifecycle = Depends(get_attempt_lifecycle)):
    result = await run_engine(lifecycle.get_result, attempt_id, exam_id=exam_id)
    return result_read(result)
