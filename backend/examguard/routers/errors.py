from fastapi import HTTPException, status
import logging

from ..errors import (
    ConflictError,
    ExamSessionError,
    ForbiddenError,
    NotFoundError,
    TimeExceededError,
    TransientStoreError,
    ValidationError,
)
from ..schemas.attempt_schema import AttemptResultRead

logger = logging.getLogger(__name__)


_STATUS = [
    (ValidationError, status.HTTP_400_BAD_REQUEST),
    (NotFoundError, status.HTTP_404_NOT_FOUND),
    (ForbiddenError, status.HTTP_403_FORBIDDEN),
    (TimeExceededError, status.HTTP_409_CONFLICT),
    (ConflictError, status.HTTP_409_CONFLICT),
    (TransientStoreError, status.HTTP_503_SERVICE_UNAVAILABLE),
]


def result_read(result) -> AttemptResultRead:
    """Serialize a graded outcome; scores are blanked when the exam hides them."""
    out = AttemptResultRead(
        attempt_id=result.attempt_id,
        score=result.score,
        total_points=result.total_points,
        earned_points=result.earned_points,
        passed=result.passed,
        time_spent_seconds=result.time_spent_seconds,
        completed_at=result.completed_at,
        auto_submitted=result.auto_submitted,
        auto_submit_reason=getattr(result.auto_submit_reason, "value", result.auto_submit_reason),
        already_completed=result.already_completed,
        show_results=result.show_results,
    )
    if not result.show_results:
        out.score = out.total_points = out.earned_points = out.passed = None
    return out


def to_http_exception(e: ExamSessionError) -> HTTPException:
    code = next((c for cls, c in _STATUS if isinstance(e, cls)), status.HTTP_500_INTERNAL_SERVER_ERROR)
    if isinstance(e, TimeExceededError) and e.result is not None:
        return HTTPException(status_code=code, detail={
            "message": e.message,
            "result": result_read(e.result).model_dump(mode="json"),
        })
    return HTTPException(status_code=code, detail=e.message)


async def run_engine(call, *args, **kwargs):
    """Await an engine call and map its failures the way every route does."""
    try:
        return await call(*args, **kwargs)
    except HTTPException:
        raise
    except ExamSessionError as e:
        raise to_http_exception(e)
    except Exception as e:
        logger.exception("Unhandled error in %s", getattr(call, "__name__", call))
        raise HTTPException(status_code=500, detail=str(e))
