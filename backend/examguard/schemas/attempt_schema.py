from pydantic import BaseModel, ConfigDict, Field
from typing import Dict, List, Optional, Union
from datetime import datetime


class StartRequest(BaseModel):
    student_name: str = Field(..., min_length=1)
    access_code: Optional[str] = None


class RecoverRequest(BaseModel):
    student_name: str = Field(..., min_length=1)


class AnswerPayload(BaseModel):
    question_id: str
    option_id: Optional[str] = None
    # client-side counter; older writes than the stored one are dropped
    sequence: Optional[int] = Field(None, ge=0)


class SubmittedAnswer(BaseModel):
    option_id: Optional[str] = None
    # accepted for compatibility with older clients and ignored
    is_correct: Optional[bool] = None


class SubmitPayload(BaseModel):
    answers: Optional[Dict[str, Union[str, SubmittedAnswer, None]]] = None

    def selections(self) -> Dict[str, Optional[str]]:
        out = {}
        for qid, value in (self.answers or {}).items():
            out[qid] = value.option_id if isinstance(value, SubmittedAnswer) else value
        return out


class ActivityPayload(BaseModel):
    type: str
    detail: Optional[str] = Field(None, max_length=500)


class AttemptResultRead(BaseModel):
    attempt_id: str
    score: Optional[float] = None
    total_points: Optional[int] = None
    earned_points: Optional[int] = None
    passed: Optional[bool] = None
    time_spent_seconds: int
    completed_at: Optional[datetime] = None
    auto_submitted: bool = False
    auto_submit_reason: Optional[str] = None
    already_completed: bool = False
    # false when the exam hides scores from students
    show_results: bool = True

    model_config = ConfigDict(from_attributes=True)


class StartResponse(BaseModel):
    status: str
    attempt_id: Optional[str] = None
    time_remaining_seconds: Optional[int] = None
    answers: Dict[str, str] = {}
    exit_count: int = 0
    started_at: Optional[datetime] = None
    last_activity_at: Optional[datetime] = None
    expired: bool = False
    result: Optional[AttemptResultRead] = None


class AnswerResponse(BaseModel):
    saved: bool


class HeartbeatResponse(BaseModel):
    time_remaining_seconds: int
    completed: bool = False
    result: Optional[AttemptResultRead] = None


class OfflineResponse(BaseModel):
    offline: bool
    added_seconds: int
    total_offline_seconds: int
    grace_remaining_seconds: int
    time_remaining_seconds: Optional[int] = None
    result: Optional[AttemptResultRead] = None


class ExitResponse(BaseModel):
    phase: str
    exit_count: int
    max_exits: int
    seconds_to_return: Optional[int] = None
    result: Optional[AttemptResultRead] = None


class ActivityRead(BaseModel):
    type: str
    timestamp: datetime
    detail: Optional[str] = None
    client_ip: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)


class ActivityResponse(BaseModel):
    recorded: bool
    window_switch_count: int


class AttemptSummary(BaseModel):
    id: str
    exam_id: str
    student_name: str
    started_at: datetime
    last_activity_at: datetime
    time_remaining_seconds: Optional[int] = None
    exit_count: int
    window_switch_count: int
    total_offline_seconds: int
    is_offline: bool
    completed: bool
    completed_at: Optional[datetime] = None
    score: Optional[float] = None
    total_points: Optional[int] = None
    earned_points: Optional[int] = None
    time_spent_seconds: Optional[int] = None
    auto_submitted: bool
    auto_submit_reason: Optional[str] = None
    client_ip: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)


class AnswerDetail(BaseModel):
    question_id: str
    question_text: Optional[str] = None
    selected_option_id: Optional[str] = None
    is_correct: Optional[bool] = None


class AttemptDetail(AttemptSummary):
    suspicious_activities: List[ActivityRead] = []
    answers: List[AnswerDetail] = []


class SweepResponse(BaseModel):
    total: int
    submitted: int
    failed: int
    skipped: int
    errors: List[dict] = []

    model_config = ConfigDict(from_attributes=True)
