from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from typing import List, Optional
from datetime import datetime
from uuid import UUID

from ..config import DEFAULT_EXIT_WARNING_SECONDS, DEFAULT_MAX_EXITS, DEFAULT_OFFLINE_GRACE_MINUTES, DEFAULT_PASS_SCORE
from .question_schema import QuestionCreate, QuestionRead, StudentQuestion


class ExamCreate(BaseModel):
    title: str = Field(..., min_length=1)
    description: Optional[str] = None
    duration_minutes: int
    pass_score: float = Field(DEFAULT_PASS_SCORE, ge=0, le=100)
    max_exits: int = Field(DEFAULT_MAX_EXITS, ge=1)
    exit_warning_seconds: int = Field(DEFAULT_EXIT_WARNING_SECONDS, ge=0)
    offline_grace_minutes: int = Field(DEFAULT_OFFLINE_GRACE_MINUTES, ge=0)
    shuffle_questions: bool = False
    shuffle_options: bool = False
    show_results: bool = True
    requires_access_code: bool = False
    access_code: Optional[str] = None
    # the order in the list defines the exam order
    questions: List[QuestionCreate] = []

    @field_validator("duration_minutes")
    @classmethod
    def duration_must_be_positive(cls, v):
        if v is None or v <= 0:
            raise ValueError("duration must be a positive integer (minutes)")
        return v

    @model_validator(mode="after")
    def access_code_when_required(self):
        if self.requires_access_code and not (self.access_code or "").strip():
            raise ValueError("access_code is required when requires_access_code is set")
        return self


class ExamRead(BaseModel):
    id: UUID
    owner_id: Optional[UUID] = None
    title: str
    description: Optional[str] = None
    duration_minutes: int
    pass_score: float
    max_exits: int
    exit_warning_seconds: int
    offline_grace_minutes: int
    shuffle_questions: bool
    shuffle_options: bool
    show_results: bool
    requires_access_code: bool
    is_active: bool
    created_at: Optional[datetime] = None
    questions: List[QuestionRead] = []

    model_config = ConfigDict(from_attributes=True)


class ExamPublic(BaseModel):
    """Exam as a student sees it before and during an attempt."""
    id: str
    title: str
    duration_seconds: int
    max_exits: int
    exit_warning_seconds: int
    offline_grace_seconds: int
    requires_access_code: bool
    show_results: bool
    questions: List[StudentQuestion] = []


class ExamStatusUpdate(BaseModel):
    is_active: bool


class AccessCodePayload(BaseModel):
    access_code: str
