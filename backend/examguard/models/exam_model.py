from ..db import Base
from ..config import DEFAULT_MAX_EXITS, DEFAULT_EXIT_WARNING_SECONDS, DEFAULT_OFFLINE_GRACE_MINUTES, DEFAULT_PASS_SCORE


"""
Exams Model
| Column | Type | Notes |
| :--- | :--- | :--- |
| `id` | UUID | Primary Key |
| `owner_id` | UUID | FK -> users, the instructor |
| `title` | VARCHAR | |
| `duration_minutes` | INTEGER | |
| `pass_score` | FLOAT | Percent |
| `max_exits` | INTEGER | Fullscreen exits before auto-submit |
| `exit_warning_seconds` | INTEGER | Time to return to fullscreen |
| `offline_grace_minutes` | INTEGER | Timer pause budget while offline |
| `access_code` | VARCHAR | Never sent to students |
| `is_active` | BOOLEAN | Default `true` |
"""

from sqlalchemy import Column, String, Boolean, Integer, Float, DateTime, ForeignKey
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship
from ..services.session_clock import utcnow
import uuid


class Exam(Base):
    __tablename__ = "exams"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    owner_id = Column(UUID(as_uuid=True), ForeignKey("users.id"), nullable=True)
    title = Column(String, nullable=False)
    description = Column(String, nullable=True)
    duration_minutes = Column(Integer, nullable=False)
    pass_score = Column(Float, nullable=False, default=DEFAULT_PASS_SCORE)
    max_exits = Column(Integer, nullable=False, default=DEFAULT_MAX_EXITS)
    exit_warning_seconds = Column(Integer, nullable=False, default=DEFAULT_EXIT_WARNING_SECONDS)
    offline_grace_minutes = Column(Integer, nullable=False, default=DEFAULT_OFFLINE_GRACE_MINUTES)
    shuffle_questions = Column(Boolean, default=False)
    shuffle_options = Column(Boolean, default=False)
    show_results = Column(Boolean, default=True)
    requires_access_code = Column(Boolean, default=False)
    access_code = Column(String, nullable=True)
    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime, default=utcnow)

    questions = relationship(
        "Question",
        back_populates="exam",
        order_by="Question.question_order",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )
