from ..db import Base
from ..services.attempt_state import AutoSubmitReason
from sqlalchemy import Column, Integer, Float, String, Boolean, DateTime, Enum as SAEnum, UniqueConstraint, Index, text
from sqlalchemy.dialects.postgresql import UUID, JSONB
from sqlalchemy import ForeignKey
from sqlalchemy.orm import relationship, backref
from sqlalchemy.ext.mutable import MutableList
import uuid
from ..services.session_clock import utcnow


class Attempt(Base):
    __tablename__ = "student_attempts"
    __table_args__ = (
        # at most one open and one finished attempt per student name (case-insensitive) and exam
        Index("uq_attempt_open_per_student", "exam_id", "student_name_key", unique=True,
              postgresql_where=text("NOT completed")),
        Index("uq_attempt_done_per_student", "exam_id", "student_name_key", unique=True,
              postgresql_where=text("completed")),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    exam_id = Column(UUID(as_uuid=True), ForeignKey("exams.id", ondelete="CASCADE"), nullable=False)
    student_name = Column(String, nullable=False)
    student_name_key = Column(String, nullable=False)

    started_at = Column(DateTime, default=utcnow, nullable=False)
    last_activity_at = Column(DateTime, default=utcnow, nullable=False)
    time_remaining_seconds = Column(Integer, nullable=True)

    exit_count = Column(Integer, nullable=False, default=0)
    exit_pending_since = Column(DateTime, nullable=True)
    window_switch_count = Column(Integer, nullable=False, default=0)
    total_offline_seconds = Column(Integer, nullable=False, default=0)
    went_offline_at = Column(DateTime, nullable=True)
    # append-only audit log of {type, timestamp, detail, client_ip}
    suspicious_activities = Column(MutableList.as_mutable(JSONB), nullable=False, default=list)

    completed = Column(Boolean, nullable=False, default=False)
    completed_at = Column(DateTime, nullable=True)
    score = Column(Float, nullable=True)
    total_points = Column(Integer, nullable=True)
    earned_points = Column(Integer, nullable=True)
    time_spent_seconds = Column(Integer, nullable=True)
    auto_submitted = Column(Boolean, nullable=False, default=False)
    auto_submit_reason = Column(SAEnum(AutoSubmitReason, name="auto_submit_reason"), nullable=True)

    client_ip = Column(String, nullable=True)
    # bumped on every write; conditional updates compare against it
    version = Column(Integer, nullable=False, default=0)

    exam = relationship("Exam", backref=backref("attempts", passive_deletes=True))


class AnswerRecordDB(Base):
    __tablename__ = "student_answers"
    __table_args__ = (UniqueConstraint("attempt_id", "question_id", name="uq_attempt_question"),)

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    attempt_id = Column(UUID(as_uuid=True), ForeignKey("student_attempts.id", ondelete="CASCADE"), nullable=False, index=True)
    question_id = Column(UUID(as_uuid=True), ForeignKey("questions.id", ondelete="CASCADE"), nullable=False)
    selected_option_id = Column(UUID(as_uuid=True), nullable=True)
    # written by grading only
    is_correct = Column(Boolean, nullable=True)
    sequence = Column(Integer, nullable=True)
    answered_at = Column(DateTime, default=utcnow)

    attempt = relationship("Attempt", backref=backref("answers", passive_deletes=True))
