from ..db import Base
import uuid
from sqlalchemy import Column, Integer, String, Boolean, ForeignKey
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship


class Question(Base):
    __tablename__ = "questions"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    exam_id = Column(UUID(as_uuid=True), ForeignKey("exams.id", ondelete="CASCADE"), nullable=False, index=True)
    question_text = Column(String, nullable=False)
    question_order = Column(Integer, nullable=False, default=0)
    points = Column(Integer, nullable=False, default=1)

    exam = relationship("Exam", back_populates="questions")
    options = relationship(
        "Option",
        back_populates="question",
        order_by="Option.option_order",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )


class Option(Base):
    __tablename__ = "options"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    question_id = Column(UUID(as_uuid=True), ForeignKey("questions.id", ondelete="CASCADE"), nullable=False, index=True)
    option_text = Column(String, nullable=False)
    option_order = Column(Integer, nullable=False, default=0)
    # exactly one option per question is correct; never leaves the server
    is_correct = Column(Boolean, nullable=False, default=False)

    question = relationship("Question", back_populates="options")
