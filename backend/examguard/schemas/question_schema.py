from pydantic import BaseModel, ConfigDict, Field, field_validator
from typing import List
from uuid import UUID


class OptionCreate(BaseModel):
    option_text: str = Field(..., min_length=1)
    is_correct: bool = False


class QuestionCreate(BaseModel):
    """
    One multiple-choice question as authored by an instructor.

    Exactly one option must be marked correct; the flag is stored on the
    server and never leaves it through the student endpoints.
    """
    question_text: str = Field(..., min_length=1)
    points: int = Field(1, gt=0, description="Points awarded for the correct option.")
    options: List[OptionCreate] = Field(..., min_length=2)

    @field_validator("options")
    @classmethod
    def exactly_one_correct(cls, v):
        correct = [o for o in v if o.is_correct]
        if len(correct) != 1:
            raise ValueError("Exactly one option must be marked correct.")
        return v


class OptionRead(BaseModel):
    id: UUID
    option_text: str
    option_order: int
    is_correct: bool

    model_config = ConfigDict(from_attributes=True)


class QuestionRead(BaseModel):
    id: UUID
    question_text: str
    question_order: int
    points: int
    options: List[OptionRead] = []

    model_config = ConfigDict(from_attributes=True)


class StudentOption(BaseModel):
    id: str
    option_text: str
    option_order: int


class StudentQuestion(BaseModel):
    # what an exam page receives: no correctness flags
    id: str
    question_text: str
    question_order: int
    points: int
    options: List[StudentOption] = []
