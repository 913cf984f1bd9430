from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional

from .attempt_state import AnswerKey, AnswerRecord


@dataclass(frozen=True)
class GradeResult:
    records: List[AnswerRecord]
    earned_points: int
    total_points: int
    score: float


def selection_of(value: Any) -> Optional[str]:
    """
    Extract the selected option id from one submitted answer.

    Accepts a bare option id or a mapping with ``option_id`` /
    ``selected_option_id``. Anything else the client put in the mapping
    (``is_correct`` in particular) is ignored.
    """
    if value is None:
        return None
    if isinstance(value, Mapping):
        value = value.get("option_id", value.get("selected_option_id"))
        if value is None:
            return None
    value = str(value).strip()
    return value or None


def normalize_selections(answers: Optional[Mapping[Any, Any]]) -> Dict[str, str]:
    out: Dict[str, str] = {}
    for qid, value in (answers or {}).items():
        selected = selection_of(value)
        if selected is not None:
            out[str(qid)] = selected
    return out


def grade_submission(answers: Mapping[Any, Any], answer_key: AnswerKey) -> GradeResult:
    """
    Grade the given answers against the server answer key.
    - answers: mapping question_id -> option id (or a mapping holding one)
    - answer_key: every question of the exam with its correct option and points

    Returns one record per question of the exam (unanswered ones included,
    with is_correct False) plus the score in percent. Answers to questions
    that are not part of the exam are dropped.
    """
    selections = normalize_selections(answers)
    records: List[AnswerRecord] = []
    earned = 0

    for q in answer_key:
        selected = selections.get(q.question_id)
        is_correct = selected is not None and q.correct_option_id is not None and selected == q.correct_option_id
        if is_correct:
            earned += q.points or 0
        records.append(AnswerRecord(question_id=q.question_id, selected_option_id=selected, is_correct=is_correct))

    total = answer_key.total_points
    score = (earned / total) * 100 if total > 0 else 0.0
    return GradeResult(records=records, earned_points=earned, total_points=total, score=score)
