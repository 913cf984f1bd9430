from collections import Counter
from dataclasses import replace
from datetime import datetime, timedelta
import asyncio
import uuid

import pytest

from examguard.config import SUBMIT_GRACE_SECONDS
from examguard.errors import ConflictError, NotFoundError, TransientStoreError
from examguard.services.attempt_lifecycle import AttemptLifecycle
from examguard.services.attempt_state import (
    PATCHABLE_FIELDS,
    AnswerKey,
    AnswerRecord,
    AttemptState,
    ExamConfig,
    QuestionKey,
    UpdatePredicate,
)

T0 = datetime(2026, 1, 5, 9, 0, 0)
EXAM_ID = "exam-1"
OWNER_ID = "owner-1"


def at(seconds: float) -> datetime:
    return T0 + timedelta(seconds=seconds)


def two_questions():
    return [
        {"id": "q1", "question_text": "2 + 2?", "question_order": 0, "points": 1, "options": [
            {"id": "q1-a", "option_text": "4", "option_order": 0, "is_correct": True},
            {"id": "q1-b", "option_text": "5", "option_order": 1, "is_correct": False},
        ]},
        {"id": "q2", "question_text": "Capital of France?", "question_order": 1, "points": 1, "options": [
            {"id": "q2-a", "option_text": "Lyon", "option_order": 0, "is_correct": False},
            {"id": "q2-b", "option_text": "Paris", "option_order": 1, "is_correct": True},
        ]},
    ]


def build_exam(questions=None, **overrides):
    params = dict(id=EXAM_ID, duration_seconds=600, title="General knowledge", owner_id=OWNER_ID)
    params.update(overrides)
    return ExamConfig(**params), (questions if questions is not None else two_questions())


class FakeCatalog:

    def __init__(self):
        self.exams = {}

    def add_exam(self, config, questions):
        self.exams[config.id] = (config, questions)

    def set_active(self, exam_id, is_active):
        config, questions = self.exams[exam_id]
        self.exams[exam_id] = (replace(config, is_active=is_active), questions)

    def _get(self, exam_id):
        if exam_id not in self.exams:
            raise NotFoundError("Exam not found")
        return self.exams[exam_id]

    async def get_exam_config(self, exam_id):
        return self._get(exam_id)[0]

    async def get_questions_for_student(self, exam_id):
        _, questions = self._get(exam_id)
        return [
            {**q, "options": [{k: v for k, v in o.items() if k != "is_correct"} for o in q["options"]]}
            for q in questions
        ]

    async def get_answer_key(self, exam_id):
        _, questions = self._get(exam_id)
        return AnswerKey([
            QuestionKey(
                question_id=q["id"],
                correct_option_id=next((o["id"] for o in q["options"] if o["is_correct"]), None),
                points=q["points"],
                option_ids=frozenset(o["id"] for o in q["options"]),
            )
            for q in questions
        ])


class InMemoryAttemptStore:
    """
    AttemptStore kept in dicts. Every call yields to the event loop first so
    concurrent tasks interleave; the predicate check and the write that
    follows it never do.
    """

    def __init__(self):
        self.attempts = {}
        self.name_keys = {}
        self.answers = {}
        self.calls = Counter()
        self.completions = 0
        # number of upcoming calls that fail as if the database were down
        self.fail_next = 0

    async def _io(self, name):
        self.calls[name] += 1
        await asyncio.sleep(0)
        if self.fail_next:
            self.fail_next -= 1
            raise TransientStoreError("Storage is temporarily unavailable, please retry")

    def _apply(self, attempt_id, patch, predicate):
        current = self.attempts.get(attempt_id)
        if current is None:
            raise NotFoundError("Attempt not found")
        unknown = set(patch) - PATCHABLE_FIELDS
        if unknown:
            raise ValueError(f"Attempt fields cannot be patched: {sorted(unknown)}")
        if not predicate.holds(current):
            raise ConflictError("Attempt was modified concurrently")
        values = dict(patch)
        if "suspicious_activities" in values:
            values["suspicious_activities"] = tuple(values["suspicious_activities"])
        updated = replace(current, version=current.version + 1, **values)
        self.attempts[attempt_id] = updated
        return updated

    async def get_attempt(self, attempt_id):
        await self._io("get_attempt")
        return self.attempts.get(str(attempt_id))

    def _find(self, exam_id, name_key, completed):
        for a in self.attempts.values():
            if a.exam_id == exam_id and self.name_keys[a.id] == name_key and a.completed == completed:
                return a
        return None

    async def find_incomplete(self, exam_id, name_key):
        await self._io("find_incomplete")
        return self._find(exam_id, name_key, False)

    async def find_completed(self, exam_id, name_key):
        await self._io("find_completed")
        return self._find(exam_id, name_key, True)

    async def create_attempt(self, exam_id, student_name, name_key, now, time_remaining_seconds, client_ip=None):
        await self._io("create_attempt")
        if self._find(exam_id, name_key, False) is not None:
            raise ConflictError("An attempt for this student is already open")
        attempt = AttemptState(
            id=str(uuid.uuid4()),
            exam_id=exam_id,
            student_name=student_name,
            started_at=now,
            last_activity_at=now,
            time_remaining_seconds=time_remaining_seconds,
            client_ip=client_ip,
        )
        self.attempts[attempt.id] = attempt
        self.name_keys[attempt.id] = name_key
        self.answers[attempt.id] = {}
        return attempt

    async def update_attempt(self, attempt_id, patch, predicate=None):
        await self._io("update_attempt")
        return self._apply(attempt_id, patch, predicate or UpdatePredicate())

    async def list_answers(self, attempt_id):
        await self._io("list_answers")
        return list(self.answers.get(attempt_id, {}).values())

    async def upsert_answer(self, attempt_id, question_id, option_id, sequence=None):
        await self._io("upsert_answer")
        attempt = self.attempts.get(attempt_id)
        if attempt is None:
            raise NotFoundError("Attempt not found")
        if attempt.completed:
            raise ConflictError("Attempt already completed")
        existing = self.answers[attempt_id].get(question_id)
        if sequence is not None and existing is not None and existing.sequence is not None \
                and existing.sequence >= sequence:
            return False
        self.answers[attempt_id][question_id] = AnswerRecord(question_id, option_id, None, sequence)
        return True

    async def replace_answers(self, attempt_id, records):
        await self._io("replace_answers")
        self.answers[attempt_id] = {r.question_id: r for r in records}

    async def finalize_attempt(self, attempt_id, records, patch):
        await self._io("finalize_attempt")
        current = self.attempts.get(attempt_id)
        if current is not None and not current.completed and \
                self._find(current.exam_id, self.name_keys[attempt_id], True) is not None:
            raise ConflictError("This student already has a completed attempt for this exam")
        updated = self._apply(attempt_id, patch, UpdatePredicate(require_incomplete=True))
        self.answers[attempt_id] = {r.question_id: r for r in records}
        self.completions += 1
        return updated

    async def list_incomplete_expired(self, now):
        await self._io("list_incomplete_expired")
        out = []
        for a in self.attempts.values():
            if a.completed:
                continue
            deadline = a.last_activity_at + timedelta(seconds=a.time_remaining_seconds or 0)
            if (a.time_remaining_seconds or 0) <= 0 or deadline <= now or a.exit_pending_since is not None:
                out.append(a)
        return out

    async def list_attempts(self, exam_id):
        await self._io("list_attempts")
        return [a for a in self.attempts.values() if a.exam_id == exam_id]


@pytest.fixture
def make_env():
    def _make(submit_grace_seconds=SUBMIT_GRACE_SECONDS, heartbeat_interval_seconds=10, questions=None,
              **exam_overrides):
        store = InMemoryAttemptStore()
        catalog = FakeCatalog()
        catalog.add_exam(*build_exam(questions, **exam_overrides))
        lifecycle = AttemptLifecycle(
            store,
            catalog,
            submit_grace_seconds=submit_grace_seconds,
            heartbeat_interval_seconds=heartbeat_interval_seconds,
            clock=lambda: T0,
        )
        return lifecycle, store, catalog
    return _make


@pytest.fixture
def env(make_env):
    return make_env()
