"""
Plain data carried through the exam session engine.

These are deliberately not ORM objects: the engine reads an ``AttemptState``
snapshot from the store, decides, and hands a patch back. The store is the
only place that knows about SQLAlchemy rows.
"""
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, FrozenSet, Iterator, List, Optional
import enum


class AutoSubmitReason(str, enum.Enum):
    TIME_EXPIRED = "time_expired"
    MAX_EXITS = "max_exits"
    EXIT_TIMEOUT = "exit_timeout"
    ADMIN_FORCED = "admin_forced"


class ActivityType(str, enum.Enum):
    FULLSCREEN_EXIT = "fullscreen_exit"
    WINDOW_BLUR = "window_blur"
    DEVTOOLS = "devtools"
    COPY = "copy"
    PASTE = "paste"
    CUT = "cut"
    CONTEXT_MENU = "context_menu"


@dataclass(frozen=True)
class ExamConfig:
    """Rules of one exam, snapshotted for the lifetime of an attempt."""

    id: str
    duration_seconds: int
    pass_score_percent: float = 60
    max_exits: int = 3
    exit_warning_seconds: int = 10
    offline_grace_seconds: int = 300
    shuffle_questions: bool = False
    shuffle_options: bool = False
    show_results: bool = True
    requires_access_code: bool = False
    access_code: Optional[str] = field(default=None, repr=False)
    is_active: bool = True
    owner_id: Optional[str] = None
    title: str = ""

    def __post_init__(self):
        if self.duration_seconds is None or self.duration_seconds <= 0:
            raise ValueError("duration_seconds must be positive")
        if self.exit_warning_seconds < 0:
            raise ValueError("exit_warning_seconds must not be negative")
        if self.offline_grace_seconds < 0:
            raise ValueError("offline_grace_seconds must not be negative")

    def check_access_code(self, code: Optional[str]) -> bool:
        if not self.requires_access_code:
            return True
        if not code or not self.access_code:
            return False
        return code.strip() == self.access_code


@dataclass(frozen=True)
class QuestionKey:
    question_id: str
    correct_option_id: Optional[str]
    points: int = 1
    option_ids: FrozenSet[str] = frozenset()


class AnswerKey:
    """Server-only mapping question -> correct option, in exam order."""

    def __init__(self, questions: List[QuestionKey]):
        self._questions = list(questions)
        self._by_id = {q.question_id: q for q in self._questions}

    def __iter__(self) -> Iterator[QuestionKey]:
        return iter(self._questions)

    def __len__(self):
        return len(self._questions)

    def __contains__(self, question_id) -> bool:
        return str(question_id) in self._by_id

    def get(self, question_id) -> Optional[QuestionKey]:
        return self._by_id.get(str(question_id))

    @property
    def total_points(self) -> int:
        return sum(q.points or 0 for q in self._questions)


@dataclass(frozen=True)
class SuspiciousActivity:
    type: str
    timestamp: datetime
    detail: Optional[str] = None
    client_ip: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "type": self.type,
            "timestamp": self.timestamp.isoformat(),
            "detail": self.detail,
            "client_ip": self.client_ip,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "SuspiciousActivity":
        ts = data.get("timestamp")
        if isinstance(ts, str):
            ts = datetime.fromisoformat(ts)
        return cls(type=data.get("type"), timestamp=ts, detail=data.get("detail"), client_ip=data.get("client_ip"))


@dataclass(frozen=True)
class AnswerRecord:
    question_id: str
    selected_option_id: Optional[str]
    is_correct: Optional[bool] = None
    sequence: Optional[int] = None


@dataclass(frozen=True)
class AttemptState:
    id: str
    exam_id: str
    student_name: str
    started_at: datetime
    last_activity_at: datetime
    time_remaining_seconds: Optional[int]
    exit_count: int = 0
    exit_pending_since: Optional[datetime] = None
    window_switch_count: int = 0
    total_offline_seconds: int = 0
    went_offline_at: Optional[datetime] = None
    suspicious_activities: tuple = ()
    completed: bool = False
    completed_at: Optional[datetime] = None
    score: Optional[float] = None
    total_points: Optional[int] = None
    earned_points: Optional[int] = None
    time_spent_seconds: Optional[int] = None
    auto_submitted: bool = False
    auto_submit_reason: Optional[AutoSubmitReason] = None
    client_ip: Optional[str] = None
    version: int = 0

    @property
    def is_offline(self) -> bool:
        return self.went_offline_at is not None


# fields an engine patch may touch; everything else is fixed at creation
PATCHABLE_FIELDS = frozenset({
    "last_activity_at",
    "time_remaining_seconds",
    "exit_count",
    "exit_pending_since",
    "window_switch_count",
    "total_offline_seconds",
    "went_offline_at",
    "suspicious_activities",
    "completed",
    "completed_at",
    "score",
    "total_points",
    "earned_points",
    "time_spent_seconds",
    "auto_submitted",
    "auto_submit_reason",
})


@dataclass(frozen=True)
class UpdatePredicate:
    """Condition a store update must still satisfy at write time."""

    require_incomplete: bool = True
    expected_version: Optional[int] = None

    def holds(self, attempt: AttemptState) -> bool:
        if self.require_incomplete and attempt.completed:
            return False
        if self.expected_version is not None and attempt.version != self.expected_version:
            return False
        return True


@dataclass(frozen=True)
class AttemptResult:
    attempt_id: str
    score: float
    total_points: int
    earned_points: int
    time_spent_seconds: int
    completed_at: datetime
    auto_submitted: bool = False
    auto_submit_reason: Optional[AutoSubmitReason] = None
    passed: Optional[bool] = None
    already_completed: bool = False
    show_results: bool = True

    @classmethod
    def from_attempt(cls, attempt: AttemptState, config: Optional[ExamConfig] = None,
                     already_completed: bool = False) -> "AttemptResult":
        score = attempt.score or 0.0
        return cls(
            attempt_id=attempt.id,
            score=score,
            total_points=attempt.total_points or 0,
            earned_points=attempt.earned_points or 0,
            time_spent_seconds=attempt.time_spent_seconds or 0,
            completed_at=attempt.completed_at,
            auto_submitted=attempt.auto_submitted,
            auto_submit_reason=attempt.auto_submit_reason,
            passed=(score >= config.pass_score_percent) if config is not None else None,
            already_completed=already_completed,
            show_results=config.show_results if config is not None else True,
        )


class StartStatus(str, enum.Enum):
    ACTIVE = "active"
    RESUME_PENDING = "resume_pending"
    COMPLETED = "completed"
    NOT_FOUND = "not_found"


@dataclass(frozen=True)
class StartOutcome:
    status: StartStatus
    attempt_id: Optional[str] = None
    time_remaining_seconds: Optional[int] = None
    answers: Dict[str, str] = field(default_factory=dict)
    exit_count: int = 0
    started_at: Optional[datetime] = None
    last_activity_at: Optional[datetime] = None
    result: Optional[AttemptResult] = None
    expired: bool = False


@dataclass(frozen=True)
class HeartbeatOutcome:
    time_remaining_seconds: int
    written: bool
    result: Optional[AttemptResult] = None


@dataclass(frozen=True)
class OfflineOutcome:
    offline: bool
    added: int
    total: int
    grace_remaining: int
    time_remaining_seconds: Optional[int] = None
    result: Optional[AttemptResult] = None


@dataclass(frozen=True)
class ExitOutcome:
    phase: str
    exit_count: int
    max_exits: int
    seconds_to_return: Optional[int] = None
    result: Optional[AttemptResult] = None


@dataclass
class SweepReport:
    total: int = 0
    submitted: int = 0
    failed: int = 0
    skipped: int = 0
    errors: List[dict] = field(default_factory=list)
