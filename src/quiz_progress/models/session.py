"""Study session data models."""

from enum import StrEnum
from typing import Any

from pydantic import Field

from quiz_progress.models.base import CamelModel, OptionalTimestamp, Timestamp, utcnow


class StudyMode(StrEnum):
    """How a session draws its questions."""

    CATEGORY = "category"
    TIMED_EXAM_SHORT = "mock25"
    TIMED_EXAM_LONG = "mock75"
    REVIEW = "review"

    @property
    def is_timed_exam(self) -> bool:
        return self in (StudyMode.TIMED_EXAM_SHORT, StudyMode.TIMED_EXAM_LONG)


class Answer(CamelModel):
    """A single answered question."""

    question_id: str
    selected_answer: str = ""
    is_correct: bool
    answered_at: Timestamp = Field(default_factory=utcnow)


def question_id_of(question: Any) -> str:
    """Extract the identifier from an embedded question payload."""
    if isinstance(question, dict):
        for key in ("questionId", "question_id", "id"):
            if question.get(key) is not None:
                return str(question[key])
    return str(question)


class StudySession(CamelModel):
    """A study session.

    ``questions`` holds full question payloads while the session is being
    played and is never serialized; the persisted form carries only
    ``question_ids``.
    """

    id: str
    mode: StudyMode = StudyMode.CATEGORY
    category: str | None = None
    part: int | None = Field(default=None, alias="mockPart")
    started_at: Timestamp = Field(default_factory=utcnow)
    completed_at: OptionalTimestamp = None
    current_question_index: int = 0
    question_ids: list[str] = Field(default_factory=list)
    answers: list[Answer] = Field(default_factory=list)
    time_limit: int | None = None  # minutes, timed exams only
    show_japanese: bool = True
    questions: list[dict[str, Any]] = Field(default_factory=list, exclude=True)

    def add_answer(self, answer: Answer) -> Answer:
        """Append an answer and advance the question cursor."""
        self.answers.append(answer)
        self.current_question_index = len(self.answers)
        return answer

    def to_persisted(self) -> "StudySession":
        """Copy of this session reduced to its storable shape."""
        question_ids = list(self.question_ids)
        if self.questions:
            question_ids = [question_id_of(q) for q in self.questions]
        return self.model_copy(
            update={"questions": [], "question_ids": question_ids},
            deep=True,
        )

    @property
    def correct_count(self) -> int:
        return sum(1 for a in self.answers if a.is_correct)

    @property
    def score(self) -> float:
        """Percentage of correct answers, 0 when nothing was answered."""
        if not self.answers:
            return 0.0
        return round(self.correct_count / len(self.answers) * 100, 1)

    @property
    def last_activity(self):
        return self.completed_at or self.started_at


class ExamRecord(CamelModel):
    """One entry of the timed-exam history."""

    id: str
    session: StudySession
    score: float
    passed: bool
    completed_at: Timestamp
    questions_count: int = 0
    category: str | None = None
