"""The per-identity UserProgress aggregate."""

from enum import StrEnum
from typing import Any, Literal

from pydantic import Field

from quiz_progress.models.base import CamelModel, OptionalTimestamp, Timestamp, utcnow
from quiz_progress.models.catalog import CategoryCatalog
from quiz_progress.models.session import StudySession

CURRENT_SCHEMA_VERSION = 2


class MistakeSource(StrEnum):
    """Where a mistake was made."""

    CATEGORY = "category"
    MOCK = "mock"


class OvercomePolicy(StrEnum):
    """What happens to a mistake record once the question is answered correctly.

    Both behaviours exist in stored data: ``REMOVE`` drops the entry from
    ``incorrect_questions`` once it is overcome, ``RETAIN`` keeps it (with its
    review count bumped) alongside the overcome record.
    """

    REMOVE = "remove"
    RETAIN = "retain"


class CategoryProgress(CamelModel):
    total_questions: int = 0
    answered_questions: int = 0
    correct_answers: int = 0
    last_study_date: OptionalTimestamp = None


class MockCategoryProgress(CamelModel):
    """Rollup over timed-exam attempts for one mock category."""

    total_questions: int = 0
    attempts_count: int = 0
    best_score: float = 0.0
    latest_score: float = 0.0
    average_score: float = 0.0
    passed_count: int = 0
    last_attempt_date: OptionalTimestamp = None


class IncorrectQuestion(CamelModel):
    question_id: str
    category: str | None = None
    incorrect_count: int = 1
    last_incorrect_date: Timestamp = Field(default_factory=utcnow)
    review_count: int = 0
    source: MistakeSource | None = None  # None only on untagged legacy entries
    mock_number: int | None = None


class MockIncorrectQuestion(CamelModel):
    """Legacy mock-only mistake record, merged away by migration."""

    question_id: str
    category: str | None = None
    incorrect_count: int = 1
    last_incorrect_date: Timestamp = Field(default_factory=utcnow)
    review_count: int = 0
    mock_number: int | None = None


class OvercomeQuestion(CamelModel):
    question_id: str
    category: str | None = None
    overcome_date: Timestamp = Field(default_factory=utcnow)
    previous_incorrect_count: int = 0
    review_count: int = 0
    mock_number: int | None = None


class UserPreferences(CamelModel):
    show_japanese_in_study: bool = True
    show_japanese_in_mock: bool = False
    auto_review_incorrect: bool = True
    notification_enabled: bool = False
    category_study_mode: Literal["random", "sequential"] | None = None


class UserProgress(CamelModel):
    """The aggregate: counters, per-category progress and mistake history."""

    schema_version: int = CURRENT_SCHEMA_VERSION
    total_questions_answered: int = 0
    correct_answers: int = 0
    category_progress: dict[str, CategoryProgress] = Field(default_factory=dict)
    mock_category_progress: dict[str, MockCategoryProgress] = Field(default_factory=dict)
    study_sessions: list[StudySession] = Field(default_factory=list)
    incorrect_questions: list[IncorrectQuestion] = Field(default_factory=list)
    overcome_questions: list[OvercomeQuestion] = Field(default_factory=list)
    current_streak: int = 0
    best_streak: int = 0
    last_study_date: OptionalTimestamp = None
    preferences: UserPreferences = Field(default_factory=UserPreferences)
    updated_at: OptionalTimestamp = None

    # Legacy split collections, present only on partially migrated documents
    mock_incorrect_questions: list[MockIncorrectQuestion] | None = None
    mock_overcome_questions: list[OvercomeQuestion] | None = None

    @classmethod
    def seeded(
        cls,
        catalog: CategoryCatalog,
        preferences: UserPreferences | None = None,
    ) -> "UserProgress":
        """Zero-state aggregate with one entry per catalog category."""
        return cls(
            category_progress={
                info.id: CategoryProgress(total_questions=info.total_questions)
                for info in catalog
            },
            mock_category_progress={
                info.id: MockCategoryProgress(total_questions=info.total_questions)
                for info in catalog.mock_categories
            },
            preferences=preferences.model_copy() if preferences else UserPreferences(),
        )

    def find_incorrect(self, question_id: str) -> IncorrectQuestion | None:
        for entry in self.incorrect_questions:
            if entry.question_id == question_id:
                return entry
        return None

    def find_overcome(self, question_id: str) -> OvercomeQuestion | None:
        for entry in self.overcome_questions:
            if entry.question_id == question_id:
                return entry
        return None

    @property
    def accuracy(self) -> float:
        if self.total_questions_answered == 0:
            return 0.0
        return round(self.correct_answers / self.total_questions_answered * 100, 1)


def display_correct_count(progress: UserProgress, category: str | None = None) -> int:
    """Correct answers plus overcome questions, overall or for one category.

    Overcoming a question in review does not bump the correct counter, so the
    two can be added without double counting.
    """
    if category is None:
        return progress.correct_answers + len(progress.overcome_questions)
    entry = progress.category_progress.get(category)
    base = entry.correct_answers if entry else 0
    return base + sum(1 for q in progress.overcome_questions if q.category == category)


class ProgressBackup(CamelModel):
    """Stored progress and tracker documents copied before an overwrite.

    The documents are kept exactly as they were stored, so a backup of a
    broken document can still be restored and repaired.
    """

    created_at: Timestamp = Field(default_factory=utcnow)
    reason: str = ""
    user_progress: dict[str, Any] | None = None
    answered_questions: dict[str, Any] | None = None
