"""Invariant scanner and corrector for the progress aggregate.

``repair`` is pure: it works on a deep copy and never touches storage. The
caller decides whether to persist the corrected aggregate and what to do
with the violation list.
"""

from collections.abc import Callable
from datetime import datetime
from enum import StrEnum
from typing import Any, TypeVar

from pydantic import BaseModel, Field

from quiz_progress.models.catalog import CategoryCatalog
from quiz_progress.models.progress import (
    CategoryProgress,
    MockCategoryProgress,
    OvercomePolicy,
    UserProgress,
)
from quiz_progress.models.session import question_id_of
from quiz_progress.progress.tracker import TrackerData

T = TypeVar("T", bound=BaseModel)


class TrackerTrust(StrEnum):
    """Which side wins when the answered-id tracker and the counters disagree."""

    COUNTERS = "counters"
    TRACKER = "tracker"
    USE_HIGHER = "use_higher"


class ViolationKind(StrEnum):
    MISSING_CATEGORY = "missing_category"
    TOTAL_MISMATCH = "total_mismatch"
    NEGATIVE_COUNTER = "negative_counter"
    ANSWERED_EXCEEDS_TOTAL = "answered_exceeds_total"
    CORRECT_EXCEEDS_ANSWERED = "correct_exceeds_answered"
    TRACKER_DUPLICATES = "tracker_duplicates"
    TRACKER_DIVERGENCE = "tracker_divergence"
    DUPLICATE_ENTRY = "duplicate_entry"
    OVERCOME_STILL_INCORRECT = "overcome_still_incorrect"
    EMBEDDED_QUESTIONS = "embedded_questions"
    TOTALS_DIVERGED = "totals_diverged"
    STREAK_INCONSISTENT = "streak_inconsistent"


class Violation(BaseModel):
    kind: ViolationKind
    message: str
    subject: str | None = None
    before: Any = None
    after: Any = None


class RepairReport(BaseModel):
    progress: UserProgress
    tracker: TrackerData | None = None
    violations: list[Violation] = Field(default_factory=list)

    @property
    def changed(self) -> bool:
        return bool(self.violations)

    def messages(self) -> list[str]:
        return [v.message for v in self.violations]


def repair(
    progress: UserProgress,
    *,
    catalog: CategoryCatalog | None = None,
    tracker: TrackerData | None = None,
    trust: TrackerTrust = TrackerTrust.USE_HIGHER,
    overcome_policy: OvercomePolicy = OvercomePolicy.REMOVE,
) -> RepairReport:
    """Detect and correct invariant violations.

    Args:
        progress: Aggregate to check. Not modified.
        catalog: When given, categories are seeded and totals aligned to it.
        tracker: Answered-id tracker to reconcile with the counters.
        trust: Reconciliation strategy for tracker divergence.
        overcome_policy: Under ``REMOVE``, an id may not be both overcome and incorrect.

    Returns:
        Report holding the corrected copies and the list of violations found.
    """
    fixed = progress.model_copy(deep=True)
    fixed_tracker = {k: list(v) for k, v in tracker.items()} if tracker is not None else None
    violations: list[Violation] = []

    if catalog is not None:
        _align_catalog(fixed, catalog, violations)
    _fix_negative_counters(fixed, violations)
    _clamp_answered(fixed, violations)
    if fixed_tracker is not None:
        _reconcile_tracker(fixed, fixed_tracker, trust, violations)
    _clamp_correct(fixed, violations)

    fixed.incorrect_questions = _dedupe(
        fixed.incorrect_questions,
        key=lambda q: q.question_id,
        stamp=lambda q: q.last_incorrect_date,
        label="incorrect question",
        violations=violations,
    )
    fixed.overcome_questions = _dedupe(
        fixed.overcome_questions,
        key=lambda q: q.question_id,
        stamp=lambda q: q.overcome_date,
        label="overcome question",
        violations=violations,
    )
    fixed.study_sessions = _dedupe(
        fixed.study_sessions,
        key=lambda s: s.id,
        stamp=lambda s: s.last_activity,
        label="study session",
        violations=violations,
    )
    if overcome_policy is OvercomePolicy.REMOVE:
        _resolve_overcome_overlap(fixed, violations)
    _strip_embedded_questions(fixed, violations)
    _recompute_totals(fixed, violations)
    _fix_streak(fixed, violations)

    return RepairReport(progress=fixed, tracker=fixed_tracker, violations=violations)


def _align_catalog(
    progress: UserProgress, catalog: CategoryCatalog, violations: list[Violation]
) -> None:
    for info in catalog:
        entry = progress.category_progress.get(info.id)
        if entry is None:
            progress.category_progress[info.id] = CategoryProgress(total_questions=info.total_questions)
            violations.append(Violation(
                kind=ViolationKind.MISSING_CATEGORY,
                message=f"{info.id}: category missing, seeded",
                subject=info.id,
            ))
        elif entry.total_questions != info.total_questions:
            violations.append(Violation(
                kind=ViolationKind.TOTAL_MISMATCH,
                message=f"{info.id}: total {entry.total_questions} != catalog {info.total_questions}",
                subject=info.id,
                before=entry.total_questions,
                after=info.total_questions,
            ))
            entry.total_questions = info.total_questions

    for info in catalog.mock_categories:
        rollup = progress.mock_category_progress.get(info.id)
        if rollup is None:
            progress.mock_category_progress[info.id] = MockCategoryProgress(
                total_questions=info.total_questions
            )
            violations.append(Violation(
                kind=ViolationKind.MISSING_CATEGORY,
                message=f"{info.id}: mock rollup missing, seeded",
                subject=info.id,
            ))
        elif rollup.total_questions != info.total_questions:
            violations.append(Violation(
                kind=ViolationKind.TOTAL_MISMATCH,
                message=f"{info.id}: mock total {rollup.total_questions} != catalog {info.total_questions}",
                subject=info.id,
                before=rollup.total_questions,
                after=info.total_questions,
            ))
            rollup.total_questions = info.total_questions


def _fix_negative_counters(progress: UserProgress, violations: list[Violation]) -> None:
    for field in ("total_questions_answered", "correct_answers", "current_streak", "best_streak"):
        value = getattr(progress, field)
        if value < 0:
            setattr(progress, field, 0)
            violations.append(Violation(
                kind=ViolationKind.NEGATIVE_COUNTER,
                message=f"{field} was negative ({value})",
                subject=field,
                before=value,
                after=0,
            ))
    for category, entry in progress.category_progress.items():
        for field in ("answered_questions", "correct_answers"):
            value = getattr(entry, field)
            if value < 0:
                setattr(entry, field, 0)
                violations.append(Violation(
                    kind=ViolationKind.NEGATIVE_COUNTER,
                    message=f"{category}: {field} was negative ({value})",
                    subject=category,
                    before=value,
                    after=0,
                ))


def _clamp_answered(progress: UserProgress, violations: list[Violation]) -> None:
    for category, entry in progress.category_progress.items():
        if entry.answered_questions > entry.total_questions:
            violations.append(Violation(
                kind=ViolationKind.ANSWERED_EXCEEDS_TOTAL,
                message=(
                    f"{category}: answered {entry.answered_questions} exceeds total "
                    f"{entry.total_questions}"
                ),
                subject=category,
                before=entry.answered_questions,
                after=entry.total_questions,
            ))
            entry.answered_questions = entry.total_questions


def _clamp_correct(progress: UserProgress, violations: list[Violation]) -> None:
    for category, entry in progress.category_progress.items():
        if entry.correct_answers > entry.answered_questions:
            violations.append(Violation(
                kind=ViolationKind.CORRECT_EXCEEDS_ANSWERED,
                message=(
                    f"{category}: correct {entry.correct_answers} exceeds answered "
                    f"{entry.answered_questions}"
                ),
                subject=category,
                before=entry.correct_answers,
                after=entry.answered_questions,
            ))
            entry.correct_answers = entry.answered_questions


def _reconcile_tracker(
    progress: UserProgress,
    tracker: TrackerData,
    trust: TrackerTrust,
    violations: list[Violation],
) -> None:
    for category, entry in progress.category_progress.items():
        ids = tracker.get(category, [])
        unique = list(dict.fromkeys(ids))
        if len(unique) > entry.total_questions:
            unique = unique[: entry.total_questions]
        if unique != ids:
            violations.append(Violation(
                kind=ViolationKind.TRACKER_DUPLICATES,
                message=f"{category}: tracker held {len(ids)} ids, {len(unique)} valid",
                subject=category,
                before=len(ids),
                after=len(unique),
            ))
            tracker[category] = unique
        tracked = len(unique)
        counted = entry.answered_questions
        if tracked == counted:
            continue

        if trust is TrackerTrust.COUNTERS:
            target = counted
        elif trust is TrackerTrust.TRACKER:
            target = tracked
        else:
            target = max(tracked, counted)
        violations.append(Violation(
            kind=ViolationKind.TRACKER_DIVERGENCE,
            message=f"{category}: tracker {tracked} vs counter {counted}, using {target} ({trust})",
            subject=category,
            before={"tracker": tracked, "counter": counted},
            after=target,
        ))
        entry.answered_questions = target
        if target < tracked:
            tracker[category] = unique[:target]
        elif target > tracked:
            tracker[category] = _pad_tracker(category, unique, target)


def _pad_tracker(category: str, ids: list[str], target: int) -> list[str]:
    """Fill the tracker with deterministic placeholder ids up to ``target``."""
    padded = list(ids)
    seen = set(padded)
    index = 0
    while len(padded) < target:
        placeholder = f"placeholder:{category}:{index}"
        if placeholder not in seen:
            padded.append(placeholder)
            seen.add(placeholder)
        index += 1
    return padded


def _dedupe(
    items: list[T],
    key: Callable[[T], str],
    stamp: Callable[[T], datetime | None],
    label: str,
    violations: list[Violation],
) -> list[T]:
    """Keep one entry per key, the one with the later timestamp, in first-seen order."""
    winners: dict[str, T] = {}
    counts: dict[str, int] = {}
    for item in items:
        k = key(item)
        counts[k] = counts.get(k, 0) + 1
        current = winners.get(k)
        if current is None or _later(stamp(item), stamp(current)):
            winners[k] = item
    for k, count in counts.items():
        if count > 1:
            violations.append(Violation(
                kind=ViolationKind.DUPLICATE_ENTRY,
                message=f"{label} {k} appeared {count} times",
                subject=k,
                before=count,
                after=1,
            ))
    return list(winners.values())


def _later(candidate: datetime | None, current: datetime | None) -> bool:
    if candidate is None:
        return False
    if current is None:
        return True
    return candidate > current


def _resolve_overcome_overlap(progress: UserProgress, violations: list[Violation]) -> None:
    overcome = {q.question_id: q for q in progress.overcome_questions}
    regressed: set[str] = set()
    kept = []
    for entry in progress.incorrect_questions:
        won = overcome.get(entry.question_id)
        if won is None:
            kept.append(entry)
            continue
        if entry.last_incorrect_date > won.overcome_date:
            # Missed again after being overcome: the mistake stands
            regressed.add(entry.question_id)
            kept.append(entry)
        violations.append(Violation(
            kind=ViolationKind.OVERCOME_STILL_INCORRECT,
            message=f"question {entry.question_id} is both overcome and incorrect",
            subject=entry.question_id,
            after="incorrect" if entry.question_id in regressed else "overcome",
        ))
    progress.incorrect_questions = kept
    if regressed:
        progress.overcome_questions = [
            q for q in progress.overcome_questions if q.question_id not in regressed
        ]


def _strip_embedded_questions(progress: UserProgress, violations: list[Violation]) -> None:
    for index, session in enumerate(progress.study_sessions):
        if not session.questions:
            continue
        progress.study_sessions[index] = session.to_persisted()
        violations.append(Violation(
            kind=ViolationKind.EMBEDDED_QUESTIONS,
            message=f"session {session.id} carried {len(session.questions)} embedded questions",
            subject=session.id,
            after=[question_id_of(q) for q in session.questions],
        ))


def _recompute_totals(progress: UserProgress, violations: list[Violation]) -> None:
    answered = sum(e.answered_questions for e in progress.category_progress.values())
    correct = sum(e.correct_answers for e in progress.category_progress.values())
    if progress.total_questions_answered != answered:
        violations.append(Violation(
            kind=ViolationKind.TOTALS_DIVERGED,
            message=f"totalQuestionsAnswered {progress.total_questions_answered} != sum {answered}",
            subject="total_questions_answered",
            before=progress.total_questions_answered,
            after=answered,
        ))
        progress.total_questions_answered = answered
    if progress.correct_answers != correct:
        violations.append(Violation(
            kind=ViolationKind.TOTALS_DIVERGED,
            message=f"correctAnswers {progress.correct_answers} != sum {correct}",
            subject="correct_answers",
            before=progress.correct_answers,
            after=correct,
        ))
        progress.correct_answers = correct


def _fix_streak(progress: UserProgress, violations: list[Violation]) -> None:
    if progress.best_streak < progress.current_streak:
        violations.append(Violation(
            kind=ViolationKind.STREAK_INCONSISTENT,
            message=f"bestStreak {progress.best_streak} below currentStreak {progress.current_streak}",
            subject="best_streak",
            before=progress.best_streak,
            after=progress.current_streak,
        ))
        progress.best_streak = progress.current_streak
