"""Merge rules for reconciling two copies of the progress aggregate.

``use_higher`` is commutative and idempotent: merging A with B gives the same
aggregate as merging B with A, and merging the result with either input again
changes nothing. Ties between entries with equal timestamps are broken by
comparing their serialized form so that argument order never matters.
"""

import json
from collections.abc import Callable
from datetime import datetime
from enum import StrEnum
from typing import TypeVar

from pydantic import BaseModel

from quiz_progress.models.progress import (
    CategoryProgress,
    MockCategoryProgress,
    UserProgress,
)

T = TypeVar("T", bound=BaseModel)

_EPOCH_KEY = ""


class MergeStrategy(StrEnum):
    TRUST_REMOTE = "trust_remote"
    TRUST_LOCAL = "trust_local"
    USE_HIGHER = "use_higher"


def _fingerprint(model: BaseModel) -> str:
    return json.dumps(model.model_dump(mode="json"), sort_keys=True)


def _stamp_key(value: datetime | None) -> str:
    return value.isoformat() if value is not None else _EPOCH_KEY


def _later(a: T, b: T, stamp: Callable[[T], datetime | None]) -> T:
    """The entry with the later timestamp; ties go to the larger serialized form."""
    key_a = (_stamp_key(stamp(a)), _fingerprint(a))
    key_b = (_stamp_key(stamp(b)), _fingerprint(b))
    return a if key_a >= key_b else b


def _max_time(a: datetime | None, b: datetime | None) -> datetime | None:
    if a is None:
        return b
    if b is None:
        return a
    return max(a, b)


def union_by_key(
    local: list[T],
    remote: list[T],
    key: Callable[[T], str],
    stamp: Callable[[T], datetime | None],
) -> list[T]:
    """Union two keyed lists, keeping the later entry per key, ordered by time then key."""
    merged: dict[str, T] = {}
    for item in [*local, *remote]:
        k = key(item)
        current = merged.get(k)
        merged[k] = item if current is None else _later(current, item, stamp)
    return sorted(
        (item.model_copy(deep=True) for item in merged.values()),
        key=lambda item: (_stamp_key(stamp(item)), key(item)),
    )


def _merge_category(a: CategoryProgress, b: CategoryProgress) -> CategoryProgress:
    return CategoryProgress(
        total_questions=max(a.total_questions, b.total_questions),
        answered_questions=max(a.answered_questions, b.answered_questions),
        correct_answers=max(a.correct_answers, b.correct_answers),
        last_study_date=_max_time(a.last_study_date, b.last_study_date),
    )


def _merge_maps(
    local: dict[str, T],
    remote: dict[str, T],
    combine: Callable[[T, T], T],
) -> dict[str, T]:
    merged: dict[str, T] = {}
    for key in sorted(set(local) | set(remote)):
        if key in local and key in remote:
            merged[key] = combine(local[key], remote[key])
        else:
            merged[key] = (local.get(key) or remote[key]).model_copy(deep=True)
    return merged


def _merge_rollup(a: MockCategoryProgress, b: MockCategoryProgress) -> MockCategoryProgress:
    return _later(a, b, lambda r: r.last_attempt_date).model_copy(deep=True)


def merge_progress(
    local: UserProgress,
    remote: UserProgress | None,
    strategy: MergeStrategy = MergeStrategy.USE_HIGHER,
    session_retention: int | None = None,
) -> UserProgress:
    """Reconcile the local aggregate with the remote copy.

    Args:
        local: Aggregate held on this device.
        remote: Remote copy, or None when the remote has no document yet.
        strategy: Which side wins, or ``use_higher`` for a field-wise merge.
        session_retention: When given, keep only the latest sessions.

    Returns:
        A new aggregate. Neither input is modified.
    """
    if remote is None or strategy is MergeStrategy.TRUST_LOCAL:
        return local.model_copy(deep=True)
    if strategy is MergeStrategy.TRUST_REMOTE:
        return remote.model_copy(deep=True)

    sessions = union_by_key(
        local.study_sessions,
        remote.study_sessions,
        key=lambda s: s.id,
        stamp=lambda s: s.last_activity,
    )
    if session_retention is not None and len(sessions) > session_retention:
        sessions = sessions[-session_retention:]

    # Preferences follow the more recently updated side
    preferences = max(
        (local, remote),
        key=lambda p: (_stamp_key(p.updated_at), _fingerprint(p.preferences)),
    ).preferences

    return UserProgress(
        schema_version=max(local.schema_version, remote.schema_version),
        total_questions_answered=max(
            local.total_questions_answered, remote.total_questions_answered
        ),
        correct_answers=max(local.correct_answers, remote.correct_answers),
        category_progress=_merge_maps(
            local.category_progress, remote.category_progress, _merge_category
        ),
        mock_category_progress=_merge_maps(
            local.mock_category_progress, remote.mock_category_progress, _merge_rollup
        ),
        study_sessions=sessions,
        incorrect_questions=union_by_key(
            local.incorrect_questions,
            remote.incorrect_questions,
            key=lambda q: q.question_id,
            stamp=lambda q: q.last_incorrect_date,
        ),
        overcome_questions=union_by_key(
            local.overcome_questions,
            remote.overcome_questions,
            key=lambda q: q.question_id,
            stamp=lambda q: q.overcome_date,
        ),
        current_streak=max(local.current_streak, remote.current_streak),
        best_streak=max(local.best_streak, remote.best_streak),
        last_study_date=_max_time(local.last_study_date, remote.last_study_date),
        preferences=preferences.model_copy(),
        updated_at=_max_time(local.updated_at, remote.updated_at),
    )
