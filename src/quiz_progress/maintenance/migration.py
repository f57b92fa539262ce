"""Schema migrations for persisted progress documents.

Documents are migrated as raw JSON dicts, before model validation, so that
legacy fields survive long enough to be folded into the current shape.

Version history:

- 0: legacy shape. Timed-exam mistakes live in separate
  ``mockIncorrectQuestions`` / ``mockOvercomeQuestions`` collections and
  unified mistake entries may lack a ``source`` tag.
- 1: unified collections, still without a version stamp.
- 2: stamped with ``schemaVersion``; timed-exam rollups are kept in step with
  the exam history.

Old documents carry no version stamp, so the version is inferred by
``detect_schema_version``.
"""

import copy
from collections.abc import Callable
from datetime import datetime
from typing import Any

import structlog
from pydantic import Field, TypeAdapter, ValidationError

from quiz_progress.errors import MigrationIncomplete, OperationResult
from quiz_progress.models.base import Timestamp, utcnow
from quiz_progress.models.catalog import CategoryCatalog
from quiz_progress.models.progress import CURRENT_SCHEMA_VERSION, MistakeSource
from quiz_progress.storage.gateway import FLAG_KEY, StorageGateway, user_key

logger = structlog.get_logger()

LEGACY_MOCK_KEYS = ("mockIncorrectQuestions", "mockOvercomeQuestions")
DEFAULT_MOCK_TOTAL = 75

_timestamp = TypeAdapter(Timestamp)

Document = dict[str, Any]


def _parse_time(value: Any) -> datetime | None:
    if not value:
        return None
    try:
        return _timestamp.validate_python(value)
    except ValidationError:
        return None


def detect_schema_version(document: Document) -> int:
    """Classify a document by version.

    Legacy markers win over any stamp: a document that still carries the
    split mock collections, or unified mistakes without a ``source`` tag, is
    version 0 even if stamped, since the legacy data must still be folded in.
    Otherwise an explicit ``schemaVersion`` is trusted, and an unstamped
    document is version 1.
    """
    if any(document.get(key) is not None for key in LEGACY_MOCK_KEYS):
        return 0
    for entry in document.get("incorrectQuestions") or []:
        if isinstance(entry, dict) and not entry.get("source"):
            return 0
    version = document.get("schemaVersion")
    if isinstance(version, int) and not isinstance(version, bool):
        return version
    return 1


class MigrationContext:
    """Inputs a migration step may read besides the document itself.

    Args:
        exam_history: Raw exam-history records for the same identity.
        catalog: Category catalog, for mock category totals.
        pass_threshold: Minimum score counted as a pass.
    """

    def __init__(
        self,
        exam_history: list[dict[str, Any]] | None = None,
        catalog: CategoryCatalog | None = None,
        pass_threshold: float = 70.0,
    ):
        self.exam_history = exam_history or []
        self.catalog = catalog
        self.pass_threshold = pass_threshold


StepFunction = Callable[[Document, MigrationContext], list[str]]


def merge_mock_collections(document: Document, context: MigrationContext) -> list[str]:
    """Fold the legacy mock collections into the unified ones."""
    changes: list[str] = []
    mock_incorrect = document.pop("mockIncorrectQuestions", None)
    mock_overcome = document.pop("mockOvercomeQuestions", None)

    if mock_incorrect is not None:
        unified = document.setdefault("incorrectQuestions", [])
        by_id = {q.get("questionId"): q for q in unified if isinstance(q, dict)}
        merged = 0
        for legacy in mock_incorrect:
            if not isinstance(legacy, dict) or not legacy.get("questionId"):
                continue
            existing = by_id.get(legacy["questionId"])
            if existing is None:
                entry = dict(legacy)
                entry["source"] = MistakeSource.MOCK.value
                unified.append(entry)
                by_id[entry["questionId"]] = entry
                merged += 1
                continue
            legacy_date = _parse_time(legacy.get("lastIncorrectDate"))
            existing_date = _parse_time(existing.get("lastIncorrectDate"))
            if legacy_date and (existing_date is None or legacy_date > existing_date):
                existing["incorrectCount"] = max(
                    existing.get("incorrectCount", 0), legacy.get("incorrectCount", 0)
                )
                existing["lastIncorrectDate"] = legacy["lastIncorrectDate"]
                existing["source"] = MistakeSource.MOCK.value
                if legacy.get("mockNumber") is not None:
                    existing["mockNumber"] = legacy["mockNumber"]
        changes.append(f"merged {merged} mock mistake(s) into incorrectQuestions")

    if mock_overcome is not None:
        unified = document.setdefault("overcomeQuestions", [])
        known = {q.get("questionId") for q in unified if isinstance(q, dict)}
        merged = 0
        for legacy in mock_overcome:
            if not isinstance(legacy, dict) or not legacy.get("questionId"):
                continue
            if legacy["questionId"] not in known:
                unified.append(dict(legacy))
                known.add(legacy["questionId"])
                merged += 1
        changes.append(f"merged {merged} mock overcome question(s) into overcomeQuestions")

    return changes


def backfill_source(document: Document, context: MigrationContext) -> list[str]:
    """Tag untagged mistakes as coming from category practice."""
    tagged = 0
    for entry in document.get("incorrectQuestions") or []:
        if isinstance(entry, dict) and not entry.get("source"):
            entry["source"] = MistakeSource.CATEGORY.value
            tagged += 1
    if tagged:
        return [f"tagged {tagged} mistake(s) with source=category"]
    return []


def rebuild_mock_rollups(document: Document, context: MigrationContext) -> list[str]:
    """Rebuild timed-exam rollups that are missing or behind the exam history."""
    by_category: dict[str, list[tuple[datetime, dict[str, Any]]]] = {}
    for record in context.exam_history:
        if not isinstance(record, dict) or not record.get("category"):
            continue
        if not isinstance(record.get("score"), int | float):
            continue
        completed = _parse_time(record.get("completedAt"))
        if completed is None:
            continue
        by_category.setdefault(record["category"], []).append((completed, record))

    rollups = document.setdefault("mockCategoryProgress", {})
    changes: list[str] = []
    for category, attempts in by_category.items():
        attempts.sort(key=lambda item: item[0])
        latest_at, latest = attempts[-1]
        current = rollups.get(category)
        if isinstance(current, dict):
            recorded = _parse_time(current.get("lastAttemptDate"))
            if recorded is not None and recorded >= latest_at:
                continue
        scores = [float(record["score"]) for _, record in attempts]
        total = None
        if context.catalog is not None:
            total = context.catalog.total_for(category)
        if total is None:
            total = latest.get("questionsCount") or DEFAULT_MOCK_TOTAL
        rollups[category] = {
            "totalQuestions": total,
            "attemptsCount": len(scores),
            "bestScore": max(scores),
            "latestScore": float(latest["score"]),
            "averageScore": round(sum(scores) / len(scores), 1),
            "passedCount": sum(1 for s in scores if s >= context.pass_threshold),
            "lastAttemptDate": latest_at.isoformat(),
        }
        changes.append(f"rebuilt {category} rollup from {len(scores)} exam record(s)")
    return changes


class MigrationStep:
    """One named step of the migration table."""

    def __init__(self, name: str, target_version: int, apply: StepFunction):
        self.name = name
        self.target_version = target_version
        self.apply = apply


MIGRATION_STEPS: tuple[MigrationStep, ...] = (
    MigrationStep("merge_mock_collections", 1, merge_mock_collections),
    MigrationStep("backfill_source", 1, backfill_source),
    MigrationStep("rebuild_mock_rollups", 2, rebuild_mock_rollups),
)

# Steps that track data outside the document and so run on every load
ALWAYS_RUN = frozenset({"rebuild_mock_rollups"})


class MigrationResult(OperationResult):
    """Outcome of one pipeline run, with the migrated document."""

    document: Document = Field(default_factory=dict)
    from_version: int = 0
    to_version: int = CURRENT_SCHEMA_VERSION

    @property
    def changed(self) -> bool:
        return bool(self.changes)


class MigrationEngine:
    """Applies the version-keyed migration table to raw progress documents.

    Args:
        catalog: Category catalog used when rebuilding rollups.
        pass_threshold: Minimum score counted as a pass.
        steps: Migration table, in application order.
    """

    def __init__(
        self,
        catalog: CategoryCatalog | None = None,
        pass_threshold: float = 70.0,
        steps: tuple[MigrationStep, ...] = MIGRATION_STEPS,
    ):
        self.catalog = catalog
        self.pass_threshold = pass_threshold
        self.steps = steps

    def migrate(
        self,
        document: Document,
        exam_history: list[dict[str, Any]] | None = None,
    ) -> MigrationResult:
        """Bring ``document`` to the current version. The input is not modified."""
        migrated = copy.deepcopy(document)
        version = detect_schema_version(migrated)
        if version > CURRENT_SCHEMA_VERSION:
            logger.warning(
                "migration_unknown_version",
                version=version,
                supported=CURRENT_SCHEMA_VERSION,
            )
            return MigrationResult(
                success=False,
                message=f"Document version {version} is newer than supported "
                f"version {CURRENT_SCHEMA_VERSION}",
                document=migrated,
                from_version=version,
                to_version=version,
            )

        context = MigrationContext(exam_history, self.catalog, self.pass_threshold)
        changes: list[str] = []
        for step in self.steps:
            if step.target_version <= version and step.name not in ALWAYS_RUN:
                continue
            step_changes = step.apply(migrated, context)
            if step_changes:
                logger.debug("migration_step_applied", step=step.name, changes=step_changes)
            changes.extend(step_changes)

        if migrated.get("schemaVersion") != CURRENT_SCHEMA_VERSION:
            migrated["schemaVersion"] = CURRENT_SCHEMA_VERSION
            changes.append(f"stamped schemaVersion {CURRENT_SCHEMA_VERSION}")

        leftover = [key for key in LEGACY_MOCK_KEYS if migrated.get(key) is not None]
        if leftover:
            logger.error("migration_incomplete", leftover=leftover)
            return MigrationResult(
                success=False,
                message=str(MigrationIncomplete(f"legacy fields remain: {', '.join(leftover)}")),
                changes=changes,
                document=migrated,
                from_version=version,
            )

        if not changes:
            return MigrationResult(
                success=True,
                message="Document is already current",
                document=migrated,
                from_version=version,
            )
        return MigrationResult(
            success=True,
            message=f"Migrated from version {version} to {CURRENT_SCHEMA_VERSION}",
            changes=changes,
            document=migrated,
            from_version=version,
        )


def run_once(
    gateway: StorageGateway,
    name: str,
    action: Callable[[], list[str]],
) -> OperationResult | None:
    """Run a dataset-wide migration unless its persisted flag is already set.

    Returns None when the migration had already run.
    """
    key = user_key(FLAG_KEY, name)
    if gateway.get(key):
        return None
    changes = action()
    gateway.set(key, {"completedAt": utcnow().isoformat(), "changes": changes})
    logger.info("one_time_migration_ran", name=name, changes=len(changes))
    return OperationResult(
        success=True,
        message=f"{name} completed",
        changes=changes,
    )
