"""Quota-aware key/value persistence with bounded eviction.

Values are stored as JSON text. Before a write that would push the store over
its byte budget, the gateway runs cleanup steps in a fixed order and stops as
soon as the write fits:

1. delete ephemeral scratch keys (exam snapshots, temporary result caches)
2. truncate exam history and study sessions to their retention counts
3. strip embedded question payloads from retained history

If the write still does not fit it fails with ``StorageQuotaExceeded``. If
the persistent medium breaks, the gateway switches to an in-memory backend
and reports itself as non-persistent.
"""

import errno
import json
from collections.abc import Iterable
from pathlib import Path
from typing import Any

import structlog
from pydantic import BaseModel, Field

from quiz_progress.errors import StorageQuotaExceeded, StorageUnavailable
from quiz_progress.models.session import question_id_of
from quiz_progress.storage.backends import JsonFileBackend, MemoryBackend, StorageBackend

logger = structlog.get_logger()

DEFAULT_BUDGET_BYTES = 5 * 1024 * 1024
DEFAULT_SCRATCH_PREFIXES = (
    "tempMockResult",
    "tempMockQuestions",
    "mockExamProgress",
    "latestMockExam",
    "answeredQuestionsTracker",
)

# Key names, namespaced per identity as "<name>_<identity>"
PROGRESS_KEY = "userProgress"
EXAM_HISTORY_KEY = "mockExamHistory"
ANSWERED_TRACKER_KEY = "answeredQuestions"
SESSION_SNAPSHOT_KEY = "mockExamProgress"
LATEST_EXAM_KEY = "latestMockExam"
BACKUP_RING_KEY = "backup"
FLAG_KEY = "migrationFlag"


def user_key(name: str, identity: str) -> str:
    """Namespace a key by identity."""
    return f"{name}_{identity}"


def _matches(key: str, name: str) -> bool:
    return key == name or key.startswith(name + "_")


def _size(text: str) -> int:
    return len(text.encode("utf-8"))


class StorageInfo(BaseModel):
    used: int
    total: int
    percentage: int
    persistent: bool = True


class CleanupReport(BaseModel):
    deleted_keys: list[str] = Field(default_factory=list)
    truncated: dict[str, int] = Field(default_factory=dict)  # key -> records dropped
    stripped_sessions: int = 0
    freed_bytes: int = 0
    steps_run: list[str] = Field(default_factory=list)


class StorageGateway:
    """Quota-aware persistence shared by every identity on this device.

    Args:
        backend: Raw storage backend.
        budget_bytes: Ceiling on the summed size of all stored values.
        session_retention: Study sessions kept per progress document under pressure.
        exam_history_retention: Exam-history records kept per identity under pressure.
        scratch_prefixes: Key names that hold disposable data.
    """

    def __init__(
        self,
        backend: StorageBackend | None = None,
        budget_bytes: int = DEFAULT_BUDGET_BYTES,
        session_retention: int = 50,
        exam_history_retention: int = 20,
        scratch_prefixes: Iterable[str] = DEFAULT_SCRATCH_PREFIXES,
    ):
        self._backend: StorageBackend = backend if backend is not None else MemoryBackend()
        self.budget_bytes = budget_bytes
        self.session_retention = session_retention
        self.exam_history_retention = exam_history_retention
        self.scratch_prefixes = tuple(scratch_prefixes)

    @classmethod
    def open(cls, directory: Path, **kwargs: Any) -> "StorageGateway":
        """Open a file-backed gateway, falling back to memory if the directory is unusable."""
        try:
            backend: StorageBackend = JsonFileBackend(directory)
        except StorageUnavailable as exc:
            logger.warning("storage_unavailable_fallback", directory=str(directory), error=str(exc))
            backend = MemoryBackend()
        return cls(backend, **kwargs)

    @classmethod
    def from_settings(cls, settings) -> "StorageGateway":
        return cls.open(
            settings.resolved_storage_dir,
            budget_bytes=settings.storage_budget_bytes,
            session_retention=settings.session_retention,
            exam_history_retention=settings.exam_history_retention,
            scratch_prefixes=settings.scratch_prefixes,
        )

    @property
    def persistent(self) -> bool:
        return self._backend.persistent

    def _fall_back(self, exc: OSError) -> None:
        """Switch to a memory backend, carrying over whatever is still readable."""
        logger.error("storage_medium_failed", error=str(exc))
        carried: dict[str, str] = {}
        try:
            for key in self._backend.keys():
                text = self._backend.read(key)
                if text is not None:
                    carried[key] = text
        except OSError:
            logger.warning("storage_carry_over_failed")
        self._backend = MemoryBackend(carried)

    # ------------------------------------------------------------------
    # Basic operations

    def get(self, key: str, default: Any = None) -> Any:
        try:
            text = self._backend.read(key)
        except OSError as exc:
            self._fall_back(exc)
            text = self._backend.read(key)
        if text is None:
            return default
        try:
            return json.loads(text)
        except json.JSONDecodeError:
            logger.warning("storage_value_corrupt", key=key)
            return default

    def set(self, key: str, value: Any) -> None:
        """Write ``value`` as JSON, evicting old data first if needed.

        Raises:
            StorageQuotaExceeded: The value does not fit even after cleanup.
        """
        text = json.dumps(value, ensure_ascii=False)
        try:
            required = self._projected_usage(key, text)
        except OSError as exc:
            self._fall_back(exc)
            required = self._projected_usage(key, text)
        if required > self.budget_bytes:
            try:
                report = self._cleanup(protect=key, needed=text)
            except OSError as exc:
                self._fall_back(exc)
                report = self._cleanup(protect=key, needed=text)
            required = self._projected_usage(key, text)
            logger.info(
                "storage_cleanup_ran",
                key=key,
                freed_bytes=report.freed_bytes,
                steps=report.steps_run,
                fits=required <= self.budget_bytes,
            )
            if required > self.budget_bytes:
                logger.error(
                    "storage_quota_exceeded", key=key, required=required, budget=self.budget_bytes
                )
                raise StorageQuotaExceeded(key, required, self.budget_bytes)
        try:
            self._backend.write(key, text)
        except OSError as exc:
            if exc.errno in (errno.ENOSPC, errno.EDQUOT):
                raise StorageQuotaExceeded(key, required, self.budget_bytes) from exc
            self._fall_back(exc)
            self._backend.write(key, text)

    def remove(self, key: str) -> None:
        try:
            self._backend.delete(key)
        except OSError as exc:
            self._fall_back(exc)
            self._backend.delete(key)

    def keys(self, name: str | None = None) -> list[str]:
        """All keys, or those belonging to one key name across identities."""
        try:
            keys = self._backend.keys()
        except OSError as exc:
            self._fall_back(exc)
            keys = self._backend.keys()
        if name is None:
            return keys
        return [k for k in keys if _matches(k, name)]

    def used_bytes(self) -> int:
        return sum(self._backend.size(key) for key in self._backend.keys())

    def get_storage_info(self) -> StorageInfo:
        try:
            used = self.used_bytes()
        except OSError as exc:
            self._fall_back(exc)
            used = self.used_bytes()
        total = self.budget_bytes
        percentage = round(used / total * 100) if total else 0
        return StorageInfo(used=used, total=total, percentage=percentage, persistent=self.persistent)

    def _projected_usage(self, key: str, text: str) -> int:
        return self.used_bytes() - self._backend.size(key) + _size(text)

    # ------------------------------------------------------------------
    # Eviction

    def cleanup(self) -> CleanupReport:
        """Run every cleanup step regardless of current usage."""
        report = self._cleanup(protect=None, needed=None)
        logger.info(
            "storage_cleanup_ran",
            deleted=len(report.deleted_keys),
            stripped=report.stripped_sessions,
            freed_bytes=report.freed_bytes,
        )
        return report

    def _cleanup(self, protect: str | None, needed: str | None) -> CleanupReport:
        report = CleanupReport()
        before = self.used_bytes()
        steps = (
            ("delete_scratch", self._delete_scratch),
            ("truncate_history", self._truncate_history),
            ("strip_embedded_questions", self._strip_embedded_questions),
        )
        for name, step in steps:
            step(report, protect)
            report.steps_run.append(name)
            if needed is not None and self._projected_usage(protect, needed) <= self.budget_bytes:
                break
        report.freed_bytes = max(before - self.used_bytes(), 0)
        return report

    def _delete_scratch(self, report: CleanupReport, protect: str | None) -> None:
        for key in self._backend.keys():
            if key == protect:
                continue
            if any(_matches(key, prefix) for prefix in self.scratch_prefixes):
                self._backend.delete(key)
                report.deleted_keys.append(key)

    def _truncate_history(self, report: CleanupReport, protect: str | None) -> None:
        for key in self.keys(EXAM_HISTORY_KEY):
            if key == protect:
                continue
            history = self.get(key)
            if isinstance(history, list) and len(history) > self.exam_history_retention:
                dropped = len(history) - self.exam_history_retention
                self._rewrite(key, history[-self.exam_history_retention:])
                report.truncated[key] = dropped
        for key in self.keys(PROGRESS_KEY):
            if key == protect:
                continue
            doc = self.get(key)
            sessions = doc.get("studySessions") if isinstance(doc, dict) else None
            if isinstance(sessions, list) and len(sessions) > self.session_retention:
                dropped = len(sessions) - self.session_retention
                doc["studySessions"] = sessions[-self.session_retention:]
                self._rewrite(key, doc)
                report.truncated[key] = dropped

    def _strip_embedded_questions(self, report: CleanupReport, protect: str | None) -> None:
        for key in self.keys(PROGRESS_KEY):
            if key == protect:
                continue
            doc = self.get(key)
            if not isinstance(doc, dict):
                continue
            stripped = sum(_strip_session(s) for s in doc.get("studySessions") or [])
            if stripped:
                self._rewrite(key, doc)
                report.stripped_sessions += stripped
        for key in self.keys(EXAM_HISTORY_KEY):
            if key == protect:
                continue
            history = self.get(key)
            if not isinstance(history, list):
                continue
            stripped = sum(
                _strip_session(record.get("session"))
                for record in history
                if isinstance(record, dict)
            )
            if stripped:
                self._rewrite(key, history)
                report.stripped_sessions += stripped

    def _rewrite(self, key: str, value: Any) -> None:
        # Cleanup only ever shrinks values, so no budget check here
        self._backend.write(key, json.dumps(value, ensure_ascii=False))


def _strip_session(session: Any) -> int:
    """Replace embedded question objects with their ids in place. Returns 1 if changed."""
    if not isinstance(session, dict) or "questions" not in session:
        return 0
    questions = session.pop("questions") or []
    if questions and not session.get("questionIds"):
        session["questionIds"] = [question_id_of(q) for q in questions]
    return 1
