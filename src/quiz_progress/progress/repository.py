"""Typed operations over the per-identity UserProgress aggregate."""

import uuid
from collections.abc import Callable, Sequence
from datetime import datetime
from typing import Any

import structlog
from pydantic import ValidationError

from quiz_progress.errors import IntegrityViolation, OperationResult, StorageQuotaExceeded
from quiz_progress.maintenance.migration import MigrationEngine, MigrationResult, run_once
from quiz_progress.maintenance.repair import RepairReport, TrackerTrust, repair
from quiz_progress.models.base import utcnow
from quiz_progress.models.catalog import CategoryCatalog
from quiz_progress.models.progress import (
    CategoryProgress,
    IncorrectQuestion,
    MistakeSource,
    MockCategoryProgress,
    OvercomePolicy,
    OvercomeQuestion,
    ProgressBackup,
    UserProgress,
)
from quiz_progress.models.session import Answer, ExamRecord, StudyMode, StudySession
from quiz_progress.progress.events import EventChannel, ProgressEvent, ProgressEventType
from quiz_progress.progress.tracker import AnsweredQuestionsTracker
from quiz_progress.storage.gateway import (
    BACKUP_RING_KEY,
    EXAM_HISTORY_KEY,
    LATEST_EXAM_KEY,
    PROGRESS_KEY,
    SESSION_SNAPSHOT_KEY,
    StorageGateway,
    user_key,
)
from quiz_progress.sync.merge import MergeStrategy, merge_progress

logger = structlog.get_logger()

ADOPT_UNSCOPED_FLAG = "adopt_unscoped_progress_v1"
UNREADABLE_BACKUP_KEY = "userProgressBackup"


class ProgressRepository:
    """Loads, mutates and persists one identity's progress aggregate.

    Every load runs migration then repair. Mutations are applied to the
    in-memory aggregate first and then persisted, so a failed write never
    hides a change from the caller; it surfaces as ``StorageQuotaExceeded``
    after a ``save_failed`` event.

    Args:
        gateway: Storage gateway.
        catalog: Category catalog used to seed and validate category progress.
        overcome_policy: Whether overcome questions leave the mistake list.
        tracker_trust: How tracker/counter divergence is reconciled on load.
        auto_repair: Persist repaired aggregates on load. When off, violations
            are held for ``apply_repair`` and ``verify`` raises.
        session_retention: Study sessions kept in the aggregate.
        exam_history_retention: Exam-history records kept per identity.
        backup_retention: Backups kept per identity, newest first.
        pass_threshold: Minimum timed-exam score counted as a pass.
        clock: Source of the current time.
    """

    def __init__(
        self,
        gateway: StorageGateway,
        catalog: CategoryCatalog,
        overcome_policy: OvercomePolicy | str = OvercomePolicy.REMOVE,
        tracker_trust: TrackerTrust | str = TrackerTrust.USE_HIGHER,
        auto_repair: bool = True,
        session_retention: int = 50,
        exam_history_retention: int = 20,
        backup_retention: int = 5,
        pass_threshold: float = 70.0,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.gateway = gateway
        self.catalog = catalog
        self.overcome_policy = OvercomePolicy(overcome_policy)
        self.tracker_trust = TrackerTrust(tracker_trust)
        self.auto_repair = auto_repair
        self.session_retention = session_retention
        self.exam_history_retention = exam_history_retention
        self.backup_retention = backup_retention
        self.pass_threshold = pass_threshold
        self.clock = clock
        self.events = EventChannel()
        self.migrations = MigrationEngine(catalog, pass_threshold)

        self._identity: str | None = None
        self._progress: UserProgress | None = None
        self._pending_repair: RepairReport | None = None
        self.last_migration: MigrationResult | None = None
        self.last_repair: RepairReport | None = None

    @classmethod
    def from_settings(
        cls, settings, gateway: StorageGateway, catalog: CategoryCatalog
    ) -> "ProgressRepository":
        return cls(
            gateway,
            catalog,
            overcome_policy=settings.overcome_policy,
            tracker_trust=settings.tracker_trust,
            auto_repair=settings.auto_repair,
            session_retention=settings.session_retention,
            exam_history_retention=settings.exam_history_retention,
            backup_retention=settings.backup_retention,
            pass_threshold=settings.pass_threshold,
        )

    @property
    def identity(self) -> str | None:
        return self._identity

    @property
    def progress(self) -> UserProgress:
        return self._require()

    def _require(self) -> UserProgress:
        if self._progress is None or self._identity is None:
            raise RuntimeError("No identity loaded; call load() first")
        return self._progress

    def _key(self, name: str) -> str:
        return user_key(name, self._identity or "")

    def tracker(self, identity: str | None = None) -> AnsweredQuestionsTracker:
        return AnsweredQuestionsTracker(self.gateway, identity or self._identity or "")

    # ------------------------------------------------------------------
    # Load

    def load(self, identity: str) -> UserProgress:
        """Read, migrate and repair the aggregate for ``identity``.

        A fresh zero-state aggregate is seeded when none exists.
        """
        self._identity = identity
        self._pending_repair = None
        self.last_migration = None
        try:
            run_once(self.gateway, ADOPT_UNSCOPED_FLAG, lambda: self._adopt_unscoped(identity))
        except StorageQuotaExceeded as exc:
            # Flag stays unset, so the adoption is retried on a later load
            logger.warning(
                "one_time_migration_deferred",
                name=ADOPT_UNSCOPED_FLAG,
                identity=identity,
                key=exc.key,
            )

        key = self._key(PROGRESS_KEY)
        raw = self.gateway.get(key)
        changed = False
        if raw is None:
            progress = UserProgress.seeded(self.catalog)
            changed = True
            logger.info("progress_seeded", identity=identity, categories=len(self.catalog))
        else:
            progress = self._migrate(identity, raw)
            changed = progress is None or bool(self.last_migration and self.last_migration.changes)
            if progress is None:
                self._backup(raw)
                progress = UserProgress.seeded(self.catalog)

        tracker = self.tracker(identity)
        tracker_data = tracker.load()
        report = repair(
            progress,
            catalog=self.catalog,
            tracker=tracker_data,
            trust=self.tracker_trust,
            overcome_policy=self.overcome_policy,
        )
        self.last_repair = report
        if report.violations:
            logger.warning(
                "progress_repair_violations",
                identity=identity,
                count=len(report.violations),
                kinds=sorted({v.kind.value for v in report.violations}),
                applied=self.auto_repair,
            )
            if self.auto_repair:
                progress = report.progress
                changed = True
            else:
                self._pending_repair = report

        repaired = bool(report.violations) and self.auto_repair
        if raw is not None and changed:
            self.create_backup("before repair" if repaired else "before migration")
        if repaired and report.tracker is not None and report.tracker != tracker_data:
            self._save_quietly(tracker.key, report.tracker)
        self._progress = progress
        if changed:
            self._save_quietly(key, progress.to_document())
        self.events.publish(ProgressEvent(type=ProgressEventType.LOADED, identity=identity))
        return progress

    def _migrate(self, identity: str, raw: Any) -> UserProgress | None:
        if not isinstance(raw, dict):
            logger.error("progress_document_invalid", identity=identity, reason="not an object")
            return None
        history = self.gateway.get(self._key(EXAM_HISTORY_KEY), [])
        result = self.migrations.migrate(raw, history if isinstance(history, list) else [])
        self.last_migration = result
        if not result.success:
            logger.warning("progress_migration_incomplete", identity=identity, message=result.message)
        elif result.changes:
            logger.info(
                "progress_migrated",
                identity=identity,
                from_version=result.from_version,
                changes=len(result.changes),
            )
        try:
            return UserProgress.model_validate(result.document)
        except ValidationError as exc:
            logger.error("progress_document_invalid", identity=identity, errors=exc.error_count())
            return None

    def _backup(self, raw: Any) -> None:
        # Keep the unreadable document around for manual recovery
        self._save_quietly(self._key(UNREADABLE_BACKUP_KEY), raw)

    def _save_quietly(self, key: str, value: Any) -> None:
        """Write during load, where a full store must not block reading."""
        try:
            self.gateway.set(key, value)
        except StorageQuotaExceeded as exc:
            logger.error("progress_load_save_failed", identity=self._identity, key=exc.key)

    def _adopt_unscoped(self, identity: str) -> list[str]:
        """Move documents written before identities existed into ``identity``."""
        changes: list[str] = []
        legacy = self.gateway.get(PROGRESS_KEY)
        if isinstance(legacy, dict):
            key = user_key(PROGRESS_KEY, identity)
            existing = self.gateway.get(key)
            if existing is None:
                self.gateway.set(key, legacy)
                changes.append(f"adopted unscoped progress into {identity}")
            else:
                merged = self._merge_documents(identity, existing, legacy)
                if merged is not None:
                    self.gateway.set(key, merged.to_document())
                    changes.append(f"merged unscoped progress into {identity}")
            self.gateway.remove(PROGRESS_KEY)

        legacy_history = self.gateway.get(EXAM_HISTORY_KEY)
        if isinstance(legacy_history, list):
            key = user_key(EXAM_HISTORY_KEY, identity)
            existing_history = self.gateway.get(key, [])
            seen: set[str] = set()
            combined = []
            for record in [*existing_history, *legacy_history]:
                record_id = record.get("id") if isinstance(record, dict) else None
                if record_id is None or record_id in seen:
                    continue
                seen.add(record_id)
                combined.append(record)
            combined.sort(key=lambda r: str(r.get("completedAt") or ""))
            self.gateway.set(key, combined[-self.exam_history_retention:])
            self.gateway.remove(EXAM_HISTORY_KEY)
            changes.append(f"adopted {len(legacy_history)} unscoped exam record(s)")
        return changes

    def _merge_documents(self, identity: str, existing: Any, legacy: Any) -> UserProgress | None:
        docs = []
        for raw in (existing, legacy):
            if not isinstance(raw, dict):
                return None
            try:
                docs.append(UserProgress.model_validate(self.migrations.migrate(raw).document))
            except ValidationError:
                logger.warning("unscoped_progress_unreadable", identity=identity)
                return None
        return merge_progress(docs[0], docs[1], MergeStrategy.USE_HIGHER, self.session_retention)

    # ------------------------------------------------------------------
    # Integrity decisions

    @property
    def pending_violations(self) -> list:
        return list(self._pending_repair.violations) if self._pending_repair else []

    def verify(self) -> None:
        """Raise ``IntegrityViolation`` if the last load left violations unapplied."""
        if self._pending_repair is not None:
            raise IntegrityViolation(self._pending_repair.violations)

    def apply_repair(self) -> OperationResult:
        """Apply and persist corrections held back by ``auto_repair=False``."""
        report = self._pending_repair
        if report is None:
            return OperationResult(success=True, message="No pending repairs")
        self.create_backup("before repair")
        self._progress = report.progress
        if report.tracker is not None:
            self.tracker().save(report.tracker)
        self._pending_repair = None
        self._commit(ProgressEventType.REPLACED, {"repaired": len(report.violations)})
        return OperationResult(
            success=True,
            message=f"Applied {len(report.violations)} repair(s)",
            changes=report.messages(),
        )

    # ------------------------------------------------------------------
    # Mutations

    def start_session(
        self,
        mode: StudyMode | str = StudyMode.CATEGORY,
        category: str | None = None,
        questions: Sequence[dict[str, Any]] = (),
        question_ids: Sequence[str] = (),
        part: int | None = None,
        time_limit: int | None = None,
    ) -> StudySession:
        """Create an in-memory session. Nothing is persisted until completion."""
        progress = self._require()
        session = StudySession(
            id=str(uuid.uuid4()),
            mode=StudyMode(mode),
            category=category,
            part=part,
            started_at=self.clock(),
            question_ids=list(question_ids),
            questions=list(questions),
            time_limit=time_limit,
            show_japanese=progress.preferences.show_japanese_in_study,
        )
        if session.mode.is_timed_exam:
            session.show_japanese = progress.preferences.show_japanese_in_mock
        logger.info("session_started", identity=self._identity, session_id=session.id, mode=session.mode)
        return session

    def record_answer(
        self,
        session: StudySession,
        answer: Answer,
        source: MistakeSource | str | None = None,
        mock_number: int | None = None,
    ) -> UserProgress:
        """Record one answer against the session and the aggregate.

        Args:
            session: Session being played.
            answer: The answer given.
            source: Mistake provenance. Defaults from the session mode.
            mock_number: Timed-exam number for mock mistakes. Defaults from the catalog.

        Raises:
            StorageQuotaExceeded: The change is applied in memory but could not be persisted.
        """
        progress = self._require()
        session.add_answer(answer)
        qid = answer.question_id
        category = session.category
        writes: list[Callable[[], object]] = []

        if session.mode is not StudyMode.REVIEW and category:
            entry = self._category_entry(progress, category)
            if entry is not None:
                answered = min(entry.answered_questions + 1, entry.total_questions)
                delta = answered - entry.answered_questions
                entry.answered_questions = answered
                progress.total_questions_answered += delta
                if answer.is_correct:
                    correct = min(entry.correct_answers + 1, entry.answered_questions)
                    progress.correct_answers += correct - entry.correct_answers
                    entry.correct_answers = correct
                entry.last_study_date = answer.answered_at
                total = entry.total_questions
                writes.append(lambda: self.tracker().add(category, qid, total))

        if source is None:
            source = MistakeSource.MOCK if session.mode.is_timed_exam else MistakeSource.CATEGORY
        source = MistakeSource(source)
        if source is MistakeSource.MOCK and mock_number is None and category:
            info = self.catalog.get(category)
            mock_number = info.mock_number if info else None

        if not answer.is_correct:
            self._record_mistake(progress, answer, category, source, mock_number)
        else:
            prior = progress.find_incorrect(qid)
            if prior is not None:
                self._mark_overcome(progress, prior, answer.answered_at)

        self._commit(
            ProgressEventType.ANSWER_RECORDED,
            {"session_id": session.id, "question_id": qid, "is_correct": answer.is_correct},
            writes,
        )
        return progress

    def _category_entry(self, progress: UserProgress, category: str) -> CategoryProgress | None:
        entry = progress.category_progress.get(category)
        if entry is not None:
            return entry
        total = self.catalog.total_for(category)
        if total is None:
            logger.warning("unknown_category", identity=self._identity, category=category)
            return None
        entry = CategoryProgress(total_questions=total)
        progress.category_progress[category] = entry
        return entry

    def _record_mistake(
        self,
        progress: UserProgress,
        answer: Answer,
        category: str | None,
        source: MistakeSource,
        mock_number: int | None,
    ) -> None:
        entry = progress.find_incorrect(answer.question_id)
        if entry is None:
            progress.incorrect_questions.append(IncorrectQuestion(
                question_id=answer.question_id,
                category=category,
                incorrect_count=1,
                last_incorrect_date=answer.answered_at,
                source=source,
                mock_number=mock_number,
            ))
        else:
            entry.incorrect_count += 1
            entry.last_incorrect_date = answer.answered_at
            entry.source = source
            entry.mock_number = mock_number
            if entry.category is None:
                entry.category = category
        if self.overcome_policy is OvercomePolicy.REMOVE:
            progress.overcome_questions = [
                q for q in progress.overcome_questions if q.question_id != answer.question_id
            ]

    def _mark_overcome(
        self, progress: UserProgress, prior: IncorrectQuestion, at: datetime
    ) -> None:
        overcome = progress.find_overcome(prior.question_id)
        if overcome is None:
            progress.overcome_questions.append(OvercomeQuestion(
                question_id=prior.question_id,
                category=prior.category,
                overcome_date=at,
                previous_incorrect_count=prior.incorrect_count,
                review_count=prior.review_count + 1,
                mock_number=prior.mock_number,
            ))
        else:
            overcome.overcome_date = at
            overcome.previous_incorrect_count = max(
                overcome.previous_incorrect_count, prior.incorrect_count
            )
            overcome.review_count += 1

        if self.overcome_policy is OvercomePolicy.REMOVE:
            progress.incorrect_questions = [
                q for q in progress.incorrect_questions if q.question_id != prior.question_id
            ]
        else:
            prior.review_count += 1

    def complete_session(self, session: StudySession) -> StudySession:
        """Stamp, store and roll up a finished session.

        Returns:
            The persisted (ids-only) form of the session.

        Raises:
            StorageQuotaExceeded: The change is applied in memory but could not be persisted.
        """
        progress = self._require()
        now = self.clock()
        if session.completed_at is None:
            session.completed_at = now
        persisted = session.to_persisted()

        sessions = [s for s in progress.study_sessions if s.id != persisted.id]
        sessions.append(persisted)
        progress.study_sessions = sessions[-self.session_retention:]
        self._update_streak(progress, now)

        writes: list[Callable[[], object]] = [
            lambda: self.gateway.remove(self._key(SESSION_SNAPSHOT_KEY))
        ]
        detail: dict[str, Any] = {"session_id": persisted.id, "answers": len(persisted.answers)}
        if persisted.mode.is_timed_exam:
            record = self._record_exam(progress, persisted)
            writes.append(lambda: self._append_exam_history(record))
            writes.append(lambda: self._write_latest_exam(record))
            detail.update(score=record.score, passed=record.passed)

        self._commit(ProgressEventType.SESSION_COMPLETED, detail, writes)
        logger.info(
            "session_completed",
            identity=self._identity,
            session_id=persisted.id,
            streak=progress.current_streak,
        )
        return persisted

    def _update_streak(self, progress: UserProgress, now: datetime) -> None:
        last = progress.last_study_date
        if last is None:
            streak = 1
        else:
            days = (now.date() - last.date()).days
            if days <= 0:
                streak = max(progress.current_streak, 1)
            elif days == 1:
                streak = progress.current_streak + 1
            else:
                streak = 1
        progress.current_streak = streak
        progress.best_streak = max(progress.best_streak, streak)
        progress.last_study_date = now

    def _record_exam(self, progress: UserProgress, session: StudySession) -> ExamRecord:
        score = session.score
        record = ExamRecord(
            id=session.id,
            session=session,
            score=score,
            passed=score >= self.pass_threshold,
            completed_at=session.completed_at or self.clock(),
            questions_count=len(session.question_ids) or len(session.answers),
            category=session.category,
        )
        if session.category:
            rollup = progress.mock_category_progress.get(session.category)
            if rollup is None:
                total = self.catalog.total_for(session.category) or record.questions_count
                rollup = MockCategoryProgress(total_questions=total)
                progress.mock_category_progress[session.category] = rollup
            attempts = rollup.attempts_count
            rollup.average_score = round((rollup.average_score * attempts + score) / (attempts + 1), 1)
            rollup.attempts_count = attempts + 1
            rollup.best_score = max(rollup.best_score, score)
            rollup.latest_score = score
            rollup.passed_count += int(record.passed)
            rollup.last_attempt_date = record.completed_at
        return record

    def _append_exam_history(self, record: ExamRecord) -> None:
        key = self._key(EXAM_HISTORY_KEY)
        history = self.gateway.get(key, [])
        if not isinstance(history, list):
            history = []
        history = [r for r in history if not (isinstance(r, dict) and r.get("id") == record.id)]
        history.append(record.to_document())
        self.gateway.set(key, history[-self.exam_history_retention:])

    def _write_latest_exam(self, record: ExamRecord) -> None:
        try:
            self.gateway.set(self._key(LATEST_EXAM_KEY), record.to_document())
        except StorageQuotaExceeded:
            logger.warning("latest_exam_not_cached", identity=self._identity, exam_id=record.id)

    def exam_history(self) -> list[ExamRecord]:
        self._require()
        raw = self.gateway.get(self._key(EXAM_HISTORY_KEY), [])
        records = []
        for item in raw if isinstance(raw, list) else []:
            try:
                records.append(ExamRecord.model_validate(item))
            except ValidationError:
                logger.warning("exam_record_invalid", identity=self._identity)
        return records

    def reset_all(self) -> OperationResult:
        """Reinitialize the aggregate, keeping preferences. Idempotent."""
        if self._progress is None or self._identity is None:
            return OperationResult(success=False, message="No identity loaded")
        current = self._progress
        fresh = UserProgress.seeded(self.catalog, current.preferences)
        changes: list[str] = []
        if _content(fresh) != _content(current):
            changes.append("reseeded progress from the category catalog")
        if self.gateway.get(self.tracker().key) is not None:
            changes.append("cleared answered-question tracker")
        for name, label in (
            (EXAM_HISTORY_KEY, "cleared exam history"),
            (SESSION_SNAPSHOT_KEY, "discarded in-progress session snapshot"),
            (LATEST_EXAM_KEY, "cleared latest exam result"),
        ):
            if self.gateway.get(self._key(name)) is not None:
                changes.append(label)

        if not changes:
            return OperationResult(success=True, message="Progress is already at its initial state")

        self.create_backup("before reset")
        fresh.updated_at = current.updated_at
        self._progress = fresh
        writes: list[Callable[[], object]] = [
            self.tracker().clear,
            lambda: self.gateway.remove(self._key(EXAM_HISTORY_KEY)),
            lambda: self.gateway.remove(self._key(SESSION_SNAPSHOT_KEY)),
            lambda: self.gateway.remove(self._key(LATEST_EXAM_KEY)),
        ]
        try:
            self._commit(ProgressEventType.RESET, {"changes": len(changes)}, writes)
        except StorageQuotaExceeded as exc:
            return OperationResult(success=False, message=str(exc), changes=changes)
        logger.info("progress_reset", identity=self._identity, changes=len(changes))
        return OperationResult(success=True, message="Progress reset", changes=changes)

    # ------------------------------------------------------------------
    # Session snapshots

    def snapshot_session(self, session: StudySession) -> None:
        """Persist an in-progress session, embedded questions included."""
        self._require()
        document = session.to_document()
        document["questions"] = session.questions
        self.gateway.set(self._key(SESSION_SNAPSHOT_KEY), document)

    def restore_session(self) -> StudySession | None:
        self._require()
        raw = self.gateway.get(self._key(SESSION_SNAPSHOT_KEY))
        if raw is None:
            return None
        try:
            return StudySession.model_validate(raw)
        except ValidationError:
            logger.warning("session_snapshot_invalid", identity=self._identity)
            self.gateway.remove(self._key(SESSION_SNAPSHOT_KEY))
            return None

    def discard_snapshot(self) -> None:
        self._require()
        self.gateway.remove(self._key(SESSION_SNAPSHOT_KEY))

    # ------------------------------------------------------------------
    # Backups

    def _backup_entries(self, identity: str) -> list[dict[str, Any]]:
        raw = self.gateway.get(user_key(BACKUP_RING_KEY, identity), [])
        if not isinstance(raw, list):
            return []
        return [entry for entry in raw if isinstance(entry, dict)]

    def create_backup(self, reason: str) -> ProgressBackup | None:
        """Copy the stored progress and tracker onto the identity's backup ring.

        The ring is newest first and holds at most ``backup_retention``
        entries. Returns None when nothing is stored, when the stored
        documents match the newest backup, or when there is no room left.
        """
        if self._identity is None:
            raise RuntimeError("No identity loaded; call load() first")
        stored = self.gateway.get(self._key(PROGRESS_KEY))
        answered = self.gateway.get(self.tracker().key)
        backup = ProgressBackup(
            created_at=self.clock(),
            reason=reason,
            user_progress=stored if isinstance(stored, dict) else None,
            answered_questions=answered if isinstance(answered, dict) else None,
        )
        if backup.user_progress is None and backup.answered_questions is None:
            return None

        entries = self._backup_entries(self._identity)
        if entries and (
            entries[0].get("userProgress") == backup.user_progress
            and entries[0].get("answeredQuestions") == backup.answered_questions
        ):
            return None
        ring = [backup.to_document(), *entries][: self.backup_retention]
        key = self._key(BACKUP_RING_KEY)
        try:
            self.gateway.set(key, ring)
        except StorageQuotaExceeded:
            # Older backups give way to the newest one
            try:
                self.gateway.set(key, ring[:1])
            except StorageQuotaExceeded:
                logger.warning("progress_backup_skipped", identity=self._identity, reason=reason)
                return None
        logger.info("progress_backup_created", identity=self._identity, reason=reason)
        return backup

    def list_backups(self, identity: str | None = None) -> list[ProgressBackup]:
        """Backups for ``identity`` (default: the loaded one), newest first."""
        identity = identity or self._identity
        if identity is None:
            raise RuntimeError("No identity loaded; call load() first")
        backups = []
        for entry in self._backup_entries(identity):
            try:
                backups.append(ProgressBackup.model_validate(entry))
            except ValidationError:
                logger.warning("progress_backup_invalid", identity=identity)
        return backups

    def restore_backup(self, index: int = 0, identity: str | None = None) -> OperationResult:
        """Put a backup's documents back in place, then load them.

        ``identity`` defaults to the loaded one and need not be loaded first,
        so the indices seen in ``list_backups`` stay valid. The current
        documents are backed up first, so a restore can itself be undone.
        The restored aggregate goes through migration and repair like any
        other load.
        """
        identity = identity or self._identity
        if identity is None:
            raise RuntimeError("No identity loaded; call load() first")
        backups = self.list_backups(identity)
        if not 0 <= index < len(backups):
            return OperationResult(success=False, message=f"No backup at index {index}")
        backup = backups[index]
        if identity != self._identity:
            self._identity = identity
            self._progress = None
            self._pending_repair = None

        self.create_backup("before restore")
        changes = []
        try:
            if backup.user_progress is not None:
                self.gateway.set(self._key(PROGRESS_KEY), backup.user_progress)
                changes.append("restored progress document")
            if backup.answered_questions is not None:
                self.gateway.set(self.tracker().key, backup.answered_questions)
                changes.append("restored answered-question tracker")
            self.load(identity)
            self._persist(ProgressEventType.REPLACED, {"restored": backup.created_at.isoformat()})
        except StorageQuotaExceeded as exc:
            return OperationResult(success=False, message=str(exc), changes=changes)
        logger.info(
            "progress_backup_restored",
            identity=identity,
            created_at=backup.created_at.isoformat(),
        )
        return OperationResult(
            success=True,
            message=f"Restored backup from {backup.created_at.isoformat()} ({backup.reason})",
            changes=changes,
        )

    # ------------------------------------------------------------------
    # Sync support

    def replace(self, progress: UserProgress) -> UserProgress:
        """Adopt an externally merged aggregate, repairing it first."""
        self._require()
        report = repair(
            progress,
            catalog=self.catalog,
            overcome_policy=self.overcome_policy,
        )
        if report.violations:
            logger.info("merged_progress_repaired", identity=self._identity, count=len(report.violations))
        self._progress = report.progress
        self._persist(ProgressEventType.REPLACED, {})
        return self._progress

    def to_document(self) -> dict[str, Any]:
        return self._require().to_document()

    def _commit(
        self,
        event_type: ProgressEventType,
        detail: dict[str, Any],
        writes: Sequence[Callable[[], object]] = (),
    ) -> None:
        self._require().updated_at = self.clock()
        self._persist(event_type, detail, writes)

    def _persist(
        self,
        event_type: ProgressEventType,
        detail: dict[str, Any],
        writes: Sequence[Callable[[], object]] = (),
    ) -> None:
        progress = self._require()
        identity = self._identity or ""
        try:
            for write in writes:
                write()
            self.gateway.set(self._key(PROGRESS_KEY), progress.to_document())
        except StorageQuotaExceeded as exc:
            logger.error("progress_save_failed", identity=identity, key=exc.key, cause=event_type)
            self.events.publish(ProgressEvent(
                type=ProgressEventType.SAVE_FAILED,
                identity=identity,
                detail={"key": exc.key, "cause": event_type.value},
            ))
            raise
        self.events.publish(ProgressEvent(type=event_type, identity=identity, detail=detail))


def _content(progress: UserProgress) -> dict[str, Any]:
    document = progress.to_document()
    document.pop("updatedAt", None)
    return document
