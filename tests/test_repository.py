"""Tests for ProgressRepository."""

import pytest

from quiz_progress.errors import IntegrityViolation, StorageQuotaExceeded
from quiz_progress.models.progress import MistakeSource, OvercomePolicy
from quiz_progress.models.session import Answer, StudyMode
from quiz_progress.progress.events import ProgressEventType
from quiz_progress.progress.repository import ADOPT_UNSCOPED_FLAG, ProgressRepository
from quiz_progress.storage.backends import MemoryBackend
from quiz_progress.storage.gateway import StorageGateway, user_key

REG = "The Regulatory Environment"


def _answer(question_id: str, correct: bool) -> Answer:
    return Answer(question_id=question_id, is_correct=correct)


class TestLoad:
    def test_new_identity_is_seeded_from_catalog(self, repository, catalog):
        progress = repository.load("alice")
        assert set(progress.category_progress) == {info.id for info in catalog}
        assert progress.category_progress[REG].total_questions == 42
        assert set(progress.mock_category_progress) == {"Mock 1", "Mock 2"}
        assert progress.total_questions_answered == 0

    def test_seeded_document_is_persisted(self, repository, gateway):
        repository.load("alice")
        stored = gateway.get(user_key("userProgress", "alice"))
        assert stored["schemaVersion"] == 2

    def test_round_trip(self, repository, gateway, catalog, clock):
        repository.load("alice")
        session = repository.start_session(category=REG)
        repository.record_answer(session, _answer("q1", True))
        repository.record_answer(session, _answer("q2", False))
        repository.complete_session(session)
        written = repository.to_document()

        reloaded = ProgressRepository(gateway, catalog, clock=clock).load("alice")

        assert reloaded.to_document() == written

    def test_invalid_document_is_backed_up_and_reseeded(self, repository, gateway):
        gateway.set(user_key("userProgress", "alice"), {"categoryProgress": "broken"})

        progress = repository.load("alice")

        assert progress.total_questions_answered == 0
        assert gateway.get(user_key("userProgressBackup", "alice")) == {"categoryProgress": "broken"}

    def test_invariants_hold_after_load(self, repository, gateway):
        gateway.set(user_key("userProgress", "alice"), {
            "categoryProgress": {
                REG: {"totalQuestions": 42, "answeredQuestions": 60, "correctAnswers": 70},
            },
        })

        progress = repository.load("alice")

        for entry in progress.category_progress.values():
            assert entry.answered_questions <= entry.total_questions
            assert entry.correct_answers <= entry.answered_questions
        assert progress.total_questions_answered == 42

    def test_full_store_defers_one_time_adoption(self, repository, gateway, catalog, clock):
        repository.load("alice")
        document = gateway.get(user_key("userProgress", "alice"))
        full = StorageGateway(MemoryBackend())
        full.set(user_key("userProgress", "alice"), document)
        full.budget_bytes = full.used_bytes() + 10
        flag = user_key("migrationFlag", ADOPT_UNSCOPED_FLAG)

        progress = ProgressRepository(full, catalog, clock=clock).load("alice")

        assert progress.to_document() == document
        assert full.get(flag) is None

        full.budget_bytes = 1024 * 1024
        ProgressRepository(full, catalog, clock=clock).load("alice")
        assert full.get(flag) is not None

    def test_loaded_event_published(self, repository):
        events = []
        repository.events.subscribe(events.append)
        repository.load("alice")
        assert [e.type for e in events] == [ProgressEventType.LOADED]


class TestRecordAnswer:
    def test_scenario_clamp_at_category_total(self, repository):
        repository.load("alice")
        session = repository.start_session(category=REG)
        for i in range(42):
            repository.record_answer(session, _answer(f"q{i}", i % 2 == 0))

        entry = repository.progress.category_progress[REG]
        assert entry.answered_questions == 42
        assert entry.correct_answers == 21

        repository.record_answer(session, _answer("q42", True))

        entry = repository.progress.category_progress[REG]
        assert entry.answered_questions == 42
        assert entry.correct_answers <= 42
        assert repository.progress.total_questions_answered == 42
        assert len(session.answers) == 43
        assert repository.tracker().count(REG) == 42

    def test_counters_and_global_totals_move_together(self, repository):
        repository.load("alice")
        session = repository.start_session(category=REG)
        repository.record_answer(session, _answer("q1", True))
        repository.record_answer(session, _answer("q2", False))

        progress = repository.progress
        assert progress.total_questions_answered == 2
        assert progress.correct_answers == 1
        assert progress.category_progress[REG].last_study_date is not None

    def test_incorrect_answer_upserts_by_question_id(self, repository, clock):
        repository.load("alice")
        session = repository.start_session(category=REG)
        repository.record_answer(session, _answer("q1", False))
        clock.advance(minutes=5)
        repository.record_answer(session, _answer("q1", False))

        mistakes = repository.progress.incorrect_questions
        assert len(mistakes) == 1
        assert mistakes[0].incorrect_count == 2
        assert mistakes[0].source is MistakeSource.CATEGORY
        assert mistakes[0].category == REG

    def test_timed_exam_mistake_is_tagged_mock(self, repository):
        repository.load("alice")
        session = repository.start_session(mode=StudyMode.TIMED_EXAM_LONG, category="Mock 1")
        repository.record_answer(session, _answer("m1", False))

        entry = repository.progress.find_incorrect("m1")
        assert entry.source is MistakeSource.MOCK
        assert entry.mock_number == 1

    def test_explicit_source_and_mock_number(self, repository):
        repository.load("alice")
        session = repository.start_session(category=REG)
        repository.record_answer(session, _answer("q1", False), source="mock", mock_number=3)

        entry = repository.progress.find_incorrect("q1")
        assert entry.source is MistakeSource.MOCK
        assert entry.mock_number == 3

    def test_review_answers_do_not_move_counters(self, repository):
        repository.load("alice")
        session = repository.start_session(category=REG)
        repository.record_answer(session, _answer("q1", False))

        review = repository.start_session(mode=StudyMode.REVIEW, category=REG)
        repository.record_answer(review, _answer("q1", True))

        progress = repository.progress
        assert progress.category_progress[REG].answered_questions == 1
        assert progress.correct_answers == 0
        assert progress.find_overcome("q1") is not None

    def test_unknown_category_only_records_mistakes(self, repository):
        repository.load("alice")
        session = repository.start_session(category="Not In Catalog")
        repository.record_answer(session, _answer("x1", False))

        assert "Not In Catalog" not in repository.progress.category_progress
        assert repository.progress.find_incorrect("x1") is not None

    def test_failed_save_keeps_change_in_memory(self, repository, gateway, monkeypatch):
        repository.load("alice")
        session = repository.start_session(category=REG)
        events = []
        repository.events.subscribe(events.append)

        def full(key, value):
            raise StorageQuotaExceeded(key, 10, 5)

        monkeypatch.setattr(gateway, "set", full)
        with pytest.raises(StorageQuotaExceeded):
            repository.record_answer(session, _answer("q1", True))

        assert repository.progress.category_progress[REG].answered_questions == 1
        assert [e.type for e in events] == [ProgressEventType.SAVE_FAILED]


class TestOvercomePolicy:
    def test_remove_policy_drops_overcome_mistake(self, gateway, catalog, clock):
        repository = ProgressRepository(gateway, catalog, overcome_policy="remove", clock=clock)
        repository.load("alice")
        session = repository.start_session(category=REG)
        repository.record_answer(session, _answer("q1", False))
        clock.advance(minutes=1)
        repository.record_answer(session, _answer("q1", True))

        progress = repository.progress
        assert progress.find_incorrect("q1") is None
        overcome = progress.find_overcome("q1")
        assert overcome.previous_incorrect_count == 1
        assert overcome.category == REG

    def test_remove_policy_mistake_after_overcome_leaves_overcome(self, gateway, catalog, clock):
        repository = ProgressRepository(gateway, catalog, overcome_policy=OvercomePolicy.REMOVE, clock=clock)
        repository.load("alice")
        session = repository.start_session(category=REG)
        repository.record_answer(session, _answer("q1", False))
        repository.record_answer(session, _answer("q1", True))
        repository.record_answer(session, _answer("q1", False))

        progress = repository.progress
        assert progress.find_overcome("q1") is None
        assert progress.find_incorrect("q1").incorrect_count == 1

    def test_retain_policy_keeps_both_entries(self, gateway, catalog, clock):
        repository = ProgressRepository(gateway, catalog, overcome_policy="retain", clock=clock)
        repository.load("alice")
        session = repository.start_session(category=REG)
        repository.record_answer(session, _answer("q1", False))
        repository.record_answer(session, _answer("q1", False))
        repository.record_answer(session, _answer("q1", True))

        progress = repository.progress
        mistake = progress.find_incorrect("q1")
        assert mistake.incorrect_count == 2
        assert mistake.review_count == 1
        assert progress.find_overcome("q1").previous_incorrect_count == 2

    def test_retain_policy_survives_reload(self, gateway, catalog, clock):
        repository = ProgressRepository(gateway, catalog, overcome_policy="retain", clock=clock)
        repository.load("alice")
        session = repository.start_session(category=REG)
        repository.record_answer(session, _answer("q1", False))
        repository.record_answer(session, _answer("q1", True))

        reloaded = ProgressRepository(gateway, catalog, overcome_policy="retain", clock=clock)
        progress = reloaded.load("alice")
        assert progress.find_incorrect("q1") is not None
        assert progress.find_overcome("q1") is not None


class TestCompleteSession:
    def test_persisted_session_carries_only_ids(self, repository, gateway):
        repository.load("alice")
        questions = [{"id": "q1", "text": "What?"}, {"id": "q2", "text": "Why?"}]
        session = repository.start_session(category=REG, questions=questions)
        repository.record_answer(session, _answer("q1", True))

        persisted = repository.complete_session(session)

        assert persisted.question_ids == ["q1", "q2"]
        stored = gateway.get(user_key("userProgress", "alice"))["studySessions"][0]
        assert "questions" not in stored
        assert stored["questionIds"] == ["q1", "q2"]
        assert stored["completedAt"]

    def test_sessions_truncated_to_retention(self, gateway, catalog, clock):
        repository = ProgressRepository(gateway, catalog, session_retention=3, clock=clock)
        repository.load("alice")
        ids = []
        for _ in range(5):
            session = repository.start_session(category=REG)
            repository.complete_session(session)
            ids.append(session.id)

        assert [s.id for s in repository.progress.study_sessions] == ids[-3:]

    def test_streak_rules(self, repository, clock):
        repository.load("alice")

        repository.complete_session(repository.start_session(category=REG))
        assert repository.progress.current_streak == 1

        clock.advance(hours=2)
        repository.complete_session(repository.start_session(category=REG))
        assert repository.progress.current_streak == 1

        clock.advance(days=1)
        repository.complete_session(repository.start_session(category=REG))
        assert repository.progress.current_streak == 2

        clock.advance(days=3)
        repository.complete_session(repository.start_session(category=REG))
        progress = repository.progress
        assert progress.current_streak == 1
        assert progress.best_streak == 2

    def test_timed_exam_updates_history_and_rollup(self, repository, gateway):
        repository.load("alice")
        session = repository.start_session(
            mode=StudyMode.TIMED_EXAM_LONG,
            category="Mock 1",
            question_ids=["m1", "m2", "m3", "m4"],
        )
        for qid, correct in [("m1", True), ("m2", True), ("m3", True), ("m4", False)]:
            repository.record_answer(session, _answer(qid, correct))

        repository.complete_session(session)

        history = repository.exam_history()
        assert len(history) == 1
        assert history[0].score == 75.0
        assert history[0].passed is True
        assert history[0].questions_count == 4
        rollup = repository.progress.mock_category_progress["Mock 1"]
        assert rollup.attempts_count == 1
        assert rollup.best_score == 75.0
        assert rollup.passed_count == 1
        assert gateway.get(user_key("latestMockExam", "alice"))["score"] == 75.0

    def test_exam_history_retention(self, gateway, catalog, clock):
        repository = ProgressRepository(gateway, catalog, exam_history_retention=2, clock=clock)
        repository.load("alice")
        for _ in range(3):
            clock.advance(hours=1)
            session = repository.start_session(mode="mock25", category="Mock 2")
            repository.record_answer(session, _answer("m1", True))
            repository.complete_session(session)

        assert len(repository.exam_history()) == 2
        assert repository.progress.mock_category_progress["Mock 2"].attempts_count == 3

    def test_completion_survives_reload_without_rollup_rebuild(self, repository, gateway, catalog, clock):
        repository.load("alice")
        session = repository.start_session(mode="mock75", category="Mock 1")
        repository.record_answer(session, _answer("m1", False))
        repository.complete_session(session)

        reloaded = ProgressRepository(gateway, catalog, clock=clock)
        reloaded.load("alice")
        assert reloaded.last_migration.changes == []


class TestSnapshots:
    def test_snapshot_and_restore(self, repository):
        repository.load("alice")
        questions = [{"id": "m1", "text": "Q"}]
        session = repository.start_session(mode="mock75", category="Mock 1", questions=questions)
        repository.record_answer(session, _answer("m1", True))

        repository.snapshot_session(session)
        restored = repository.restore_session()

        assert restored.id == session.id
        assert restored.questions == questions
        assert len(restored.answers) == 1

    def test_completion_removes_snapshot(self, repository):
        repository.load("alice")
        session = repository.start_session(mode="mock75", category="Mock 1")
        repository.snapshot_session(session)
        repository.complete_session(session)
        assert repository.restore_session() is None


class TestResetAll:
    def test_reset_preserves_preferences(self, repository):
        repository.load("alice")
        repository.progress.preferences.show_japanese_in_mock = True
        session = repository.start_session(category=REG)
        repository.record_answer(session, _answer("q1", False))
        repository.complete_session(session)

        result = repository.reset_all()

        progress = repository.progress
        assert result.success is True
        assert result.changes
        assert progress.total_questions_answered == 0
        assert progress.incorrect_questions == []
        assert progress.study_sessions == []
        assert progress.current_streak == 0
        assert progress.category_progress[REG].answered_questions == 0
        assert progress.preferences.show_japanese_in_mock is True
        assert repository.tracker().count(REG) == 0

    def test_reset_is_idempotent(self, repository):
        repository.load("alice")
        session = repository.start_session(category=REG)
        repository.record_answer(session, _answer("q1", True))

        first = repository.reset_all()
        second = repository.reset_all()

        assert first.changes
        assert second.success is True
        assert second.changes == []

    def test_reset_without_identity_fails_softly(self, repository):
        result = repository.reset_all()
        assert result.success is False


class TestIntegrityDecisions:
    def test_manual_repair_mode(self, gateway, catalog, clock):
        gateway.set(user_key("userProgress", "alice"), {
            "schemaVersion": 2,
            "categoryProgress": {
                REG: {"totalQuestions": 42, "answeredQuestions": 50, "correctAnswers": 10},
            },
        })
        repository = ProgressRepository(gateway, catalog, auto_repair=False, clock=clock)
        repository.load("alice")

        assert repository.pending_violations
        with pytest.raises(IntegrityViolation):
            repository.verify()

        result = repository.apply_repair()

        assert result.success is True
        assert repository.progress.category_progress[REG].answered_questions == 42
        repository.verify()
        assert repository.list_backups()[0].reason == "before repair"


class TestUnscopedAdoption:
    def test_unscoped_progress_adopted_once(self, repository, gateway):
        gateway.set("userProgress", {
            "totalQuestionsAnswered": 5,
            "correctAnswers": 3,
            "categoryProgress": {
                REG: {"totalQuestions": 42, "answeredQuestions": 5, "correctAnswers": 3},
            },
        })
        gateway.set("mockExamHistory", [{"id": "e1", "score": 80, "category": "Mock 1",
                                         "completedAt": "2024-04-01T10:00:00Z"}])

        progress = repository.load("alice")

        assert progress.category_progress[REG].answered_questions == 5
        assert gateway.get("userProgress") is None
        assert gateway.get("mockExamHistory") is None
        assert len(gateway.get(user_key("mockExamHistory", "alice"))) == 1
        assert progress.mock_category_progress["Mock 1"].attempts_count == 1

        gateway.set("userProgress", {"totalQuestionsAnswered": 9})
        other = repository.load("bob")
        assert other.total_questions_answered == 0
        assert gateway.get("userProgress") == {"totalQuestionsAnswered": 9}

    def test_unscoped_progress_merged_with_existing(self, repository, gateway):
        gateway.set(user_key("userProgress", "alice"), {
            "schemaVersion": 2,
            "categoryProgress": {
                REG: {"totalQuestions": 42, "answeredQuestions": 2, "correctAnswers": 2},
            },
        })
        gateway.set("userProgress", {
            "categoryProgress": {
                REG: {"totalQuestions": 42, "answeredQuestions": 7, "correctAnswers": 1},
            },
        })

        progress = repository.load("alice")

        assert progress.category_progress[REG].answered_questions == 7
        assert progress.category_progress[REG].correct_answers == 2


class TestBackups:
    def _answered(self, repository, *question_ids: str) -> None:
        session = repository.start_session(category=REG)
        for question_id in question_ids:
            repository.record_answer(session, _answer(question_id, True))

    def test_reset_keeps_a_backup(self, repository):
        repository.load("alice")
        self._answered(repository, "q1")

        repository.reset_all()

        backups = repository.list_backups()
        assert len(backups) == 1
        assert backups[0].reason == "before reset"
        assert backups[0].user_progress["totalQuestionsAnswered"] == 1
        assert backups[0].answered_questions == {REG: ["q1"]}

    def test_restore_undoes_reset(self, repository):
        repository.load("alice")
        self._answered(repository, "q1")
        repository.reset_all()
        events = []
        repository.events.subscribe(events.append)

        result = repository.restore_backup(0)

        assert result.success is True
        assert repository.progress.total_questions_answered == 1
        assert repository.tracker().count(REG) == 1
        assert repository.list_backups()[0].reason == "before restore"
        assert ProgressEventType.REPLACED in [e.type for e in events]

    def test_repair_on_load_backs_up_stored_document(self, repository, gateway):
        broken = {
            "schemaVersion": 2,
            "categoryProgress": {REG: {"totalQuestions": 42, "answeredQuestions": 50}},
        }
        gateway.set(user_key("userProgress", "alice"), broken)

        repository.load("alice")

        backup = repository.list_backups()[0]
        assert backup.reason == "before repair"
        assert backup.user_progress == broken
        assert repository.progress.category_progress[REG].answered_questions == 42

    def test_ring_keeps_newest_entries(self, repository, clock):
        repository.load("alice")
        for i in range(7):
            self._answered(repository, f"q{i}")
            clock.advance(minutes=1)
            repository.create_backup(f"step {i}")

        backups = repository.list_backups()

        assert [b.reason for b in backups] == ["step 6", "step 5", "step 4", "step 3", "step 2"]
        assert backups[0].created_at > backups[1].created_at

    def test_unchanged_documents_not_duplicated(self, repository):
        repository.load("alice")
        self._answered(repository, "q1")

        assert repository.create_backup("first") is not None
        assert repository.create_backup("second") is None
        assert len(repository.list_backups()) == 1

    def test_restore_unknown_index(self, repository):
        repository.load("alice")
        result = repository.restore_backup(3)
        assert result.success is False

    def test_full_store_skips_backup_but_still_resets(self, repository, gateway, monkeypatch):
        repository.load("alice")
        self._answered(repository, "q1")
        write = gateway.set

        def no_room_for_backups(key, value):
            if key.startswith("backup_"):
                raise StorageQuotaExceeded(key, 100, 10)
            write(key, value)

        monkeypatch.setattr(gateway, "set", no_room_for_backups)

        assert repository.reset_all().success is True
        assert repository.list_backups() == []
        assert repository.progress.total_questions_answered == 0


class TestEvents:
    def test_subscription_context_manager_unsubscribes(self, repository):
        repository.load("alice")
        events = []
        with repository.events.subscribe(events.append):
            session = repository.start_session(category=REG)
            repository.record_answer(session, _answer("q1", True))
        repository.record_answer(session, _answer("q2", True))

        assert [e.type for e in events] == [ProgressEventType.ANSWER_RECORDED]
        assert repository.events.subscriber_count == 0

    def test_failing_handler_does_not_break_writes(self, repository):
        repository.load("alice")

        def broken(event):
            raise RuntimeError("boom")

        repository.events.subscribe(broken)
        session = repository.start_session(category=REG)
        repository.record_answer(session, _answer("q1", True))
        assert repository.progress.total_questions_answered == 1
