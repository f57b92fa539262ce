"""Smoke tests for Pydantic models, settings and the answered-id tracker."""

from datetime import datetime, timezone

import pytest
from pydantic import ValidationError

from quiz_progress.config import Settings, load_category_catalog
from quiz_progress.models.catalog import CategoryCatalog
from quiz_progress.models.progress import (
    CategoryProgress,
    OvercomeQuestion,
    UserPreferences,
    UserProgress,
    display_correct_count,
)
from quiz_progress.models.session import Answer, StudyMode, StudySession, question_id_of
from quiz_progress.progress.events import EventChannel, ProgressEvent, ProgressEventType
from quiz_progress.progress.tracker import AnsweredQuestionsTracker

REG = "The Regulatory Environment"


class TestUserProgress:
    def test_serializes_camel_case(self):
        progress = UserProgress(total_questions_answered=3)
        document = progress.to_document()

        assert document["totalQuestionsAnswered"] == 3
        assert document["schemaVersion"] == 2
        assert "mockIncorrectQuestions" not in document
        assert "updatedAt" not in document

    def test_accepts_camel_and_snake_case(self):
        assert UserProgress.model_validate({"correctAnswers": 2}).correct_answers == 2
        assert UserProgress(correct_answers=2).correct_answers == 2

    def test_unknown_fields_ignored(self):
        progress = UserProgress.model_validate({"somethingNew": 1, "currentStreak": 2})
        assert progress.current_streak == 2

    def test_naive_timestamps_read_as_utc(self):
        progress = UserProgress.model_validate({"lastStudyDate": "2024-05-01T10:00:00"})
        assert progress.last_study_date == datetime(2024, 5, 1, 10, 0, tzinfo=timezone.utc)

    def test_blank_timestamp_is_none(self):
        assert UserProgress.model_validate({"lastStudyDate": ""}).last_study_date is None

    def test_seeded_keeps_preferences(self, catalog):
        prefs = UserPreferences(show_japanese_in_mock=True)
        progress = UserProgress.seeded(catalog, prefs)

        assert progress.preferences.show_japanese_in_mock is True
        assert progress.preferences is not prefs
        assert progress.category_progress[REG].total_questions == 42

    def test_accuracy(self):
        assert UserProgress().accuracy == 0.0
        assert UserProgress(total_questions_answered=3, correct_answers=2).accuracy == 66.7

    def test_display_correct_count_adds_overcome(self):
        progress = UserProgress(
            correct_answers=4,
            category_progress={REG: CategoryProgress(total_questions=42, answered_questions=6, correct_answers=4)},
            overcome_questions=[
                OvercomeQuestion(question_id="q1", category=REG),
                OvercomeQuestion(question_id="q2", category="Other"),
            ],
        )

        assert display_correct_count(progress) == 6
        assert display_correct_count(progress, REG) == 5
        assert display_correct_count(progress, "Missing") == 0


class TestStudySession:
    def test_questions_never_serialized(self):
        session = StudySession(id="s1", questions=[{"id": "q1", "text": "long"}])
        assert "questions" not in session.to_document()

    def test_persisted_form_keeps_ids(self):
        session = StudySession(id="s1", questions=[{"questionId": "a"}, {"id": "b"}])

        persisted = session.to_persisted()

        assert persisted.question_ids == ["a", "b"]
        assert persisted.questions == []
        assert session.questions

    def test_score(self):
        session = StudySession(id="s1")
        assert session.score == 0.0
        session.add_answer(Answer(question_id="q1", is_correct=True))
        session.add_answer(Answer(question_id="q2", is_correct=False))
        assert session.score == 50.0
        assert session.current_question_index == 2

    def test_part_uses_mock_part_alias(self):
        session = StudySession.model_validate({"id": "s1", "mockPart": 2})
        assert session.part == 2
        assert session.to_document()["mockPart"] == 2

    def test_modes(self):
        assert StudyMode("mock75").is_timed_exam
        assert StudyMode.TIMED_EXAM_SHORT.is_timed_exam
        assert not StudyMode.REVIEW.is_timed_exam

    def test_question_id_of(self):
        assert question_id_of({"question_id": 7}) == "7"
        assert question_id_of("raw") == "raw"


class TestCatalog:
    def test_lookups(self, catalog):
        assert catalog.total_for(REG) == 42
        assert catalog.total_for("Nope") is None
        assert [c.id for c in catalog.mock_categories] == ["Mock 1", "Mock 2"]
        assert catalog.mock_category_for(2).id == "Mock 2"

    def test_shipped_catalog_loads(self):
        catalog = load_category_catalog()
        assert isinstance(catalog, CategoryCatalog)
        assert catalog.total_for(REG) == 42

    def test_missing_catalog_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_category_catalog(tmp_path / "none.yaml")


class TestSettings:
    def test_env_override(self, monkeypatch):
        monkeypatch.setenv("QUIZ_PROGRESS_OVERCOME_POLICY", "retain")
        monkeypatch.setenv("QUIZ_PROGRESS_STORAGE_BUDGET_BYTES", "1234")

        settings = Settings()

        assert settings.overcome_policy == "retain"
        assert settings.storage_budget_bytes == 1234

    def test_init_arguments_win(self, monkeypatch, tmp_path):
        monkeypatch.setenv("QUIZ_PROGRESS_MERGE_STRATEGY", "trust_remote")
        settings = Settings(merge_strategy="trust_local", storage_dir=tmp_path)

        assert settings.merge_strategy == "trust_local"
        assert settings.resolved_storage_dir == tmp_path

    @pytest.mark.parametrize("name", ["OVERCOME_POLICY", "TRACKER_TRUST", "MERGE_STRATEGY"])
    def test_unknown_policy_value_rejected(self, monkeypatch, name):
        monkeypatch.setenv(f"QUIZ_PROGRESS_{name}", "newest_wins")
        with pytest.raises(ValidationError):
            Settings()

    def test_yaml_defaults(self):
        settings = Settings()
        assert settings.sync_connect_timeout_seconds == 10.0
        assert settings.sync_reconnect_timeout_seconds == 5.0
        assert settings.catalog_path.name == "categories.yaml"
        assert settings.backup_retention == 5


class TestTracker:
    def test_add_and_count(self, gateway):
        tracker = AnsweredQuestionsTracker(gateway, "alice")

        assert tracker.add(REG, "q1", 2) is True
        assert tracker.add(REG, "q1", 2) is False
        assert tracker.add(REG, "q2", 2) is True
        assert tracker.add(REG, "q3", 2) is False
        assert tracker.count(REG) == 2
        assert gateway.get("answeredQuestions_alice") == {REG: ["q1", "q2"]}

    def test_clear(self, gateway):
        tracker = AnsweredQuestionsTracker(gateway, "alice")
        tracker.add(REG, "q1", None)

        assert tracker.clear() is True
        assert tracker.clear() is False
        assert tracker.load() == {}

    def test_bad_shape_reads_empty(self, gateway):
        gateway.set("answeredQuestions_alice", ["not", "a", "map"])
        assert AnsweredQuestionsTracker(gateway, "alice").load() == {}


class TestEventChannel:
    def test_publish_and_unsubscribe(self):
        channel = EventChannel()
        received = []
        subscription = channel.subscribe(received.append)

        channel.publish(ProgressEvent(type=ProgressEventType.RESET, identity="alice"))
        subscription.unsubscribe()
        subscription.unsubscribe()
        channel.publish(ProgressEvent(type=ProgressEventType.RESET, identity="alice"))

        assert len(received) == 1
        assert channel.subscriber_count == 0
