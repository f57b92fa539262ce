"""Tests for the sync engine against the in-process document store."""

import asyncio

import pytest

from quiz_progress.models.progress import UserProgress
from quiz_progress.models.session import Answer
from quiz_progress.sync.engine import SyncEngine, SyncState
from quiz_progress.sync.merge import MergeStrategy
from quiz_progress.sync.remote import InMemoryDocumentStore

REG = "The Regulatory Environment"


@pytest.fixture
def remote():
    return InMemoryDocumentStore()


@pytest.fixture
def engine(repository, remote):
    return SyncEngine(repository, remote, "alice", debounce_seconds=0.01,
                      connect_timeout=0.5, reconnect_timeout=0.5)


def _answer(repository, question_id: str, correct: bool = True) -> None:
    session = repository.start_session(category=REG)
    repository.record_answer(session, Answer(question_id=question_id, is_correct=correct))


def _remote_answered(remote, category: str = REG) -> int:
    return remote.document("alice")["categoryProgress"][category]["answeredQuestions"]


class TestStart:
    async def test_start_loads_and_pushes_first_document(self, engine, repository, remote):
        state = await engine.start()

        assert state is SyncState.SYNCED
        assert repository.identity == "alice"
        assert remote.document("alice")["schemaVersion"] == 2
        assert engine.push_count == 1
        assert engine.pending_changes is False

    async def test_start_times_out_into_offline(self, repository):
        slow = InMemoryDocumentStore(latency=0.5)
        engine = SyncEngine(repository, slow, "alice", connect_timeout=0.05)

        state = await engine.start()

        assert state is SyncState.OFFLINE
        assert "connect exceeded" in engine.last_error
        _answer(repository, "q1")
        assert repository.progress.total_questions_answered == 1

    async def test_unreachable_remote_goes_offline(self, engine, remote):
        remote.online = False

        assert await engine.start() is SyncState.OFFLINE
        assert engine.status()["state"] == "offline"

    async def test_start_merges_remote_progress(self, repository, remote, catalog):
        stored = UserProgress.seeded(catalog)
        stored.category_progress[REG].answered_questions = 7
        stored.total_questions_answered = 7
        remote.seed("alice", stored.to_document())
        engine = SyncEngine(repository, remote, "alice", strategy=MergeStrategy.TRUST_REMOTE)

        await engine.start()

        assert repository.progress.category_progress[REG].answered_questions == 7
        assert repository.progress.total_questions_answered == 7

    async def test_trust_remote_backs_up_local_first(self, repository, remote, catalog):
        repository.load("alice")
        _answer(repository, "q1")
        remote.seed("alice", UserProgress.seeded(catalog).to_document())
        engine = SyncEngine(repository, remote, "alice", strategy=MergeStrategy.TRUST_REMOTE)

        await engine.start()

        assert repository.progress.total_questions_answered == 0
        backup = repository.list_backups()[0]
        assert backup.reason == "before remote overwrite"
        assert backup.user_progress["totalQuestionsAnswered"] == 1

    async def test_invalid_remote_document_is_ignored(self, engine, repository, remote):
        remote.seed("alice", {"categoryProgress": "broken"})

        assert await engine.start() is SyncState.SYNCED
        assert _remote_answered(remote) == 0


class TestOfflineReconnect:
    async def test_offline_change_reaches_remote_after_one_cycle(self, engine, repository, remote):
        await engine.start()
        await engine.go_offline()

        _answer(repository, "q1")
        assert engine.pending_changes is True
        assert _remote_answered(remote) == 0
        cycles = engine.cycle_count

        state = await engine.reconnect()

        assert state is SyncState.SYNCED
        assert engine.cycle_count == cycles + 1
        assert _remote_answered(remote) == 1
        assert engine.pending_changes is False

    async def test_change_during_reconnect_put_is_pushed(self, repository, remote):
        engine = SyncEngine(repository, remote, "alice", debounce_seconds=0.01,
                            connect_timeout=2.0, reconnect_timeout=2.0)
        await engine.start()
        await engine.go_offline()
        _answer(repository, "q1")
        remote.latency = 0.2

        reconnecting = asyncio.create_task(engine.reconnect())
        await asyncio.sleep(0.3)
        _answer(repository, "q2")

        assert await reconnecting is SyncState.SYNCED
        await asyncio.sleep(0.5)

        assert _remote_answered(remote) == 2
        assert engine.pending_changes is False
        await engine.stop(flush=False)

    async def test_change_during_initial_put_is_pushed(self, repository, remote):
        remote.latency = 0.2
        engine = SyncEngine(repository, remote, "alice", debounce_seconds=0.01,
                            connect_timeout=2.0, reconnect_timeout=2.0)

        starting = asyncio.create_task(engine.start())
        await asyncio.sleep(0.3)
        _answer(repository, "q1")

        assert await starting is SyncState.SYNCED
        await asyncio.sleep(0.5)

        assert _remote_answered(remote) == 1
        assert engine.pending_changes is False
        await engine.stop(flush=False)

    async def test_reconnect_while_remote_down_stays_offline(self, engine, repository, remote):
        await engine.start()
        await engine.go_offline()
        remote.online = False

        assert await engine.retry() is SyncState.OFFLINE

        remote.online = True
        assert await engine.go_online() is SyncState.SYNCED

    async def test_reconnect_requires_start(self, engine):
        with pytest.raises(RuntimeError):
            await engine.reconnect()


class TestPushAndPull:
    async def test_local_change_pushed_after_debounce(self, engine, repository, remote):
        await engine.start()
        pushes = engine.push_count

        _answer(repository, "q1")
        _answer(repository, "q2")
        _answer(repository, "q3")
        await asyncio.sleep(0.1)

        assert engine.push_count == pushes + 1
        assert _remote_answered(remote) == 3
        assert engine.pending_changes is False

    async def test_flush_pushes_immediately(self, repository, remote):
        engine = SyncEngine(repository, remote, "alice", debounce_seconds=60)
        await engine.start()

        _answer(repository, "q1")
        assert await engine.flush() is True

        assert _remote_answered(remote) == 1

    async def test_overlapping_pulls_are_coalesced(self, engine, remote):
        await engine.start()
        remote.latency = 0.05

        results = await asyncio.gather(engine.pull(), engine.pull())

        assert results == [False, True]
        assert engine.discarded_pulls == 1

    async def test_remote_change_is_merged(self, engine, repository, remote):
        await engine.start()
        document = remote.document("alice")
        document["categoryProgress"][REG]["answeredQuestions"] = 5
        document["totalQuestionsAnswered"] = 5

        await remote.write_from_elsewhere("alice", document)
        await asyncio.sleep(0.1)

        assert repository.progress.category_progress[REG].answered_questions == 5
        assert repository.progress.total_questions_answered == 5

    async def test_stop_flushes_and_disconnects(self, repository, remote):
        engine = SyncEngine(repository, remote, "alice", debounce_seconds=60)
        await engine.start()
        _answer(repository, "q1")

        await engine.stop()

        assert engine.state is SyncState.DISCONNECTED
        assert _remote_answered(remote) == 1
        assert repository.events.subscriber_count == 0

    async def test_stop_waits_for_cancelled_pulls(self, engine, remote):
        await engine.start()
        remote.latency = 0.2
        await remote.write_from_elsewhere("alice", remote.document("alice"))
        pulls = list(engine._tasks)
        assert pulls

        await engine.stop(flush=False)

        assert all(task.done() for task in pulls)
        assert engine.pull_count == 1

    async def test_status(self, engine):
        await engine.start()

        status = engine.status()

        assert status["identity"] == "alice"
        assert status["state"] == "synced"
        assert status["strategy"] == "use_higher"
        assert status["pending_changes"] is False
        assert status["last_synced_at"] is not None
