"""Bidirectional sync between the local aggregate and a remote document store.

Lifecycle::

    DISCONNECTED -> CONNECTING -> SYNCED | OFFLINE
    OFFLINE -> RECONNECTING -> SYNCED | OFFLINE

The local write path never waits on the remote: repository mutations emit
events, the engine marks itself dirty and pushes a snapshot once the
debounce window has passed without further changes. While offline, changes
stay marked dirty and are pushed by the pull-merge-push cycle on reconnect.
"""

import asyncio
from collections.abc import Coroutine
from datetime import datetime
from enum import StrEnum
from typing import Any

import structlog
from pydantic import ValidationError

from quiz_progress.errors import RemoteTimeout, RemoteUnavailable, StorageQuotaExceeded
from quiz_progress.models.base import utcnow
from quiz_progress.models.progress import UserProgress
from quiz_progress.progress.events import ProgressEvent, ProgressEventType, Subscription
from quiz_progress.progress.repository import ProgressRepository
from quiz_progress.sync.merge import MergeStrategy, merge_progress
from quiz_progress.sync.remote import RemoteDocumentStore, RemoteSubscription

logger = structlog.get_logger()

# Local events that change what the remote should hold
_PUSH_EVENTS = {
    ProgressEventType.ANSWER_RECORDED,
    ProgressEventType.SESSION_COMPLETED,
    ProgressEventType.RESET,
    ProgressEventType.REPLACED,
    ProgressEventType.SAVE_FAILED,  # the change still lives in memory
}


class SyncState(StrEnum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    SYNCED = "synced"
    OFFLINE = "offline"
    RECONNECTING = "reconnecting"


class SyncEngine:
    """Keeps one identity's aggregate in step with the remote copy.

    Args:
        repository: Repository holding the local aggregate.
        remote: Remote document store.
        identity: Identity whose document is synced.
        strategy: Merge strategy applied on every pull.
        debounce_seconds: Quiet period before a local change is pushed.
        connect_timeout: Bound on the initial connect, after which the engine
            continues offline.
        reconnect_timeout: Bound on each reconnect and remote call.
    """

    def __init__(
        self,
        repository: ProgressRepository,
        remote: RemoteDocumentStore,
        identity: str,
        strategy: MergeStrategy | str = MergeStrategy.USE_HIGHER,
        debounce_seconds: float = 2.0,
        connect_timeout: float = 10.0,
        reconnect_timeout: float = 5.0,
    ):
        self.repository = repository
        self.remote = remote
        self.identity = identity
        self.strategy = MergeStrategy(strategy)
        self.debounce_seconds = debounce_seconds
        self.connect_timeout = connect_timeout
        self.reconnect_timeout = reconnect_timeout

        self.state = SyncState.DISCONNECTED
        self.last_synced_at: datetime | None = None
        self.last_error: str | None = None
        self.push_count = 0
        self.pull_count = 0
        self.discarded_pulls = 0
        self.cycle_count = 0

        self._loop: asyncio.AbstractEventLoop | None = None
        self._local_subscription: Subscription | None = None
        self._remote_subscription: RemoteSubscription | None = None
        self._push_handle: asyncio.TimerHandle | None = None
        self._tasks: set[asyncio.Task] = set()
        self._pull_generation = 0
        self._dirty = False
        self._change_seq = 0
        self._applying_remote = False

    @classmethod
    def from_settings(
        cls,
        settings,
        repository: ProgressRepository,
        remote: RemoteDocumentStore,
        identity: str,
    ) -> "SyncEngine":
        return cls(
            repository,
            remote,
            identity,
            strategy=settings.merge_strategy,
            debounce_seconds=settings.sync_debounce_seconds,
            connect_timeout=settings.sync_connect_timeout_seconds,
            reconnect_timeout=settings.sync_reconnect_timeout_seconds,
        )

    @property
    def pending_changes(self) -> bool:
        return self._dirty

    # ------------------------------------------------------------------
    # Lifecycle

    async def start(self) -> SyncState:
        """Pull and merge, then start pushing local changes.

        Never raises for remote failures: if the remote cannot be reached
        within ``connect_timeout`` the engine continues in ``OFFLINE``.
        """
        if self.state is not SyncState.DISCONNECTED:
            return self.state
        self._loop = asyncio.get_running_loop()
        if self.repository.identity != self.identity:
            self.repository.load(self.identity)

        # Changes made while the first cycle is in flight must still be marked dirty
        self._local_subscription = self.repository.events.subscribe(self._on_local_event)
        self._set_state(SyncState.CONNECTING)
        try:
            await asyncio.wait_for(self._connect(), timeout=self.connect_timeout)
        except asyncio.TimeoutError:
            self._mark_offline(RemoteTimeout(f"connect exceeded {self.connect_timeout}s"))
        except RemoteUnavailable as exc:
            self._mark_offline(exc)
        return self.state

    async def stop(self, flush: bool = True) -> None:
        """Stop syncing, pushing any pending change first when connected."""
        if flush:
            await self.flush()
        self._cancel_push_timer()
        if self._local_subscription is not None:
            self._local_subscription.unsubscribe()
            self._local_subscription = None
        await self._close_remote_subscription()
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
        self._set_state(SyncState.DISCONNECTED)

    async def go_offline(self, reason: str = "network lost") -> None:
        """Enter offline mode. Local changes keep being recorded and buffered."""
        if self.state is SyncState.DISCONNECTED:
            return
        self._cancel_push_timer()
        await self._close_remote_subscription()
        self._mark_offline(RemoteUnavailable(reason))

    async def reconnect(self) -> SyncState:
        """Re-subscribe and run one fresh pull-merge-push cycle."""
        if self.state is SyncState.DISCONNECTED:
            raise RuntimeError("Sync engine is not started")
        if self.state is SyncState.SYNCED:
            return self.state
        self._set_state(SyncState.RECONNECTING)
        await self._close_remote_subscription()
        try:
            await asyncio.wait_for(self._connect(), timeout=self.reconnect_timeout)
        except asyncio.TimeoutError:
            self._mark_offline(RemoteTimeout(f"reconnect exceeded {self.reconnect_timeout}s"))
        except RemoteUnavailable as exc:
            self._mark_offline(exc)
        return self.state

    go_online = reconnect
    retry = reconnect

    async def flush(self) -> bool:
        """Push a pending change now instead of waiting for the debounce."""
        self._cancel_push_timer()
        if not self._dirty or self.state is not SyncState.SYNCED:
            return False
        await self._push()
        return not self._dirty

    async def pull(self) -> bool:
        """Pull and merge now. Returns False if a newer pull superseded this one."""
        return await self._pull_merge_push()

    def status(self) -> dict[str, Any]:
        return {
            "identity": self.identity,
            "state": self.state.value,
            "strategy": self.strategy.value,
            "pending_changes": self._dirty,
            "last_synced_at": self.last_synced_at.isoformat() if self.last_synced_at else None,
            "last_error": self.last_error,
            "pushes": self.push_count,
            "pulls": self.pull_count,
            "discarded_pulls": self.discarded_pulls,
        }

    # ------------------------------------------------------------------
    # Internals

    def _set_state(self, state: SyncState) -> None:
        if state is self.state:
            return
        logger.info(
            "sync_state_changed",
            identity=self.identity,
            previous=self.state.value,
            state=state.value,
        )
        self.state = state

    def _mark_offline(self, exc: Exception) -> None:
        self.last_error = str(exc)
        logger.warning("sync_offline", identity=self.identity, error=self.last_error)
        self._set_state(SyncState.OFFLINE)

    async def _connect(self) -> None:
        await self._pull_merge_push()
        self._remote_subscription = await self.remote.subscribe(
            self.identity, self._on_remote_change
        )
        self._set_state(SyncState.SYNCED)
        self.last_error = None
        # Picks up changes recorded while the cycle's put was in flight
        self._arm_push_timer()

    async def _close_remote_subscription(self) -> None:
        subscription, self._remote_subscription = self._remote_subscription, None
        if subscription is None:
            return
        try:
            await subscription.close()
        except RemoteUnavailable:
            logger.debug("remote_unsubscribe_failed", identity=self.identity)

    def _parse_remote(self, document: dict[str, Any] | None) -> UserProgress | None:
        if document is None:
            return None
        migrated = self.repository.migrations.migrate(document).document
        try:
            return UserProgress.model_validate(migrated)
        except ValidationError as exc:
            logger.warning(
                "remote_document_invalid", identity=self.identity, errors=exc.error_count()
            )
            return None

    async def _pull_merge_push(self) -> bool:
        self._pull_generation += 1
        generation = self._pull_generation
        document = await self.remote.get_document(self.identity)
        if generation != self._pull_generation:
            self.discarded_pulls += 1
            logger.debug("sync_pull_superseded", identity=self.identity, generation=generation)
            return False
        self.pull_count += 1
        self.cycle_count += 1

        remote = self._parse_remote(document)
        local = self.repository.progress
        merged = merge_progress(local, remote, self.strategy, self.repository.session_retention)
        if merged.to_document() != local.to_document():
            if self.strategy is MergeStrategy.TRUST_REMOTE:
                self.repository.create_backup("before remote overwrite")
            self._applying_remote = True
            try:
                self.repository.replace(merged)
            except StorageQuotaExceeded:
                logger.error("sync_merge_not_persisted", identity=self.identity)
            finally:
                self._applying_remote = False

        result = self.repository.to_document()
        if document is None or self._dirty or result != (remote.to_document() if remote else None):
            await self._put(result)
        else:
            self.last_synced_at = utcnow()
        return True

    async def _put(self, document: dict[str, Any]) -> None:
        pushed = self._change_seq
        await asyncio.wait_for(
            self.remote.put_document(self.identity, document),
            timeout=self.reconnect_timeout,
        )
        # A change made while the put was in flight still needs pushing
        if self._change_seq == pushed:
            self._dirty = False
        self.push_count += 1
        self.last_synced_at = utcnow()
        logger.debug("sync_pushed", identity=self.identity, pushes=self.push_count)

    async def _push(self) -> None:
        if self.state is not SyncState.SYNCED:
            return
        try:
            await self._put(self.repository.to_document())
        except asyncio.TimeoutError:
            self._mark_offline(RemoteTimeout(f"push exceeded {self.reconnect_timeout}s"))
        except RemoteUnavailable as exc:
            self._mark_offline(exc)

    async def _pull_safely(self) -> None:
        try:
            await asyncio.wait_for(self._pull_merge_push(), timeout=self.reconnect_timeout)
        except asyncio.TimeoutError:
            self._mark_offline(RemoteTimeout(f"pull exceeded {self.reconnect_timeout}s"))
        except RemoteUnavailable as exc:
            self._mark_offline(exc)

    def _spawn(self, coro: Coroutine[Any, Any, None]) -> None:
        loop = self._loop or asyncio.get_running_loop()
        task = loop.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def _on_local_event(self, event: ProgressEvent) -> None:
        if event.type not in _PUSH_EVENTS or self._applying_remote:
            return
        self._dirty = True
        self._change_seq += 1
        if self.state is SyncState.SYNCED and self._loop is not None:
            self._loop.call_soon_threadsafe(self._arm_push_timer)

    async def _on_remote_change(self, document: dict[str, Any]) -> None:
        if self.state is SyncState.SYNCED:
            self._spawn(self._pull_safely())

    def _arm_push_timer(self) -> None:
        # Each change restarts the quiet period
        self._cancel_push_timer()
        if self._loop is None or not self._dirty:
            return
        self._push_handle = self._loop.call_later(self.debounce_seconds, self._fire_push)

    def _fire_push(self) -> None:
        self._push_handle = None
        if self._dirty:
            self._spawn(self._push())

    def _cancel_push_timer(self) -> None:
        if self._push_handle is not None:
            self._push_handle.cancel()
            self._push_handle = None
