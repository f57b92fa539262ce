"""Remote document store interface and an in-process implementation."""

import asyncio
import copy
from collections.abc import Callable, Coroutine
from typing import Any, Protocol

import structlog

from quiz_progress.errors import RemoteUnavailable

logger = structlog.get_logger()

# Called with the new remote document whenever it changes
ChangeHandler = Callable[[dict[str, Any]], Coroutine[Any, Any, None]]


class RemoteSubscription(Protocol):
    async def close(self) -> None: ...


class RemoteDocumentStore(Protocol):
    """The remote side of the merge: one JSON document per identity."""

    async def get_document(self, identity: str) -> dict[str, Any] | None: ...

    async def put_document(self, identity: str, document: dict[str, Any]) -> None: ...

    async def subscribe(self, identity: str, handler: ChangeHandler) -> RemoteSubscription: ...


class _FeedSubscription:
    def __init__(self, store: "InMemoryDocumentStore", identity: str, handler: ChangeHandler):
        self._store = store
        self._identity = identity
        self._handler = handler

    async def close(self) -> None:
        handlers = self._store._subscribers.get(self._identity, [])
        if self._handler in handlers:
            handlers.remove(self._handler)


class InMemoryDocumentStore:
    """Document store held in process memory, with a switchable outage.

    Used for local-only development and in tests. Documents are deep-copied
    on the way in and out so callers never share state with the store.

    Args:
        latency: Seconds each call waits before answering.
    """

    def __init__(self, latency: float = 0.0):
        self.latency = latency
        self.online = True
        self.get_calls = 0
        self.put_calls = 0
        self._documents: dict[str, dict[str, Any]] = {}
        self._subscribers: dict[str, list[ChangeHandler]] = {}

    async def _delay(self) -> None:
        if self.latency:
            await asyncio.sleep(self.latency)
        if not self.online:
            raise RemoteUnavailable("remote store is offline")

    async def get_document(self, identity: str) -> dict[str, Any] | None:
        self.get_calls += 1
        await self._delay()
        document = self._documents.get(identity)
        return copy.deepcopy(document) if document is not None else None

    async def put_document(self, identity: str, document: dict[str, Any]) -> None:
        self.put_calls += 1
        await self._delay()
        self._documents[identity] = copy.deepcopy(document)
        await self._notify(identity, origin=None)

    async def subscribe(self, identity: str, handler: ChangeHandler) -> RemoteSubscription:
        if not self.online:
            raise RemoteUnavailable("remote store is offline")
        self._subscribers.setdefault(identity, []).append(handler)
        return _FeedSubscription(self, identity, handler)

    def seed(self, identity: str, document: dict[str, Any]) -> None:
        """Place a document without notifying subscribers."""
        self._documents[identity] = copy.deepcopy(document)

    async def write_from_elsewhere(self, identity: str, document: dict[str, Any]) -> None:
        """Simulate another device writing the document."""
        self._documents[identity] = copy.deepcopy(document)
        await self._notify(identity, origin="elsewhere")

    def document(self, identity: str) -> dict[str, Any] | None:
        return copy.deepcopy(self._documents.get(identity))

    async def _notify(self, identity: str, origin: str | None) -> None:
        document = self._documents.get(identity)
        if document is None:
            return
        for handler in list(self._subscribers.get(identity, [])):
            try:
                await handler(copy.deepcopy(document))
            except Exception:
                logger.exception("remote_change_handler_error", identity=identity, origin=origin)
