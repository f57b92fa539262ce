"""Remote document store reached over a single WebSocket connection."""

import asyncio
import json
import uuid
from typing import Any

import structlog
import websockets
from websockets.asyncio.client import ClientConnection

from quiz_progress.errors import RemoteTimeout, RemoteUnavailable
from quiz_progress.sync.events import (
    document_get_event,
    document_put_event,
    subscribe_event,
    unsubscribe_event,
)
from quiz_progress.sync.remote import ChangeHandler, RemoteSubscription

logger = structlog.get_logger()


class _WebSocketSubscription:
    def __init__(self, store: "WebSocketDocumentStore", identity: str, handler: ChangeHandler):
        self._store = store
        self._identity = identity
        self._handler = handler

    async def close(self) -> None:
        handlers = self._store._change_handlers.get(self._identity, [])
        if self._handler in handlers:
            handlers.remove(self._handler)
        if not handlers and self._store.connected:
            await self._store._send(unsubscribe_event(str(uuid.uuid4()), self._identity))


class WebSocketDocumentStore:
    """Request/response and change feed over one WebSocket.

    Requests carry a ``request_id``; the receive loop resolves the matching
    future when the server answers. ``document.changed`` messages are
    dispatched to the handlers subscribed for that identity.

    Args:
        url: WebSocket URL of the document service.
        request_timeout: Seconds to wait for each answer.
    """

    def __init__(self, url: str, request_timeout: float = 5.0):
        self.url = url
        self.request_timeout = request_timeout
        self._ws: ClientConnection | None = None
        self._receiver: asyncio.Task | None = None
        self._pending: dict[str, asyncio.Future] = {}
        self._change_handlers: dict[str, list[ChangeHandler]] = {}

    @property
    def connected(self) -> bool:
        return self._ws is not None

    async def connect(self) -> None:
        try:
            self._ws = await websockets.connect(self.url)
        except (OSError, websockets.exceptions.WebSocketException) as exc:
            raise RemoteUnavailable(f"cannot connect to {self.url}: {exc}") from exc
        self._receiver = asyncio.create_task(self._receive_loop())
        logger.info("remote_store_connected", url=self.url)
        for identity in self._change_handlers:
            await self._send(subscribe_event(str(uuid.uuid4()), identity))

    async def disconnect(self) -> None:
        ws, self._ws = self._ws, None
        if self._receiver is not None:
            self._receiver.cancel()
            self._receiver = None
        if ws is not None:
            await ws.close()
        self._fail_pending(RemoteUnavailable("connection closed"))
        logger.info("remote_store_disconnected", url=self.url)

    async def get_document(self, identity: str) -> dict[str, Any] | None:
        reply = await self._request(document_get_event(str(uuid.uuid4()), identity))
        return reply.get("document")

    async def put_document(self, identity: str, document: dict[str, Any]) -> None:
        await self._request(document_put_event(str(uuid.uuid4()), identity, document))

    async def subscribe(self, identity: str, handler: ChangeHandler) -> RemoteSubscription:
        await self._ensure_connected()
        handlers = self._change_handlers.setdefault(identity, [])
        handlers.append(handler)
        if len(handlers) == 1:
            await self._send(subscribe_event(str(uuid.uuid4()), identity))
        return _WebSocketSubscription(self, identity, handler)

    async def _ensure_connected(self) -> None:
        if self._ws is None:
            await self.connect()

    async def _request(self, event: dict[str, Any]) -> dict[str, Any]:
        await self._ensure_connected()
        request_id = event["request_id"]
        future: asyncio.Future = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future
        try:
            await self._send(event)
            reply = await asyncio.wait_for(future, timeout=self.request_timeout)
        except asyncio.TimeoutError as exc:
            raise RemoteTimeout(f"{event['type']} timed out after {self.request_timeout}s") from exc
        finally:
            self._pending.pop(request_id, None)
        if reply.get("type") == "error":
            raise RemoteUnavailable(reply.get("message", "remote error"))
        return reply

    async def _send(self, event: dict[str, Any]) -> None:
        if self._ws is None:
            raise RemoteUnavailable("not connected")
        try:
            await self._ws.send(json.dumps(event))
        except websockets.exceptions.ConnectionClosed as exc:
            await self._drop_connection()
            raise RemoteUnavailable("connection closed") from exc

    async def _receive_loop(self) -> None:
        ws = self._ws
        if ws is None:
            return
        try:
            async for message in ws:
                try:
                    event = json.loads(message)
                except json.JSONDecodeError:
                    logger.warning("remote_store_bad_message")
                    continue
                await self._dispatch(event)
        except websockets.exceptions.ConnectionClosed:
            logger.warning("remote_store_connection_closed", url=self.url)
        finally:
            if self._ws is ws:
                await self._drop_connection()

    async def _drop_connection(self) -> None:
        self._ws = None
        self._fail_pending(RemoteUnavailable("connection lost"))

    def _fail_pending(self, exc: Exception) -> None:
        for future in self._pending.values():
            if not future.done():
                future.set_exception(exc)
        self._pending.clear()

    async def _dispatch(self, event: dict[str, Any]) -> None:
        event_type = event.get("type", "")
        request_id = event.get("request_id")
        if request_id and request_id in self._pending:
            future = self._pending[request_id]
            if not future.done():
                future.set_result(event)
            return

        if event_type == "document.changed":
            identity = event.get("identity", "")
            document = event.get("document")
            if document is None:
                return
            for handler in list(self._change_handlers.get(identity, [])):
                try:
                    await handler(document)
                except Exception:
                    logger.exception("remote_change_handler_error", identity=identity)
        elif event_type == "error":
            logger.warning("remote_store_error", message=event.get("message"))
