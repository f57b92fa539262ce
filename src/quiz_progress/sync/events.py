"""Message definitions for the remote document store protocol."""

from typing import Any

# Client → Server message builders


def document_get_event(request_id: str, identity: str) -> dict[str, Any]:
    """Build a document.get request."""
    return {
        "type": "document.get",
        "request_id": request_id,
        "identity": identity,
    }


def document_put_event(
    request_id: str,
    identity: str,
    document: dict[str, Any],
) -> dict[str, Any]:
    """Build a document.put request."""
    return {
        "type": "document.put",
        "request_id": request_id,
        "identity": identity,
        "document": document,
    }


def subscribe_event(request_id: str, identity: str) -> dict[str, Any]:
    """Build a subscribe request for an identity's change feed."""
    return {
        "type": "document.subscribe",
        "request_id": request_id,
        "identity": identity,
    }


def unsubscribe_event(request_id: str, identity: str) -> dict[str, Any]:
    """Build an unsubscribe request."""
    return {
        "type": "document.unsubscribe",
        "request_id": request_id,
        "identity": identity,
    }


# Server → Client event types
SERVER_EVENTS = {
    "document.result",
    "document.ack",
    "document.changed",
    "error",
}
