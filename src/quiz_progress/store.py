"""Top-level facade wiring storage, repository and sync for one identity."""

from typing import Any

import structlog

from quiz_progress.config import Settings, get_settings, load_category_catalog
from quiz_progress.models.catalog import CategoryCatalog
from quiz_progress.models.progress import UserProgress
from quiz_progress.progress.repository import ProgressRepository
from quiz_progress.storage.gateway import StorageGateway, StorageInfo
from quiz_progress.sync.engine import SyncEngine
from quiz_progress.sync.remote import RemoteDocumentStore
from quiz_progress.sync.websocket_store import WebSocketDocumentStore

logger = structlog.get_logger()


class ProgressStore:
    """Everything the UI/session layer needs, built from settings.

    Args:
        settings: Application settings. Defaults to ``get_settings()``.
        gateway: Storage gateway. Built from settings when omitted.
        catalog: Category catalog. Loaded from ``config/categories.yaml`` when omitted.
        remote: Remote document store. Built from ``remote_url`` when omitted;
            with neither, the store runs local-only.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        gateway: StorageGateway | None = None,
        catalog: CategoryCatalog | None = None,
        remote: RemoteDocumentStore | None = None,
    ):
        self.settings = settings or get_settings()
        self.gateway = gateway or StorageGateway.from_settings(self.settings)
        self.catalog = catalog or load_category_catalog(self.settings.catalog_path)
        self.repository = ProgressRepository.from_settings(self.settings, self.gateway, self.catalog)
        self.remote = remote if remote is not None else self._remote_from_settings()
        self.sync: SyncEngine | None = None

    def _remote_from_settings(self) -> RemoteDocumentStore | None:
        if not self.settings.remote_url:
            return None
        return WebSocketDocumentStore(
            self.settings.remote_url,
            request_timeout=self.settings.sync_reconnect_timeout_seconds,
        )

    @property
    def identity(self) -> str | None:
        return self.repository.identity

    async def establish_identity(self, identity: str) -> UserProgress:
        """Load the identity's aggregate and, with a remote, pull-merge and start syncing."""
        identity = identity.strip()
        if not identity:
            raise ValueError("identity must not be empty")
        if self.sync is not None:
            await self.sync.stop()
            self.sync = None

        self.repository.load(identity)
        if self.remote is not None:
            self.sync = SyncEngine.from_settings(self.settings, self.repository, self.remote, identity)
            await self.sync.start()
        logger.info(
            "identity_established",
            identity=identity,
            persistent=self.gateway.persistent,
            sync=self.sync.state.value if self.sync else "local_only",
        )
        return self.repository.progress

    def storage_info(self) -> StorageInfo:
        return self.gateway.get_storage_info()

    def sync_status(self) -> dict[str, Any]:
        if self.sync is None:
            return {"identity": self.identity, "state": "local_only"}
        return self.sync.status()

    async def close(self) -> None:
        if self.sync is not None:
            await self.sync.stop()
            self.sync = None
        if isinstance(self.remote, WebSocketDocumentStore):
            await self.remote.disconnect()
