"""Key/value backends for the storage gateway (JSON files + fcntl.flock + atomic write)."""

import fcntl
import os
import tempfile
from pathlib import Path
from typing import Protocol
from urllib.parse import quote, unquote

from quiz_progress.errors import StorageUnavailable

_SUFFIX = ".json"
_LOCK_NAME = ".store.lock"


class StorageBackend(Protocol):
    """Raw string storage keyed by name."""

    persistent: bool

    def read(self, key: str) -> str | None: ...

    def write(self, key: str, text: str) -> None: ...

    def delete(self, key: str) -> None: ...

    def keys(self) -> list[str]: ...

    def size(self, key: str) -> int: ...


class MemoryBackend:
    """Non-persistent store used when the medium is unavailable, and in tests."""

    persistent = False

    def __init__(self, initial: dict[str, str] | None = None):
        self._data: dict[str, str] = dict(initial or {})

    def read(self, key: str) -> str | None:
        return self._data.get(key)

    def write(self, key: str, text: str) -> None:
        self._data[key] = text

    def delete(self, key: str) -> None:
        self._data.pop(key, None)

    def keys(self) -> list[str]:
        return list(self._data)

    def size(self, key: str) -> int:
        text = self._data.get(key)
        return len(text.encode("utf-8")) if text is not None else 0


class JsonFileBackend:
    """One file per key inside ``directory``.

    Args:
        directory: Directory holding the store. Created if missing.

    Raises:
        StorageUnavailable: The directory cannot be created or written.
    """

    persistent = True

    def __init__(self, directory: Path):
        self.directory = directory
        try:
            directory.mkdir(parents=True, exist_ok=True)
            probe = directory / ".probe"
            probe.write_text("ok")
            probe.unlink()
        except OSError as exc:
            raise StorageUnavailable(f"Cannot use storage directory {directory}: {exc}") from exc
        self._lock_path = directory / _LOCK_NAME

    def _path(self, key: str) -> Path:
        return self.directory / (quote(key, safe="") + _SUFFIX)

    def read(self, key: str) -> str | None:
        path = self._path(key)
        if not path.exists():
            return None
        with open(path, encoding="utf-8") as f:
            fcntl.flock(f, fcntl.LOCK_SH)
            text = f.read()
            fcntl.flock(f, fcntl.LOCK_UN)
        return text

    def write(self, key: str, text: str) -> None:
        path = self._path(key)
        with open(self._lock_path, "w") as lock_file:
            fcntl.flock(lock_file, fcntl.LOCK_EX)
            with tempfile.NamedTemporaryFile(
                "w", dir=self.directory, delete=False, suffix=".tmp", encoding="utf-8"
            ) as tmp:
                tmp.write(text)
            os.replace(tmp.name, path)

    def delete(self, key: str) -> None:
        with open(self._lock_path, "w") as lock_file:
            fcntl.flock(lock_file, fcntl.LOCK_EX)
            self._path(key).unlink(missing_ok=True)

    def keys(self) -> list[str]:
        return sorted(unquote(p.name[: -len(_SUFFIX)]) for p in self.directory.glob("*" + _SUFFIX))

    def size(self, key: str) -> int:
        path = self._path(key)
        return path.stat().st_size if path.exists() else 0
