"""Application configuration using pydantic-settings."""

import functools
from pathlib import Path
from typing import Any

import yaml
from pydantic import Field
from pydantic_settings import BaseSettings, PydanticBaseSettingsSource, SettingsConfigDict

from quiz_progress.maintenance.repair import TrackerTrust
from quiz_progress.models.catalog import CategoryCatalog
from quiz_progress.models.progress import OvercomePolicy
from quiz_progress.sync.merge import MergeStrategy


def _find_project_root() -> Path:
    """Find project root by locating pyproject.toml."""
    current = Path(__file__).resolve()
    for parent in [current] + list(current.parents):
        if (parent / "pyproject.toml").exists():
            return parent
    return Path(__file__).resolve().parent.parent.parent


class YamlSettingsSource(PydanticBaseSettingsSource):
    """Custom settings source that loads from settings.yaml."""

    def get_field_value(self, field_name: str) -> tuple[Any, str, bool]:
        """Not used - we implement __call__ instead."""
        return None, "", False

    def __call__(self) -> dict[str, Any]:
        """Load settings from YAML file."""
        yaml_path = _find_project_root() / "config" / "settings.yaml"
        if not yaml_path.exists():
            return {}

        with open(yaml_path, encoding='utf-8') as f:
            data = yaml.safe_load(f) or {}

        # Flatten nested structure to match Settings field names
        flattened = {}
        if 'server' in data:
            flattened['host'] = data['server'].get('host')
            flattened['port'] = data['server'].get('port')
        if 'storage' in data:
            storage = data['storage']
            flattened['storage_dir'] = storage.get('dir')
            flattened['storage_budget_bytes'] = storage.get('budget_bytes')
            flattened['session_retention'] = storage.get('session_retention')
            flattened['exam_history_retention'] = storage.get('exam_history_retention')
            flattened['backup_retention'] = storage.get('backup_retention')
            flattened['scratch_prefixes'] = storage.get('scratch_prefixes')
        if 'progress' in data:
            progress = data['progress']
            flattened['overcome_policy'] = progress.get('overcome_policy')
            flattened['tracker_trust'] = progress.get('tracker_trust')
            flattened['auto_repair'] = progress.get('auto_repair')
            flattened['pass_threshold'] = progress.get('pass_threshold')
        if 'sync' in data:
            sync = data['sync']
            flattened['remote_url'] = sync.get('remote_url')
            flattened['merge_strategy'] = sync.get('merge_strategy')
            flattened['sync_debounce_seconds'] = sync.get('debounce_seconds')
            flattened['sync_connect_timeout_seconds'] = sync.get('connect_timeout_seconds')
            flattened['sync_reconnect_timeout_seconds'] = sync.get('reconnect_timeout_seconds')

        # Remove None values
        return {k: v for k, v in flattened.items() if v is not None}


class Settings(BaseSettings):
    """Application settings loaded from environment and config files."""

    model_config = SettingsConfigDict(
        env_prefix="QUIZ_PROGRESS_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Storage
    storage_dir: Path | None = Field(default=None)
    storage_budget_bytes: int = Field(default=5 * 1024 * 1024)
    session_retention: int = Field(default=50)
    exam_history_retention: int = Field(default=20)
    backup_retention: int = Field(default=5)
    scratch_prefixes: list[str] = Field(
        default_factory=lambda: [
            "tempMockResult",
            "tempMockQuestions",
            "mockExamProgress",
            "latestMockExam",
            "answeredQuestionsTracker",
        ]
    )

    # Progress repository
    overcome_policy: OvercomePolicy = Field(default=OvercomePolicy.REMOVE)
    tracker_trust: TrackerTrust = Field(default=TrackerTrust.USE_HIGHER)
    auto_repair: bool = Field(default=True)
    pass_threshold: float = Field(default=70.0)

    # Sync
    remote_url: str | None = Field(default=None)
    merge_strategy: MergeStrategy = Field(default=MergeStrategy.USE_HIGHER)
    sync_debounce_seconds: float = Field(default=2.0)
    sync_connect_timeout_seconds: float = Field(default=10.0)
    sync_reconnect_timeout_seconds: float = Field(default=5.0)

    # Server
    host: str = Field(default="127.0.0.1")
    port: int = Field(default=8000)

    # Paths
    project_root: Path = Field(default_factory=_find_project_root)

    @property
    def resolved_storage_dir(self) -> Path:
        if self.storage_dir is not None:
            return self.storage_dir
        return self.project_root / "data" / "storage"

    @property
    def catalog_path(self) -> Path:
        return self.project_root / "config" / "categories.yaml"

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        """Customise settings sources to include YAML file.

        Priority order (highest to lowest):
        1. init_settings (arguments passed to Settings())
        2. env_settings (environment variables)
        3. dotenv_settings (.env file)
        4. YamlSettingsSource (settings.yaml)
        5. file_secret_settings
        """
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            YamlSettingsSource(settings_cls),
            file_secret_settings,
        )


@functools.lru_cache
def get_settings() -> Settings:
    """Get application settings singleton."""
    return Settings()


def load_category_catalog(path: Path | None = None) -> CategoryCatalog:
    """Load the ordered category catalog from YAML."""
    catalog_path = path or _find_project_root() / "config" / "categories.yaml"
    if not catalog_path.exists():
        raise FileNotFoundError(f"Category catalog not found: {catalog_path}")
    with open(catalog_path, encoding='utf-8') as f:
        data = yaml.safe_load(f) or {}
    return CategoryCatalog.model_validate({"categories": data.get("categories", [])})
