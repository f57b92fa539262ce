"""Shared model configuration and timestamp helpers."""

from datetime import datetime, timezone
from typing import Annotated, Any

from pydantic import AfterValidator, BaseModel, BeforeValidator, ConfigDict
from pydantic.alias_generators import to_camel


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def _ensure_utc(value: datetime) -> datetime:
    # Naive timestamps from older documents are treated as UTC
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _blank_to_none(value: Any) -> Any:
    if value == "":
        return None
    return value


Timestamp = Annotated[datetime, AfterValidator(_ensure_utc)]
OptionalTimestamp = Annotated[Timestamp | None, BeforeValidator(_blank_to_none)]


class CamelModel(BaseModel):
    """Base for persisted models: snake_case attributes, camelCase JSON."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )

    def to_document(self) -> dict[str, Any]:
        """Serialize to the persisted JSON shape."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)
