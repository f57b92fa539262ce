"""Static category catalog used to seed and validate category progress."""

from collections.abc import Iterator

from pydantic import BaseModel, Field


class CategoryInfo(BaseModel):
    """One catalog entry."""

    id: str
    total_questions: int = Field(ge=0)
    mock_number: int | None = None  # set for timed-exam categories

    @property
    def is_mock(self) -> bool:
        return self.mock_number is not None


class CategoryCatalog(BaseModel):
    """Ordered list of categories with their fixed question counts."""

    categories: list[CategoryInfo] = Field(default_factory=list)

    def __iter__(self) -> Iterator[CategoryInfo]:  # type: ignore[override]
        return iter(self.categories)

    def __len__(self) -> int:
        return len(self.categories)

    def get(self, category_id: str) -> CategoryInfo | None:
        for info in self.categories:
            if info.id == category_id:
                return info
        return None

    def total_for(self, category_id: str) -> int | None:
        info = self.get(category_id)
        return info.total_questions if info else None

    @property
    def mock_categories(self) -> list[CategoryInfo]:
        return [info for info in self.categories if info.is_mock]

    def mock_category_for(self, mock_number: int) -> CategoryInfo | None:
        for info in self.categories:
            if info.mock_number == mock_number:
                return info
        return None
