from __future__ import annotations

from pkgrepo.storage import CacheStore

ALL_CATEGORY = "All"


class CategoryIndex:
    """Read-only category views over a CacheStore."""

    def __init__(self, store: CacheStore) -> None:
        self.store = store

    def list_categories(self) -> list[str]:
        return self.store.list_categories()

    def list_artifacts(self, category: str | None = None) -> list[str]:
        if category is None or category == ALL_CATEGORY:
            return self.store.list_filenames()
        return self.store.list_filenames(category)
