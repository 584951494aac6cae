"""In-process category name -> id cache.

Beginner terms:
- TTL: how long the cached map is trusted before a refresh.
- In-flight flag: marks that one caller is already refreshing; others wait briefly
  and then settle for the stale map instead of piling onto the catalog.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any

from .catalog import CatalogStore
from .models import Category

logger = logging.getLogger(__name__)

DEFAULT_CATEGORY_NAMES = ("Other Resources", "General Resources")
POLL_INTERVAL_S = 0.1


class CategoryCache:
    def __init__(
        self,
        catalog: CatalogStore,
        *,
        ttl_s: float = 300.0,
        max_wait_s: float = 5.0,
        default_category_id: int = 1,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._catalog = catalog
        self.ttl_s = ttl_s
        self.max_wait_s = max_wait_s
        self.default_category_id = default_category_id
        self._clock = clock
        self._map: dict[str, int] = {}
        self._categories: list[Category] = []
        self._loaded_at: float | None = None
        self._last_update: datetime | None = None
        self._refreshing = False
        self._flag_lock = threading.Lock()

    def get_map(self) -> dict[str, int]:
        """Return the name -> id map, refreshing it when expired."""
        if not self._is_expired():
            return dict(self._map)

        if not self._claim_refresh():
            self._wait_for_refresh()
            return dict(self._map)

        try:
            self._refresh()
        except Exception as exc:  # noqa: BLE001
            logger.warning(
                "category_cache event=refresh_failed stale_size=%d reason=%s",
                len(self._map),
                exc,
            )
        finally:
            self._refreshing = False
        return dict(self._map)

    def get_id(self, name: str) -> int | None:
        return self._map.get(name)

    def resolve(self, name: str | None) -> int:
        """Map a category name to an id; unknown names get the default category."""
        if name:
            category_map = self.get_map()
            category_id = category_map.get(name.strip())
            if category_id is not None:
                return category_id
        return self.default_id()

    def default_id(self) -> int:
        return pick_default_category(self._map, self.default_category_id)

    def category_names(self) -> list[str]:
        return [category.name for category in self._categories]

    def force_refresh(self) -> dict[str, int]:
        self._loaded_at = None
        return self.get_map()

    def clear(self) -> None:
        self._map = {}
        self._categories = []
        self._loaded_at = None
        self._last_update = None

    def status(self) -> dict[str, Any]:
        age_s = None
        if self._loaded_at is not None:
            age_s = round(self._clock() - self._loaded_at, 3)
        return {
            "cached": self._loaded_at is not None,
            "last_update": self._last_update.isoformat() if self._last_update else None,
            "age_s": age_s,
            "size": len(self._map),
            "expired": self._is_expired(),
        }

    def warmup(self) -> None:
        try:
            size = len(self.force_refresh())
        except Exception:  # noqa: BLE001
            logger.exception("category_cache event=warmup_failed")
            return
        logger.info("category_cache event=warmup size=%d", size)

    def _is_expired(self) -> bool:
        if self._loaded_at is None:
            return True
        return self._clock() - self._loaded_at >= self.ttl_s

    def _claim_refresh(self) -> bool:
        with self._flag_lock:
            if self._refreshing:
                return False
            self._refreshing = True
            return True

    def _wait_for_refresh(self) -> None:
        deadline = self._clock() + self.max_wait_s
        while self._refreshing and self._clock() < deadline:
            time.sleep(POLL_INTERVAL_S)
        if self._refreshing:
            logger.warning(
                "category_cache event=wait_expired max_wait_s=%.1f stale_size=%d",
                self.max_wait_s,
                len(self._map),
            )

    def _refresh(self) -> None:
        categories = self._catalog.list_categories()
        self._categories = list(categories)
        self._map = {category.name: category.id for category in categories}
        self._loaded_at = self._clock()
        self._last_update = datetime.now(tz=UTC)
        logger.info("category_cache event=refreshed size=%d", len(self._map))


def pick_default_category(category_map: dict[str, int], fallback_id: int) -> int:
    """Default bucket: a catch-all category by name, else the first known one."""
    for name in DEFAULT_CATEGORY_NAMES:
        category_id = category_map.get(name)
        if category_id is not None:
            return category_id
    for category_id in category_map.values():
        return category_id
    return fallback_id
