"""Read side: filtered pagination, single lookup and cached statistics."""
from __future__ import annotations

import logging
import math
from dataclasses import asdict, dataclass, field
from datetime import date
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from intake import models
from intake.cache import CacheBackend
from intake.config import settings
from intake.errors import ActorNotFound
from intake.repository import ActorRepository

logger = logging.getLogger(__name__)


@dataclass
class ActorFilters:
    """Optional list filters; ``None`` means unfiltered."""
    status: str | None = None
    gender: str | None = None
    search: str | None = None
    date_from: date | None = None
    date_to: date | None = None
    processed_from: date | None = None
    processed_to: date | None = None


@dataclass
class Page:
    """One page of actors with pagination metadata."""
    items: list[models.Actor] = field(default_factory=list)
    current_page: int = 1
    last_page: int = 1
    per_page: int = 15
    total: int = 0

    def pagination(self) -> dict[str, int]:
        return {
            "current_page": self.current_page,
            "last_page": self.last_page,
            "per_page": self.per_page,
            "total": self.total,
        }


class QueryService:
    """Read-only access to actors for the HTTP layer."""

    def __init__(self, session: AsyncSession, cache: CacheBackend, statistics_ttl: int | None = None) -> None:
        self.cache = cache
        self.repository = ActorRepository(session, cache)
        self.statistics_ttl = settings.cache.statistics_ttl if statistics_ttl is None else statistics_ttl

    async def list(
        self,
        filters: ActorFilters | None = None,
        per_page: int = 15,
        page: int = 1,
    ) -> Page:
        """Newest-first page of live actors; ``per_page`` is clamped to [1, 50]."""
        per_page = max(1, min(per_page, settings.api.max_per_page))
        page = max(1, page)

        items, total = await self.repository.paginate(
            asdict(filters or ActorFilters()),
            per_page=per_page,
            page=page,
        )
        return Page(
            items=items,
            current_page=page,
            last_page=max(1, math.ceil(total / per_page)),
            per_page=per_page,
            total=total,
        )

    async def get_by_uuid(self, uuid: str) -> models.Actor:
        """Raises ActorNotFound for unknown or soft-deleted actors."""
        actor = await self.repository.find_by_uuid(uuid)
        if actor is None:
            raise ActorNotFound(uuid)
        return actor

    async def statistics(self) -> dict[str, Any]:
        """Cached aggregate counts.

        The key is taken before counting, so a snapshot that raced a write lands
        under a superseded generation and is never served.
        """
        key = await self.repository.statistics_cache_key()
        cached = await self.cache.get(key)
        if cached is not None:
            return cached

        stats = await self.repository.statistics()
        if self.statistics_ttl:
            await self.cache.set(key, stats, ttl=self.statistics_ttl)
        logger.debug("Actor statistics recomputed")
        return stats
