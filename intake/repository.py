"""Data access for actors and their submission records.

Every write commits and drops the cached statistics so the read side never
serves counts older than the last mutation.
"""

from __future__ import annotations

import logging
from datetime import date, datetime, time, timedelta
from typing import Any

from sqlalchemy import Select, func, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from . import models
from .cache import CacheBackend
from .errors import DuplicateEmail

logger = logging.getLogger(__name__)

STATISTICS_CACHE_KEY = "actor.statistics"
# Bumped on every write; snapshots are stored under the generation they were read in.
STATISTICS_VERSION_KEY = "actor.statistics.version"
RECENT_DAYS = 30


def _escape_like(term: str) -> str:
    return term.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def _start_of(value: date | datetime) -> datetime:
    if isinstance(value, datetime):
        return value.replace(tzinfo=None)
    return datetime.combine(value, time.min)


def _end_of(value: date | datetime) -> datetime:
    if isinstance(value, datetime):
        return value.replace(tzinfo=None)
    # Whole calendar day is inclusive
    return datetime.combine(value, time.max)


class ActorRepository:
    """Async repository over ``actors`` / ``actor_submissions``.

    Args:
        session: Request-scoped database session
        cache: Cache backend holding the statistics snapshot
    """

    def __init__(self, session: AsyncSession, cache: CacheBackend) -> None:
        self.session = session
        self.cache = cache

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def _live(self) -> Select:
        return select(models.Actor).where(models.Actor.deleted_at.is_(None))

    async def email_exists(self, email: str) -> bool:
        """True when a non-deleted actor already uses ``email`` (case-insensitive)."""
        stmt = (
            select(models.Actor.id)
            .where(func.lower(models.Actor.email) == email.strip().lower())
            .where(models.Actor.deleted_at.is_(None))
            .limit(1)
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none() is not None

    async def find_by_uuid(self, uuid: str, *, include_deleted: bool = False) -> models.Actor | None:
        stmt = select(models.Actor).where(models.Actor.uuid == uuid)
        if not include_deleted:
            stmt = stmt.where(models.Actor.deleted_at.is_(None))
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_pending(self, limit: int = 10) -> list[models.Actor]:
        """Oldest pending actors first."""
        stmt = (
            self._live()
            .where(models.Actor.status == models.ActorStatus.PENDING.value)
            .order_by(models.Actor.created_at.asc(), models.Actor.id.asc())
            .limit(limit)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    def _apply_filters(self, stmt: Select, filters: dict[str, Any]) -> Select:
        if filters.get("status"):
            stmt = stmt.where(models.Actor.status == filters["status"])
        if filters.get("gender"):
            stmt = stmt.where(models.Actor.gender == filters["gender"])
        if filters.get("search"):
            pattern = f"%{_escape_like(filters['search'].strip())}%"
            stmt = stmt.where(
                or_(
                    models.Actor.first_name.ilike(pattern, escape="\\"),
                    models.Actor.last_name.ilike(pattern, escape="\\"),
                )
            )
        if filters.get("date_from"):
            stmt = stmt.where(models.Actor.created_at >= _start_of(filters["date_from"]))
        if filters.get("date_to"):
            stmt = stmt.where(models.Actor.created_at <= _end_of(filters["date_to"]))
        if filters.get("processed_from"):
            stmt = stmt.where(models.Actor.processed_at >= _start_of(filters["processed_from"]))
        if filters.get("processed_to"):
            stmt = stmt.where(models.Actor.processed_at <= _end_of(filters["processed_to"]))
        return stmt

    async def paginate(
        self,
        filters: dict[str, Any] | None = None,
        *,
        per_page: int = 15,
        page: int = 1,
    ) -> tuple[list[models.Actor], int]:
        """Newest-first page of live actors plus the total match count."""
        filtered = self._apply_filters(self._live(), filters or {})

        count_stmt = select(func.count()).select_from(filtered.order_by(None).subquery())
        total = (await self.session.execute(count_stmt)).scalar_one()

        stmt = (
            filtered
            .order_by(models.Actor.created_at.desc(), models.Actor.id.desc())
            .offset((page - 1) * per_page)
            .limit(per_page)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all()), total

    async def _count(self, *conditions) -> int:
        stmt = select(func.count(models.Actor.id)).where(models.Actor.deleted_at.is_(None), *conditions)
        return (await self.session.execute(stmt)).scalar_one()

    async def statistics(self, now: datetime | None = None) -> dict[str, Any]:
        """Aggregate counts over live actors."""
        now = now or models.utcnow()
        status = models.Actor.status

        gender_stmt = (
            select(models.Actor.gender, func.count(models.Actor.id))
            .where(models.Actor.deleted_at.is_(None), models.Actor.gender.is_not(None))
            .group_by(models.Actor.gender)
        )
        by_gender = {gender: count for gender, count in (await self.session.execute(gender_stmt)).all()}

        day_ago = now - timedelta(days=1)
        submissions_24h = await self._count(models.Actor.created_at >= day_ago)
        processed_24h = await self._count(
            status == models.ActorStatus.PROCESSED.value,
            models.Actor.processed_at >= day_ago,
        )

        return {
            "total": await self._count(),
            "processed": await self._count(status == models.ActorStatus.PROCESSED.value),
            "pending": await self._count(status == models.ActorStatus.PENDING.value),
            "failed": await self._count(status == models.ActorStatus.FAILED.value),
            "recent": await self._count(models.Actor.created_at >= now - timedelta(days=RECENT_DAYS)),
            "by_gender": by_gender,
            "processing_rate": {
                "submissions_24h": submissions_24h,
                "processed_24h": processed_24h,
                "success_rate": round(processed_24h / submissions_24h * 100, 2) if submissions_24h else 0,
            },
        }

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def statistics_cache_key(self) -> str:
        version = await self.cache.get(STATISTICS_VERSION_KEY, 0)
        return f"{STATISTICS_CACHE_KEY}:{version}"

    async def invalidate_statistics(self) -> None:
        await self.cache.increment(STATISTICS_VERSION_KEY)

    async def create(
        self,
        *,
        email: str,
        description: str,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> models.Actor:
        """Persist a pending actor together with its first submission record.

        Raises:
            DuplicateEmail: If a concurrent submission won the email
        """
        actor = models.Actor(
            email=email,
            original_description=description,
            status=models.ActorStatus.PENDING.value,
        )
        actor.submissions.append(
            models.ActorSubmission(
                submission_email=email,
                original_description=description,
                processing_status=models.ProcessingStatus.PENDING.value,
                retry_count=0,
                submitted_at=models.utcnow(),
                ip_address=ip_address,
                user_agent=user_agent,
            )
        )
        self.session.add(actor)
        try:
            await self.session.commit()
        except IntegrityError as e:
            await self.session.rollback()
            logger.info(f"Email uniqueness violated on insert: {e.orig}")
            raise DuplicateEmail(email) from e

        await self.invalidate_statistics()
        logger.info(f"Created actor {actor.id}", extra={"actor_uuid": actor.uuid})
        return actor

    async def add_submission(self, actor: models.Actor, *, retry_count: int = 0) -> models.ActorSubmission:
        """Open a new submission record for another attempt on ``actor``."""
        previous = actor.latest_submission
        submission = models.ActorSubmission(
            submission_email=actor.email,
            original_description=actor.original_description,
            processing_status=models.ProcessingStatus.PENDING.value,
            retry_count=retry_count,
            submitted_at=models.utcnow(),
            ip_address=previous.ip_address if previous else None,
            user_agent=previous.user_agent if previous else None,
        )
        actor.submissions.append(submission)
        await self.session.flush()
        return submission

    async def save(self, actor: models.Actor) -> models.Actor:
        """Commit pending changes on ``actor`` and its submissions."""
        self.session.add(actor)
        await self.session.commit()
        await self.invalidate_statistics()
        return actor

    async def soft_delete(self, actor: models.Actor) -> models.Actor:
        """Soft-delete an actor and every submission it owns."""
        now = models.utcnow()
        actor.deleted_at = now
        for submission in actor.submissions:
            if submission.deleted_at is None:
                submission.deleted_at = now
        await self.session.commit()
        await self.invalidate_statistics()
        logger.info(f"Soft-deleted actor {actor.id}", extra={"actor_uuid": actor.uuid})
        return actor
