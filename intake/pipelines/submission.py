"""Submission pipeline for actor descriptions.

Validation, duplicate check, persistence, extraction and failure/retry
bookkeeping. One pipeline instance serves one request-scoped session.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass

from sqlalchemy import inspect
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from ai.extraction import ExtractionClient
from ai.results import ExtractionResult
from intake import models
from intake.cache import CacheBackend
from intake.config import PipelineSettings, settings
from intake.errors import (
    DuplicateEmail,
    ExtractionError,
    IntakeError,
    MissingRequiredFields,
    NotFailed,
    ProcessingError,
    RetryLimitExceeded,
)
from intake.events import (
    ACTOR_DELETED,
    ACTOR_PROCESSED,
    ACTOR_PROCESSING_FAILED,
    ACTOR_SUBMITTED,
    EventBus,
)
from intake.pipelines.normalization import normalize_description, normalize_email
from intake.repository import ActorRepository
from intake.validation import ensure_extraction_complete, ensure_submission_allowed, ensure_valid_submission

logger = logging.getLogger(__name__)


@dataclass
class SubmissionInput:
    """Raw submission as received from a client."""
    email: str
    description: str
    ip_address: str | None = None
    user_agent: str | None = None


class SubmissionPipeline:
    """Orchestrates submit / process / retry / bulk / delete for actors.

    Args:
        session: Request-scoped database session
        extraction_client: Cached, retrying extraction client
        cache: Cache backend (statistics invalidation)
        events: Lifecycle event bus
        config: Pipeline settings (retry cap, bulk size, extra domains)
    """

    def __init__(
        self,
        session: AsyncSession,
        extraction_client: ExtractionClient,
        cache: CacheBackend,
        events: EventBus,
        config: PipelineSettings | None = None,
    ) -> None:
        self.session = session
        self.extraction_client = extraction_client
        self.events = events
        self.config = config or settings.pipeline
        self.repository = ActorRepository(session, cache)

    async def submit(self, submission: SubmissionInput) -> models.Actor:
        """Validate, persist and process a new actor description.

        Steps:
        1. Normalize email and description
        2. Structural validation
        3. Quality gate and disposable-domain gate
        4. Duplicate email check among live actors
        5. Persist pending actor + submission record
        6. Run extraction

        Returns:
            The persisted actor, ``processed`` on success

        Raises:
            ValidationFailed: Structural problems with the input
            BusinessRuleViolation: Gate rejection or duplicate email
            ExtractionError: Extraction failed (actor persisted as ``failed``)
            MissingRequiredFields: Extraction lacked name/address
        """
        email = normalize_email(submission.email)
        description = normalize_description(submission.description)

        ensure_valid_submission(email, description)
        ensure_submission_allowed(email, description, self.config.extra_disposable_domains)

        if await self.repository.email_exists(email):
            logger.info("Duplicate actor submission rejected", extra={"reason": "duplicate_email"})
            raise DuplicateEmail(email)

        actor = await self.repository.create(
            email=email,
            description=description,
            ip_address=submission.ip_address,
            user_agent=submission.user_agent,
        )
        self.events.emit(ACTOR_SUBMITTED, actor=actor)

        return await self.process_description(actor)

    async def process_description(self, actor: models.Actor) -> models.Actor:
        """Run extraction for ``actor`` against its latest submission record.

        Fields are merged only after the result passes validation; any failure
        leaves the actor ``failed`` with the record's ``retry_count`` bumped.
        """
        submission = actor.latest_submission
        if submission is None:
            submission = await self.repository.add_submission(actor)

        submission.mark_processing(
            {
                "model": self.extraction_client.model,
                "description_length": len(actor.original_description),
            }
        )
        await self.repository.save(actor)

        # A failed commit expires the instances; keep what the failure path logs.
        actor_id, actor_uuid = actor.id, actor.uuid
        logger.info(f"Processing actor {actor_id}", extra={"actor_uuid": actor_uuid})

        try:
            result = await self.extraction_client.extract(actor.original_description)
            ensure_extraction_complete(result, email=actor.email)
            await self._record_success(actor, submission, result)
        except (ExtractionError, MissingRequiredFields) as e:
            await self._record_failure(actor, submission, e, actor_id=actor_id, actor_uuid=actor_uuid)
            raise
        except Exception as e:
            logger.error(f"Actor {actor_id} processing failed unexpectedly: {e}", exc_info=True)
            await self._record_failure(actor, submission, e, actor_id=actor_id, actor_uuid=actor_uuid)
            raise ProcessingError(f"Processing failed: {e}") from e

        return actor

    async def retry(self, actor: models.Actor) -> models.Actor:
        """Re-run extraction for a failed actor.

        Raises:
            NotFailed: Actor is not in the ``failed`` state
            RetryLimitExceeded: Latest record reached the retry cap
        """
        if actor.status != models.ActorStatus.FAILED.value:
            raise NotFailed(actor.status, email=actor.email)

        latest = actor.latest_submission
        retry_count = latest.retry_count if latest else 0
        limit = self.config.max_retries
        if limit and retry_count >= limit:
            logger.info(
                f"Retry refused for actor {actor.id}: {retry_count} failures",
                extra={"actor_uuid": actor.uuid, "reason": "retry_limit_exceeded"},
            )
            raise RetryLimitExceeded(retry_count, limit, email=actor.email)

        actor.status = models.ActorStatus.PENDING.value
        actor.processed_at = None
        await self.repository.add_submission(actor, retry_count=retry_count)
        await self.repository.save(actor)

        logger.info(f"Retrying actor {actor.id} (attempt {retry_count + 1})", extra={"actor_uuid": actor.uuid})
        return await self.process_description(actor)

    async def bulk_process_pending(self, limit: int | None = None) -> list[models.Actor]:
        """Process up to ``limit`` pending actors, oldest first.

        A failing actor is logged and left ``failed``. A database error on one
        actor is rolled back and the batch carries on.
        """
        actors = await self.repository.get_pending(limit or self.config.bulk_limit)
        logger.info(f"Bulk processing {len(actors)} pending actors")

        batch = [(actor, actor.id, actor.uuid) for actor in actors]
        processed = 0
        for actor, actor_id, actor_uuid in batch:
            try:
                await self._reload_if_expired(actor)
                await self.process_description(actor)
                processed += 1
            except IntakeError as e:
                logger.warning(
                    f"Bulk processing failed for actor {actor_id}: {e.message}",
                    extra={"actor_uuid": actor_uuid, "kind": type(e).__name__},
                )
            except Exception:
                logger.exception(f"Bulk processing error for actor {actor_id}", extra={"actor_uuid": actor_uuid})
                await self.session.rollback()

        for actor, actor_id, _ in batch:
            try:
                await self._reload_if_expired(actor)
            except SQLAlchemyError:
                logger.exception(f"Could not reload actor {actor_id} after bulk processing")
                await self.session.rollback()

        logger.info(f"Bulk processing finished: {processed}/{len(actors)} processed")
        return actors

    async def delete(self, actor: models.Actor) -> None:
        """Soft-delete an actor and its submission history."""
        await self.repository.soft_delete(actor)
        self.events.emit(ACTOR_DELETED, actor=actor)

    async def _record_success(
        self,
        actor: models.Actor,
        submission: models.ActorSubmission,
        result: ExtractionResult,
    ) -> None:
        for field_name, value in result.actor_fields().items():
            setattr(actor, field_name, value)
        actor.status = models.ActorStatus.PROCESSED.value
        actor.processed_at = models.utcnow()
        actor.extraction_payload = result.to_storage()
        submission.mark_completed(result.raw_response)

        await self.repository.save(actor)

        logger.info(
            f"Actor {actor.id} processed",
            extra={
                "actor_uuid": actor.uuid,
                "confidence_score": result.confidence_score,
                "from_cache": result.from_cache,
            },
        )
        self.events.emit(ACTOR_PROCESSED, actor=actor)

    async def _reload_if_expired(self, instance: models.Base) -> None:
        if inspect(instance).unloaded:
            await self.session.refresh(instance)

    async def _record_failure(
        self,
        actor: models.Actor,
        submission: models.ActorSubmission,
        error: BaseException,
        *,
        actor_id: int,
        actor_uuid: str,
    ) -> None:
        """Persist ``failed`` on the actor and its record.

        Uncommitted attempt changes (merged fields, a failed commit) are rolled
        back first. The write is tried twice; the original error is never
        replaced by a bookkeeping error.
        """
        message = getattr(error, "message", None) or str(error)
        recorded = False

        for attempt in range(2):
            try:
                if attempt or self.session.dirty or isinstance(error, SQLAlchemyError):
                    await self.session.rollback()
                    await self.session.refresh(actor)
                    await self.session.refresh(submission)

                actor.status = models.ActorStatus.FAILED.value
                actor.processed_at = None
                submission.mark_failed(message)
                await self.repository.save(actor)
                recorded = True
                break
            except SQLAlchemyError:
                logger.exception(f"Could not record failure for actor {actor_id} (attempt {attempt + 1})")

        if not recorded:
            await self.session.rollback()

        logger.error(
            f"Actor {actor_id} processing failed: {message}",
            extra={
                "actor_uuid": actor_uuid,
                "kind": type(error).__name__,
                "retry_count": submission.retry_count if recorded else None,
                "recorded": recorded,
            },
        )
        self.events.emit(ACTOR_PROCESSING_FAILED, actor=actor, error=error)
