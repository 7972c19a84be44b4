"""Tests for the submission pipeline: submit, process, retry, bulk and delete."""
from __future__ import annotations

from unittest.mock import AsyncMock

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncSession

from ai.extraction import AuthFailed, ServerError
from intake import models
from intake.config import PipelineSettings
from intake.errors import (
    BusinessRuleViolation,
    DuplicateEmail,
    MissingRequiredFields,
    NotFailed,
    ProcessingError,
    RetryLimitExceeded,
    ValidationFailed,
)
from intake.events import ACTOR_DELETED, ACTOR_PROCESSED, ACTOR_PROCESSING_FAILED, ACTOR_SUBMITTED
from intake.pipelines.submission import SubmissionInput
from intake.validation import LOW_QUALITY_MESSAGE

from .conftest import JANE_DESCRIPTION, JANE_FIELDS, completion


@pytest.fixture
def fired(event_bus):
    events = []
    for name in (ACTOR_SUBMITTED, ACTOR_PROCESSED, ACTOR_PROCESSING_FAILED, ACTOR_DELETED):
        event_bus.subscribe(
            name,
            lambda actor, error=None, _name=name, **_: events.append((_name, actor.uuid, error)),
        )
    return events


def jane(email: str = "jane@example.com", description: str = JANE_DESCRIPTION) -> SubmissionInput:
    return SubmissionInput(email=email, description=description, ip_address="10.0.0.1", user_agent="pytest")


async def count(session, model) -> int:
    return (await session.execute(select(func.count()).select_from(model))).scalar_one()


async def only_actor(session) -> models.Actor:
    return (await session.execute(select(models.Actor))).scalar_one()


@pytest.fixture
def failing_commits(monkeypatch):
    """Numbers (1-based, counted from the start of the test) of commits that raise."""
    failing = set()
    calls = []
    commit = AsyncSession.commit

    async def flaky_commit(self):
        calls.append(self)
        if len(calls) in failing:
            raise OperationalError("COMMIT", {}, Exception("database is locked"))
        await commit(self)

    monkeypatch.setattr(AsyncSession, "commit", flaky_commit)
    return failing


class TestSubmit:
    async def test_successful_submission_is_processed(self, pipeline, fired):
        actor = await pipeline.submit(jane())

        assert actor.status == "processed"
        assert (actor.first_name, actor.last_name, actor.address, actor.age) == ("Jane", "Doe", "5 Elm St", 29)
        assert actor.gender == "female"
        assert actor.display_gender == "Female"
        assert actor.full_name == "Jane Doe"
        assert actor.processed_at is not None
        assert actor.is_processed
        assert actor.extraction_payload["confidence_score"] == 0.93
        assert [name for name, _, _ in fired] == [ACTOR_SUBMITTED, ACTOR_PROCESSED]

    async def test_submission_record_tracks_the_attempt(self, pipeline):
        actor = await pipeline.submit(jane())

        [record] = actor.submissions
        assert record.processing_status == "completed"
        assert record.retry_count == 0
        assert record.request_payload == {"model": "fake-model", "description_length": len(JANE_DESCRIPTION)}
        assert record.response_payload["choices"][0]["message"]["content"]
        assert record.ip_address == "10.0.0.1"
        assert record.user_agent == "pytest"
        assert record.processing_duration is not None

    async def test_email_and_description_are_normalized(self, pipeline):
        actor = await pipeline.submit(jane(email="  Jane.Doe@Example.COM ", description=f"  {JANE_DESCRIPTION}\n"))

        assert actor.email == "jane.doe@example.com"
        assert actor.original_description == JANE_DESCRIPTION

    async def test_duplicate_email_is_rejected_case_insensitively(self, pipeline, transport, session):
        await pipeline.submit(jane())

        with pytest.raises(DuplicateEmail) as exc_info:
            await pipeline.submit(jane(email="JANE@example.com"))

        assert exc_info.value.reason == "duplicate_email"
        assert exc_info.value.status_code == 409
        assert len(transport.calls) == 1
        assert await count(session, models.Actor) == 1

    async def test_short_description_never_reaches_extraction(self, pipeline, transport, session, fired):
        with pytest.raises(ValidationFailed) as exc_info:
            await pipeline.submit(jane(description="too short"))

        assert "description" in exc_info.value.errors
        assert transport.calls == []
        assert fired == []
        assert await count(session, models.Actor) == 0

    async def test_low_quality_description_is_rejected(self, pipeline, transport, session):
        with pytest.raises(BusinessRuleViolation) as exc_info:
            await pipeline.submit(jane(description="aaaaaaaaaaaaaaaaaaaaaa"))

        assert exc_info.value.reason == "quality_gate"
        assert LOW_QUALITY_MESSAGE in exc_info.value.errors["description"]
        assert transport.calls == []
        assert await count(session, models.Actor) == 0

    async def test_disposable_email_is_rejected(self, pipeline, transport):
        with pytest.raises(BusinessRuleViolation) as exc_info:
            await pipeline.submit(jane(email="jane@guerrillamail.com"))

        assert exc_info.value.reason == "disposable_email"
        assert transport.calls == []

    async def test_configured_disposable_domains_are_rejected(self, make_pipeline, session, transport):
        pipeline = make_pipeline(session)
        pipeline.config = PipelineSettings(extra_disposable_domains=["burner.io"])

        with pytest.raises(BusinessRuleViolation):
            await pipeline.submit(jane(email="jane@burner.io"))


class TestProcessingFailures:
    async def test_extraction_failure_persists_failed_actor(self, pipeline, transport, session, fired):
        transport.script(ServerError(503))

        with pytest.raises(ServerError):
            await pipeline.submit(jane())

        actor = await only_actor(session)
        assert actor.status == "failed"
        assert actor.has_failed
        assert actor.processed_at is None
        assert actor.first_name == ""

        [record] = actor.submissions
        assert record.processing_status == "failed"
        assert record.retry_count == 1
        assert "server error" in record.error_message
        assert record.can_retry

        assert [name for name, _, _ in fired] == [ACTOR_SUBMITTED, ACTOR_PROCESSING_FAILED]
        assert isinstance(fired[-1][2], ServerError)

    async def test_missing_fields_fail_without_partial_update(self, pipeline, transport, session):
        transport.script(completion({"first_name": "Jane", "age": 29}))

        with pytest.raises(MissingRequiredFields) as exc_info:
            await pipeline.submit(jane())

        assert exc_info.value.fields == ["last_name", "address"]
        actor = await only_actor(session)
        assert actor.status == "failed"
        assert actor.first_name == ""
        assert actor.age is None
        assert actor.extraction_payload is None
        assert actor.submissions[-1].retry_count == 1

    async def test_out_of_range_age_fails(self, pipeline, transport):
        transport.script(completion({**JANE_FIELDS, "age": 212}))

        with pytest.raises(MissingRequiredFields) as exc_info:
            await pipeline.submit(jane())

        assert exc_info.value.fields == ["age"]

    async def test_unexpected_errors_are_wrapped(self, pipeline, extraction_client, session):
        extraction_client.extract = AsyncMock(side_effect=RuntimeError("boom"))

        with pytest.raises(ProcessingError) as exc_info:
            await pipeline.submit(jane())

        assert isinstance(exc_info.value.__cause__, RuntimeError)
        assert exc_info.value.status_code == 500
        actor = await only_actor(session)
        assert actor.status == "failed"
        assert actor.submissions[-1].error_message == "boom"

    async def test_failure_is_recorded_when_the_first_write_fails(
        self, pipeline, transport, session_factory, failing_commits, fired
    ):
        transport.script(AuthFailed())
        failing_commits.add(3)  # create, mark processing, record failure

        with pytest.raises(AuthFailed):
            await pipeline.submit(jane())

        async with session_factory() as fresh:
            actor = await only_actor(fresh)
            assert actor.status == "failed"
            [record] = actor.submissions
            assert (record.processing_status, record.retry_count) == ("failed", 1)
        assert [name for name, _, _ in fired] == [ACTOR_SUBMITTED, ACTOR_PROCESSING_FAILED]

    async def test_original_error_survives_when_failure_cannot_be_recorded(
        self, pipeline, transport, session_factory, failing_commits
    ):
        transport.script(ServerError(503))
        failing_commits.update({3, 4})

        with pytest.raises(ServerError):
            await pipeline.submit(jane())

        async with session_factory() as fresh:
            actor = await only_actor(fresh)
            assert actor.status == "pending"
            assert actor.submissions[-1].processing_status == "processing"

    async def test_failed_success_write_is_recorded_as_failure(self, pipeline, session_factory, failing_commits):
        failing_commits.add(3)  # create, mark processing, record success

        with pytest.raises(ProcessingError) as exc_info:
            await pipeline.submit(jane())

        assert isinstance(exc_info.value.__cause__, OperationalError)
        async with session_factory() as fresh:
            actor = await only_actor(fresh)
            assert (actor.status, actor.first_name, actor.extraction_payload) == ("failed", "", None)
            [record] = actor.submissions
            assert (record.processing_status, record.retry_count, record.response_payload) == ("failed", 1, None)

    async def test_listener_failures_do_not_change_the_outcome(self, pipeline, event_bus):
        def broken_listener(**_):
            raise RuntimeError("listener exploded")

        event_bus.subscribe(ACTOR_PROCESSED, broken_listener)

        actor = await pipeline.submit(jane())

        assert actor.status == "processed"


class TestRetry:
    async def _failed_actor(self, pipeline, transport, error=None) -> models.Actor:
        transport.script(error or AuthFailed())
        with pytest.raises(type(error or AuthFailed())):
            await pipeline.submit(jane())
        return await only_actor(pipeline.session)

    async def test_retry_requires_failed_status(self, pipeline):
        actor = await pipeline.submit(jane())

        with pytest.raises(NotFailed) as exc_info:
            await pipeline.retry(actor)

        assert exc_info.value.reason == "not_failed"
        assert exc_info.value.errors == {"current_status": ["processed"]}
        assert actor.status == "processed"
        assert len(actor.submissions) == 1

    async def test_successful_retry_opens_a_new_record(self, pipeline, transport):
        actor = await self._failed_actor(pipeline, transport)
        transport.script(completion(JANE_FIELDS))

        actor = await pipeline.retry(actor)

        assert actor.status == "processed"
        assert actor.first_name == "Jane"
        first, second = actor.submissions
        assert (first.processing_status, first.retry_count) == ("failed", 1)
        assert (second.processing_status, second.retry_count) == ("completed", 1)

    async def test_failed_retry_increments_retry_count(self, pipeline, transport):
        actor = await self._failed_actor(pipeline, transport)

        with pytest.raises(AuthFailed):
            await pipeline.retry(actor)

        assert actor.status == "failed"
        assert [s.retry_count for s in actor.submissions] == [1, 2]

    async def test_retry_cap_is_enforced(self, pipeline, transport):
        actor = await self._failed_actor(pipeline, transport)
        for _ in range(2):
            with pytest.raises(AuthFailed):
                await pipeline.retry(actor)

        calls = len(transport.calls)
        with pytest.raises(RetryLimitExceeded) as exc_info:
            await pipeline.retry(actor)

        assert exc_info.value.retry_count == 3
        assert exc_info.value.reason == "retry_limit_exceeded"
        assert len(transport.calls) == calls
        assert actor.status == "failed"
        assert len(actor.submissions) == 3
        assert not actor.latest_submission.can_retry

    async def test_zero_cap_disables_the_limit(self, pipeline, transport):
        pipeline.config = PipelineSettings(max_retries=0)
        actor = await self._failed_actor(pipeline, transport)
        for _ in range(3):
            with pytest.raises(AuthFailed):
                await pipeline.retry(actor)

        transport.script(completion(JANE_FIELDS))
        actor = await pipeline.retry(actor)

        assert actor.status == "processed"
        assert actor.latest_submission.retry_count == 4

    async def test_stale_retry_is_not_rejected(self, pipeline, transport, make_pipeline, session_factory):
        """Retries are not locked: two callers holding the failed actor both run."""
        actor = await self._failed_actor(pipeline, transport)
        transport.script(completion(JANE_FIELDS))

        first, second = make_pipeline(), make_pipeline()
        first_copy = await first.repository.find_by_uuid(actor.uuid)
        second_copy = await second.repository.find_by_uuid(actor.uuid)

        await first.retry(first_copy)
        await second.retry(second_copy)

        async with session_factory() as fresh:
            stored = (
                await fresh.execute(select(models.Actor).where(models.Actor.uuid == actor.uuid))
            ).scalar_one()
            assert stored.status == "processed"
            assert len(stored.submissions) == 3


class TestBulkProcessing:
    async def _pending(self, pipeline, n: int) -> list[models.Actor]:
        actors = []
        for i in range(n):
            actors.append(
                await pipeline.repository.create(
                    email=f"actor{i}@example.com",
                    description=f"My name is Actor Number{i}, 3{i} years old, I live on Main street.",
                )
            )
        return actors

    async def test_processes_oldest_first_and_survives_failures(self, pipeline, transport):
        created = await self._pending(pipeline, 3)
        transport.script(completion(JANE_FIELDS), AuthFailed(), completion(JANE_FIELDS))

        results = await pipeline.bulk_process_pending()

        assert [a.uuid for a in results] == [a.uuid for a in created]
        assert [a.status for a in results] == ["processed", "failed", "processed"]
        assert transport.calls == [a.original_description for a in created]

    async def test_database_error_on_one_actor_does_not_stop_the_batch(self, pipeline, transport, failing_commits):
        created = await self._pending(pipeline, 3)
        # commits 1-3 created the actors; 4-5 process the first one
        failing_commits.add(6)

        results = await pipeline.bulk_process_pending()

        assert [a.status for a in results] == ["processed", "pending", "processed"]
        assert transport.calls == [created[0].original_description, created[2].original_description]
        assert results[1].submissions[-1].processing_status == "pending"

    async def test_respects_limit(self, pipeline):
        await self._pending(pipeline, 3)

        results = await pipeline.bulk_process_pending(limit=2)

        assert len(results) == 2
        assert [a.email for a in results] == ["actor0@example.com", "actor1@example.com"]

    async def test_skips_deleted_and_non_pending(self, pipeline):
        created = await self._pending(pipeline, 3)
        await pipeline.delete(created[0])
        await pipeline.process_description(created[1])

        results = await pipeline.bulk_process_pending()

        assert [a.uuid for a in results] == [created[2].uuid]


class TestDelete:
    async def test_soft_delete_cascades_and_frees_the_email(self, pipeline, session, fired):
        actor = await pipeline.submit(jane())

        await pipeline.delete(actor)

        assert actor.deleted_at is not None
        assert all(s.deleted_at is not None for s in actor.submissions)
        assert fired[-1][0] == ACTOR_DELETED
        assert await pipeline.repository.find_by_uuid(actor.uuid) is None

        again = await pipeline.submit(jane())
        assert again.uuid != actor.uuid
        assert again.status == "processed"
        assert await count(session, models.Actor) == 2
