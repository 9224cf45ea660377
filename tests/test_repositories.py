"""Repository layer tests for the render pipeline.

Tests focus on logic beyond plain CRUD:
- Idempotent render creation per (job, image)
- Exclusive job claims and dispatch order
- Property data deletion across jobs, renders and attempts
- Latest-attempt lookup used to resume render loops

Simple CRUD operations are not tested (trust SQLAlchemy).
"""

from datetime import timedelta
from uuid import uuid4

import pytest

from gss.core.timezone import utcnow
from gss.models.attempt import GenerationAttempt, GenerationParameters, QCVerdict
from gss.models.job import Job, JobStatus
from gss.models.render import RenderStatus
from gss.repositories.attempt import GenerationAttemptRepository
from gss.repositories.job import JobRepository
from gss.repositories.render import RenderRepository

IMAGES = ["https://img.test/a.jpg", "https://img.test/b.jpg"]


@pytest.mark.asyncio
async def test_ensure_for_job_is_idempotent(session):
    """Re-running render creation for a job reuses existing rows.

    Scenario:
    1. Create renders for two images
    2. Classify one of them
    3. Ensure again: same ids, classification untouched, no duplicates
    """
    job = Job(property_id=uuid4(), source_images=IMAGES)
    await JobRepository(session).add(job)
    render_repo = RenderRepository(session)

    first = await render_repo.ensure_for_job(job.id, IMAGES)
    first[0].mark_classified("kitchen", 0.9, ["hdr"], "kitchen prompt")
    await render_repo.save(first[0])

    second = await render_repo.ensure_for_job(job.id, IMAGES)

    assert [render.id for render in second] == [render.id for render in first]
    assert second[0].status == RenderStatus.CLASSIFIED
    assert len(await render_repo.get_by_job(job.id)) == 2


@pytest.mark.asyncio
async def test_ensure_for_job_reopens_failed_renders(session):
    job = Job(property_id=uuid4(), source_images=IMAGES[:1])
    await JobRepository(session).add(job)
    render_repo = RenderRepository(session)

    (render,) = await render_repo.ensure_for_job(job.id, IMAGES[:1])
    render.mark_failed("classification failed: timeout")
    await render_repo.save(render)

    (reopened,) = await render_repo.ensure_for_job(job.id, IMAGES[:1])

    assert reopened.id == render.id
    assert reopened.status == RenderStatus.UNCLASSIFIED
    assert reopened.error_message is None


@pytest.mark.asyncio
async def test_get_next_queued_respects_order_and_availability(session):
    repo = JobRepository(session)
    now = utcnow()
    older = Job(property_id=uuid4(), source_images=IMAGES, created_at=now - timedelta(minutes=2))
    newer = Job(property_id=uuid4(), source_images=IMAGES, created_at=now - timedelta(minutes=1))
    delayed = Job(
        property_id=uuid4(),
        source_images=IMAGES,
        created_at=now - timedelta(minutes=3),
        available_at=now + timedelta(minutes=5),
    )
    for job in (newer, delayed, older):
        await repo.add(job)

    candidates = await repo.get_next_queued(now, limit=5)

    assert [job.id for job in candidates] == [older.id, newer.id]


@pytest.mark.asyncio
async def test_claim_is_exclusive(session):
    repo = JobRepository(session)
    job = Job(property_id=uuid4(), source_images=IMAGES)
    await repo.add(job)

    assert await repo.claim(job, "worker-a") is True
    assert job.status == JobStatus.PROCESSING
    assert job.worker_id == "worker-a"

    # A second claim on the now-processing row is rejected
    stale_copy = Job(id=job.id, property_id=job.property_id, source_images=IMAGES)
    assert await repo.claim(stale_copy, "worker-b") is False
    refreshed = await repo.get_by_id(job.id)
    assert refreshed.worker_id == "worker-a"


@pytest.mark.asyncio
async def test_latest_attempt_lookup(session):
    job = Job(property_id=uuid4(), source_images=IMAGES[:1])
    await JobRepository(session).add(job)
    (render,) = await RenderRepository(session).ensure_for_job(job.id, IMAGES[:1])
    attempts = GenerationAttemptRepository(session)

    assert await attempts.get_latest_by_render(render.id) is None

    for number in (1, 2, 3):
        attempt = GenerationAttempt.start(render.id, number, GenerationParameters())
        if number < 3:
            attempt.record_verdict(QCVerdict.FAIL, "artifacts")
        await attempts.add(attempt)

    latest = await attempts.get_latest_by_render(render.id)
    history = await attempts.get_by_render(render.id)

    assert latest.attempt_number == 3
    assert latest.in_flight
    assert [attempt.attempt_number for attempt in history] == [1, 2, 3]


@pytest.mark.asyncio
async def test_delete_property_data(session):
    """Deleting a property removes its jobs, renders and attempts only."""
    property_id = uuid4()
    other_property = uuid4()
    job_repo = JobRepository(session)
    render_repo = RenderRepository(session)
    attempt_repo = GenerationAttemptRepository(session)

    jobs = [
        Job(property_id=property_id, source_images=IMAGES),
        Job(property_id=property_id, source_images=IMAGES[:1]),
        Job(property_id=other_property, source_images=IMAGES[:1]),
    ]
    render_ids = []
    for job in jobs:
        await job_repo.add(job)
        for render in await render_repo.ensure_for_job(job.id, list(job.source_images)):
            await attempt_repo.add(GenerationAttempt.start(render.id, 1, GenerationParameters()))
            render_ids.append(render.id)

    deleted = await job_repo.delete_property_data(property_id)
    session.expunge_all()

    assert deleted == 2
    assert await job_repo.get_by_property(property_id) == []
    assert len(await job_repo.get_by_property(other_property)) == 1
    remaining = [render_id for render_id in render_ids if await render_repo.get_by_id(render_id)]
    assert remaining == [render_ids[-1]]
    assert len(await attempt_repo.get_by_render(render_ids[-1])) == 1
    assert await attempt_repo.get_by_render(render_ids[0]) == []


@pytest.mark.asyncio
async def test_request_cancel_sets_flag(session):
    repo = JobRepository(session)
    job = Job(property_id=uuid4(), source_images=IMAGES)
    await repo.add(job)

    await repo.request_cancel(job)

    assert (await repo.get_by_id(job.id)).cancel_requested is True
    assert await repo.count() == 1


@pytest.mark.asyncio
async def test_timestamps_round_trip_as_naive_utc(session):
    """Rows are written with naive UTC datetimes and read back unchanged."""
    repo = JobRepository(session)
    before = utcnow()
    job = Job(property_id=uuid4(), source_images=IMAGES)
    await repo.add(job)
    session.expire_all()

    stored = await repo.get_for_update(job.id)

    assert stored.created_at.tzinfo is None
    assert stored.available_at.tzinfo is None
    assert before <= stored.created_at <= utcnow()
    assert await repo.get_for_update(uuid4()) is None
