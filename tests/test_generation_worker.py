from contextlib import contextmanager

from sqlalchemy import event
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from photostudio.database import crud
from photostudio.database.models import Generation
from photostudio.exceptions import ContentPolicyError, GenerationTimeoutError
from photostudio.services.generation_state import new_visual, transition_visual
from photostudio.services.generation_worker import GenerationWorker, describe_error
from photostudio.services.job_queue import GenerationJob
from photostudio.utils.api_retry import APIRetryHandler, CircuitBreakerOpen

from tests.conftest import USER_ID


def job_for(generation, count):
    slots = [
        {"index": index, "type": f"slot_{index}", "prompt": f"prompt {index}", "aspect_ratio": "4:5", "resolution": "2K"}
        for index in range(count)
    ]
    return GenerationJob(generation.id, USER_ID, slots)


async def put_processing(session, generation, count):
    generation.visuals = [new_visual(index, f"slot_{index}", f"prompt {index}") for index in range(count)]
    generation.status = "processing"
    await session.commit()


def make_worker(db, backend, storage, events, locks, retry_handler):
    return GenerationWorker(db, backend, storage, events, locks, retry_handler, concurrency=3, persist_retry_delay=0)


@contextmanager
def failing_commits(predicate, times=None):
    """Raise StaleDataError on commits that write a Generation matching predicate"""
    failures = []

    def before_commit(sync_session):
        if times is not None and len(failures) >= times:
            return
        for obj in sync_session.dirty:
            if isinstance(obj, Generation) and predicate(obj):
                failures.append(obj.id)
                raise StaleDataError("version mismatch")

    event.listen(Session, "before_commit", before_commit)
    try:
        yield failures
    finally:
        event.remove(Session, "before_commit", before_commit)


async def test_worker_writes_every_slot(db, session, generation, backend, storage, events, locks, retry_handler):
    await put_processing(session, generation, 3)
    worker = make_worker(db, backend, storage, events, locks, retry_handler)

    await worker.process_job(job_for(generation, 3))

    stored = await crud.get_generation(session, generation.id)
    assert stored.status == "completed"
    assert [visual["status"] for visual in stored.visuals] == ["completed"] * 3
    assert all(visual["generated_at"] for visual in stored.visuals)
    assert {call["resolution"] for call in backend.calls} == {"2K"}


async def test_worker_discards_results_after_reset(db, session, generation, backend, storage, events, locks,
                                                   retry_handler):
    await put_processing(session, generation, 2)
    generation.status = "pending"
    await session.commit()
    worker = make_worker(db, backend, storage, events, locks, retry_handler)

    await worker.process_job(job_for(generation, 2))

    stored = await crud.get_generation(session, generation.id)
    assert stored.status == "pending"
    assert [visual["status"] for visual in stored.visuals] == ["pending", "pending"]
    assert backend.calls == []


async def test_worker_timeout_fails_slot(db, session, generation, backend, storage, events, locks):
    await put_processing(session, generation, 2)
    backend.delay = 0.2
    retry = APIRetryHandler(max_retries=3, base_delay=0, max_delay=0, timeout=0.05)
    worker = make_worker(db, backend, storage, events, locks, retry)

    await worker.process_job(job_for(generation, 2))

    stored = await crud.get_generation(session, generation.id)
    assert stored.status == "failed"
    assert "timed out" in stored.visuals[0]["error"]
    # One attempt per slot
    assert len(backend.calls) == 2


async def test_worker_storage_failure_is_isolated(db, session, generation, backend, storage, events, locks,
                                                  retry_handler):
    await put_processing(session, generation, 2)
    original_store = storage.store
    calls = []

    async def flaky_store(data, mime_type):
        calls.append(1)
        if len(calls) == 1:
            raise OSError("disk full")
        return await original_store(data, mime_type)

    storage.store = flaky_store
    worker = make_worker(db, backend, storage, events, locks, retry_handler)

    await worker.process_job(job_for(generation, 2))

    stored = await crud.get_generation(session, generation.id)
    assert sorted(visual["status"] for visual in stored.visuals) == ["completed", "failed"]
    assert stored.status == "completed"


async def test_settle_fails_slots_outside_the_job(db, session, generation, backend, storage, events, locks,
                                                  retry_handler):
    await put_processing(session, generation, 3)
    worker = make_worker(db, backend, storage, events, locks, retry_handler)

    # Job covers slots 0 and 1 only
    await worker.process_job(job_for(generation, 2))

    stored = await crud.get_generation(session, generation.id)
    assert stored.visuals[2]["status"] == "failed"
    assert stored.visuals[2]["error"] == "Not processed"
    assert stored.status == "completed"


async def test_concurrent_slot_writes_are_not_lost(db, session, generation, backend, storage, events, locks,
                                                   retry_handler):
    await put_processing(session, generation, 6)
    worker = GenerationWorker(db, backend, storage, events, locks, retry_handler, concurrency=6,
                              persist_retry_delay=0)

    await worker.process_job(job_for(generation, 6))

    stored = await crud.get_generation(session, generation.id)
    assert stored.completed_visuals_count == 6
    assert stored.progress_percent == 100


def test_describe_error():
    assert describe_error(ContentPolicyError("nope")) == "Content policy refusal: nope"
    assert describe_error(GenerationTimeoutError("timed out")) == "timed out"
    assert describe_error(CircuitBreakerOpen("open")) == "Image service temporarily unavailable"
    assert describe_error(RuntimeError()) == "RuntimeError"


# ==================== PERSISTENCE RETRY ====================

async def test_conflicting_write_is_retried(db, session, generation, backend, storage, events, locks, retry_handler):
    await put_processing(session, generation, 3)
    worker = make_worker(db, backend, storage, events, locks, retry_handler)

    with failing_commits(lambda row: True, times=1) as failures:
        await worker.process_job(job_for(generation, 3))

    stored = await crud.get_generation(session, generation.id)
    assert failures == [generation.id]
    assert stored.status == "completed"
    assert [visual["status"] for visual in stored.visuals] == ["completed"] * 3


async def test_unsaved_slot_result_ends_failed(db, session, generation, backend, storage, events, locks,
                                               retry_handler):
    await put_processing(session, generation, 3)
    worker = make_worker(db, backend, storage, events, locks, retry_handler)

    def slot_1_completed(row):
        return row.visuals[1]["status"] == "completed"

    with failing_commits(slot_1_completed) as failures:
        await worker.process_job(job_for(generation, 3))

    stored = await crud.get_generation(session, generation.id)
    assert len(failures) == worker.persist_max_retries
    assert stored.visuals[1]["status"] == "failed"
    assert stored.visuals[1]["error"] == "Result could not be saved"
    assert [stored.visuals[i]["status"] for i in (0, 2)] == ["completed", "completed"]
    assert stored.status == "completed"


# ==================== RECOVERY ====================

async def test_recover_closes_interrupted_generation(db, session, generation, service, backend, storage, events,
                                                     locks, retry_handler):
    await put_processing(session, generation, 3)
    visuals = list(generation.visuals)
    visuals[0] = transition_visual(visuals[0], "completed", image_url="/uploads/a.png")
    visuals[1] = transition_visual(visuals[1], "processing")
    generation.visuals = visuals
    await session.commit()
    worker = make_worker(db, backend, storage, events, locks, retry_handler)

    recovered = await worker.recover_interrupted(lambda generation_id: False)

    stored = await crud.get_generation(session, generation.id)
    assert recovered == [generation.id]
    assert stored.status == "completed"
    assert stored.visuals[0]["status"] == "completed"
    assert [(visual["status"], visual["error"]) for visual in stored.visuals[1:]] == [("failed", "Interrupted")] * 2

    # A recovered generation accepts retries again
    await service.retry_visual(session, generation.id, USER_ID, 1)
    await service.queue.join()
    stored = await crud.get_generation(session, generation.id)
    assert stored.visuals[1]["status"] == "completed"


async def test_recover_leaves_active_jobs_alone(db, session, generation, backend, storage, events, locks,
                                                retry_handler):
    await put_processing(session, generation, 2)
    worker = make_worker(db, backend, storage, events, locks, retry_handler)

    recovered = await worker.recover_interrupted(lambda generation_id: generation_id == generation.id)

    stored = await crud.get_generation(session, generation.id)
    assert recovered == []
    assert stored.status == "processing"


async def test_recover_without_visuals_fails_generation(db, session, generation, backend, storage, events, locks,
                                                        retry_handler):
    generation.status = "processing"
    await session.commit()
    worker = make_worker(db, backend, storage, events, locks, retry_handler)

    await worker.recover_interrupted(lambda generation_id: False)

    stored = await crud.get_generation(session, generation.id)
    assert stored.status == "failed"
    assert stored.error_message == "Interrupted"
    assert stored.completed_at is not None
