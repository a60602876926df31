import threading
from datetime import timedelta

from app.models.db import ListingJob
from app.services.job_store import (
    MISSING_PROOF_MESSAGE,
    claim_next,
    normalize_report_status,
    report_outcome,
)
from app.services.storage import CasOutcome, compare_and_swap
from app.utils.time import utc_now
from conftest import TestingSessionLocal


def _entitled_user(user_factory, subscription_factory):
    user = user_factory()
    subscription_factory(user)
    return user


def test_claim_requires_active_subscription(db_session, user_factory, subscription_factory, listing_job_factory):
    user = user_factory()
    subscription_factory(user, status="canceled")
    job = listing_job_factory(user)

    assert claim_next(db_session, user.id, "w1") is None
    db_session.refresh(job)
    assert job.status == "queued"


def test_claim_takes_oldest_and_bumps_lock_version(db_session, user_factory, subscription_factory, listing_job_factory):
    user = _entitled_user(user_factory, subscription_factory)
    now = utc_now()
    older = listing_job_factory(user, created_at=now - timedelta(minutes=10))
    listing_job_factory(user, created_at=now - timedelta(minutes=5))

    claimed = claim_next(db_session, user.id, "w1", now)
    assert claimed is not None and claimed.id == older.id
    assert claimed.status == "processing"
    assert claimed.claimed_by_worker_id == "w1"
    assert claimed.attempt_count == 1
    assert claimed.lock_version == 1


def test_two_workers_never_get_the_same_job(db_session, user_factory, subscription_factory, listing_job_factory):
    user = _entitled_user(user_factory, subscription_factory)
    listing_job_factory(user)
    listing_job_factory(user)

    first = claim_next(db_session, user.id, "w1")
    second = claim_next(db_session, user.id, "w2")
    third = claim_next(db_session, user.id, "w3")
    assert first is not None and second is not None
    assert first.id != second.id
    assert third is None


def _claim_concurrently(user_id, worker_ids):
    barrier = threading.Barrier(len(worker_ids))
    results: dict[str, str | None] = {}
    errors: list[Exception] = []

    def run(worker_id):
        session = TestingSessionLocal()
        try:
            barrier.wait()
            job = claim_next(session, user_id, worker_id)
            results[worker_id] = job.id if job is not None else None
        except Exception as exc:
            errors.append(exc)
        finally:
            session.close()

    threads = [threading.Thread(target=run, args=(worker_id,)) for worker_id in worker_ids]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=30)
    assert errors == []
    return results


def test_concurrent_claims_on_one_job_have_one_winner(db_session, user_factory, subscription_factory, listing_job_factory):
    user = _entitled_user(user_factory, subscription_factory)
    job = listing_job_factory(user)

    results = _claim_concurrently(user.id, ["w1", "w2"])

    assert sorted(results) == ["w1", "w2"]
    winners = [worker for worker, job_id in results.items() if job_id is not None]
    assert len(winners) == 1
    assert results[winners[0]] == job.id
    db_session.refresh(job)
    assert job.claimed_by_worker_id == winners[0]
    assert job.attempt_count == 1


def test_concurrent_claims_on_distinct_jobs_never_share_a_job(db_session, user_factory, subscription_factory, listing_job_factory):
    user = _entitled_user(user_factory, subscription_factory)
    jobs = {listing_job_factory(user).id for _ in range(3)}

    results = _claim_concurrently(user.id, ["w1", "w2", "w3"])

    claimed = [job_id for job_id in results.values() if job_id is not None]
    assert len(claimed) == len(set(claimed))
    assert set(claimed) <= jobs
    assert len(claimed) == 3


def test_stale_claim_is_reclaimable_by_another_worker(db_session, user_factory, subscription_factory, listing_job_factory):
    user = _entitled_user(user_factory, subscription_factory)
    now = utc_now()
    job = listing_job_factory(user, status="processing", claimed_at=now - timedelta(seconds=61), claimed_by_worker_id="w1")

    claimed = claim_next(db_session, user.id, "w2", now)
    assert claimed is not None and claimed.id == job.id
    assert claimed.claimed_by_worker_id == "w2"


def test_fresh_claim_only_reclaimable_by_same_worker(db_session, user_factory, subscription_factory, listing_job_factory):
    user = _entitled_user(user_factory, subscription_factory)
    now = utc_now()
    job = listing_job_factory(user, status="processing", claimed_at=now - timedelta(seconds=10), claimed_by_worker_id="w1")

    assert claim_next(db_session, user.id, "w2", now) is None
    reclaimed = claim_next(db_session, user.id, "w1", now)
    assert reclaimed is not None and reclaimed.id == job.id


def test_ownerless_stuck_processing_is_recovered(db_session, user_factory, subscription_factory, listing_job_factory):
    user = _entitled_user(user_factory, subscription_factory)
    now = utc_now()
    job = listing_job_factory(user, status="processing", claimed_at=now - timedelta(minutes=5))

    # recovered to failed and therefore not handed out again
    assert claim_next(db_session, user.id, "w1", now) is None
    db_session.refresh(job)
    assert job.status == "failed"
    assert job.last_error == "Recovered from stuck processing lock"


def test_cas_reports_lost_race(db_session, user_factory, listing_job_factory):
    user = user_factory()
    job = listing_job_factory(user)
    table = ListingJob.__table__

    won = compare_and_swap(db_session, table, job.id, {"status": "queued", "lock_version": 0}, {"status": "processing", "lock_version": 1})
    lost = compare_and_swap(db_session, table, job.id, {"status": "queued", "lock_version": 0}, {"status": "processing", "lock_version": 1})
    assert won is CasOutcome.APPLIED
    assert lost is CasOutcome.LOST_RACE


def test_completion_without_proof_is_downgraded(db_session, user_factory, subscription_factory, listing_job_factory):
    user = _entitled_user(user_factory, subscription_factory)
    listing_job_factory(user)
    job = claim_next(db_session, user.id, "w1")

    result = report_outcome(
        db_session, user.id, job.id, "w1", "completed",
        external_refs={"listing_url": "https://www.etsy.com/your/shops/me/listing-editor/edit/1"},
    )
    assert result.accepted and result.updated
    assert result.status == "failed"
    db_session.refresh(job)
    assert job.status == "failed"
    assert job.last_error == MISSING_PROOF_MESSAGE


def test_completion_with_proof_and_idempotent_rereport(db_session, user_factory, subscription_factory, listing_job_factory):
    user = _entitled_user(user_factory, subscription_factory)
    listing_job_factory(user)
    job = claim_next(db_session, user.id, "w1")

    first = report_outcome(db_session, user.id, job.id, "w1", "completed", external_refs={"listing_id": "12345"})
    again = report_outcome(db_session, user.id, job.id, "w1", "completed", external_refs={"listing_id": "12345"})
    assert (first.accepted, first.updated, first.status) == (True, True, "completed")
    assert (again.accepted, again.updated, again.reason) == (True, False, "already_reported")
    db_session.refresh(job)
    assert job.etsy_listing_id == "12345"


def test_report_rejections(db_session, user_factory, subscription_factory, listing_job_factory):
    user = _entitled_user(user_factory, subscription_factory)
    stranger = user_factory()
    listing_job_factory(user)
    job = claim_next(db_session, user.id, "w1")

    assert report_outcome(db_session, user.id, "missing", "w1", "failed").reason == "listing_not_found"
    assert report_outcome(db_session, stranger.id, job.id, "w1", "failed").reason == "not_owner"
    assert report_outcome(db_session, user.id, job.id, "w2", "failed").reason == "not_claimed_by_worker"


def test_report_on_unclaimed_job_is_not_processing(db_session, user_factory, listing_job_factory):
    user = user_factory()
    job = listing_job_factory(user)
    result = report_outcome(db_session, user.id, job.id, "w1", "failed", error="boom")
    assert result.accepted is False
    assert result.reason == "not_processing"


def test_processing_report_is_a_heartbeat(db_session, user_factory, subscription_factory, listing_job_factory):
    user = _entitled_user(user_factory, subscription_factory)
    listing_job_factory(user)
    job = claim_next(db_session, user.id, "w1")
    later = utc_now() + timedelta(seconds=30)

    result = report_outcome(db_session, user.id, job.id, "w1", "processing", now=later)
    assert result.accepted and result.updated and result.status == "processing"
    db_session.refresh(job)
    assert job.status == "processing"
    assert job.lock_version == 2


def test_normalize_report_status_vocabulary():
    assert normalize_report_status("done") == "completed"
    assert normalize_report_status("SUCCESS") == "completed"
    assert normalize_report_status("error") == "failed"
    assert normalize_report_status(None, step="upload_error") == "failed"
    assert normalize_report_status("running", step="publish_done") == "completed"
    assert normalize_report_status("running", step="uploading") == "processing"
