import re
from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import pytest
from sqlalchemy import update

from mirrorsync.database import AsyncSessionLocal
from mirrorsync.errors import JobStateError
from mirrorsync.models.job_status import JobStatus
from mirrorsync.services import job_tracker


def test_generate_job_id_formats():
    assert re.fullmatch(r"acme_database_\d{13}_[0-9a-f]{6}", job_tracker.generate_job_id("acme", "database"))
    assert re.fullmatch(
        r"upload_acme_database_widgets_\d{13}_[0-9a-f]{6}",
        job_tracker.generate_job_id("acme", "database", "upload", "widgets"),
    )
    assert re.fullmatch(r"upload_acme_files_\d{13}_[0-9a-f]{6}", job_tracker.generate_job_id("acme", "files", "upload"))


@pytest.mark.asyncio
async def test_create_without_backend_name_writes_nothing(mirror_db):
    with pytest.raises(JobStateError):
        await job_tracker.set_status("job-1", status="processing", operation="backup", kind="database")
    assert await job_tracker.get_status("job-1") is None


@pytest.mark.asyncio
async def test_sparse_update_keeps_other_fields(mirror_db):
    created = await job_tracker.set_status(
        "job-2", status="processing", operation="backup", kind="files", backend_name="acme", message="started"
    )
    assert created["progress"] == 0

    updated = await job_tracker.set_status("job-2", progress=40)

    assert updated["progress"] == 40
    assert updated["message"] == "started"
    assert updated["backendName"] == "acme"
    assert updated["status"] == "processing"


@pytest.mark.asyncio
async def test_terminal_status_is_final(mirror_db):
    await job_tracker.set_status("job-3", operation="backup", kind="database", backend_name="acme")
    await job_tracker.set_status("job-3", status="completed", progress=100, result={"insertedRecords": 3})

    with pytest.raises(JobStateError):
        await job_tracker.set_status("job-3", status="processing")
    with pytest.raises(JobStateError):
        await job_tracker.set_status("job-3", status="failed")

    job = await job_tracker.get_status("job-3")
    assert job["status"] == "completed"
    assert job["result"] == {"insertedRecords": 3}


@pytest.mark.asyncio
async def test_list_filters_and_delete(mirror_db):
    await job_tracker.set_status("b1", operation="backup", kind="database", backend_name="acme")
    await job_tracker.set_status("u1", operation="upload", kind="database", backend_name="acme")
    await job_tracker.set_status("b2", operation="backup", kind="files", backend_name="other")

    backups = await job_tracker.list_statuses(operation="backup")
    assert [j["jobId"] for j in backups] == ["b2", "b1"]
    assert [j["jobId"] for j in await job_tracker.list_statuses("acme", "upload")] == ["u1"]

    assert await job_tracker.delete_status("b1") is True
    assert await job_tracker.delete_status("b1") is False



def test_job_ids_started_together_are_distinct():
    with patch("mirrorsync.services.job_tracker.time.time", return_value=1_700_000_000.0):
        ids = {job_tracker.generate_job_id("acme", "database") for _ in range(20)}
    assert len(ids) == 20


@pytest.mark.asyncio
async def test_list_filters_by_kind_and_trigger(mirror_db):
    await job_tracker.set_status("a1", operation="backup", kind="database", backend_name="acme", is_automatic=True)
    await job_tracker.set_status("a2", operation="backup", kind="files", backend_name="acme", is_automatic=True)
    await job_tracker.set_status("m1", operation="backup", kind="database", backend_name="acme")

    automatic_db = await job_tracker.list_statuses(operation="backup", kind="database", is_automatic=True)
    manual = await job_tracker.list_statuses(is_automatic=False)

    assert [j["jobId"] for j in automatic_db] == ["a1"]
    assert [j["jobId"] for j in manual] == ["m1"]


@pytest.mark.asyncio
async def test_progress_update_without_record_is_ignored(mirror_db):
    await job_tracker.set_status("gone", operation="backup", kind="database", backend_name="acme")
    await job_tracker.delete_status("gone")

    assert await job_tracker.update_progress("gone", 50, "halfway") is False
    assert await job_tracker.get_status("gone") is None


@pytest.mark.asyncio
async def test_progress_update_leaves_finished_jobs_alone(mirror_db):
    await job_tracker.set_status("done", operation="backup", kind="database", backend_name="acme")
    assert await job_tracker.update_progress("done", 40, "working") is True
    await job_tracker.set_status("done", status="completed", progress=100)

    assert await job_tracker.update_progress("done", 60) is False
    job = await job_tracker.get_status("done")
    assert (job["status"], job["progress"], job["message"]) == ("completed", 100, "working")

@pytest.mark.asyncio
async def test_sweep_removes_only_old_terminal_jobs(mirror_db):
    for job_id in ("old-done", "old-running", "new-done"):
        await job_tracker.set_status(job_id, operation="backup", kind="database", backend_name="acme")
    await job_tracker.set_status("old-done", status="completed")
    await job_tracker.set_status("new-done", status="failed", error="boom")

    old = datetime.now(timezone.utc) - timedelta(days=10)
    async with AsyncSessionLocal() as db:
        await db.execute(
            update(JobStatus).where(JobStatus.job_id.in_(["old-done", "old-running"])).values(created_at=old)
        )
        await db.commit()

    assert await job_tracker.sweep_expired(7) == 1
    assert await job_tracker.get_status("old-done") is None
    assert await job_tracker.get_status("old-running") is not None
    assert await job_tracker.get_status("new-done") is not None


@pytest.mark.asyncio
async def test_mark_interrupted(mirror_db):
    await job_tracker.set_status("stale", operation="backup", kind="database", backend_name="acme")
    assert await job_tracker.mark_interrupted() == 1
    job = await job_tracker.get_status("stale")
    assert job["status"] == "failed"
    assert job["error"] == "Interrupted by restart"
