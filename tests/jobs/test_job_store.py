from __future__ import annotations

import json
import shutil
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from tgrelay.config import JobKindPolicy, JobsConfig
from tgrelay.jobs.models import INTERRUPTED_ERROR, Job, JobCounters, JobStatus, TargetResult
from tgrelay.jobs.store import JobStore, JobStoreError


class SteppingClock:
    def __init__(self) -> None:
        self.current = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        self.current += timedelta(seconds=1)
        return self.current


@pytest.fixture()
def jobs_dir(tmp_path: Path) -> Path:
    return tmp_path / "jobs"


def _store(jobs_dir: Path, **kwargs) -> JobStore:
    return JobStore(jobs_dir, JobsConfig().policies, now_fn=SteppingClock(), **kwargs)


def test_create_assigns_id_and_writes_family_file(jobs_dir: Path) -> None:
    store = _store(jobs_dir)

    job = store.create(Job(resource_key="acc-1", kind="verify", total=2))

    assert job.id
    assert job.status is JobStatus.PENDING
    persisted = json.loads((jobs_dir / "verify_jobs.json").read_text("utf-8"))
    assert [item["id"] for item in persisted] == [job.id]
    assert not (jobs_dir / "send_jobs.json").exists()


def test_import_kinds_share_one_file(jobs_dir: Path) -> None:
    store = _store(jobs_dir)

    chats = store.create(Job(resource_key="acc-1", kind="import_chats"))
    contacts = store.create(Job(resource_key="acc-1", kind="import_contacts"))

    persisted = json.loads((jobs_dir / "import_jobs.json").read_text("utf-8"))
    assert {item["id"] for item in persisted} == {chats.id, contacts.id}


def test_reads_return_independent_copies(jobs_dir: Path) -> None:
    store = _store(jobs_dir)
    job = store.create(Job(resource_key="acc-1", kind="send", payload={"targets": ["a"]}))

    copy = store.get(job.id)
    assert copy is not None
    copy.payload["targets"].append("b")
    copy.results.append(TargetResult(target="a", success=True))

    fresh = store.get(job.id)
    assert fresh is not None
    assert fresh.payload["targets"] == ["a"]
    assert fresh.results == []


def test_unknown_ids_are_not_errors(jobs_dir: Path) -> None:
    store = _store(jobs_dir)

    assert store.get("missing") is None
    assert store.get_by_resource("nobody") == []
    store.update_progress("missing", JobCounters(total=1))
    assert store.finalize("missing", JobStatus.COMPLETED, JobCounters(), []) is None


def test_progress_stays_in_memory_until_finalize(jobs_dir: Path) -> None:
    store = _store(jobs_dir)
    job = store.create(Job(resource_key="acc-1", kind="verify", total=2))
    results = [TargetResult(target="+1", success=True)]

    store.update_progress(job.id, JobCounters(total=2, succeeded=1, progress=1), results)

    current = store.get(job.id)
    assert current is not None and current.succeeded == 1
    on_disk = json.loads((jobs_dir / "verify_jobs.json").read_text("utf-8"))
    assert on_disk[0]["succeeded"] == 0

    results.append(TargetResult(target="+2", success=False, error="not registered"))
    store.finalize(
        job.id,
        JobStatus.COMPLETED,
        JobCounters(total=2, succeeded=1, failed=1, progress=2),
        results,
    )

    on_disk = json.loads((jobs_dir / "verify_jobs.json").read_text("utf-8"))
    assert on_disk[0]["status"] == "completed"
    assert on_disk[0]["failed"] == 1
    assert [item["target"] for item in on_disk[0]["results"]] == ["+1", "+2"]


def test_finalize_rejects_active_status(jobs_dir: Path) -> None:
    store = _store(jobs_dir)
    job = store.create(Job(resource_key="acc-1", kind="verify"))

    with pytest.raises(ValueError):
        store.finalize(job.id, JobStatus.RUNNING, JobCounters(), [])


def test_reload_reconciles_interrupted_jobs(jobs_dir: Path) -> None:
    store = _store(jobs_dir)
    running = store.create(Job(resource_key="acc-1", kind="verify", total=3))
    store.set_status(running.id, JobStatus.RUNNING)
    pending = store.create(Job(resource_key="acc-1", kind="send", total=1))
    done = store.create(Job(resource_key="acc-1", kind="import_chats"))
    store.finalize(done.id, JobStatus.COMPLETED, JobCounters(), [])

    reloaded = _store(jobs_dir)

    for job_id in (running.id, pending.id):
        job = reloaded.get(job_id)
        assert job is not None
        assert job.status is JobStatus.FAILED
        assert job.error == INTERRUPTED_ERROR
    finished = reloaded.get(done.id)
    assert finished is not None and finished.status is JobStatus.COMPLETED

    on_disk = json.loads((jobs_dir / "verify_jobs.json").read_text("utf-8"))
    assert on_disk[0]["status"] == "failed"
    assert on_disk[0]["error"] == INTERRUPTED_ERROR


def test_non_durable_family_is_memory_only(jobs_dir: Path) -> None:
    policies = dict(JobsConfig().policies)
    policies["send"] = JobKindPolicy("send", "send", False, 60.0, durable=False)
    store = JobStore(jobs_dir, policies, now_fn=SteppingClock())

    job = store.create(Job(resource_key="acc-1", kind="send"))

    assert store.get(job.id) is not None
    assert not (jobs_dir / "send_jobs.json").exists()
    assert JobStore(jobs_dir, policies).get(job.id) is None


def test_cleanup_keeps_newest_and_active_jobs(jobs_dir: Path) -> None:
    store = _store(jobs_dir)
    created = [store.create(Job(resource_key="acc-1", kind="send")) for _ in range(5)]
    for job in created[1:]:
        store.finalize(job.id, JobStatus.COMPLETED, JobCounters(), [])
    other = store.create(Job(resource_key="acc-2", kind="send"))

    removed = store.cleanup(2)

    remaining = {job.id for job in store.get_by_resource("acc-1")}
    # the oldest job is still pending and therefore survives
    assert remaining == {created[0].id, created[3].id, created[4].id}
    assert removed == 2
    assert store.get(other.id) is not None


def test_get_by_resource_orders_newest_first(jobs_dir: Path) -> None:
    store = _store(jobs_dir)
    first = store.create(Job(resource_key="acc-1", kind="send"))
    second = store.create(Job(resource_key="acc-1", kind="verify"))

    assert [job.id for job in store.get_by_resource("acc-1")] == [second.id, first.id]
    assert [job.id for job in store.get_by_resource("acc-1", "send")] == [first.id]


def test_create_propagates_write_errors(jobs_dir: Path) -> None:
    store = _store(jobs_dir)
    store.create(Job(resource_key="acc-1", kind="verify"))
    shutil.rmtree(jobs_dir)
    jobs_dir.write_text("not a directory", encoding="utf-8")

    with pytest.raises(JobStoreError):
        store.create(Job(resource_key="acc-1", kind="verify"))

    assert len(store.get_by_resource("acc-1")) == 1
