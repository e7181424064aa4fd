"""Flat-file job store with crash reconciliation on load."""

from __future__ import annotations

import secrets
import threading
from collections.abc import Callable, Mapping, Sequence
from dataclasses import replace
from datetime import datetime
from pathlib import Path

from tgrelay.config import JobKindPolicy
from tgrelay.jobs.models import INTERRUPTED_ERROR, Job, JobCounters, JobStatus, TargetResult
from tgrelay.logging import get_logger
from tgrelay.utils.files import read_json, write_json_atomic
from tgrelay.utils.time import now_utc

__all__ = ["JobStore", "JobStoreError"]

logger = get_logger(__name__)


class JobStoreError(RuntimeError):
    """Raised when a job snapshot cannot be read or written."""


class JobStore:
    """In-memory job registry mirrored to one JSON array per job family.

    Every durable mutation rewrites the affected family file atomically.
    Progress updates stay in memory; the terminal write made by
    :meth:`finalize` always reaches disk. Readers receive deep copies.
    """

    def __init__(
        self,
        directory: str | Path | None,
        policies: Mapping[str, JobKindPolicy],
        *,
        now_fn: Callable[[], datetime] | None = None,
    ) -> None:
        self._directory = Path(directory) if directory is not None else None
        self._policies = dict(policies)
        self._durable_families = {
            policy.family for policy in self._policies.values() if policy.durable
        }
        self._now = now_fn or now_utc
        self._lock = threading.RLock()
        self._jobs: dict[str, Job] = {}
        self._family_by_id: dict[str, str] = {}
        self._load()

    def family_path(self, family: str) -> Path | None:
        if self._directory is None or family not in self._durable_families:
            return None
        return self._directory / f"{family}_jobs.json"

    def _family_for_kind(self, kind: str) -> str:
        policy = self._policies.get(kind)
        return policy.family if policy is not None else kind

    def _load(self) -> None:
        for family in sorted(self._durable_families):
            path = self.family_path(family)
            if path is None:
                continue
            try:
                raw = read_json(path, default=[])
            except (OSError, ValueError) as exc:
                raise JobStoreError(f"failed to load {path}: {exc}") from exc
            reconciled = 0
            for item in raw or []:
                job = Job.from_dict(item)
                if job.status.is_active:
                    job.status = JobStatus.FAILED
                    job.error = INTERRUPTED_ERROR
                    job.updated_at = self._now()
                    reconciled += 1
                self._jobs[job.id] = job
                self._family_by_id[job.id] = family
            if reconciled:
                logger.warning(
                    "Reconciled %d interrupted job(s) in %s", reconciled, path.name
                )
                self._persist(family)

    def _persist(self, family: str) -> None:
        path = self.family_path(family)
        if path is None:
            return
        snapshot = [
            job.to_dict()
            for job_id, job in self._jobs.items()
            if self._family_by_id.get(job_id) == family
        ]
        try:
            write_json_atomic(path, snapshot)
        except OSError as exc:
            raise JobStoreError(f"failed to write {path}: {exc}") from exc

    def _new_id(self) -> str:
        while True:
            candidate = secrets.token_hex(8)
            if candidate not in self._jobs:
                return candidate

    def create(self, job: Job) -> Job:
        with self._lock:
            record = job.copy()
            if not record.id:
                record.id = self._new_id()
            now = self._now()
            record.started_at = now
            record.updated_at = now
            family = self._family_for_kind(record.kind)
            self._jobs[record.id] = record
            self._family_by_id[record.id] = family
            try:
                self._persist(family)
            except JobStoreError:
                self._jobs.pop(record.id, None)
                self._family_by_id.pop(record.id, None)
                raise
            return record.copy()

    def get(self, job_id: str) -> Job | None:
        with self._lock:
            job = self._jobs.get(job_id)
            return job.copy() if job is not None else None

    def get_by_resource(self, resource_key: str, kind: str | None = None) -> list[Job]:
        with self._lock:
            jobs = [
                job.copy()
                for job in self._jobs.values()
                if job.resource_key == resource_key and (kind is None or job.kind == kind)
            ]
        jobs.sort(key=lambda job: job.started_at, reverse=True)
        return jobs

    def find_active(self, resource_key: str, kind: str) -> Job | None:
        with self._lock:
            active = [
                job
                for job in self._jobs.values()
                if job.resource_key == resource_key
                and job.kind == kind
                and job.status.is_active
            ]
            if not active:
                return None
            newest = max(active, key=lambda job: job.started_at)
            return newest.copy()

    def update_progress(
        self,
        job_id: str,
        counters: JobCounters,
        results: Sequence[TargetResult] | None = None,
    ) -> None:
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                return
            job.apply_counters(counters)
            if results is not None:
                job.results = [replace(result) for result in results]
            job.updated_at = self._now()

    def set_status(self, job_id: str, status: JobStatus, *, error: str | None = None) -> None:
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                return
            job.status = status
            job.error = error
            job.updated_at = self._now()
            self._persist(self._family_by_id[job_id])

    def finalize(
        self,
        job_id: str,
        status: JobStatus,
        counters: JobCounters,
        results: Sequence[TargetResult],
        *,
        error: str | None = None,
    ) -> Job | None:
        if status.is_active:
            raise ValueError("finalize requires a terminal status")
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                return None
            job.apply_counters(counters)
            job.results = [replace(result) for result in results]
            job.status = status
            job.error = error
            job.updated_at = self._now()
            self._persist(self._family_by_id[job_id])
            return job.copy()

    def delete(self, job_id: str) -> bool:
        with self._lock:
            if job_id not in self._jobs:
                return False
            del self._jobs[job_id]
            family = self._family_by_id.pop(job_id)
            self._persist(family)
            return True

    def cleanup(self, max_per_resource: int) -> int:
        """Keep only the newest ``max_per_resource`` jobs of each resource.

        Active jobs are never removed and do count toward the limit.
        """

        keep = max(1, int(max_per_resource))
        with self._lock:
            by_resource: dict[str, list[Job]] = {}
            for job in self._jobs.values():
                by_resource.setdefault(job.resource_key, []).append(job)
            doomed: list[str] = []
            for jobs in by_resource.values():
                if len(jobs) <= keep:
                    continue
                jobs.sort(key=lambda job: job.started_at, reverse=True)
                doomed.extend(job.id for job in jobs[keep:] if not job.status.is_active)
            if not doomed:
                return 0
            touched: set[str] = set()
            for job_id in doomed:
                del self._jobs[job_id]
                touched.add(self._family_by_id.pop(job_id))
            for family in sorted(touched):
                self._persist(family)
            logger.debug("Removed %d old job(s)", len(doomed))
            return len(doomed)
