"""Background execution of verify, import and send jobs."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Mapping
from typing import Any

from tgrelay.accounts.store import SessionStore
from tgrelay.config import JOB_KIND_SEND, JOB_KIND_VERIFY, JobsConfig
from tgrelay.contacts.store import ContactStore
from tgrelay.errors import JobNotFoundError, NothingToRetryError, ValidationAppError
from tgrelay.jobs.models import Job, JobCounters, JobStatus
from tgrelay.jobs.retry import RetryPolicy
from tgrelay.jobs.runners import RUNNERS, JobRun, Runner
from tgrelay.jobs.store import JobStore, JobStoreError
from tgrelay.logging import get_logger
from tgrelay.logging_events import log_event
from tgrelay.protocol.client import ProtocolConnector, TransportConfig
from tgrelay.protocol.errors import ConnectionFatalError
from tgrelay.rewrite import RewriteClient
from tgrelay.utils.time import sleep_between_ms

__all__ = ["JobManager", "normalise_payload"]

logger = get_logger(__name__)

MAX_DELAY_MS = 60_000
_TARGETED_KINDS = frozenset({JOB_KIND_VERIFY, JOB_KIND_SEND})
_SHUTDOWN_ERROR = "cancelled during shutdown"
_NO_SESSION_ERROR = "no stored session - please re-authenticate this account"


def _clamp_delay(value: Any) -> int:
    try:
        resolved = int(value)
    except (TypeError, ValueError):
        return 0
    return max(0, min(MAX_DELAY_MS, resolved))


def normalise_payload(kind: str, payload: Mapping[str, Any]) -> dict[str, Any]:
    """Validate ``payload`` for ``kind`` and return a cleaned copy.

    Targets are stripped and blank entries dropped; repeats are kept so the
    runner can report them as duplicates.
    """

    if kind not in RUNNERS:
        raise ValidationAppError(f"unknown job kind: {kind}", meta={"field": "kind"})
    cleaned = dict(payload)
    if kind in _TARGETED_KINDS:
        raw_targets = cleaned.get("targets") or []
        if isinstance(raw_targets, str) or not isinstance(raw_targets, (list, tuple)):
            raise ValidationAppError("targets must be a list", meta={"field": "targets"})
        cleaned["targets"] = [str(item).strip() for item in raw_targets if str(item).strip()]
    else:
        cleaned.pop("targets", None)

    if kind == JOB_KIND_SEND:
        message = str(cleaned.get("message") or "")
        if not message.strip():
            raise ValidationAppError("message is required", meta={"field": "message"})
        delay_min = _clamp_delay(cleaned.get("delay_min_ms"))
        delay_max = _clamp_delay(cleaned.get("delay_max_ms"))
        if delay_max < delay_min:
            delay_max = delay_min
        cleaned["message"] = message
        cleaned["delay_min_ms"] = delay_min
        cleaned["delay_max_ms"] = delay_max
    return cleaned


class JobManager:
    """Start jobs, run them in the background and keep their records current."""

    def __init__(
        self,
        *,
        store: JobStore,
        connector: ProtocolConnector,
        sessions: SessionStore,
        contacts: ContactStore,
        config: JobsConfig,
        retry: RetryPolicy,
        rewriter: RewriteClient | None = None,
        runners: Mapping[str, Runner] | None = None,
        pause: Callable[[int, int], Awaitable[float]] = sleep_between_ms,
    ) -> None:
        self._store = store
        self._connector = connector
        self._sessions = sessions
        self._contacts = contacts
        self._config = config
        self._retry = retry
        self._rewriter = rewriter
        self._runners = dict(runners or RUNNERS)
        self._pause = pause
        self._start_lock = asyncio.Lock()
        self._account_locks: dict[str, asyncio.Lock] = {}
        self._tasks: dict[str, asyncio.Task[None]] = {}

    @property
    def store(self) -> JobStore:
        return self._store

    async def start_job(
        self, resource_key: str, kind: str, payload: Mapping[str, Any]
    ) -> tuple[Job, bool]:
        cleaned = normalise_payload(kind, payload)
        policy = self._config.policy_for(kind)
        async with self._start_lock:
            if policy.single_active:
                active = self._store.find_active(resource_key, kind)
                if active is not None:
                    log_event(
                        logger,
                        "job.reused",
                        job_id=active.id,
                        resource_key=resource_key,
                        kind=kind,
                    )
                    return active, False

            total = len(cleaned.get("targets") or [])
            job = self._store.create(
                Job(resource_key=resource_key, kind=kind, total=total, payload=cleaned)
            )
            task = asyncio.create_task(
                self._execute(job.id, resource_key, kind, cleaned, policy.timeout_seconds),
                name=f"job-{job.id}",
            )
            self._tasks[job.id] = task
            task.add_done_callback(lambda _task, job_id=job.id: self._tasks.pop(job_id, None))
            try:
                self._store.cleanup(self._config.max_jobs_per_resource)
            except JobStoreError as exc:
                logger.warning("Job cleanup for %s failed: %s", resource_key, exc)
        log_event(
            logger,
            "job.created",
            job_id=job.id,
            resource_key=resource_key,
            kind=kind,
            total=total,
        )
        return job, True

    async def retry_failed(self, job_id: str) -> Job:
        previous = self._store.get(job_id)
        if previous is None:
            raise JobNotFoundError(job_id)
        failed = previous.failed_targets()
        if not failed:
            raise NothingToRetryError(job_id)
        payload = dict(previous.payload)
        payload["targets"] = failed
        job, _ = await self.start_job(previous.resource_key, previous.kind, payload)
        log_event(
            logger,
            "job.retry_created",
            job_id=job.id,
            source_job_id=job_id,
            total=len(failed),
        )
        return job

    def get_job(self, job_id: str) -> Job | None:
        return self._store.get(job_id)

    def get_jobs_by_resource(self, resource_key: str, kind: str | None = None) -> list[Job]:
        return self._store.get_by_resource(resource_key, kind)

    async def wait_for(self, job_id: str) -> None:
        """Wait until the background task of ``job_id`` has finished."""

        task = self._tasks.get(job_id)
        if task is not None:
            await asyncio.gather(task, return_exceptions=True)

    async def shutdown(self) -> None:
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    def _account_lock(self, resource_key: str) -> asyncio.Lock:
        lock = self._account_locks.get(resource_key)
        if lock is None:
            lock = asyncio.Lock()
            self._account_locks[resource_key] = lock
        return lock

    def _report(self, run: JobRun) -> None:
        self._store.update_progress(run.job_id, run.counters, run.results)

    async def _execute(
        self,
        job_id: str,
        resource_key: str,
        kind: str,
        payload: dict[str, Any],
        timeout: float,
    ) -> None:
        holder: dict[str, JobRun] = {}
        status = JobStatus.FAILED
        error: str | None = None
        try:
            async with asyncio.timeout(timeout):
                await self._run(job_id, resource_key, kind, payload, holder)
            status = JobStatus.COMPLETED
        except asyncio.TimeoutError:
            error = f"job timed out after {timeout:g}s"
        except ConnectionFatalError as exc:
            error = str(exc)
        except asyncio.CancelledError:
            error = _SHUTDOWN_ERROR
            self._finalize(job_id, kind, status, holder, error)
            raise
        except Exception as exc:
            logger.exception("Job %s (%s) crashed", job_id, kind)
            error = str(exc) or exc.__class__.__name__
        self._finalize(job_id, kind, status, holder, error)

    def _finalize(
        self,
        job_id: str,
        kind: str,
        status: JobStatus,
        holder: Mapping[str, JobRun],
        error: str | None,
    ) -> None:
        run = holder.get("run")
        if run is not None:
            counters, results = run.counters, run.results
        else:
            current = self._store.get(job_id)
            counters = current.counters if current is not None else JobCounters()
            results = current.results if current is not None else []
        final = self._store.finalize(job_id, status, counters, results, error=error)
        if final is None:
            return
        log_event(
            logger,
            "job.finalized",
            job_id=job_id,
            kind=kind,
            status=final.status.value,
            total=final.total,
            succeeded=final.succeeded,
            failed=final.failed,
            skipped=final.skipped,
            error=error,
        )

    async def _run(
        self,
        job_id: str,
        resource_key: str,
        kind: str,
        payload: dict[str, Any],
        holder: dict[str, JobRun],
    ) -> None:
        runner = self._runners[kind]
        if kind in _TARGETED_KINDS and not payload.get("targets"):
            self._store.set_status(job_id, JobStatus.RUNNING)
            return

        lock = None if self._config.protocol_multiplexed else self._account_lock(resource_key)
        if lock is not None:
            await lock.acquire()
        try:
            self._store.set_status(job_id, JobStatus.RUNNING)
            log_event(logger, "job.started", job_id=job_id, resource_key=resource_key, kind=kind)
            session_ref = str(payload.get("session_ref") or "")
            blob = self._sessions.load(session_ref) if session_ref else None
            if blob is None:
                raise ConnectionFatalError(_NO_SESSION_ERROR)
            transport = TransportConfig(proxy_url=payload.get("proxy_url") or None)
            async with self._connector.open(blob, transport=transport) as client:
                run = JobRun(
                    job_id=job_id,
                    resource_key=resource_key,
                    kind=kind,
                    payload=payload,
                    client=client,
                    retry=self._retry,
                    contacts=self._contacts,
                    on_progress=self._report,
                    verify_batch_size=self._config.verify_batch_size,
                    rewriter=self._rewriter,
                    pause=self._pause,
                )
                run.counters.total = len(payload.get("targets") or [])
                holder["run"] = run
                await runner(run)
        finally:
            if lock is not None:
                lock.release()
