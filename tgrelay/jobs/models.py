"""Job records and their JSON representation."""

from __future__ import annotations

import copy
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from tgrelay.utils.time import now_utc, parse_timestamp

__all__ = [
    "DUPLICATE_ERROR",
    "INTERRUPTED_ERROR",
    "Job",
    "JobCounters",
    "JobStatus",
    "TargetResult",
]

INTERRUPTED_ERROR = "interrupted by server restart"
DUPLICATE_ERROR = "duplicate, skipped"


class JobStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_active(self) -> bool:
        return self in (JobStatus.PENDING, JobStatus.RUNNING)


@dataclass(slots=True)
class TargetResult:
    """Outcome of processing a single target."""

    target: str
    success: bool
    error: str | None = None
    duplicate: bool = False
    retry_later: bool = False
    detail: str | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"target": self.target, "success": self.success}
        if self.error:
            payload["error"] = self.error
        if self.duplicate:
            payload["duplicate"] = True
        if self.retry_later:
            payload["retry_later"] = True
        if self.detail:
            payload["detail"] = self.detail
        return payload

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> TargetResult:
        return cls(
            target=str(payload.get("target", "")),
            success=bool(payload.get("success", False)),
            error=payload.get("error") or None,
            duplicate=bool(payload.get("duplicate", False)),
            retry_later=bool(payload.get("retry_later", False)),
            detail=payload.get("detail") or None,
        )


@dataclass(slots=True)
class JobCounters:
    total: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    progress: int = 0


@dataclass(slots=True)
class Job:
    resource_key: str
    kind: str
    id: str = ""
    status: JobStatus = JobStatus.PENDING
    total: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    progress: int = 0
    results: list[TargetResult] = field(default_factory=list)
    payload: dict[str, Any] = field(default_factory=dict)
    started_at: datetime = field(default_factory=now_utc)
    updated_at: datetime = field(default_factory=now_utc)
    error: str | None = None

    @property
    def counters(self) -> JobCounters:
        return JobCounters(
            total=self.total,
            succeeded=self.succeeded,
            failed=self.failed,
            skipped=self.skipped,
            progress=self.progress,
        )

    def apply_counters(self, counters: JobCounters) -> None:
        self.total = counters.total
        self.succeeded = counters.succeeded
        self.failed = counters.failed
        self.skipped = counters.skipped
        self.progress = counters.progress

    def failed_targets(self) -> list[str]:
        return [result.target for result in self.results if not result.success]

    def copy(self) -> Job:
        return copy.deepcopy(self)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "resource_key": self.resource_key,
            "kind": self.kind,
            "status": self.status.value,
            "total": self.total,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "skipped": self.skipped,
            "progress": self.progress,
            "results": [result.to_dict() for result in self.results],
            "payload": copy.deepcopy(self.payload),
            "started_at": self.started_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "error": self.error,
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> Job:
        started_at = parse_timestamp(payload.get("started_at")) or now_utc()
        return cls(
            id=str(payload["id"]),
            resource_key=str(payload.get("resource_key", "")),
            kind=str(payload.get("kind", "")),
            status=JobStatus(payload.get("status", JobStatus.FAILED.value)),
            total=int(payload.get("total", 0)),
            succeeded=int(payload.get("succeeded", 0)),
            failed=int(payload.get("failed", 0)),
            skipped=int(payload.get("skipped", 0)),
            progress=int(payload.get("progress", 0)),
            results=[TargetResult.from_dict(item) for item in payload.get("results") or []],
            payload=dict(payload.get("payload") or {}),
            started_at=started_at,
            updated_at=parse_timestamp(payload.get("updated_at")) or started_at,
            error=payload.get("error") or None,
        )
