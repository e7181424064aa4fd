"""Per-kind job bodies executed by :class:`~tgrelay.jobs.manager.JobManager`.

A runner mutates the counters and results of its :class:`JobRun` in place and
calls :meth:`JobRun.report` whenever a unit of work completes, so whatever was
recorded survives an abort of the surrounding task.
"""

from __future__ import annotations

import re
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from typing import Any

from tgrelay.config import (
    JOB_KIND_IMPORT_CHATS,
    JOB_KIND_IMPORT_CONTACTS,
    JOB_KIND_SEND,
    JOB_KIND_VERIFY,
)
from tgrelay.contacts.store import ContactStore
from tgrelay.jobs.models import DUPLICATE_ERROR, JobCounters, TargetResult
from tgrelay.jobs.retry import RetryBudgetExceededError, RetryPolicy
from tgrelay.logging import get_logger
from tgrelay.protocol.client import Peer, ProtocolClient
from tgrelay.protocol.errors import (
    AliasNotFoundError,
    ConnectionFatalError,
    PeerInvalidError,
    ProtocolError,
)
from tgrelay.rewrite import RewriteClient, RewriteError
from tgrelay.templating import MessageTemplateError, recipient_context, render_message
from tgrelay.utils.time import sleep_between_ms

__all__ = ["JobRun", "RUNNERS", "Runner"]

logger = get_logger(__name__)

_NON_DIGITS = re.compile(r"\D+")


def _phone_key(value: str) -> str:
    return _NON_DIGITS.sub("", value)


@dataclass(slots=True)
class JobRun:
    job_id: str
    resource_key: str
    kind: str
    payload: dict[str, Any]
    client: ProtocolClient
    retry: RetryPolicy
    contacts: ContactStore
    on_progress: Callable[[JobRun], None]
    verify_batch_size: int = 15
    rewriter: RewriteClient | None = None
    pause: Callable[[int, int], Awaitable[float]] = sleep_between_ms
    counters: JobCounters = field(default_factory=JobCounters)
    results: list[TargetResult] = field(default_factory=list)

    @property
    def targets(self) -> list[str]:
        return list(self.payload.get("targets") or [])

    def record(self, result: TargetResult, *, outcome: str) -> None:
        """Append ``result`` and bump the counter named by ``outcome``."""

        self.results.append(result)
        if outcome == "succeeded":
            self.counters.succeeded += 1
        elif outcome == "failed":
            self.counters.failed += 1
        else:
            self.counters.skipped += 1

    def record_duplicate(self, target: str) -> None:
        self.record(
            TargetResult(target=target, success=True, error=DUPLICATE_ERROR, duplicate=True),
            outcome="skipped",
        )

    def report(self) -> None:
        self.on_progress(self)


Runner = Callable[[JobRun], Awaitable[None]]


async def _verify_batch(
    run: JobRun,
    batch_no: int,
    batch: Sequence[str],
    seen: set[str],
    existing_ids: set[int],
) -> None:
    entries: list[tuple[str, bool]] = []
    for target in batch:
        entries.append((target, target in seen))
        seen.add(target)
    phones = [target for target, dup in entries if not dup and not target.startswith("@")]
    labels = [str(label) for label in run.payload.get("labels") or []]

    resolved_by_phone: dict[str, Peer] = {}
    retry_later: set[str] = set()
    batch_error: str | None = None
    if phones:
        try:
            outcome = await run.retry.call(
                run.client.bulk_verify, phones, operation="bulk_verify"
            )
        except ConnectionFatalError:
            raise
        except RetryBudgetExceededError:
            retry_later.update(_phone_key(phone) for phone in phones)
        except ProtocolError as exc:
            batch_error = f"batch {batch_no} failed: {exc}"
        else:
            for peer in outcome.resolved:
                resolved_by_phone[_phone_key(peer.phone)] = peer
            retry_later.update(_phone_key(phone) for phone in outcome.retry_later)

            added = [peer for peer in outcome.resolved if peer.user_id not in existing_ids]
            if added:
                try:
                    await run.retry.call(
                        run.client.remove_relationships, added, operation="remove_relationships"
                    )
                except ConnectionFatalError:
                    raise
                except (ProtocolError, RetryBudgetExceededError) as exc:
                    logger.warning(
                        "Failed to remove %d verification contact(s) for job %s: %s",
                        len(added),
                        run.job_id,
                        exc,
                    )
            run.contacts.upsert_many(
                run.resource_key, outcome.resolved, labels=labels or ["phone"]
            )

    for target, duplicate in entries:
        if duplicate:
            run.record_duplicate(target)
            continue
        if target.startswith("@"):
            await _verify_alias(run, target, labels)
            continue
        key = _phone_key(target)
        if batch_error is not None:
            run.record(
                TargetResult(target=target, success=False, error=batch_error), outcome="failed"
            )
        elif key in resolved_by_phone:
            peer = resolved_by_phone[key]
            run.record(
                TargetResult(target=target, success=True, detail=str(peer.user_id)),
                outcome="succeeded",
            )
        elif key in retry_later:
            run.record(
                TargetResult(
                    target=target,
                    success=False,
                    error="rate limited, retry later",
                    retry_later=True,
                ),
                outcome="skipped",
            )
        else:
            run.record(
                TargetResult(target=target, success=False, error="not registered"),
                outcome="failed",
            )


async def _verify_alias(run: JobRun, target: str, labels: list[str]) -> None:
    alias = target.lstrip("@")
    try:
        peer = await run.retry.call(run.client.resolve_alias, alias, operation="resolve_alias")
    except ConnectionFatalError:
        raise
    except AliasNotFoundError:
        run.record(
            TargetResult(target=target, success=False, error="username not found"),
            outcome="failed",
        )
        return
    except RetryBudgetExceededError:
        run.record(
            TargetResult(
                target=target, success=False, error="rate limited, retry later", retry_later=True
            ),
            outcome="skipped",
        )
        return
    except ProtocolError as exc:
        run.record(TargetResult(target=target, success=False, error=str(exc)), outcome="failed")
        return
    run.contacts.upsert_many(run.resource_key, [peer], labels=labels or ["username"])
    run.record(
        TargetResult(target=target, success=True, detail=str(peer.user_id)),
        outcome="succeeded",
    )


async def run_verify(run: JobRun) -> None:
    targets = run.targets
    run.counters.total = len(targets)
    if not targets:
        return
    existing = await run.retry.call(
        run.client.list_existing_relationships, operation="list_existing_relationships"
    )
    existing_ids = {peer.user_id for peer in existing}
    seen: set[str] = set()
    size = max(1, run.verify_batch_size)
    for batch_no, start in enumerate(range(0, len(targets), size), start=1):
        batch = targets[start : start + size]
        await _verify_batch(run, batch_no, batch, seen, existing_ids)
        run.counters.progress = len(run.results)
        run.report()


def _import_peers(
    run: JobRun, peers: Sequence[Peer], known: set[int], seen: set[int], label: str
) -> None:
    fresh: list[Peer] = []
    for peer in peers:
        if peer.is_bot or peer.is_deleted or peer.user_id in seen:
            continue
        seen.add(peer.user_id)
        fresh.append(peer)
    if not fresh:
        return
    run.counters.total += len(fresh)
    for peer in fresh:
        if peer.user_id in known:
            run.record(
                TargetResult(target=str(peer.user_id), success=True, detail="already known"),
                outcome="skipped",
            )
        else:
            run.record(TargetResult(target=str(peer.user_id), success=True), outcome="succeeded")
    run.contacts.upsert_many(run.resource_key, fresh, labels=[label])


async def run_import_chats(run: JobRun) -> None:
    known = run.contacts.known_telegram_ids(run.resource_key)
    seen_users: set[int] = set()
    seen_cursors: set[str] = set()
    cursor: str | None = None
    while True:
        page = await run.retry.call(
            run.client.list_conversations, cursor, operation="list_conversations"
        )
        run.counters.progress += max(0, page.scanned)
        _import_peers(run, page.peers, known, seen_users, "chat")
        run.report()
        next_cursor = page.next_cursor
        if not next_cursor:
            return
        if next_cursor in seen_cursors:
            logger.warning(
                "Conversation paging for job %s returned a repeated cursor; stopping",
                run.job_id,
            )
            return
        seen_cursors.add(next_cursor)
        cursor = next_cursor


async def run_import_contacts(run: JobRun) -> None:
    known = run.contacts.known_telegram_ids(run.resource_key)
    peers = await run.retry.call(
        run.client.list_existing_relationships, operation="list_existing_relationships"
    )
    run.counters.progress = len(peers)
    _import_peers(run, peers, known, set(), "contact")
    run.report()


async def _deliver(run: JobRun, peer: Peer, text: str) -> None:
    try:
        await run.retry.call(run.client.send_message, peer, text, operation="send_message")
    except PeerInvalidError:
        if not peer.username:
            raise
        resolved = await run.retry.call(
            run.client.resolve_alias, peer.username, operation="resolve_alias"
        )
        await run.retry.call(run.client.send_message, resolved, text, operation="send_message")


async def _compose(run: JobRun, source: str, context: dict[str, str]) -> str:
    text = render_message(source, context)
    prompt = str(run.payload.get("ai_prompt") or "").strip()
    if not prompt or run.rewriter is None:
        return text
    try:
        return await run.rewriter.rewrite(text, prompt=prompt)
    except RewriteError as exc:
        logger.warning("Message rewrite failed for job %s, using original: %s", run.job_id, exc)
        return text


async def run_send(run: JobRun) -> None:
    targets = run.targets
    run.counters.total = len(targets)
    source = str(run.payload.get("message") or "")
    delay_min = int(run.payload.get("delay_min_ms") or 0)
    delay_max = int(run.payload.get("delay_max_ms") or 0)
    seen_targets: set[str] = set()
    seen_users: set[int] = set()
    for index, target in enumerate(targets):
        contact = run.contacts.get(target)
        if target in seen_targets or (contact is not None and contact.telegram_id in seen_users):
            run.record_duplicate(target)
            run.counters.progress = len(run.results)
            run.report()
            continue
        seen_targets.add(target)
        if contact is None or contact.account_id != run.resource_key or not contact.is_valid:
            run.record(
                TargetResult(target=target, success=False, error="contact not found"),
                outcome="failed",
            )
            run.counters.progress = len(run.results)
            run.report()
            continue
        seen_users.add(contact.telegram_id)

        try:
            text = await _compose(
                run,
                source,
                recipient_context(
                    first_name=contact.first_name,
                    last_name=contact.last_name,
                    phone=contact.phone,
                    username=contact.username,
                ),
            )
        except MessageTemplateError as exc:
            run.record(
                TargetResult(target=target, success=False, error=f"template error: {exc}"),
                outcome="failed",
            )
            run.counters.progress = len(run.results)
            run.report()
            continue

        try:
            await _deliver(run, contact.to_peer(), text)
        except ConnectionFatalError:
            raise
        except (ProtocolError, RetryBudgetExceededError) as exc:
            run.record(TargetResult(target=target, success=False, error=str(exc)), outcome="failed")
        else:
            run.record(TargetResult(target=target, success=True), outcome="succeeded")
        run.counters.progress = len(run.results)
        run.report()

        if index < len(targets) - 1:
            await run.pause(delay_min, delay_max)


RUNNERS: dict[str, Runner] = {
    JOB_KIND_VERIFY: run_verify,
    JOB_KIND_IMPORT_CHATS: run_import_chats,
    JOB_KIND_IMPORT_CONTACTS: run_import_contacts,
    JOB_KIND_SEND: run_send,
}
