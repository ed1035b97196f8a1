"""Tag reconciliation against a fetched device inventory.

A run moves through fixed phases and is never persisted:

    Fetched -> Filtered -> Batching -> Submitting -> Done

1. Filtered: drop devices that already carry the tag, then apply the
   runbook predicate (subscription membership or inactivity window)
2. Batching: split the remaining machine IDs into ordered chunks of at
   most 500, the AddOrRemoveTagForMultipleMachines limit
3. Submitting: one POST per chunk; a 429 earns one retry after a fixed
   cooldown, anything else non-2xx fails the chunk and the run moves on
4. Done: report counts and derive the exit code

Re-running against the same population tags nothing new, because tagged
devices are filtered out first. Two concurrent runs are not guarded
against and the last writer wins.
"""

from __future__ import annotations

import logging
import math
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum

from .api import ApiClient, ApiError
from .config import MAX_TAG_BATCH_SIZE, Config, RunMode
from .filters import DevicePredicate
from .models import Device
from .retry import RetryPolicy, call_with_retry
from .security import log_security_audit_event

logger = logging.getLogger(__name__)

TAG_MACHINES_PATH = "machines/AddOrRemoveTagForMultipleMachines"
TAG_ACTION_ADD = "Add"

HTTP_UNAUTHORIZED = 401


class ReconcilePhase(str, Enum):
    """Phases of a single reconciliation run."""

    FETCHED = "Fetched"
    FILTERED = "Filtered"
    BATCHING = "Batching"
    SUBMITTING = "Submitting"
    DONE = "Done"


@dataclass(frozen=True)
class TagBatch:
    """An ordered chunk of machine IDs submitted in one call."""

    index: int
    machine_ids: tuple[str, ...]

    def __post_init__(self) -> None:
        if not self.machine_ids:
            raise ValueError("A tag batch cannot be empty")
        if len(self.machine_ids) > MAX_TAG_BATCH_SIZE:
            raise ValueError(
                f"A tag batch holds at most {MAX_TAG_BATCH_SIZE} IDs, got {len(self.machine_ids)}"
            )

    @property
    def size(self) -> int:
        return len(self.machine_ids)

    def to_request_body(self, tag: str) -> dict[str, object]:
        return {"Value": tag, "Action": TAG_ACTION_ADD, "MachineIds": list(self.machine_ids)}


@dataclass
class BatchResult:
    """Outcome of submitting one batch."""

    batch_index: int
    size: int
    succeeded: bool
    attempts: int = 0
    status_code: int | None = None
    error: str | None = None


@dataclass
class ReconcileResult:
    """Result of a single reconciliation run."""

    tag: str
    mode: RunMode
    start_time: datetime = field(default_factory=lambda: datetime.now(UTC))
    end_time: datetime | None = None
    phase: ReconcilePhase = ReconcilePhase.FETCHED
    inventory_count: int = 0
    already_tagged_count: int = 0
    candidate_ids: list[str] = field(default_factory=list)
    planned_batches: list[TagBatch] = field(default_factory=list)
    batch_results: list[BatchResult] = field(default_factory=list)

    @property
    def duration_seconds(self) -> float:
        """Calculate duration in seconds."""
        if self.end_time is None:
            return 0.0
        return (self.end_time - self.start_time).total_seconds()

    @property
    def candidate_count(self) -> int:
        return len(self.candidate_ids)

    @property
    def tagged_count(self) -> int:
        return sum(r.size for r in self.batch_results if r.succeeded)

    @property
    def failed_count(self) -> int:
        return sum(r.size for r in self.batch_results if not r.succeeded)

    @property
    def failed_batches(self) -> int:
        return sum(1 for r in self.batch_results if not r.succeeded)

    @property
    def success(self) -> bool:
        return self.failed_batches == 0

    @property
    def exit_code(self) -> int:
        """0 when no batch failed, including runs with nothing to do."""
        return 0 if self.success else 1

    def summary(self) -> str:
        if self.mode == RunMode.WHAT_IF:
            return (
                f"WhatIf: {self.candidate_count} device(s) would be tagged '{self.tag}' "
                f"in {len(self.planned_batches)} batch(es); "
                f"{self.already_tagged_count} already tagged of {self.inventory_count} "
                f"({self.duration_seconds:.1f}s)"
            )
        return (
            f"{self.tagged_count}/{self.candidate_count} tagged '{self.tag}', "
            f"{self.failed_count} failed in {self.failed_batches} batch(es); "
            f"{self.already_tagged_count} already tagged of {self.inventory_count} "
            f"({self.duration_seconds:.1f}s)"
        )


def chunk_machine_ids(
    machine_ids: Sequence[str], size: int = MAX_TAG_BATCH_SIZE
) -> list[TagBatch]:
    """Split IDs into ordered batches of at most size entries."""
    if not 1 <= size <= MAX_TAG_BATCH_SIZE:
        raise ValueError(f"Batch size must be between 1 and {MAX_TAG_BATCH_SIZE}")

    count = math.ceil(len(machine_ids) / size)
    return [
        TagBatch(index=i, machine_ids=tuple(machine_ids[i * size : (i + 1) * size]))
        for i in range(count)
    ]


class TagReconciler:
    """Applies a tag to every device matching a predicate."""

    def __init__(
        self,
        client: ApiClient,
        config: Config,
        *,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._client = client
        self._config = config
        self._sleep = sleep
        self._retry_policy = RetryPolicy(
            max_retries=1,
            delay_seconds=config.rate_limit_cooldown_seconds,
        )

    def reconcile(
        self,
        devices: Sequence[Device],
        tag: str,
        predicate: DevicePredicate,
        mode: RunMode = RunMode.APPLY,
    ) -> ReconcileResult:
        """Tag every untagged device accepted by predicate."""
        result = ReconcileResult(tag=tag, mode=mode, inventory_count=len(devices))

        untagged: list[Device] = []
        for device in devices:
            if device.has_tag(tag):
                result.already_tagged_count += 1
            else:
                untagged.append(device)

        result.candidate_ids = [d.id for d in untagged if predicate(d)]
        result.phase = ReconcilePhase.FILTERED
        logger.info(
            "Devices filtered",
            extra={
                "tag": tag,
                "inventory_count": result.inventory_count,
                "already_tagged": result.already_tagged_count,
                "candidates": result.candidate_count,
            },
        )

        result.planned_batches = chunk_machine_ids(
            result.candidate_ids, self._config.tag_batch_size
        )
        result.phase = ReconcilePhase.BATCHING

        if mode == RunMode.WHAT_IF:
            logger.info(
                "WhatIf mode - no tags submitted",
                extra={"tag": tag, "planned_batches": len(result.planned_batches)},
            )
            return self._finish(result)

        result.phase = ReconcilePhase.SUBMITTING
        for position, batch in enumerate(result.planned_batches):
            if position > 0:
                self._sleep(self._config.inter_batch_delay_seconds)
            result.batch_results.append(self._submit_batch(batch, tag))

        if result.batch_results:
            log_security_audit_event(
                "tag",
                target=TAG_MACHINES_PATH,
                action=f"{TAG_ACTION_ADD}:{tag}",
                result="success" if result.success else "partial",
                count=result.tagged_count,
            )

        return self._finish(result)

    def _submit_batch(self, batch: TagBatch, tag: str) -> BatchResult:
        body = batch.to_request_body(tag)

        try:
            outcome = call_with_retry(
                lambda: self._client.post_json(TAG_MACHINES_PATH, body),
                self._retry_policy,
                sleep=self._sleep,
            )
        except ApiError as e:
            logger.error(
                "Tag batch failed",
                extra={"batch_index": batch.index, "batch_size": batch.size, "error": str(e)},
            )
            return BatchResult(
                batch_index=batch.index, size=batch.size, succeeded=False, error=str(e)
            )

        if outcome.succeeded:
            logger.info(
                "Tag batch applied",
                extra={
                    "batch_index": batch.index,
                    "batch_size": batch.size,
                    "attempts": outcome.attempts,
                },
            )
        elif outcome.status_code == HTTP_UNAUTHORIZED:
            # Token lifetime is not tracked mid-run; an expired token lands here
            logger.warning(
                "Tag batch rejected as unauthorized, bearer token may have expired",
                extra={"batch_index": batch.index, "batch_size": batch.size},
            )
        else:
            logger.error(
                "Tag batch failed",
                extra={
                    "batch_index": batch.index,
                    "batch_size": batch.size,
                    "status_code": outcome.status_code,
                    "attempts": outcome.attempts,
                },
            )

        return BatchResult(
            batch_index=batch.index,
            size=batch.size,
            succeeded=outcome.succeeded,
            attempts=outcome.attempts,
            status_code=outcome.status_code,
            error=None if outcome.succeeded else f"HTTP {outcome.status_code}",
        )

    def _finish(self, result: ReconcileResult) -> ReconcileResult:
        result.end_time = datetime.now(UTC)
        result.phase = ReconcilePhase.DONE
        logger.info(
            "Reconciliation complete",
            extra={
                "tag": result.tag,
                "mode": result.mode.value,
                "candidates": result.candidate_count,
                "tagged": result.tagged_count,
                "failed": result.failed_count,
                "batches": len(result.planned_batches),
                "duration_seconds": round(result.duration_seconds, 2),
            },
        )
        return result
