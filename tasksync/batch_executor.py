from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable

from tasksync.exceptions import (
    AuthorizationError,
    StructuralBatchError,
    classify_status,
)
from tasksync.gateway import BatchResponse
from tasksync.operations import ChangeSetOperation, DeleteOp, operation_kind

logger = logging.getLogger(__name__)

MAX_BATCH_SIZE = 50


@dataclass
class OperationOutcome:
    op: ChangeSetOperation
    success: bool
    status: int | None = None
    body: dict[str, Any] | None = None
    error: str = ""
    failure_kind: str = ""

    @property
    def is_drift(self) -> bool:
        return self.failure_kind == "drift"

    @property
    def is_retryable(self) -> bool:
        return not self.success and self.failure_kind in ("transient", "structural")


@dataclass
class ExecutionReport:
    outcomes: list[OperationOutcome] = field(default_factory=list)
    aborted: bool = False
    abort_error: str = ""

    def by_op_id(self) -> dict[str, OperationOutcome]:
        return {outcome.op.op_id: outcome for outcome in self.outcomes}

    @property
    def succeeded(self) -> int:
        return sum(1 for outcome in self.outcomes if outcome.success)

    @property
    def failed(self) -> int:
        return sum(1 for outcome in self.outcomes if not outcome.success)


def group_by_calendar(operations: list[ChangeSetOperation]) -> dict[str, list[ChangeSetOperation]]:
    groups: dict[str, list[ChangeSetOperation]] = {}
    for op in operations:
        groups.setdefault(op.calendar_id, []).append(op)
    return groups


def chunked(items: list[ChangeSetOperation], size: int) -> list[list[ChangeSetOperation]]:
    return [items[i : i + size] for i in range(0, len(items), size)]


class BatchExecutor:
    """Submit operations in per-calendar batches and classify every result.

    An authorization failure stops submission: the report is marked aborted and
    carries the outcomes of the chunks that did run, so the caller can record
    remote effects that already happened before surfacing the error.
    """

    def __init__(
        self,
        gateway: Any,
        *,
        max_batch_size: int = MAX_BATCH_SIZE,
        backoff_seconds: float = 2.0,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.gateway = gateway
        self.max_batch_size = max(1, min(int(max_batch_size), MAX_BATCH_SIZE))
        self.backoff_seconds = backoff_seconds
        self.sleep = sleep

    def execute(self, operations: list[ChangeSetOperation]) -> ExecutionReport:
        report = ExecutionReport()
        if not operations:
            return report
        for calendar_id, group in group_by_calendar(operations).items():
            for chunk in chunked(group, self.max_batch_size):
                try:
                    outcomes = self._execute_chunk(chunk)
                except AuthorizationError as exc:
                    logger.warning("Batch for calendar %s rejected credentials: %s", calendar_id, exc)
                    report.aborted = True
                    report.abort_error = str(exc)
                    return report
                report.outcomes.extend(outcomes)
                denied = [outcome for outcome in outcomes if outcome.failure_kind == "authorization"]
                if denied:
                    report.aborted = True
                    report.abort_error = denied[0].error or f"HTTP {denied[0].status}"
                    return report
        logger.info(
            "Executed %d operations in %d calendars: %d succeeded, %d failed",
            len(report.outcomes),
            len(group_by_calendar(operations)),
            report.succeeded,
            report.failed,
        )
        return report

    def _send(self, chunk: list[ChangeSetOperation]) -> BatchResponse:
        try:
            response = self.gateway.execute_batch(chunk)
        except StructuralBatchError as exc:
            return BatchResponse(batch_failed=True, batch_status=exc.status or 400, batch_error=str(exc))
        if response.batch_failed and classify_status(response.batch_status) == "transient":
            logger.warning(
                "Batch of %d operations failed (%s); retrying once in %.1fs",
                len(chunk),
                response.batch_error or response.batch_status,
                self.backoff_seconds,
            )
            self.sleep(self.backoff_seconds)
            try:
                response = self.gateway.execute_batch(chunk)
            except StructuralBatchError as exc:
                return BatchResponse(batch_failed=True, batch_status=exc.status or 400, batch_error=str(exc))
        return response

    def _execute_chunk(self, chunk: list[ChangeSetOperation]) -> list[OperationOutcome]:
        response = self._send(chunk)
        if response.batch_failed:
            kind = classify_status(response.batch_status)
            if kind == "authorization":
                raise AuthorizationError(response.batch_error or "Batch request unauthorized", response.batch_status)
            failure_kind = "transient" if kind == "transient" else "structural"
            logger.warning(
                "Batch of %d operations failed as a whole (%s): %s",
                len(chunk),
                failure_kind,
                response.batch_error,
            )
            return [
                OperationOutcome(
                    op=op,
                    success=False,
                    status=response.batch_status,
                    error=response.batch_error or "Batch request failed",
                    failure_kind=failure_kind,
                )
                for op in chunk
            ]

        results = {result.op_id: result for result in response.results}
        outcomes: list[OperationOutcome] = []
        for op in chunk:
            result = results.get(op.op_id)
            if result is None:
                outcomes.append(
                    OperationOutcome(op=op, success=False, error="No response received", failure_kind="transient")
                )
                continue
            kind = classify_status(result.status)
            if kind == "success":
                outcomes.append(OperationOutcome(op=op, success=True, status=result.status, body=result.body))
                continue
            if kind == "drift":
                # Deleting something already gone is the desired end state.
                outcomes.append(
                    OperationOutcome(
                        op=op,
                        success=isinstance(op, DeleteOp),
                        status=result.status,
                        body=result.body,
                        error=result.error,
                        failure_kind="drift",
                    )
                )
                continue
            logger.warning(
                "%s for task %s failed with %s: %s",
                operation_kind(op),
                op.task_id,
                result.status,
                result.error,
            )
            outcomes.append(
                OperationOutcome(
                    op=op,
                    success=False,
                    status=result.status,
                    body=result.body,
                    error=result.error,
                    failure_kind=kind,
                )
            )
        return outcomes
