from __future__ import annotations

import asyncio
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional

from nodeflow.logging import get_logger
from nodeflow.models import RunRecord, RunStatus
from nodeflow.service.errors import RunNotFoundError, RunStateError

DEFAULT_MAX_FINISHED_RUNS = 100


@dataclass
class _TrackedRun:
    record: RunRecord
    cancel_event: asyncio.Event
    cancel_reason: Optional[str] = None
    registered_at: datetime = field(default_factory=datetime.utcnow)


class RunRegistry:
    """In-memory index of runs owned by one engine.

    Active runs stay until they finish; finished runs are kept for lookup up
    to ``max_finished`` entries, oldest evicted first. All calls are expected
    from the event loop that executes the runs.
    """

    def __init__(self, *, max_finished: int = DEFAULT_MAX_FINISHED_RUNS) -> None:
        self._runs: "OrderedDict[str, _TrackedRun]" = OrderedDict()
        self.max_finished = max(0, max_finished)
        self.logger = get_logger(__name__)

    def register(
        self, record: RunRecord, cancel_event: Optional[asyncio.Event] = None
    ) -> asyncio.Event:
        if record.run_id in self._runs:
            raise RunStateError(
                f"Run '{record.run_id}' is already registered",
                detail={"run_id": record.run_id},
            )
        tracked = _TrackedRun(record=record, cancel_event=cancel_event or asyncio.Event())
        self._runs[record.run_id] = tracked
        self.logger.debug("run_registered", run_id=record.run_id, workflow_id=record.workflow_id)
        return tracked.cancel_event

    def _tracked(self, run_id: str) -> _TrackedRun:
        tracked = self._runs.get(run_id)
        if tracked is None:
            raise RunNotFoundError(f"Run '{run_id}' not found", detail={"run_id": run_id})
        return tracked

    def get(self, run_id: str) -> RunRecord:
        return self._tracked(run_id).record

    def cancel_reason(self, run_id: str) -> Optional[str]:
        return self._tracked(run_id).cancel_reason

    def update_status(self, run_id: str, status: RunStatus) -> RunRecord:
        tracked = self._tracked(run_id)
        previous = tracked.record.status
        if previous.is_terminal and previous != status:
            raise RunStateError(
                f"Run '{run_id}' already finished with status '{previous.value}'",
                detail={"run_id": run_id, "status": previous.value},
            )
        tracked.record.status = status
        if status.is_terminal:
            if tracked.record.completed_at is None:
                tracked.record.completed_at = datetime.utcnow()
            self._evict_finished()
        return tracked.record

    def cancel(self, run_id: str, reason: Optional[str] = None) -> bool:
        """Request cancellation.

        Returns False when the run already finished or a cancel is already
        pending; the first reason is kept.
        """
        tracked = self._tracked(run_id)
        if tracked.record.status.is_terminal:
            self.logger.info(
                "run_cancel_ignored", run_id=run_id, status=tracked.record.status.value
            )
            return False
        if tracked.cancel_event.is_set():
            self.logger.info("run_cancel_ignored", run_id=run_id, status="cancelling")
            return False
        tracked.cancel_reason = reason or "cancelled"
        tracked.cancel_event.set()
        self.logger.info("run_cancel_requested", run_id=run_id, reason=tracked.cancel_reason)
        return True

    def list_active(self) -> List[RunRecord]:
        return [t.record for t in self._runs.values() if not t.record.status.is_terminal]

    def remove(self, run_id: str) -> None:
        self._runs.pop(run_id, None)

    def _evict_finished(self) -> None:
        finished = [rid for rid, t in self._runs.items() if t.record.status.is_terminal]
        for run_id in finished[: max(0, len(finished) - self.max_finished)]:
            del self._runs[run_id]

    def __len__(self) -> int:
        return len(self._runs)

    def __contains__(self, run_id: object) -> bool:
        return run_id in self._runs


__all__ = ["RunRegistry", "DEFAULT_MAX_FINISHED_RUNS"]
