"""
In-memory run store.

Holds RunRecords keyed by run id for the lifetime of the process. The store
is owned by the application (app.state.run_store) rather than a module
singleton, and takes its clock and id generator as arguments so tests can
pin both.

Update semantics:
    - only keys present in the update are applied; absent keys are untouched
    - "progress_append" pushes one entry onto progress instead of replacing it
    - updated_at is refreshed on every applied update
    - status changes follow STATUS_TRANSITIONS; a disallowed status change is
      dropped together with the fields bound to it
    - completed and failed records are frozen
"""

import logging
import threading
import uuid
from collections import OrderedDict
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from models.run_record import RunRecord
from state import (
    MAX_RUN_RECORDS,
    STATUS_AWAITING_INPUT,
    STATUS_COMPLETED,
    STATUS_FAILED,
    STATUS_PENDING,
    STATUS_TRANSITIONS,
    TERMINAL_STATUSES,
)


logger = logging.getLogger(__name__)

_UPDATABLE_FIELDS = {
    "status",
    "metadata",
    "usage",
    "result",
    "error",
    "clarification",
    "plan",
    "approval_url",
    "approval_mode",
    "approval_step_id",
}

# Fields that only make sense together with the status carried in the same update
_STATUS_BOUND_FIELDS = {
    "result",
    "error",
    "clarification",
    "plan",
    "approval_url",
    "approval_mode",
    "approval_step_id",
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RunStore:
    """Thread-safe, capacity-bounded store of RunRecords."""

    def __init__(
        self,
        capacity: int = MAX_RUN_RECORDS,
        clock: Optional[Callable[[], datetime]] = None,
        id_factory: Optional[Callable[[], str]] = None,
    ) -> None:
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        self.capacity = capacity
        self._clock = clock or _utcnow
        self._id_factory = id_factory or (lambda: str(uuid.uuid4()))
        self._store: "OrderedDict[str, RunRecord]" = OrderedDict()
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._store)

    def __contains__(self, run_id: str) -> bool:
        return run_id in self._store

    def create(self, artifact_kind: str, request: Dict[str, Any]) -> RunRecord:
        now = self._clock()
        record = RunRecord(
            id=self._id_factory(),
            artifact_kind=artifact_kind,
            status=STATUS_PENDING,
            request=request,
            created_at=now,
            updated_at=now,
        )
        with self._lock:
            self._store[record.id] = record
            self._evict()
        logger.info("Run %s created (%s)", record.id, artifact_kind)
        return record

    def get(self, run_id: str) -> Optional[RunRecord]:
        with self._lock:
            return self._store.get(run_id)

    def list(self) -> List[RunRecord]:
        with self._lock:
            return list(self._store.values())

    def update(self, run_id: str, updates: Dict[str, Any]) -> Optional[RunRecord]:
        """
        Apply a partial update to a run.

        Returns:
            The updated record, the unchanged record if it is terminal, or
            None when no run with that id exists.

        Raises:
            ValueError: if the update names a field that cannot be updated.
        """
        unknown = set(updates) - _UPDATABLE_FIELDS - {"progress_append"}
        if unknown:
            raise ValueError(f"Cannot update run fields: {sorted(unknown)}")

        with self._lock:
            record = self._store.get(run_id)
            if record is None:
                return None

            if record.status in TERMINAL_STATUSES:
                logger.debug("Run %s is %s; ignoring update %s", run_id, record.status, sorted(updates))
                return record

            updates = dict(updates)
            new_status = updates.pop("status", None)
            if new_status is not None and new_status not in STATUS_TRANSITIONS[record.status]:
                logger.warning(
                    "Run %s: ignoring transition %s -> %s",
                    run_id, record.status, new_status,
                )
                for field in _STATUS_BOUND_FIELDS:
                    updates.pop(field, None)
                new_status = None

            if "progress_append" in updates:
                record.progress.append(updates.pop("progress_append"))

            for field, value in updates.items():
                setattr(record, field, value)

            if new_status is not None:
                record.status = new_status

            # Each of these is only non-null in its own status
            if record.status != STATUS_FAILED:
                record.error = None
            if record.status != STATUS_AWAITING_INPUT:
                record.clarification = None
            if record.status != STATUS_COMPLETED:
                record.result = None

            record.updated_at = self._clock()
            return record

    def _evict(self) -> None:
        """Drop the oldest-created records until the store is back at capacity."""
        while len(self._store) > self.capacity:
            oldest_id = min(self._store, key=lambda rid: self._store[rid].created_at)
            self._store.pop(oldest_id)
            logger.info("Run %s evicted (capacity %d)", oldest_id, self.capacity)
