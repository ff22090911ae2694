"""
Processes — in-memory registry of long-running operations.

Two levels: owner id -> (process id -> Process). Records are immutable
pydantic models and every change stores a new record. list() and list_all()
hand out deep copies, so callers can never reach the stored metadata.

Status only moves forward (in-progress -> completed | error). Completed
processes are dropped automatically after a grace period so panels can show
the final state briefly; errored ones stay until someone removes them.
"""

import asyncio
import logging
import threading
from datetime import datetime, timedelta
from typing import Any, Callable, Iterator, List, Mapping

from pydantic import ValidationError

from estimator import estimate_minutes
from models import Process, ProcessStatus, ProcessType, utcnow
from timers import Timer, running_loop

logger = logging.getLogger(__name__)

REQUIRED_FIELDS = ("id", "type", "title")

# Only the registry's own transitions may touch these
PROTECTED_FIELDS = frozenset({
    "id",
    "owner_id",
    "type",
    "status",
    "created_at",
    "estimated_minutes",
    "completed_at",
    "errored_at",
})


class ProcessValidationError(ValueError):
    """Registration data is incomplete; nothing was registered."""

    def __init__(self, missing: list[str], message: str | None = None):
        self.missing = missing
        super().__init__(message or f"Missing required fields: {', '.join(missing)}")


class DuplicateProcessError(ProcessValidationError):
    def __init__(self, owner_id: str, process_id: str):
        self.owner_id = owner_id
        self.process_id = process_id
        super().__init__([], f"Process {process_id} is already registered for {owner_id}")


class ProcessRegistry:
    def __init__(self, grace_period: float = 10.0, clock: Callable[[], datetime] = utcnow):
        self.grace_period = grace_period
        self.clock = clock
        # Called as on_expired(owner_id, process_id) when a grace period runs out
        self.on_expired: Callable[[str, str], None] | None = None
        self._owners: dict[str, dict[str, Process]] = {}
        self._removals: dict[tuple[str, str], Timer] = {}
        self._loop: asyncio.AbstractEventLoop | None = None
        self._lock = threading.RLock()

    def bind_loop(self, loop: asyncio.AbstractEventLoop) -> None:
        """Loop used for auto-removal timers when completing from a worker thread."""
        self._loop = loop

    def __len__(self) -> int:
        with self._lock:
            return sum(len(procs) for procs in self._owners.values())

    # --- Queries ---

    def get(self, owner_id: str, process_id: str) -> Process | None:
        with self._lock:
            return self._owners.get(owner_id, {}).get(process_id)

    def list(self, owner_id: str) -> List[Process]:
        with self._lock:
            return [p.model_copy(deep=True) for p in self._owners.get(owner_id, {}).values()]

    def list_all(self) -> List[Process]:
        with self._lock:
            return [p.model_copy(deep=True) for p in self._iter_all()]

    def find(self, predicate: Callable[[Process], bool]) -> Process | None:
        with self._lock:
            return next((p for p in self._iter_all() if predicate(p)), None)

    def in_progress(self) -> List[Process]:
        with self._lock:
            return [p for p in self._iter_all() if p.status is ProcessStatus.IN_PROGRESS]

    def expired(self, older_than: float | None = None, now: datetime | None = None) -> List[Process]:
        """Completed processes whose grace period (or ``older_than`` seconds) has run out."""
        cutoff = (now or self.clock()) - timedelta(
            seconds=self.grace_period if older_than is None else older_than
        )
        with self._lock:
            return [
                p for p in self._iter_all()
                if p.status is ProcessStatus.COMPLETED and p.completed_at and p.completed_at <= cutoff
            ]

    def _iter_all(self) -> Iterator[Process]:
        for procs in self._owners.values():
            yield from procs.values()

    # --- Mutations ---

    def create(
        self,
        owner_id: str,
        data: Mapping[str, Any],
        user: Mapping[str, Any] | None = None,
    ) -> Process:
        """Register a new in-progress process. Raises ProcessValidationError."""
        missing = [name for name in REQUIRED_FIELDS if not data.get(name)]
        if missing:
            raise ProcessValidationError(missing)

        user = user or {}
        process_id = str(data["id"])
        process_type = ProcessType.parse(data["type"])
        metadata = data.get("metadata") or {}
        if not isinstance(metadata, Mapping):
            raise ProcessValidationError(["metadata"], "metadata must be an object")
        metadata = dict(metadata)
        now = self.clock()

        fields = {k: v for k, v in data.items() if k not in PROTECTED_FIELDS}
        fields.update(
            id=process_id,
            owner_id=owner_id,
            type=process_type,
            title=str(data["title"]),
            status=ProcessStatus.IN_PROGRESS,
            progress_percent=0,
            estimated_minutes=estimate_minutes(process_type, metadata),
            created_at=now,
            last_updated_at=now,
            metadata=metadata,
            user_name=user.get("name") or "User",
            user_email=user.get("email") or "",
        )
        try:
            process = Process(**fields)
        except ValidationError as e:
            raise ProcessValidationError([], f"Invalid process data: {e}") from e

        with self._lock:
            procs = self._owners.setdefault(owner_id, {})
            if process_id in procs:
                raise DuplicateProcessError(owner_id, process_id)
            procs[process_id] = process

        logger.info(
            "[Processes] Registered %s %s for %s (~%d min)",
            process_type.value, process_id, owner_id, process.estimated_minutes,
        )
        return process

    def update(self, owner_id: str, process_id: str, fields: Mapping[str, Any]) -> Process | None:
        """Merge fields into a process. Unknown ids are ignored."""
        changes = {k: v for k, v in fields.items() if k not in PROTECTED_FIELDS}
        if len(changes) != len(fields):
            logger.debug(
                "[Processes] Ignoring protected fields %s on %s",
                sorted(set(fields) - set(changes)), process_id,
            )
        with self._lock:
            current = self.get(owner_id, process_id)
            if current is None:
                logger.info("[Processes] Update for unknown process %s/%s ignored", owner_id, process_id)
                return None
            changes["last_updated_at"] = self.clock()
            return self._replace(current, changes)

    def complete(
        self,
        owner_id: str,
        process_id: str,
        fields: Mapping[str, Any] | None = None,
        loop: asyncio.AbstractEventLoop | None = None,
    ) -> Process | None:
        """Mark a process completed and schedule its removal after the grace period."""
        with self._lock:
            current = self._transitionable(owner_id, process_id, "complete")
            if current is None:
                return None
            now = self.clock()
            changes = {"message": "Process completed!"}
            changes.update((k, v) for k, v in (fields or {}).items() if k not in PROTECTED_FIELDS)
            changes.update(
                status=ProcessStatus.COMPLETED,
                progress_percent=100,
                completed_at=now,
                last_updated_at=now,
            )
            process = self._replace(current, changes)
            if process is not None:
                self._schedule_removal(owner_id, process_id, loop)
            return process

    def error(self, owner_id: str, process_id: str, message: str) -> Process | None:
        """Mark a process failed. It stays listed until removed."""
        with self._lock:
            current = self._transitionable(owner_id, process_id, "error")
            if current is None:
                return None
            now = self.clock()
            return self._replace(current, {
                "status": ProcessStatus.ERROR,
                "message": message,
                "error_message": message,
                "errored_at": now,
                "last_updated_at": now,
            })

    def remove(self, owner_id: str, process_id: str) -> Process | None:
        with self._lock:
            procs = self._owners.get(owner_id)
            process = procs.pop(process_id, None) if procs is not None else None
            if procs is not None and not procs:
                del self._owners[owner_id]
            timer = self._removals.pop((owner_id, process_id), None)
        if timer is not None:
            timer.cancel()
        return process

    def close(self) -> None:
        """Cancel pending auto-removals (shutdown)."""
        with self._lock:
            timers = list(self._removals.values())
            self._removals.clear()
        for timer in timers:
            timer.cancel()

    # --- Internals ---

    def _transitionable(self, owner_id: str, process_id: str, action: str) -> Process | None:
        current = self.get(owner_id, process_id)
        if current is None:
            logger.info("[Processes] Cannot %s unknown process %s/%s", action, owner_id, process_id)
            return None
        if current.status.terminal:
            logger.info(
                "[Processes] Cannot %s %s, already %s", action, process_id, current.status.value
            )
            return None
        return current

    def _replace(self, current: Process, changes: Mapping[str, Any]) -> Process | None:
        try:
            process = Process.model_validate({**current.model_dump(), **changes})
        except ValidationError as e:
            logger.warning("[Processes] Rejected update for %s: %s", current.id, e)
            return None
        self._owners[current.owner_id][current.id] = process
        return process

    def _schedule_removal(
        self, owner_id: str, process_id: str, loop: asyncio.AbstractEventLoop | None
    ) -> None:
        loop = loop or self._loop or running_loop()
        if loop is None:
            logger.warning(
                "[Processes] No event loop, %s stays until the next sweep", process_id
            )
            return
        key = (owner_id, process_id)
        previous = self._removals.pop(key, None)
        if previous is not None:
            previous.cancel()
        self._removals[key] = Timer(loop, self.grace_period, lambda: self._expire(owner_id, process_id))

    def _expire(self, owner_id: str, process_id: str) -> None:
        with self._lock:
            self._removals.pop((owner_id, process_id), None)
            current = self.get(owner_id, process_id)
        if current is None or current.status is not ProcessStatus.COMPLETED:
            return
        if self.on_expired is not None:
            self.on_expired(owner_id, process_id)
        else:
            self.remove(owner_id, process_id)
