"""
Progress — real-time hub for long-running operations.

ProgressHub ties the pieces together and is the only thing request handlers
and pipelines talk to:

- "progress" streams follow a single operation for the browser that started it.
- "processes" streams power the global panel: a snapshot on connect, then
  one event per change to any registered process.

Every mutation and its notification happen under one lock, so a subscriber
sees a process's events in the order they were applied. Notifications are
best-effort; only invalid registrations raise.
"""

import asyncio
import logging
import threading
from datetime import datetime
from typing import Any, Callable, Mapping

from pydantic import ValidationError

import settings
from connections import Channel, Connection, ConnectionRegistry, connection_key
from events import (
    CompletionEvent,
    ProcessAutoRemoved,
    ProcessComplete,
    ProcessError,
    ProcessesList,
    ProcessRegistered,
    ProcessRemoved,
    ProcessUpdate,
    ProgressEvent,
    ServerEvent,
)
from models import Process, ProcessStatus, ProcessType, utcnow
from processes import ProcessRegistry
from sweeper import ORPHAN_MESSAGE, OrphanSweeper
from timers import running_loop
from transport import Transport

logger = logging.getLogger(__name__)

STARTING_MESSAGES = {
    "analysis": "Starting analysis...",
    "transcription": "Starting transcription...",
    "action-plan": "Starting action plan...",
    "mockup": "Starting mockup generation...",
}

# Transcription backends worth naming in progress messages
METHOD_LABELS = {
    "replicate": "on GPU (fast)",
    "smart-whisper": "on CPU",
}


def annotate_message(message: str, operation_type: str, method: str | None) -> str:
    """Say which backend is doing the work, e.g. "Processing on CPU..."."""
    label = METHOD_LABELS.get(method or "")
    if operation_type != ProcessType.TRANSCRIPTION.value or not label:
        return message
    if "Processing" not in message:
        return message
    return message.replace("Processing", f"Processing {label}", 1)


class ProgressHub:
    def __init__(
        self,
        keepalive_interval: float = settings.KEEPALIVE_INTERVAL,
        sweep_interval: float = settings.SWEEP_INTERVAL,
        orphan_timeout: float = settings.ORPHAN_TIMEOUT,
        grace_period: float = settings.GRACE_PERIOD,
        stale_completed_after: float = settings.STALE_COMPLETED_AFTER,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.stale_completed_after = stale_completed_after
        self.connections = ConnectionRegistry(keepalive_interval)
        self.processes = ProcessRegistry(grace_period, clock=clock)
        self.processes.on_expired = self._auto_remove
        self.sweeper = OrphanSweeper(
            self.processes,
            on_orphan=self._time_out,
            on_expired=self._auto_remove,
            interval=sweep_interval,
            timeout=orphan_timeout,
        )
        self._loop: asyncio.AbstractEventLoop | None = None
        self._lock = threading.RLock()

    # --- Lifecycle ---

    def start(self, loop: asyncio.AbstractEventLoop | None = None) -> None:
        """Bind to the running loop and start the orphan sweeper."""
        self._loop = loop or asyncio.get_running_loop()
        self.processes.bind_loop(self._loop)
        self.sweeper.start()

    def stop(self) -> None:
        self.sweeper.stop()
        self.connections.close_all()
        self.processes.close()
        logger.info("[Hub] Stopped")

    # --- Streams ---

    def open_progress_stream(
        self, operation_key: str, transport: Transport, operation_type: str = "analysis"
    ) -> Connection:
        hello = self._starting_event(operation_type)
        return self.connections.register(
            connection_key(operation_key, Channel.PROGRESS),
            transport,
            Channel.PROGRESS,
            greeting=[hello],
            loop=self._event_loop(),
        )

    def open_processes_stream(self, owner_id: str, transport: Transport) -> Connection:
        """Register a panel stream, greeting it with every process currently known."""
        with self._lock:
            for process in self.processes.expired(older_than=self.stale_completed_after):
                self._auto_remove(process.owner_id, process.id)
            processes = self.processes.list_all()
            snapshot = ProcessesList(processes=processes, total_processes=len(processes))
            return self.connections.register(
                connection_key(owner_id, Channel.PROCESSES),
                transport,
                Channel.PROCESSES,
                greeting=[snapshot],
                loop=self._event_loop(),
            )

    def close_stream(self, key: str, connection: Connection | None = None) -> None:
        self.connections.remove(key, connection)

    # --- Single-operation progress ---

    def push_progress(
        self,
        operation_key: str,
        percentage: int = 0,
        message: str = "",
        step: int | None = None,
        step_status: str | None = None,
        operation_type: str = "analysis",
        method: str | None = None,
        **extra: Any,
    ) -> bool:
        try:
            event = ProgressEvent(
                percentage=percentage,
                message=annotate_message(message, operation_type, method),
                step=step,
                step_status=step_status,
                operation_type=operation_type,
                method=method,
                **extra,
            )
        except ValidationError as e:
            logger.warning("[Hub] Bad progress update for %s: %s", operation_key, e)
            return False
        return self.connections.send(connection_key(operation_key, Channel.PROGRESS), event)

    def init_progress(self, operation_key: str, operation_type: str = "analysis") -> bool:
        return self.connections.send(
            connection_key(operation_key, Channel.PROGRESS), self._starting_event(operation_type)
        )

    def push_completion(
        self,
        operation_key: str,
        payload: Mapping[str, Any] | None = None,
        operation_type: str = "analysis",
        **extra: Any,
    ) -> bool:
        try:
            event = CompletionEvent(**{**(payload or {}), **extra, "operation_type": operation_type})
        except ValidationError as e:
            logger.warning("[Hub] Bad completion payload for %s: %s", operation_key, e)
            return False
        return self.connections.send(connection_key(operation_key, Channel.PROGRESS), event)

    # --- Global processes ---

    def register_process(
        self,
        owner_id: str,
        data: Mapping[str, Any],
        user: Mapping[str, Any] | None = None,
    ) -> Process:
        """Register a process and announce it. Raises ProcessValidationError."""
        with self._lock:
            process = self.processes.create(owner_id, data, user)
            self._publish(ProcessRegistered(process=process, total_processes=len(self.processes)))
            return process

    def update_process(self, owner_id: str, process_id: str, **fields: Any) -> Process | None:
        with self._lock:
            process = self.processes.update(owner_id, process_id, fields)
            if process is not None:
                self._publish(ProcessUpdate(
                    process_id=process.id,
                    progress_percent=process.progress_percent,
                    message=process.message,
                    process=process,
                ))
            return process

    def complete_process(self, owner_id: str, process_id: str, **fields: Any) -> Process | None:
        with self._lock:
            process = self.processes.complete(owner_id, process_id, fields, loop=self._event_loop())
            if process is not None:
                self._publish(ProcessComplete(
                    process_id=process.id,
                    result_reference=process.result_reference,
                    process=process,
                ))
                logger.info("[Hub] Process %s completed (%s)", process.id, process.type.value)
            return process

    def error_process(self, owner_id: str, process_id: str, error_message: str) -> Process | None:
        with self._lock:
            process = self.processes.error(owner_id, process_id, error_message)
            if process is not None:
                self._publish(ProcessError(
                    process_id=process.id,
                    error_message=error_message,
                    process=process,
                ))
                logger.info("[Hub] Process %s failed: %s", process.id, error_message)
            return process

    def remove_process(self, owner_id: str, process_id: str) -> bool:
        with self._lock:
            process = self.processes.remove(owner_id, process_id)
            if process is None:
                return False
            self._publish(ProcessRemoved(process_id=process_id, total_processes=len(self.processes)))
            return True

    def list_processes(self, owner_id: str | None = None) -> list[Process]:
        if owner_id is None:
            return self.processes.list_all()
        return self.processes.list(owner_id)

    def find_process(
        self,
        process_type: ProcessType | str,
        status: ProcessStatus | None = ProcessStatus.IN_PROGRESS,
        **metadata: Any,
    ) -> Process | None:
        """First process of a type whose metadata matches, e.g. find_process("analysis", customer_id=...)."""
        process_type = ProcessType.parse(process_type)

        def matches(process: Process) -> bool:
            return (
                process.type is process_type
                and (status is None or process.status is status)
                and all(process.metadata.get(k) == v for k, v in metadata.items())
            )

        return self.processes.find(matches)

    # --- Internals ---

    def _starting_event(self, operation_type: str) -> ProgressEvent:
        return ProgressEvent(
            percentage=0,
            message=STARTING_MESSAGES.get(operation_type, "Starting..."),
            step=1,
            step_status="active",
            operation_type=operation_type,
        )

    def _event_loop(self) -> asyncio.AbstractEventLoop | None:
        return self._loop or running_loop()

    def _publish(self, event: ServerEvent) -> None:
        self.connections.broadcast(Channel.PROCESSES, event)

    def _time_out(self, process: Process) -> None:
        self.error_process(process.owner_id, process.id, ORPHAN_MESSAGE)

    def _auto_remove(self, owner_id: str, process_id: str) -> None:
        with self._lock:
            current = self.processes.get(owner_id, process_id)
            if current is None or current.status is not ProcessStatus.COMPLETED:
                return
            self.processes.remove(owner_id, process_id)
            self._publish(ProcessAutoRemoved(process_id=process_id, total_processes=len(self.processes)))
        logger.info("[Hub] Process %s removed after completion", process_id)
