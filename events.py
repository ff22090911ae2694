"""
Events — the hub's event vocabulary and its Server-Sent Events framing.

Every event is a pydantic model whose class-level ``event`` is the SSE event
name, so consumers can switch on the name and rely on a fixed field set:

    event: process-update
    data: {"process_id": "...", "progress_percent": 40, ...}

send_event() is the single place a chunk is written to a transport; it never
raises, because a subscriber that went away must not break the sender.
"""

import json
import logging
from typing import Any, ClassVar, Optional, Union

from pydantic import BaseModel, ConfigDict

from models import Process
from transport import Transport

logger = logging.getLogger(__name__)

KEEPALIVE = ": keepalive\n\n"


def format_sse(event: str, data: Any) -> str:
    """Frame one named event with a JSON payload."""
    return f"event: {event}\ndata: {json.dumps(data)}\n\n"


class ServerEvent(BaseModel):
    event: ClassVar[str]

    def to_sse(self) -> str:
        return format_sse(self.event, self.model_dump(mode="json"))


# --- "progress" channel (one operation, one browser) ---

class ProgressEvent(ServerEvent):
    event: ClassVar[str] = "progress"
    model_config = ConfigDict(extra="allow")

    percentage: int = 0
    message: str = ""
    step: Optional[int] = None
    step_status: Optional[str] = None  # "active" | "completed" | "error"
    operation_type: str = "analysis"
    method: Optional[str] = None       # backend that produced the update, e.g. "replicate"


class CompletionEvent(ServerEvent):
    event: ClassVar[str] = "complete"
    model_config = ConfigDict(extra="allow")

    operation_type: str = "analysis"


# --- "processes" channel (global panel) ---

class ProcessesList(ServerEvent):
    event: ClassVar[str] = "processes-list"

    processes: list[Process]
    total_processes: int


class ProcessRegistered(ServerEvent):
    event: ClassVar[str] = "process-registered"

    process: Process
    total_processes: int


class ProcessUpdate(ServerEvent):
    event: ClassVar[str] = "process-update"

    process_id: str
    progress_percent: int
    message: str
    process: Process


class ProcessComplete(ServerEvent):
    event: ClassVar[str] = "process-complete"

    process_id: str
    result_reference: Optional[Any] = None
    process: Process


class ProcessError(ServerEvent):
    event: ClassVar[str] = "process-error"

    process_id: str
    error_message: str
    process: Process


class ProcessRemoved(ServerEvent):
    event: ClassVar[str] = "process-removed"

    process_id: str
    total_processes: int


class ProcessAutoRemoved(ServerEvent):
    event: ClassVar[str] = "process-auto-removed"

    process_id: str
    total_processes: int


ProcessEvent = Union[
    ProcessesList,
    ProcessRegistered,
    ProcessUpdate,
    ProcessComplete,
    ProcessError,
    ProcessRemoved,
    ProcessAutoRemoved,
]


def send_event(transport: Transport, event: ServerEvent) -> bool:
    """Write one event to a transport. Returns False instead of raising."""
    if transport.closed:
        logger.debug("[SSE] Stream closed, dropping %s", event.event)
        return False
    try:
        transport.write(event.to_sse())
        return True
    except Exception as e:
        logger.warning("[SSE] Failed to send %s: %s", event.event, e)
        return False
