import math
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ProcessType(str, Enum):
    ANALYSIS = "analysis"
    TRANSCRIPTION = "transcription"
    ACTION_PLAN = "action-plan"
    MOCKUP = "mockup"
    GENERIC = "generic"

    @classmethod
    def parse(cls, value: Any) -> "ProcessType":
        """Map a free-form type label onto the enum; unknown labels become GENERIC."""
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            return cls.GENERIC


class ProcessStatus(str, Enum):
    IN_PROGRESS = "in-progress"
    COMPLETED = "completed"
    ERROR = "error"

    @property
    def terminal(self) -> bool:
        return self is not ProcessStatus.IN_PROGRESS


# --- Process record (owned by the process registry) ---

class Process(BaseModel):
    # Records are replaced, never mutated; extra keys carry opaque business fields
    model_config = ConfigDict(extra="allow", frozen=True)

    id: str
    owner_id: str
    type: ProcessType
    title: str
    status: ProcessStatus = ProcessStatus.IN_PROGRESS
    progress_percent: int = 0
    message: str = ""
    estimated_minutes: int
    created_at: datetime
    last_updated_at: datetime
    completed_at: Optional[datetime] = None
    errored_at: Optional[datetime] = None
    result_reference: Optional[Any] = None
    error_message: Optional[str] = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    user_name: str = "User"   # who started it, for panel attribution
    user_email: str = ""

    @field_validator("progress_percent", mode="before")
    @classmethod
    def _clamp_percent(cls, value: Any) -> int:
        if value is None:
            return 0
        try:
            percent = float(value)
        except TypeError as e:
            raise ValueError(f"progress_percent must be a number, got {value!r}") from e
        if not math.isfinite(percent):
            raise ValueError("progress_percent must be finite")
        return max(0, min(100, round(percent)))

