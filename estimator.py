"""
Estimator — rough duration guess shown next to a freshly registered process.

Pure function of the process type and whatever metadata the pipeline supplied.
"""

import math
from typing import Any, Mapping

from models import ProcessType

DEFAULT_MINUTES = 5
ANALYSIS_MINUTES = 3
BYTES_PER_AUDIO_MINUTE = 1024 * 1024  # ~1MB of audio per minute
MINUTES_PER_SOURCE_DOCUMENT = 1.5
MIN_ACTION_PLAN_MINUTES = 2


def _positive_number(value: Any) -> float | None:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return number if number > 0 and math.isfinite(number) else None


def _count(value: Any) -> int:
    """Source documents arrive either as a list of ids or as a plain count."""
    if isinstance(value, (list, tuple, set)):
        return len(value)
    number = _positive_number(value)
    return int(number) if number else 0


def estimate_minutes(process_type: ProcessType | str, metadata: Mapping[str, Any] | None = None) -> int:
    """Estimate how many minutes a process of this type will take."""
    metadata = metadata or {}
    process_type = ProcessType.parse(process_type)

    if process_type is ProcessType.TRANSCRIPTION:
        duration = _positive_number(metadata.get("duration_seconds"))
        if duration:
            return math.ceil(duration / 60)
        size = _positive_number(metadata.get("file_size_bytes"))
        if size:
            return max(1, math.ceil(size / BYTES_PER_AUDIO_MINUTE))
        return DEFAULT_MINUTES

    if process_type is ProcessType.ANALYSIS:
        return ANALYSIS_MINUTES

    if process_type is ProcessType.ACTION_PLAN:
        documents = _count(metadata.get("source_transcripts")) + _count(metadata.get("source_analyses"))
        return max(MIN_ACTION_PLAN_MINUTES, math.ceil(documents * MINUTES_PER_SOURCE_DOCUMENT))

    return DEFAULT_MINUTES
