"""Log entry record kept by the stack logger."""

from datetime import datetime

from pydantic import ConfigDict, field_serializer

from .base import StackModel
from .enums import LogLevel


class LogEntry(StackModel):
    """A single log entry, visibility decided at write time."""

    model_config = ConfigDict(frozen=True)

    timestamp: datetime
    level: LogLevel
    message: str
    source: str = ""
    user_visible: bool = False

    @field_serializer("level")
    def _serialize_level(self, level: LogLevel) -> str:
        return level.label.lower()
