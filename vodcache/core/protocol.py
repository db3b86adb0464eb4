"""
The line-oriented protocol between the supervisor and its task workers.

Workers write one JSON object per line to stdout; the supervisor writes the
literal line `terminate` to a worker's stdin to stop it.
"""

import json
import logging
import sys
import threading
from enum import Enum
from typing import Any, TextIO

from pydantic import BaseModel, Field, ValidationError

TERMINATE_COMMAND = "terminate"


class MessageType(str, Enum):
    INFO = "info"
    WARN = "warn"
    ERROR = "error"
    DEBUG = "debug"
    DOWNLOAD_COMPLETE = "download_complete"
    DOWNLOAD_ERROR = "download_error"


class WorkerMessage(BaseModel):
    type: MessageType
    data: Any = None

    def encode(self) -> str:
        return json.dumps(
            {"type": self.type.value, "data": self.data}, ensure_ascii=False
        )

    @classmethod
    def decode(cls, line: str | bytes) -> "WorkerMessage | None":
        """Parses one protocol line; returns None for anything that is not a message."""
        if isinstance(line, bytes):
            line = line.decode("utf-8", errors="replace")
        line = line.strip()
        if not line.startswith("{"):
            return None
        try:
            return cls.model_validate_json(line)
        except ValidationError:
            return None

    @property
    def episode_number(self) -> int | None:
        if isinstance(self.data, dict) and "episodeNumber" in self.data:
            return int(self.data["episodeNumber"])
        return None


class EpisodeOutcome(BaseModel):
    """Payload of `download_complete` and `download_error` messages."""

    episode_number: int = Field(alias="episodeNumber")
    task_title: str = Field(alias="taskTitle")
    file_path: str | None = Field(default=None, alias="filePath")


class MessageWriter:
    """Serializes messages onto a stream; safe to call from several threads."""

    def __init__(self, stream: TextIO | None = None):
        self._stream = stream or sys.stdout
        self._lock = threading.Lock()

    def send(self, type_: MessageType, data: Any = None) -> None:
        line = WorkerMessage(type=type_, data=data).encode()
        with self._lock:
            self._stream.write(line + "\n")
            self._stream.flush()


_LEVEL_TO_TYPE = (
    (logging.ERROR, MessageType.ERROR),
    (logging.WARNING, MessageType.WARN),
    (logging.INFO, MessageType.INFO),
)

TYPE_TO_LEVEL = {
    MessageType.ERROR: logging.ERROR,
    MessageType.WARN: logging.WARNING,
    MessageType.INFO: logging.INFO,
    MessageType.DEBUG: logging.DEBUG,
}


class ProtocolLogHandler(logging.Handler):
    """Forwards worker log records to the supervisor as protocol messages."""

    def __init__(self, writer: MessageWriter, level: int = logging.NOTSET):
        super().__init__(level)
        self.writer = writer

    def emit(self, record: logging.LogRecord) -> None:
        try:
            type_ = MessageType.DEBUG
            for threshold, candidate in _LEVEL_TO_TYPE:
                if record.levelno >= threshold:
                    type_ = candidate
                    break
            self.writer.send(type_, self.format(record))
        except Exception:
            self.handleError(record)
