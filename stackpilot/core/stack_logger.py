"""Dual-channel logging for stack operations.

Every entry goes to the durable channel (a structlog logger that
``setup_logging`` routes to ``engine.log``). Entries that clear the minimum
level and do not match a noise pattern are also written, optionally
rewritten into friendlier phrasing, to the user-facing stream.

Subprocess output is fed through a :class:`StreamFilter` per stream, which
coalesces image pull progress into a single rewritable line and classifies
everything else by severity.
"""

import asyncio
import re
import threading
from collections import deque
from datetime import datetime
from typing import Any, NamedTuple, TextIO

import structlog

from ..constants import DURABLE_LOGGER_NAME, MAX_LOG_ENTRIES
from ..models.enums import LogLevel
from ..models.log import LogEntry

# Known-uninteresting subprocess chatter, hidden from the user stream
NOISE_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"^[a-f0-9]+: (Pulling|Waiting|Downloading|Extracting|Pull complete|Already exists)"),
    re.compile(r"^[a-f0-9]{12}$"),
    re.compile(r"^Digest: sha256:"),
    re.compile(r"^Status: Downloaded"),
    re.compile(r"^Status: Image is up to date"),
    re.compile(r"^Creating network"),
    re.compile(r"^Creating volume"),
    re.compile(r"^Container [a-f0-9]+ Creating$"),
    re.compile(r"^\s*$"),
)

# Applied in order; first match wins
TRANSFORM_RULES: tuple[tuple[re.Pattern[str], str], ...] = (
    (re.compile(r"Pulling from (.+)"), r"Downloading image: \1"),
    (re.compile(r"Container (.+) Started"), r"Started: \1"),
    (re.compile(r"Container (.+) Stopped"), r"Stopped: \1"),
    (re.compile(r"Container (.+) Running"), r"Running: \1"),
)

_USER_PREFIX = {
    LogLevel.ERROR: ("\033[31m[ERROR]\033[0m ", "[ERROR] "),
    LogLevel.WARNING: ("\033[33m[WARN]\033[0m  ", "[WARN]  "),
    LogLevel.INFO: ("\033[34m[INFO]\033[0m  ", "[INFO]  "),
    LogLevel.DEBUG: ("\033[90m[DEBUG]\033[0m ", "[DEBUG] "),
}

_DURABLE_METHOD = {
    LogLevel.DEBUG: "debug",
    LogLevel.INFO: "info",
    LogLevel.WARNING: "warning",
    LogLevel.ERROR: "error",
    LogLevel.PROGRESS: "info",
}


class UserMessage(NamedTuple):
    """Canned user-facing message."""

    level: LogLevel
    message: str
    details: str = ""


STANDARD_MESSAGES: dict[str, UserMessage] = {
    "docker_pull_start": UserMessage(
        LogLevel.INFO, "Downloading container images...", "This may take a few minutes on first run"
    ),
    "docker_pull_done": UserMessage(LogLevel.INFO, "Container images ready"),
    "services_starting": UserMessage(LogLevel.INFO, "Starting services..."),
    "services_started": UserMessage(LogLevel.INFO, "All services started successfully"),
    "port_conflict": UserMessage(
        LogLevel.WARNING,
        "Port conflict detected",
        "An existing service is using the requested port",
    ),
    "migration_needed": UserMessage(
        LogLevel.INFO,
        "Existing installation detected",
        "Your data will be preserved during upgrade",
    ),
    "health_check_pass": UserMessage(LogLevel.INFO, "Health check passed"),
    "health_check_fail": UserMessage(
        LogLevel.ERROR, "Health check failed", "Check the logs for more details"
    ),
}


class StackLogger:
    """Structured logger with durable and user-facing channels.

    All state (entry buffer, progress line, filter settings) is guarded by a
    single lock, so stream filters reading stdout and stderr concurrently can
    share one instance.
    """

    def __init__(
        self,
        user_stream: TextIO | None = None,
        durable: Any | None = None,
        *,
        min_level: LogLevel = LogLevel.INFO,
        user_friendly: bool = True,
        max_entries: int = MAX_LOG_ENTRIES,
        noise_patterns: tuple[re.Pattern[str], ...] = NOISE_PATTERNS,
        color: bool | None = None,
    ):
        self._lock = threading.Lock()
        self._user_stream = user_stream
        self._durable = durable if durable is not None else structlog.get_logger(DURABLE_LOGGER_NAME)
        self._min_level = min_level
        self._user_friendly = user_friendly
        self._noise_patterns = noise_patterns
        self._entries: deque[LogEntry] = deque(maxlen=max_entries)
        self._progress_line = ""
        if color is None:
            color = _isatty(user_stream)
        self._color = color

    @property
    def min_level(self) -> LogLevel:
        return self._min_level

    @property
    def verbose(self) -> bool:
        return self._min_level == LogLevel.DEBUG and not self._user_friendly

    def set_min_level(self, level: LogLevel) -> None:
        with self._lock:
            self._min_level = level

    def set_verbose(self, verbose: bool) -> None:
        """Verbose shows everything: no noise filter, no rewriting, debug level."""
        with self._lock:
            if verbose:
                self._min_level = LogLevel.DEBUG
                self._user_friendly = False
            else:
                self._min_level = LogLevel.INFO
                self._user_friendly = True

    def log(self, level: LogLevel, source: str, message: str) -> LogEntry:
        with self._lock:
            entry = LogEntry(
                timestamp=datetime.now(),
                level=level,
                message=message,
                source=source,
                user_visible=self._is_user_visible(level, message),
            )
            self._entries.append(entry)
            self._write_durable(entry)
            if entry.user_visible:
                self._write_user(entry)
            return entry

    def debug(self, source: str, message: str) -> None:
        self.log(LogLevel.DEBUG, source, message)

    def info(self, source: str, message: str) -> None:
        self.log(LogLevel.INFO, source, message)

    def warning(self, source: str, message: str) -> None:
        self.log(LogLevel.WARNING, source, message)

    def error(self, source: str, message: str) -> None:
        self.log(LogLevel.ERROR, source, message)

    def progress(self, source: str, message: str) -> None:
        """Redraw the single transient status line."""
        with self._lock:
            self._progress_line = message
        self.log(LogLevel.PROGRESS, source, message)

    def progress_done(self) -> None:
        """Terminate the progress line and return to line-based output."""
        with self._lock:
            if self._progress_line:
                self._progress_line = ""
                if self._user_stream is not None:
                    self._emit("\n")

    def announce(self, key: str, source: str = "engine") -> None:
        """Log one of the canned standard messages."""
        msg = STANDARD_MESSAGES[key]
        self.log(msg.level, source, msg.message)
        if msg.details:
            self.log(LogLevel.DEBUG, source, msg.details)

    def is_noise(self, message: str) -> bool:
        return any(pattern.search(message) for pattern in self._noise_patterns)

    def transform(self, message: str) -> str:
        """Rewrite a technical message with the first matching rule."""
        for pattern, template in TRANSFORM_RULES:
            if pattern.search(message):
                return pattern.sub(template, message)
        return message

    def entries(self, min_level: LogLevel = LogLevel.DEBUG) -> list[LogEntry]:
        with self._lock:
            return [entry for entry in self._entries if entry.level >= min_level]

    def user_entries(self) -> list[LogEntry]:
        with self._lock:
            return [entry for entry in self._entries if entry.user_visible]

    def stream_filter(self, source: str) -> "StreamFilter":
        return StreamFilter(self, source)

    def compose_filter(self, source: str) -> "ComposeOutputFilter":
        return ComposeOutputFilter(self, source)

    def _is_user_visible(self, level: LogLevel, message: str) -> bool:
        if level < self._min_level:
            return False
        # Verbose mode shows noise too
        if not self._user_friendly and self._min_level == LogLevel.DEBUG:
            return True
        return not self.is_noise(message)

    def _write_durable(self, entry: LogEntry) -> None:
        try:
            getattr(self._durable, _DURABLE_METHOD[entry.level])(
                entry.message,
                source=entry.source,
                level_name=entry.level.label,
                user_visible=entry.user_visible,
            )
        except Exception:  # noqa: BLE001 - logging never fails an operation
            pass

    def _write_user(self, entry: LogEntry) -> None:
        if self._user_stream is None:
            return
        msg = self.transform(entry.message) if self._user_friendly else entry.message
        if entry.level == LogLevel.PROGRESS:
            self._emit(f"\r\033[K{msg}" if self._color else f"\r{msg}")
            return
        colored, plain = _USER_PREFIX[entry.level]
        self._emit(f"{colored if self._color else plain}{msg}\n")

    def _emit(self, text: str) -> None:
        try:
            self._user_stream.write(text)
            self._user_stream.flush()
        except (OSError, ValueError):
            pass


class StreamFilter:
    """Classifies a live subprocess output stream line by line."""

    def __init__(self, logger: StackLogger, source: str):
        self.logger = logger
        self.source = source
        self._layers: set[str] = set()
        self._progress_shown = False

    async def process(self, reader: asyncio.StreamReader) -> None:
        """Consume the stream until EOF.

        A line longer than the reader's limit is dropped from the buffer by
        ``readline`` and recorded as skipped; reading continues after it.
        """
        try:
            while True:
                try:
                    raw = await reader.readline()
                except ValueError:
                    self.logger.debug(self.source, "Skipped output line longer than the stream limit")
                    continue
                if not raw:
                    break
                self.feed(raw.decode(errors="replace").rstrip("\r\n"))
        finally:
            self.close()

    def feed(self, line: str) -> None:
        # Pull progress collapses into one "layers seen" counter
        if ": Pulling" in line or ": Downloading" in line:
            layer = line.split(":", 1)[0]
            self._layers.add(layer)
            self.logger.progress(self.source, f"Pulling images... ({len(self._layers)} layers)")
            self._progress_shown = True
            return

        if ": Pull complete" in line or ": Already exists" in line:
            return

        if line.startswith("Digest:") or line.startswith("Status:"):
            if self._progress_shown:
                self.logger.progress_done()
                self._progress_shown = False
                self._layers = set()
            if line.startswith("Status:"):
                self.logger.info(self.source, line)
            return

        if "Container" in line and any(word in line for word in ("Started", "Stopped", "Created")):
            self.logger.info(self.source, line)
            return

        lowered = line.lower()
        if "error" in lowered or "failed" in lowered:
            self.logger.error(self.source, line)
            return

        if "warn" in lowered:
            self.logger.warning(self.source, line)
            return

        self.logger.debug(self.source, line)

    def close(self) -> None:
        if self._progress_shown:
            self.logger.progress_done()
            self._progress_shown = False

    @property
    def layers_seen(self) -> int:
        return len(self._layers)


_LAYER_LINE = re.compile(r"^[a-f0-9]+:")


class ComposeOutputFilter:
    """Line-at-a-time filter for docker compose output."""

    def __init__(self, logger: StackLogger, source: str, show_pull: bool = False, show_build: bool = True):
        self.logger = logger
        self.source = source
        self.show_pull = show_pull
        self.show_build = show_build

    def filter_line(self, line: str) -> None:
        if "Pulling" in line and not self.show_pull:
            # Only the start of a pull is interesting
            if line.endswith("Pulling"):
                self.logger.info(self.source, line)
            return

        if _LAYER_LINE.match(line) and not self.show_pull:
            return

        if line.startswith("Step ") or "---" in line:
            if self.show_build:
                self.logger.info(self.source, line)
            else:
                self.logger.debug(self.source, line)
            return

        if "Container" in line:
            self.logger.info(self.source, line)
            return

        if "Network" in line or "Volume" in line:
            self.logger.debug(self.source, line)
            return

        if "error" in line.lower():
            self.logger.error(self.source, line)
            return

        self.logger.debug(self.source, line)


def _isatty(stream: TextIO | None) -> bool:
    try:
        return bool(stream is not None and stream.isatty())
    except (AttributeError, ValueError):
        return False
