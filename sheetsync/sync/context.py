import logging
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from sheetsync.time_utils import isoformat_utc, utc_now

logger = logging.getLogger(__name__)


class LogLevel(str, Enum):
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    SUCCESS = "SUCCESS"


class RunState(str, Enum):
    FETCHING = "Fetching"
    EXTRACTING = "Extracting"
    STAGING = "Staging"
    LOADING = "Loading"
    MERGING = "Merging"
    CLEANING_UP = "CleaningUp"
    SUCCEEDED = "Succeeded"
    FAILED = "Failed"


class RunStatus(str, Enum):
    SUCCESS = "SUCCESS"
    FAILURE = "FAILURE"


_PY_LEVELS = {
    LogLevel.INFO: logging.INFO,
    LogLevel.WARNING: logging.WARNING,
    LogLevel.ERROR: logging.ERROR,
    LogLevel.SUCCESS: logging.INFO,
}


@dataclass(frozen=True)
class LogEntry:
    timestamp: str
    level: LogLevel
    message: str

    def to_dict(self) -> dict[str, str]:
        return {"timestamp": self.timestamp, "level": self.level.value, "message": self.message}


@dataclass
class StagingArtifact:
    bucket: str
    dataset_id: str
    object_name: str | None = None
    table_id: str | None = None

    @property
    def uri(self) -> str | None:
        if not self.object_name:
            return None
        return f"gs://{self.bucket}/{self.object_name}"

    @property
    def created(self) -> bool:
        return bool(self.object_name or self.table_id)


@dataclass(frozen=True)
class RunResult:
    run_id: str
    job_id: str
    start_time: datetime
    end_time: datetime
    status: RunStatus
    summary: str
    details: tuple[LogEntry, ...]
    rows_synced: int
    duration_in_seconds: float

    @property
    def succeeded(self) -> bool:
        return self.status is RunStatus.SUCCESS

    def to_log_record(self) -> dict[str, Any]:
        return {
            "runId": self.run_id,
            "jobId": self.job_id,
            "startTime": isoformat_utc(self.start_time),
            "endTime": isoformat_utc(self.end_time),
            "status": self.status.value,
            "summary": self.summary,
            "details": [entry.to_dict() for entry in self.details],
            "rowsSynced": self.rows_synced,
            "durationInSeconds": self.duration_in_seconds,
        }


@dataclass
class RunContext:
    """Per-run state handed from stage to stage; never shared between runs."""

    job_id: str
    run_id: str = field(default_factory=lambda: f"run_{uuid.uuid4().hex}")
    start_time: datetime = field(default_factory=utc_now)
    state: RunState = RunState.FETCHING
    entries: list[LogEntry] = field(default_factory=list)
    artifact: StagingArtifact | None = None
    rows_synced: int = 0
    _started_at: float = field(default_factory=time.monotonic, repr=False)

    @property
    def run_timestamp_ms(self) -> int:
        return int(self.start_time.timestamp() * 1000)

    def log(self, level: LogLevel, message: str) -> None:
        self.entries.append(LogEntry(timestamp=isoformat_utc(utc_now()), level=level, message=message))
        logger.log(_PY_LEVELS[level], "job=%s run=%s %s", self.job_id, self.run_id, message)

    def info(self, message: str) -> None:
        self.log(LogLevel.INFO, message)

    def warning(self, message: str) -> None:
        self.log(LogLevel.WARNING, message)

    def error(self, message: str) -> None:
        self.log(LogLevel.ERROR, message)

    def success(self, message: str) -> None:
        self.log(LogLevel.SUCCESS, message)

    def transition(self, state: RunState) -> None:
        logger.debug("job=%s run=%s %s -> %s", self.job_id, self.run_id, self.state.value, state.value)
        self.state = state

    def finish(self, status: RunStatus, summary: str) -> RunResult:
        end_time = utc_now()
        return RunResult(
            run_id=self.run_id,
            job_id=self.job_id,
            start_time=self.start_time,
            end_time=end_time,
            status=status,
            summary=summary,
            details=tuple(self.entries),
            rows_synced=self.rows_synced,
            duration_in_seconds=round(time.monotonic() - self._started_at, 3),
        )
