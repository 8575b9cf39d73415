from typing import Protocol

from sheetsync.integrations.types import SinkResult
from sheetsync.models.jobs import GcpProjectConnection, SchemaStatus, SourceConnection, SourceType, SyncJob
from sheetsync.sync.context import RunResult


class JobStore(Protocol):
    """Configuration and run-history collaborator used by the pipeline and scheduler."""

    def get_due_job_candidates(self) -> tuple[SinkResult, list[SyncJob]]: ...

    def get_job(self, job_id: str) -> tuple[SinkResult, SyncJob | None]: ...

    def get_destination_connection(self, destination_id: str) -> tuple[SinkResult, GcpProjectConnection | None]: ...

    def get_source_connection(
        self, kind: SourceType, source_id: str
    ) -> tuple[SinkResult, SourceConnection | None]: ...

    def is_run_in_flight(self, job_id: str) -> bool: ...

    def mark_run_started(self, job_id: str, run_id: str) -> SinkResult: ...

    def record_run_result(self, job_id: str, result: RunResult) -> SinkResult: ...

    def set_schema_status(self, job_id: str, status: SchemaStatus) -> SinkResult: ...
