import logging
from datetime import datetime, timezone
from typing import Any

from pydantic import ValidationError
from pydantic.alias_generators import to_camel
from supabase import Client, create_client

from sheetsync.config import Settings
from sheetsync.integrations.types import SinkResult
from sheetsync.models.jobs import (
    FtpSource,
    GcpProjectConnection,
    ManagedSheet,
    SchemaStatus,
    SourceConnection,
    SourceType,
    SyncJob,
    SyncStatus,
)
from sheetsync.sync.context import RunResult, RunStatus
from sheetsync.time_utils import isoformat_utc, utc_now

logger = logging.getLogger(__name__)

_CANDIDATE_STATUSES = [SyncStatus.ACTIVE.value, SyncStatus.ERROR.value]


def _row_to_payload(row: dict[str, Any]) -> dict[str, Any]:
    """Merge a row's ``config`` JSON with its columns; columns win over stale config keys."""
    payload = dict(row.get("config") or {})
    for key, value in row.items():
        if key == "config" or value is None:
            continue
        payload[to_camel(key)] = value
    return payload


def _parse_timestamp(value: Any) -> datetime | None:
    if not value:
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        try:
            parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
        except ValueError:
            return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class SupabaseJobStore:
    def __init__(self, settings: Settings) -> None:
        self._enabled = bool(settings.supabase_url and settings.supabase_service_role_key)
        self._jobs_table = settings.supabase_jobs_table
        self._destinations_table = settings.supabase_destinations_table
        self._sheets_table = settings.supabase_sheets_table
        self._ftp_sources_table = settings.supabase_ftp_sources_table
        self._runs_table = settings.supabase_runs_table
        self._stale_run_seconds = settings.scheduler_stale_run_seconds
        self._client: Client | None = None

        if self._enabled:
            self._client = create_client(settings.supabase_url, settings.supabase_service_role_key)

    @property
    def enabled(self) -> bool:
        return self._enabled

    def get_due_job_candidates(self) -> tuple[SinkResult, list[SyncJob]]:
        if not self.enabled or not self._client:
            return SinkResult("supabase_jobs", "skipped", "not configured"), []

        try:
            page_size = 1000
            offset = 0
            rows: list[dict[str, Any]] = []

            while True:
                page = (
                    self._client.table(self._jobs_table)
                    .select("*")
                    .eq("is_archived", False)
                    .in_("status", _CANDIDATE_STATUSES)
                    .order("id")
                    .range(offset, offset + page_size - 1)
                    .execute()
                    .data
                    or []
                )
                rows.extend(page)

                if len(page) < page_size:
                    break

                offset += page_size
        except Exception as exc:
            logger.exception("failed to fetch sync jobs from supabase")
            return SinkResult("supabase_jobs", "error", str(exc)), []

        jobs: list[SyncJob] = []
        for row in rows:
            try:
                jobs.append(SyncJob.model_validate(_row_to_payload(row)))
            except ValidationError as exc:
                logger.error("skipping invalid sync job row id=%s: %s", row.get("id"), exc)
        return SinkResult("supabase_jobs", "ok", f"fetched {len(jobs)} jobs"), jobs

    def get_job(self, job_id: str) -> tuple[SinkResult, SyncJob | None]:
        result, row = self._get_row("supabase_jobs", self._jobs_table, job_id)
        if row is None:
            return result, None
        try:
            return result, SyncJob.model_validate(_row_to_payload(row))
        except ValidationError as exc:
            return SinkResult("supabase_jobs", "error", f"invalid job configuration: {exc}"), None

    def get_destination_connection(self, destination_id: str) -> tuple[SinkResult, GcpProjectConnection | None]:
        result, row = self._get_row("supabase_destinations", self._destinations_table, destination_id)
        if row is None:
            return result, None
        try:
            return result, GcpProjectConnection.model_validate(_row_to_payload(row))
        except ValidationError as exc:
            return SinkResult("supabase_destinations", "error", f"invalid destination: {exc}"), None

    def get_source_connection(self, kind: SourceType, source_id: str) -> tuple[SinkResult, SourceConnection | None]:
        if kind == SourceType.GOOGLE_SHEET:
            table, model = self._sheets_table, ManagedSheet
        else:
            table, model = self._ftp_sources_table, FtpSource
        result, row = self._get_row("supabase_sources", table, source_id)
        if row is None:
            return result, None
        try:
            return result, model.model_validate(_row_to_payload(row))
        except ValidationError as exc:
            return SinkResult("supabase_sources", "error", f"invalid source connection: {exc}"), None

    def is_run_in_flight(self, job_id: str) -> bool:
        result, row = self._get_row(
            "supabase_jobs",
            self._jobs_table,
            job_id,
            columns="id,running_run_id,running_since",
        )
        if not result.ok:
            logger.warning("could not read in-flight marker for job %s: %s", job_id, result.message)
        if not row or not row.get("running_run_id"):
            return False

        # A marker left behind by a crashed worker must not block the job forever.
        since = _parse_timestamp(row.get("running_since"))
        if since is not None and (utc_now() - since).total_seconds() > self._stale_run_seconds:
            logger.warning(
                "ignoring stale in-flight marker for job %s (run %s since %s)",
                job_id,
                row.get("running_run_id"),
                row.get("running_since"),
            )
            return False
        return True

    def mark_run_started(self, job_id: str, run_id: str) -> SinkResult:
        return self._update_job(
            job_id,
            {"running_run_id": run_id, "running_since": isoformat_utc(utc_now())},
        )

    def record_run_result(self, job_id: str, result: RunResult) -> SinkResult:
        if not self.enabled or not self._client:
            return SinkResult("supabase_runs", "skipped", "not configured")

        record = result.to_log_record()
        row = {
            "run_id": record["runId"],
            "job_id": record["jobId"],
            "start_time": record["startTime"],
            "end_time": record["endTime"],
            "status": record["status"],
            "summary": record["summary"],
            "details": record["details"],
            "rows_synced": record["rowsSynced"],
            "duration_in_seconds": record["durationInSeconds"],
        }
        insert_error: SinkResult | None = None
        try:
            self._client.table(self._runs_table).insert(row).execute()
        except Exception as exc:
            logger.exception("failed to insert run log for job %s", job_id)
            insert_error = SinkResult("supabase_runs", "error", str(exc))

        update: dict[str, Any] = {
            "last_run": record["endTime"],
            "last_run_status": record["status"],
            "last_run_rows_synced": record["rowsSynced"],
            "last_run_duration_in_seconds": record["durationInSeconds"],
            "running_run_id": None,
            "running_since": None,
        }
        if result.status is RunStatus.FAILURE:
            update["status"] = SyncStatus.ERROR.value
        job_update = self._update_job(job_id, update)
        if not job_update.ok:
            return job_update

        if result.status is RunStatus.SUCCESS:
            try:
                (
                    self._client.table(self._jobs_table)
                    .update({"status": SyncStatus.ACTIVE.value})
                    .eq("id", job_id)
                    .eq("status", SyncStatus.ERROR.value)
                    .execute()
                )
            except Exception as exc:
                logger.exception("failed to reactivate job %s after successful run", job_id)
                return SinkResult("supabase_jobs", "error", str(exc))

        if insert_error is not None:
            return insert_error
        return SinkResult("supabase_runs", "ok", f"run {result.run_id} recorded")

    def set_schema_status(self, job_id: str, status: SchemaStatus) -> SinkResult:
        return self._update_job(job_id, {"schema_status": status.value})

    def _update_job(self, job_id: str, values: dict[str, Any]) -> SinkResult:
        if not self.enabled or not self._client:
            return SinkResult("supabase_jobs", "skipped", "not configured")
        try:
            self._client.table(self._jobs_table).update(values).eq("id", job_id).execute()
            return SinkResult("supabase_jobs", "ok", "job updated")
        except Exception as exc:
            logger.exception("failed to update sync job %s", job_id)
            return SinkResult("supabase_jobs", "error", str(exc))

    def _get_row(
        self,
        target: str,
        table: str,
        row_id: str,
        *,
        columns: str = "*",
    ) -> tuple[SinkResult, dict[str, Any] | None]:
        if not self.enabled or not self._client:
            return SinkResult(target, "skipped", "not configured"), None
        try:
            data = (
                self._client.table(table)
                .select(columns)
                .eq("id", row_id)
                .limit(1)
                .execute()
                .data
                or []
            )
        except Exception as exc:
            logger.exception("failed to load %s row %s from supabase", table, row_id)
            return SinkResult(target, "error", str(exc)), None
        if not data:
            return SinkResult(target, "ok", f"{table} row '{row_id}' not found"), None
        return SinkResult(target, "ok", "row loaded"), data[0]
