import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from sheetsync.config import Settings
from sheetsync.errors import ConfigurationError, SyncError
from sheetsync.integrations.google_auth import build_credentials
from sheetsync.integrations.google_cloud import BigQueryClient, CloudStorageClient
from sheetsync.integrations.job_store import JobStore
from sheetsync.integrations.notifier import DEFAULT_FAILURE_SUBJECT, DEFAULT_SCHEMA_SUBJECT, WebhookNotifier
from sheetsync.models.jobs import (
    FtpSourceConfig,
    GcpProjectConnection,
    GoogleSheetSourceConfig,
    SchemaStatus,
    SourceConnection,
    SyncJob,
)
from sheetsync.schema.columns import compare_schema, find_duplicate_destinations
from sheetsync.sync.context import RunContext, RunResult, RunState, RunStatus
from sheetsync.sync.extractors import ExtractedRowSet, ExtractorDeps, extract
from sheetsync.sync.merge import merge
from sheetsync.sync.staging import StagingLoader
from sheetsync.time_utils import now_local

logger = logging.getLogger(__name__)


@dataclass
class FetchedConfig:
    job: SyncJob
    destination: GcpProjectConnection
    source: SourceConnection
    credentials: Any


@dataclass
class DestinationClients:
    storage: CloudStorageClient
    warehouse: BigQueryClient


class SyncPipeline:
    """Runs one sync job end to end and always returns a RunResult.

    Extract, stage, load and merge run strictly in order; the staging object
    and temporary table are removed before ``run_job`` returns whatever the
    outcome. Failures never propagate to the caller.
    """

    def __init__(self, settings: Settings, store: JobStore, notifier: WebhookNotifier | None = None) -> None:
        self._settings = settings
        self._store = store
        self._notifier = notifier or WebhookNotifier(
            settings.notification_webhook_url,
            date_format=settings.notification_date_format,
        )
        self._build_credentials: Callable[[Settings, str], Any] = build_credentials
        self._storage_factory: Callable[[Any], CloudStorageClient] = CloudStorageClient
        self._warehouse_factory: Callable[..., BigQueryClient] = BigQueryClient
        self._extractor_deps = ExtractorDeps(settings=settings)

    def run_job(self, job_id: str) -> RunResult:
        context = RunContext(job_id=job_id)
        context.info(f"Starting sync for job ID: {job_id}")
        try:
            marked = self._store.mark_run_started(job_id, context.run_id)
        except Exception:
            logger.exception("could not mark job %s as running", job_id)
        else:
            if marked.status == "error":
                logger.warning("could not mark job %s as running: %s", job_id, marked.message)

        fetched: FetchedConfig | None = None
        clients: DestinationClients | None = None
        failure: BaseException | None = None
        empty_source = False
        try:
            fetched = self._fetch(context)
            clients = self._build_clients(fetched)
            empty_source = self._sync(context, fetched, clients)
        except SyncError as exc:
            failure = exc
            context.error(f"Sync failed: {exc}")
        except Exception as exc:
            logger.exception("unexpected error while syncing job %s", job_id)
            failure = exc
            context.error(f"Sync failed with unexpected error: {exc}")
        finally:
            self._cleanup(context, clients)

        if failure is None:
            context.transition(RunState.SUCCEEDED)
            if empty_source:
                summary = "No data found in sources. Sync completed without loading."
            else:
                summary = (
                    f"Successfully synced {context.rows_synced} rows to "
                    f"{fetched.job.dataset_id}.{fetched.job.final_table_name}."
                )
            context.success(summary)
            result = context.finish(RunStatus.SUCCESS, summary)
        else:
            context.transition(RunState.FAILED)
            result = context.finish(RunStatus.FAILURE, f"Sync failed: {failure}")

        try:
            recorded = self._store.record_run_result(job_id, result)
        except Exception:
            logger.exception("run result for job %s was not recorded", job_id)
        else:
            if recorded.status == "error":
                logger.warning("run result for job %s was not recorded: %s", job_id, recorded.message)

        if failure is not None and fetched is not None:
            self._notify(
                fetched.job,
                status=result.status.value,
                body=result.summary,
                default_subject=DEFAULT_FAILURE_SUBJECT,
            )
        return result

    def _fetch(self, context: RunContext) -> FetchedConfig:
        context.transition(RunState.FETCHING)
        job_result, job = self._store.get_job(context.job_id)
        if job is None:
            if job_result.status == "error":
                raise ConfigurationError(f"could not load job {context.job_id}: {job_result.message}")
            raise ConfigurationError(f"config not found for job ID {context.job_id}")

        duplicates = find_duplicate_destinations(job.schema_mapping)
        if duplicates:
            raise ConfigurationError(f"schema mapping has duplicate destination columns: {', '.join(duplicates)}")

        destination_result, destination = self._store.get_destination_connection(job.destination_id)
        if destination is None:
            raise ConfigurationError(
                f"destination '{job.destination_id}' for job {job.id} is unavailable: {destination_result.message}"
            )

        source_id = self._source_id(job)
        source_result, source = self._store.get_source_connection(job.source_type, source_id)
        if source is None:
            raise ConfigurationError(f"source '{source_id}' for job {job.id} is unavailable: {source_result.message}")

        credentials = self._build_credentials(self._settings, destination.service_account_key_json)
        context.info(f"Fetched configuration for job: {job.name or job.id}")
        return FetchedConfig(job=job, destination=destination, source=source, credentials=credentials)

    @staticmethod
    def _source_id(job: SyncJob) -> str:
        config = job.source_configuration
        if isinstance(config, GoogleSheetSourceConfig):
            return config.managed_sheet_id
        if isinstance(config, FtpSourceConfig):
            return config.ftp_source_id
        raise ConfigurationError(f"job {job.id} has an unknown source configuration")

    def _build_clients(self, fetched: FetchedConfig) -> DestinationClients:
        return DestinationClients(
            storage=self._storage_factory(fetched.credentials),
            warehouse=self._warehouse_factory(
                fetched.credentials,
                fetched.destination.project_id,
                job_timeout_seconds=self._settings.bigquery_job_timeout_seconds,
                poll_seconds=self._settings.bigquery_job_poll_seconds,
            ),
        )

    def _sync(self, context: RunContext, fetched: FetchedConfig, clients: DestinationClients) -> bool:
        """Returns True when the source was empty and nothing was loaded."""
        job = fetched.job
        context.transition(RunState.EXTRACTING)
        extracted = extract(context, job, fetched.source, fetched.credentials, self._extractor_deps)
        self._check_schema_drift(context, job, extracted)

        if not extracted.rows:
            context.info("No data rows found in source; skipping staging, load and merge.")
            return True

        loader = StagingLoader(clients.storage, clients.warehouse, prefix=self._settings.staging_prefix)
        artifact = loader.stage(context, extracted.rows, fetched.destination, job)

        context.transition(RunState.MERGING)
        context.info(
            f"Merging data from {artifact.table_id} to {job.final_table_name} with strategy: {job.sync_strategy.value}"
        )
        merge(clients.warehouse, job.dataset_id, artifact.table_id or "", job.final_table_name, job.sync_strategy)
        context.rows_synced = len(extracted.rows)
        context.info(f"Merged {context.rows_synced} rows into final table {job.final_table_name}.")
        return False

    def _check_schema_drift(self, context: RunContext, job: SyncJob, extracted: ExtractedRowSet) -> None:
        if not job.schema_mapping or not extracted.headers:
            return
        comparison = compare_schema(job.schema_mapping, extracted.headers)
        if not comparison.changed:
            if job.schema_status != SchemaStatus.SYNCED:
                self._store.set_schema_status(job.id, SchemaStatus.SYNCED)
            return

        parts: list[str] = []
        if comparison.added:
            parts.append("new columns: " + ", ".join(item.original_name for item in comparison.added))
        if comparison.removed:
            parts.append("missing columns: " + ", ".join(item.original_name for item in comparison.removed))
        message = "Source schema differs from the saved mapping (" + "; ".join(parts) + "). Loading with the saved mapping."
        context.warning(message)
        self._store.set_schema_status(job.id, SchemaStatus.CHANGED)
        self._notify(job, status="SCHEMA_CHANGED", body=message, default_subject=DEFAULT_SCHEMA_SUBJECT)

    def _notify(self, job: SyncJob, *, status: str, body: str, default_subject: str) -> None:
        result = self._notifier.notify(
            job,
            status=status,
            body=body,
            when=now_local(self._settings),
            subject_template=job.notification_settings.subject or default_subject,
        )
        if result.status == "error":
            logger.warning("notification for job %s failed: %s", job.id, result.message)

    def _cleanup(self, context: RunContext, clients: DestinationClients | None) -> None:
        artifact = context.artifact
        if artifact is None or not artifact.created or clients is None:
            return

        context.transition(RunState.CLEANING_UP)
        context.info("Starting cleanup...")
        if artifact.object_name:
            try:
                deleted = clients.storage.delete_object(artifact.bucket, artifact.object_name)
                if deleted:
                    context.info(f"Deleted temporary GCS file: {artifact.object_name}")
                else:
                    context.info(f"Temporary GCS file {artifact.object_name} was not present.")
            except Exception as exc:
                logger.exception("cleanup of staging object failed for job %s", context.job_id)
                context.warning(f"Failed to delete GCS file {artifact.object_name}: {exc}")
        if artifact.table_id:
            try:
                deleted = clients.warehouse.delete_table(artifact.dataset_id, artifact.table_id)
                if deleted:
                    context.info(f"Deleted temporary BQ table: {artifact.table_id}")
                else:
                    context.info(f"Temporary BQ table {artifact.table_id} was not present.")
            except Exception as exc:
                logger.exception("cleanup of staging table failed for job %s", context.job_id)
                context.warning(f"Failed to delete BQ table {artifact.table_id}: {exc}")
        context.info("Cleanup complete.")
