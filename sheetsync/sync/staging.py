import json
import logging
import re
from typing import Any

from googleapiclient.errors import HttpError

from sheetsync.errors import DatasetLocationRequired, LoadError, StagingWriteError
from sheetsync.integrations.google_cloud import BigQueryClient, BigQueryJobError, CloudStorageClient
from sheetsync.models.jobs import GcpProjectConnection, SyncJob
from sheetsync.sync.context import RunContext, RunState, StagingArtifact

logger = logging.getLogger(__name__)

_TABLE_ID_UNSAFE_RE = re.compile(r"[^A-Za-z0-9_]+")


def to_ndjson(rows: list[dict[str, Any]]) -> str:
    return "\n".join(json.dumps(row, ensure_ascii=False, default=str) for row in rows)


def staging_object_name(prefix: str, job_id: str, run_timestamp_ms: int) -> str:
    prefix = prefix.strip("/") or "staging"
    return f"{prefix}/{job_id}/{run_timestamp_ms}.json"


def staging_table_id(job_id: str, run_timestamp_ms: int) -> str:
    safe_job_id = _TABLE_ID_UNSAFE_RE.sub("_", job_id).strip("_") or "job"
    return f"staging_{safe_job_id}_{run_timestamp_ms}"


class StagingLoader:
    def __init__(self, storage: CloudStorageClient, warehouse: BigQueryClient, *, prefix: str = "staging") -> None:
        self._storage = storage
        self._warehouse = warehouse
        self._prefix = prefix

    def stage(
        self,
        context: RunContext,
        rows: list[dict[str, Any]],
        destination: GcpProjectConnection,
        job: SyncJob,
    ) -> StagingArtifact:
        """Upload rows to the staging bucket and load them into a fresh temporary table.

        The artifact is attached to ``context`` before each resource is
        created, so a failure part-way still leaves cleanup something to remove.
        """
        artifact = StagingArtifact(bucket=destination.bucket_name, dataset_id=job.dataset_id)
        context.artifact = artifact

        context.transition(RunState.STAGING)
        object_name = staging_object_name(self._prefix, job.id, context.run_timestamp_ms)
        context.info(f"Uploading {len(rows)} rows to gs://{artifact.bucket}/{object_name}")
        artifact.object_name = object_name
        try:
            self._storage.upload_text(artifact.bucket, object_name, to_ndjson(rows))
        except (HttpError, OSError) as exc:
            raise StagingWriteError("staging upload failed", detail=str(exc)) from exc
        context.info("Uploaded staging file.")

        context.transition(RunState.LOADING)
        self.ensure_dataset(context, job)

        table_id = staging_table_id(job.id, context.run_timestamp_ms)
        artifact.table_id = table_id
        context.info(f"Loading {artifact.uri} into staging table {job.dataset_id}.{table_id}")
        try:
            self._warehouse.load_ndjson(artifact.uri or "", job.dataset_id, table_id)
        except BigQueryJobError as exc:
            raise LoadError("staging table load failed", detail=exc.detail) from exc
        except HttpError as exc:
            raise LoadError("staging table load failed", detail=str(exc)) from exc
        context.info(f"Loaded data into staging table {table_id}.")
        return artifact

    def ensure_dataset(self, context: RunContext, job: SyncJob) -> None:
        try:
            if self._warehouse.dataset_exists(job.dataset_id):
                return
            if not job.dataset_location:
                raise DatasetLocationRequired(job.dataset_id)
            context.info(f"Dataset '{job.dataset_id}' not found. Creating in location '{job.dataset_location}'.")
            self._warehouse.create_dataset(job.dataset_id, job.dataset_location)
        except HttpError as exc:
            raise LoadError(f"could not ensure dataset '{job.dataset_id}'", detail=str(exc)) from exc
        context.info(f"Dataset '{job.dataset_id}' created.")
