import io
import json
import logging
import time
from typing import Any

from googleapiclient.discovery import build
from googleapiclient.errors import HttpError
from googleapiclient.http import MediaIoBaseUpload

logger = logging.getLogger(__name__)


class BigQueryJobError(RuntimeError):
    def __init__(self, message: str, errors: list[dict[str, Any]] | None = None) -> None:
        super().__init__(message)
        self.errors = errors or []

    @property
    def detail(self) -> str:
        if not self.errors:
            return str(self)
        return json.dumps(self.errors, ensure_ascii=True)


def http_status(exc: HttpError) -> int:
    status = getattr(exc, "status_code", None)
    if status is None:
        status = getattr(getattr(exc, "resp", None), "status", 0)
    return int(status or 0)


class CloudStorageClient:
    def __init__(self, credentials: Any) -> None:
        self._credentials = credentials
        self._service = None

    def _build_service(self):
        if self._service is None:
            self._service = build("storage", "v1", credentials=self._credentials, cache_discovery=False)
        return self._service

    def upload_text(
        self,
        bucket: str,
        object_name: str,
        payload: str,
        *,
        content_type: str = "application/x-ndjson",
    ) -> None:
        service = self._build_service()
        media = MediaIoBaseUpload(io.BytesIO(payload.encode("utf-8")), mimetype=content_type, resumable=False)
        service.objects().insert(bucket=bucket, name=object_name, media_body=media).execute()

    def delete_object(self, bucket: str, object_name: str) -> bool:
        """Returns False when the object was already gone."""
        service = self._build_service()
        try:
            service.objects().delete(bucket=bucket, object=object_name).execute()
        except HttpError as exc:
            if http_status(exc) == 404:
                return False
            raise
        return True


class BigQueryClient:
    def __init__(
        self,
        credentials: Any,
        project_id: str,
        *,
        job_timeout_seconds: float = 600.0,
        poll_seconds: float = 2.0,
    ) -> None:
        self._credentials = credentials
        self.project_id = project_id
        self._job_timeout_seconds = job_timeout_seconds
        self._poll_seconds = poll_seconds
        self._service = None
        self._sleep = time.sleep

    def _build_service(self):
        if self._service is None:
            self._service = build("bigquery", "v2", credentials=self._credentials, cache_discovery=False)
        return self._service

    def table_path(self, dataset_id: str, table_id: str) -> str:
        return f"`{self.project_id}.{dataset_id}.{table_id}`"

    def dataset_exists(self, dataset_id: str) -> bool:
        service = self._build_service()
        try:
            service.datasets().get(projectId=self.project_id, datasetId=dataset_id).execute()
        except HttpError as exc:
            if http_status(exc) == 404:
                return False
            raise
        return True

    def create_dataset(self, dataset_id: str, location: str) -> None:
        service = self._build_service()
        body = {
            "datasetReference": {"projectId": self.project_id, "datasetId": dataset_id},
            "location": location,
        }
        try:
            service.datasets().insert(projectId=self.project_id, body=body).execute()
        except HttpError as exc:
            # Another run created it between the existence check and the insert.
            if http_status(exc) != 409:
                raise

    def load_ndjson(self, source_uri: str, dataset_id: str, table_id: str) -> dict[str, Any]:
        body = {
            "configuration": {
                "load": {
                    "sourceUris": [source_uri],
                    "sourceFormat": "NEWLINE_DELIMITED_JSON",
                    "autodetect": True,
                    "createDisposition": "CREATE_IF_NEEDED",
                    "writeDisposition": "WRITE_TRUNCATE",
                    "destinationTable": {
                        "projectId": self.project_id,
                        "datasetId": dataset_id,
                        "tableId": table_id,
                    },
                }
            }
        }
        return self._run_job(body)

    def run_query(self, sql: str) -> dict[str, Any]:
        body = {"configuration": {"query": {"query": sql, "useLegacySql": False}}}
        return self._run_job(body)

    def delete_table(self, dataset_id: str, table_id: str) -> bool:
        """Returns False when the table did not exist."""
        service = self._build_service()
        try:
            service.tables().delete(projectId=self.project_id, datasetId=dataset_id, tableId=table_id).execute()
        except HttpError as exc:
            if http_status(exc) == 404:
                return False
            raise
        return True

    def _run_job(self, body: dict[str, Any]) -> dict[str, Any]:
        service = self._build_service()
        try:
            job = service.jobs().insert(projectId=self.project_id, body=body).execute()
        except HttpError as exc:
            raise BigQueryJobError(f"job submission failed: {exc}") from exc
        return self.wait_for_job(job)

    def wait_for_job(self, job: dict[str, Any]) -> dict[str, Any]:
        reference = job.get("jobReference", {}) or {}
        job_id = reference.get("jobId", "")
        location = reference.get("location")
        deadline = time.monotonic() + self._job_timeout_seconds
        logger.info("waiting for bigquery job %s", job_id)

        while (job.get("status", {}) or {}).get("state") != "DONE":
            if time.monotonic() >= deadline:
                raise BigQueryJobError(f"job {job_id} did not finish within {self._job_timeout_seconds:.0f}s")
            self._sleep(self._poll_seconds)
            params: dict[str, Any] = {"projectId": self.project_id, "jobId": job_id}
            if location:
                params["location"] = location
            job = self._build_service().jobs().get(**params).execute()

        status = job.get("status", {}) or {}
        error_result = status.get("errorResult")
        if error_result:
            errors = status.get("errors") or [error_result]
            raise BigQueryJobError(
                f"job {job_id} failed: {error_result.get('message', 'unknown error')}",
                errors=errors,
            )
        return job
