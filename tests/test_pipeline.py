import httplib2
from googleapiclient.errors import HttpError

from sheetsync.config import Settings
from sheetsync.integrations.google_cloud import BigQueryJobError
from sheetsync.integrations.notifier import WebhookNotifier
from sheetsync.integrations.types import SinkResult
from sheetsync.models.jobs import GcpProjectConnection, ManagedSheet, SchemaStatus, SourceType, SyncJob
from sheetsync.sync.context import LogLevel, RunResult, RunStatus
from sheetsync.sync.extractors import ExtractorDeps
from sheetsync.sync.pipeline import SyncPipeline


def _http_error(status: int) -> HttpError:
    return HttpError(httplib2.Response({"status": status}), b"{}")


def _job_payload(**overrides) -> dict:
    payload = {
        "id": "job_1",
        "name": "Daily orders",
        "sourceType": "Google Sheet",
        "sourceConfiguration": {"managedSheetId": "ms_1", "sources": [{"sheetName": "Orders", "range": "A:C"}]},
        "schemaMapping": [
            {"originalName": "Order ID", "bigQueryName": "order_id"},
            {"originalName": "Amount", "bigQueryName": "amount"},
        ],
        "destinationId": "dest_1",
        "datasetId": "analytics",
        "datasetLocation": "US",
        "finalTableName": "orders",
        "cronSchedule": "0 * * * *",
        "syncStrategy": "Replace (Overwrite)",
    }
    payload.update(overrides)
    return payload


class _FakeStore:
    def __init__(self, job: SyncJob | None) -> None:
        self.job = job
        self.started: list[tuple[str, str]] = []
        self.results: list[RunResult] = []
        self.schema_statuses: list[tuple[str, SchemaStatus]] = []

    def get_job(self, job_id: str) -> tuple[SinkResult, SyncJob | None]:
        if self.job is None:
            return SinkResult("supabase_jobs", "ok", f"row '{job_id}' not found"), None
        return SinkResult("supabase_jobs", "ok", "row loaded"), self.job

    def get_destination_connection(self, destination_id: str) -> tuple[SinkResult, GcpProjectConnection | None]:
        destination = GcpProjectConnection(id=destination_id, project_id="proj", staging_gcs_bucket="gs://stage-bucket")
        return SinkResult("supabase_destinations", "ok", "row loaded"), destination

    def get_source_connection(self, kind: SourceType, source_id: str) -> tuple[SinkResult, ManagedSheet | None]:
        sheet = ManagedSheet(id=source_id, url="https://docs.google.com/spreadsheets/d/sheet_abc/edit")
        return SinkResult("supabase_sources", "ok", "row loaded"), sheet

    def mark_run_started(self, job_id: str, run_id: str) -> SinkResult:
        self.started.append((job_id, run_id))
        return SinkResult("supabase_jobs", "ok", "job updated")

    def record_run_result(self, job_id: str, result: RunResult) -> SinkResult:
        self.results.append(result)
        return SinkResult("supabase_runs", "ok", "recorded")

    def set_schema_status(self, job_id: str, status: SchemaStatus) -> SinkResult:
        self.schema_statuses.append((job_id, status))
        return SinkResult("supabase_jobs", "ok", "job updated")


class _FakeSheets:
    def __init__(self, values: list[list[str]]) -> None:
        self._values = values
        self.reads = 0

    def get_sheet_titles(self, spreadsheet_id: str) -> list[str]:
        return ["Orders"]

    def read_values(self, spreadsheet_id: str, worksheet_name: str, cell_range: str) -> list[list[str]]:
        self.reads += 1
        return self._values


class _FakeStorage:
    def __init__(self) -> None:
        self.uploads: list[tuple[str, str]] = []
        self.deleted: list[tuple[str, str]] = []
        self.fail_upload = False
        self.fail_delete = False

    def upload_text(self, bucket: str, object_name: str, payload: str) -> None:
        if self.fail_upload:
            raise _http_error(403)
        self.uploads.append((bucket, object_name))

    def delete_object(self, bucket: str, object_name: str) -> bool:
        self.deleted.append((bucket, object_name))
        if self.fail_delete:
            raise _http_error(500)
        return True


class _FakeWarehouse:
    def __init__(self) -> None:
        self.project_id = "proj"
        self.loads: list[tuple[str, str, str]] = []
        self.queries: list[str] = []
        self.deleted: list[tuple[str, str]] = []
        self.fail_query = False

    def table_path(self, dataset_id: str, table_id: str) -> str:
        return f"`{self.project_id}.{dataset_id}.{table_id}`"

    def dataset_exists(self, dataset_id: str) -> bool:
        return True

    def create_dataset(self, dataset_id: str, location: str) -> None:
        raise AssertionError("dataset already exists")

    def load_ndjson(self, source_uri: str, dataset_id: str, table_id: str) -> dict:
        self.loads.append((source_uri, dataset_id, table_id))
        return {}

    def run_query(self, sql: str) -> dict:
        self.queries.append(sql)
        if self.fail_query:
            raise BigQueryJobError("query failed", errors=[{"message": "column count mismatch"}])
        return {}

    def delete_table(self, dataset_id: str, table_id: str) -> bool:
        self.deleted.append((dataset_id, table_id))
        return True


def _pipeline(
    store: _FakeStore,
    sheets: _FakeSheets,
    storage: _FakeStorage,
    warehouse: _FakeWarehouse,
    notifier: WebhookNotifier | None = None,
) -> SyncPipeline:
    settings = Settings(SCHEDULER_ENABLED=False, NOTIFICATION_WEBHOOK_URL="")
    pipeline = SyncPipeline(settings, store, notifier=notifier)  # type: ignore[arg-type]
    pipeline._build_credentials = lambda _settings, _key: object()  # type: ignore[assignment]
    pipeline._storage_factory = lambda _credentials: storage  # type: ignore[assignment]
    pipeline._warehouse_factory = lambda _credentials, _project, **_kwargs: warehouse  # type: ignore[assignment]
    pipeline._extractor_deps = ExtractorDeps(settings=settings, sheets_client_factory=lambda _credentials: sheets)
    return pipeline


_ROWS = [["Order ID", "Amount"], ["1", "10"], ["2", "20"]]


def test_successful_run_merges_and_cleans_up() -> None:
    store = _FakeStore(SyncJob.model_validate(_job_payload()))
    storage = _FakeStorage()
    warehouse = _FakeWarehouse()

    result = _pipeline(store, _FakeSheets(_ROWS), storage, warehouse).run_job("job_1")

    assert result.status is RunStatus.SUCCESS
    assert result.rows_synced == 2
    assert result.summary == "Successfully synced 2 rows to analytics.orders."
    assert result.details[-1].level is LogLevel.SUCCESS
    assert len(warehouse.loads) == 1
    assert warehouse.queries == [
        f"CREATE OR REPLACE TABLE `proj.analytics.orders` AS SELECT * FROM `proj.analytics.{warehouse.loads[0][2]}`"
    ]
    assert storage.deleted == storage.uploads
    assert warehouse.deleted == [("analytics", warehouse.loads[0][2])]
    assert store.started == [("job_1", result.run_id)]
    assert store.results == [result]
    assert store.schema_statuses == [("job_1", SchemaStatus.SYNCED)]


def test_empty_source_succeeds_without_staging() -> None:
    store = _FakeStore(SyncJob.model_validate(_job_payload()))
    storage = _FakeStorage()
    warehouse = _FakeWarehouse()

    result = _pipeline(store, _FakeSheets([["Order ID", "Amount"]]), storage, warehouse).run_job("job_1")

    assert result.status is RunStatus.SUCCESS
    assert result.rows_synced == 0
    assert result.summary == "No data found in sources. Sync completed without loading."
    assert storage.uploads == []
    assert warehouse.loads == []
    assert warehouse.queries == []
    assert storage.deleted == []
    assert warehouse.deleted == []


def test_merge_failure_still_cleans_up_once() -> None:
    store = _FakeStore(SyncJob.model_validate(_job_payload(syncStrategy="Append")))
    storage = _FakeStorage()
    warehouse = _FakeWarehouse()
    warehouse.fail_query = True

    result = _pipeline(store, _FakeSheets(_ROWS), storage, warehouse).run_job("job_1")

    assert result.status is RunStatus.FAILURE
    assert result.rows_synced == 0
    assert "column count mismatch" in result.summary
    assert warehouse.queries[0].startswith("INSERT INTO `proj.analytics.orders`")
    assert len(storage.deleted) == 1
    assert len(warehouse.deleted) == 1
    assert any(entry.level is LogLevel.ERROR for entry in result.details)


def test_staging_failure_removes_partial_artifact() -> None:
    store = _FakeStore(SyncJob.model_validate(_job_payload()))
    storage = _FakeStorage()
    storage.fail_upload = True
    warehouse = _FakeWarehouse()

    result = _pipeline(store, _FakeSheets(_ROWS), storage, warehouse).run_job("job_1")

    assert result.status is RunStatus.FAILURE
    assert len(storage.deleted) == 1
    assert warehouse.loads == []
    assert warehouse.deleted == []


def test_cleanup_failure_is_a_warning_and_keeps_success() -> None:
    store = _FakeStore(SyncJob.model_validate(_job_payload()))
    storage = _FakeStorage()
    storage.fail_delete = True
    warehouse = _FakeWarehouse()

    result = _pipeline(store, _FakeSheets(_ROWS), storage, warehouse).run_job("job_1")

    assert result.status is RunStatus.SUCCESS
    assert any(
        entry.level is LogLevel.WARNING and entry.message.startswith("Failed to delete GCS file")
        for entry in result.details
    )
    assert len(warehouse.deleted) == 1


def test_duplicate_destination_columns_refuse_to_run() -> None:
    job = SyncJob.model_validate(
        _job_payload(
            schemaMapping=[
                {"originalName": "Order ID", "bigQueryName": "order_id"},
                {"originalName": "order id", "bigQueryName": "order_id"},
            ]
        )
    )
    store = _FakeStore(job)
    sheets = _FakeSheets(_ROWS)
    storage = _FakeStorage()

    result = _pipeline(store, sheets, storage, _FakeWarehouse()).run_job("job_1")

    assert result.status is RunStatus.FAILURE
    assert "duplicate destination columns: order_id" in result.summary
    assert sheets.reads == 0
    assert storage.uploads == []


def test_missing_job_fails_and_is_recorded() -> None:
    store = _FakeStore(None)

    result = _pipeline(store, _FakeSheets(_ROWS), _FakeStorage(), _FakeWarehouse()).run_job("ghost")

    assert result.status is RunStatus.FAILURE
    assert result.summary == "Sync failed: config not found for job ID ghost"
    assert store.results == [result]


def test_store_bookkeeping_errors_do_not_escape_run_job() -> None:
    class _RaisingStore(_FakeStore):
        def mark_run_started(self, job_id: str, run_id: str) -> SinkResult:
            raise RuntimeError("store offline")

        def record_run_result(self, job_id: str, result: RunResult) -> SinkResult:
            self.results.append(result)
            raise RuntimeError("store offline")

    store = _RaisingStore(SyncJob.model_validate(_job_payload()))
    warehouse = _FakeWarehouse()

    result = _pipeline(store, _FakeSheets(_ROWS), _FakeStorage(), warehouse).run_job("job_1")

    assert result.status is RunStatus.SUCCESS
    assert result.rows_synced == 2
    assert store.results == [result]
    assert len(warehouse.loads) == 1


def test_failure_sends_notification_when_enabled() -> None:
    job = SyncJob.model_validate(
        _job_payload(notificationSettings={"enabled": True, "recipients": "ops@example.com", "subject": ""})
    )
    store = _FakeStore(job)
    warehouse = _FakeWarehouse()
    warehouse.fail_query = True
    notifier = WebhookNotifier("https://hooks.example.com/sync")
    posted: list[dict] = []
    notifier._post = lambda payload: posted.append(payload) or {}  # type: ignore[method-assign]

    result = _pipeline(store, _FakeSheets(_ROWS), _FakeStorage(), warehouse, notifier=notifier).run_job("job_1")

    assert result.status is RunStatus.FAILURE
    assert len(posted) == 1
    assert posted[0]["recipients"] == ["ops@example.com"]
    assert posted[0]["subject"].startswith("Sync job Daily orders finished with status FAILURE")
    assert result.summary in posted[0]["text"]["content"]


def test_schema_drift_warns_and_loads_with_saved_mapping() -> None:
    store = _FakeStore(SyncJob.model_validate(_job_payload()))
    sheets = _FakeSheets([["Order ID", "Amount", "Region"], ["1", "10", "EU"]])

    result = _pipeline(store, sheets, _FakeStorage(), _FakeWarehouse()).run_job("job_1")

    assert result.status is RunStatus.SUCCESS
    assert result.rows_synced == 1
    assert store.schema_statuses == [("job_1", SchemaStatus.CHANGED)]
    assert any(entry.level is LogLevel.WARNING and "new columns: Region" in entry.message for entry in result.details)
