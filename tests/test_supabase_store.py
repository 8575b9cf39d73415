from __future__ import annotations

from datetime import timedelta

from sheetsync.config import Settings
from sheetsync.integrations.supabase_store import SupabaseJobStore, _row_to_payload
from sheetsync.models.jobs import SourceType, SyncStatus
from sheetsync.sync.context import RunContext, RunStatus
from sheetsync.time_utils import isoformat_utc, utc_now


class _Result:
    def __init__(self, rows: list[dict[str, object]]) -> None:
        self.data = rows


class _FakeQuery:
    def __init__(self, table: "_FakeTable", op: str, payload: dict[str, object] | None = None) -> None:
        self._table = table
        self._op = op
        self._payload = payload
        self._filters: list[tuple[str, object]] = []
        self._start = 0
        self._end: int | None = None

    def eq(self, column: str, value: object) -> "_FakeQuery":
        self._filters.append((column, lambda v, expected=value: v == expected))
        return self

    def in_(self, column: str, values: list[object]) -> "_FakeQuery":
        self._filters.append((column, lambda v, allowed=tuple(values): v in allowed))
        return self

    def order(self, column: str) -> "_FakeQuery":
        self._table.rows.sort(key=lambda row: str(row.get(column)))
        return self

    def range(self, start: int, end: int) -> "_FakeQuery":
        self._start = start
        self._end = end
        return self

    def limit(self, count: int) -> "_FakeQuery":
        self._end = self._start + count - 1
        return self

    def _matching(self) -> list[dict[str, object]]:
        return [row for row in self._table.rows if all(check(row.get(col)) for col, check in self._filters)]

    def execute(self) -> _Result:
        if self._op == "insert" and self._table.fail_insert:
            raise RuntimeError("insert rejected")
        if self._op == "insert":
            self._table.inserted.append(dict(self._payload or {}))
            return _Result([dict(self._payload or {})])
        if self._op == "update":
            matched = self._matching()
            for row in matched:
                row.update(self._payload or {})
            self._table.updates.append((dict(self._payload or {}), [row["id"] for row in matched]))
            return _Result(matched)

        self._table.select_calls += 1
        rows = self._matching()
        end = len(rows) if self._end is None else self._end + 1
        return _Result([dict(row) for row in rows[self._start : end]])


class _FakeTable:
    def __init__(self, rows: list[dict[str, object]] | None = None, *, fail_insert: bool = False) -> None:
        self.rows = rows or []
        self.fail_insert = fail_insert
        self.inserted: list[dict[str, object]] = []
        self.updates: list[tuple[dict[str, object], list[object]]] = []
        self.select_calls = 0

    def select(self, columns: str) -> _FakeQuery:
        return _FakeQuery(self, "select")

    def update(self, values: dict[str, object]) -> _FakeQuery:
        return _FakeQuery(self, "update", values)

    def insert(self, row: dict[str, object]) -> _FakeQuery:
        return _FakeQuery(self, "insert", row)


class _FakeClient:
    def __init__(self, tables: dict[str, _FakeTable]) -> None:
        self.tables = tables

    def table(self, name: str) -> _FakeTable:
        return self.tables.setdefault(name, _FakeTable())


def _job_row(job_id: str, **overrides) -> dict[str, object]:
    row: dict[str, object] = {
        "id": job_id,
        "name": f"Job {job_id}",
        "source_type": "Google Sheet",
        "destination_id": "dest_1",
        "dataset_id": "analytics",
        "final_table_name": "orders",
        "cron_schedule": "0 * * * *",
        "status": "Active",
        "is_archived": False,
        "running_run_id": None,
        "running_since": None,
        "config": {
            "sourceConfiguration": {"managedSheetId": "ms_1", "sources": [{"sheetName": "Data", "range": "A:C"}]},
            "schemaMapping": [{"originalName": "Order ID", "bigQueryName": "order_id"}],
        },
    }
    row.update(overrides)
    return row


def _store(tables: dict[str, _FakeTable]) -> tuple[SupabaseJobStore, _FakeClient]:
    store = SupabaseJobStore(Settings(SCHEDULER_STALE_RUN_SECONDS=3600))
    client = _FakeClient(tables)
    store._enabled = True
    store._client = client  # type: ignore[assignment]
    return store, client


def test_row_to_payload_prefers_columns_over_config() -> None:
    payload = _row_to_payload({"id": "j", "cron_schedule": "5 * * * *", "notes": None, "config": {"cronSchedule": "old", "x": 1}})

    assert payload == {"id": "j", "cronSchedule": "5 * * * *", "x": 1}


def test_due_job_candidates_paginate_and_skip_invalid_rows() -> None:
    rows = [_job_row(f"job_{i:04d}") for i in range(1205)]
    rows.append(_job_row("paused", status="Paused"))
    rows.append(_job_row("archived", is_archived=True))
    rows.append(_job_row("errored", status="Error"))
    rows.append(_job_row("invalid", cron_schedule=None, config={}))
    jobs_table = _FakeTable(rows)
    store, _ = _store({"sync_jobs": jobs_table})

    result, jobs = store.get_due_job_candidates()

    assert result.status == "ok"
    assert len(jobs) == 1206
    assert jobs_table.select_calls == 2
    assert "errored" in {job.id for job in jobs}
    assert jobs[0].schema_mapping[0].destination_name == "order_id"


def test_get_job_not_found_is_not_an_error() -> None:
    store, _ = _store({"sync_jobs": _FakeTable([_job_row("job_1")])})

    result, job = store.get_job("missing")

    assert result.status == "ok"
    assert job is None

    _, found = store.get_job("job_1")
    assert found is not None
    assert found.source_type is SourceType.GOOGLE_SHEET


def test_get_source_connection_reads_the_table_for_its_kind() -> None:
    store, _ = _store(
        {
            "managed_sheets": _FakeTable([{"id": "ms_1", "name": "Orders", "url": "https://docs.google.com/spreadsheets/d/abc/edit"}]),
            "ftp_sources": _FakeTable([{"id": "ftp_1", "host": "files.example.com", "port": 22, "user": "u", "pass": "p"}]),
        }
    )

    _, sheet = store.get_source_connection(SourceType.GOOGLE_SHEET, "ms_1")
    _, ftp = store.get_source_connection(SourceType.FTP, "ftp_1")

    assert sheet is not None and sheet.spreadsheet_id == "abc"
    assert ftp is not None and ftp.protocol == "sftp"


def test_run_in_flight_marker_and_stale_marker() -> None:
    fresh = isoformat_utc(utc_now())
    stale = isoformat_utc(utc_now() - timedelta(hours=2))
    store, _ = _store(
        {
            "sync_jobs": _FakeTable(
                [
                    _job_row("idle"),
                    _job_row("busy", running_run_id="run_1", running_since=fresh),
                    _job_row("crashed", running_run_id="run_2", running_since=stale),
                ]
            )
        }
    )

    assert store.is_run_in_flight("idle") is False
    assert store.is_run_in_flight("busy") is True
    assert store.is_run_in_flight("crashed") is False


def test_record_failure_logs_run_and_marks_job_error() -> None:
    jobs_table = _FakeTable([_job_row("job_1", running_run_id="run_x", running_since=isoformat_utc(utc_now()))])
    runs_table = _FakeTable()
    store, _ = _store({"sync_jobs": jobs_table, "job_runs": runs_table})
    context = RunContext(job_id="job_1")
    context.error("Sync failed: boom")

    result = store.record_run_result("job_1", context.finish(RunStatus.FAILURE, "Sync failed: boom"))

    assert result.status == "ok"
    assert runs_table.inserted[0]["run_id"] == context.run_id
    assert runs_table.inserted[0]["status"] == "FAILURE"
    assert runs_table.inserted[0]["details"][0]["level"] == "ERROR"
    job_row = jobs_table.rows[0]
    assert job_row["status"] == SyncStatus.ERROR.value
    assert job_row["last_run_status"] == "FAILURE"
    assert job_row["running_run_id"] is None
    assert store.is_run_in_flight("job_1") is False


def test_record_failure_updates_job_even_when_run_log_insert_fails() -> None:
    jobs_table = _FakeTable([_job_row("job_1", running_run_id="run_x", running_since=isoformat_utc(utc_now()))])
    store, _ = _store({"sync_jobs": jobs_table, "job_runs": _FakeTable(fail_insert=True)})

    result = store.record_run_result("job_1", RunContext(job_id="job_1").finish(RunStatus.FAILURE, "Sync failed: boom"))

    assert result.status == "error"
    assert result.target == "supabase_runs"
    assert "insert rejected" in result.message
    job_row = jobs_table.rows[0]
    assert job_row["status"] == SyncStatus.ERROR.value
    assert job_row["last_run_status"] == "FAILURE"
    assert job_row["running_run_id"] is None
    assert job_row["running_since"] is None
    assert store.is_run_in_flight("job_1") is False


def test_record_success_reactivates_errored_job() -> None:
    jobs_table = _FakeTable([_job_row("job_1", status="Error"), _job_row("job_2", status="Paused")])
    store, _ = _store({"sync_jobs": jobs_table, "job_runs": _FakeTable()})

    store.record_run_result("job_1", RunContext(job_id="job_1").finish(RunStatus.SUCCESS, "ok"))
    store.record_run_result("job_2", RunContext(job_id="job_2").finish(RunStatus.SUCCESS, "ok"))

    statuses = {row["id"]: row["status"] for row in jobs_table.rows}
    assert statuses == {"job_1": "Active", "job_2": "Paused"}


def test_disabled_store_skips() -> None:
    store = SupabaseJobStore(Settings(SUPABASE_URL="", SUPABASE_SERVICE_ROLE_KEY=""))

    result, jobs = store.get_due_job_candidates()

    assert result.status == "skipped"
    assert jobs == []
    assert store.is_run_in_flight("job_1") is False
