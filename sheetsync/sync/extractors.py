"""Source extractors: turn a job's source into a flat list of destination-keyed rows.

One function per source kind; ``extract`` dispatches on ``job.source_type``.
"""

import io
import logging
import math
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass, field
from typing import Any

import pandas as pd
from googleapiclient.errors import HttpError

from sheetsync.config import Settings
from sheetsync.errors import ConfigurationError, RangeInvalid, SourceUnreachable, UnsupportedFormat
from sheetsync.integrations.ftp import FtpFileClient
from sheetsync.integrations.google_cloud import http_status
from sheetsync.integrations.google_sheets import GoogleSheetsClient
from sheetsync.models.jobs import (
    FtpSource,
    FtpSourceConfig,
    GoogleSheetSourceConfig,
    ManagedSheet,
    SchemaMapping,
    SourceConnection,
    SourceType,
    SyncJob,
)
from sheetsync.schema.columns import generate_schema_mapping
from sheetsync.sync.context import RunContext

logger = logging.getLogger(__name__)

SUPPORTED_FILE_FORMATS = ("CSV", "XLSX", "XLS")


@dataclass
class ExtractedRowSet:
    rows: list[dict[str, Any]] = field(default_factory=list)
    headers: list[str] = field(default_factory=list)
    mapping: list[SchemaMapping] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.rows)


@dataclass
class ExtractorDeps:
    """Client factories, swappable in tests."""

    settings: Settings
    sheets_client_factory: Callable[[Any], GoogleSheetsClient] = GoogleSheetsClient
    ftp_client_factory: Callable[..., FtpFileClient] = FtpFileClient


def _to_scalar(value: Any) -> Any:
    if value is None or value is pd.NaT:
        return None
    if isinstance(value, float) and math.isnan(value):
        return None
    if isinstance(value, str) and value == "":
        return None
    if hasattr(value, "isoformat") and not isinstance(value, str):
        return value.isoformat()
    if hasattr(value, "item"):
        # numpy scalars
        return value.item()
    return value


def _header_text(value: Any) -> str:
    value = _to_scalar(value)
    return "" if value is None else str(value)


def _column_positions(headers: Sequence[str], mapping: Sequence[SchemaMapping]) -> list[int | None]:
    """Column index for each mapping item.

    Headers may repeat, so the n-th mapping item naming a header takes the
    n-th column carrying that header. Items with no such column get None.
    """
    columns: dict[str, list[int]] = {}
    for idx, header in enumerate(headers):
        columns.setdefault(header, []).append(idx)

    taken: dict[str, int] = {}
    positions: list[int | None] = []
    for item in mapping:
        candidates = columns.get(item.original_name, [])
        nth = taken.get(item.original_name, 0)
        taken[item.original_name] = nth + 1
        positions.append(candidates[nth] if nth < len(candidates) else None)
    return positions


def rekey_rows(
    headers: Sequence[str],
    rows: Iterable[Sequence[Any]],
    mapping: Sequence[SchemaMapping],
) -> list[dict[str, Any]]:
    """Key each positional row by destination name; absent and empty cells become None."""
    positions = _column_positions(headers, mapping)
    keyed: list[dict[str, Any]] = []
    for row in rows:
        keyed.append(
            {
                item.destination_name: _to_scalar(row[pos]) if pos is not None and pos < len(row) else None
                for item, pos in zip(mapping, positions)
            }
        )
    return keyed


def _merge_headers(observed: list[str], headers: Sequence[str]) -> None:
    """Add ``headers`` to ``observed``, keeping repeats within one range but not across ranges."""
    counts: dict[str, int] = {}
    for header in headers:
        counts[header] = counts.get(header, 0) + 1
        if counts[header] > observed.count(header):
            observed.append(header)


def _is_blank(row: Sequence[Any]) -> bool:
    return all(_to_scalar(cell) is None for cell in row)


def _resolve_mapping(context: RunContext, job: SyncJob, headers: Sequence[str]) -> list[SchemaMapping]:
    if job.schema_mapping:
        return list(job.schema_mapping)
    mapping = generate_schema_mapping(headers)
    context.info(f"Job has no saved schema mapping; generated {len(mapping)} columns from source headers.")
    return mapping


def extract_spreadsheet(
    context: RunContext,
    job: SyncJob,
    source: ManagedSheet,
    credentials: Any,
    deps: ExtractorDeps,
) -> ExtractedRowSet:
    config = job.source_configuration
    if not isinstance(config, GoogleSheetSourceConfig):
        raise ConfigurationError(f"job {job.id} is a spreadsheet job without a spreadsheet source configuration")
    if not config.sources:
        raise ConfigurationError(f"job {job.id} has no sheet ranges configured")

    client = deps.sheets_client_factory(credentials)
    spreadsheet_id = source.spreadsheet_id
    try:
        titles = set(client.get_sheet_titles(spreadsheet_id))
    except HttpError as exc:
        raise SourceUnreachable(f"spreadsheet '{spreadsheet_id}' could not be opened (HTTP {http_status(exc)})") from exc

    ranges: list[tuple[list[str], list[list[Any]]]] = []
    observed: list[str] = []
    for sheet_range in config.sources:
        if sheet_range.sheet_name not in titles:
            raise RangeInvalid(f"tab '{sheet_range.sheet_name}' does not exist in spreadsheet '{spreadsheet_id}'")
        context.info(f"Fetching data from sheet {spreadsheet_id}, range {sheet_range.sheet_name}!{sheet_range.range or '<all>'}")
        try:
            values = client.read_values(spreadsheet_id, sheet_range.sheet_name, sheet_range.range)
        except HttpError as exc:
            status = http_status(exc)
            if status == 400:
                raise RangeInvalid(
                    f"range {sheet_range.sheet_name}!{sheet_range.range} is not valid: {exc}"
                ) from exc
            raise SourceUnreachable(f"spreadsheet '{spreadsheet_id}' could not be read (HTTP {status})") from exc

        if not values:
            context.info(f"Range {sheet_range.sheet_name}!{sheet_range.range} is empty.")
            continue

        range_headers = [_header_text(cell) for cell in values[0]]
        _merge_headers(observed, range_headers)
        ranges.append((range_headers, [row for row in values[1:] if not _is_blank(row)]))

    mapping = _resolve_mapping(context, job, observed)
    rows: list[dict[str, Any]] = []
    for range_headers, range_rows in ranges:
        rows.extend(rekey_rows(range_headers, range_rows, mapping))
    context.info(f"Fetched {len(rows)} rows from {len(config.sources)} sheet range(s).")
    return ExtractedRowSet(rows=rows, headers=observed, mapping=mapping)


def parse_file(payload: bytes, file_format: str) -> tuple[list[str], list[list[Any]]]:
    """Parse a downloaded file into its header row and positional data rows.

    The first row is the header row; repeated headers are kept as they are.
    Only the first worksheet of an Excel file is read. Blank rows are dropped.
    """
    fmt = (file_format or "").strip().upper()
    if fmt not in SUPPORTED_FILE_FORMATS:
        raise UnsupportedFormat(f"unsupported file format: {file_format!r}")

    buffer = io.BytesIO(payload)
    if not payload.strip():
        return [], []
    if fmt == "CSV":
        frame = pd.read_csv(buffer, header=None, dtype=str, keep_default_na=False, skip_blank_lines=True)
    else:
        engine = "openpyxl" if fmt == "XLSX" else "xlrd"
        frame = pd.read_excel(buffer, sheet_name=0, header=None, engine=engine, dtype=object)

    values = frame.values.tolist()
    if not values:
        return [], []
    headers = [_header_text(cell) for cell in values[0]]
    rows = [row for row in values[1:] if not _is_blank(row)]
    return headers, rows


def extract_ftp_file(
    context: RunContext,
    job: SyncJob,
    source: FtpSource,
    credentials: Any,
    deps: ExtractorDeps,
) -> ExtractedRowSet:
    config = job.source_configuration
    if not isinstance(config, FtpSourceConfig):
        raise ConfigurationError(f"job {job.id} is an FTP job without an FTP source configuration")
    if (config.file_format or "").strip().upper() not in SUPPORTED_FILE_FORMATS:
        raise UnsupportedFormat(f"unsupported file format: {config.file_format!r}")

    context.info(f"Connecting to {source.protocol.upper()} host {source.host}:{source.port}")
    with deps.ftp_client_factory(source, timeout_seconds=deps.settings.ftp_connect_timeout_seconds) as client:
        context.info(f"Downloading file from path {config.file_path}")
        payload = client.download(config.file_path)
    context.info(f"Downloaded file. Size: {len(payload)} bytes.")

    try:
        headers, values = parse_file(payload, config.file_format)
    except UnsupportedFormat:
        raise
    except (ValueError, KeyError, OSError) as exc:
        raise UnsupportedFormat(f"file '{config.file_path}' could not be parsed as {config.file_format}: {exc}") from exc
    context.info(f"Parsed {len(values)} rows from file.")

    mapping = _resolve_mapping(context, job, headers)
    return ExtractedRowSet(rows=rekey_rows(headers, values, mapping), headers=headers, mapping=mapping)


Extractor = Callable[[RunContext, SyncJob, Any, Any, ExtractorDeps], ExtractedRowSet]

EXTRACTORS: dict[SourceType, Extractor] = {
    SourceType.GOOGLE_SHEET: extract_spreadsheet,
    SourceType.FTP: extract_ftp_file,
}


def extract(
    context: RunContext,
    job: SyncJob,
    source: SourceConnection,
    credentials: Any,
    deps: ExtractorDeps,
) -> ExtractedRowSet:
    extractor = EXTRACTORS.get(job.source_type)
    if extractor is None:
        raise ConfigurationError(f"unsupported source type: {job.source_type}")
    return extractor(context, job, source, credentials, deps)
