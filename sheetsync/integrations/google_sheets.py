import logging
from typing import Any

from googleapiclient.discovery import build

logger = logging.getLogger(__name__)


class GoogleSheetsClient:
    def __init__(self, credentials: Any) -> None:
        self._credentials = credentials
        self._service = None

    def _build_service(self):
        if self._service is None:
            self._service = build("sheets", "v4", credentials=self._credentials, cache_discovery=False)
        return self._service

    def get_sheet_titles(self, spreadsheet_id: str) -> list[str]:
        service = self._build_service()
        response = (
            service.spreadsheets()
            .get(spreadsheetId=spreadsheet_id, fields="sheets.properties.title")
            .execute()
        )
        return [
            str((sheet.get("properties", {}) or {}).get("title", ""))
            for sheet in response.get("sheets", []) or []
        ]

    def read_values(self, spreadsheet_id: str, worksheet_name: str, cell_range: str) -> list[list[str]]:
        service = self._build_service()
        response = service.spreadsheets().values().get(
            spreadsheetId=spreadsheet_id,
            range=self._sheet_range(worksheet_name, cell_range),
        ).execute()
        values: list[list[Any]] = response.get("values", [])
        return [[str(cell).strip() for cell in row] for row in values]

    @staticmethod
    def _sheet_range(worksheet_name: str, cell_range: str) -> str:
        # Always quote sheet names to support spaces/special chars.
        escaped = worksheet_name.replace("'", "''")
        if not cell_range:
            return f"'{escaped}'"
        return f"'{escaped}'!{cell_range}"
