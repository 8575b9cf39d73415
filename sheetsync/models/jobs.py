import re
from datetime import date, datetime
from enum import Enum
from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel


class SyncStatus(str, Enum):
    ACTIVE = "Active"
    PAUSED = "Paused"
    ERROR = "Error"
    COMPLETED = "Completed"


class SyncStrategy(str, Enum):
    REPLACE = "Replace (Overwrite)"
    APPEND = "Append"

    @classmethod
    def _missing_(cls, value: object) -> "SyncStrategy | None":
        lowered = str(value).strip().lower()
        for member in cls:
            if member.value.lower().startswith(lowered) and lowered:
                return member
        return None


class SchemaStatus(str, Enum):
    UNCHECKED = "Unchecked"
    SYNCED = "Synced"
    CHANGED = "Changed"


class SourceType(str, Enum):
    GOOGLE_SHEET = "Google Sheet"
    FTP = "FTP/SFTP"


class _StoreModel(BaseModel):
    # The configuration store persists camelCase keys.
    model_config = ConfigDict(extra="allow", alias_generator=to_camel, populate_by_name=True)


class SchemaMapping(_StoreModel):
    original_name: str
    destination_name: str = Field(alias="bigQueryName")


class SheetRange(_StoreModel):
    sheet_name: str
    range: str = ""


class GoogleSheetSourceConfig(_StoreModel):
    kind: Literal["google_sheet"] = "google_sheet"
    managed_sheet_id: str
    sources: list[SheetRange] = Field(default_factory=list)


class FtpSourceConfig(_StoreModel):
    kind: Literal["ftp"] = "ftp"
    ftp_source_id: str
    file_path: str
    # Kept as free text so unknown formats surface as UnsupportedFormat at extraction.
    file_format: str = "CSV"


SourceConfiguration = Annotated[GoogleSheetSourceConfig | FtpSourceConfig, Field(discriminator="kind")]

_SOURCE_KIND_BY_TYPE = {
    SourceType.GOOGLE_SHEET.value: "google_sheet",
    SourceType.FTP.value: "ftp",
}


class NotificationSettings(_StoreModel):
    enabled: bool = False
    recipients: str = ""
    subject: str = ""

    @property
    def recipient_list(self) -> list[str]:
        return [v.strip() for v in self.recipients.split(",") if v.strip()]


class SyncJob(_StoreModel):
    id: str
    name: str = ""

    source_type: SourceType
    source_configuration: SourceConfiguration
    schema_mapping: list[SchemaMapping] = Field(default_factory=list)

    destination_id: str
    dataset_id: str
    dataset_location: str | None = None
    final_table_name: str

    cron_schedule: str
    status: SyncStatus = SyncStatus.ACTIVE
    sync_strategy: SyncStrategy = SyncStrategy.REPLACE
    notification_settings: NotificationSettings = Field(default_factory=NotificationSettings)
    schema_status: SchemaStatus = SchemaStatus.UNCHECKED
    is_archived: bool = False
    active_from: date | None = None
    active_until: date | None = None

    last_run: datetime | None = None
    last_run_status: str | None = None
    last_run_rows_synced: int | None = None
    last_run_duration_in_seconds: float | None = None

    @model_validator(mode="before")
    @classmethod
    def _tag_source_configuration(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        source_type = data.get("sourceType", data.get("source_type"))
        if isinstance(source_type, SourceType):
            source_type = source_type.value
        key = "sourceConfiguration" if "sourceConfiguration" in data else "source_configuration"
        config = data.get(key)
        if isinstance(config, dict) and "kind" not in config and source_type in _SOURCE_KIND_BY_TYPE:
            data = {**data, key: {**config, "kind": _SOURCE_KIND_BY_TYPE[source_type]}}
        return data

    @field_validator("active_from", "active_until", "dataset_location", mode="before")
    @classmethod
    def _blank_to_none(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @field_validator("active_from", "active_until", mode="before")
    @classmethod
    def _date_only(cls, value: Any) -> Any:
        # Stores sometimes persist a full ISO timestamp for a date field.
        if isinstance(value, str) and "T" in value:
            return value.split("T", 1)[0]
        if isinstance(value, datetime):
            return value.date()
        return value


class GcpProjectConnection(_StoreModel):
    id: str
    name: str = ""
    project_id: str
    staging_gcs_bucket: str
    service_account_key_json: str = ""
    gcs_hmac_key: str | None = None
    gcs_hmac_secret: str | None = None

    @property
    def bucket_name(self) -> str:
        bucket = self.staging_gcs_bucket.strip()
        if bucket.startswith("gs://"):
            bucket = bucket[len("gs://") :]
        return bucket.strip("/")


class ManagedSheet(_StoreModel):
    id: str
    name: str = ""
    url: str

    @property
    def spreadsheet_id(self) -> str:
        match = re.search(r"/d/([A-Za-z0-9_-]+)", self.url)
        if match:
            return match.group(1)
        return self.url.strip()


class FtpSource(_StoreModel):
    id: str
    name: str = ""
    host: str
    port: int = 21
    user: str = ""
    password: str = Field(default="", alias="pass")
    protocol: Literal["ftp", "ftps", "sftp"] = "ftp"

    @model_validator(mode="before")
    @classmethod
    def _infer_protocol(cls, data: Any) -> Any:
        if isinstance(data, dict) and not data.get("protocol") and int(data.get("port") or 21) == 22:
            return {**data, "protocol": "sftp"}
        return data


SourceConnection = ManagedSheet | FtpSource
