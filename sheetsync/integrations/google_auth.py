import json
from pathlib import Path

from google.oauth2 import service_account

from sheetsync.config import Settings
from sheetsync.errors import ConfigurationError

SHEETS_READONLY_SCOPE = "https://www.googleapis.com/auth/spreadsheets.readonly"
CLOUD_PLATFORM_SCOPE = "https://www.googleapis.com/auth/cloud-platform"
DEFAULT_SCOPES = (SHEETS_READONLY_SCOPE, CLOUD_PLATFORM_SCOPE)


def build_credentials(
    settings: Settings,
    service_account_key_json: str,
    scopes: tuple[str, ...] = DEFAULT_SCOPES,
) -> service_account.Credentials:
    """Credentials from the destination's key JSON, falling back to GOOGLE_SERVICE_ACCOUNT_FILE."""
    if service_account_key_json and service_account_key_json.strip():
        try:
            info = json.loads(service_account_key_json)
        except json.JSONDecodeError as exc:
            raise ConfigurationError(f"destination service account key is not valid JSON: {exc}") from exc
        try:
            return service_account.Credentials.from_service_account_info(info, scopes=list(scopes))
        except (KeyError, ValueError) as exc:
            raise ConfigurationError(f"destination service account key is incomplete: {exc}") from exc

    credentials_file = Path(settings.google_service_account_file) if settings.google_service_account_file else None
    if not credentials_file or not credentials_file.exists():
        raise ConfigurationError("destination has no service account key and GOOGLE_SERVICE_ACCOUNT_FILE is not set")
    return service_account.Credentials.from_service_account_file(str(credentials_file), scopes=list(scopes))
