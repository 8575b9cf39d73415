import logging
from datetime import datetime
from typing import Any

import httpx

from sheetsync.integrations.types import SinkResult
from sheetsync.models.jobs import NotificationSettings, SyncJob

logger = logging.getLogger(__name__)

DEFAULT_FAILURE_SUBJECT = "Sync job {job_name} finished with status {status} ({date})"
DEFAULT_SCHEMA_SUBJECT = "Schema change detected for sync job {job_name} ({date})"


class WebhookNotifier:
    def __init__(self, webhook_url: str, *, date_format: str = "%Y-%m-%d") -> None:
        self._webhook_url = webhook_url.strip()
        self._date_format = date_format or "%Y-%m-%d"

    @property
    def enabled(self) -> bool:
        return bool(self._webhook_url)

    def build_subject(self, template: str, *, job: SyncJob, status: str, when: datetime) -> str:
        raw_template = template or DEFAULT_FAILURE_SUBJECT
        try:
            date_text = when.strftime(self._date_format)
        except ValueError:
            date_text = when.strftime("%Y-%m-%d")
        return (
            raw_template.replace("{job_name}", job.name or job.id)
            .replace("{job_id}", job.id)
            .replace("{status}", status)
            .replace("{date}", date_text)
            .strip()
        )

    def notify(
        self,
        job: SyncJob,
        *,
        status: str,
        body: str,
        when: datetime,
        subject_template: str | None = None,
    ) -> SinkResult:
        settings: NotificationSettings = job.notification_settings
        if not settings.enabled:
            return SinkResult("notification", "skipped", "notifications disabled for job")
        if not self.enabled:
            return SinkResult("notification", "skipped", "notification webhook URL is not configured")

        template = subject_template if subject_template is not None else settings.subject
        subject = self.build_subject(template, job=job, status=status, when=when)
        payload: dict[str, Any] = {
            "tag": "text",
            "text": {"content": f"{subject}\n\n{body}".strip()},
            "subject": subject,
            "recipients": settings.recipient_list,
        }
        try:
            self._post(payload)
        except (httpx.HTTPError, RuntimeError, ValueError) as exc:
            logger.exception("failed to send notification for job %s", job.id)
            return SinkResult("notification", "error", str(exc))
        return SinkResult("notification", "ok", f"notified {len(settings.recipient_list)} recipients")

    def _post(self, payload: dict[str, Any]) -> dict[str, Any]:
        with httpx.Client(timeout=15.0) as client:
            response = client.post(
                self._webhook_url,
                headers={"Content-Type": "application/json"},
                json=payload,
            )
            response.raise_for_status()
            data = response.json() if response.content else {}

        if isinstance(data, dict) and data.get("code", 0) not in (0, None):
            logger.error("notification webhook send failed: %s", data)
            raise RuntimeError(f"failed to send notification, code={data.get('code')}")

        return data if isinstance(data, dict) else {"ok": True}
