"""Email delivery of formatted reports.

The pipeline only prepares the payload (:func:`build_report_email`).
Sending is an external collaborator behind the :class:`EmailDelivery`
protocol; :class:`HttpEmailDelivery` posts the payload to a transactional
email API.  There are no retries: a failed send is reported once.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from html import escape
from typing import Any, Protocol, runtime_checkable

import httpx
from pydantic import BaseModel, Field

from query_engine.models.query import FormattedReport, ReportFormat

logger = logging.getLogger(__name__)

_TIMEOUT_SECONDS = 10.0
_SUBJECT_REQUEST_CHARS = 80


class DeliveryError(Exception):
    """Raised when a report could not be handed to the delivery channel."""


class EmailMessage(BaseModel):
    """Outbound email carrying a report."""

    recipient: str = Field(..., min_length=3, pattern=r"^[^@\s]+@[^@\s]+$")
    subject: str
    html_body: str
    csv_attachment: str | None = None
    csv_filename: str | None = None


@runtime_checkable
class EmailDelivery(Protocol):
    """Anything that can send an :class:`EmailMessage`."""

    async def send(self, message: EmailMessage) -> None:
        """Send *message*.  Raises :class:`DeliveryError` on failure."""
        ...


# ---------------------------------------------------------------------------
# Payload builder
# ---------------------------------------------------------------------------


def build_report_email(
    recipient: str,
    request: str,
    explanation: str,
    report: FormattedReport,
    csv_report: FormattedReport | None = None,
    *,
    now: datetime | None = None,
) -> EmailMessage:
    """Assemble the email for a finished query.

    The HTML body holds the explanation, the summary sentence and, for email
    reports, the rendered table.  A non-empty CSV rendering is attached.
    """
    request = " ".join(request.split())
    if len(request) > _SUBJECT_REQUEST_CHARS:
        request = request[: _SUBJECT_REQUEST_CHARS - 3].rstrip() + "..."

    body = [f"<p>{escape(explanation)}</p>"] if explanation else []
    body.append(f"<p><strong>{escape(report.summary)}</strong></p>")
    if report.format is ReportFormat.EMAIL and isinstance(report.content, dict):
        body.append(report.content.get("html_table", ""))
    elif isinstance(report.content, str):
        body.append(f"<p>{escape(report.content)}</p>")

    attachment = None
    filename = None
    if csv_report is not None and csv_report.content:
        stamp = (now or datetime.now(timezone.utc)).strftime("%Y-%m-%d")
        attachment = csv_report.content
        filename = f"report-{stamp}.csv"

    return EmailMessage(
        recipient=recipient,
        subject=f"Report: {request}" if request else "Report",
        html_body="".join(body),
        csv_attachment=attachment,
        csv_filename=filename,
    )


# ---------------------------------------------------------------------------
# HTTP delivery
# ---------------------------------------------------------------------------


class HttpEmailDelivery:
    """Send report emails through an HTTP email API.

    Parameters
    ----------
    api_url:
        Endpoint that accepts a JSON message via POST.
    api_key:
        Bearer token for the API.
    sender:
        ``from`` address.
    http_client:
        Optional ``httpx.AsyncClient`` for testing.  A default client
        is created if not provided.
    """

    def __init__(
        self,
        api_url: str,
        *,
        api_key: str | None = None,
        sender: str = "reports@localhost",
        timeout: float = _TIMEOUT_SECONDS,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._url = api_url
        self._api_key = api_key
        self._sender = sender
        self._client = http_client or httpx.AsyncClient(timeout=timeout)
        self._owns_client = http_client is None

    async def close(self) -> None:
        """Close the HTTP client if we own it."""
        if self._owns_client:
            await self._client.aclose()

    async def send(self, message: EmailMessage) -> None:
        headers = {"Content-Type": "application/json"}
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"

        payload: dict[str, Any] = {
            "from": self._sender,
            "to": [message.recipient],
            "subject": message.subject,
            "html": message.html_body,
        }
        if message.csv_attachment is not None:
            payload["attachments"] = [
                {
                    "filename": message.csv_filename or "report.csv",
                    "content_type": "text/csv",
                    "content": message.csv_attachment,
                }
            ]

        try:
            response = await self._client.post(self._url, json=payload, headers=headers)
        except httpx.HTTPError as exc:
            logger.warning("Email delivery to %s failed: %s", message.recipient, type(exc).__name__)
            raise DeliveryError(f"Email API unreachable: {type(exc).__name__}") from exc

        if not 200 <= response.status_code < 300:
            logger.warning(
                "Email delivery to %s rejected: status=%d",
                message.recipient,
                response.status_code,
            )
            raise DeliveryError(f"Email API returned HTTP {response.status_code}")

        logger.info("Email delivered to %s (status=%d)", message.recipient, response.status_code)
