"""Generic outbound webhook notification channel."""

from __future__ import annotations

import hashlib
import hmac

import httpx
import structlog

from irdesk.notifications.base import IncidentNotification

logger = structlog.get_logger()

SIGNATURE_HEADER = "X-IRDesk-Signature"


class WebhookNotificationChannel:
    """POST incident notifications as JSON to a configured URL.

    When *secret* is set, the raw body is signed with HMAC-SHA256 and the
    hex digest sent in ``X-IRDesk-Signature``. Each notification gets a
    single delivery attempt.
    """

    def __init__(
        self,
        url: str,
        secret: str = "",
        timeout: float = 10.0,
        custom_headers: dict[str, str] | None = None,
    ) -> None:
        self._url = url
        self._secret = secret
        self._timeout = timeout
        self._custom_headers = custom_headers or {}

    @property
    def url(self) -> str:
        return self._url

    def sign(self, body: bytes) -> str:
        return hmac.new(self._secret.encode(), body, hashlib.sha256).hexdigest()

    def _headers(self, body: bytes) -> dict[str, str]:
        headers = {"Content-Type": "application/json", **self._custom_headers}
        if self._secret:
            headers[SIGNATURE_HEADER] = self.sign(body)
        return headers

    async def notify(self, notification: IncidentNotification) -> bool:
        body = notification.model_dump_json().encode("utf-8")
        try:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                response = await client.post(self._url, content=body, headers=self._headers(body))
        except httpx.HTTPError as e:
            logger.warning(
                "webhook_notification_error",
                url=self._url,
                incident_id=notification.incident_id,
                error=str(e),
            )
            return False
        if 200 <= response.status_code < 300:
            logger.info(
                "webhook_notification_sent",
                incident_id=notification.incident_id,
                event_name=notification.event,
            )
            return True
        logger.warning(
            "webhook_notification_rejected",
            url=self._url,
            status_code=response.status_code,
            body=response.text[:200],
        )
        return False
