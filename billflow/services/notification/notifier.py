"""Email notifications through the SendGrid v3 mail API."""

from typing import Protocol

import httpx

from billflow.common.errors import TransientExternalError
from billflow.common.logging import logger
from billflow.common.metrics import notifications_sent_total


class Notifier(Protocol):
    async def send(self, to: str, template_id: str, data: dict) -> None: ...


class SendGridNotifier:
    """Sends one dynamic-template email per call."""

    def __init__(
        self,
        api_key: str,
        sender: str,
        url: str = "https://api.sendgrid.com/v3/mail/send",
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
        service_name: str = "billflow",
    ) -> None:
        self.api_key = api_key
        self.sender = sender
        self.url = url
        self.timeout = timeout
        self.transport = transport
        self.service_name = service_name

    async def send(self, to: str, template_id: str, data: dict) -> None:
        body = {
            "from": {"email": self.sender},
            "personalizations": [{"to": [{"email": to}], "dynamic_template_data": data}],
            "template_id": template_id,
        }
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                resp = await client.post(
                    self.url,
                    headers={"Authorization": f"Bearer {self.api_key}"},
                    json=body,
                )
        except httpx.TransportError as exc:
            raise TransientExternalError(f"sendgrid unreachable: {exc}") from exc
        if resp.status_code == 429 or resp.status_code >= 500:
            raise TransientExternalError(f"sendgrid rejected send (status={resp.status_code})")
        if resp.status_code >= 400:
            # Bad template or address; retrying will not help but the task must not vanish silently.
            logger.error("sendgrid rejected send status=%s body=%s", resp.status_code, resp.text)
            resp.raise_for_status()
        notifications_sent_total.labels(service=self.service_name, template_id=template_id).inc()
        logger.info("notification sent template_id=%s", template_id)
