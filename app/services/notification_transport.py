"""
Notification Transport
Delivers "video ready" notifications to customers

ResendTransport posts to the Resend email API behind the notifications
circuit breaker. LogOnlyTransport is used when RESEND_API_KEY is not
configured so the dispatcher still runs end to end.
"""

import asyncio
import html
import uuid
from typing import Optional, Protocol

import httpx
import structlog

from app.exceptions import InfrastructureError
from app.services.generation.agent import GenerationParams
from app.services.monitoring.circuit_breakers import CircuitBreakerError, get_notifications_breaker

logger = structlog.get_logger(__name__)

RESEND_EMAILS_URL = "https://api.resend.com/emails"
SUBJECT = "Your AI Video is Ready! 🎬"


class NotificationTransport(Protocol):
    async def send(self, recipient: str, payload: dict) -> str: ...


def _display_fields(payload: dict) -> dict:
    """Prompt, resolution and duration as shown to the customer (not escaped)"""
    options = GenerationParams(
        prompt=payload.get("prompt") or "",
        resolution=payload.get("resolution"),
        duration=payload.get("duration")
    ).options()
    duration = options.get("duration", "")
    return {
        "prompt": payload.get("prompt") or "",
        "resolution": options.get("resolution", ""),
        "duration": f"{duration}s" if duration else "",
    }


def build_text_body(payload: dict) -> str:
    """Build plain text email body"""
    fields = _display_fields(payload)
    return f"""
Your AI video is ready!

Prompt: {fields["prompt"]}
Resolution: {fields["resolution"]}
Duration: {fields["duration"]}

Watch or download it here:
{payload.get("video_url", "")}

Order: {payload.get("order_id", "")}

---
This email was generated automatically. Download links may expire, please save your video.
"""


def build_html_body(payload: dict) -> str:
    """Build HTML email body; every interpolated value is escaped"""
    fields = {key: html.escape(value) for key, value in _display_fields(payload).items()}
    video_url = html.escape(payload.get("video_url") or "", quote=True)
    order_id = html.escape(str(payload.get("order_id") or ""))
    return f"""
<!DOCTYPE html>
<html>
<body style="font-family: Arial, sans-serif; line-height: 1.6; color: #333;">
  <h2>Your AI video is ready! 🎬</h2>
  <table style="border-collapse: collapse;">
    <tr><td style="padding: 4px 12px 4px 0;"><strong>Prompt</strong></td><td>{fields["prompt"]}</td></tr>
    <tr><td style="padding: 4px 12px 4px 0;"><strong>Resolution</strong></td><td>{fields["resolution"]}</td></tr>
    <tr><td style="padding: 4px 12px 4px 0;"><strong>Duration</strong></td><td>{fields["duration"]}</td></tr>
  </table>
  <p><a href="{video_url}" style="background: #111; color: #fff; padding: 10px 18px; text-decoration: none; border-radius: 4px;">Watch your video</a></p>
  <p style="font-size: 12px; color: #888;">Order {order_id}. Download links may expire, please save your video.</p>
</body>
</html>
"""


class ResendTransport:
    """Sends notifications through the Resend API"""

    def __init__(self, api_key: str, sender: str, timeout: float = 30.0):
        self.api_key = api_key
        self.sender = sender
        self.timeout = timeout
        self.breaker = get_notifications_breaker()
        self.logger = logger.bind(service="resend_transport")

    def _post(self, message: dict) -> str:
        with httpx.Client() as client:
            response = client.post(
                RESEND_EMAILS_URL,
                headers={
                    "Authorization": f"Bearer {self.api_key}",
                    "Content-Type": "application/json"
                },
                json=message,
                timeout=self.timeout
            )

        if response.status_code >= 400:
            self.logger.warning(
                "resend_send_rejected",
                status=response.status_code,
                response=response.text[:500]
            )
            response.raise_for_status()

        return response.json().get("id", "")

    def build_message(self, recipient: str, payload: dict) -> dict:
        return {
            "from": self.sender,
            "to": [recipient],
            "subject": SUBJECT,
            "text": build_text_body(payload),
            "html": build_html_body(payload),
            "tags": [
                {"name": "category", "value": "video_ready"},
                {"name": "resolution", "value": str(payload.get("resolution") or "unknown")},
                {"name": "duration", "value": str(payload.get("duration") or "unknown")},
            ],
        }

    async def send(self, recipient: str, payload: dict) -> str:
        """
        Send one notification.

        Returns:
            Resend email id

        Raises:
            InfrastructureError: circuit open or the API call failed
        """
        message = self.build_message(recipient, payload)
        try:
            email_id = await asyncio.to_thread(self.breaker.call, self._post, message)
        except CircuitBreakerError as e:
            raise InfrastructureError("Notification transport circuit open") from e
        except httpx.HTTPError as e:
            raise InfrastructureError(f"Resend API call failed: {e}") from e

        self.logger.info("notification_sent", order_id=payload.get("order_id"), email_id=email_id)
        return email_id


class LogOnlyTransport:
    """Logs notifications instead of sending them"""

    def __init__(self):
        self.logger = logger.bind(service="log_only_transport")

    async def send(self, recipient: str, payload: dict) -> str:
        delivery_id = f"log-{uuid.uuid4().hex[:12]}"
        self.logger.info(
            "notification_logged",
            recipient=recipient,
            order_id=payload.get("order_id"),
            video_url=payload.get("video_url"),
            delivery_id=delivery_id
        )
        return delivery_id


def build_transport(api_key: Optional[str], sender: str) -> NotificationTransport:
    if not api_key:
        logger.warning("resend_api_key_not_configured", fallback="log_only")
        return LogOnlyTransport()
    return ResendTransport(api_key=api_key, sender=sender)
