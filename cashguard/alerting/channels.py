"""
Notification Channels — deliver a rendered alert to a list of recipients.

Each channel is fault-tolerant: delivery problems come back as a failed
DeliveryOutcome, never as an exception. Calls go through a CircuitBreaker
so a dead provider is short-circuited with "circuit open".

- SMTP: aiosmtplib, HTML body
- Resend: HTTPS POST to the Resend e-mail API (httpx)
- Log: structured log line only (development default)
"""

from email.mime.text import MIMEText
from typing import Awaitable, Callable, Optional, Protocol

import aiosmtplib
import httpx
import structlog

from cashguard.alerting.schemas import DeliveryOutcome
from cashguard.config import Settings, settings as default_settings
from cashguard.services.resilience import CircuitBreaker, CircuitOpenError

logger = structlog.get_logger(__name__)

CIRCUIT_OPEN = "circuit open"
NO_RECIPIENTS = "No recipients"


class NotificationChannel(Protocol):
    """Protocol for alert delivery channels."""

    async def send(self, recipients: list[str], subject: str, body: str) -> DeliveryOutcome:
        """
        Deliver one message.

        Returns:
            DeliveryOutcome.delivered(...) or DeliveryOutcome.failed(reason)
        """
        ...


class ChannelDeliveryError(Exception):
    """Provider rejected the message. Counts as a breaker failure."""
    pass


Deliver = Callable[[list[str], str, str], Awaitable[str]]


async def _send_guarded(
    channel: str,
    breaker: CircuitBreaker,
    deliver: Deliver,
    recipients: list[str],
    subject: str,
    body: str,
) -> DeliveryOutcome:
    if not recipients:
        return DeliveryOutcome.failed(NO_RECIPIENTS)

    try:
        detail = await breaker.call(deliver, recipients, subject, body)
    except CircuitOpenError:
        logger.warning("alert_channel_circuit_open", channel=channel)
        return DeliveryOutcome.failed(CIRCUIT_OPEN)
    except Exception as e:
        logger.error("alert_channel_error", channel=channel, error=str(e))
        return DeliveryOutcome.failed(str(e) or type(e).__name__)

    logger.info("alert_email_sent", channel=channel, recipients=len(recipients))
    return DeliveryOutcome.delivered(detail)


class SmtpEmailChannel:
    """Send alerts as HTML e-mail over SMTP (STARTTLS)."""

    name = "smtp"

    def __init__(
        self,
        host: str,
        port: int = 587,
        username: str = "",
        password: str = "",
        from_email: str = "alerts@cashguard.app",
        timeout: float = 10.0,
        breaker: Optional[CircuitBreaker] = None,
    ):
        self.host = host
        self.port = port
        self.username = username
        self.password = password
        self.from_email = from_email
        self.timeout = timeout
        self.breaker = breaker or CircuitBreaker(name="smtp_channel")

    async def send(self, recipients: list[str], subject: str, body: str) -> DeliveryOutcome:
        return await _send_guarded(self.name, self.breaker, self._deliver, recipients, subject, body)

    async def _deliver(self, recipients: list[str], subject: str, body: str) -> str:
        msg = MIMEText(body, "html", "utf-8")
        msg["Subject"] = subject
        msg["From"] = self.from_email
        msg["To"] = ", ".join(recipients)

        await aiosmtplib.send(
            msg,
            hostname=self.host,
            port=self.port,
            username=self.username or None,
            password=self.password or None,
            start_tls=True,
            timeout=self.timeout,
        )
        return f"Sent to {len(recipients)} recipients"


class ResendEmailChannel:
    """
    Send alerts through the Resend HTTP API.

    An httpx.AsyncClient can be injected (tests pass one built on
    httpx.MockTransport); otherwise a client is opened per send.
    """

    name = "resend"

    def __init__(
        self,
        api_key: str,
        from_email: str = "alerts@cashguard.app",
        api_url: str = "https://api.resend.com/emails",
        timeout: float = 10.0,
        breaker: Optional[CircuitBreaker] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.api_key = api_key
        self.from_email = from_email
        self.api_url = api_url
        self.timeout = timeout
        self.breaker = breaker or CircuitBreaker(name="resend_channel")
        self._client = client

    async def send(self, recipients: list[str], subject: str, body: str) -> DeliveryOutcome:
        return await _send_guarded(self.name, self.breaker, self._deliver, recipients, subject, body)

    async def _deliver(self, recipients: list[str], subject: str, body: str) -> str:
        payload = {
            "from": self.from_email,
            "to": recipients,
            "subject": subject,
            "html": body,
        }
        headers = {"Authorization": f"Bearer {self.api_key}"}

        if self._client is not None:
            response = await self._client.post(self.api_url, json=payload, headers=headers)
        else:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(self.api_url, json=payload, headers=headers)

        if response.status_code >= 400:
            raise ChannelDeliveryError(f"HTTP {response.status_code}")

        try:
            message_id = response.json().get("id", "")
        except ValueError:
            message_id = ""
        return f"HTTP {response.status_code} {message_id}".strip()


class LogChannel:
    """Log the alert instead of sending it. Always available."""

    name = "log"

    def __init__(self, breaker: Optional[CircuitBreaker] = None):
        self.breaker = breaker or CircuitBreaker(name="log_channel")

    async def send(self, recipients: list[str], subject: str, body: str) -> DeliveryOutcome:
        return await _send_guarded(self.name, self.breaker, self._deliver, recipients, subject, body)

    async def _deliver(self, recipients: list[str], subject: str, body: str) -> str:
        logger.info("alert_email_logged", to=recipients, subject=subject, body_length=len(body))
        return "Logged"


def build_notification_channel(cfg: Optional[Settings] = None) -> NotificationChannel:
    """Pick the channel named by ALERT_CHANNEL."""
    cfg = cfg or default_settings
    kind = cfg.alert_channel.lower()
    breaker = CircuitBreaker(
        name=f"{kind}_channel",
        failure_threshold=cfg.channel_failure_threshold,
        window_seconds=cfg.channel_failure_window_seconds,
        recovery_timeout=cfg.channel_recovery_timeout_seconds,
    )

    if kind == "smtp":
        if not cfg.alert_smtp_host:
            raise ValueError("ALERT_SMTP_HOST is required for the smtp channel")
        return SmtpEmailChannel(
            host=cfg.alert_smtp_host,
            port=cfg.alert_smtp_port,
            username=cfg.alert_smtp_user,
            password=cfg.alert_smtp_password,
            from_email=cfg.alert_from_email,
            timeout=cfg.channel_timeout_seconds,
            breaker=breaker,
        )
    if kind == "resend":
        if not cfg.resend_api_key:
            raise ValueError("RESEND_API_KEY is required for the resend channel")
        return ResendEmailChannel(
            api_key=cfg.resend_api_key,
            from_email=cfg.alert_from_email,
            api_url=cfg.resend_api_url,
            timeout=cfg.channel_timeout_seconds,
            breaker=breaker,
        )
    if kind == "log":
        return LogChannel(breaker=breaker)
    raise ValueError(f"Unknown ALERT_CHANNEL: {cfg.alert_channel}")
