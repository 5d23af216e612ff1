"""Email and Slack notification channels and the channel-dispatching notifier."""

from __future__ import annotations

import logging
import smtplib
from collections.abc import Callable
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from html import escape
from typing import Protocol

import httpx

from maintainer_brief.config import NotificationSettings
from maintainer_brief.pipeline.contracts import NotificationError, NotificationPayload
from maintainer_brief.pipeline.executor import EMAIL_CHANNEL, SLACK_CHANNEL

logger = logging.getLogger(__name__)


class Channel(Protocol):
    def send(self, payload: NotificationPayload) -> None:
        raise NotImplementedError


class SlackWebhookChannel:
    """Posts ``{"text": ...}`` to the repository's incoming webhook."""

    def __init__(
        self,
        *,
        timeout_seconds: float = 10.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self._client = httpx.Client(
            timeout=httpx.Timeout(timeout_seconds, connect=5.0),
            transport=transport,
        )

    def close(self) -> None:
        self._client.close()

    def send(self, payload: NotificationPayload) -> None:
        if not payload.recipient.startswith(("https://", "http://")):
            raise NotificationError(f"Invalid Slack webhook URL for {payload.repository_name}")
        try:
            response = self._client.post(payload.recipient, json={"text": payload.text})
        except httpx.HTTPError as error:
            raise NotificationError(f"Slack webhook request failed: {error}") from error
        if not response.is_success:
            raise NotificationError(f"Slack webhook returned HTTP {response.status_code}")
        logger.info("Slack notification sent for job %s", payload.job_id)


class EmailChannel:
    """Sends a plain-text and HTML email through SMTP."""

    def __init__(
        self,
        settings: NotificationSettings,
        *,
        smtp_factory: Callable[..., smtplib.SMTP] = smtplib.SMTP,
        timeout_seconds: float = 15.0,
    ) -> None:
        self.settings = settings
        self._smtp_factory = smtp_factory
        self.timeout_seconds = timeout_seconds

    def send(self, payload: NotificationPayload) -> None:
        host = self.settings.smtp_host.strip()
        if not host:
            raise NotificationError("SMTP is not configured; set MAINTAINER_BRIEF_SMTP_HOST")

        message = MIMEMultipart("alternative")
        message["Subject"] = payload.subject
        message["From"] = self.settings.smtp_from
        message["To"] = payload.recipient
        message.attach(MIMEText(payload.text, "plain", "utf-8"))
        message.attach(MIMEText(_render_html(payload), "html", "utf-8"))

        try:
            with self._smtp_factory(
                host,
                self.settings.smtp_port,
                timeout=self.timeout_seconds,
            ) as smtp:
                if self.settings.smtp_use_tls:
                    smtp.starttls()
                if self.settings.smtp_user and self.settings.smtp_password:
                    smtp.login(self.settings.smtp_user, self.settings.smtp_password)
                smtp.sendmail(self.settings.smtp_from, [payload.recipient], message.as_string())
        except (smtplib.SMTPException, OSError) as error:
            raise NotificationError(f"Email delivery failed: {error}") from error
        logger.info("Email notification sent for job %s", payload.job_id)


class ChannelNotifier:
    """Routes ``notify(channel, payload)`` to the registered channel."""

    def __init__(self, channels: dict[str, Channel]) -> None:
        self.channels = dict(channels)

    @classmethod
    def from_settings(cls, settings: NotificationSettings) -> ChannelNotifier:
        return cls(
            {
                EMAIL_CHANNEL: EmailChannel(settings),
                SLACK_CHANNEL: SlackWebhookChannel(timeout_seconds=settings.slack_timeout_seconds),
            },
        )

    def notify(self, channel: str, payload: NotificationPayload) -> None:
        target = self.channels.get(channel)
        if target is None:
            raise NotificationError(f"Unknown notification channel: {channel}")
        target.send(payload)

    def close(self) -> None:
        for channel in self.channels.values():
            close = getattr(channel, "close", None)
            if callable(close):
                close()


def _render_html(payload: NotificationPayload) -> str:
    kinds = "".join(f"<li>{escape(kind).replace('_', ' ')}</li>" for kind in payload.output_kinds)
    return (
        f"<p>Analysis for <strong>{escape(payload.repository_name)}</strong> is complete.</p>"
        f"<ul>{kinds}</ul>"
        f'<p><a href="{escape(payload.link)}">View the results</a></p>'
    )
