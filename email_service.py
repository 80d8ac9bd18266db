from __future__ import annotations

import json
import logging
import smtplib
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional
from urllib.error import HTTPError, URLError
from urllib.request import Request, urlopen

from config import Settings, get_settings

logger = logging.getLogger(__name__)

RESEND_API_URL = "https://api.resend.com/emails"
SMTP_CONNECT_TIMEOUT_SECS = 5.0
SMTP_SOCKET_TIMEOUT_SECS = 10.0
HTTP_TIMEOUT_SECS = 10.0


class EmailDeliveryError(RuntimeError):
    pass


class EmailService:
    def __init__(self, settings: Optional[Settings] = None) -> None:
        self.settings = settings or get_settings()

    @property
    def transport(self) -> str:
        return "resend" if self.settings.resend_api_key else "smtp"

    def send_password_reset_email(self, to: str, reset_url: str) -> None:
        subject = f"Reset your {self.settings.app_name} password"
        text = (
            "Click the link below to reset your password. "
            "This link expires in 1 hour.\n\n"
            f"{reset_url}\n\n"
            "If you did not request a password reset, you can safely ignore this email."
        )
        html = (
            "<p>Click the link below to reset your password. "
            "This link expires in 1 hour.</p>"
            f'<p><a href="{reset_url}">{reset_url}</a></p>'
            "<p>If you did not request a password reset, "
            "you can safely ignore this email.</p>"
        )
        self.send(to, subject, text, html)

    def send(self, to: str, subject: str, text: str, html: str) -> None:
        if self.settings.resend_api_key:
            self._send_via_resend(to, subject, text, html)
        else:
            self._send_via_smtp(to, subject, text, html)
        logger.info(f"email_sent: transport={self.transport}")

    def _send_via_resend(self, to: str, subject: str, text: str, html: str) -> None:
        body = json.dumps(
            {
                "from": self.settings.email_from,
                "to": to,
                "subject": subject,
                "text": text,
                "html": html,
            }
        ).encode("utf-8")
        req = Request(
            RESEND_API_URL,
            data=body,
            method="POST",
            headers={
                "Authorization": f"Bearer {self.settings.resend_api_key}",
                "Content-Type": "application/json",
            },
        )
        try:
            with urlopen(req, timeout=HTTP_TIMEOUT_SECS) as resp:
                status = resp.status
                payload = resp.read().decode("utf-8", errors="replace")
        except HTTPError as exc:
            detail = exc.read().decode("utf-8", errors="replace")
            raise EmailDeliveryError(
                f"Resend API error {exc.code}: {detail}"
            ) from exc
        except (URLError, TimeoutError) as exc:
            raise EmailDeliveryError(f"Resend API unreachable: {exc}") from exc

        if not 200 <= status < 300:
            raise EmailDeliveryError(f"Resend API error {status}: {payload}")

    def _send_via_smtp(self, to: str, subject: str, text: str, html: str) -> None:
        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = self.settings.email_from
        msg["To"] = to
        msg.attach(MIMEText(text, "plain"))
        msg.attach(MIMEText(html, "html"))

        host = self.settings.smtp_host
        port = self.settings.smtp_port
        smtp_cls = smtplib.SMTP_SSL if port == 465 else smtplib.SMTP
        try:
            with smtp_cls(host, port, timeout=SMTP_CONNECT_TIMEOUT_SECS) as server:
                if server.sock is not None:
                    server.sock.settimeout(SMTP_SOCKET_TIMEOUT_SECS)
                server.ehlo()
                if port != 465 and server.has_extn("starttls"):
                    server.starttls()
                    server.ehlo()
                if self.settings.smtp_user:
                    server.login(self.settings.smtp_user, self.settings.smtp_pass or "")
                server.sendmail(self.settings.email_from, [to], msg.as_string())
        except (smtplib.SMTPException, OSError) as exc:
            raise EmailDeliveryError(f"SMTP delivery failed: {exc}") from exc
