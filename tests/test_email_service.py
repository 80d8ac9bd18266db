import json
import smtplib
from urllib.error import URLError

import pytest

import email_service
from config import Settings
from email_service import EmailDeliveryError, EmailService


def make_settings(**overrides) -> Settings:
    values = dict(
        database_url="sqlite://",
        environment="test",
        timezone="UTC",
        jwt_secret="s",
        token_expiry_secs=60,
        salt_rounds=4,
        cookie_name="ft_token",
        csrf_cookie_name="ft_csrf",
        email_hmac_key="k",
        email_encryption_key="ab" * 32,
        reset_token_expiry_secs=3600,
        app_name="Finance Tracker",
        app_base_url="http://testserver",
        email_from="noreply@example.com",
        smtp_host="mail.example.com",
        smtp_port=587,
    )
    values.update(overrides)
    return Settings(**values)


class FakeSMTP:
    instances: list["FakeSMTP"] = []

    def __init__(self, host, port, timeout=None):
        self.host = host
        self.port = port
        self.sock = None
        self.calls: list[str] = []
        self.sent: list[tuple] = []
        FakeSMTP.instances.append(self)

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def ehlo(self):
        self.calls.append("ehlo")

    def has_extn(self, name):
        return name == "starttls"

    def starttls(self):
        self.calls.append("starttls")

    def login(self, user, password):
        self.calls.append(f"login:{user}")

    def sendmail(self, sender, recipients, message):
        self.sent.append((sender, recipients, message))


class FakeResponse:
    def __init__(self, status=200, body=b"{}"):
        self.status = status
        self._body = body

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def read(self):
        return self._body


def test_smtp_transport_sends_reset_link(monkeypatch) -> None:
    FakeSMTP.instances.clear()
    monkeypatch.setattr(smtplib, "SMTP", FakeSMTP)
    service = EmailService(make_settings(smtp_user="mailer", smtp_pass="pw"))

    service.send_password_reset_email(
        "alice@example.com", "http://testserver/reset-password?token=abc"
    )

    smtp = FakeSMTP.instances[-1]
    assert (smtp.host, smtp.port) == ("mail.example.com", 587)
    assert smtp.calls == ["ehlo", "starttls", "ehlo", "login:mailer"]
    sender, recipients, message = smtp.sent[0]
    assert sender == "noreply@example.com"
    assert recipients == ["alice@example.com"]
    assert "Reset your Finance Tracker password" in message
    assert "token=abc" in message


def test_smtp_failure_becomes_delivery_error(monkeypatch) -> None:
    class BrokenSMTP(FakeSMTP):
        def sendmail(self, sender, recipients, message):
            raise smtplib.SMTPException("rejected")

    monkeypatch.setattr(smtplib, "SMTP", BrokenSMTP)
    service = EmailService(make_settings())
    with pytest.raises(EmailDeliveryError):
        service.send("a@example.com", "s", "t", "<p>h</p>")


def test_resend_transport_posts_json(monkeypatch) -> None:
    captured = {}

    def fake_urlopen(req, timeout=None):
        captured["url"] = req.full_url
        captured["auth"] = req.get_header("Authorization")
        captured["body"] = json.loads(req.data.decode("utf-8"))
        return FakeResponse()

    monkeypatch.setattr(email_service, "urlopen", fake_urlopen)
    service = EmailService(make_settings(resend_api_key="re_123"))
    assert service.transport == "resend"

    service.send_password_reset_email("alice@example.com", "http://x/reset")

    assert captured["url"] == email_service.RESEND_API_URL
    assert captured["auth"] == "Bearer re_123"
    assert captured["body"]["to"] == "alice@example.com"
    assert "http://x/reset" in captured["body"]["html"]


def test_resend_unreachable_becomes_delivery_error(monkeypatch) -> None:
    def fake_urlopen(req, timeout=None):
        raise URLError("no route")

    monkeypatch.setattr(email_service, "urlopen", fake_urlopen)
    service = EmailService(make_settings(resend_api_key="re_123"))
    with pytest.raises(EmailDeliveryError):
        service.send("a@example.com", "s", "t", "<p>h</p>")


def test_resend_non_2xx_becomes_delivery_error(monkeypatch) -> None:
    monkeypatch.setattr(
        email_service, "urlopen", lambda req, timeout=None: FakeResponse(status=302)
    )
    service = EmailService(make_settings(resend_api_key="re_123"))
    with pytest.raises(EmailDeliveryError):
        service.send("a@example.com", "s", "t", "<p>h</p>")
