"""SMTP code delivery."""

import smtplib

from passless.service.email import LOGIN, VERIFY_EMAIL, EmailService


class RecordingSMTP:
    instances = []

    def __init__(self, host, port, timeout=None):
        self.host = host
        self.port = port
        self.messages = []
        self.logged_in = None
        RecordingSMTP.instances.append(self)

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def starttls(self, context=None):
        self.tls = True

    def login(self, user, password):
        self.logged_in = (user, password)

    def sendmail(self, from_addr, to_addr, body):
        self.messages.append((from_addr, to_addr, body))


def _configured():
    return EmailService(
        smtp_host="smtp.example.com",
        smtp_user="mailer",
        smtp_password="pw",
        from_email="no-reply@example.com",
    )


def test_unconfigured_service_logs_instead_of_sending():
    service = EmailService()
    assert not service.is_configured
    assert service.send_code("ada@example.com", "123456") is True


def test_sends_code_over_starttls(monkeypatch):
    RecordingSMTP.instances = []
    monkeypatch.setattr(smtplib, "SMTP", RecordingSMTP)

    assert _configured().send_code("ada@example.com", "123456", purpose=LOGIN) is True

    server = RecordingSMTP.instances[0]
    assert server.host == "smtp.example.com"
    assert server.logged_in == ("mailer", "pw")
    from_addr, to_addr, body = server.messages[0]
    assert from_addr == "no-reply@example.com"
    assert to_addr == "ada@example.com"
    assert "123456" in body
    assert "sign-in code" in body


def test_render_mentions_expiry():
    subject, html_body, text_body = EmailService(code_ttl_minutes=10)._render("654321", VERIFY_EMAIL)
    assert subject == "Confirm your email address"
    assert "654321" in html_body and "654321" in text_body
    assert "10 minutes" in text_body


def test_smtp_failure_returns_false(monkeypatch):
    def refuse(*args, **kwargs):
        raise smtplib.SMTPConnectError(421, "service not available")

    monkeypatch.setattr(smtplib, "SMTP", refuse)
    assert _configured().send_code("ada@example.com", "123456") is False


def test_connection_error_returns_false(monkeypatch):
    def unreachable(*args, **kwargs):
        raise ConnectionRefusedError("refused")

    monkeypatch.setattr(smtplib, "SMTP", unreachable)
    assert _configured().send_code("ada@example.com", "123456") is False
