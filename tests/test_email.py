import smtplib

from keyward.service.email import EmailService


class FakeSMTP:
    sent = []

    def __init__(self, host, port, timeout=None):
        self.host = host
        self.port = port

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def starttls(self, context=None):
        pass

    def login(self, user, password):
        pass

    def sendmail(self, from_addr, to_addr, message):
        FakeSMTP.sent.append((from_addr, to_addr, message))


class FailingSMTP(FakeSMTP):
    def sendmail(self, from_addr, to_addr, message):
        raise smtplib.SMTPException("relay refused")


def _configured(**overrides):
    kwargs = dict(
        smtp_host="smtp.example.com",
        smtp_user="mailer",
        smtp_password="pw",
        from_email="security@example.com",
        base_url="https://id.example.com/",
    )
    kwargs.update(overrides)
    return EmailService(**kwargs)


def test_unconfigured_service_logs_instead_of_sending():
    service = EmailService()
    assert service.is_configured is False
    assert service.send_password_reset("user@example.com", "tok") is True


def test_reset_email_carries_link(monkeypatch):
    FakeSMTP.sent = []
    monkeypatch.setattr(smtplib, "SMTP", FakeSMTP)
    service = _configured()

    assert service.send_password_reset("user@example.com", "abc123") is True
    from_addr, to_addr, message = FakeSMTP.sent[0]
    assert from_addr == "security@example.com"
    assert to_addr == "user@example.com"
    assert "https://id.example.com/reset-password?token=abc123" in message


def test_verification_and_change_notices(monkeypatch):
    FakeSMTP.sent = []
    monkeypatch.setattr(smtplib, "SMTP", FakeSMTP)
    service = _configured()

    assert service.send_email_verification("new@example.com", "v1") is True
    assert service.send_password_changed("user@example.com") is True
    assert "verify-email?token=v1" in FakeSMTP.sent[0][2]
    assert len(FakeSMTP.sent) == 2


def test_delivery_failure_returns_false(monkeypatch):
    monkeypatch.setattr(smtplib, "SMTP", FailingSMTP)
    assert _configured().send_password_changed("user@example.com") is False


def test_redacted_addresses():
    service = EmailService()
    assert service._redact_email("someone@example.com") == "so***@example.com"
    assert service._redact_email("broken") == "redacted"


def test_password_changed_wording_follows_revocation(monkeypatch):
    FakeSMTP.sent = []
    monkeypatch.setattr(smtplib, "SMTP", FakeSMTP)
    service = _configured()

    service.send_password_changed("user@example.com")
    service.send_password_changed("user@example.com", sessions_revoked=True)

    changed, reset = FakeSMTP.sent[0][2], FakeSMTP.sent[1][2]
    assert "signed out" not in changed
    assert "signed out" in reset
