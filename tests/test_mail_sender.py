import random
import smtplib
from datetime import datetime, timezone

import pytest

from app.models.db.enums import TaskStatus
from app.services.mail_sender import (
    MockMailSender,
    SmtpMailSender,
    build_mail_sender,
    build_message,
    render_html_body,
)
from app.services.task_store import TaskSnapshot


def _task(**overrides):
    data = dict(
        id=7,
        campaign_id=1,
        email="reader@example.com",
        message="Hello <friend>\nSee you soon",
        subject=None,
        due_at=datetime(2025, 6, 2, 9, 0, tzinfo=timezone.utc),
        status=TaskStatus.PENDING,
        sender_name="Ada Lovelace",
    )
    data.update(overrides)
    return TaskSnapshot(**data)


class FakeSMTP:
    instances: list["FakeSMTP"] = []
    fail_with: Exception | None = None

    def __init__(self, host, port, **kwargs):
        self.host = host
        self.port = port
        self.kwargs = kwargs
        self.started_tls = False
        self.logged_in = None
        self.messages = []
        FakeSMTP.instances.append(self)

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def starttls(self, context=None):
        self.started_tls = True

    def login(self, user, password):
        self.logged_in = (user, password)

    def send_message(self, msg):
        if FakeSMTP.fail_with is not None:
            raise FakeSMTP.fail_with
        self.messages.append(msg)


@pytest.fixture()
def fake_smtp(monkeypatch):
    FakeSMTP.instances = []
    FakeSMTP.fail_with = None
    monkeypatch.setattr(smtplib, "SMTP", FakeSMTP)
    monkeypatch.setattr(smtplib, "SMTP_SSL", FakeSMTP)
    return FakeSMTP


def _smtp_sender(port=587):
    return SmtpMailSender(
        host="smtp.example.com",
        port=port,
        username="mailer",
        password="secret",
        sender_address="campaigns@example.com",
    )


def test_build_message_headers_and_bodies():
    msg = build_message(_task(), sender_address="campaigns@example.com", default_subject="Your Scheduled Email")

    assert msg["To"] == "reader@example.com"
    assert msg["Subject"] == "Your Scheduled Email"
    assert "Ada Lovelace" in msg["From"]
    assert "campaigns@example.com" in msg["From"]
    html_part = msg.get_body(preferencelist=("html",))
    text_part = msg.get_body(preferencelist=("plain",))
    assert "&lt;friend&gt;<br>See you soon" in html_part.get_content()
    assert "Hello <friend>" in text_part.get_content()


def test_build_message_uses_task_subject():
    msg = build_message(_task(subject="Quarterly update"), sender_address="a@example.com", default_subject="x")
    assert msg["Subject"] == "Quarterly update"


def test_render_html_body_has_footer():
    html = render_html_body("line1\nline2")
    assert "line1<br>line2" in html
    assert "campaign dispatch service" in html


def test_smtp_starttls_delivery(fake_smtp):
    result = _smtp_sender(port=587).send(_task())

    assert result.success is True
    conn = fake_smtp.instances[-1]
    assert conn.started_tls is True
    assert conn.logged_in == ("mailer", "secret")
    assert len(conn.messages) == 1


def test_smtp_ssl_port_skips_starttls(fake_smtp):
    result = _smtp_sender(port=465).send(_task())

    assert result.success is True
    conn = fake_smtp.instances[-1]
    assert conn.started_tls is False
    assert "context" in conn.kwargs


def test_smtp_error_becomes_failure_result(fake_smtp):
    fake_smtp.fail_with = smtplib.SMTPException("550 mailbox unavailable")
    result = _smtp_sender().send(_task())
    assert result.success is False
    assert result.reason == "550 mailbox unavailable"


def test_smtp_requires_host():
    with pytest.raises(ValueError):
        SmtpMailSender(host="", sender_address="a@example.com")


def test_mock_sender_success_and_failure():
    ok = MockMailSender(failure_rate=0.0)
    bad = MockMailSender(failure_rate=1.0)

    assert ok.send(_task()).success is True
    assert ok.sent[0].id == 7
    failed = bad.send(_task())
    assert failed.success is False
    assert failed.reason
    assert bad.sent == []


def test_mock_sender_failure_rate_is_roughly_honoured():
    sender = MockMailSender(failure_rate=0.5, rng=random.Random(1234))
    outcomes = [sender.send(_task()).success for _ in range(400)]
    assert 100 < outcomes.count(False) < 300


def test_build_mail_sender_backends():
    assert isinstance(build_mail_sender({"backend": "mock", "mock_failure_rate": 0.0}), MockMailSender)
    smtp = build_mail_sender({
        "backend": "smtp",
        "smtp_host": "smtp.example.com",
        "smtp_port": 465,
        "sender_address": "a@example.com",
    })
    assert isinstance(smtp, SmtpMailSender)
    assert smtp.port == 465
    with pytest.raises(ValueError):
        build_mail_sender({"backend": "carrier-pigeon"})
