"""Send capability: deliver one claimed task, report success or a failure reason.

The dispatcher depends only on the ``MailSender`` protocol. Two transports are
provided:

* ``SmtpMailSender`` - real delivery over SMTP (SSL on 465, STARTTLS otherwise).
* ``MockMailSender`` - simulated latency and failure rate for local runs.

Neither transport retries; a failed send is terminal for the task.
"""
from __future__ import annotations

import html
import random
import smtplib
import ssl
import time
from dataclasses import dataclass
from email.message import EmailMessage
from email.utils import formataddr, make_msgid
from typing import Any, Mapping, Protocol

from app.config import MAIL_SETTINGS
from app.services.task_store import TaskSnapshot
from app.utils import get_logger

logger = get_logger(__name__)

FOOTER_TEXT = "This email was sent via the campaign dispatch service"


@dataclass(frozen=True, slots=True)
class SendResult:
    success: bool
    reason: str | None = None

    @classmethod
    def ok(cls) -> "SendResult":
        return cls(success=True)

    @classmethod
    def failure(cls, reason: str) -> "SendResult":
        return cls(success=False, reason=reason)


class MailSender(Protocol):
    def send(self, task: TaskSnapshot) -> SendResult: ...


def render_html_body(message: str) -> str:
    body = html.escape(message).replace("\n", "<br>")
    return (
        '<div style="font-family: Arial, sans-serif; padding: 20px;">'
        f"<p>{body}</p>"
        "<br>"
        '<hr style="border: none; border-top: 1px solid #eee; margin: 20px 0;">'
        f'<p style="color: #666; font-size: 12px;">{FOOTER_TEXT}</p>'
        "</div>"
    )


def build_message(task: TaskSnapshot, *, sender_address: str, default_subject: str) -> EmailMessage:
    msg = EmailMessage()
    msg["From"] = formataddr((task.sender_name or "", sender_address))
    msg["To"] = task.email
    msg["Subject"] = task.subject or default_subject
    domain = sender_address.rsplit("@", 1)[-1] if "@" in sender_address else None
    msg["Message-ID"] = make_msgid(idstring=f"task{task.id}", domain=domain)
    msg.set_content(f"{task.message}\n\n--\n{FOOTER_TEXT}\n")
    msg.add_alternative(render_html_body(task.message), subtype="html")
    return msg


class SmtpMailSender:
    def __init__(
        self,
        *,
        host: str,
        port: int = 587,
        username: str | None = None,
        password: str | None = None,
        sender_address: str,
        default_subject: str = "Your Scheduled Email",
        timeout: float = 20.0,
    ):
        if not host:
            raise ValueError("SMTP host is required for the smtp mail backend")
        self.host = host
        self.port = int(port)
        self.username = username
        self.password = password
        self.sender_address = sender_address
        self.default_subject = default_subject
        self.timeout = timeout

    def send(self, task: TaskSnapshot) -> SendResult:
        msg = build_message(task, sender_address=self.sender_address, default_subject=self.default_subject)
        try:
            self._deliver(msg)
        except (smtplib.SMTPException, OSError) as e:
            reason = str(e) or type(e).__name__
            logger.warning("SMTP delivery failed", task_id=task.id, recipient=task.email, error=reason)
            return SendResult.failure(reason)
        logger.info("Email sent", task_id=task.id, recipient=task.email)
        return SendResult.ok()

    def _deliver(self, msg: EmailMessage) -> None:
        context = ssl.create_default_context()
        if self.port == 465:
            with smtplib.SMTP_SSL(self.host, self.port, context=context, timeout=self.timeout) as server:
                if self.username:
                    server.login(self.username, self.password or "")
                server.send_message(msg)
        else:
            with smtplib.SMTP(self.host, self.port, timeout=self.timeout) as server:
                server.starttls(context=context)
                if self.username:
                    server.login(self.username, self.password or "")
                server.send_message(msg)


class MockMailSender:
    """Mock transport: sleeps, fails at ``failure_rate``, records what it 'sent'."""

    def __init__(self, *, failure_rate: float = 0.05, latency_seconds: float = 0.0, rng: random.Random | None = None):
        self.failure_rate = max(0.0, min(1.0, float(failure_rate)))
        self.latency_seconds = max(0.0, float(latency_seconds))
        self._rng = rng or random.Random()
        self.sent: list[TaskSnapshot] = []

    def send(self, task: TaskSnapshot) -> SendResult:
        if self.latency_seconds:
            time.sleep(self._rng.uniform(0, self.latency_seconds))
        if self.failure_rate and self._rng.random() < self.failure_rate:
            logger.warning("Simulated mail delivery failure", task_id=task.id, recipient=task.email)
            return SendResult.failure("Simulated delivery failure")
        self.sent.append(task)
        logger.info("Email sent (mock)", task_id=task.id, recipient=task.email)
        return SendResult.ok()


def build_mail_sender(settings: Mapping[str, Any] | None = None) -> MailSender:
    """Create the transport named by ``settings['backend']`` (``mock`` or ``smtp``)."""
    cfg = dict(MAIL_SETTINGS if settings is None else settings)
    backend = str(cfg.get("backend") or "mock").lower()
    if backend == "smtp":
        return SmtpMailSender(
            host=str(cfg.get("smtp_host") or ""),
            port=int(cfg.get("smtp_port") or 587),
            username=cfg.get("smtp_user"),  # type: ignore[arg-type]
            password=cfg.get("smtp_password"),  # type: ignore[arg-type]
            sender_address=str(cfg.get("sender_address") or "no-reply@localhost"),
            default_subject=str(cfg.get("default_subject") or "Your Scheduled Email"),
            timeout=float(cfg.get("timeout_seconds") or 20.0),
        )
    if backend == "mock":
        return MockMailSender(
            failure_rate=float(cfg.get("mock_failure_rate") or 0.0),
            latency_seconds=float(cfg.get("mock_latency_seconds") or 0.0),
        )
    raise ValueError(f"Unknown mail backend '{backend}'")


__all__ = [
    "SendResult",
    "MailSender",
    "SmtpMailSender",
    "MockMailSender",
    "build_mail_sender",
    "build_message",
    "render_html_body",
]
