"""
Outbound account email.

Services call `Notifier.enqueue(to, kind, data)` and return straight away.
A daemon worker drains the queue and hands each message to an EmailProvider;
delivery failures are logged and dropped, the user recovers through the
resend / forgot-password flows.
"""
import logging
import queue
import threading
from dataclasses import dataclass, field
from typing import Dict, Optional, Tuple

import resend

from config import EMAIL_FROM, EMAIL_FROM_NAME, OTP_EXPIRY_MINUTES, RESEND_API_KEY

logger = logging.getLogger(__name__)

OTP = "otp"
WELCOME = "welcome"
PASSWORD_RESET = "password_reset"
KINDS = (OTP, WELCOME, PASSWORD_RESET)


@dataclass
class Notification:
    to: str
    kind: str
    data: Dict[str, object] = field(default_factory=dict)


def _layout(title: str, body: str) -> str:
    return f"""<!DOCTYPE html>
<html>
  <body style="font-family:Arial,sans-serif;line-height:1.6;color:#333;">
    <div style="max-width:600px;margin:0 auto;padding:20px;">
      <div style="background:#4CAF50;color:#fff;padding:20px;text-align:center;">
        <h1 style="margin:0;">{title}</h1>
      </div>
      <div style="background:#f9f9f9;padding:30px;border-radius:5px;margin-top:20px;">
        {body}
      </div>
      <p style="text-align:center;margin-top:20px;font-size:12px;color:#777;">
        This is an automated email. Please do not reply.
      </p>
    </div>
  </body>
</html>"""


def _code_block(otp: str) -> str:
    return (
        '<div style="font-size:32px;font-weight:bold;color:#4CAF50;letter-spacing:5px;'
        f'text-align:center;padding:20px;background:#fff;border-radius:5px;margin:20px 0;">{otp}</div>'
    )


def render(notification: Notification) -> Tuple[str, str, str]:
    """Return (subject, html, text) for a notification."""
    name = notification.data.get("name") or "User"
    otp = str(notification.data.get("otp", ""))
    if notification.kind == OTP:
        body = (
            f"<h2>Hello {name}!</h2>"
            "<p>Thank you for registering with us. To complete your registration, "
            "please verify your email address using the code below:</p>"
            f"{_code_block(otp)}"
            f"<p><strong>This code will expire in {OTP_EXPIRY_MINUTES} minutes.</strong></p>"
            "<p>If you didn't request this verification, please ignore this email.</p>"
        )
        text = f"Your verification code is {otp}. It expires in {OTP_EXPIRY_MINUTES} minutes."
        return "Verify Your Email - OTP Code", _layout("Email Verification", body), text
    if notification.kind == PASSWORD_RESET:
        body = (
            f"<h2>Hello {name}!</h2>"
            "<p>We received a request to reset your password. Use the code below to choose a new one:</p>"
            f"{_code_block(otp)}"
            f"<p><strong>This code will expire in {OTP_EXPIRY_MINUTES} minutes.</strong></p>"
            "<p>If you didn't ask for a reset, you can ignore this email; your password stays the same.</p>"
        )
        text = f"Your password reset code is {otp}. It expires in {OTP_EXPIRY_MINUTES} minutes."
        return "Password Reset Code", _layout("Password Reset", body), text
    if notification.kind == WELCOME:
        body = (
            f"<h2>Hello {name}!</h2>"
            "<p>Your email has been successfully verified. Welcome aboard!</p>"
            "<p>If you have any questions, feel free to reach out to our support team.</p>"
        )
        return "Welcome!", _layout("Welcome!", body), f"Hello {name}, your email has been verified."
    raise ValueError(f"Unknown notification kind: {notification.kind}")


class EmailProvider:
    def send(self, notification: Notification) -> Tuple[bool, Optional[str]]:
        raise NotImplementedError


class ResendEmailProvider(EmailProvider):
    def __init__(self, api_key: str, sender: str):
        self.api_key = api_key
        self.sender = sender

    def send(self, notification):
        subject, html, text = render(notification)
        payload = {
            "from": self.sender,
            "to": [notification.to],
            "subject": subject,
            "html": html,
            "text": text,
        }
        resend.api_key = self.api_key
        try:
            response = resend.Emails.send(payload)
        except Exception as exc:
            return False, str(exc)
        if not isinstance(response, dict) or not response.get("id"):
            return False, str(response)
        return True, None


class LogEmailProvider(EmailProvider):
    """Development provider: writes the message to the log instead of sending it."""

    def send(self, notification):
        subject, _, text = render(notification)
        logger.info("Email to %s [%s]: %s", notification.to, subject, text)
        return True, None


class Notifier:
    def __init__(self, provider: EmailProvider):
        self.provider = provider
        self._queue: "queue.Queue[Optional[Notification]]" = queue.Queue()
        self._worker: Optional[threading.Thread] = None

    def enqueue(self, to: str, kind: str, data: Optional[dict] = None) -> None:
        if kind not in KINDS:
            raise ValueError(f"Unknown notification kind: {kind}")
        self._queue.put(Notification(to=to, kind=kind, data=dict(data or {})))

    def deliver(self, notification: Notification) -> bool:
        try:
            ok, error = self.provider.send(notification)
        except Exception as exc:
            ok, error = False, str(exc)
        if ok:
            logger.info("Sent %s email to %s", notification.kind, notification.to)
        else:
            logger.error("Failed to send %s email to %s: %s", notification.kind, notification.to, error)
        return ok

    def _run(self):
        while True:
            item = self._queue.get()
            try:
                if item is None:
                    return
                self.deliver(item)
            finally:
                self._queue.task_done()

    def start(self):
        if self._worker is not None and self._worker.is_alive():
            return
        self._worker = threading.Thread(target=self._run, name="notifier", daemon=True)
        self._worker.start()

    def stop(self, timeout: float = 5.0):
        if self._worker is None:
            return
        self._queue.put(None)
        self._worker.join(timeout)
        self._worker = None


def build_notifier() -> Notifier:
    if RESEND_API_KEY:
        provider = ResendEmailProvider(RESEND_API_KEY, f"{EMAIL_FROM_NAME} <{EMAIL_FROM}>")
    else:
        logger.warning("RESEND_API_KEY is not set; emails will only be logged")
        provider = LogEmailProvider()
    return Notifier(provider)
