"""Verification code delivery.

Two implementations of the ``VerificationMailer`` capability:
    - BrevoMailer: sends an HTML email through the Brevo transactional API.
    - LoggingMailer: writes the code to the log; for local development when
      no API key is configured.
"""
import html
import logging
from datetime import datetime
from typing import Optional, Protocol

import httpx

from realchat.errors import DeliveryError

logger = logging.getLogger(__name__)

_TEMPLATE = """\
<div style="font-family:Arial,sans-serif;max-width:520px;margin:0 auto;color:#111827;">
  <h2 style="margin:0 0 12px;font-size:20px;">Email Verification Code</h2>
  <p style="font-size:14px;color:#374151;">
    Please use the following one-time code to complete your registration.
  </p>
  <div style="margin:24px 0;text-align:center;font-size:28px;font-weight:700;letter-spacing:6px;">
    {code}
  </div>
  <p style="font-size:13px;color:#6b7280;">This code will expire in <strong>{minutes} minutes</strong>.</p>
  <p style="font-size:13px;color:#6b7280;">If you did not request this code, please ignore this email.</p>
  <p style="font-size:12px;color:#9ca3af;">&copy; {year} {sender}</p>
</div>
"""


class VerificationMailer(Protocol):
    def send_verification_code(self, email: str, code: str) -> None: ...


class BrevoMailer:
    """Sends one-time codes through Brevo's ``/v3/smtp/email`` endpoint."""

    def __init__(
        self,
        api_key: str,
        sender_email: str,
        sender_name: str = "RealChat",
        api_url: str = "https://api.brevo.com/v3/smtp/email",
        timeout: float = 10.0,
        code_ttl_seconds: int = 300,
        client: Optional[httpx.Client] = None,
    ):
        self.api_key = api_key
        self.sender_email = sender_email
        self.sender_name = sender_name
        self.api_url = api_url
        self.timeout = timeout
        self.code_ttl_seconds = code_ttl_seconds
        self._client = client or httpx.Client(timeout=timeout)

    def send_verification_code(self, email: str, code: str) -> None:
        """Deliver ``code`` to ``email``.

        Raises:
            DeliveryError: If the API call fails for any reason.
        """
        body = {
            "sender": {"name": self.sender_name, "email": self.sender_email},
            "to": [{"email": email}],
            "subject": f"OTP Code - {self.sender_name}",
            "htmlContent": _TEMPLATE.format(
                code=html.escape(code),
                minutes=max(1, self.code_ttl_seconds // 60),
                year=datetime.now().year,
                sender=html.escape(self.sender_name),
            ),
        }
        try:
            resp = self._client.post(
                self.api_url,
                json=body,
                headers={"api-key": self.api_key},
            )
            resp.raise_for_status()
        except httpx.HTTPError as e:
            logger.error("[Mail] Verification email to %s failed: %s", email, e)
            raise DeliveryError("Verification email could not be sent") from e
        logger.info("[Mail] Verification email sent to %s", email)

    def close(self) -> None:
        self._client.close()


class LoggingMailer:
    """Development mailer: logs the code instead of sending it."""

    def send_verification_code(self, email: str, code: str) -> None:
        logger.warning("[Mail] Verification code for %s: %s (log mailer, not sent)", email, code)
