"""
Delivery of the recovered decryption key.

A channel only has to answer one question: did the message go out? The
recovery service treats ``False`` (or a DeliveryError) as "identity
confirmed, delivery failed", which is reported differently from a mismatch.
"""

from __future__ import annotations

import html
import json
import logging
from typing import Any, Protocol

import httpx

from .exceptions import DeliveryError

logger = logging.getLogger(__name__)

RESEND_API_URL = "https://api.resend.com/emails"
RECOVERY_SUBJECT = "Your Password Vault Recovery Key"


class DeliveryChannel(Protocol):
    def deliver(self, address: str, subject: str, body: str) -> bool: ...

    def close(self) -> None: ...

# ─── Channels ────────────────────────────────────────────────────────


class ResendDeliveryChannel:
    """Send email through the Resend REST API."""

    def __init__(
        self,
        api_key: str,
        sender: str,
        client: httpx.Client | None = None,
        timeout: float = 10.0,
    ):
        if not api_key:
            raise DeliveryError("RESEND_API_KEY is not configured")
        self.sender = sender
        self._client = client or httpx.Client(timeout=timeout)
        self._headers = {"Authorization": f"Bearer {api_key}"}

    def deliver(self, address: str, subject: str, body: str) -> bool:
        payload = {
            "from": self.sender,
            "to": [address],
            "subject": subject,
            "html": body,
        }
        try:
            response = self._client.post(RESEND_API_URL, json=payload, headers=self._headers)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            logger.error("Failed to send recovery email: %s", exc)
            return False

        logger.info("Recovery email sent successfully (status %s)", response.status_code)
        return True

    def close(self) -> None:
        self._client.close()


class LoggingDeliveryChannel:
    """Development channel: records that a message would have been sent.

    The body is kept in memory (never logged) so tests can inspect it.
    """

    def __init__(self) -> None:
        self.sent: list[tuple[str, str, str]] = []

    def deliver(self, address: str, subject: str, body: str) -> bool:
        logger.info("Delivery (dev) to %s: %s", address, subject)
        self.sent.append((address, subject, body))
        return True

    def close(self) -> None:
        pass


# ─── Message Template ───────────────────────────────────────────────


def render_recovery_email(name: str, secret: Any) -> str:
    """HTML body carrying the decryption key and the fixed security notice."""
    key_text = html.escape(json.dumps(secret, indent=2))
    return f"""\
<div style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto; padding: 20px;">
  <h1 style="color: #333; text-align: center;">Password Vault Recovery</h1>
  <div style="background-color: #f5f5f5; padding: 20px; border-radius: 8px; margin: 20px 0;">
    <h2 style="color: #333; margin-top: 0;">Identity Verification Successful</h2>
    <p>Hello {html.escape(name)},</p>
    <p>Your identity has been successfully verified using your Aadhaar details.
    Here is your decryption key for password vault recovery:</p>
    <div style="background-color: #fff; padding: 15px; border-left: 4px solid #4CAF50; margin: 20px 0;">
      <h3 style="margin: 0; color: #333;">Decryption Key:</h3>
      <code style="display: block; padding: 10px; font-family: monospace; word-break: break-all;">{key_text}</code>
    </div>
    <div style="background-color: #fff3cd; padding: 15px; border-left: 4px solid #ffc107; margin: 20px 0;">
      <h4 style="margin: 0; color: #856404;">Important Security Notice:</h4>
      <ul style="color: #856404; margin: 10px 0;">
        <li>Keep this decryption key secure and private</li>
        <li>Do not share this key with anyone</li>
        <li>Use this key immediately to recover your vault</li>
        <li>Delete this email after successful recovery</li>
      </ul>
    </div>
    <p style="color: #666; font-size: 14px; margin-top: 30px;">
      If you did not request this recovery, please ignore this email.
    </p>
  </div>
</div>
"""
