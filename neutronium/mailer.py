"""
Outbound email through the Resend HTTP API.
https://resend.com/docs/api-reference/emails/send-email
"""

from html import escape
from typing import Any, Dict, Optional

import httpx

from . import config
from .errors import UpstreamFailure
from .logging_utils import get_logger

logger = get_logger("neutronium.mailer")

REQUEST_TIMEOUT_SECONDS = 10.0


def _error_message(resp: httpx.Response) -> str:
    try:
        data = resp.json()
    except ValueError:
        return resp.text[:200] or f"HTTP {resp.status_code}"
    if isinstance(data, dict):
        err = data.get("error")
        if isinstance(err, dict):
            err = err.get("message")
        return str(data.get("message") or err or f"HTTP {resp.status_code}")
    return f"HTTP {resp.status_code}"


def send_email(to: str, subject: str, html: str, text: Optional[str] = None) -> Dict[str, Any]:
    if not config.RESEND_API_KEY:
        raise UpstreamFailure("Failed to send email: RESEND_API_KEY is not configured")
    payload = {
        "from": config.FROM_EMAIL,
        "to": [to],
        "subject": subject,
        "html": html,
    }
    if text:
        payload["text"] = text
    try:
        with httpx.Client(timeout=REQUEST_TIMEOUT_SECONDS) as client:
            resp = client.post(
                config.RESEND_API_URL,
                headers={"Authorization": f"Bearer {config.RESEND_API_KEY}"},
                json=payload,
            )
    except httpx.HTTPError as exc:
        logger.error("email_send_error", extra={"error": str(exc)})
        raise UpstreamFailure(f"Failed to send email: {exc}") from exc

    if resp.status_code >= 400:
        message = _error_message(resp)
        logger.error("email_send_rejected", extra={"status": resp.status_code, "error": message})
        raise UpstreamFailure(f"Failed to send email: {message}")
    return resp.json()


def send_magic_link_email(email: str, link: str) -> Dict[str, Any]:
    minutes = config.MAGIC_LINK_TTL_MINUTES
    text = (
        "Sign in to Neutronium Leaderboard\n\n"
        f"Click the link below to sign in (expires in {minutes} minutes):\n"
        f"{link}\n\n"
        "If you didn't request this email, you can safely ignore it."
    )
    safe_link = escape(link, quote=True)
    html = (
        "<p>Click the link below to sign in to Neutronium Leaderboard. "
        f"This link will expire in {minutes} minutes.</p>"
        f'<p><a href="{safe_link}">Sign In</a></p>'
        f"<p>{safe_link}</p>"
        "<p>If you didn't request this email, you can safely ignore it.</p>"
    )
    return send_email(email, "Sign in to Neutronium Leaderboard", html, text)
