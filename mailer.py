import logging
from typing import Dict

import resend

from config import Settings

logger = logging.getLogger(__name__)


def send_email(settings: Settings, to: str, subject: str, html: str) -> bool:
    """Send through Resend when configured; otherwise log the message.

    Delivery failures are logged and reported as False so that signup and
    password flows are not rolled back by the mail provider.
    """
    if not settings.resend_api_key:
        logger.info("Email delivery not configured; would send %r to %s: %s", subject, to, html)
        return False
    payload: Dict[str, object] = {
        "from": settings.mail_from,
        "to": [to],
        "subject": subject,
        "html": html,
    }
    resend.api_key = settings.resend_api_key
    try:
        response = resend.Emails.send(payload)
    except Exception:
        logger.error("Failed to send %r to %s", subject, to, exc_info=True)
        return False
    logger.info("Sent %r to %s (%s)", subject, to, response.get("id") if isinstance(response, dict) else response)
    return True


def send_verification_email(settings: Settings, to: str, name: str, token: str) -> bool:
    url = f"{settings.public_base_url}/api/auth/verify/{token}"
    html = f"<html><body>Hi {name}, click <a href=\"{url}\">here</a> to verify your email.</body></html>"
    return send_email(settings, to, "Please verify your email", html)


def send_password_reset_email(settings: Settings, to: str, token: str) -> bool:
    html = f"<html><body>Your password reset code: <b>{token}</b></body></html>"
    return send_email(settings, to, "Reset your password", html)
