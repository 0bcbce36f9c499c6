"""Transactional email through Resend."""

import html
import logging
from typing import Optional

import resend

from config import settings
from pricing import format_cents

logger = logging.getLogger(__name__)


def send_email(to: str, subject: str, html_body: str) -> Optional[str]:
    """Send one message. Returns the provider id, or None when not sent.

    Delivery problems are logged and never raised into the caller's request.
    """
    if not settings.resend_api_key:
        logger.info("Email delivery disabled, skipping %r to %s", subject, to)
        return None
    resend.api_key = settings.resend_api_key
    try:
        result = resend.Emails.send({
            "from": settings.email_from,
            "to": [to],
            "subject": subject,
            "html": html_body,
        })
    except Exception:
        logger.error("Failed to send %r to %s", subject, to, exc_info=True)
        return None
    return result.get("id") if isinstance(result, dict) else None


def send_verification_email(user: dict, raw_token: str) -> Optional[str]:
    url = f"{settings.frontend_url}/verify-email?token={raw_token}"
    body = (
        f"<p>Hi {html.escape(user.get('name') or '')},</p>"
        f"<p>Please confirm your email address by opening <a href=\"{html.escape(url)}\">this link</a>.</p>"
    )
    return send_email(user["email"], "Email Verification", body)


def send_password_reset_email(user: dict, raw_token: str) -> Optional[str]:
    url = f"{settings.frontend_url}/reset-password?token={raw_token}"
    body = (
        f"<p>Hi {html.escape(user.get('name') or '')},</p>"
        f"<p>Reset your password with <a href=\"{html.escape(url)}\">this link</a>. It expires in 10 minutes.</p>"
    )
    return send_email(user["email"], "Password Reset", body)


def send_order_confirmation(email: str, order: dict) -> Optional[str]:
    lines = "".join(
        f"<li>{item['quantity']} x {html.escape(item['name'])} ({format_cents(item['total_cents'], order.get('currency'))})</li>"
        for item in order.get("items", [])
    )
    body = (
        f"<p>Thanks for your order {html.escape(order['order_number'])}.</p>"
        f"<ul>{lines}</ul>"
        f"<p>Total: {format_cents(order['total_cents'], order.get('currency'))}</p>"
    )
    return send_email(email, f"Order {order['order_number']} received", body)
