"""Outbound email through the Resend HTTP API."""

import uuid

import httpx

from app.core.config import get_settings
from app.core.exceptions import BadRequestError
from app.core.logging import get_logger

log = get_logger(__name__)

SEND_TIMEOUT_SECONDS = 10.0


async def send_email(to: str, subject: str, html: str, client: httpx.AsyncClient | None = None) -> str:
    """Send one email; return the provider message id. Raises on delivery failure."""
    settings = get_settings()
    if not settings.resend_api_key:
        raise BadRequestError("Email delivery not configured")
    body = {
        "from": settings.email_from,
        "to": [to],
        "subject": subject,
        "html": html,
        # Prevents threading
        "headers": {"X-Entity-Ref-ID": str(uuid.uuid4())},
    }
    headers = {"Authorization": f"Bearer {settings.resend_api_key}"}
    if client is None:
        async with httpx.AsyncClient(timeout=SEND_TIMEOUT_SECONDS) as c:
            resp = await c.post(settings.resend_api_url, json=body, headers=headers)
    else:
        resp = await client.post(settings.resend_api_url, json=body, headers=headers)
    resp.raise_for_status()
    message_id = resp.json().get("id", "")
    log.info("email_sent", subject=subject, message_id=message_id)
    return message_id


def verification_link(token: str) -> str:
    return f"{get_settings().public_host.rstrip('/')}/v1/auth/verify-account/{token}"


async def send_verification_email(email: str, token: str) -> str:
    settings = get_settings()
    url = verification_link(token)
    minutes = settings.verification_token_ttl_minutes
    html = (
        f"Go to <a href='{url}'>{url}</a> to verify your account. "
        f"This link will expire in {minutes} minutes."
    )
    return await send_email(email, "Verify your account", html)
