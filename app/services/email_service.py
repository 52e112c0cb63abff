"""Verification emails via the Resend API."""

import httpx

from app.config import settings
from app.logging_config import get_logger

logger = get_logger("email_service")

RESEND_API_URL = "https://api.resend.com/emails"


async def send_verification_email(email: str, code: str) -> bool:
    """Send the 6-digit code. Returns True if the provider accepted the message."""
    if not settings.resend_api_key:
        logger.warning("Email not configured, verification code not sent", extra={"context": {"email": email}})
        return False

    html = (
        "<p>Your FoodShare verification code is:</p>"
        f"<p style=\"font-size:24px;letter-spacing:4px\"><b>{code}</b></p>"
        "<p>The code expires in 15 minutes.</p>"
    )

    try:
        async with httpx.AsyncClient(timeout=10) as client:
            response = await client.post(
                RESEND_API_URL,
                headers={"Authorization": f"Bearer {settings.resend_api_key}"},
                json={
                    "from": settings.email_from,
                    "to": [email],
                    "subject": "Your FoodShare verification code",
                    "html": html,
                },
            )
            if response.status_code >= 300:
                logger.error(f"Verification email rejected: status={response.status_code}, body={response.text[:200]}")
                return False
            return True
    except httpx.HTTPError as e:
        logger.error(f"Failed to send verification email: {e}")
        return False
