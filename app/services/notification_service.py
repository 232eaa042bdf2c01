"""
Notification service — transactional email delivery.

Used by the match notification outbox to tell a user how many new
matches the engine found for them.  In mock mode (the default outside
production) messages are logged instead of sent.
"""

import logging

import httpx

from app.config import settings

logger = logging.getLogger(__name__)


def matches_found_subject(match_count: int) -> str:
    if match_count == 1:
        return "1 nouveau match disponible !"
    return f"{match_count} nouveaux matchs disponibles !"


class NotificationService:
    """Delivers emails through an HTTP email API (Resend-compatible)."""

    def __init__(self):
        self.api_url = settings.EMAIL_API_URL
        self.api_key = settings.EMAIL_API_KEY
        self.sender = settings.EMAIL_FROM
        self.mock = settings.EMAIL_MOCK
        self.frontend_url = settings.FRONTEND_URL.rstrip("/")

    async def send_email(self, to: str, subject: str, html: str, text: str) -> dict:
        """
        Send one email.

        Raises ``httpx.HTTPError`` on transport or HTTP failure so callers
        can retry.
        """
        if self.mock:
            logger.info("[EMAIL mock] to=%s subject=%r", to, subject)
            return {"to": to, "channel": "email", "status": "mock"}

        payload = {
            "from": self.sender,
            "to": [to],
            "subject": subject,
            "html": html,
            "text": text,
        }
        headers = {"Authorization": f"Bearer {self.api_key}"}

        async with httpx.AsyncClient(timeout=10) as client:
            resp = await client.post(self.api_url, json=payload, headers=headers)
            resp.raise_for_status()
            data = resp.json()

        return {"to": to, "channel": "email", "status": "sent", "id": data.get("id")}

    async def send_matches_found(
        self,
        email: str,
        name: str,
        new_match_count: int,
        remaining_credits: int,
    ) -> dict:
        """Tell a user that ``new_match_count`` matches are waiting for them."""
        display_name = name or "Utilisateur"
        subject = matches_found_subject(new_match_count)
        dashboard_url = f"{self.frontend_url}/home/dashboard"

        if remaining_credits == 0:
            credits_line = "Vous n'avez plus de crédit de match."
        elif remaining_credits == 1:
            credits_line = "Il vous reste 1 crédit de match."
        else:
            credits_line = f"Il vous reste {remaining_credits} crédits de match."

        text = (
            f"Bonjour {display_name},\n\n"
            f"{subject}\n{credits_line}\n\n"
            f"Voir vos matchs : {dashboard_url}\n"
        )
        html = (
            f"<p>Bonjour {display_name},</p>"
            f"<p><strong>{subject}</strong></p>"
            f"<p>{credits_line}</p>"
            f'<p><a href="{dashboard_url}">Voir vos matchs</a></p>'
        )

        logger.info("Sending matches-found email to %s: %d match(es)", email, new_match_count)
        return await self.send_email(email, subject, html, text)


notification_service = NotificationService()
