"""
Transactional email through the Resend HTTP API.

Email is best effort: a missing API key skips sending, and delivery
failures are logged, never raised.
"""

import html
import logging

import httpx

logger = logging.getLogger(__name__)

RESEND_API_URL = "https://api.resend.com/emails"


class EmailService:
    """Sends extraction notifications."""

    def __init__(
        self,
        api_key: str | None,
        from_email: str,
        timeout: float = 15.0,
    ):
        self.api_key = api_key
        self.from_email = from_email
        self.timeout = timeout

    async def send_extraction_complete_email(
        self,
        to: str,
        cookbook_name: str,
        recipes_extracted: int,
        total_pages: int,
        app_url: str,
    ) -> bool:
        """
        Tell a user their cookbook finished extracting.

        Args:
            to: Recipient address.
            cookbook_name: Name shown in the subject and body.
            recipes_extracted: Recipes written by the job.
            total_pages: Pages in the cookbook.
            app_url: Base URL of the web app, linked from the email.

        Returns:
            True if the API accepted the message.
        """
        if not self.api_key:
            logger.info("Skipping extraction email to %s (no Resend key)", to)
            return False

        label = "recipe extracted" if recipes_extracted == 1 else "recipes extracted"
        name = html.escape(cookbook_name)
        link = f"{app_url.rstrip('/')}/recipes"
        body = (
            f"<h1>Extraction complete</h1>"
            f"<p><strong>{recipes_extracted}</strong> {label} from <em>{name}</em> "
            f"({total_pages} pages).</p>"
            f'<p><a href="{html.escape(link)}">Review your recipes</a></p>'
        )

        payload = {
            "from": self.from_email,
            "to": [to],
            "subject": f'{recipes_extracted} {label} from "{cookbook_name}"',
            "html": body,
        }

        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(
                    RESEND_API_URL,
                    json=payload,
                    headers={"Authorization": f"Bearer {self.api_key}"},
                )
                response.raise_for_status()
        except httpx.HTTPError as e:
            logger.error("Failed to send extraction email to %s: %s", to, e)
            return False

        logger.info("Extraction email sent to %s", to)
        return True


_email_service: EmailService | None = None


def get_email_service() -> EmailService:
    """Get or create the email service singleton."""
    global _email_service
    if _email_service is None:
        from ..config import get_settings

        settings = get_settings()
        _email_service = EmailService(
            api_key=settings.resend_api_key,
            from_email=settings.email_from,
        )
    return _email_service
