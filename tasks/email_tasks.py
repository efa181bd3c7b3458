import logging
import smtplib

from core.celery import celery_app
from core.config import settings
from services.email import deliver_smtp, smtp_configured

logger = logging.getLogger(__name__)


@celery_app.task(bind=True, max_retries=3)
def send_email_task(self, to_email: str, subject: str, body: str):
    """
    Send email asynchronously with Celery.
    Retries up to 3 times on failure.
    """
    # Skip email sending in testing mode or with placeholder credentials
    if settings.TESTING or not smtp_configured():
        logger.debug("Email to %s skipped (testing or SMTP not configured). Subject: %s", to_email, subject)
        return {"status": "skipped", "message": "Email skipped"}

    try:
        deliver_smtp(to_email, subject, body)
        logger.info("Email sent to %s", to_email)
        return {"status": "sent", "to": to_email, "subject": subject}
    except (smtplib.SMTPException, OSError) as exc:
        logger.warning("Email to %s failed (attempt %s): %s", to_email, self.request.retries + 1, exc)
        # Retry with exponential backoff
        countdown = min(2 ** self.request.retries, 60)  # Max 60 seconds
        raise self.retry(exc=exc, countdown=countdown)
