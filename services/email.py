import logging
import os
import smtplib
from email.message import EmailMessage
from typing import Any, Dict

from jinja2 import Environment, FileSystemLoader, select_autoescape

from core.config import settings

logger = logging.getLogger(__name__)

PLACEHOLDER_PASSWORDS = ("", "your-gmail-app-password")

# Jinja2 environment for email templates
_templates_env = Environment(
    loader=FileSystemLoader(searchpath=os.path.join(os.path.dirname(os.path.dirname(__file__)), "templates")),
    autoescape=select_autoescape(["html", "xml"]),
)


def send_email(to_email: str, subject: str, body: str) -> None:
    """
    Queue the email on Celery when enabled, otherwise send it directly.
    Never raises: a receipt that cannot be delivered must not undo a payment.
    """
    if settings.EMAIL_USE_CELERY:
        # Imported lazily so the web process does not need the task module at startup
        from tasks.email_tasks import send_email_task

        try:
            send_email_task.delay(to_email, subject, body)
            logger.info("Email to %s queued on Celery", to_email)
            return
        except Exception as exc:
            logger.warning("Celery not available, sending email to %s directly: %s", to_email, exc)

    _send_email_direct(to_email, subject, body)


def render_template(template_path: str, context: Dict[str, Any]) -> str:
    """Render a text template from templates/ directory with provided context."""
    template = _templates_env.get_template(template_path)
    return template.render(**context)


def send_templated_email(to_email: str, subject: str, template_path: str, context: Dict[str, Any]) -> None:
    body = render_template(template_path, context)
    send_email(to_email, subject, body)


def deliver_smtp(to_email: str, subject: str, body: str) -> None:
    """Blocking SMTP delivery shared by the direct path and the Celery task."""
    msg = EmailMessage()
    msg["Subject"] = subject
    msg["From"] = settings.SMTP_FROM or settings.SMTP_USERNAME
    msg["To"] = to_email
    msg.set_content(body)

    with smtplib.SMTP(settings.SMTP_HOST, settings.SMTP_PORT, timeout=30) as server:
        server.starttls()
        if settings.SMTP_USERNAME and settings.SMTP_PASSWORD:
            server.login(settings.SMTP_USERNAME, settings.SMTP_PASSWORD)
        server.send_message(msg)


def smtp_configured() -> bool:
    return settings.SMTP_PASSWORD not in PLACEHOLDER_PASSWORDS


def _send_email_direct(to_email: str, subject: str, body: str) -> None:
    if not smtp_configured():
        logger.debug("SMTP not configured; email to %s skipped. Subject: %s\n%s", to_email, subject, body)
        return

    try:
        deliver_smtp(to_email, subject, body)
        logger.info("Email sent to %s", to_email)
    except (smtplib.SMTPException, OSError) as exc:
        logger.error("Failed to send email to %s: %s", to_email, exc)


def send_payment_receipt(payment, invoice, user) -> None:
    """Send the receipt for a payment that has just been completed."""
    if user is None or not user.email:
        logger.warning("Payment %s completed but the customer has no email address", payment.id)
        return
    context = {
        "customer_name": user.full_name,
        "invoice_number": invoice.invoice_number if invoice else payment.invoice_id,
        "amount": payment.amount,
        "currency": (payment.currency or "").upper(),
        "payment_method": payment.payment_method.replace("_", " ").title(),
        "transaction_id": payment.transaction_id or payment.payment_intent_id or "-",
        "payment_date": payment.payment_date,
        "app_name": settings.APP_NAME,
    }
    subject = f"Payment received for invoice {context['invoice_number']}"
    try:
        send_templated_email(user.email, subject, "emails/payment_receipt.txt", context)
    except Exception:
        logger.exception("Could not send receipt for payment %s", payment.id)
