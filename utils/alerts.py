# utils/alerts.py
import logging
import smtplib
from email.message import EmailMessage
import os
from dotenv import load_dotenv

load_dotenv()

SMTP_HOST = os.getenv("SMTP_HOST")
SMTP_PORT = int(os.getenv("SMTP_PORT", "587"))
SMTP_USER = os.getenv("SMTP_USER")
SMTP_PASS = os.getenv("SMTP_PASS")
ALERT_EMAIL = os.getenv("ALERT_EMAIL")
FROM_EMAIL = os.getenv("FROM_EMAIL")

logger = logging.getLogger("alerts")


def build_message(subject, body, attachments=None):
    """Compose the alert email; unreadable attachments are skipped with a warning."""
    msg = EmailMessage()
    msg["Subject"] = subject
    msg["From"] = FROM_EMAIL or "collector@localhost"
    msg["To"] = ALERT_EMAIL or ""
    msg.set_content(body)

    for file_path in attachments or []:
        try:
            with open(file_path, "rb") as f:
                data = f.read()
        except OSError as e:
            logger.warning(f"Failed to attach {file_path}: {e}")
            continue
        msg.add_attachment(
            data,
            maintype="application",
            subtype="octet-stream",
            filename=os.path.basename(file_path),
        )
    return msg


def send_alert(subject, body, attachments=None):
    """
    Send an email alert with optional file attachments.

    Uses SMTP_SSL for port 465 and upgrades with STARTTLS on other ports when
    the server offers it.

    Args:
        subject (str): Email subject line
        body (str): Email body content
        attachments (list, optional): File paths attached as
            application/octet-stream

    Returns:
        bool: True when the message was handed to the SMTP server

    Note:
        Alerting is best effort: a missing SMTP_HOST/ALERT_EMAIL or an SMTP
        failure is logged and never raised into the collection pipeline.
    """
    if not SMTP_HOST or not ALERT_EMAIL:
        logger.info(f"Alerting not configured, skipping email: {subject}")
        return False

    msg = build_message(subject, body, attachments)

    try:
        if SMTP_PORT == 465:
            with smtplib.SMTP_SSL(SMTP_HOST, SMTP_PORT) as server:
                if SMTP_USER and SMTP_PASS:
                    server.login(SMTP_USER, SMTP_PASS)
                server.send_message(msg)
                return True

        with smtplib.SMTP(SMTP_HOST, SMTP_PORT) as server:
            server.ehlo()
            if server.has_extn("starttls"):
                server.starttls()
                server.ehlo()
            if SMTP_USER and SMTP_PASS:
                server.login(SMTP_USER, SMTP_PASS)
            server.send_message(msg)
            return True

    except (smtplib.SMTPException, OSError) as e:
        logger.error(f"SMTP error sending '{subject}': {e}")
        return False
