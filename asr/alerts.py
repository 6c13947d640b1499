from __future__ import annotations

import smtplib
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText

from .settings import settings


def email_configured() -> bool:
    return settings.enable_email and all(
        [
            settings.smtp_host,
            settings.smtp_port,
            settings.smtp_user,
            settings.smtp_password,
            settings.email_from,
            settings.email_to,
        ]
    )


def send_email(subject: str, body: str) -> bool:
    """Send an alert email if SMTP settings are configured.

    Environment variables:
      - ASR_ENABLE_EMAIL=true
      - ASR_SMTP_HOST / ASR_SMTP_PORT
      - ASR_SMTP_USER / ASR_SMTP_PASSWORD
      - ASR_EMAIL_FROM / ASR_EMAIL_TO

    Returns False instead of raising; alerting must never stop the control loop.
    """
    if not email_configured():
        return False

    try:
        msg = MIMEMultipart()
        msg["From"] = settings.email_from
        msg["To"] = settings.email_to
        msg["Subject"] = subject
        msg.attach(MIMEText(body, "plain"))

        server = smtplib.SMTP(settings.smtp_host, settings.smtp_port)
        server.starttls()
        server.login(settings.smtp_user, settings.smtp_password)
        server.sendmail(settings.email_from, [settings.email_to], msg.as_string())
        server.quit()
        return True
    except (smtplib.SMTPException, OSError):
        return False
