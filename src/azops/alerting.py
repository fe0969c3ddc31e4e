"""
E-mail alerts for failed runbook steps, configured by the MONITORING settings.
"""

import logging
import smtplib
import traceback
from email.message import EmailMessage

from .config import settings

logger = logging.getLogger("azops.alerting")

SUBJECT_PREFIX = "[ALERT]"


def _build_message(exc: BaseException, step: str, recipients: list[str]) -> EmailMessage:
    trace = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
    msg = EmailMessage()
    msg["From"] = settings.MONITORING.SENDER_EMAIL
    msg["To"] = ", ".join(recipients)
    msg["Subject"] = f"{SUBJECT_PREFIX} Exception in {step}"
    msg.set_content(f"Step '{step}' failed:\n\n{trace}")
    return msg


def send_error_email(exc: BaseException, step: str) -> None:
    """
    Mail the traceback of `exc` to the configured recipients.

    Nothing is sent (only a warning logged) when no recipients or no
    SMTP server are configured. SMTP errors propagate.
    """
    recipients = [r for r in settings.MONITORING.EMAIL_RECIPIENTS if r]
    if not recipients:
        logger.warning("No EMAIL_RECIPIENTS configured")
        return
    if not settings.MONITORING.SMTP_SERVER:
        logger.warning(f"No SMTP_SERVER configured, alert for {step} not sent")
        return

    msg = _build_message(exc, step, recipients)
    logger.info(f"Sending alert '{msg['Subject']}' to {msg['To']}")
    with smtplib.SMTP(settings.MONITORING.SMTP_SERVER, settings.MONITORING.SMTP_PORT) as smtp:
        smtp.send_message(msg)
