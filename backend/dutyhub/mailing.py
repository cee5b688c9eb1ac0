"""Mailing collaborators.

A mailer sends one plain-text message and reports the outcome as a
`ServiceResult[bool]`; on failure the result carries a `MAIL-` code and a
description the caller can forward unchanged.
"""

import json
import logging
import smtplib
from email.message import EmailMessage
from typing import Protocol

from .config import Settings, settings as default_settings
from .results import ServiceMessage, ServiceResult

logger = logging.getLogger(__name__)

SMTP_SEND_FAILED = "MAIL-500101"
SMTP_NOT_CONFIGURED = "MAIL-500102"


class MailingService(Protocol):
    def send(self, to: str, subject: str, body: str) -> ServiceResult[bool]:
        ...


class SmtpMailingService:
    """Deliver mail through an SMTP relay configured in `Settings`."""

    def __init__(self, config: Settings = default_settings, timeout: float = 10.0):
        self.config = config
        self.timeout = timeout

    def send(self, to: str, subject: str, body: str) -> ServiceResult[bool]:
        result: ServiceResult[bool] = ServiceResult()
        if not self.config.SMTP_HOST:
            return result.fail(ServiceMessage.error(SMTP_NOT_CONFIGURED, "SMTP host is not configured"))
        message = EmailMessage()
        message["From"] = self.config.SMTP_SENDER
        message["To"] = to
        message["Subject"] = subject
        message.set_content(body)
        try:
            with smtplib.SMTP(self.config.SMTP_HOST, self.config.SMTP_PORT, timeout=self.timeout) as smtp:
                if self.config.SMTP_USE_TLS:
                    smtp.starttls()
                if self.config.SMTP_USER:
                    smtp.login(self.config.SMTP_USER, self.config.SMTP_PASSWORD)
                smtp.send_message(message)
        except (smtplib.SMTPException, OSError) as exc:
            logger.warning("mail_failed %s", json.dumps({"subject": subject, "error": str(exc)}, ensure_ascii=True))
            return result.fail(ServiceMessage.error(SMTP_SEND_FAILED, f"Mail could not be sent: {exc}"))
        return result.set_data(True)


class LoggingMailingService:
    """Development mailer: logs the envelope instead of sending it."""

    def send(self, to: str, subject: str, body: str) -> ServiceResult[bool]:
        logger.info("mail_logged %s", json.dumps({"to": to, "subject": subject}, ensure_ascii=True))
        return ServiceResult.success(True)
