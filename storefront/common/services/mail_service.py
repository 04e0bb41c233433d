"""Outbound email over SMTP.

Delivery is best-effort: ``Mailer.send`` never raises for transport problems,
it reports them in the returned ``EmailStatus`` so callers can record the
outcome on the order.
"""

import logging
import re
import smtplib
import ssl
from dataclasses import asdict, dataclass
from email.message import EmailMessage
from email.utils import formataddr, parseaddr
from typing import Dict, Optional

from ..config import SmtpConfig

logger = logging.getLogger(__name__)

NOT_CONFIGURED = "SMTP not configured"


@dataclass
class EmailStatus:
    sent: bool
    skipped: bool = False
    error: Optional[str] = None

    def to_dict(self) -> Dict:
        return asdict(self)

    @classmethod
    def skipped_unconfigured(cls) -> "EmailStatus":
        return cls(sent=False, skipped=True, error=NOT_CONFIGURED)


@dataclass
class OutgoingEmail:
    to: str
    subject: str
    text: str
    html: Optional[str] = None
    reply_to: Optional[str] = None
    from_address: Optional[str] = None
    # None means "use the config's BCC", "" means no BCC
    bcc: Optional[str] = None


def format_from(value: str, label: str) -> str:
    """Replace the display name of ``value`` with ``label``."""
    match = re.search(r"<([^>]+)>", value)
    address = match.group(1) if match else parseaddr(value)[1] or value
    return formataddr((label, address))


def build_message(email: OutgoingEmail, config: SmtpConfig) -> EmailMessage:
    message = EmailMessage()
    message["From"] = email.from_address or config.from_address
    message["To"] = email.to
    message["Subject"] = email.subject
    message["Reply-To"] = email.reply_to or config.reply_to or config.from_address
    bcc = config.bcc if email.bcc is None else email.bcc
    if bcc:
        message["Bcc"] = bcc
    message.set_content(email.text)
    if email.html:
        message.add_alternative(email.html, subtype="html")
    return message


class Mailer:
    def __init__(self, timeout_seconds: float = 15.0) -> None:
        self._timeout = timeout_seconds

    def _connect(self, config: SmtpConfig) -> smtplib.SMTP:
        if config.secure:
            return smtplib.SMTP_SSL(config.host, config.port, timeout=self._timeout, context=ssl.create_default_context())
        client = smtplib.SMTP(config.host, config.port, timeout=self._timeout)
        client.ehlo()
        if client.has_extn("starttls"):
            client.starttls(context=ssl.create_default_context())
            client.ehlo()
        return client

    def send(self, email: OutgoingEmail, config: Optional[SmtpConfig]) -> EmailStatus:
        if config is None:
            return EmailStatus.skipped_unconfigured()
        message = build_message(email, config)
        try:
            with self._connect(config) as client:
                client.login(config.user, config.password)
                client.send_message(message)
        except (smtplib.SMTPException, OSError) as exc:
            logger.warning("SMTP send to %s failed: %s", email.to, exc)
            return EmailStatus(sent=False, error=str(exc) or exc.__class__.__name__)
        return EmailStatus(sent=True)
