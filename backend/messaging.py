"""Guest messaging over email (SMTP) and Telegram (Bot API).

Without credentials configured a send is only logged ("demo mode") and
counts as sent.  Provider failures are reported back as a ``failed``
delivery so the attempt is still recorded in the message log.
"""

import logging
import smtplib
from dataclasses import dataclass
from email.mime.text import MIMEText
from typing import Optional

import httpx

import config
from errors import RemoteError, ValidationError

logger = logging.getLogger(__name__)

TELEGRAM_API_BASE = "https://api.telegram.org/bot{token}"
CHANNELS = ("email", "telegram")

PRE_ARRIVAL_SUBJECT = "Welcome to The Fitz - We're expecting you!"
PRE_ARRIVAL_BODY = """Dear {name},

We're delighted to welcome you to The Fitz Hotel.

Your room {room_number} is being prepared for your arrival.

If you need any assistance or have special requests, please don't hesitate to contact our concierge team.

Safe travels!

Warm regards,
The Fitz Concierge Team"""

DELAY_SUBJECT = "Flight Update - The Fitz Concierge"
DELAY_BODY = """Dear {name},

We noticed your flight may be delayed. Please don't worry - we'll hold your room and have everything ready for your arrival.

If your plans change, please let us know and we'll be happy to assist.

Safe travels!

Warm regards,
The Fitz Concierge Team"""

TEMPLATES = {
    "pre_arrival": (PRE_ARRIVAL_SUBJECT, PRE_ARRIVAL_BODY),
    "delay_notification": (DELAY_SUBJECT, DELAY_BODY),
}


@dataclass
class Delivery:
    status: str = "sent"
    error: Optional[str] = None


def render(template: Optional[str], guest: dict, subject: Optional[str], content: Optional[str]) -> tuple:
    """Fill in whatever the caller left blank from the named template."""
    if template in TEMPLATES:
        default_subject, default_body = TEMPLATES[template]
        subject = subject or default_subject
        content = content or default_body.format(name=guest.get("name"), room_number=guest.get("room_number"))
    return subject, content


def send_email(to: str, subject: Optional[str], body: str):
    if not config.SMTP_HOST:
        logger.info("Email would be sent (demo mode) to %s: %s", to, subject)
        return

    msg = MIMEText(body)
    msg["Subject"] = subject or ""
    msg["From"] = config.EMAIL_FROM
    msg["To"] = to

    try:
        server = smtplib.SMTP(config.SMTP_HOST, config.SMTP_PORT, timeout=config.HTTP_TIMEOUT)
        try:
            if config.SMTP_USE_TLS:
                server.starttls()
            if config.SMTP_USER:
                server.login(config.SMTP_USER, config.SMTP_PASSWORD or "")
            server.sendmail(config.EMAIL_FROM, [to], msg.as_string())
        finally:
            server.quit()
    except (smtplib.SMTPException, OSError) as e:
        raise RemoteError(f"Email send failed: {e}") from e
    logger.info("Email sent to %s: %s", to, subject)


def send_telegram(chat_id: str, subject: Optional[str], body: str, client: Optional[httpx.Client] = None):
    if not config.TELEGRAM_BOT_TOKEN:
        logger.info("Telegram message would be sent (demo mode) to chat %s", chat_id)
        return

    text = f"*{subject}*\n\n{body}" if subject else body
    url = f"{TELEGRAM_API_BASE.format(token=config.TELEGRAM_BOT_TOKEN)}/sendMessage"
    http = client or httpx.Client(timeout=config.HTTP_TIMEOUT)
    try:
        resp = http.post(url, json={"chat_id": chat_id, "text": text, "parse_mode": "Markdown"})
        resp.raise_for_status()
        data = resp.json()
        if not data.get("ok"):
            raise RemoteError(f"Telegram send failed: {data.get('description', 'unknown error')}")
    except httpx.HTTPError as e:
        raise RemoteError(f"Telegram send failed: {e}") from e
    finally:
        if client is None:
            http.close()
    logger.info("Telegram message sent to chat %s", chat_id)


def deliver(guest: dict, channel: str, subject: Optional[str], content: str,
            client: Optional[httpx.Client] = None) -> Delivery:
    """Send on *channel*; ValidationError if the guest cannot be reached there."""
    if channel not in CHANNELS:
        raise ValidationError('Invalid channel. Use "email" or "telegram"')
    if channel == "email" and not guest.get("contact_email"):
        raise ValidationError("Guest has no email address")
    if channel == "telegram" and not guest.get("telegram_chat_id"):
        raise ValidationError("Guest has no Telegram chat ID")

    try:
        if channel == "email":
            send_email(guest["contact_email"], subject, content)
        else:
            send_telegram(guest["telegram_chat_id"], subject, content, client=client)
    except RemoteError as e:
        logger.error("%s delivery to guest %s failed: %s", channel, guest.get("id"), e)
        return Delivery(status="failed", error=str(e))
    return Delivery()
