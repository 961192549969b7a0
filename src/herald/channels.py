"""Channel transports and per-channel message formatting.

Every transport implements the same contract,
``await sender.send(destination, message) -> SendResult``. Transports raise
``ChannelError`` (or let the client library raise) from ``_deliver``; ``send``
turns any failure into ``SendResult(ok=False, error=...)``.
"""

import asyncio
import html
import logging
import re
import smtplib
import ssl
from dataclasses import dataclass
from email.message import EmailMessage

import httpx

from .config import Config, EmailConfig, SmsConfig, TelegramConfig, WhatsAppConfig
from .events import Channel

logger = logging.getLogger("herald.channels")

SMS_MAX_CHARS = 160
HTTP_TIMEOUT = 10.0

_BOLD = re.compile(r"\*\*(.*?)\*\*", re.DOTALL)


class ChannelError(Exception):
    """A transport rejected or failed to deliver a message."""


@dataclass
class ChannelMessage:
    text: str
    subject: str | None = None


@dataclass
class SendResult:
    ok: bool
    error: str | None = None


def strip_bold(text: str) -> str:
    return _BOLD.sub(r"\1", text)


def format_for_channel(channel: Channel, title: str, body: str) -> ChannelMessage:
    """Render a title/body pair in the channel's native markup."""
    channel = Channel(channel)
    if channel == Channel.EMAIL:
        return ChannelMessage(subject=title, text=strip_bold(body))
    if channel == Channel.SMS:
        text = strip_bold(body)
        if title:
            text = f"{title}\n\n{text}"
        if len(text) > SMS_MAX_CHARS:
            text = text[:SMS_MAX_CHARS - 3] + "..."
        return ChannelMessage(text=text)
    if channel == Channel.WHATSAPP:
        text = _BOLD.sub(r"*\1*", body)
        if title:
            text = f"*{title}*\n\n{text}"
        return ChannelMessage(text=text)
    if channel == Channel.TELEGRAM:
        text = _BOLD.sub(r"<b>\1</b>", html.escape(body, quote=False))
        if title:
            text = f"<b>{html.escape(title, quote=False)}</b>\n\n{text}"
        return ChannelMessage(text=text)
    return ChannelMessage(subject=title, text=body)


def normalize_phone(number: str) -> str:
    number = number.strip()
    return number if number.startswith("+") else f"+{number}"


class ChannelSender:
    channel: Channel

    async def send(self, destination: str, message: ChannelMessage) -> SendResult:
        try:
            await self._deliver(destination, message)
        except ChannelError as e:
            logger.error("%s send to %s rejected: %s", self.channel.value, destination, e)
            return SendResult(ok=False, error=str(e))
        except Exception as e:
            logger.error("%s send to %s failed: %s", self.channel.value, destination, e)
            return SendResult(ok=False, error=str(e) or type(e).__name__)
        return SendResult(ok=True)

    async def _deliver(self, destination: str, message: ChannelMessage) -> None:
        raise NotImplementedError


# =============================================================================
# Email (SMTP)
# =============================================================================


def _send_smtp(msg: EmailMessage, config: EmailConfig) -> None:
    """Send an email message via SMTP."""
    # Port 587 typically uses STARTTLS, port 465 uses implicit TLS
    if config.smtp_port == 465:
        context = ssl.create_default_context()
        with smtplib.SMTP_SSL(config.smtp_host, config.smtp_port, context=context, timeout=HTTP_TIMEOUT) as server:
            if config.smtp_user:
                server.login(config.smtp_user, config.smtp_password)
            server.send_message(msg)
    else:
        with smtplib.SMTP(config.smtp_host, config.smtp_port, timeout=HTTP_TIMEOUT) as server:
            server.starttls()
            if config.smtp_user:
                server.login(config.smtp_user, config.smtp_password)
            server.send_message(msg)


class EmailSender(ChannelSender):
    channel = Channel.EMAIL

    def __init__(self, config: EmailConfig):
        self.config = config

    async def _deliver(self, destination: str, message: ChannelMessage) -> None:
        msg = EmailMessage()
        msg["From"] = self.config.from_address
        msg["To"] = destination
        msg["Subject"] = message.subject or "Notification"
        msg.set_content(message.text)
        # smtplib blocks; keep it off the event loop
        await asyncio.to_thread(_send_smtp, msg, self.config)


# =============================================================================
# Twilio (SMS, WhatsApp)
# =============================================================================


def _twilio_error(response: httpx.Response) -> str:
    try:
        detail = response.json().get("message")
    except ValueError:
        detail = None
    return detail or f"HTTP {response.status_code}"


class TwilioSmsSender(ChannelSender):
    """Twilio Messages API, plain SMS."""

    channel = Channel.SMS

    def __init__(self, config: SmsConfig | WhatsAppConfig):
        self.config = config
        self.url = (
            f"{config.api_url.rstrip('/')}/2010-04-01/Accounts/{config.account_sid}/Messages.json"
        )

    def _addresses(self, destination: str) -> tuple[str, str]:
        return normalize_phone(destination), self.config.from_number

    async def _deliver(self, destination: str, message: ChannelMessage) -> None:
        to_addr, from_addr = self._addresses(destination)
        logger.debug("Sending %s to %s (%d chars)", self.channel.value, to_addr, len(message.text))
        async with httpx.AsyncClient(timeout=HTTP_TIMEOUT) as client:
            response = await client.post(
                self.url,
                auth=(self.config.account_sid, self.config.auth_token),
                data={"To": to_addr, "From": from_addr, "Body": message.text},
            )
        if response.status_code >= 400:
            raise ChannelError(_twilio_error(response))


class TwilioWhatsAppSender(TwilioSmsSender):
    """Twilio Messages API over WhatsApp (``whatsapp:`` addressing)."""

    channel = Channel.WHATSAPP

    def _addresses(self, destination: str) -> tuple[str, str]:
        from_number = self.config.from_number
        if not from_number.startswith("whatsapp:"):
            from_number = f"whatsapp:{normalize_phone(from_number)}"
        return f"whatsapp:{normalize_phone(destination.removeprefix('whatsapp:'))}", from_number


# =============================================================================
# Telegram
# =============================================================================


class TelegramSender(ChannelSender):
    """Telegram Bot API ``sendMessage`` with HTML parse mode."""

    channel = Channel.TELEGRAM

    def __init__(self, config: TelegramConfig):
        self.config = config
        self.url = f"{config.api_url.rstrip('/')}/bot{config.bot_token}/sendMessage"

    async def _deliver(self, destination: str, message: ChannelMessage) -> None:
        payload = {"chat_id": destination, "text": message.text, "parse_mode": "HTML"}
        async with httpx.AsyncClient(timeout=HTTP_TIMEOUT) as client:
            response = await client.post(self.url, json=payload)
        try:
            result = response.json()
        except ValueError:
            raise ChannelError(f"HTTP {response.status_code}: non-JSON response") from None
        if not result.get("ok"):
            raise ChannelError(result.get("description") or f"HTTP {response.status_code}")


def _whatsapp_account(config: Config) -> WhatsAppConfig:
    """WhatsApp settings with the [sms] Twilio account filled in where empty."""
    wa = config.whatsapp
    return WhatsAppConfig(
        enabled=wa.enabled,
        account_sid=wa.account_sid or config.sms.account_sid,
        auth_token=wa.auth_token or config.sms.auth_token,
        from_number=wa.from_number,
        api_url=wa.api_url,
    )


def build_senders(config: Config) -> dict[Channel, ChannelSender]:
    """Transports that are enabled and fully configured, keyed by channel."""
    senders: dict[Channel, ChannelSender] = {}

    if config.email.enabled:
        if config.email.smtp_host and config.email.from_address:
            senders[Channel.EMAIL] = EmailSender(config.email)
        else:
            logger.warning("Email enabled but smtp_host/from_address not set")

    if config.sms.enabled:
        sms = config.sms
        if sms.account_sid and sms.auth_token and sms.from_number:
            senders[Channel.SMS] = TwilioSmsSender(sms)
        else:
            logger.warning("SMS enabled but Twilio account_sid/auth_token/from_number not set")

    if config.whatsapp.enabled:
        wa = _whatsapp_account(config)
        if wa.account_sid and wa.auth_token and wa.from_number:
            senders[Channel.WHATSAPP] = TwilioWhatsAppSender(wa)
        else:
            logger.warning("WhatsApp enabled but Twilio account or from_number not set")

    if config.telegram.enabled:
        if config.telegram.bot_token:
            senders[Channel.TELEGRAM] = TelegramSender(config.telegram)
        else:
            logger.warning("Telegram enabled but bot_token not set")

    return senders
