"""
Notification channels.

Every notifier exposes ``async send(to_address, subject, body) -> bool``.
A failed send is logged and reported as ``False``; it never raises into the
escrow flow that triggered it.

    - EmailNotifier: user notifications through the Brevo transactional email API
    - TelegramNotifier: admin alerts through a Telegram bot
    - LogNotifier: writes notifications to the log (development)
"""

import asyncio
import html
import logging
from typing import Optional, Protocol, Tuple

import sib_api_v3_sdk
import urllib3
from sib_api_v3_sdk.rest import ApiException
from telegram import Bot
from telegram.constants import ParseMode
from telegram.error import TelegramError

from config import Config

logger = logging.getLogger(__name__)


class Notifier(Protocol):
    async def send(self, to_address: str, subject: str, body: str) -> bool:
        ...


class LogNotifier:
    """Logs notifications instead of delivering them."""

    async def send(self, to_address: str, subject: str, body: str) -> bool:
        logger.info(f"[notification] to={to_address} subject={subject!r}\n{body}")
        return True


class EmailNotifier:
    """
    Sends transactional email through the Brevo API.

    Attributes:
        sender_email: From address
        sender_name: From display name
        timeout: Seconds to wait for Brevo before giving up
    """

    def __init__(self, api_key: str, sender_email: str,
                 sender_name: str = 'Campus Market Security', timeout: float = 10.0):
        configuration = sib_api_v3_sdk.Configuration()
        configuration.api_key['api-key'] = api_key
        self.transactional_emails_api = sib_api_v3_sdk.TransactionalEmailsApi(
            sib_api_v3_sdk.ApiClient(configuration)
        )
        self.sender_email = sender_email
        self.sender_name = sender_name
        self.timeout = timeout

    def _build_email(self, to_address: str, subject: str, body: str) -> sib_api_v3_sdk.SendSmtpEmail:
        html_body = html.escape(body).replace('\n', '<br>')
        return sib_api_v3_sdk.SendSmtpEmail(
            sender={'name': self.sender_name, 'email': self.sender_email},
            to=[{'email': to_address}],
            subject=subject,
            html_content=f"<p>{html_body}</p>"
        )

    async def send(self, to_address: str, subject: str, body: str) -> bool:
        email = self._build_email(to_address, subject, body)
        try:
            # The SDK client is blocking
            await asyncio.wait_for(
                asyncio.to_thread(self.transactional_emails_api.send_transac_email, email),
                timeout=self.timeout
            )
        except asyncio.TimeoutError:
            logger.error(f"Email to {to_address} timed out after {self.timeout}s")
            return False
        except ApiException as e:
            if e.status == 401:
                logger.error("Email rejected: check that BREVO_API_KEY is a valid API key")
            else:
                logger.error(f"Email to {to_address} failed ({e.status}): {e.reason}")
            return False
        except urllib3.exceptions.HTTPError as e:
            logger.error(f"Email to {to_address} failed: {e}")
            return False

        logger.info(f"Email '{subject}' sent to {to_address}")
        return True


class TelegramNotifier:
    """Sends HTML-formatted messages to a Telegram chat."""

    def __init__(self, bot: Bot):
        self.bot = bot

    async def send(self, to_address: str, subject: str, body: str) -> bool:
        text = f"<b>{html.escape(subject)}</b>\n\n{html.escape(body)}"
        try:
            await self.bot.send_message(
                chat_id=to_address,
                text=text,
                parse_mode=ParseMode.HTML
            )
        except TelegramError as e:
            logger.error(f"Telegram message to {to_address} failed: {e}")
            return False

        logger.info(f"Telegram alert '{subject}' sent to {to_address}")
        return True


def build_notifiers(config: Config) -> Tuple[Notifier, Optional[Notifier]]:
    """
    Pick the user and admin notifiers the configuration allows.

    Returns:
        (user_notifier, admin_notifier); email falls back to logging and the
        admin channel is None when Telegram is not configured.
    """
    if config.has_email_config:
        user_notifier: Notifier = EmailNotifier(
            config.brevo_api_key, config.email_from, config.email_sender_name
        )
    else:
        logger.warning("Brevo not configured, user notifications will only be logged")
        user_notifier = LogNotifier()

    admin_notifier: Optional[Notifier] = None
    if config.has_telegram_config and config.admin_chat_id:
        admin_notifier = TelegramNotifier(Bot(token=config.telegram_bot_token))

    return user_notifier, admin_notifier
