"""Operator alerts over Telegram.

Partial, unrecoverable swap states are pushed to the operator chats. When no
bot token is configured, alerts are only logged.
"""

import logging
from collections import deque
from typing import Optional

from aiogram import Bot
from aiogram.exceptions import TelegramBadRequest, TelegramForbiddenError

from swapresolver.config import Settings, get_settings

logger = logging.getLogger(__name__)

# Most recent alerts kept in memory for inspection
SENT_HISTORY = 100


class OperatorNotifier:
    """Service for sending alerts to operators."""

    def __init__(self, settings: Optional[Settings] = None, bot: Optional[Bot] = None):
        """Initialize with optional bot instance.

        If no bot provided, one is created lazily from the configured token.
        """
        self.settings = settings or get_settings()
        self._bot = bot
        self.sent: deque[str] = deque(maxlen=SENT_HISTORY)

    @property
    def enabled(self) -> bool:
        return bool(self._bot or self.settings.telegram_bot_token) and bool(
            self.settings.operator_ids
        )

    def _get_bot(self) -> Optional[Bot]:
        if self._bot is None and self.settings.telegram_bot_token:
            self._bot = Bot(token=self.settings.telegram_bot_token)
        return self._bot

    async def send_message(self, chat_id: int, message: str, parse_mode: Optional[str] = "HTML") -> bool:
        """Send a message to one chat.

        Returns:
            True if message was sent successfully
        """
        bot = self._get_bot()
        if not bot:
            return False

        try:
            await bot.send_message(chat_id=chat_id, text=message, parse_mode=parse_mode)
            return True
        except TelegramForbiddenError:
            logger.warning(f"Chat {chat_id} has blocked the bot")
            return False
        except TelegramBadRequest as e:
            logger.error(f"Bad request sending to {chat_id}: {e}")
            return False
        except Exception as e:
            logger.error(f"Failed to send alert to {chat_id}: {e}")
            return False

    async def alert(self, order_id: str, title: str, details: str = "") -> int:
        """Alert all operators about an order.

        Returns:
            Number of chats the alert reached
        """
        message = f"<b>{title}</b>\n\nOrder: <code>{order_id}</code>\n"
        if details:
            message += f"{details}\n"

        logger.error(f"OPERATOR ALERT [{order_id}] {title}: {details}")
        self.sent.append(message)

        if not self.enabled:
            return 0

        delivered = 0
        for chat_id in self.settings.operator_ids:
            if await self.send_message(chat_id, message):
                delivered += 1
        return delivered

    async def close(self) -> None:
        """Close the bot session (call on shutdown)."""
        if self._bot is not None:
            await self._bot.session.close()
            self._bot = None
