"""
Telegram notifications for production and publishing events.
"""

import html
import logging
from typing import Optional

import httpx

from ..settings import get_settings

logger = logging.getLogger(__name__)


class TelegramNotifier:
    """Send notifications to a Telegram chat/channel."""

    def __init__(self, transport: httpx.AsyncBaseTransport | None = None):
        settings = get_settings()
        self.bot_token: str | None = settings.telegram_bot_token
        self.chat_id: str | None = settings.telegram_chat_id
        self.enabled = bool(self.bot_token and self.chat_id)
        self.transport = transport

        if not self.enabled:
            logger.info("Telegram notifier disabled: missing bot_token or chat_id")

    async def send_message(self, text: str, parse_mode: str = "HTML") -> bool:
        """Send a message; failures are logged and reported as False."""
        if not self.enabled:
            return False

        url = f"https://api.telegram.org/bot{self.bot_token}/sendMessage"
        payload = {
            "chat_id": self.chat_id,
            "text": text,
            "parse_mode": parse_mode,
            "disable_web_page_preview": True,
        }

        try:
            async with httpx.AsyncClient(transport=self.transport) as client:
                response = await client.post(url, json=payload, timeout=10)
        except httpx.HTTPError as e:
            logger.error(f"Failed to send Telegram message: {type(e).__name__}")
            return False

        if response.status_code != 200:
            logger.error(f"Telegram API error: {response.status_code} - {response.text[:200]}")
            return False
        return True

    async def notify_video_completed(self, video_id: str, title: Optional[str], duration_sec: Optional[float] = None):
        duration_str = f" ({duration_sec:.1f}s)" if duration_sec else ""
        text = (
            f"✅ <b>Video ready</b>\n\n"
            f"🎬 {html.escape(title or video_id)}{duration_str}"
        )
        await self.send_message(text)

    async def notify_video_failed(self, video_id: str, title: Optional[str], error_message: Optional[str] = None):
        error_str = f"\n\n<code>{html.escape(error_message[:200])}</code>" if error_message else ""
        text = f"❌ <b>Video failed</b>\n\n🎬 {html.escape(title or video_id)}{error_str}"
        await self.send_message(text)

    async def notify_post_published(self, platform: str, url: Optional[str]):
        text = f"📣 <b>Posted to {html.escape(platform)}</b>\n{html.escape(url or '')}"
        await self.send_message(text)

    async def notify_post_failed(self, platform: str, post_id: str, error_message: Optional[str] = None):
        error_str = f"\n\n<code>{html.escape(error_message[:200])}</code>" if error_message else ""
        text = f"⚠️ <b>Post failed on {html.escape(platform)}</b>\n📋 {post_id}{error_str}"
        await self.send_message(text)


_notifier: TelegramNotifier | None = None


def get_notifier() -> TelegramNotifier:
    global _notifier
    if _notifier is None:
        _notifier = TelegramNotifier()
    return _notifier


def set_notifier(notifier: TelegramNotifier | None) -> None:
    global _notifier
    _notifier = notifier
