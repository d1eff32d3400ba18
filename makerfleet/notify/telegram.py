"""
Telegram notification module.

Optional operator messages: pass completed, pipeline restarted, halted.
Notification failures are logged and never interrupt the pipeline.
"""

import logging
from typing import Optional

import requests

from makerfleet.core.config import Config
from makerfleet.core.utils import short_address

logger = logging.getLogger(__name__)


class TelegramNotifier:
    """Sends plain operator messages to a Telegram chat."""

    def __init__(self, config: Config):
        self.config = config
        self.bot_token = config.telegram_bot_token
        self.chat_id = config.telegram_chat_id

    @property
    def enabled(self) -> bool:
        return bool(self.bot_token and self.chat_id)

    def send_message(self, text: str) -> bool:
        """
        Send a message to the configured chat. Supports HTML formatting.

        Returns:
            True if Telegram accepted the message
        """
        if not self.enabled:
            logger.debug("Telegram not configured, skipping notification")
            return False

        url = f"https://api.telegram.org/bot{self.bot_token}/sendMessage"

        try:
            response = requests.post(
                url,
                json={
                    "chat_id": self.chat_id,
                    "text": text,
                    "parse_mode": "HTML",
                    "disable_web_page_preview": True,
                },
                timeout=10,
            )
            response.raise_for_status()

            logger.info("Telegram message sent")
            return True

        except requests.RequestException as e:
            logger.error(f"Telegram message failed: {e}")
            return False

    def notify_pass_complete(self, passes: int, loop_enabled: Optional[bool] = None) -> bool:
        lines = [
            f"<b>makerfleet pass {passes} complete</b>",
            f"Token: <code>{short_address(self.config.token_mint, 6)}</code>",
        ]
        if loop_enabled is not None:
            lines.append("Next pass: " + ("starting" if loop_enabled else "none, loop disabled"))
        return self.send_message("\n".join(lines))

    def notify_restart(self, error: BaseException, stage_name: str) -> bool:
        return self.send_message(
            f"<b>makerfleet restarting</b>\n"
            f"Resuming from: {stage_name}\n"
            f"Error: {type(error).__name__}: {error}"
        )

    def notify_halt(self, passes: int) -> bool:
        return self.send_message(f"<b>makerfleet halted</b> after {passes} pass(es)")
