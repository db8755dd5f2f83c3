import asyncio
import logging
import time
from typing import Callable, Dict, Optional

import requests

logger = logging.getLogger("Notifier")

ERROR_COOLDOWN_SECONDS = 300


class TelegramNotifier:
    """Telegram alerts, sent from an executor so the event loop never blocks on HTTP."""

    def __init__(self, bot_token: Optional[str], chat_id: Optional[str],
                 cooldown: float = ERROR_COOLDOWN_SECONDS, clock: Callable[[], float] = time.time):
        self.bot_token = bot_token
        self.chat_id = chat_id
        self.cooldown = cooldown
        self.clock = clock
        self._last_errors: Dict[str, float] = {}

    @property
    def enabled(self) -> bool:
        return bool(self.bot_token and self.chat_id)

    def should_send(self, msg: str, is_error: bool = False) -> bool:
        if not self.enabled:
            return False
        if not is_error:
            return True
        # Anti-spam: skip duplicate error alerts within the cooldown
        error_key = msg[:100]
        now = self.clock()
        last = self._last_errors.get(error_key)
        if last is not None and (now - last) < self.cooldown:
            return False
        self._last_errors[error_key] = now
        return True

    def _post(self, msg: str):
        url = f"https://api.telegram.org/bot{self.bot_token}/sendMessage"
        payload = {"chat_id": self.chat_id, "text": msg, "parse_mode": "HTML"}
        return requests.post(url, json=payload, timeout=10)

    async def send(self, msg: str, is_error: bool = False) -> bool:
        if not self.should_send(msg, is_error):
            return False
        try:
            loop = asyncio.get_running_loop()
            await loop.run_in_executor(None, self._post, msg)
        except requests.RequestException as e:
            logger.warning(f"⚠️ Telegram alert failed: {e}")
            return False
        return True
