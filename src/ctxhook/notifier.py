"""Fire-and-forget notifications to an external HTTP endpoint.

The endpoint receives `{"message": ..., "title": ...}` as JSON. Nothing here
ever raises into the pipeline: an unreachable or failing endpoint is logged
and forgotten.
"""

import asyncio

import aiohttp

from .config import NotifierConfig
from .logging_config import get_logger

logger = get_logger("notifier")


class Notifier:
    def __init__(self, config: NotifierConfig | None = None):
        self.config = config or NotifierConfig()
        self._pending: set[asyncio.Task] = set()

    @property
    def enabled(self) -> bool:
        return bool(self.config.url)

    def notify(self, message: str, title: str | None = None) -> asyncio.Task | None:
        """Schedule a notification without waiting for it."""
        if not self.enabled:
            return None
        task = asyncio.get_running_loop().create_task(self.send(message, title))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def send(self, message: str, title: str | None = None) -> bool:
        """Post one notification. Returns whether the endpoint accepted it."""
        if not self.enabled:
            return False
        body = {"message": message}
        if title:
            body["title"] = title
        try:
            timeout = aiohttp.ClientTimeout(total=self.config.timeout)
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.post(self.config.url, json=body) as resp:
                    if resp.status >= 400:
                        logger.warning(f"Notification rejected by {self.config.url}: HTTP {resp.status}")
                        return False
                    return True
        except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as e:
            logger.warning(f"Notification to {self.config.url} failed: {e}")
            return False

    async def drain(self) -> None:
        """Wait for scheduled notifications (used before a hook process exits)."""
        if self._pending:
            await asyncio.gather(*self._pending, return_exceptions=True)
