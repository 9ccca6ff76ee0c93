"""
Change notification channel.

Listeners (the SSE endpoint, an external app over HTTP) are told that
patient data changed so they can refetch. Delivery is best effort.
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Set

import httpx

from .config import NotifyConfig, get_config
from .exceptions import NotifyError

logger = logging.getLogger(__name__)

def change_event() -> Dict[str, Any]:
    return {"timestamp": datetime.now(timezone.utc).isoformat()}

class DataChangeBroadcaster:
    """In-process fan-out of change events to subscribed queues"""

    def __init__(self, max_queue_size: int = 100):
        self.max_queue_size = max_queue_size
        self._subscribers: Set[asyncio.Queue] = set()

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def subscribe(self) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue(maxsize=self.max_queue_size)
        self._subscribers.add(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue):
        self._subscribers.discard(queue)

    async def notify(self, event: Dict[str, Any]):
        for queue in list(self._subscribers):
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                # Slow consumer; it will refetch on the next event anyway
                logger.warning("Dropping change event for a slow subscriber")

class HttpChangeNotifier:
    """POSTs change events to an external endpoint"""

    def __init__(self, url: str, timeout: float = 5.0, client: Optional[httpx.AsyncClient] = None):
        self.url = url
        self.timeout = timeout
        self._client = client

    async def notify(self, event: Dict[str, Any]):
        try:
            if self._client is not None:
                response = await self._client.post(self.url, json=event, timeout=self.timeout)
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    response = await client.post(self.url, json=event)
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise NotifyError(f"Error notifying {self.url} of data change: {e}", error_code="NOTIFY_FAILED",
                              details={"url": self.url}) from e
        logger.info(f"Notified {self.url} of data change")

class ChangeNotifier:
    """Sends one event to every configured channel; never raises"""

    def __init__(self, channels: Optional[List[Any]] = None):
        self.channels = list(channels or [])

    @classmethod
    def from_config(cls, broadcaster: DataChangeBroadcaster, config: Optional[NotifyConfig] = None) -> 'ChangeNotifier':
        config = config or get_config().notify
        channels: List[Any] = [broadcaster]
        if config.url:
            channels.append(HttpChangeNotifier(config.url, timeout=config.timeout))
        return cls(channels)

    async def notify(self, event: Optional[Dict[str, Any]] = None) -> bool:
        """Returns False if any channel failed"""
        event = event or change_event()
        delivered = True
        for channel in self.channels:
            try:
                await channel.notify(event)
            except NotifyError as e:
                logger.warning(e.message)
                delivered = False
            except Exception as e:
                logger.warning(f"Failed to notify app of data change: {e}")
                delivered = False
        return delivered
