"""
Network reachability tracking.

There is no OS path monitor to hook into here, so reachability is set by
whoever learns about it (the host app, the local API, tests) and verified
with a cheap HEAD probe against the backend when the engine believes it is
offline.
"""
import logging
from typing import Callable, List, Optional

import httpx

logger = logging.getLogger(__name__)

NetworkListener = Callable[[bool], None]


class NetworkMonitor:
    """Tracks online state and notifies listeners when it changes."""

    def __init__(
        self,
        probe_url: Optional[str] = None,
        *,
        timeout_seconds: float = 5.0,
        online: bool = True,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._probe_url = probe_url
        self._timeout = timeout_seconds
        self._online = online
        self._transport = transport
        self._listeners: List[NetworkListener] = []

    @property
    def is_online(self) -> bool:
        return self._online

    def add_listener(self, listener: NetworkListener) -> None:
        self._listeners.append(listener)

    def set_online(self, online: bool) -> None:
        """Record a reachability change; listeners fire only on transitions."""
        if online == self._online:
            return
        logger.info("Network status changed: %s", "online" if online else "offline")
        self._online = online
        for listener in self._listeners:
            listener(online)

    async def probe(self) -> bool:
        """HEAD the backend; any HTTP response at all means we are online."""
        if not self._probe_url:
            return self._online
        try:
            async with httpx.AsyncClient(
                timeout=self._timeout, transport=self._transport
            ) as client:
                await client.head(self._probe_url)
        except httpx.HTTPError as exc:
            logger.debug("Connectivity probe failed: %s", exc)
            self.set_online(False)
            return False
        self.set_online(True)
        return True
