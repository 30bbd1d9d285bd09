"""Connectivity monitor.

Holds the process-wide online/offline state and notifies subscribers on every
transition. The state comes from two places:
- a reachability probe polled in the background (HTTP health check by default)
- ``set_online()``, for platforms that push network events

Subscribers are plain callables invoked synchronously, in registration order,
only when the state actually changes.
"""

import asyncio
from typing import Awaitable, Callable, List, Optional

import httpx

from fieldsync.core.logging import get_logger

logger = get_logger(__name__)

ConnectivityCallback = Callable[[bool], None]
ReachabilityProbe = Callable[[], Awaitable[bool]]


class HttpReachabilityProbe:
    """Treat the backend as reachable when its health URL answers below 500."""

    def __init__(self, url: str, timeout: float = 5.0,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self.url = url
        self.timeout = timeout
        self._transport = transport

    async def __call__(self) -> bool:
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.get(self.url)
            return response.status_code < 500
        except httpx.HTTPError as e:
            logger.debug("Reachability probe failed", url=self.url, error=str(e))
            return False


class ConnectivityMonitor:
    """Online/offline state with an explicit start/stop lifecycle.

    Follows the RecoverySweeper pattern: ``start()`` takes the initial reading
    and launches the polling task, ``stop()`` cancels it.
    """

    def __init__(self, probe: Optional[ReachabilityProbe] = None,
                 probe_interval: float = 15.0):
        """Initialize connectivity monitor.

        Args:
            probe: Async callable returning True when the backend is reachable.
                Without a probe, state only changes through ``set_online``.
            probe_interval: Seconds between background probes
        """
        self._probe = probe
        self.probe_interval = probe_interval
        self._online: Optional[bool] = None
        self._subscribers: List[ConnectivityCallback] = []
        self._running = False
        self._task: Optional[asyncio.Task] = None

    @property
    def state(self) -> Optional[bool]:
        """Last observed state, None before the first observation."""
        return self._online

    def currently_online(self) -> bool:
        """Current state. Unknown (never observed) counts as offline."""
        return self._online is True

    def subscribe(self, callback: ConnectivityCallback) -> Callable[[], None]:
        """Register a transition callback.

        Returns:
            Function that removes the subscription; safe to call twice
        """
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def set_online(self, online: bool) -> None:
        """Record an observation and notify subscribers if it is a transition."""
        online = bool(online)
        if self._online == online:
            return

        previous = self._online
        self._online = online
        logger.info("Network status changed",
                   online=online,
                   previous=previous)

        for callback in list(self._subscribers):
            try:
                callback(online)
            except Exception as e:
                logger.error("Connectivity subscriber failed", error=str(e))

    async def refresh(self) -> bool:
        """Probe now and update the state. Returns the new state."""
        if self._probe is None:
            return self.currently_online()
        try:
            online = await self._probe()
        except Exception as e:
            logger.warning("Reachability probe raised", error=str(e))
            online = False
        self.set_online(online)
        return online

    async def start(self) -> None:
        """Take the initial reading and start background polling."""
        if self._running:
            logger.warning("Connectivity monitor already running")
            return

        self._running = True
        await self.refresh()
        if self._probe is not None:
            self._task = asyncio.create_task(self._probe_loop())
        logger.info("Connectivity monitor started",
                   online=self._online,
                   probe_interval=self.probe_interval if self._probe else None)

    async def stop(self) -> None:
        """Stop background polling. Subscriptions are kept."""
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("Connectivity monitor stopped")

    async def _probe_loop(self) -> None:
        while self._running:
            await asyncio.sleep(self.probe_interval)
            await self.refresh()
