# =============================================================================
# reva_core/offline/connectivity_monitor.py
# Connectivity Detection and Transition Stream
# =============================================================================
"""
ConnectivityMonitor - Tracks whether the device can reach the backend.

Features:
- Platform signals pushed in through set_online()
- Periodic reachability probe (DNS resolvers + Supabase host) off the event loop
- Restartable async stream of online/offline transitions, no duplicates
- Synchronous callbacks for status changes
"""

from __future__ import annotations
import asyncio
import socket
from datetime import datetime
from typing import AsyncIterator, Callable, List, Optional, Set
from urllib.parse import urlparse
import logging

from reva_core.errors import invoke_callback
from reva_core.offline.models import utcnow

logger = logging.getLogger(__name__)


class ConnectivityMonitor:
    """
    Source of truth for the online/offline flag.

    Usage:
        monitor = ConnectivityMonitor(supabase_url=settings.supabase_url)
        await monitor.start()
        async for online in monitor.changes():
            ...
    """

    # Configuration
    CHECK_INTERVAL_ONLINE = 30      # Seconds between checks when online
    CHECK_INTERVAL_OFFLINE = 10     # Seconds between checks when offline
    CONNECTION_TIMEOUT = 5          # Timeout for connection tests

    PROBE_HOSTS = [
        ("8.8.8.8", 53),        # Google DNS
        ("1.1.1.1", 53),        # Cloudflare DNS
        ("208.67.222.222", 53), # OpenDNS
    ]

    def __init__(
        self,
        supabase_url: str = "",
        initial_online: bool = True,
        check_interval_online: Optional[float] = None,
        check_interval_offline: Optional[float] = None,
        connection_timeout: Optional[float] = None,
    ):
        self.supabase_url = supabase_url
        self.check_interval_online = check_interval_online or self.CHECK_INTERVAL_ONLINE
        self.check_interval_offline = check_interval_offline or self.CHECK_INTERVAL_OFFLINE
        self.connection_timeout = connection_timeout or self.CONNECTION_TIMEOUT

        self._online = initial_online
        self._callbacks: List[Callable[[bool], None]] = []
        self._subscribers: Set[asyncio.Queue] = set()
        self._monitor_task: Optional[asyncio.Task] = None

        self.last_check: Optional[datetime] = None
        self.last_online: Optional[datetime] = utcnow() if initial_online else None
        self.last_change: Optional[datetime] = None
        self.consecutive_failures = 0
        self.platform_available = True

    @property
    def is_online(self) -> bool:
        return self._online

    @property
    def is_monitoring(self) -> bool:
        return self._monitor_task is not None and not self._monitor_task.done()

    def set_online(self, online: bool) -> bool:
        """
        Apply a connectivity signal.

        Returns:
            True if the flag actually changed
        """
        online = bool(online)
        if online:
            self.last_online = utcnow()
        if online == self._online:
            return False

        self._online = online
        self.last_change = utcnow()
        logger.info(f"Connectivity changed: {'offline -> online' if online else 'online -> offline'}")

        for queue in list(self._subscribers):
            queue.put_nowait(online)
        self._notify_callbacks()
        return True

    async def changes(self) -> AsyncIterator[bool]:
        """
        Async stream of connectivity transitions.

        Each call starts an independent stream; nothing is buffered before
        iteration begins, and consecutive duplicates are never emitted.
        """
        queue: asyncio.Queue = asyncio.Queue()
        self._subscribers.add(queue)
        try:
            while True:
                yield await queue.get()
        finally:
            self._subscribers.discard(queue)

    # =========================================================================
    # REACHABILITY PROBE
    # =========================================================================

    async def check_connection(self) -> bool:
        """
        Probe reachability and update the flag.

        Runs the blocking socket probe in the default executor. If the probe
        cannot run at all on this platform, the device is assumed online.

        Returns:
            Current online flag after the check
        """
        loop = asyncio.get_running_loop()
        reachable = await loop.run_in_executor(None, self._probe)
        self.last_check = utcnow()

        if reachable is None:
            if self.platform_available:
                logger.warning("Connectivity probe unavailable on this platform, assuming online")
            self.platform_available = False
            reachable = True
        else:
            self.platform_available = True

        self.consecutive_failures = 0 if reachable else self.consecutive_failures + 1
        self.set_online(reachable)
        return self._online

    def _probe(self) -> Optional[bool]:
        try:
            socket.socket(socket.AF_INET, socket.SOCK_STREAM).close()
        except OSError as e:
            logger.debug(f"Cannot create probe socket: {e}")
            return None

        if not self._check_internet():
            return False
        return self._check_supabase()

    def _connect(self, host: str, port: int) -> bool:
        try:
            with socket.create_connection((host, port), timeout=self.connection_timeout):
                return True
        except OSError:
            return False

    def _check_internet(self) -> bool:
        return any(self._connect(host, port) for host, port in self.PROBE_HOSTS)

    def _check_supabase(self) -> bool:
        if not self.supabase_url:
            # No Supabase configured - internet reachability is enough
            return True

        parsed = urlparse(self.supabase_url)
        if not parsed.hostname:
            return True
        port = parsed.port or (443 if parsed.scheme == "https" else 80)
        return self._connect(parsed.hostname, port)

    # =========================================================================
    # BACKGROUND MONITORING
    # =========================================================================

    async def start(self) -> None:
        """Start periodic background probing."""
        if self.is_monitoring:
            return
        self._monitor_task = asyncio.create_task(self._monitoring_loop(), name="ConnectivityMonitor")
        logger.debug("Connectivity monitoring started")

    async def stop(self) -> None:
        """Stop periodic background probing."""
        task, self._monitor_task = self._monitor_task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.debug("Connectivity monitoring stopped")

    async def _monitoring_loop(self) -> None:
        while True:
            try:
                await self.check_connection()
            except Exception as e:
                logger.error(f"Error in connection check: {e}")

            interval = (
                self.check_interval_online
                if self._online
                else self.check_interval_offline
            )
            await asyncio.sleep(interval)

    # =========================================================================
    # CALLBACKS
    # =========================================================================

    def register_callback(self, callback: Callable[[bool], None]) -> None:
        """
        Register a callback for connectivity changes.

        Args:
            callback: Function called with the new online flag
        """
        if callback not in self._callbacks:
            self._callbacks.append(callback)

    def unregister_callback(self, callback: Callable[[bool], None]) -> None:
        """Remove a registered callback."""
        if callback in self._callbacks:
            self._callbacks.remove(callback)

    def _notify_callbacks(self) -> None:
        for callback in list(self._callbacks):
            invoke_callback(callback, self._online, label="connectivity callback")

    def get_status_display(self) -> dict:
        """Get status information for UI display."""
        return {
            "status": "online" if self._online else "offline",
            "is_online": self._online,
            "monitoring": self.is_monitoring,
            "platform_probe": self.platform_available,
            "last_check": self.last_check.isoformat() if self.last_check else None,
            "last_online": self.last_online.isoformat() if self.last_online else None,
            "last_change": self.last_change.isoformat() if self.last_change else None,
            "failures": self.consecutive_failures,
        }
