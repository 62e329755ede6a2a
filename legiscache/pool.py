"""
Bounded pool of browser sessions.

Sessions are created lazily up to `max_sessions`. Idle bookkeeping lives
under one condition; the registry of sessions currently handed out is guarded
by its own lock, so shutdown can reach sessions that are still in use. A
session is in at most one of the two at any time.

Callers should go through `lease()`, which guarantees each borrow is matched
by exactly one release or invalidate.
"""

import asyncio
import logging
from collections import deque
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator

from .browser_session import BrowserSession, SessionFactory
from .errors import PoolClosedError, PoolExhaustedError, SessionCrashedError
from .metrics import PageSnapshot
from .proxies import ProxySelector
from .settings import ScrapeConfig

logger = logging.getLogger(__name__)


@dataclass
class PoolCounters:
    created: int = 0
    destroyed: int = 0
    borrows: int = 0
    releases: int = 0
    invalidations: int = 0


class BrowserPool:

    def __init__(
        self,
        factory: SessionFactory,
        proxies: ProxySelector | None = None,
        max_sessions: int = 8,
        borrow_timeout_s: float = 10.0,
    ):
        if max_sessions < 1:
            raise ValueError("max_sessions must be >= 1")
        self.factory = factory
        self.proxies = proxies or ProxySelector()
        self.max_sessions = max_sessions
        self.borrow_timeout_s = borrow_timeout_s
        self.counters = PoolCounters()

        self._cond = asyncio.Condition()
        self._idle: deque[BrowserSession] = deque()
        # live sessions plus slots reserved for sessions being created
        self._size = 0

        self._registry_lock = asyncio.Lock()
        self._in_use: set[BrowserSession] = set()

        self._closed = False

    @classmethod
    def from_config(cls, factory: SessionFactory, proxies: ProxySelector, config: ScrapeConfig) -> "BrowserPool":
        return cls(factory, proxies, config.pool_max_sessions, config.pool_borrow_timeout_s)

    @property
    def size(self) -> int:
        return self._size

    @property
    def idle_count(self) -> int:
        return len(self._idle)

    @property
    def in_use_count(self) -> int:
        return len(self._in_use)

    @property
    def closed(self) -> bool:
        return self._closed

    async def borrow(self, timeout: float | None = None) -> BrowserSession:
        """
        Hand out an idle session, or create one if below capacity.

        Waits up to `timeout` seconds (pool default if None) for a slot, then
        raises PoolExhaustedError.
        """
        timeout = self.borrow_timeout_s if timeout is None else timeout
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        session = None

        async with self._cond:
            while True:
                if self._closed:
                    raise PoolClosedError("Browser pool is shut down")
                if self._idle:
                    session = self._idle.popleft()
                    break
                if self._size < self.max_sessions:
                    self._size += 1
                    break
                remaining = deadline - loop.time()
                if remaining <= 0:
                    raise PoolExhaustedError(
                        f"No browser session available after {timeout:.1f}s "
                        f"({self.max_sessions} in use)"
                    )
                try:
                    await asyncio.wait_for(self._cond.wait(), remaining)
                except asyncio.TimeoutError:
                    pass

        if session is None:
            session = await self._create_in_reserved_slot(self.proxies.next())
            if self._closed:
                await self._discard(session)
                raise PoolClosedError("Browser pool was shut down while a session was being created")

        await self._register(session)
        self.counters.borrows += 1
        return session

    async def release(self, session: BrowserSession) -> None:
        """Give a session back; unhealthy sessions are destroyed instead of pooled."""
        if not await self._unregister(session):
            logger.debug("Ignoring release of %r, not borrowed from this pool", session)
            return
        self.counters.releases += 1

        if self._closed or not await self._is_healthy(session):
            if not self._closed:
                logger.warning("Returned %r failed the health check, destroying it", session)
            await self._discard(session)
            return

        async with self._cond:
            self._idle.append(session)
            self._cond.notify_all()

    async def invalidate(self, session: BrowserSession) -> None:
        if not await self._unregister(session):
            logger.debug("Ignoring invalidate of %r, not borrowed from this pool", session)
            return
        self.counters.invalidations += 1
        await self._discard(session)

    async def replace(self, session: BrowserSession, direct: bool = False) -> BrowserSession:
        """
        Invalidate a borrowed session and hand back a fresh one in the same
        slot. With `direct=True` the new session connects without a proxy.
        """
        if not await self._unregister(session):
            raise PoolClosedError(f"{session!r} is no longer borrowed from this pool")
        self.counters.invalidations += 1
        await self._destroy(session)

        if self._closed:
            await self._free_slot()
            raise PoolClosedError("Browser pool is shut down")

        proxy = None if direct else self.proxies.next()
        fresh = await self._create_in_reserved_slot(proxy)
        if self._closed:
            await self._discard(fresh)
            raise PoolClosedError("Browser pool was shut down while a session was being created")
        await self._register(fresh)
        return fresh

    async def shutdown(self) -> None:
        """Destroy idle and in-use sessions; later borrows fail."""
        async with self._cond:
            self._closed = True
            idle = list(self._idle)
            self._idle.clear()
            self._cond.notify_all()

        async with self._registry_lock:
            in_use = list(self._in_use)
            self._in_use.clear()

        logger.info("Shutting down browser pool: %d idle, %d in use", len(idle), len(in_use))
        for session in idle + in_use:
            await self._destroy(session)

        async with self._cond:
            self._size -= len(idle) + len(in_use)
            self._cond.notify_all()

    @asynccontextmanager
    async def lease(self, timeout: float | None = None) -> AsyncIterator["SessionLease"]:
        session = await self.borrow(timeout)
        lease = SessionLease(self, session)
        try:
            yield lease
        except SessionCrashedError:
            await lease.settle(invalidate=True)
            raise
        except BaseException:
            await lease.settle(invalidate=False)
            raise
        else:
            await lease.settle(invalidate=False)

    async def _create_in_reserved_slot(self, proxy) -> BrowserSession:
        try:
            session = await self.factory.create(proxy)
        except BaseException:
            await self._free_slot()
            raise
        self.counters.created += 1
        return session

    async def _is_healthy(self, session: BrowserSession) -> bool:
        try:
            return await self.factory.health_check(session)
        except Exception as e:
            logger.warning("Health check of %r raised %s", session, e)
            return False

    async def _register(self, session: BrowserSession) -> None:
        async with self._registry_lock:
            self._in_use.add(session)

    async def _unregister(self, session: BrowserSession) -> bool:
        async with self._registry_lock:
            if session not in self._in_use:
                return False
            self._in_use.discard(session)
            return True

    async def _discard(self, session: BrowserSession) -> None:
        await self._destroy(session)
        await self._free_slot()

    async def _free_slot(self) -> None:
        async with self._cond:
            self._size -= 1
            self._cond.notify_all()

    async def _destroy(self, session: BrowserSession) -> None:
        try:
            await self.factory.destroy(session)
        except Exception as e:
            logger.error("Error while closing %r: %s", session, e)
        self.counters.destroyed += 1


class SessionLease:
    """
    A borrowed session plus the right to swap it for a fresh one.

    The lease owns exactly one pool slot. Whatever session sits in it when
    the lease closes is released (or invalidated after a crash).

    Once switched to a direct connection the lease stays direct: a crash
    replacement is direct too, and the direct session is invalidated on
    close so the slot gets a proxied session again on the next borrow.
    """

    def __init__(self, pool: BrowserPool, session: BrowserSession):
        self.pool = pool
        self.session: BrowserSession | None = session
        self.direct = False

    @property
    def uses_proxy(self) -> bool:
        return self.session is not None and self.session.proxy is not None

    async def load(self, url: str) -> PageSnapshot:
        """Navigate; a crashed session is replaced and the load retried once."""
        try:
            return await self.session.load(url)
        except SessionCrashedError as e:
            logger.error("%s. Replacing the session and retrying once", e)
            await self.replace(direct=self.direct)
            return await self.session.load(url)

    async def wait_for(self, selector: str, timeout_ms: int) -> PageSnapshot:
        return await self.session.wait_for(selector, timeout_ms)

    async def replace(self, direct: bool = False) -> BrowserSession:
        old, self.session = self.session, None
        self.direct = self.direct or direct
        self.session = await self.pool.replace(old, direct=self.direct)
        return self.session

    async def settle(self, invalidate: bool) -> None:
        session, self.session = self.session, None
        if session is None:
            return
        if invalidate or self.direct:
            await self.pool.invalidate(session)
        else:
            await self.pool.release(session)
