from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable, Protocol

import httpx

from ..config import AppConfig
from ..errors import QueueUnavailableError, TransientDeliveryError
from .queue import INITIAL_RETRY_DELAY_MS, MAX_RETRY_ATTEMPTS, DurableEventQueue, backoff_delay_ms

logger = logging.getLogger(__name__)

DEFAULT_HEADERS = {"Content-Type": "application/json"}


class ConnectivityProbe(Protocol):
    def is_online(self) -> bool:
        ...


class _ObservableProbe:
    def __init__(self, online: bool = True) -> None:
        self._online = online
        self._listeners: list[Callable[[bool], None]] = []

    def is_online(self) -> bool:
        return self._online

    def subscribe(self, listener: Callable[[bool], None]) -> None:
        self._listeners.append(listener)

    def _set(self, online: bool) -> None:
        changed = online != self._online
        self._online = online
        if changed:
            for listener in list(self._listeners):
                listener(online)


class ManualConnectivityProbe(_ObservableProbe):
    """Connectivity pushed in by the host (OS network events, UI toggles, tests)."""

    def set_online(self, online: bool) -> None:
        self._set(online)


class HealthcheckProbe(_ObservableProbe):
    """Connectivity polled from a health endpoint; any 2xx counts as online."""

    def __init__(self, url: str, client: httpx.AsyncClient | None = None, timeout_s: float = 5.0) -> None:
        super().__init__(online=True)
        self.url = url
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout_s)

    async def refresh(self) -> bool:
        try:
            response = await self._client.get(self.url)
            online = response.is_success
        except httpx.HTTPError:
            online = False
        self._set(online)
        return online

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()


class DeliveryOutcome(str, Enum):
    SENT = "sent"
    QUEUED = "queued"
    FAILED = "failed"


@dataclass
class DrainReport:
    delivered: int = 0
    retried: int = 0
    dropped: int = 0
    skipped: bool = False


class DeliveryDispatcher:
    """
    Sends telemetry now when it can and parks it in the durable queue when it
    can't. A background loop drains the queue on a fixed interval and as soon
    as connectivity comes back.

    Delivery is at-least-once: an event is removed only after a 2xx, so the
    receiving endpoint must tolerate duplicates.
    """

    def __init__(
        self,
        queue: DurableEventQueue,
        probe: ConnectivityProbe,
        client: httpx.AsyncClient | None = None,
        *,
        initial_retry_delay_ms: int = INITIAL_RETRY_DELAY_MS,
        max_retry_attempts: int = MAX_RETRY_ATTEMPTS,
        drain_interval_s: float = 10.0,
        timeout_s: float = 10.0,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._queue = queue
        self._probe = probe
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout_s)
        self._initial_delay_ms = initial_retry_delay_ms
        self._max_attempts = max_retry_attempts
        self._interval = drain_interval_s
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._online = probe.is_online()
        self._drain_lock = asyncio.Lock()
        self._loop_task: asyncio.Task | None = None
        self._pending: set[asyncio.Task] = set()
        self._closed = False
        subscribe = getattr(probe, "subscribe", None)
        if subscribe is not None:
            subscribe(self.set_online)

    @classmethod
    def from_settings(
        cls,
        settings: AppConfig,
        queue: DurableEventQueue,
        probe: ConnectivityProbe,
        client: httpx.AsyncClient | None = None,
    ) -> "DeliveryDispatcher":
        return cls(
            queue,
            probe,
            client,
            initial_retry_delay_ms=settings.queue_initial_retry_delay_ms,
            max_retry_attempts=settings.queue_max_retry_attempts,
            drain_interval_s=settings.queue_drain_interval_s,
            timeout_s=settings.telemetry_timeout_s,
        )

    @property
    def online(self) -> bool:
        return self._online and self._probe.is_online()

    @property
    def running(self) -> bool:
        return self._loop_task is not None and not self._loop_task.done()

    # Lifecycle

    async def start(self) -> None:
        if self.running or self._closed:
            return
        self._loop_task = asyncio.create_task(self._drain_loop())

    async def stop(self) -> None:
        """Cancel background work for good; a stopped dispatcher stays stopped."""
        self._closed = True
        tasks = [t for t in (self._loop_task, *self._pending) if t is not None]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._loop_task = None
        self._pending.clear()
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> "DeliveryDispatcher":
        await self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.stop()

    async def _drain_loop(self) -> None:
        while True:
            refresh = getattr(self._probe, "refresh", None)
            try:
                if refresh is not None:
                    await refresh()
                await self.drain()
            except Exception:
                logger.exception("Outbox drain cycle failed")
            await asyncio.sleep(self._interval)

    def set_online(self, online: bool) -> None:
        self._online = online
        if self._closed:
            return
        if not online:
            logger.info("Network offline, queueing events")
            return
        logger.info("Network online, processing queue")
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return  # no loop yet; the next timer tick drains
        task = loop.create_task(self.drain())
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    # Delivery

    async def _deliver(self, url: str, method: str, body: Any, headers: dict[str, str]) -> None:
        try:
            response = await self._client.request(method, url, json=body, headers=headers)
        except httpx.HTTPError as exc:
            raise TransientDeliveryError(f"{exc.__class__.__name__}: {exc}") from exc
        if not response.is_success:
            raise TransientDeliveryError(f"HTTP {response.status_code}", status_code=response.status_code)

    async def send_or_queue(
        self,
        url: str,
        method: str = "POST",
        body: Any = None,
        headers: dict[str, str] | None = None,
    ) -> DeliveryOutcome:
        headers = headers or dict(DEFAULT_HEADERS)
        if self.online:
            try:
                await self._deliver(url, method, body, headers)
                logger.debug("Sent %s %s", method, url)
                return DeliveryOutcome.SENT
            except TransientDeliveryError as exc:
                logger.warning("Failed to send %s %s, queueing: %s", method, url, exc)
        try:
            event_id = await asyncio.to_thread(self._queue.enqueue, url, method, body, headers)
        except QueueUnavailableError:
            logger.error("Outbox unavailable; dropping %s %s", method, url, exc_info=True)
            return DeliveryOutcome.FAILED
        logger.info("Queued event %s for %s", event_id, url)
        return DeliveryOutcome.QUEUED

    async def drain(self, now: datetime | None = None) -> DrainReport:
        """Retry every due event once. Overlapping calls return immediately."""
        if self._drain_lock.locked():
            return DrainReport(skipped=True)
        async with self._drain_lock:
            return await self._drain_due(now or self._clock())

    async def _drain_due(self, now: datetime) -> DrainReport:
        report = DrainReport()
        if not self.online:
            return report
        try:
            for event in await asyncio.to_thread(self._queue.list_due, now):
                if event.retry_count >= self._max_attempts:
                    logger.warning("Max retries exceeded for event %s, removing", event.event_id)
                    await asyncio.to_thread(self._queue.dequeue, event.event_id)
                    report.dropped += 1
                    continue
                try:
                    await self._deliver(event.url, event.method, event.body, event.headers)
                except TransientDeliveryError as exc:
                    attempts = event.retry_count + 1
                    if attempts >= self._max_attempts:
                        logger.warning(
                            "Dropping event %s for %s after %d failed attempts: %s",
                            event.event_id,
                            event.url,
                            attempts,
                            exc,
                        )
                        await asyncio.to_thread(self._queue.dequeue, event.event_id)
                        report.dropped += 1
                    else:
                        delay = backoff_delay_ms(event.retry_count, self._initial_delay_ms)
                        logger.warning(
                            "Retry %d failed for event %s (%s); next attempt in %dms",
                            attempts,
                            event.event_id,
                            exc,
                            delay,
                        )
                        await asyncio.to_thread(
                            self._queue.update_retry, event.event_id, attempts, now + timedelta(milliseconds=delay)
                        )
                        report.retried += 1
                    continue
                await asyncio.to_thread(self._queue.dequeue, event.event_id)
                report.delivered += 1
                logger.info("Delivered queued event %s", event.event_id)
        except QueueUnavailableError:
            logger.error("Outbox unavailable during drain", exc_info=True)
        return report
