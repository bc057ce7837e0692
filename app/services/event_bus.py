"""In-process publish/subscribe transport.

Each channel owns one ``asyncio.Queue`` drained by one worker task, so events on
the same channel are handled in publish order while different channels run
independently. Handlers run under the request id that was current at publish
time. ``publish`` never waits for handlers.
"""

import asyncio
import logging
import traceback
from collections import defaultdict
from collections.abc import Awaitable, Callable
from typing import Any, Protocol

from app.core.observability import bound_request_id, get_request_id, log_event

logger = logging.getLogger("crm.events")

CUSTOMER_CREATE = "customer:create"
CUSTOMER_UPDATE = "customer:update"
ORDER_CREATE = "order:create"
DELIVERY_RECEIPT = "message:deliveryReceipt"
CAMPAIGN_SEND = "campaign:send"

EventHandler = Callable[[dict[str, Any]], Awaitable[None]]


class EventBus(Protocol):
    def subscribe(self, channel: str, handler: EventHandler) -> None:
        ...

    def publish(self, channel: str, payload: dict[str, Any]) -> None:
        ...

    async def start(self) -> None:
        ...

    async def stop(self) -> None:
        ...

    async def join(self) -> None:
        ...


class InProcessEventBus:
    def __init__(self, maxsize: int = 0):
        self._maxsize = maxsize
        self._handlers: dict[str, list[EventHandler]] = defaultdict(list)
        self._queues: dict[str, asyncio.Queue] = {}
        self._workers: dict[str, asyncio.Task] = {}
        self._running = False
        self._pending = 0

    @property
    def channels(self) -> list[str]:
        return sorted(self._handlers)

    def subscribe(self, channel: str, handler: EventHandler) -> None:
        self._handlers[channel].append(handler)
        self._queues.setdefault(channel, asyncio.Queue(maxsize=self._maxsize))
        if self._running and channel not in self._workers:
            self._spawn_worker(channel)

    def publish(self, channel: str, payload: dict[str, Any]) -> None:
        queue = self._queues.get(channel)
        if queue is None:
            log_event(logger, "event_dropped", level=logging.WARNING, channel=channel, reason="no_subscribers")
            return
        try:
            queue.put_nowait((payload, get_request_id()))
        except asyncio.QueueFull:
            log_event(logger, "event_dropped", level=logging.WARNING, channel=channel, reason="queue_full")
            raise
        self._pending += 1
        log_event(logger, "event_published", level=logging.DEBUG, channel=channel, queue_size=queue.qsize())

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        for channel in self._queues:
            self._spawn_worker(channel)
        log_event(logger, "event_bus_started", channels=self.channels)

    async def stop(self) -> None:
        self._running = False
        workers = list(self._workers.values())
        self._workers.clear()
        for worker in workers:
            worker.cancel()
        await asyncio.gather(*workers, return_exceptions=True)
        log_event(logger, "event_bus_stopped")

    async def join(self) -> None:
        """Wait until every event published so far has been handled."""
        while True:
            for queue in list(self._queues.values()):
                await queue.join()
            if self._pending == 0:
                return

    def _spawn_worker(self, channel: str) -> None:
        self._workers[channel] = asyncio.create_task(
            self._consume(channel),
            name=f"event-bus:{channel}",
        )

    async def _consume(self, channel: str) -> None:
        queue = self._queues[channel]
        while True:
            payload, request_id = await queue.get()
            try:
                with bound_request_id(request_id):
                    for handler in list(self._handlers[channel]):
                        try:
                            await handler(payload)
                        except Exception as exc:
                            log_event(
                                logger,
                                "event_handler_failed",
                                level=logging.ERROR,
                                channel=channel,
                                handler=getattr(handler, "__qualname__", repr(handler)),
                                error=str(exc),
                                traceback=traceback.format_exc(limit=10),
                            )
            finally:
                self._pending -= 1
                queue.task_done()
