"""
Event worker - pulls watch events off a queue and dispatches them to handlers,
and runs the promotion poller on a timer.
"""

import asyncio
import logging
import signal
import threading
from typing import Callable, Dict, List, Optional

from stagehand.src.config import get_settings
from stagehand.src.k8s.watcher import EventType, ResourceEvent, ResourceKind

logger = logging.getLogger(__name__)
settings = get_settings()

Handler = Callable[[ResourceEvent], None]

class Worker:
    """
    Single consumer of all watch events.

    Handlers run one at a time in a worker thread, so the caches they share
    are never mutated concurrently by two events. The poller runs as its own
    task and never overlaps with itself.
    """

    def __init__(self, handlers: Dict[ResourceKind, Handler], poll: Optional[Callable[[], None]] = None,
                 poll_interval: Optional[float] = None):
        self.handlers = handlers
        self.poll = poll
        self.poll_interval = poll_interval or settings.poll_interval
        self.stop_event = threading.Event()
        self.queue: Optional[asyncio.Queue] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._polling = False

    def emit(self, event: ResourceEvent):
        """Thread-safe entry point for watcher threads."""
        if self._loop is None or self.queue is None or self.stop_event.is_set():
            return
        self._loop.call_soon_threadsafe(self.queue.put_nowait, event)

    def stop(self):
        self.stop_event.set()
        if self._loop is not None and self.queue is not None:
            self._loop.call_soon_threadsafe(self.queue.put_nowait, None)

    async def dispatch(self, event: ResourceEvent):
        handler = self.handlers.get(event.kind)
        if handler is None:
            logger.warning(f"No handler for {event.kind.value} event {event.name}")
            return
        try:
            await asyncio.to_thread(handler, event)
        except Exception as e:
            logger.exception(f"Failed to handle {event.kind.value} {event.type.value} {event.name}: {e}")

    async def poll_loop(self):
        logger.info(f"Polling promotions every {self.poll_interval}s")
        while not self.stop_event.is_set():
            await asyncio.sleep(self.poll_interval)
            if self.stop_event.is_set():
                break
            await self.poll_once()

    async def poll_once(self):
        if self._polling:
            logger.debug("Previous poll still in flight, skipping tick")
            return
        self._polling = True
        try:
            await asyncio.to_thread(self.poll)
        except Exception as e:
            logger.exception(f"Promotion poll failed: {e}")
        finally:
            self._polling = False

    async def worker_loop(self, watchers: List[threading.Thread]):
        """Main worker loop."""
        self._loop = asyncio.get_running_loop()
        self.queue = asyncio.Queue()
        for watcher in watchers:
            watcher.start()

        poller = asyncio.create_task(self.poll_loop()) if self.poll is not None else None
        logger.info("Worker started, waiting for events...")

        while True:
            event = await self.queue.get()
            if event is None:
                break
            await self.dispatch(event)

        # drain what the watchers delivered before the stop
        while not self.queue.empty():
            event = self.queue.get_nowait()
            if event is not None:
                await self.dispatch(event)

        if poller is not None:
            poller.cancel()
            try:
                await poller
            except asyncio.CancelledError:
                pass
        for watcher in watchers:
            watcher.join(timeout=1)
        logger.info("Worker stopped")

def install_signal_handlers(worker: Worker):
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, worker.stop)

def run_worker(worker: Worker, watchers: List[threading.Thread]):
    """Entry point for worker."""
    async def main():
        install_signal_handlers(worker)
        await worker.worker_loop(watchers)

    asyncio.run(main())

def deleted(event: ResourceEvent) -> bool:
    return event.type == EventType.DELETED
