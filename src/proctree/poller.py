"""Polling loop that keeps a ProcessTree in sync with the system."""

import asyncio
import inspect
from collections import deque
from collections.abc import Awaitable
from dataclasses import dataclass
from datetime import datetime
from typing import Protocol

import structlog

from proctree.collector import EnumerationError, ProcessCollector
from proctree.config import Config
from proctree.tree import ChangeTarget, ProcessNode, ProcessTree

log = structlog.get_logger()


class TreeConsumer(Protocol):
    """The view a poller reports to.

    A consumer that stops being ``active`` pauses the poller; it is expected
    to call ``ProcessPoller.resume()`` when it becomes active again.
    """

    @property
    def active(self) -> bool: ...

    def refresh(self, target: ChangeTarget) -> None: ...

    def reveal(self, node: ProcessNode) -> Awaitable[None] | None: ...


@dataclass
class PollerState:
    """Runtime counters of the poller."""

    cycle: int = 0
    successes: int = 0
    failures: int = 0
    last_poll_time: datetime | None = None
    last_error: str | None = None


class ProcessPoller:
    """Snapshot, merge and notify on a fixed delay.

    Each cycle is guarded so a failing snapshot or merge never stops the
    loop; only ``stop()`` does. Merges run one at a time on the event loop.
    """

    def __init__(
        self,
        tree: ProcessTree,
        collector: ProcessCollector,
        consumer: TreeConsumer,
        interval: float = 1.0,
        load_every: int = 4,
        reveal_new: bool = True,
    ) -> None:
        self.tree = tree
        self.collector = collector
        self.consumer = consumer
        self.interval = interval
        self.load_every = load_every
        self.reveal_new = reveal_new
        self.state = PollerState()

        self._task: asyncio.Task | None = None
        self._active = asyncio.Event()
        self._active.set()
        self._wake = asyncio.Event()
        self._reveal_queue: deque[ProcessNode] = deque()
        self._pending_reveals: set[asyncio.Future] = set()

    @classmethod
    def from_config(
        cls,
        config: Config,
        tree: ProcessTree,
        collector: ProcessCollector,
        consumer: TreeConsumer,
    ) -> "ProcessPoller":
        return cls(
            tree,
            collector,
            consumer,
            interval=config.polling.interval,
            load_every=config.polling.load_every,
            reveal_new=config.tree.reveal_new,
        )

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def paused(self) -> bool:
        return not self._active.is_set()

    def start(self) -> asyncio.Task:
        """Start polling in a background task (first snapshot is immediate)."""
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self.run(), name="proctree-poller")
        return self._task

    async def stop(self) -> None:
        """Cancel the loop and any outstanding reveal requests."""
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        for future in list(self._pending_reveals):
            future.cancel()
        self._pending_reveals.clear()

    def pause(self) -> None:
        """Stop scheduling cycles until ``resume()``."""
        if self._active.is_set():
            self._active.clear()
            log.debug("poller_paused", cycle=self.state.cycle)

    def resume(self) -> None:
        """Resume polling with an immediate snapshot."""
        if not self._active.is_set():
            log.debug("poller_resumed", cycle=self.state.cycle)
        self._active.set()
        self._wake.set()

    async def run(self) -> None:
        """Poll until cancelled."""
        log.info(
            "poller_started",
            root_pid=self.tree.root.pid,
            interval=self.interval,
            load_every=self.load_every,
        )
        await self._cycle(with_load=True)

        while True:
            try:
                await self._step()
            except Exception as e:
                self.state.failures += 1
                self.state.last_error = str(e)
                log.exception("poll_loop_error", cycle=self.state.cycle, error=str(e))

    async def _step(self) -> None:
        """Wait for the next slot, then run one cycle unless the view went away."""
        if self._active.is_set():
            await self._sleep()
        else:
            await self._active.wait()
            self._wake.clear()

        if not self._active.is_set():
            return
        if not self.consumer.active:
            self.pause()
            return

        self.state.cycle += 1
        await self._cycle(with_load=self.state.cycle % self.load_every == 0)

    async def poll_once(self, with_load: bool = False) -> ChangeTarget:
        """Take one snapshot, merge it and notify the consumer.

        Raises:
            EnumerationError: The snapshot failed; the tree is left untouched.
        """
        record = await self.collector.collect(self.tree.root.pid, with_load=with_load)

        new_nodes: list[ProcessNode] = []
        target = self.tree.merge(record, new_nodes)
        self.state.successes += 1
        self.state.last_poll_time = datetime.now()

        if target:
            self.consumer.refresh(target)
        if self.reveal_new:
            self._reveal_queue.extend(new_nodes)
        self._offer_reveals()
        return target

    async def _sleep(self) -> None:
        """Wait out the poll interval, or less if ``resume()`` is called."""
        try:
            await asyncio.wait_for(self._wake.wait(), timeout=self.interval)
        except asyncio.TimeoutError:
            pass  # Normal timeout, continue to next cycle
        self._wake.clear()

    async def _cycle(self, with_load: bool) -> ChangeTarget:
        try:
            return await self.poll_once(with_load=with_load)
        except EnumerationError as e:
            self.state.failures += 1
            self.state.last_error = str(e)
            log.debug("poll_failed", cycle=self.state.cycle, error=str(e))
        except Exception as e:
            self.state.failures += 1
            self.state.last_error = str(e)
            log.exception("poll_crashed", cycle=self.state.cycle, error=str(e))
        return ChangeTarget.none()

    def _offer_reveals(self) -> None:
        """Hand queued new nodes to the consumer, one request per node."""
        if not self.consumer.active:
            return
        while self._reveal_queue:
            node = self._reveal_queue.popleft()
            if self.tree.get(node.node_id) is not node:
                continue  # Gone before it could be shown
            try:
                result = self.consumer.reveal(node)
            except Exception as e:
                log.debug("reveal_failed", pid=node.pid, error=str(e))
                continue
            if inspect.isawaitable(result):
                future = asyncio.ensure_future(result)
                self._pending_reveals.add(future)
                future.add_done_callback(self._reveal_done)

    def _reveal_done(self, future: asyncio.Future) -> None:
        self._pending_reveals.discard(future)
        if future.cancelled():
            return
        error = future.exception()
        if error is not None:
            log.debug("reveal_failed", error=str(error))
