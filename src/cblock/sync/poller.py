"""Periodic reconciliation that turns snapshot differences into change events."""

import asyncio
import inspect
from collections.abc import Awaitable, Callable

import structlog

from cblock.documents.reconcile import ReconciliationEngine
from cblock.errors import CBlockError
from cblock.sync.events import Snapshot, SyncEvent, diff_snapshots, minted_balance

log = structlog.get_logger()

Listener = Callable[[SyncEvent], None | Awaitable[None]]

DEFAULT_INTERVAL = 30.0


class SyncPoller:
    """Polls while anyone is listening.

    The first ``subscribe`` starts the polling task, and the unsubscribe
    callback of the last listener cancels it. A tick that finds the previous
    poll still running is skipped.
    """

    def __init__(
        self,
        engine: ReconciliationEngine,
        interval: float = DEFAULT_INTERVAL,
        owner: str | None = None,
    ) -> None:
        self.engine = engine
        self.interval = interval
        self.owner = owner
        self._listeners: list[Listener] = []
        self._task: asyncio.Task | None = None
        self._in_flight = False
        self._snapshot: Snapshot | None = None

    @property
    def is_polling(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def snapshot(self) -> Snapshot | None:
        return self._snapshot

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)
        if len(self._listeners) == 1:
            self._start()

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)
            if not self._listeners:
                self._stop()

        return unsubscribe

    def _start(self) -> None:
        if self.is_polling:
            return
        log.info("sync_polling_started", interval=self.interval)
        self._task = asyncio.get_running_loop().create_task(self._run())

    def _stop(self) -> None:
        if self._task is None:
            return
        log.info("sync_polling_stopped")
        self._task.cancel()
        self._task = None

    async def _run(self) -> None:
        while True:
            try:
                await self.poll_once()
            except Exception:
                # Only the last unsubscribe stops the loop.
                log.exception("sync_poll_crashed")
            await asyncio.sleep(self.interval)

    async def poll_once(self) -> list[SyncEvent]:
        """Run one reconciliation pass and deliver the resulting events."""
        if self._in_flight:
            log.debug("sync_tick_skipped")
            return []
        self._in_flight = True
        try:
            try:
                documents = await self.engine.list_documents(prefer_local=False)
            except CBlockError as e:
                log.warning("sync_poll_failed", reason=e.reason)
                return []
            snapshot = Snapshot(documents=documents, balance=minted_balance(documents, self.owner))
            events = diff_snapshots(self._snapshot, snapshot)
            self._snapshot = snapshot
        finally:
            self._in_flight = False

        await self._dispatch(events)
        return events

    async def _dispatch(self, events: list[SyncEvent]) -> None:
        for event in events:
            for listener in list(self._listeners):
                try:
                    result = listener(event)
                    if inspect.isawaitable(result):
                        await result
                except Exception:
                    log.exception("sync_listener_failed", event=type(event).__name__)

    async def force_refresh(self) -> Snapshot | None:
        """Drop the cached snapshot and poll immediately."""
        self._snapshot = None
        await self.poll_once()
        return self._snapshot
