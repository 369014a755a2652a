"""Periodic self-healing of the chat projection of active orders."""
from __future__ import annotations
import asyncio
import logging
from dataclasses import dataclass, field
from typing import List, Optional

from fulfillment.services.dispatcher import ReconcileResult

logger = logging.getLogger(__name__)


@dataclass
class SweepReport:
    checked: int = 0
    skipped: int = 0
    updated: int = 0
    recreated: int = 0
    failed: int = 0
    aborted: bool = False
    errors: List[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            'checked': self.checked,
            'skipped': self.skipped,
            'updated': self.updated,
            'recreated': self.recreated,
            'failed': self.failed,
            'aborted': self.aborted,
            'errors': list(self.errors),
        }


class ReconciliationSweeper:

    def __init__(self, settings, dispatcher, store, interactions):
        self.settings = settings
        self.dispatcher = dispatcher
        self.store = store
        self.interactions = interactions
        self._task: Optional[asyncio.Task] = None

    def delay_for(self, batch_size: int) -> float:
        """Pause between two orders; grows with the batch, capped."""
        return min(self.settings.sweep_delay * (1 + batch_size / 10), self.settings.sweep_delay_max)

    async def sweep(self) -> SweepReport:
        report = SweepReport()
        if self.interactions.busy:
            logger.info('sweep skipped: %d interaction(s) in flight', self.interactions.in_flight)
            report.aborted = True
            return report
        if not await self.dispatcher.ensure_channel_ready():
            report.aborted = True
            return report
        purged = self.interactions.dedup.purge()
        if purged:
            logger.debug('purged %d dedup entries', purged)

        orders = self.store.find_active()
        delay = self.delay_for(len(orders))
        logger.info('sweep started for %d active order(s)', len(orders))
        for index, order in enumerate(orders):
            if index and delay > 0:
                await asyncio.sleep(delay)
            try:
                view = self.store.view(order)
                if view.notification_message_id and view.notification_message_id in self.interactions.protected:
                    report.skipped += 1
                    continue
                report.checked += 1
                result = await self.dispatcher.reconcile_one(view, force_update=False)
                if result is ReconcileResult.UPDATED:
                    report.updated += 1
                elif result is ReconcileResult.RECREATED:
                    report.recreated += 1
                elif result is ReconcileResult.DEFERRED:
                    report.failed += 1
                elif result.needs_creation:
                    if await self.dispatcher.notify_created(view):
                        report.recreated += 1
                    else:
                        report.failed += 1
            except Exception as exc:
                report.failed += 1
                report.errors.append(f"{order.id}: {exc}")
                logger.exception('sweep failed for order %s', order.id)
        logger.info('sweep finished: %s', report.to_dict())
        return report

    # ---------- Scheduling ---------- #

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> asyncio.Task:
        """Sweep now, then every ``sweep_interval`` seconds, until stop()."""
        if not self.running:
            self._task = asyncio.ensure_future(self._run())
        return self._task

    async def _run(self) -> None:
        while True:
            try:
                await self.sweep()
            except Exception:
                logger.exception('sweep crashed')
            await asyncio.sleep(self.settings.sweep_interval)

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None

__all__ = ['ReconciliationSweeper', 'SweepReport']
