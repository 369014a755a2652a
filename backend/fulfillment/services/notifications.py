"""Composition root of the chat notification engine.

``NotificationService`` wires dispatcher, interaction handler and sweeper
around one messaging backend and owns the asyncio event loop they share.

Background mode (production): the loop runs forever in a daemon thread and
synchronous callers (Flask views) hand coroutines over with ``submit()``.
Inline mode (tests, scripts): ``run()`` drives the same loop to completion on
the calling thread.
"""
from __future__ import annotations
import asyncio
import dataclasses
import logging
import threading
import time
from concurrent.futures import Future
from typing import Any, Callable, Dict, Optional

from werkzeug.utils import import_string

from fulfillment.config.notifications import NotifySettings
from fulfillment.models.order import Order, generate_numero
from fulfillment.services.channels import ChannelError, MessagingChannel
from fulfillment.services.content import LineView, OrderView
from fulfillment.services.dispatcher import NotificationDispatcher, ReconcileResult
from fulfillment.services.interactions import InteractionHandler
from fulfillment.services.lifecycle import Action, decide
from fulfillment.services.memory_channel import MemoryChannel
from fulfillment.services.reconciler import ReconciliationSweeper, SweepReport

logger = logging.getLogger(__name__)

TEST_ORDER_ID = 999999


def build_channel(settings: NotifySettings) -> MessagingChannel:
    """Instantiate the backend named by ``settings.channel_factory``."""
    factory = import_string(settings.channel_factory)
    channel = factory(settings)
    if settings.token and isinstance(channel, MemoryChannel):
        logger.warning('NOTIFY_BOT_TOKEN is set but %s keeps messages in this process, nothing reaches the chat; '
                       'point NOTIFY_CHANNEL_FACTORY at a real backend', settings.channel_factory)
    return channel


class NotificationService:

    def __init__(self, settings: NotifySettings, store, channel: Optional[MessagingChannel] = None,
                 clock: Callable[[], float] = time.time):
        self.settings = settings
        self.store = store
        self.channel = channel if channel is not None else build_channel(settings)
        self.dispatcher = NotificationDispatcher(settings, self.channel, store, clock=clock)
        self.interactions = InteractionHandler(settings, self.dispatcher, store, clock=clock)
        self.sweeper = ReconciliationSweeper(settings, self.dispatcher, store, self.interactions)
        self.channel.set_interaction_handler(self.interactions.handle)
        if settings.background:
            self.dispatcher.add_ready_listener(self.sweeper.start)
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._thread: Optional[threading.Thread] = None
        self._lock = threading.Lock()

    @property
    def active(self) -> bool:
        return self.dispatcher.active

    # ---------- Event loop ---------- #

    def _ensure_loop(self) -> asyncio.AbstractEventLoop:
        with self._lock:
            if self._loop is None or self._loop.is_closed():
                self._loop = asyncio.new_event_loop()
                if self.settings.background:
                    self._thread = threading.Thread(target=self._run_forever, name='notify-loop', daemon=True)
                    self._thread.start()
            return self._loop

    def _run_forever(self) -> None:
        asyncio.set_event_loop(self._loop)
        try:
            self._loop.run_forever()
        finally:
            self.store.close()

    def run(self, coro):
        """Run coro on the engine loop and return its result (blocking)."""
        loop = self._ensure_loop()
        if self.settings.background:
            return asyncio.run_coroutine_threadsafe(coro, loop).result()
        return loop.run_until_complete(coro)

    def submit(self, coro) -> Optional[Future]:
        """Fire-and-forget in background mode, run to completion inline otherwise."""
        if not self.settings.background:
            self.run(coro)
            return None
        future = asyncio.run_coroutine_threadsafe(coro, self._ensure_loop())
        future.add_done_callback(self._log_failure)
        return future

    @staticmethod
    def _log_failure(future: Future) -> None:
        if not future.cancelled() and future.exception() is not None:
            logger.error('notification task failed: %r', future.exception())

    def boot(self) -> None:
        """Connect in the background so the first sweep starts without waiting for an order."""
        if not self.active:
            logger.info('chat notifications inactive, missing %s', ', '.join(self.settings.missing()))
            return
        if self.settings.background:
            self.submit(self.dispatcher.ensure_channel_ready())

    def shutdown(self) -> None:
        if self._loop is None or self._loop.is_closed():
            return
        try:
            self.run(self._close())
        finally:
            if self.settings.background:
                self._loop.call_soon_threadsafe(self._loop.stop)
                if self._thread is not None:
                    self._thread.join(timeout=5)
            self._loop.close()
            self._loop = None
            self._thread = None

    async def _close(self) -> None:
        await self.sweeper.stop()
        await self.interactions.drain()
        try:
            await self.channel.close()
        except ChannelError as exc:
            logger.warning('channel close failed: %s', exc)

    # ---------- Order events ---------- #

    def _view(self, order_id: int) -> Optional[OrderView]:
        order = self.store.find_by_id(order_id)
        if order is None:
            logger.warning('order %s not found', order_id)
            return None
        return self.store.view(order)

    async def order_created(self, order_id: int) -> Optional[str]:
        view = self._view(order_id)
        if view is None:
            return None
        return await self.dispatcher.notify_created(view)

    async def reconcile(self, order_id: int, force: bool = True) -> Optional[ReconcileResult]:
        """Bring one order's message up to date, creating it when needed."""
        view = self._view(order_id)
        if view is None:
            return None
        result = await self.dispatcher.reconcile_one(view, force_update=force)
        if result.needs_creation:
            result = ReconcileResult.RECREATED if await self.dispatcher.notify_created(view) else ReconcileResult.FAILED
        if result in (ReconcileResult.UPDATED, ReconcileResult.RECREATED):
            fresh = self._view(order_id)
            if fresh is not None and fresh.notification_message_id:
                self.interactions.protected.touch(fresh.notification_message_id, self.settings.protection_window)
        return result

    async def status_changed(self, order_id: int, previous_status: Optional[str]) -> bool:
        """Refresh the card and announce a status change made outside the chat."""
        result = await self.reconcile(order_id, force=True)
        view = self._view(order_id)
        if view is None:
            return False
        if view.status == Order.STATUS_CANCELLED:
            announced = await self.dispatcher.notify_cancelled(view)
        else:
            announced = await self.dispatcher.notify_status_changed(view, previous_status)
        return announced and result not in (ReconcileResult.FAILED, ReconcileResult.DEFERRED)

    async def sweep(self) -> SweepReport:
        return await self.sweeper.sweep()

    # ---------- Operational checks ---------- #

    def _synthetic_view(self, **overrides) -> OrderView:
        values = dict(
            id=TEST_ORDER_ID,
            numero=generate_numero('TEST'),
            status=Order.STATUS_PENDING,
            total='27.50',
            delivery_mode=Order.MODE_DELIVERY,
            created_at=None,
            delivery_window=[{'date': 'Lundi', 'startTime': '12h', 'endTime': '14h'}],
            customer_name='Client Test',
            business_name=None,
            lines=(LineView('Burger Test', 2, '8.75'), LineView('Menu Test', 1, '10.00')),
        )
        values.update(overrides)
        return OrderView(**values)

    async def send_test(self) -> Dict[str, Any]:
        """Post a card for a synthetic order (nothing is stored)."""
        view = self._synthetic_view()
        message_id = await self.dispatcher.notify_created(view)
        return {'sent': message_id is not None, 'message_id': message_id, 'numero': view.numero}

    async def lifecycle_test(self, actor: str = 'Test') -> Dict[str, Any]:
        """Walk a synthetic order from pending to delivered, editing one card."""
        view = self._synthetic_view()
        channel_id = self.dispatcher.resolver.channel_id_for(view.delivery_mode)
        message_id = await self.dispatcher.notify_created(view)
        steps = [{'action': 'create', 'status': view.status, 'ok': message_id is not None}]
        if message_id is None:
            return {'ok': False, 'numero': view.numero, 'message_id': None, 'steps': steps}
        view = dataclasses.replace(view, notification_message_id=message_id, notification_channel_id=channel_id)
        for action in (Action.CLAIM, Action.PREPARE, Action.READY, Action.DELIVER):
            transition = decide(view.status, action, actor)
            view = dataclasses.replace(
                view, status=transition.status, claimed_by=actor if transition.claims else view.claimed_by,
            )
            edited = await self.dispatcher.refresh_message(view, channel_id, message_id)
            logged = await self.dispatcher.post_activity(view, action.value, actor, channel_id, message_id,
                                                         create=action is Action.CLAIM)
            steps.append({'action': action.value, 'status': view.status, 'ok': edited and logged})
        return {'ok': all(s['ok'] for s in steps), 'numero': view.numero, 'message_id': message_id, 'steps': steps}

    async def check(self) -> Dict[str, Any]:
        """Connect if needed and report which configured channels resolve."""
        ready = await self.dispatcher.ensure_channel_ready()
        channels = {}
        if ready:
            for channel_id in self.settings.channel_ids:
                try:
                    channels[channel_id] = await self.channel.resolve_channel(channel_id) is not None
                except ChannelError as exc:
                    logger.warning('channel %s check failed: %s', channel_id, exc)
                    channels[channel_id] = False
        return dict(await self.snapshot(), ready=ready, channels=channels)

    def health(self) -> Dict[str, Any]:
        """Thread-safe counters; the expiring sets are only read on the engine loop."""
        return self.run(self.snapshot())

    async def snapshot(self) -> Dict[str, Any]:
        return {
            'configured': self.settings.is_configured,
            'missing': self.settings.missing(),
            'ready': self.channel.is_ready,
            'background': self.settings.background,
            'in_flight': self.interactions.in_flight,
            'dedup_entries': len(self.interactions.dedup),
            'protected_messages': len(self.interactions.protected),
            'sweeper_running': self.sweeper.running,
        }

__all__ = ['NotificationService', 'build_channel', 'TEST_ORDER_ID']
