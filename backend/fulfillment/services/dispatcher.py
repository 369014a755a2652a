"""Notification dispatcher: the only writer of an order's chat representation.

Every public coroutine is best-effort. Platform failures (``ChannelError``) are
caught here, logged and turned into ``None`` / ``False`` / a
``ReconcileResult``; callers never see them. Editing an existing message is
always preferred over recreating it, since recreation orphans the order's
activity thread.
"""
from __future__ import annotations
import asyncio
import enum
import logging
import time
from typing import Callable, List, Optional

from sqlalchemy.exc import SQLAlchemyError

from fulfillment.config.notifications import NotifySettings
from fulfillment.services.channels import (
    ChannelError, ChannelResolver, MessageNotFound, MessagingChannel, TextChannel, ThreadRef,
)
from fulfillment.services.content import (
    EVENT_CANCELLED, EVENT_STATUS_CHANGED, OrderView, build_activity, build_buttons, build_notification,
    thread_title,
)

logger = logging.getLogger(__name__)

SYSTEM_ACTOR = 'System'


class ReconcileResult(enum.Enum):
    CURRENT = 'current'
    UPDATED = 'updated'
    RECREATED = 'recreated'
    NEEDS_RECREATION = 'needs_recreation'
    FAILED = 'failed'
    DEFERRED = 'deferred'  # channel hiccup, message left alone for the next pass

    @property
    def needs_creation(self) -> bool:
        return self in (ReconcileResult.NEEDS_RECREATION, ReconcileResult.FAILED)


class NotificationDispatcher:

    def __init__(self, settings: NotifySettings, channel: MessagingChannel, store,
                 resolver: Optional[ChannelResolver] = None, clock: Callable[[], float] = time.time):
        self.settings = settings
        self.channel = channel
        self.store = store
        self.resolver = resolver or ChannelResolver(settings)
        self.clock = clock
        self._connect_task: Optional[asyncio.Future] = None
        self._ready_listeners: List[Callable[[], None]] = []
        self._ready_fired = False
        self._inactive_logged = False

    @property
    def active(self) -> bool:
        return self.settings.is_configured

    # ---------- Connection ---------- #

    def add_ready_listener(self, callback: Callable[[], None]) -> None:
        """Run callback once, after the first successful connect."""
        if self._ready_fired:
            callback()
        else:
            self._ready_listeners.append(callback)

    def _fire_ready(self) -> None:
        if self._ready_fired:
            return
        self._ready_fired = True
        listeners, self._ready_listeners = self._ready_listeners, []
        for callback in listeners:
            try:
                callback()
            except Exception:
                logger.exception('ready listener %r failed', callback)

    @staticmethod
    def _connect_finished(task: asyncio.Future) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error('messaging connection failed: %s', exc)

    async def ensure_channel_ready(self) -> bool:
        if not self.active:
            if not self._inactive_logged:
                self._inactive_logged = True
                logger.warning('chat notifications disabled, missing %s', ', '.join(self.settings.missing()))
            return False
        if self.channel.is_ready:
            self._fire_ready()
            return True
        if self._connect_task is None or self._connect_task.done():
            self._connect_task = asyncio.ensure_future(self.channel.connect(self.settings.token))
            self._connect_task.add_done_callback(self._connect_finished)
        try:
            await asyncio.wait_for(asyncio.shield(self._connect_task), self.settings.ready_timeout)
        except asyncio.TimeoutError:
            logger.warning('messaging channel not ready after %.1fs', self.settings.ready_timeout)
            return False
        except Exception:
            # already logged by _connect_finished
            return False
        if not self.channel.is_ready:
            return False
        self._fire_ready()
        return True

    # ---------- Helpers ---------- #

    async def _resolve(self, channel_id: Optional[str]) -> Optional[TextChannel]:
        if not channel_id:
            logger.warning('no notification channel configured for this order')
            return None
        try:
            channel = await self.channel.resolve_channel(channel_id)
        except ChannelError as exc:
            logger.error('could not resolve channel %s: %s', channel_id, exc)
            return None
        if channel is None:
            logger.warning('channel %s not found', channel_id)
        return channel

    def _home_channel_id(self, view: OrderView) -> Optional[str]:
        return view.notification_channel_id or self.resolver.channel_id_for(view.delivery_mode)

    def _persist_reference(self, order_id: int, message_id: str, channel_id: str) -> bool:
        try:
            return self.store.attach_message(order_id, message_id, channel_id)
        except SQLAlchemyError:
            logger.exception('could not store message %s for order %s', message_id, order_id)
            return False

    async def find_thread(self, view: OrderView, channel: Optional[TextChannel] = None) -> Optional[ThreadRef]:
        if not view.numero:
            return None
        if channel is None:
            channel = await self._resolve(self._home_channel_id(view))
            if channel is None:
                return None
        try:
            return await self.channel.find_thread(channel, f"#{view.numero}")
        except ChannelError as exc:
            logger.warning('thread lookup failed for order %s: %s', view.numero, exc)
            return None

    # ---------- Canonical message ---------- #

    async def notify_created(self, view: OrderView) -> Optional[str]:
        """Post the canonical message for an order; returns its id or None."""
        if not await self.ensure_channel_ready():
            return None
        channel = await self._resolve(self.resolver.channel_id_for(view.delivery_mode))
        if channel is None:
            return None
        try:
            message_id = await self.channel.send_message(channel, build_notification(view), build_buttons(view.id, view.status))
        except ChannelError as exc:
            logger.error('could not post order %s: %s', view.numero, exc)
            return None
        self._persist_reference(view.id, message_id, channel.id)
        logger.info('order %s posted as message %s in %s', view.numero, message_id, channel.id)
        return message_id

    async def refresh_message(self, view: OrderView, channel_id: Optional[str] = None,
                              message_id: Optional[str] = None) -> bool:
        """Edit the canonical message in place with the current render."""
        message_id = message_id or view.notification_message_id
        if not message_id or not await self.ensure_channel_ready():
            return False
        channel = await self._resolve(channel_id or self._home_channel_id(view))
        if channel is None:
            return False
        try:
            await self.channel.edit_message(channel, message_id, build_notification(view), build_buttons(view.id, view.status))
        except ChannelError as exc:
            logger.warning('could not edit message %s of order %s: %s', message_id, view.numero, exc)
            return False
        return True

    # ---------- Activity ---------- #

    async def post_activity(self, view: OrderView, action: str, actor: str, channel_id: Optional[str] = None,
                            message_id: Optional[str] = None, create: bool = False) -> bool:
        """Append an activity entry to the order's thread, optionally creating it."""
        if not await self.ensure_channel_ready():
            return False
        channel = await self._resolve(channel_id or self._home_channel_id(view))
        if channel is None:
            return False
        thread = await self.find_thread(view, channel)
        message_id = message_id or view.notification_message_id
        if thread is None and create and message_id:
            try:
                thread = await self.channel.create_thread(channel, message_id, thread_title(view.numero))
            except ChannelError as exc:
                logger.warning('could not open thread for order %s: %s', view.numero, exc)
                return False
        if thread is None:
            return False
        entry = build_activity(action, actor, view.numero, view.status)
        try:
            await self.channel.post_to_thread(thread, entry.to_notification())
        except ChannelError as exc:
            logger.warning('could not post activity for order %s: %s', view.numero, exc)
            return False
        logger.debug('activity %s', entry.summary)
        return True

    async def _thread_or_channel(self, view: OrderView, action: str, fallback) -> bool:
        if not await self.ensure_channel_ready():
            return False
        channel = await self._resolve(self._home_channel_id(view))
        if channel is None:
            return False
        thread = await self.find_thread(view, channel)
        try:
            if thread is not None:
                entry = build_activity(action, SYSTEM_ACTOR, view.numero, view.status)
                await self.channel.post_to_thread(thread, entry.to_notification())
            else:
                await self.channel.send_message(channel, fallback)
        except ChannelError as exc:
            logger.warning('could not announce %s for order %s: %s', action, view.numero, exc)
            return False
        return True

    async def notify_status_changed(self, view: OrderView, previous_status: Optional[str]) -> bool:
        fallback = build_notification(view, EVENT_STATUS_CHANGED, previous_status)
        return await self._thread_or_channel(view, 'update', fallback)

    async def notify_cancelled(self, view: OrderView) -> bool:
        fallback = build_notification(view, EVENT_CANCELLED)
        return await self._thread_or_channel(view, 'cancel', fallback)

    # ---------- Reconciliation ---------- #

    async def reconcile_one(self, view: OrderView, force_update: bool = False) -> ReconcileResult:
        if not await self.ensure_channel_ready():
            return ReconcileResult.FAILED
        message_id = view.notification_message_id
        if not message_id:
            return ReconcileResult.NEEDS_RECREATION
        expected_id = self.resolver.channel_id_for(view.delivery_mode)
        stored = await self._resolve(self._home_channel_id(view))
        if stored is None:
            return ReconcileResult.NEEDS_RECREATION
        if stored.id != expected_id:
            try:
                await self.channel.delete_message(stored, message_id)
            except ChannelError as exc:
                logger.info('stale message %s in %s not deleted: %s', message_id, stored.id, exc)
            logger.info('order %s was posted in %s, expected %s', view.numero, stored.id, expected_id)
            return ReconcileResult.NEEDS_RECREATION
        try:
            posted = await self.channel.fetch_message(stored, message_id)
        except MessageNotFound as exc:
            logger.info('message %s of order %s is gone (%s), recreating', message_id, view.numero, exc)
            return await self._recreate(view, stored, message_id)
        except ChannelError as exc:
            logger.warning('message %s of order %s unreachable, keeping it: %s', message_id, view.numero, exc)
            return ReconcileResult.DEFERRED
        notification = build_notification(view)
        buttons = build_buttons(view.id, view.status)
        unchanged = posted.notification == notification and tuple(posted.buttons) == buttons
        fresh = self.clock() - posted.last_touched < self.settings.skip_window
        if unchanged and fresh and not force_update:
            return ReconcileResult.CURRENT
        try:
            await self.channel.edit_message(stored, message_id, notification, buttons)
        except MessageNotFound:
            logger.info('message %s of order %s vanished before the edit, recreating', message_id, view.numero)
            return await self._recreate(view, stored, message_id)
        except ChannelError as exc:
            logger.warning('could not update message %s of order %s: %s', message_id, view.numero, exc)
            return ReconcileResult.DEFERRED
        return ReconcileResult.UPDATED

    async def _recreate(self, view: OrderView, channel: TextChannel, old_message_id: str) -> ReconcileResult:
        try:
            await self.channel.delete_message(channel, old_message_id)
        except MessageNotFound:
            pass
        except ChannelError as exc:
            logger.info('could not delete message %s: %s', old_message_id, exc)
        try:
            message_id = await self.channel.send_message(channel, build_notification(view), build_buttons(view.id, view.status))
        except ChannelError as exc:
            logger.error('recreation of order %s failed: %s', view.numero, exc)
            return ReconcileResult.FAILED
        self._persist_reference(view.id, message_id, channel.id)
        logger.info('order %s recreated as message %s', view.numero, message_id)
        return ReconcileResult.RECREATED

__all__ = ['NotificationDispatcher', 'ReconcileResult', 'SYSTEM_ACTOR']
