"""In-process messaging backend.

Keeps channels, messages, threads and posts in dictionaries. It is the default
backend for local development, the operational scripts and the test-suite;
``press()`` plays the role of a staff member clicking a button and
``inject_failure()`` makes the next call of an operation raise, which is how
platform outages are rehearsed.
"""
from __future__ import annotations
import asyncio
import itertools
import logging
import time
from collections import defaultdict, deque
from typing import Callable, Deque, Dict, Iterable, List, Optional

from fulfillment.config.notifications import NotifySettings
from fulfillment.services.channels import (
    ChannelUnavailable, Interaction, InteractionCallback, InteractionExpired, MessageNotFound,
    MessagingChannel, PostedMessage, TextChannel, ThreadRef,
)
from fulfillment.services.content import ButtonRows, Notification

logger = logging.getLogger(__name__)


class MemoryInteraction(Interaction):

    def __init__(self, *args, expired: bool = False, **kwargs):
        super().__init__(*args, **kwargs)
        self.expired = expired
        self.replies: List[str] = []

    async def defer(self, ephemeral: bool = True) -> None:
        if self.expired:
            raise InteractionExpired('Unknown interaction')
        self.deferred = True

    async def edit_reply(self, content: str) -> None:
        if self.expired:
            raise InteractionExpired('Unknown interaction')
        self.replied = True
        self.replies.append(content)

    @property
    def last_reply(self) -> Optional[str]:
        return self.replies[-1] if self.replies else None


class MemoryChannel(MessagingChannel):

    def __init__(self, settings: Optional[NotifySettings] = None, clock: Callable[[], float] = time.time,
                 channel_ids: Iterable[str] = (), connect_delay: float = 0.0):
        self.clock = clock
        self.connect_delay = connect_delay
        self.connect_calls = 0
        self._ready = False
        self._ids = itertools.count(1000)
        self._handler: Optional[InteractionCallback] = None
        self._failures: Dict[str, Deque[Exception]] = defaultdict(deque)
        ids = list(channel_ids)
        if settings is not None:
            ids.extend(settings.channel_ids)
        self.channels: Dict[str, TextChannel] = {cid: TextChannel(cid, f"channel-{cid}") for cid in ids}
        self.messages: Dict[str, PostedMessage] = {}
        self.threads: Dict[str, ThreadRef] = {}
        self.thread_posts: Dict[str, List[Notification]] = defaultdict(list)

    # ---------- test/ops helpers ---------- #

    def inject_failure(self, operation: str, exc: Exception, times: int = 1) -> None:
        for _ in range(times):
            self._failures[operation].append(exc)

    def _maybe_fail(self, operation: str) -> None:
        queue = self._failures.get(operation)
        if queue:
            raise queue.popleft()

    def _require_ready(self) -> None:
        if not self._ready:
            raise ChannelUnavailable('not connected')

    def _next_id(self) -> str:
        return str(next(self._ids))

    def messages_in(self, channel_id: str) -> List[PostedMessage]:
        return [m for m in self.messages.values() if m.channel_id == channel_id]

    def thread_for(self, fragment: str) -> Optional[ThreadRef]:
        for thread in self.threads.values():
            if fragment in thread.name:
                return thread
        return None

    def drop_message(self, message_id: str) -> None:
        """Delete a message behind the engine's back."""
        self.messages.pop(message_id, None)

    async def press(self, custom_id: str, username: str, message_id: Optional[str] = None,
                    channel_id: Optional[str] = None, created_at: Optional[float] = None,
                    interaction_id: Optional[str] = None, expired: bool = False) -> MemoryInteraction:
        """Simulate a button press on message_id and wait for the handler."""
        if channel_id is None:
            posted = self.messages.get(message_id) if message_id else None
            channel_id = posted.channel_id if posted else next(iter(self.channels), '')
        interaction = MemoryInteraction(
            interaction_id or self._next_id(), custom_id, channel_id, message_id,
            f"user-{username}", username, self.clock() if created_at is None else created_at,
            expired=expired,
        )
        if self._handler is not None:
            await self._handler(interaction)
        return interaction

    # ---------- MessagingChannel ---------- #

    @property
    def is_ready(self) -> bool:
        return self._ready

    async def connect(self, token: str) -> None:
        self.connect_calls += 1
        self._maybe_fail('connect')
        if not token:
            raise ChannelUnavailable('missing token')
        if self.connect_delay:
            await asyncio.sleep(self.connect_delay)
        self._ready = True
        logger.info('memory channel connected (%d channels)', len(self.channels))

    async def resolve_channel(self, channel_id: str) -> Optional[TextChannel]:
        self._require_ready()
        self._maybe_fail('resolve_channel')
        return self.channels.get(channel_id)

    async def send_message(self, channel: TextChannel, notification: Notification, buttons: ButtonRows = ()) -> str:
        self._require_ready()
        self._maybe_fail('send_message')
        message_id = self._next_id()
        self.messages[message_id] = PostedMessage(message_id, channel.id, notification, tuple(buttons), self.clock())
        return message_id

    async def edit_message(self, channel: TextChannel, message_id: str, notification: Notification,
                           buttons: ButtonRows = ()) -> None:
        self._require_ready()
        self._maybe_fail('edit_message')
        posted = self.messages.get(message_id)
        if posted is None or posted.channel_id != channel.id:
            raise MessageNotFound(f"Unknown message {message_id}")
        posted.notification = notification
        posted.buttons = tuple(buttons)
        posted.edited_at = self.clock()

    async def fetch_message(self, channel: TextChannel, message_id: str) -> PostedMessage:
        self._require_ready()
        self._maybe_fail('fetch_message')
        posted = self.messages.get(message_id)
        if posted is None or posted.channel_id != channel.id:
            raise MessageNotFound(f"Unknown message {message_id}")
        return posted

    async def delete_message(self, channel: TextChannel, message_id: str) -> None:
        self._require_ready()
        self._maybe_fail('delete_message')
        posted = self.messages.get(message_id)
        if posted is None or posted.channel_id != channel.id:
            raise MessageNotFound(f"Unknown message {message_id}")
        del self.messages[message_id]

    async def create_thread(self, channel: TextChannel, message_id: str, title: str) -> ThreadRef:
        self._require_ready()
        self._maybe_fail('create_thread')
        if message_id not in self.messages:
            raise MessageNotFound(f"Unknown message {message_id}")
        thread = ThreadRef(self._next_id(), title, channel.id, message_id)
        self.threads[thread.id] = thread
        return thread

    async def post_to_thread(self, thread: ThreadRef, notification: Notification) -> str:
        self._require_ready()
        self._maybe_fail('post_to_thread')
        if thread.id not in self.threads:
            raise MessageNotFound(f"Unknown thread {thread.id}")
        self.thread_posts[thread.id].append(notification)
        return self._next_id()

    async def find_thread(self, channel: TextChannel, fragment: str) -> Optional[ThreadRef]:
        self._require_ready()
        self._maybe_fail('find_thread')
        for thread in self.threads.values():
            if thread.channel_id == channel.id and fragment in thread.name:
                return thread
        return None

    def set_interaction_handler(self, callback: Optional[InteractionCallback]) -> None:
        self._handler = callback

    async def close(self) -> None:
        self._ready = False
