"""Contract between the notification engine and a chat platform.

The engine only ever talks to a ``MessagingChannel``. Backends translate these
calls to a real platform; ``memory_channel.MemoryChannel`` keeps everything in
process. All calls are coroutines and report platform problems by raising a
``ChannelError`` subclass; the dispatcher is the boundary that turns them into
return values.
"""
from __future__ import annotations
import abc
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

from fulfillment.config.notifications import NotifySettings
from fulfillment.models.order import Order
from fulfillment.services.content import ButtonRows, Notification


class ChannelError(Exception):
    """Any failure reported by the messaging platform."""


class ChannelUnavailable(ChannelError):
    """Connection missing or lost."""


class MessageNotFound(ChannelError):
    """The referenced message (or channel) no longer exists."""


class RateLimited(ChannelError):
    def __init__(self, message: str = 'rate limited', retry_after: float = 0.0):
        super().__init__(message)
        self.retry_after = retry_after


class InteractionExpired(ChannelError):
    """The interaction token is no longer valid; nothing can be replied to it."""


@dataclass(frozen=True)
class TextChannel:
    id: str
    name: str = ''


@dataclass
class PostedMessage:
    id: str
    channel_id: str
    notification: Notification
    buttons: ButtonRows = ()
    created_at: float = 0.0
    edited_at: Optional[float] = None

    @property
    def last_touched(self) -> float:
        return self.edited_at if self.edited_at is not None else self.created_at


@dataclass(frozen=True)
class ThreadRef:
    id: str
    name: str
    channel_id: str
    message_id: Optional[str] = None


class Interaction(abc.ABC):
    """An inbound button press."""

    def __init__(self, id: str, custom_id: str, channel_id: str, message_id: Optional[str],
                 user_id: str, username: str, created_at: float):
        self.id = id
        self.custom_id = custom_id
        self.channel_id = channel_id
        self.message_id = message_id
        self.user_id = user_id
        self.username = username
        self.created_at = created_at
        self.deferred = False
        self.replied = False

    @property
    def acknowledged(self) -> bool:
        return self.deferred or self.replied

    @abc.abstractmethod
    async def defer(self, ephemeral: bool = True) -> None:
        """Acknowledge now, answer later. Raises InteractionExpired."""

    @abc.abstractmethod
    async def edit_reply(self, content: str) -> None:
        """Replace the deferred placeholder visible to the actor only."""


InteractionCallback = Callable[[Interaction], Awaitable[None]]


class MessagingChannel(abc.ABC):

    @property
    @abc.abstractmethod
    def is_ready(self) -> bool:
        ...

    @abc.abstractmethod
    async def connect(self, token: str) -> None:
        """Log in and return once the platform reports ready."""

    @abc.abstractmethod
    async def resolve_channel(self, channel_id: str) -> Optional[TextChannel]:
        ...

    @abc.abstractmethod
    async def send_message(self, channel: TextChannel, notification: Notification, buttons: ButtonRows = ()) -> str:
        ...

    @abc.abstractmethod
    async def edit_message(self, channel: TextChannel, message_id: str, notification: Notification,
                           buttons: ButtonRows = ()) -> None:
        ...

    @abc.abstractmethod
    async def fetch_message(self, channel: TextChannel, message_id: str) -> PostedMessage:
        ...

    @abc.abstractmethod
    async def delete_message(self, channel: TextChannel, message_id: str) -> None:
        ...

    @abc.abstractmethod
    async def create_thread(self, channel: TextChannel, message_id: str, title: str) -> ThreadRef:
        ...

    @abc.abstractmethod
    async def post_to_thread(self, thread: ThreadRef, notification: Notification) -> str:
        ...

    @abc.abstractmethod
    async def find_thread(self, channel: TextChannel, fragment: str) -> Optional[ThreadRef]:
        """First active or archived thread whose title contains fragment."""

    @abc.abstractmethod
    def set_interaction_handler(self, callback: Optional[InteractionCallback]) -> None:
        ...

    async def close(self) -> None:
        return None


class ChannelResolver:
    """Maps an order's delivery mode to the channel that hosts its messages.

    When only one of the two channels is configured it serves both modes.
    """

    def __init__(self, settings: NotifySettings):
        self.delivery = settings.delivery_channel_id or settings.pickup_channel_id
        self.pickup = settings.pickup_channel_id or settings.delivery_channel_id

    def channel_id_for(self, delivery_mode: Optional[str]) -> Optional[str]:
        if delivery_mode == Order.MODE_PICKUP:
            return self.pickup
        return self.delivery

    def is_known(self, channel_id: Optional[str]) -> bool:
        return channel_id is not None and channel_id in (self.delivery, self.pickup)

__all__ = [
    'ChannelError', 'ChannelUnavailable', 'MessageNotFound', 'RateLimited', 'InteractionExpired',
    'TextChannel', 'PostedMessage', 'ThreadRef', 'Interaction', 'InteractionCallback',
    'MessagingChannel', 'ChannelResolver',
]
