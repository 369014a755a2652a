"""Telegram backend built on aiogram.

Order channels are Telegram group or supergroup chats (ids like
``-1001234567890``) where the bot is a member allowed to post and edit. Button
presses arrive as callback queries through long polling on the engine loop.

Telegram maps onto the channel contract with a few differences:

* The Bot API cannot read a message back. Messages posted or edited by this
  process are remembered; any other id is reported as stale so the next
  reconcile edits it, and a deleted message surfaces as ``MessageNotFound``
  at that edit.
* A callback query is answered once, with a toast only the presser sees, so
  ``defer`` keeps the query open and ``edit_reply`` answers it.
* Disabled buttons do not exist; they are left out of the keyboard.
* The activity thread is the reply chain under the order card. It is opened
  with a titled reply and remembered by title for ``find_thread``.
"""
from __future__ import annotations
import asyncio
import logging
import time
from contextlib import contextmanager
from html import escape
from typing import Callable, Dict, Iterator, Optional, Tuple

from aiogram import Bot, Dispatcher
from aiogram.enums import ParseMode
from aiogram.exceptions import (
    TelegramAPIError, TelegramBadRequest, TelegramForbiddenError, TelegramNetworkError, TelegramNotFound,
    TelegramRetryAfter, TelegramUnauthorizedError,
)
from aiogram.types import CallbackQuery, InlineKeyboardButton, InlineKeyboardMarkup, ReplyParameters
from aiogram.utils.keyboard import InlineKeyboardBuilder
from aiogram.utils.token import TokenValidationError

from fulfillment.config.notifications import NotifySettings
from fulfillment.services.channels import (
    ChannelError, ChannelUnavailable, Interaction, InteractionCallback, InteractionExpired, MessageNotFound,
    MessagingChannel, PostedMessage, RateLimited, TextChannel, ThreadRef,
)
from fulfillment.services.content import ButtonRows, Notification

logger = logging.getLogger(__name__)

NOT_MODIFIED = 'message is not modified'
EXPIRED_QUERY_MARKERS = ('query is too old', 'query id is invalid')
TOAST_LIMIT = 200


@contextmanager
def telegram_errors(operation: str) -> Iterator[None]:
    """Re-raise aiogram failures as ``ChannelError`` subclasses."""
    try:
        yield
    except TelegramRetryAfter as exc:
        raise RateLimited(f"{operation}: {exc.message}", retry_after=float(exc.retry_after)) from exc
    except (TelegramNetworkError, TelegramUnauthorizedError, TelegramForbiddenError) as exc:
        raise ChannelUnavailable(f"{operation}: {exc.message}") from exc
    except TelegramNotFound as exc:
        raise MessageNotFound(f"{operation}: {exc.message}") from exc
    except TelegramBadRequest as exc:
        if 'not found' in exc.message.lower():
            raise MessageNotFound(f"{operation}: {exc.message}") from exc
        raise ChannelError(f"{operation}: {exc.message}") from exc
    except TelegramAPIError as exc:
        raise ChannelError(f"{operation}: {exc.message}") from exc


def render_text(notification: Notification) -> str:
    """HTML body of a card: bold title, description, one line per field, italic footer."""
    lines = [f"<b>{escape(notification.title)}</b>"]
    if notification.description:
        lines.append(escape(notification.description))
    if notification.fields:
        lines.append('')
        lines.extend(f"<b>{escape(f.name)}</b>: {escape(f.value)}" for f in notification.fields)
    if notification.footer:
        lines.extend(('', f"<i>{escape(notification.footer)}</i>"))
    return '\n'.join(lines)


def build_markup(buttons: ButtonRows) -> Optional[InlineKeyboardMarkup]:
    """Inline keyboard for the enabled buttons, None when nothing is pressable."""
    builder = InlineKeyboardBuilder()
    rows = 0
    for row in buttons:
        live = [InlineKeyboardButton(text=b.label, callback_data=b.custom_id) for b in row if not b.disabled]
        if live:
            builder.row(*live)
            rows += 1
    return builder.as_markup() if rows else None


def _display_name(user) -> str:
    if user is None:
        return 'unknown'
    return user.username or user.full_name or str(user.id)


class TelegramInteraction(Interaction):

    def __init__(self, callback: CallbackQuery, created_at: float):
        message = callback.message
        super().__init__(
            callback.id, callback.data or '',
            str(message.chat.id) if message is not None else '',
            str(message.message_id) if message is not None else None,
            str(callback.from_user.id) if callback.from_user else '', _display_name(callback.from_user),
            created_at,
        )
        self._callback = callback

    async def defer(self, ephemeral: bool = True) -> None:
        self.deferred = True

    async def edit_reply(self, content: str) -> None:
        with telegram_errors('answer_callback_query'):
            try:
                await self._callback.answer(text=content[:TOAST_LIMIT], show_alert=False)
            except TelegramBadRequest as exc:
                if any(marker in exc.message.lower() for marker in EXPIRED_QUERY_MARKERS):
                    raise InteractionExpired(exc.message) from exc
                raise
        self.replied = True


class TelegramChannel(MessagingChannel):

    def __init__(self, settings: Optional[NotifySettings] = None, clock: Callable[[], float] = time.time,
                 bot: Optional[Bot] = None):
        self.clock = clock
        self.bot = bot
        self._ready = False
        self._handler: Optional[InteractionCallback] = None
        self._dispatcher = Dispatcher()
        self._dispatcher.callback_query.register(self._on_callback)
        self._polling: Optional[asyncio.Task] = None
        self._posted: Dict[Tuple[str, str], PostedMessage] = {}
        self._threads: Dict[str, ThreadRef] = {}

    @property
    def is_ready(self) -> bool:
        return self._ready

    def _require_ready(self) -> Bot:
        if not self._ready or self.bot is None:
            raise ChannelUnavailable('not connected')
        return self.bot

    async def connect(self, token: str) -> None:
        if not token:
            raise ChannelUnavailable('missing token')
        if self.bot is None:
            try:
                self.bot = Bot(token=token)
            except TokenValidationError as exc:
                raise ChannelUnavailable(f"invalid token: {exc}") from exc
        with telegram_errors('get_me'):
            me = await self.bot.get_me()
        if self._polling is None or self._polling.done():
            self._polling = asyncio.ensure_future(
                self._dispatcher.start_polling(self.bot, handle_signals=False, close_bot_session=False))
        self._ready = True
        logger.info('telegram bot @%s connected', me.username)

    async def _on_callback(self, callback: CallbackQuery) -> None:
        if self._handler is None:
            return
        await self._handler(TelegramInteraction(callback, self.clock()))

    async def resolve_channel(self, channel_id: str) -> Optional[TextChannel]:
        bot = self._require_ready()
        try:
            with telegram_errors('get_chat'):
                chat = await bot.get_chat(chat_id=int(channel_id))
        except MessageNotFound:
            return None
        except ValueError:
            logger.warning('telegram chat id %r is not numeric', channel_id)
            return None
        return TextChannel(str(chat.id), chat.title or chat.username or '')

    def _remember(self, channel_id: str, message_id: str, notification: Notification, buttons: ButtonRows,
                  edited: bool) -> None:
        key = (channel_id, message_id)
        posted = self._posted.get(key)
        now = self.clock()
        if posted is None:
            self._posted[key] = PostedMessage(message_id, channel_id, notification, tuple(buttons), now,
                                              now if edited else None)
            return
        posted.notification = notification
        posted.buttons = tuple(buttons)
        posted.edited_at = now

    async def send_message(self, channel: TextChannel, notification: Notification, buttons: ButtonRows = ()) -> str:
        bot = self._require_ready()
        with telegram_errors('send_message'):
            sent = await bot.send_message(chat_id=int(channel.id), text=render_text(notification),
                                          parse_mode=ParseMode.HTML, reply_markup=build_markup(buttons))
        message_id = str(sent.message_id)
        self._remember(channel.id, message_id, notification, buttons, edited=False)
        return message_id

    async def edit_message(self, channel: TextChannel, message_id: str, notification: Notification,
                           buttons: ButtonRows = ()) -> None:
        bot = self._require_ready()
        with telegram_errors('edit_message_text'):
            try:
                await bot.edit_message_text(text=render_text(notification), chat_id=int(channel.id),
                                            message_id=int(message_id), parse_mode=ParseMode.HTML,
                                            reply_markup=build_markup(buttons))
            except TelegramBadRequest as exc:
                if NOT_MODIFIED not in exc.message.lower():
                    raise
        self._remember(channel.id, message_id, notification, buttons, edited=True)

    async def fetch_message(self, channel: TextChannel, message_id: str) -> PostedMessage:
        self._require_ready()
        posted = self._posted.get((channel.id, message_id))
        if posted is not None:
            return posted
        # not posted by this process: report it stale so the caller edits it
        return PostedMessage(message_id, channel.id, Notification(title='', color=0), (), created_at=0.0)

    async def delete_message(self, channel: TextChannel, message_id: str) -> None:
        bot = self._require_ready()
        self._posted.pop((channel.id, message_id), None)
        with telegram_errors('delete_message'):
            await bot.delete_message(chat_id=int(channel.id), message_id=int(message_id))

    async def create_thread(self, channel: TextChannel, message_id: str, title: str) -> ThreadRef:
        bot = self._require_ready()
        with telegram_errors('create_thread'):
            opener = await bot.send_message(
                chat_id=int(channel.id), text=f"🧵 <b>{escape(title)}</b>", parse_mode=ParseMode.HTML,
                reply_parameters=ReplyParameters(message_id=int(message_id)),
            )
        thread = ThreadRef(str(opener.message_id), title, channel.id, message_id)
        self._threads[thread.id] = thread
        return thread

    async def post_to_thread(self, thread: ThreadRef, notification: Notification) -> str:
        bot = self._require_ready()
        anchor = int(thread.message_id or thread.id)
        with telegram_errors('post_to_thread'):
            sent = await bot.send_message(
                chat_id=int(thread.channel_id), text=render_text(notification), parse_mode=ParseMode.HTML,
                reply_parameters=ReplyParameters(message_id=anchor, allow_sending_without_reply=True),
            )
        return str(sent.message_id)

    async def find_thread(self, channel: TextChannel, fragment: str) -> Optional[ThreadRef]:
        self._require_ready()
        for thread in self._threads.values():
            if thread.channel_id == channel.id and fragment in thread.name:
                return thread
        return None

    def set_interaction_handler(self, callback: Optional[InteractionCallback]) -> None:
        self._handler = callback

    async def close(self) -> None:
        self._ready = False
        if self._polling is not None and not self._polling.done():
            try:
                await self._dispatcher.stop_polling()
            except RuntimeError:
                self._polling.cancel()
            await asyncio.gather(self._polling, return_exceptions=True)
        self._polling = None
        if self.bot is not None:
            await self.bot.session.close()

__all__ = ['TelegramChannel', 'TelegramInteraction', 'telegram_errors', 'render_text', 'build_markup']
