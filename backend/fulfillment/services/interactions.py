"""Processing of inbound button presses.

A press is accepted only once (dedup by interaction id), acknowledged with a
deferred ephemeral reply, then applied under the order's turn so that two
presses on one order are decided in the order they were accepted, each against
a freshly re-read status. Only the acting user ever sees error replies.
"""
from __future__ import annotations
import asyncio
import logging
import time
from typing import Callable, Optional, Set

from fulfillment.config.notifications import NotifySettings
from fulfillment.services.audit import add_audit
from fulfillment.services.channels import Interaction, InteractionExpired
from fulfillment.services.content import ActionRequest, MalformedAction, decode_action, status_label
from fulfillment.services.dispatcher import ReconcileResult
from fulfillment.services.lifecycle import Action, Outcome, decide
from fulfillment.services.store import StatusConflict
from fulfillment.utils.expiring import ExpiringSet, OrderTurns

logger = logging.getLogger(__name__)

GENERIC_ERROR = '❌ Une erreur est survenue lors du traitement'
CONFLICT_ATTEMPTS = 3


def order_not_found(order_id: int) -> str:
    return f"❌ Commande #{order_id} non trouvée"


def success_reply(action: Action, numero: str, repaired: bool, status: str) -> str:
    if repaired:
        return f"🔧 Message réparé pour la commande #{numero} (statut: {status_label(status)})"
    return f"✅ Action \"{action.value}\" effectuée avec succès sur la commande #{numero}"


class InteractionHandler:

    def __init__(self, settings: NotifySettings, dispatcher, store, clock: Callable[[], float] = time.time):
        self.settings = settings
        self.dispatcher = dispatcher
        self.store = store
        self.clock = clock
        self.dedup = ExpiringSet(clock)
        self.protected = ExpiringSet(clock)
        self.turns = OrderTurns()
        self.in_flight = 0
        self._background: Set[asyncio.Task] = set()

    @property
    def busy(self) -> bool:
        return self.in_flight > 0

    def _rejection(self, interaction: Interaction) -> Optional[str]:
        """Why an interaction is dropped without a reply, or None."""
        if interaction.acknowledged:
            return 'already acknowledged'
        if interaction.id in self.dedup:
            return 'duplicate'
        if not self.dispatcher.resolver.is_known(interaction.channel_id):
            return f"foreign channel {interaction.channel_id}"
        age = self.clock() - interaction.created_at
        limit = self.settings.max_interaction_age
        if age > limit or age < -limit:
            return f"age {age:.1f}s outside +/-{limit:.0f}s"
        return None

    async def handle(self, interaction: Interaction) -> None:
        reason = self._rejection(interaction)
        if reason is None and not self.dedup.add(interaction.id, self.settings.dedup_max_age):
            reason = 'duplicate'
        if reason is not None:
            logger.debug('interaction %s ignored: %s', interaction.id, reason)
            return

        self.in_flight += 1
        request: Optional[ActionRequest] = None
        problem: Optional[str] = None
        turn = None
        try:
            try:
                request = decode_action(interaction.custom_id)
            except MalformedAction as exc:
                problem = str(exc)
            else:
                # reserved before the first await: fixes this press's place in line
                turn = self.turns.reserve(request.order_id)
            await interaction.defer(ephemeral=True)
            if request is None:
                self.dedup.discard(interaction.id)
                await interaction.edit_reply(problem)
                return
            async with turn:
                await self._apply(interaction, request)
        except InteractionExpired:
            self.dedup.discard(interaction.id)
            logger.warning('interaction %s expired before it could be answered', interaction.id)
            if request is not None:
                self.spawn(self._repair(request.order_id))
        except Exception:
            self.dedup.discard(interaction.id)
            logger.exception('interaction %s (%s) failed', interaction.id, interaction.custom_id)
            await self._reply_quietly(interaction, GENERIC_ERROR)
        finally:
            if turn is not None:
                turn.release()
            self.in_flight -= 1

    async def _apply(self, interaction: Interaction, request: ActionRequest) -> None:
        for attempt in range(1, CONFLICT_ATTEMPTS + 1):
            order = self.store.find_by_id(request.order_id)
            if order is None:
                self.dedup.discard(interaction.id)
                await interaction.edit_reply(order_not_found(request.order_id))
                return
            transition = decide(order.status, request.action, interaction.username)
            if transition.outcome is Outcome.REJECTED:
                self.dedup.discard(interaction.id)
                logger.info('%s on order %s rejected for %s (status %s)', request.action.value, order.numero,
                            interaction.username, order.status)
                await interaction.edit_reply(transition.reason)
                return

            if transition.outcome is Outcome.ADVANCED:
                add_audit(f"ORDER.{request.action.value.upper()}", 'Order', order.id,
                          {'from': transition.previous, 'to': transition.status, 'interaction': interaction.id},
                          actor=interaction.username, session=self.store.session)
            try:
                self.store.apply_transition(order, transition)
            except StatusConflict:
                if attempt == CONFLICT_ATTEMPTS:
                    raise
                logger.info('order %s left %s before %s by %s was saved, deciding again', order.numero,
                            transition.previous, request.action.value, interaction.username)
                continue
            break
        view = self.store.view(order)
        logger.info('order %s: %s by %s, %s -> %s', view.numero, request.action.value, interaction.username,
                    transition.previous, transition.status)

        message_id = interaction.message_id or view.notification_message_id
        if await self.dispatcher.refresh_message(view, interaction.channel_id, message_id):
            self.protected.touch(message_id, self.settings.protection_window)
        await self.dispatcher.post_activity(view, request.action.value, interaction.username,
                                            interaction.channel_id, message_id,
                                            create=request.action is Action.CLAIM)
        await interaction.edit_reply(success_reply(request.action, view.numero, transition.is_repair, view.status))

    async def _reply_quietly(self, interaction: Interaction, content: str) -> None:
        try:
            if not interaction.deferred:
                await interaction.defer(ephemeral=True)
            await interaction.edit_reply(content)
        except Exception as exc:
            logger.warning('could not answer interaction %s: %s', interaction.id, exc)

    async def _repair(self, order_id: int) -> None:
        order = self.store.find_by_id(order_id)
        if order is None:
            return
        view = self.store.view(order)
        result = await self.dispatcher.reconcile_one(view, force_update=True)
        if result.needs_creation:
            await self.dispatcher.notify_created(view)
        elif result is not ReconcileResult.DEFERRED and view.notification_message_id:
            self.protected.touch(view.notification_message_id, self.settings.protection_window)
        logger.info('order %s reconciled after expired interaction: %s', view.numero, result.value)

    def spawn(self, coro) -> asyncio.Task:
        """Run coro in the background, keeping a reference until it finishes."""
        task = asyncio.ensure_future(coro)
        self._background.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task) -> None:
        self._background.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error('background task failed: %r', task.exception())

    async def drain(self) -> None:
        """Wait for every background task started so far."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

__all__ = ['InteractionHandler', 'GENERIC_ERROR', 'order_not_found', 'success_reply']
