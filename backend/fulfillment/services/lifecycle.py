"""Order lifecycle state machine.

``decide`` is the single authority on whether a staff action may be applied to
an order. It never touches storage: it returns a ``Transition`` describing the
outcome, and the caller persists and renders.

Outcomes:
  ADVANCED  the action moves the order one legal step forward (or to cancelled)
  REPEATED  the action targets the status the order already has; nothing
            changes but the chat message must be re-rendered (repair path for
            a press whose earlier render failed or was retried by the platform)
  REJECTED  no legal edge; ``reason`` holds the message shown to the actor

``delivered`` is closed: every action on a delivered order is rejected,
including ``deliver``. Every other status accepts the repeat of the action
that produced it (``cancel`` on ``cancelled`` included).
"""
from __future__ import annotations
import enum
from dataclasses import dataclass
from typing import Optional

from fulfillment.models.order import Order
from fulfillment.utils.fsm import TransitionValidator

PENDING = Order.STATUS_PENDING
CONFIRMED = Order.STATUS_CONFIRMED
PREPARING = Order.STATUS_PREPARING
READY = Order.STATUS_READY
DELIVERED = Order.STATUS_DELIVERED
CANCELLED = Order.STATUS_CANCELLED

ORDER_FSM = TransitionValidator({
    PENDING: {CONFIRMED, CANCELLED},
    CONFIRMED: {PREPARING, CANCELLED},
    PREPARING: {READY, CANCELLED},
    READY: {DELIVERED, CANCELLED},
    DELIVERED: set(),
    CANCELLED: set(),
})


class LifecycleError(RuntimeError):
    """Raised for an order status outside the lifecycle (programming error)."""


class Action(str, enum.Enum):
    CLAIM = 'claim'
    PREPARE = 'prepare'
    READY = 'ready'
    DELIVER = 'deliver'
    CANCEL = 'cancel'


class Outcome(enum.Enum):
    ADVANCED = 'advanced'
    REPEATED = 'repeated'
    REJECTED = 'rejected'


ACTION_TARGETS = {
    Action.CLAIM: CONFIRMED,
    Action.PREPARE: PREPARING,
    Action.READY: READY,
    Action.DELIVER: DELIVERED,
    Action.CANCEL: CANCELLED,
}

REJECTION_REASONS = {
    Action.CLAIM: "❌ Cette commande ne peut plus être claim",
    Action.PREPARE: "❌ Cette commande ne peut pas être mise en préparation (elle doit d'abord être confirmée)",
    Action.READY: "❌ Cette commande ne peut pas être marquée comme prête (elle doit d'abord être en préparation)",
    Action.DELIVER: "❌ Cette commande ne peut pas être marquée comme livrée (elle doit d'abord être prête)",
    Action.CANCEL: "❌ Cette commande ne peut pas être annulée",
}


@dataclass(frozen=True)
class Transition:
    outcome: Outcome
    action: Action
    previous: str
    status: str
    actor: Optional[str] = None
    claims: bool = False
    reason: Optional[str] = None

    @property
    def accepted(self) -> bool:
        return self.outcome is not Outcome.REJECTED

    @property
    def is_repair(self) -> bool:
        return self.outcome is Outcome.REPEATED


def decide(current: str, action, actor: Optional[str] = None) -> Transition:
    """Return the transition for applying action to an order in status current."""
    if current not in ORDER_FSM.states:
        raise LifecycleError(f"unknown order status {current!r}")
    action = Action(action)
    target = ACTION_TARGETS[action]
    if ORDER_FSM.allows(current, target):
        return Transition(Outcome.ADVANCED, action, current, target, actor,
                          claims=(action is Action.CLAIM and current == PENDING))
    if current == target and current != DELIVERED:
        return Transition(Outcome.REPEATED, action, current, current, actor)
    return Transition(Outcome.REJECTED, action, current, current, actor, reason=REJECTION_REASONS[action])


def next_statuses(current: str):
    return ORDER_FSM.targets(current)

__all__ = [
    'Action', 'Outcome', 'Transition', 'LifecycleError', 'ORDER_FSM', 'ACTION_TARGETS', 'decide', 'next_statuses',
]
