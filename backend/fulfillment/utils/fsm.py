from __future__ import annotations
"""Finite state machine helper for enforcing allowed status transitions.

The order lifecycle graph is declared once in ``services.lifecycle`` and shared
by the chat interaction path and the administrative HTTP path:

    ORDER_FSM = TransitionValidator({
        'pending': {'confirmed', 'cancelled'},
        ...
    })
    ORDER_FSM.assert_can_transition(order.status, 'preparing')

``assert_can_transition`` aborts with 400 (HTTP callers); ``allows`` is the
side-effect free variant for non-request code.
"""
from typing import Dict, Set, FrozenSet
from flask import abort


class TransitionValidator:
    def __init__(self, graph: Dict[str, Set[str]], field_name: str = 'status'):
        self.graph: Dict[str, FrozenSet[str]] = {k: frozenset(v) for k, v in graph.items()}
        self.field_name = field_name

    @property
    def states(self) -> FrozenSet[str]:
        return frozenset(self.graph)

    def targets(self, current: str) -> FrozenSet[str]:
        return self.graph.get(current, frozenset())

    def is_terminal(self, state: str) -> bool:
        return not self.targets(state)

    def allows(self, current: str, target: str) -> bool:
        return target in self.targets(current)

    def assert_can_transition(self, current: str, target: str):
        if not self.allows(current, target):
            abort(400, description=f"Invalid {self.field_name} transition {current} -> {target}")
        return True

__all__ = ['TransitionValidator']
