from fulfillment.utils.fsm import TransitionValidator
from fulfillment.services.lifecycle import ORDER_FSM
from werkzeug.exceptions import BadRequest
import pytest


def test_transition_validator_allows_valid():
    fsm = TransitionValidator({'A': {'B'}, 'B': set()})
    assert fsm.assert_can_transition('A', 'B') is True
    assert fsm.allows('A', 'B')
    assert fsm.is_terminal('B')


def test_transition_validator_blocks_invalid():
    fsm = TransitionValidator({'A': {'B'}, 'B': set()})
    with pytest.raises(BadRequest) as exc:
        fsm.assert_can_transition('A', 'C')
    assert 'A -> C' in exc.value.description


def test_unknown_state_has_no_targets():
    fsm = TransitionValidator({'A': {'B'}})
    assert fsm.targets('Z') == frozenset()
    assert not fsm.allows('Z', 'A')


def test_order_graph_states():
    assert ORDER_FSM.states == {'pending', 'confirmed', 'preparing', 'ready', 'delivered', 'cancelled'}
    assert ORDER_FSM.is_terminal('delivered') and ORDER_FSM.is_terminal('cancelled')
    assert not ORDER_FSM.allows('confirmed', 'delivered')
