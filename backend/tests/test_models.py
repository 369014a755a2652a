from decimal import Decimal
import pytest
from sqlalchemy import update
from fulfillment.models.catalog import Customer
from fulfillment.models.order import Order, generate_numero
from fulfillment.services.lifecycle import Action, decide
from fulfillment.services.store import StatusConflict, customer_display_name


def test_numero_generated_on_insert_and_frozen(make_order):
    order = make_order()
    assert order.numero.startswith('CMD-')
    with pytest.raises(ValueError):
        order.numero = 'CMD-1'


def test_total_frozen_once_persisted(make_order):
    order = make_order()
    with pytest.raises(ValueError):
        order.total = Decimal('1.00')
    order.total = Decimal('40.00')


def test_numero_strictly_increasing():
    first, second = generate_numero(), generate_numero()
    assert int(second.split('-')[1]) > int(first.split('-')[1])
    assert generate_numero('TEST').startswith('TEST-')


def test_customer_display_name(make_order, catalog):
    assert Customer(username='solo').display_name == 'solo'
    order = make_order(customer_id=catalog['customer'].id)
    assert customer_display_name(order) == 'Jean Dupont'
    assert customer_display_name(make_order()) == '0612345678'
    assert customer_display_name(make_order(contact_phone=None)) == 'Client anonyme'


def test_order_view_lines(store, make_order):
    view = store.view(make_order())
    assert [(line.name, line.quantity) for line in view.lines] == [('Burger', 2), ('Menu Midi', 1)]
    assert view.business_name == 'Le Bistrot'


def test_active_statuses_are_the_non_terminal_ones(make_order, store):
    assert Order.ACTIVE_STATUSES == ('pending', 'confirmed', 'preparing', 'ready')
    assert set(Order.ACTIVE_STATUSES) | set(Order.TERMINAL_STATUSES) == set(Order.ALL_STATUSES)
    for status in Order.ALL_STATUSES:
        make_order(status=status)
    active = [o.status for o in store.find_active()]
    assert sorted(active) == sorted(Order.ACTIVE_STATUSES)


def _write_behind(session, order_id, status):
    """Commit a status change the way another thread would, leaving loaded objects stale."""
    session.execute(update(Order).where(Order.id == order_id).values(status=status)
                    .execution_options(synchronize_session=False))
    session.commit()


def test_apply_transition_persists_and_claims(make_order, store):
    order = make_order()
    saved = store.apply_transition(order, decide('pending', Action.CLAIM, 'alice'))
    assert saved.status == 'confirmed' and saved.claimed_by == 'alice'
    assert store.find_by_id(order.id).claimed_at is not None


def test_apply_transition_refuses_stale_status(make_order, store):
    order = make_order(status='preparing')
    transition = decide(order.status, Action.READY, 'bob')
    _write_behind(store.session, order.id, 'cancelled')
    with pytest.raises(StatusConflict) as exc:
        store.apply_transition(order, transition)
    assert exc.value.expected == 'preparing'
    assert store.find_by_id(order.id).status == 'cancelled'


def test_apply_transition_rejects_refused_transition(make_order, store):
    order = make_order()
    with pytest.raises(ValueError):
        store.apply_transition(order, decide('pending', Action.DELIVER, 'bob'))
