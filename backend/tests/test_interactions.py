import asyncio
from sqlalchemy import select, update
from fulfillment import get_db
from fulfillment.models.audit import AuditLog
from fulfillment.models.order import Order
from fulfillment.services import interactions as interactions_module
from fulfillment.services.interactions import GENERIC_ERROR
from fulfillment.services.lifecycle import REJECTION_REASONS, Action, decide
from fulfillment.services.memory_channel import MemoryInteraction

DELIVERY = 'chan-delivery'


def _actions(posted):
    return [b.action for row in posted.buttons for b in row]


def _posted_order(engine, store, make_order, **kw):
    order = make_order(**kw)
    message_id = engine.run(engine.order_created(order.id))
    assert message_id is not None
    return store.find_by_id(order.id), message_id


def test_claim_scenario_order_42(engine, store, channel, make_order):
    order, message_id = _posted_order(engine, store, make_order, id=42)
    interaction = engine.run(channel.press('claim_42', 'alice', message_id=message_id))

    order = store.find_by_id(42)
    assert order.status == 'confirmed'
    assert order.claimed_by == 'alice' and order.claimed_at is not None
    posted = channel.messages[message_id]
    assert 'prepare' in _actions(posted) and 'claim' not in _actions(posted)
    assert posted.notification.field('Claim par').value == 'alice'
    thread = channel.thread_for(order.numero)
    assert thread is not None and thread.message_id == message_id
    (entry,) = channel.thread_posts[thread.id]
    assert entry.title.startswith('🙋')
    assert 'alice' in entry.description
    assert interaction.deferred
    assert interaction.last_reply.startswith('✅')
    assert message_id in engine.interactions.protected
    audit = get_db().execute(select(AuditLog).where(AuditLog.entity_id == '42')).scalars().all()
    assert [(a.action, a.actor) for a in audit] == [('ORDER.CLAIM', 'alice')]


def test_deliver_on_confirmed_is_rejected_scenario(engine, store, channel, clock, make_order):
    order, message_id = _posted_order(engine, store, make_order, id=42)
    engine.run(channel.press('claim_42', 'alice', message_id=message_id))
    before = channel.messages[message_id]
    snapshot = (before.notification, before.buttons, before.edited_at)
    clock.advance(1)

    interaction = engine.run(channel.press('deliver_42', 'bob', message_id=message_id))

    assert store.find_by_id(42).status == 'confirmed'
    after = channel.messages[message_id]
    assert (after.notification, after.buttons, after.edited_at) == snapshot
    assert interaction.replies == [REJECTION_REASONS[Action.DELIVER]]
    assert interaction.id not in engine.interactions.dedup


def test_platform_retry_of_same_interaction_is_ignored(engine, store, channel, make_order):
    order, message_id = _posted_order(engine, store, make_order)
    custom_id = f'claim_{order.id}'
    first = engine.run(channel.press(custom_id, 'alice', message_id=message_id, interaction_id='itx-1'))
    retry = engine.run(channel.press(custom_id, 'alice', message_id=message_id, interaction_id='itx-1'))

    assert first.last_reply.startswith('✅')
    assert retry.deferred is False and retry.replies == []
    thread = channel.thread_for(order.numero)
    assert len(channel.thread_posts[thread.id]) == 1
    assert store.find_by_id(order.id).status == 'confirmed'


def test_second_claim_resolves_as_repair(engine, store, channel, make_order):
    order, message_id = _posted_order(engine, store, make_order)

    async def both():
        return await asyncio.gather(
            channel.press(f'claim_{order.id}', 'alice', message_id=message_id),
            channel.press(f'claim_{order.id}', 'bob', message_id=message_id),
        )

    alice, bob = engine.run(both())
    order = store.find_by_id(order.id)
    assert order.status == 'confirmed'
    assert order.claimed_by == 'alice'
    assert alice.last_reply.startswith('✅')
    assert bob.last_reply.startswith('🔧')


def test_presses_apply_in_acceptance_order(engine, store, channel, make_order):
    order, message_id = _posted_order(engine, store, make_order, status='confirmed')

    async def burst():
        return await asyncio.gather(
            channel.press(f'prepare_{order.id}', 'alice', message_id=message_id),
            channel.press(f'ready_{order.id}', 'bob', message_id=message_id),
            channel.press(f'deliver_{order.id}', 'carol', message_id=message_id),
        )

    replies = [i.last_reply for i in engine.run(burst())]
    assert all(r.startswith('✅') for r in replies)
    assert store.find_by_id(order.id).status == 'delivered'
    assert _actions(channel.messages[message_id]) == []


def test_ignored_interactions_get_no_reply(engine, store, channel, clock, make_order):
    order, message_id = _posted_order(engine, store, make_order)
    custom_id = f'claim_{order.id}'
    too_old = engine.run(channel.press(custom_id, 'a', message_id=message_id, created_at=clock() - 10))
    from_future = engine.run(channel.press(custom_id, 'b', message_id=message_id, created_at=clock() + 10))
    foreign = engine.run(channel.press(custom_id, 'c', message_id=message_id, channel_id='elsewhere'))

    for interaction in (too_old, from_future, foreign):
        assert interaction.deferred is False and interaction.replies == []
    assert store.find_by_id(order.id).status == 'pending'


def test_already_acknowledged_interaction_is_ignored(engine, store, channel, make_order):
    order, message_id = _posted_order(engine, store, make_order)
    handler = engine.interactions
    interaction = MemoryInteraction('itx-9', f'claim_{order.id}', DELIVERY, message_id, 'u1', 'alice', channel.clock())
    interaction.deferred = True
    engine.run(handler.handle(interaction))
    assert interaction.replies == []
    assert store.find_by_id(order.id).status == 'pending'


def test_malformed_and_missing_targets(engine, channel):
    engine.run(engine.dispatcher.ensure_channel_ready())
    unknown = engine.run(channel.press('explode_42', 'alice', channel_id=DELIVERY))
    bad_id = engine.run(channel.press('claim_abc', 'alice', channel_id=DELIVERY))
    superscript = engine.run(channel.press('claim_²', 'alice', channel_id=DELIVERY))
    missing = engine.run(channel.press('claim_999', 'alice', channel_id=DELIVERY))
    assert unknown.replies == ['❌ Action non reconnue']
    assert bad_id.replies == ['❌ ID de commande invalide']
    assert superscript.replies == ['❌ ID de commande invalide']
    assert missing.replies == ['❌ Commande #999 non trouvée']
    for interaction in (unknown, bad_id, superscript, missing):
        assert interaction.id not in engine.interactions.dedup
    assert engine.interactions.in_flight == 0


def test_persistence_failure_gets_generic_reply(engine, store, channel, make_order, monkeypatch):
    order, message_id = _posted_order(engine, store, make_order)

    def boom(*args, **kwargs):
        raise RuntimeError('database is locked')

    monkeypatch.setattr(store, 'apply_transition', boom)
    interaction = engine.run(channel.press(f'claim_{order.id}', 'alice', message_id=message_id))
    assert interaction.last_reply == GENERIC_ERROR
    assert interaction.id not in engine.interactions.dedup
    assert engine.interactions.in_flight == 0


def test_expired_interaction_triggers_reconcile(engine, store, channel, clock, make_order):
    order, message_id = _posted_order(engine, store, make_order)
    clock.advance(1)
    interaction = engine.run(channel.press(f'prepare_{order.id}', 'alice', message_id=message_id, expired=True))
    engine.run(engine.interactions.drain())

    assert interaction.replies == []
    assert interaction.id not in engine.interactions.dedup
    assert store.find_by_id(order.id).status == 'pending'
    assert channel.messages[message_id].edited_at == clock()


def test_expired_interaction_recreates_missing_message(engine, store, channel, make_order):
    order, message_id = _posted_order(engine, store, make_order)
    channel.drop_message(message_id)
    engine.run(channel.press(f'claim_{order.id}', 'alice', message_id=message_id, expired=True))
    engine.run(engine.interactions.drain())
    new_id = store.find_by_id(order.id).notification_message_id
    assert new_id != message_id and new_id in channel.messages


def test_expired_press_does_not_let_later_presses_jump_the_queue(engine, store, channel, make_order, monkeypatch):
    order, message_id = _posted_order(engine, store, make_order, status='confirmed')
    original_edit = channel.edit_message
    slowed = []

    async def slow_first_edit(*args, **kwargs):
        if not slowed:
            slowed.append(True)
            await asyncio.sleep(0.05)
        return await original_edit(*args, **kwargs)

    monkeypatch.setattr(channel, 'edit_message', slow_first_edit)

    async def burst():
        return await asyncio.gather(
            channel.press(f'prepare_{order.id}', 'alice', message_id=message_id),
            channel.press(f'ready_{order.id}', 'bob', message_id=message_id),
            channel.press(f'cancel_{order.id}', 'dave', message_id=message_id, expired=True),
            channel.press(f'deliver_{order.id}', 'carol', message_id=message_id),
        )

    alice, bob, dave, carol = engine.run(burst())
    engine.run(engine.interactions.drain())

    assert store.find_by_id(order.id).status == 'delivered'
    assert alice.last_reply.startswith('✅')
    assert bob.last_reply.startswith('✅')
    assert carol.last_reply.startswith('✅')
    assert dave.replies == []


def _decide_then_write_behind(store, order_id, status, calls):
    """decide() that lets another writer commit status right after the first read."""
    def wrapped(current, action, actor=None):
        transition = decide(current, action, actor)
        calls.append(current)
        if len(calls) == 1:
            session = store.session
            session.execute(update(Order).where(Order.id == order_id).values(status=status)
                            .execution_options(synchronize_session=False))
            session.commit()
        return transition
    return wrapped


def test_press_decides_again_when_status_changes_underneath(engine, store, channel, make_order, monkeypatch):
    order, message_id = _posted_order(engine, store, make_order, status='confirmed')
    calls = []
    monkeypatch.setattr(interactions_module, 'decide', _decide_then_write_behind(store, order.id, 'cancelled', calls))

    interaction = engine.run(channel.press(f'prepare_{order.id}', 'alice', message_id=message_id))

    assert calls == ['confirmed', 'cancelled']
    assert store.find_by_id(order.id).status == 'cancelled'
    assert interaction.replies == [REJECTION_REASONS[Action.PREPARE]]
    audit = get_db().execute(select(AuditLog).where(AuditLog.entity_id == str(order.id))).scalars().all()
    assert audit == []


def test_press_applies_on_fresh_status_after_conflict(engine, store, channel, make_order, monkeypatch):
    order, message_id = _posted_order(engine, store, make_order)
    calls = []
    monkeypatch.setattr(interactions_module, 'decide', _decide_then_write_behind(store, order.id, 'confirmed', calls))

    interaction = engine.run(channel.press(f'cancel_{order.id}', 'bob', message_id=message_id))

    assert calls == ['pending', 'confirmed']
    assert store.find_by_id(order.id).status == 'cancelled'
    assert interaction.last_reply.startswith('✅')
    audit = get_db().execute(select(AuditLog).where(AuditLog.entity_id == str(order.id))).scalars().all()
    assert [(a.action, a.meta['from'], a.meta['to']) for a in audit] == [('ORDER.CANCEL', 'confirmed', 'cancelled')]
