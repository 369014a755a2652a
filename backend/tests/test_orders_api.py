from sqlalchemy import select, update
from fulfillment import get_db
from fulfillment.models.audit import AuditLog
from fulfillment.models.order import Order
from fulfillment.services.channels import ChannelUnavailable
from fulfillment.routes import orders as orders_routes

DELIVERY = 'chan-delivery'
PICKUP = 'chan-pickup'


def _payload(catalog, **extra):
    body = {
        'delivery_mode': 'delivery',
        'contact_phone': '0611223344',
        'delivery_window': [{'date': 'Lundi', 'startTime': '12h', 'endTime': '14h'}],
        'business_id': catalog['business'].id,
        'items': [
            {'type': 'product', 'id': catalog['burger'].id, 'quantity': 2},
            {'type': 'package', 'id': catalog['menu'].id, 'quantity': 1},
        ],
    }
    body.update(extra)
    return body


def test_anonymous_order_is_created_and_posted(client, catalog, app_channel):
    r = client.post('/orders', json=_payload(catalog))
    assert r.status_code == 201, r.get_json()
    body = r.get_json()
    assert body['numero'].startswith('CMD-')
    assert body['status'] == 'pending'
    assert body['total'] == '40.00'
    assert [(i['type'], i['name'], i['unit_price']) for i in body['items']] == [
        ('product', 'Burger', '12.50'), ('package', 'Menu Midi', '15.00'),
    ]
    message_id = body['notification']['message_id']
    assert message_id is not None and body['notification']['channel_id'] == DELIVERY
    posted = app_channel.messages[message_id]
    assert posted.notification.field('N° Commande').value == body['numero']
    assert posted.notification.field('Client').value == '0611223344'
    audit = get_db().execute(select(AuditLog).where(AuditLog.action == 'ORDER.CREATE')).scalars().all()
    assert len(audit) == 1 and audit[0].entity_id == str(body['id'])


def test_pickup_order_lands_in_pickup_channel(client, catalog, app_channel):
    r = client.post('/orders', json=_payload(catalog, delivery_mode='pickup'))
    assert r.status_code == 201
    body = r.get_json()
    assert body['notification']['channel_id'] == PICKUP
    assert app_channel.messages[body['notification']['message_id']].channel_id == PICKUP


def test_order_from_logged_in_customer(client, catalog, auth_headers):
    payload = _payload(catalog)
    payload.pop('contact_phone')
    r = client.post('/orders', json=payload, headers=auth_headers(identity='jdupont'))
    assert r.status_code == 201
    assert r.get_json()['customer_id'] == catalog['customer'].id


def test_order_survives_chat_outage(client, catalog, app_channel):
    app_channel.inject_failure('send_message', ChannelUnavailable('down'))
    r = client.post('/orders', json=_payload(catalog))
    assert r.status_code == 201
    order_id = r.get_json()['id']
    assert get_db().get(Order, order_id).notification_message_id is None


def test_create_validation_errors(client, catalog):
    no_phone = _payload(catalog)
    no_phone.pop('contact_phone')
    assert client.post('/orders', json=no_phone).status_code == 400
    zero = _payload(catalog, items=[{'type': 'product', 'id': catalog['burger'].id, 'quantity': 0}])
    assert client.post('/orders', json=zero).status_code == 400
    retired = _payload(catalog, items=[{'type': 'product', 'id': catalog['retired'].id, 'quantity': 1}])
    r = client.post('/orders', json=retired)
    assert r.status_code == 400
    assert 'unavailable' in r.get_json()['error']['detail']
    assert client.post('/orders', json=_payload(catalog, items=[])).status_code == 400
    assert client.post('/orders', json=_payload(catalog, delivery_mode='drone')).status_code == 400
    assert client.post('/orders', json=_payload(catalog, business_id=987654)).status_code == 404
    assert get_db().execute(select(Order)).first() is None


def test_list_requires_permission(client, auth_headers):
    assert client.get('/orders').status_code == 401
    assert client.get('/orders', headers=auth_headers('NOTIFY.ADMIN')).status_code == 403


def test_list_paginates_and_filters(client, make_order, auth_headers):
    for age in (3, 2, 1):
        make_order(age_minutes=age)
    make_order(status='delivered')
    headers = auth_headers('ORDER.READ')
    r = client.get('/orders?limit=2', headers=headers)
    body = r.get_json()
    assert r.status_code == 200
    assert body['pagination'] == {'total': 4, 'limit': 2, 'offset': 0, 'returned': 2}
    active = client.get('/orders?status=active', headers=headers).get_json()
    assert active['pagination']['total'] == 3
    assert client.get('/orders?status=lost', headers=headers).status_code == 400
    assert client.get('/orders?limit=x', headers=headers).status_code == 400


def test_get_and_track(client, make_order, auth_headers):
    order = make_order()
    r = client.get(f'/orders/{order.id}', headers=auth_headers('ORDER.READ'))
    assert r.status_code == 200 and r.get_json()['numero'] == order.numero
    assert client.get('/orders/424242', headers=auth_headers('ORDER.READ')).status_code == 404
    track = client.get(f'/orders/track/{order.numero}').get_json()
    assert track['status'] == 'pending' and track['total'] == '40.00'
    assert 'contact_phone' not in track
    missing = client.get('/orders/track/CMD-0')
    assert missing.status_code == 404
    assert missing.get_json()['error']['detail'] == 'Commande non trouvée'


def test_status_change_claims_and_audits(client, make_order, auth_headers, app_channel):
    order = make_order()
    service = client.application.extensions['notifications']
    service.run(service.order_created(order.id))
    r = client.post(f'/orders/{order.id}/status', json={'status': 'confirmed'}, headers=auth_headers('ORDER.MANAGE'))
    assert r.status_code == 200, r.get_json()
    body = r.get_json()
    assert body['status'] == 'confirmed' and body['previous_status'] == 'pending'
    assert body['claimed_by'] == 'staff'
    posted = app_channel.messages[body['notification']['message_id']]
    assert [b.action for row in posted.buttons for b in row] == ['prepare', 'cancel']
    audit = get_db().execute(select(AuditLog).where(AuditLog.action == 'ORDER.STATUS')).scalar_one()
    assert audit.actor == 'staff' and audit.entity_id == str(order.id)
    assert audit.meta == {'status': 'confirmed', 'previous': 'pending'}


def test_illegal_status_change_is_rejected(client, make_order, auth_headers):
    order = make_order()
    headers = auth_headers('ORDER.MANAGE')
    r = client.post(f'/orders/{order.id}/status', json={'status': 'ready'}, headers=headers)
    assert r.status_code == 400
    assert set(r.get_json()['error']) == {'status', 'title', 'detail'}
    assert client.post(f'/orders/{order.id}/status', json={'status': 'x'}, headers=headers).status_code == 400
    assert client.post('/orders/424242/status', json={'status': 'cancelled'}, headers=headers).status_code == 404
    assert client.post(f'/orders/{order.id}/status', json={'status': 'cancelled'},
                       headers=auth_headers('ORDER.READ')).status_code == 403


def test_status_change_conflicts_with_concurrent_writer(client, make_order, auth_headers, monkeypatch):
    order = make_order(status='preparing')
    real_validate = orders_routes.validate_choice

    def validate_then_write_behind(*args, **kwargs):
        session = get_db()
        session.execute(update(Order).where(Order.id == order.id).values(status='ready')
                        .execution_options(synchronize_session=False))
        session.commit()
        return real_validate(*args, **kwargs)

    monkeypatch.setattr(orders_routes, 'validate_choice', validate_then_write_behind)
    r = client.post(f'/orders/{order.id}/status', json={'status': 'cancelled'}, headers=auth_headers('ORDER.MANAGE'))

    assert r.status_code == 409
    assert 'preparing' in r.get_json()['error']['detail']
    assert get_db().get(Order, order.id, populate_existing=True).status == 'ready'
    assert get_db().execute(select(AuditLog).where(AuditLog.action == 'ORDER.STATUS')).first() is None
