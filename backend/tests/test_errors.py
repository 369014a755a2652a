import fulfillment.routes.orders as orders_routes


def test_unknown_path_returns_error_json(client):
    resp = client.get('/non-existent-path')
    # Flask default 404 should be wrapped by error handler
    assert resp.status_code == 404
    body = resp.get_json()
    assert 'error' in body
    assert body['error']['status'] == 404
    assert 'detail' in body['error']


def test_internal_error_shape(client, monkeypatch):
    def broken_db():
        raise RuntimeError('database went away')

    # the public tracking route needs no token, so only the session lookup fails
    monkeypatch.setattr(orders_routes, 'get_db', broken_db)
    resp = client.get('/orders/track/CMD-1')
    assert resp.status_code == 500
    body = resp.get_json()
    assert body['error']['status'] == 500
    assert body['error']['title'] == 'Internal Server Error'
    assert body['error']['detail'] == 'Unexpected error'


def test_healthz(client):
    body = client.get('/healthz').get_json()
    assert body == {'status': 'ok', 'notifications': True}
