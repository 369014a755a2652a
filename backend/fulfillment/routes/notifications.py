from __future__ import annotations
from flask import Blueprint, request, abort
from fulfillment import get_db, get_notifications
from fulfillment.models.order import Order
from fulfillment.decorators.auth import require_permissions
from fulfillment.decorators.audit import audit_log

notify_bp = Blueprint('notifications', __name__)


@notify_bp.get('/health')
@require_permissions('NOTIFY.ADMIN')
def health():
    service = get_notifications()
    if not service.active:
        return service.health()
    return service.run(service.check())


@notify_bp.post('/test')
@require_permissions('NOTIFY.ADMIN')
@audit_log('NOTIFY.TEST', entity=None, entity_id_key='message_id', meta_keys=['numero', 'sent'])
def send_test():
    service = get_notifications()
    result = service.run(service.send_test())
    return result, 200 if result['sent'] else 503


@notify_bp.post('/lifecycle-test')
@require_permissions('NOTIFY.ADMIN')
@audit_log('NOTIFY.LIFECYCLE_TEST', entity=None, entity_id_key='message_id', meta_keys=['numero', 'ok'])
def lifecycle_test():
    service = get_notifications()
    result = service.run(service.lifecycle_test())
    return result, 200 if result['ok'] else 503


@notify_bp.post('/orders/<int:order_id>/reconcile')
@require_permissions('NOTIFY.ADMIN')
@audit_log('NOTIFY.RECONCILE', entity_id_arg='order_id', meta_keys=['result', 'force'])
def reconcile(order_id: int):
    if get_db().get(Order, order_id) is None:
        abort(404)
    data = request.get_json(silent=True) or {}
    force = bool(data.get('force', True))
    service = get_notifications()
    result = service.run(service.reconcile(order_id, force=force))
    if result is None:
        abort(404)
    order = get_db().get(Order, order_id, populate_existing=True)
    return {
        'id': order_id,
        'result': result.value,
        'force': force,
        'message_id': order.notification_message_id,
        'channel_id': order.notification_channel_id,
    }


@notify_bp.post('/sweep')
@require_permissions('NOTIFY.ADMIN')
@audit_log('NOTIFY.SWEEP', entity=None, entity_id_key=None, meta_keys=['checked', 'updated', 'recreated', 'failed'])
def sweep():
    service = get_notifications()
    return service.run(service.sweep()).to_dict()
