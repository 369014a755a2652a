from __future__ import annotations
from datetime import datetime, timezone
from decimal import Decimal
from flask import Blueprint, request, abort
from flask_jwt_extended import get_jwt_identity
from sqlalchemy import select
from fulfillment import get_db, get_notifications
from fulfillment.models.catalog import Business, Customer, Package, Product
from fulfillment.models.order import Order, OrderLine, OrderPackage
from fulfillment.decorators.auth import require_permissions, optional_jwt
from fulfillment.decorators.audit import audit_log
from fulfillment.services.content import format_money, status_label
from fulfillment.services.lifecycle import ORDER_FSM
from fulfillment.services.store import update_status_if
from fulfillment.utils.listing import paginate, list_payload
from fulfillment.utils.validation import validate_choice, validate_quantity

orders_bp = Blueprint('orders', __name__)

ITEM_TYPES = ('product', 'package')


def _iso(dt):
    return dt.isoformat().replace('+00:00', 'Z') if isinstance(dt, datetime) else dt


def _order_json(o: Order):
    items = [
        {'type': 'product', 'id': line.product_id, 'name': line.product.name if line.product else None,
         'quantity': line.quantity, 'unit_price': format_money(line.unit_price)}
        for line in o.lines
    ]
    items += [
        {'type': 'package', 'id': pkg.package_id, 'name': pkg.package.name if pkg.package else None,
         'quantity': pkg.quantity, 'unit_price': format_money(pkg.unit_price)}
        for pkg in o.packages
    ]
    return {
        'id': o.id,
        'numero': o.numero,
        'status': o.status,
        'total': format_money(o.total),
        'delivery_mode': o.delivery_mode,
        'delivery_window': o.delivery_window,
        'notes': o.notes,
        'customer_id': o.customer_id,
        'business_id': o.business_id,
        'contact_phone': o.contact_phone,
        'claimed_by': o.claimed_by,
        'claimed_at': _iso(o.claimed_at),
        'notification': {
            'message_id': o.notification_message_id,
            'channel_id': o.notification_channel_id,
        },
        'items': items,
        'created_at': _iso(o.created_at),
    }


def _resolve_customer(session):
    ident = get_jwt_identity()
    if ident is None:
        return None
    customer = session.execute(select(Customer).where(Customer.username == str(ident))).scalar_one_or_none()
    if customer is None and str(ident).isdigit():
        customer = session.get(Customer, int(ident))
    return customer


def _build_items(session, raw_items, business_id):
    """Return (lines, packages, total) with unit prices snapshotted from the catalog."""
    if not isinstance(raw_items, list) or not raw_items:
        abort(400, description='items must be a non-empty list')
    lines, packages = [], []
    total = Decimal('0')
    for idx, raw in enumerate(raw_items):
        if not isinstance(raw, dict):
            abort(400, description=f'items[{idx}] must be an object')
        kind = validate_choice(raw.get('type', 'product'), ITEM_TYPES, f'items[{idx}].type')
        qty = validate_quantity(raw.get('quantity', 1), f'items[{idx}].quantity')
        model = Product if kind == 'product' else Package
        try:
            row = session.get(model, int(raw.get('id')))
        except (TypeError, ValueError):
            abort(400, description=f'items[{idx}].id must be an integer')
        if row is None or not row.active:
            abort(400, description=f'{kind} {raw.get("id")} unavailable')
        if business_id is not None and row.business_id not in (None, business_id):
            abort(400, description=f'{kind} {row.id} does not belong to business {business_id}')
        price = Decimal(str(row.price))
        total += price * qty
        if kind == 'product':
            lines.append(OrderLine(product_id=row.id, quantity=qty, unit_price=price))
        else:
            packages.append(OrderPackage(package_id=row.id, quantity=qty, unit_price=price))
    return lines, packages, total


@orders_bp.post('')
@optional_jwt
@audit_log('ORDER.CREATE', meta_keys=['numero', 'total', 'delivery_mode'])
def create_order():
    session = get_db()
    data = request.json or {}
    mode = validate_choice(data.get('delivery_mode', Order.MODE_DELIVERY), Order.ALL_MODES, 'delivery_mode')
    business_id = data.get('business_id')
    if business_id is not None:
        try:
            business_id = int(business_id)
        except (TypeError, ValueError):
            abort(400, description='business_id must be an integer')
        if session.get(Business, business_id) is None:
            abort(404, description='Business not found')
    customer = _resolve_customer(session)
    phone = (data.get('contact_phone') or '').strip() or None
    if customer is None and not phone:
        abort(400, description='contact_phone required for anonymous orders')
    window = data.get('delivery_window')
    if window is not None and not isinstance(window, (list, dict, str)):
        abort(400, description='delivery_window must be a list, an object or a JSON string')
    lines, packages, total = _build_items(session, data.get('items'), business_id)
    o = Order(
        status=Order.STATUS_PENDING,
        total=total,
        delivery_mode=mode,
        delivery_window=window,
        notes=data.get('notes'),
        customer_id=customer.id if customer else None,
        business_id=business_id,
        contact_phone=phone,
        lines=lines,
        packages=packages,
    )
    session.add(o)
    session.commit()
    # best-effort: the order exists whatever happens to its chat message
    get_notifications().submit(get_notifications().order_created(o.id))
    return _order_json(o), 201


@orders_bp.get('')
@require_permissions('ORDER.READ')
def list_orders():
    session = get_db()
    stmt = select(Order)
    status = request.args.get('status')
    if status == 'active':
        stmt = stmt.where(Order.status.in_(Order.ACTIVE_STATUSES))
    elif status:
        validate_choice(status, Order.ALL_STATUSES + ('active',), 'status')
        stmt = stmt.where(Order.status == status)
    mode = request.args.get('delivery_mode')
    if mode:
        validate_choice(mode, Order.ALL_MODES, 'delivery_mode')
        stmt = stmt.where(Order.delivery_mode == mode)
    if request.args.get('business_id'):
        try:
            stmt = stmt.where(Order.business_id == int(request.args['business_id']))
        except ValueError:
            abort(400, description='business_id invalid')
    stmt = stmt.order_by(Order.created_at.desc(), Order.id.desc())
    rows, total, limit, offset = paginate(session, stmt)
    return list_payload([_order_json(o) for o in rows], total, limit, offset)


@orders_bp.get('/<int:order_id>')
@require_permissions('ORDER.READ')
def get_order(order_id: int):
    o = get_db().get(Order, order_id)
    if not o:
        abort(404)
    return _order_json(o)


@orders_bp.get('/track/<numero>')
def track_order(numero: str):
    """Public tracking page data; no customer details."""
    o = get_db().execute(select(Order).where(Order.numero == numero)).scalar_one_or_none()
    if not o:
        abort(404, description='Commande non trouvée')
    return {
        'numero': o.numero,
        'status': o.status,
        'status_label': status_label(o.status),
        'delivery_mode': o.delivery_mode,
        'delivery_window': o.delivery_window,
        'total': format_money(o.total),
        'created_at': _iso(o.created_at),
    }


@orders_bp.post('/<int:order_id>/status')
@require_permissions('ORDER.MANAGE')
@audit_log('ORDER.STATUS', entity_id_arg='order_id',
           meta_builder=lambda data, kwargs: {'status': data.get('status'), 'previous': data.get('previous_status')})
def change_status(order_id: int):
    session = get_db()
    o = session.get(Order, order_id, populate_existing=True)
    if not o:
        abort(404)
    previous = o.status
    data = request.json or {}
    target = validate_choice(data.get('status'), Order.ALL_STATUSES, 'status')
    ORDER_FSM.assert_can_transition(previous, target)
    values = {'status': target}
    if target == Order.STATUS_CONFIRMED and not o.claimed_by:
        values['claimed_by'] = data.get('claimed_by') or str(get_jwt_identity())
        values['claimed_at'] = datetime.now(timezone.utc)
    if not update_status_if(session, o.id, previous, values):
        session.rollback()
        abort(409, description=f'order status changed concurrently, it is no longer {previous}')
    session.commit()
    session.refresh(o)
    notifications = get_notifications()
    notifications.submit(notifications.status_changed(o.id, previous))
    body = _order_json(o)
    body['previous_status'] = previous
    return body
