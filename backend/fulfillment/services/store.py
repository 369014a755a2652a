"""Order persistence as seen by the notification engine.

The database is the single source of truth for order status; everything the
engine renders is derived from an ``OrderView`` snapshot produced here.
``session_factory`` is expected to be a ``scoped_session`` so the engine's
event loop thread and request threads each get their own session.
"""
from __future__ import annotations
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import select, update

from fulfillment.models.order import Order
from fulfillment.services.content import ANONYMOUS_CUSTOMER, LineView, OrderView
from fulfillment.services.lifecycle import Transition

logger = logging.getLogger(__name__)


class StatusConflict(Exception):
    """The order's status moved on between the read and the write."""

    def __init__(self, order_id: int, expected: str):
        super().__init__(f"order {order_id} is no longer {expected}")
        self.order_id = order_id
        self.expected = expected


def update_status_if(session, order_id: int, expected: str, values: Dict[str, Any]) -> bool:
    """UPDATE orders SET ... WHERE id = :id AND status = :expected, without committing.

    Returns False when no row matched, i.e. another writer got there first.
    """
    stmt = (
        update(Order)
        .where(Order.id == order_id, Order.status == expected)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    return session.execute(stmt).rowcount == 1


class OrderStore:

    def __init__(self, session_factory):
        self._session_factory = session_factory

    @property
    def session(self):
        return self._session_factory()

    def find_by_id(self, order_id: int) -> Optional[Order]:
        # populate_existing: always re-read status, never trust the identity map
        return self.session.get(Order, order_id, populate_existing=True)

    def find_active(self) -> List[Order]:
        """Non-terminal orders, oldest first."""
        stmt = (
            select(Order)
            .where(Order.status.in_(Order.ACTIVE_STATUSES))
            .order_by(Order.created_at.asc(), Order.id.asc())
            .execution_options(populate_existing=True)
        )
        return list(self.session.execute(stmt).scalars())

    def save(self, order: Order) -> Order:
        session = self.session
        session.add(order)
        try:
            session.commit()
        except Exception:
            session.rollback()
            raise
        return order

    def apply_transition(self, order: Order, transition: Transition) -> Order:
        """Persist an accepted transition (a repeat re-saves the same status).

        The write only lands while the row still holds ``transition.previous``;
        otherwise nothing is committed and ``StatusConflict`` is raised so the
        caller can decide again on the fresh status.
        """
        if not transition.accepted:
            raise ValueError('cannot persist a rejected transition')
        values = {'status': transition.status}
        if transition.claims:
            values['claimed_by'] = transition.actor
            values['claimed_at'] = datetime.now(timezone.utc)
        session = self.session
        try:
            updated = update_status_if(session, order.id, transition.previous, values)
            if updated:
                session.commit()
        except Exception:
            session.rollback()
            raise
        if not updated:
            session.rollback()
            raise StatusConflict(order.id, transition.previous)
        session.refresh(order)
        return order

    def attach_message(self, order_id: int, message_id: str, channel_id: str) -> bool:
        order = self.find_by_id(order_id)
        if order is None:
            logger.warning('order %s vanished before its message %s could be attached', order_id, message_id)
            return False
        order.notification_message_id = message_id
        order.notification_channel_id = channel_id
        self.save(order)
        return True

    def close(self) -> None:
        remove = getattr(self._session_factory, 'remove', None)
        if remove is not None:
            remove()

    def view(self, order: Order) -> OrderView:
        return order_view(order)


def customer_display_name(order: Order) -> str:
    if order.customer is not None and order.customer.display_name:
        return order.customer.display_name
    if order.contact_phone:
        return order.contact_phone
    return ANONYMOUS_CUSTOMER


def order_view(order: Order) -> OrderView:
    lines = [
        LineView(line.product.name if line.product else f"Produit #{line.product_id}", line.quantity, line.unit_price)
        for line in order.lines
    ]
    lines.extend(
        LineView(pkg.package.name if pkg.package else f"Menu #{pkg.package_id}", pkg.quantity, pkg.unit_price)
        for pkg in order.packages
    )
    return OrderView(
        id=order.id,
        numero=order.numero,
        status=order.status,
        total=order.total,
        delivery_mode=order.delivery_mode,
        created_at=order.created_at,
        delivery_window=order.delivery_window,
        customer_name=customer_display_name(order),
        business_name=order.business.name if order.business is not None else None,
        claimed_by=order.claimed_by,
        lines=tuple(lines),
        notification_message_id=order.notification_message_id,
        notification_channel_id=order.notification_channel_id,
    )

__all__ = ['OrderStore', 'StatusConflict', 'update_status_if', 'order_view', 'customer_display_name']
