"""Audit decorator for mutating HTTP views.

@audit_log('ORDER.STATUS', entity_id_arg='order_id',
           meta_builder=lambda data, kwargs: {'status': data.get('status')})
def change_status(order_id): ...

The view's JSON payload (first element of a ``(dict, status)`` tuple) feeds
``entity_id_key`` / ``meta_keys`` / ``meta_builder``. Only successful
responses (status < 400) are audited. The entry is committed after the view
returns; a failing audit write is logged and never changes the response.
"""
from __future__ import annotations
import logging
from functools import wraps
from typing import Any, Callable, Iterable, Optional

from sqlalchemy.exc import SQLAlchemyError

from fulfillment.services.audit import add_audit

logger = logging.getLogger(__name__)


def _split(rv: Any):
    """Return (payload, status) for the common Flask return shapes."""
    if isinstance(rv, tuple) and rv:
        status = rv[1] if len(rv) > 1 and isinstance(rv[1], int) else 200
        return rv[0], status
    return rv, 200


def audit_log(
    action: str,
    *,
    entity: Optional[str] = 'Order',
    entity_id_key: Optional[str] = 'id',
    entity_id_arg: Optional[str] = None,
    meta_keys: Optional[Iterable[str]] = None,
    meta_builder: Optional[Callable[[dict, dict], dict]] = None,
):
    def outer(fn):
        @wraps(fn)
        def wrapper(*args, **kwargs):
            rv = fn(*args, **kwargs)
            data, status = _split(rv)
            if status >= 400 or not isinstance(data, dict):
                return rv
            entity_id = kwargs.get(entity_id_arg) if entity_id_arg else None
            if entity_id is None and entity_id_key:
                entity_id = data.get(entity_id_key)
            if meta_builder is not None:
                meta = meta_builder(data, kwargs)
            else:
                meta = {k: data.get(k) for k in (meta_keys or ()) if k in data}
            from fulfillment import get_db
            session = get_db()
            try:
                add_audit(action, entity, entity_id, meta, session=session)
                session.commit()
            except SQLAlchemyError:
                session.rollback()
                logger.exception('audit write failed for %s', action)
            return rv
        return wrapper
    return outer
