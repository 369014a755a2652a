from __future__ import annotations
from typing import Any, Dict, Optional
from flask_jwt_extended import get_jwt_identity

from fulfillment.models.audit import AuditLog


def add_audit(action: str, entity: Optional[str] = None, entity_id: Optional[Any] = None,
              meta: Optional[Dict[str, Any]] = None, actor: Optional[str] = None, session=None):
    """Add an audit log entry to the session without committing.

    Parameters:
      action: short action code e.g. ORDER.CREATE, ORDER.STATUS, ORDER.CLAIM
      entity: optional entity name (Order)
      entity_id: optional primary key
      meta: additional JSON-safe dictionary (shallow copied)
      actor: explicit actor; defaults to the JWT subject of the current request
      session: defaults to the request-scoped session
    """
    if session is None:
        from fulfillment import get_db
        session = get_db()
    if actor is None:
        try:
            ident = get_jwt_identity()
            actor = str(ident) if ident is not None else None
        except Exception:
            actor = None  # no JWT context (anonymous order, engine code)
    log = AuditLog(
        actor=actor,
        action=action,
        entity=entity,
        entity_id=str(entity_id) if entity_id is not None else None,
        meta=dict(meta or {}),
    )
    session.add(log)
    return log
