from __future__ import annotations
from typing import Any, Mapping, Tuple
from flask import abort, request
from sqlalchemy import func, select

DEFAULT_LIMIT = 25
MAX_LIMIT = 100


def read_page(args: Mapping[str, Any]) -> Tuple[int, int]:
    """(limit, offset) from query args; limit is clamped, bad integers abort 400."""
    try:
        limit = int(args.get('limit', DEFAULT_LIMIT))
        offset = int(args.get('offset', 0))
    except (TypeError, ValueError):
        abort(400, description='limit and offset must be integers')
    return max(1, min(limit, MAX_LIMIT)), max(0, offset)


def paginate(session, stmt):
    """Execute a select() one page at a time. Returns (rows, total, limit, offset)."""
    limit, offset = read_page(request.args)
    total = session.execute(select(func.count()).select_from(stmt.order_by(None).subquery())).scalar_one()
    rows = list(session.execute(stmt.limit(limit).offset(offset)).scalars())
    return rows, total, limit, offset


def list_payload(items: list, total: int, limit: int, offset: int) -> dict:
    return {
        'data': items,
        'pagination': {
            'total': total,
            'limit': limit,
            'offset': offset,
            'returned': len(items),
        },
    }
