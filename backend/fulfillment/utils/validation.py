from __future__ import annotations
"""Request payload validation helpers with consistent 400 semantics."""
from typing import Any, Iterable
from flask import abort


def validate_choice(value: Any, allowed: Iterable[str], field_name: str = 'status') -> str:
    """Return value when it is one of allowed, otherwise abort with 400."""
    allowed = tuple(allowed)
    if value not in allowed:
        abort(400, description=f"{field_name} must be one of {', '.join(allowed)}")
    return value


def validate_quantity(raw: Any, field_name: str = 'quantity') -> int:
    """Quantities are strictly positive integers (booleans rejected)."""
    if isinstance(raw, bool):
        abort(400, description=f"{field_name} must be an integer >= 1")
    try:
        qty = int(raw)
    except (TypeError, ValueError):
        abort(400, description=f"{field_name} must be an integer >= 1")
    if qty < 1 or (isinstance(raw, float) and raw != qty):
        abort(400, description=f"{field_name} must be an integer >= 1")
    return qty

__all__ = ['validate_choice', 'validate_quantity']
