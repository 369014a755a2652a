from __future__ import annotations
from typing import Set
from flask_jwt_extended import get_jwt

from fulfillment.constants.permissions import ALL_PERMISSION_CODES


def current_permissions() -> Set[str]:
    claims = get_jwt()
    perms = set(claims.get('perms', []))
    # wildcard minted for the Admin preset
    if '*' in perms:
        perms.update(ALL_PERMISSION_CODES)
    return perms


def has_permissions(*codes: str) -> bool:
    perms = current_permissions()
    return all(c in perms for c in codes)
