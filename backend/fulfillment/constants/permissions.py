"""Central enum-like definitions to avoid typos in permission strings.
Never rename codes silently; tokens minted elsewhere carry them verbatim.
"""
from __future__ import annotations
from typing import List, Dict

SERVICE_ACTIONS = {
    'ORDER': ['READ', 'MANAGE'],
    'NOTIFY': ['ADMIN'],
}


def build_all_permission_codes() -> List[str]:
    codes: List[str] = []
    for svc, actions in SERVICE_ACTIONS.items():
        for act in actions:
            codes.append(f"{svc}.{act}")
    return codes

ALL_PERMISSION_CODES = build_all_permission_codes()

ROLE_PRESETS: Dict[str, List[str]] = {
    'Staff': ['ORDER.READ', 'ORDER.MANAGE'],
    'Admin': ['*'],
}


def expand_role(role_name: str) -> List[str]:
    codes = ROLE_PRESETS.get(role_name, [])
    if '*' in codes:
        return list(ALL_PERMISSION_CODES)
    return list(codes)
