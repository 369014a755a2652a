"""Settings for the chat notification engine.

Values come from ``app.config`` (populated from the environment by
``create_app``) and are frozen into a ``NotifySettings`` instance that is handed
to every component, so the engine can be built in tests without Flask.
"""
from __future__ import annotations
from dataclasses import dataclass
from typing import Any, Mapping, Optional

DEFAULT_CHANNEL_FACTORY = 'fulfillment.services.telegram_channel:TelegramChannel'
# in-process backend for tests and local development
MEMORY_CHANNEL_FACTORY = 'fulfillment.services.memory_channel:MemoryChannel'

DEFAULTS = {
    'NOTIFY_BOT_TOKEN': None,
    'NOTIFY_DELIVERY_CHANNEL_ID': None,
    'NOTIFY_PICKUP_CHANNEL_ID': None,
    'NOTIFY_CHANNEL_FACTORY': DEFAULT_CHANNEL_FACTORY,
    'NOTIFY_BACKGROUND': True,
    'NOTIFY_READY_TIMEOUT': 15.0,
    'NOTIFY_SWEEP_INTERVAL': 600.0,
    'NOTIFY_SKIP_WINDOW': 720.0,
    'NOTIFY_MAX_INTERACTION_AGE': 5.0,
    'NOTIFY_PROTECTION_WINDOW': 60.0,
    'NOTIFY_DEDUP_MAX_AGE': 300.0,
    'NOTIFY_SWEEP_DELAY': 0.5,
    'NOTIFY_SWEEP_DELAY_MAX': 3.0,
}


def _as_bool(raw: Any) -> bool:
    if isinstance(raw, bool):
        return raw
    return str(raw).strip().lower() not in {'0', 'false', 'no', 'off', ''}


def _as_float(raw: Any, default: float) -> float:
    try:
        return float(raw)
    except (TypeError, ValueError):
        return default


def _as_str(raw: Any) -> Optional[str]:
    if raw is None:
        return None
    value = str(raw).strip()
    return value or None


@dataclass(frozen=True)
class NotifySettings:
    token: Optional[str] = None
    delivery_channel_id: Optional[str] = None
    pickup_channel_id: Optional[str] = None
    channel_factory: str = DEFAULT_CHANNEL_FACTORY
    background: bool = True
    ready_timeout: float = 15.0
    sweep_interval: float = 600.0
    skip_window: float = 720.0
    max_interaction_age: float = 5.0
    protection_window: float = 60.0
    dedup_max_age: float = 300.0
    sweep_delay: float = 0.5
    sweep_delay_max: float = 3.0

    @property
    def channel_ids(self) -> tuple:
        return tuple(c for c in (self.delivery_channel_id, self.pickup_channel_id) if c)

    @property
    def is_configured(self) -> bool:
        return bool(self.token) and bool(self.channel_ids)

    def missing(self) -> list:
        """Names of the settings preventing activation (empty when configured)."""
        out = []
        if not self.token:
            out.append('NOTIFY_BOT_TOKEN')
        if not self.channel_ids:
            out.append('NOTIFY_DELIVERY_CHANNEL_ID/NOTIFY_PICKUP_CHANNEL_ID')
        return out

    @classmethod
    def from_mapping(cls, config: Mapping[str, Any]) -> 'NotifySettings':
        def get(key):
            return config.get(key, DEFAULTS[key])
        return cls(
            token=_as_str(get('NOTIFY_BOT_TOKEN')),
            delivery_channel_id=_as_str(get('NOTIFY_DELIVERY_CHANNEL_ID')),
            pickup_channel_id=_as_str(get('NOTIFY_PICKUP_CHANNEL_ID')),
            channel_factory=_as_str(get('NOTIFY_CHANNEL_FACTORY')) or DEFAULT_CHANNEL_FACTORY,
            background=_as_bool(get('NOTIFY_BACKGROUND')),
            ready_timeout=_as_float(get('NOTIFY_READY_TIMEOUT'), DEFAULTS['NOTIFY_READY_TIMEOUT']),
            sweep_interval=_as_float(get('NOTIFY_SWEEP_INTERVAL'), DEFAULTS['NOTIFY_SWEEP_INTERVAL']),
            skip_window=_as_float(get('NOTIFY_SKIP_WINDOW'), DEFAULTS['NOTIFY_SKIP_WINDOW']),
            max_interaction_age=_as_float(get('NOTIFY_MAX_INTERACTION_AGE'), DEFAULTS['NOTIFY_MAX_INTERACTION_AGE']),
            protection_window=_as_float(get('NOTIFY_PROTECTION_WINDOW'), DEFAULTS['NOTIFY_PROTECTION_WINDOW']),
            dedup_max_age=_as_float(get('NOTIFY_DEDUP_MAX_AGE'), DEFAULTS['NOTIFY_DEDUP_MAX_AGE']),
            sweep_delay=_as_float(get('NOTIFY_SWEEP_DELAY'), DEFAULTS['NOTIFY_SWEEP_DELAY']),
            sweep_delay_max=_as_float(get('NOTIFY_SWEEP_DELAY_MAX'), DEFAULTS['NOTIFY_SWEEP_DELAY_MAX']),
        )

__all__ = ['NotifySettings', 'DEFAULTS', 'DEFAULT_CHANNEL_FACTORY', 'MEMORY_CHANNEL_FACTORY']
