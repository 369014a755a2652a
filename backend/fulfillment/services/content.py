"""Rendering of orders into chat payloads.

Everything here is pure: functions take an ``OrderView`` snapshot (or plain
values) and return immutable dataclasses. Equality of two renders is used by
the reconciler to decide whether a posted message is still current.
"""
from __future__ import annotations
import enum
import json
import math
import re
from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Optional, Tuple

from fulfillment.models.order import Order
from fulfillment.services.lifecycle import Action

NOT_SPECIFIED = 'Non spécifié'
INVALID_FORMAT = 'Format invalide'
PUBLIC_ORDER = 'Commande publique'
ANONYMOUS_CUSTOMER = 'Client anonyme'
FOOTER = 'Suivi de commandes'
CURRENCY = '$'

EVENT_CANONICAL = 'canonical'
EVENT_STATUS_CHANGED = 'status_changed'
EVENT_CANCELLED = 'cancelled'

STATUS_LABELS = {
    Order.STATUS_PENDING: 'En attente',
    Order.STATUS_CONFIRMED: 'Confirmée',
    Order.STATUS_PREPARING: 'En préparation',
    Order.STATUS_READY: 'Prête',
    Order.STATUS_DELIVERED: 'Livrée',
    Order.STATUS_CANCELLED: 'Annulée',
}

STATUS_ICONS = {
    Order.STATUS_PENDING: '⏳',
    Order.STATUS_CONFIRMED: '✅',
    Order.STATUS_PREPARING: '👨‍🍳',
    Order.STATUS_READY: '📦',
    Order.STATUS_DELIVERED: '🚚',
    Order.STATUS_CANCELLED: '❌',
}

STATUS_COLORS = {
    Order.STATUS_PENDING: 0xFFA500,
    Order.STATUS_CONFIRMED: 0x0099FF,
    Order.STATUS_PREPARING: 0xFFFF00,
    Order.STATUS_READY: 0x9932CC,
    Order.STATUS_DELIVERED: 0x00FF00,
    Order.STATUS_CANCELLED: 0xFF0000,
}
GREY = 0x808080

MODE_DISPLAY = {
    Order.MODE_DELIVERY: ('🚚', 'Livraison'),
    Order.MODE_PICKUP: ('🏪', 'Click & Collect'),
}

# leading numeric prefix, so "12.5€" reads as 12.5
_NUMBER_RE = re.compile(r'^\s*([-+]?(?:\d+(?:\.\d*)?|\.\d+)(?:[eE][-+]?\d+)?)')


class ButtonStyle(str, enum.Enum):
    PRIMARY = 'primary'
    SECONDARY = 'secondary'
    SUCCESS = 'success'
    DANGER = 'danger'


@dataclass(frozen=True)
class Field:
    name: str
    value: str
    inline: bool = True


@dataclass(frozen=True)
class Notification:
    title: str
    color: int
    fields: Tuple[Field, ...] = ()
    description: Optional[str] = None
    footer: str = FOOTER

    def field(self, name_fragment: str) -> Optional[Field]:
        for f in self.fields:
            if name_fragment in f.name:
                return f
        return None

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass(frozen=True)
class Button:
    custom_id: str
    label: str
    style: ButtonStyle = ButtonStyle.SECONDARY
    disabled: bool = False

    @property
    def action(self) -> str:
        return self.custom_id.split('_', 1)[0]


ButtonRows = Tuple[Tuple[Button, ...], ...]


@dataclass(frozen=True)
class ActivityEntry:
    action: str
    actor: str
    title: str
    description: str
    color: int
    fields: Tuple[Field, ...]
    summary: str

    def to_notification(self) -> Notification:
        return Notification(title=self.title, color=self.color, fields=self.fields, description=self.description)


@dataclass(frozen=True)
class LineView:
    name: str
    quantity: int
    unit_price: Any


@dataclass(frozen=True)
class OrderView:
    """Snapshot of an order as the chat sees it."""
    id: int
    numero: Optional[str]
    status: str
    total: Any = 0
    delivery_mode: str = Order.MODE_DELIVERY
    created_at: Any = None
    delivery_window: Any = None
    customer_name: str = ANONYMOUS_CUSTOMER
    business_name: Optional[str] = None
    claimed_by: Optional[str] = None
    lines: Tuple[LineView, ...] = field(default_factory=tuple)
    notification_message_id: Optional[str] = None
    notification_channel_id: Optional[str] = None


@dataclass(frozen=True)
class ActionRequest:
    action: Action
    order_id: int


class MalformedAction(ValueError):
    """Button identifier that does not decode into an action and an order id."""

    def __init__(self, message: str, custom_id: str):
        super().__init__(message)
        self.custom_id = custom_id


# ---------- Numbers & text ---------- #

def to_number(value: Any) -> float:
    """Coerce a money-like value to a finite float, 0 when it cannot be read."""
    if value is None or isinstance(value, bool):
        return 0.0
    if isinstance(value, (int, float, Decimal)):
        try:
            number = float(value)
        except (ValueError, OverflowError):
            return 0.0
    else:
        match = _NUMBER_RE.match(value if isinstance(value, str) else str(value))
        if not match:
            return 0.0
        try:
            number = float(match.group(1))
        except ValueError:
            return 0.0
    return number if math.isfinite(number) else 0.0


def format_money(value: Any) -> str:
    return f"{to_number(value):.2f}"


def format_delivery_window(value: Any) -> str:
    """Human-readable delivery window; never raises."""
    if value is None or value == '':
        return NOT_SPECIFIED
    if isinstance(value, str):
        try:
            value = json.loads(value)
        except ValueError:
            return INVALID_FORMAT
        if value is None:
            return NOT_SPECIFIED
    if isinstance(value, dict):
        value = [value]
    if not isinstance(value, (list, tuple)):
        return INVALID_FORMAT
    parts = []
    for slot in value:
        if not isinstance(slot, dict):
            return INVALID_FORMAT
        date = slot.get('date')
        start = slot.get('startTime') or slot.get('heure_debut')
        end = slot.get('endTime') or slot.get('heure_fin')
        bits = []
        if date:
            bits.append(f"📅 {date}")
        if start and end:
            bits.append(f"🕐 {start} - {end}")
        elif start or end:
            bits.append(f"🕐 {start or end}")
        if bits:
            parts.append(' '.join(bits))
    return ' | '.join(parts) if parts else NOT_SPECIFIED


def format_date(value: Any) -> str:
    if isinstance(value, str):
        try:
            value = datetime.fromisoformat(value.replace('Z', '+00:00'))
        except ValueError:
            return 'N/A'
    if not isinstance(value, datetime):
        return 'N/A'
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.strftime('%d/%m/%Y')


def status_label(status: str, with_icon: bool = True) -> str:
    label = STATUS_LABELS.get(status, status)
    if not with_icon:
        return label
    return f"{STATUS_ICONS.get(status, '❓')} {label}"


def status_color(status: str) -> int:
    return STATUS_COLORS.get(status, GREY)


# ---------- Canonical message ---------- #

def _title_for(view: OrderView, event: str, previous_status: Optional[str]) -> str:
    if event == EVENT_CANCELLED:
        return '❌ Commande Annulée'
    if event == EVENT_STATUS_CHANGED:
        return f"📝 Commande Mise à Jour ({previous_status or '?'} → {view.status})"
    if view.status == Order.STATUS_PENDING:
        return '🆕 Nouvelle Commande'
    return f"📊 Commande {status_label(view.status, with_icon=False).upper()}"


def format_lines(lines) -> str:
    rendered = [
        f"• {line.name} (x{line.quantity}) - {format_money(line.quantity * to_number(line.unit_price))}{CURRENCY}"
        for line in lines
    ]
    return '\n'.join(rendered) if rendered else 'Aucun produit'


def build_notification(view: OrderView, event: str = EVENT_CANONICAL, previous_status: Optional[str] = None) -> Notification:
    """Render the full order card."""
    icon, mode_label = MODE_DISPLAY.get(view.delivery_mode, MODE_DISPLAY[Order.MODE_PICKUP])
    fields = [
        Field('🆔 ID', f"#{view.id}"),
        Field('📋 N° Commande', view.numero or 'N/A'),
        Field('👤 Client', view.customer_name or ANONYMOUS_CUSTOMER),
        Field('🏢 Entreprise', view.business_name or PUBLIC_ORDER),
        Field('📊 Statut', status_label(view.status)),
        Field('💰 Total', f"{format_money(view.total)}{CURRENCY}"),
        Field('📅 Date commande', format_date(view.created_at)),
        Field(f"{icon} Type", mode_label),
        Field('🕐 Créneau livraison', format_delivery_window(view.delivery_window), inline=False),
    ]
    if view.claimed_by:
        fields.append(Field('🙋 Claim par', view.claimed_by))
    fields.append(Field('🛍️ Produits', format_lines(view.lines), inline=False))
    color = STATUS_COLORS[Order.STATUS_CANCELLED] if event == EVENT_CANCELLED else status_color(view.status)
    return Notification(title=_title_for(view, event, previous_status), color=color, fields=tuple(fields))


def build_buttons(order_id: int, status: str) -> ButtonRows:
    """Action buttons for the current status; empty rows are dropped."""
    first = []
    second = []
    if status == Order.STATUS_PENDING:
        first.append(Button(encode_action(Action.CLAIM, order_id), '🙋 Claim & Confirmer', ButtonStyle.PRIMARY))
    if status in (Order.STATUS_CONFIRMED, Order.STATUS_PREPARING):
        first.append(Button(encode_action(Action.PREPARE, order_id), '👨‍🍳 En préparation', ButtonStyle.SECONDARY,
                            disabled=status == Order.STATUS_PREPARING))
    if status in (Order.STATUS_PREPARING, Order.STATUS_READY):
        second.append(Button(encode_action(Action.READY, order_id), '📦 Prête', ButtonStyle.SECONDARY,
                             disabled=status == Order.STATUS_READY))
    if status == Order.STATUS_READY:
        second.append(Button(encode_action(Action.DELIVER, order_id), '🚚 Livrée', ButtonStyle.SUCCESS))
    if status not in Order.TERMINAL_STATUSES:
        second.append(Button(encode_action(Action.CANCEL, order_id), '❌ Annuler', ButtonStyle.DANGER))
    return tuple(tuple(row) for row in (first, second) if row)


def encode_action(action: Action, order_id: int) -> str:
    return f"{Action(action).value}_{order_id}"


def decode_action(custom_id: str) -> ActionRequest:
    """Decode ``<action>_<order id>``; raises MalformedAction."""
    raw_action, _, raw_id = (custom_id or '').partition('_')
    try:
        action = Action(raw_action)
    except ValueError:
        raise MalformedAction('❌ Action non reconnue', custom_id) from None
    if not (raw_id.isascii() and raw_id.isdigit()) or int(raw_id) <= 0:
        raise MalformedAction('❌ ID de commande invalide', custom_id)
    return ActionRequest(action, int(raw_id))


# ---------- Activity thread ---------- #

ACTIVITY_TEMPLATES = {
    'claim': ('🙋 Commande Claim & Confirmée', 'Commande prise en charge et confirmée par **{actor}**', 0x0099FF),
    'prepare': ('👨‍🍳 Mise en Préparation', 'Commande mise en préparation par **{actor}**', 0xFFFF00),
    'ready': ('📦 Commande Prête', 'Commande prête pour livraison par **{actor}**', 0x9932CC),
    'deliver': ('🚚 Commande Livrée', 'Commande livrée avec succès par **{actor}**', 0x00FF00),
    'cancel': ('❌ Commande Annulée', 'Commande annulée par **{actor}**', 0xFF0000),
    'update': ('📝 Mise à Jour Automatique', 'Statut de la commande mis à jour automatiquement', GREY),
}


def build_activity(action: str, actor: str, numero: Optional[str], status: str) -> ActivityEntry:
    action = action.value if isinstance(action, Action) else str(action)
    title, description, color = ACTIVITY_TEMPLATES.get(
        action, ('📝 Action sur Commande', f'Action "{action}" effectuée par **{{actor}}**', GREY)
    )
    fields = (
        Field('📋 N° Commande', numero or 'N/A'),
        Field('📊 Nouveau Statut', f"{STATUS_ICONS.get(status, '❓')} {status.upper()}"),
        Field('👤 Par', actor),
    )
    return ActivityEntry(
        action=action,
        actor=actor,
        title=title,
        description=description.format(actor=actor),
        color=color,
        fields=fields,
        summary=f"{action} by {actor} → {status}",
    )


def thread_title(numero: str) -> str:
    return f"📋 Suivi Commande #{numero}"

__all__ = [
    'ButtonStyle', 'Field', 'Notification', 'Button', 'ButtonRows', 'ActivityEntry', 'LineView', 'OrderView',
    'ActionRequest', 'MalformedAction', 'to_number', 'format_money', 'format_delivery_window', 'format_date',
    'status_label', 'status_color', 'build_notification', 'build_buttons', 'encode_action', 'decode_action',
    'build_activity', 'thread_title', 'EVENT_CANONICAL', 'EVENT_STATUS_CHANGED', 'EVENT_CANCELLED',
    'NOT_SPECIFIED', 'INVALID_FORMAT',
]
