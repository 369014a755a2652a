from __future__ import annotations
import threading
import time
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional, List, Any
from sqlalchemy.orm import Mapped, mapped_column, relationship, validates
from sqlalchemy import Integer, String, Numeric, ForeignKey, DateTime, JSON, Text, CheckConstraint, event, text

from .base import Base

NUMERO_PREFIX = 'CMD'

_stamp_lock = threading.Lock()
_last_stamp = 0


def generate_numero(prefix: str = NUMERO_PREFIX) -> str:
    """Return ``PREFIX-<epoch ms>``, strictly increasing within the process."""
    global _last_stamp
    with _stamp_lock:
        stamp = int(time.time() * 1000)
        if stamp <= _last_stamp:
            stamp = _last_stamp + 1
        _last_stamp = stamp
    return f"{prefix}-{stamp}"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Order(Base):
    __tablename__ = 'orders'
    # Lifecycle status constants
    STATUS_PENDING = 'pending'
    STATUS_CONFIRMED = 'confirmed'
    STATUS_PREPARING = 'preparing'
    STATUS_READY = 'ready'
    STATUS_DELIVERED = 'delivered'
    STATUS_CANCELLED = 'cancelled'
    ALL_STATUSES = (
        STATUS_PENDING,
        STATUS_CONFIRMED,
        STATUS_PREPARING,
        STATUS_READY,
        STATUS_DELIVERED,
        STATUS_CANCELLED,
    )
    TERMINAL_STATUSES = (STATUS_DELIVERED, STATUS_CANCELLED)
    ACTIVE_STATUSES = (STATUS_PENDING, STATUS_CONFIRMED, STATUS_PREPARING, STATUS_READY)

    MODE_DELIVERY = 'delivery'
    MODE_PICKUP = 'pickup'
    ALL_MODES = (MODE_DELIVERY, MODE_PICKUP)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    numero: Mapped[str] = mapped_column(String(32), unique=True, nullable=False, index=True)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default=STATUS_PENDING, index=True)
    total: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False, default=Decimal('0'))
    delivery_mode: Mapped[str] = mapped_column(String(16), nullable=False, default=MODE_DELIVERY)
    delivery_window: Mapped[Optional[Any]] = mapped_column(JSON, nullable=True)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    customer_id: Mapped[Optional[int]] = mapped_column(ForeignKey('customers.id'), nullable=True, index=True)
    business_id: Mapped[Optional[int]] = mapped_column(ForeignKey('businesses.id'), nullable=True, index=True)
    contact_phone: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    # Fulfilment metadata
    claimed_by: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    claimed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    notification_message_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    notification_channel_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow, index=True)
    updated_at: Mapped[str] = mapped_column(DateTime(timezone=True), server_default=text('CURRENT_TIMESTAMP'), server_onupdate=text('CURRENT_TIMESTAMP'))

    customer = relationship('Customer')
    business = relationship('Business')
    lines: Mapped[List['OrderLine']] = relationship('OrderLine', back_populates='order', cascade='all, delete-orphan', order_by='OrderLine.id')
    packages: Mapped[List['OrderPackage']] = relationship('OrderPackage', back_populates='order', cascade='all, delete-orphan', order_by='OrderPackage.id')

    __table_args__ = (CheckConstraint('total >= 0', name='ck_orders_total_non_negative'),)

    @validates('numero')
    def _validate_numero(self, key, value):
        if self.numero and value != self.numero:
            raise ValueError('numero is immutable once generated')
        return value

    @validates('total')
    def _validate_total(self, key, value):
        if self.id is not None and self.total is not None and Decimal(str(value)) != Decimal(str(self.total)):
            raise ValueError('total is immutable once persisted')
        if Decimal(str(value)) < 0:
            raise ValueError('total must be non-negative')
        return value


class OrderLine(Base):
    __tablename__ = 'order_lines'
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    order_id: Mapped[int] = mapped_column(ForeignKey('orders.id', ondelete='CASCADE'), nullable=False, index=True)
    product_id: Mapped[int] = mapped_column(ForeignKey('products.id'), nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    unit_price: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)

    order = relationship('Order', back_populates='lines')
    product = relationship('Product')

    __table_args__ = (CheckConstraint('quantity >= 1', name='ck_order_lines_quantity'),)


class OrderPackage(Base):
    __tablename__ = 'order_packages'
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    order_id: Mapped[int] = mapped_column(ForeignKey('orders.id', ondelete='CASCADE'), nullable=False, index=True)
    package_id: Mapped[int] = mapped_column(ForeignKey('packages.id'), nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    unit_price: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)

    order = relationship('Order', back_populates='packages')
    package = relationship('Package')

    __table_args__ = (CheckConstraint('quantity >= 1', name='ck_order_packages_quantity'),)


@event.listens_for(Order, 'before_insert')
def _assign_numero(mapper, connection, target: Order):
    if not target.numero:
        target.numero = generate_numero()
