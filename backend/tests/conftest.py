import os, sys, pytest
from datetime import datetime, timedelta, timezone
from decimal import Decimal
# Ensure backend directory is on path so 'fulfillment' can be imported
ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), '..'))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)
from flask_jwt_extended import create_access_token
from sqlalchemy import delete, select
import fulfillment
from fulfillment import create_app, get_db
from fulfillment.config.notifications import MEMORY_CHANNEL_FACTORY, NotifySettings
from fulfillment.models.audit import AuditLog
from fulfillment.models.catalog import Business, Customer, Package, Product
from fulfillment.models.order import Order, OrderLine, OrderPackage
from fulfillment.services.memory_channel import MemoryChannel
from fulfillment.services.notifications import NotificationService
from fulfillment.services.store import OrderStore

DELIVERY = 'chan-delivery'
PICKUP = 'chan-pickup'
T0 = 1_700_000_000.0


@pytest.fixture(scope='session', autouse=True)
def app_instance():
    app = create_app({
        'DATABASE_URL': 'sqlite+pysqlite:///:memory:',
        'TESTING': True,
        'NOTIFY_BOT_TOKEN': 'test-token',
        'NOTIFY_DELIVERY_CHANNEL_ID': DELIVERY,
        'NOTIFY_PICKUP_CHANNEL_ID': PICKUP,
        'NOTIFY_CHANNEL_FACTORY': MEMORY_CHANNEL_FACTORY,
        'NOTIFY_BACKGROUND': False,
        'NOTIFY_AUTOSTART': False,
        'NOTIFY_SWEEP_DELAY': 0,
        'NOTIFY_SWEEP_DELAY_MAX': 0,
    })
    yield app
    app.extensions['notifications'].shutdown()


@pytest.fixture()
def client(app_instance):
    return app_instance.test_client()


@pytest.fixture(autouse=True)
def clean_orders(app_instance):
    """Every test starts without orders or audit rows; catalog rows are shared."""
    session = get_db()
    session.rollback()
    for model in (AuditLog, OrderLine, OrderPackage, Order):
        session.execute(delete(model))
    session.commit()
    yield
    session.rollback()


class Clock:
    def __init__(self, now: float = T0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture()
def clock():
    return Clock()


@pytest.fixture()
def settings():
    return NotifySettings(
        token='test-token',
        delivery_channel_id=DELIVERY,
        pickup_channel_id=PICKUP,
        channel_factory=MEMORY_CHANNEL_FACTORY,
        background=False,
        sweep_delay=0,
        sweep_delay_max=0,
    )


@pytest.fixture()
def channel(settings, clock):
    return MemoryChannel(settings, clock=clock)


@pytest.fixture()
def store():
    return OrderStore(fulfillment.SessionLocal)


@pytest.fixture()
def engine(settings, store, channel, clock):
    service = NotificationService(settings, store, channel=channel, clock=clock)
    yield service
    service.shutdown()


def _catalog_row(session, model, name, price, **extra):
    row = session.execute(select(model).where(model.name == name)).scalar_one_or_none()
    if row is None:
        row = model(name=name, price=Decimal(price), **extra)
        session.add(row)
        session.flush()
    return row


@pytest.fixture()
def catalog():
    session = get_db()
    business = session.execute(select(Business).where(Business.name == 'Le Bistrot')).scalar_one_or_none()
    if business is None:
        business = Business(name='Le Bistrot')
        session.add(business)
        session.flush()
    burger = _catalog_row(session, Product, 'Burger', '12.50', business_id=business.id)
    fries = _catalog_row(session, Product, 'Frites', '3.00', business_id=business.id)
    retired = _catalog_row(session, Product, 'Ancien plat', '9.00', business_id=business.id, active=False)
    menu = _catalog_row(session, Package, 'Menu Midi', '15.00', business_id=business.id)
    customer = session.execute(select(Customer).where(Customer.username == 'jdupont')).scalar_one_or_none()
    if customer is None:
        customer = Customer(username='jdupont', first_name='Jean', last_name='Dupont', email='jd@example.com')
        session.add(customer)
    session.commit()
    return {'business': business, 'burger': burger, 'fries': fries, 'retired': retired, 'menu': menu,
            'customer': customer}


@pytest.fixture()
def make_order(catalog):
    """Insert an order directly (bypassing the API and its notification)."""
    def factory(id=None, status=Order.STATUS_PENDING, delivery_mode=Order.MODE_DELIVERY, age_minutes=0, **kw):
        kw.setdefault('contact_phone', '0612345678')
        session = get_db()
        o = Order(
            id=id,
            status=status,
            total=Decimal('40.00'),
            delivery_mode=delivery_mode,
            business_id=catalog['business'].id,
            created_at=datetime.now(timezone.utc) - timedelta(minutes=age_minutes),
            lines=[OrderLine(product_id=catalog['burger'].id, quantity=2, unit_price=Decimal('12.50'))],
            packages=[OrderPackage(package_id=catalog['menu'].id, quantity=1, unit_price=Decimal('15.00'))],
            **kw,
        )
        session.add(o)
        session.commit()
        return o
    return factory


@pytest.fixture()
def auth_headers(app_instance):
    def factory(*perms, identity='staff'):
        with app_instance.app_context():
            token = create_access_token(identity=identity, additional_claims={'perms': list(perms)})
        return {'Authorization': f'Bearer {token}'}
    return factory


@pytest.fixture()
def app_channel(app_instance):
    return app_instance.extensions['notifications'].channel
