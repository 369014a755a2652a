from flask import Flask, current_app
from flask.logging import default_handler
from werkzeug.exceptions import HTTPException
from flask_jwt_extended import JWTManager
from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool
from sqlalchemy.orm import sessionmaker, scoped_session
from dotenv import load_dotenv
from typing import Optional, Dict, Any
import logging
import os

load_dotenv()

db_engine = None
SessionLocal = None
jwt = JWTManager()

# settings copied from the environment into app.config (tests override through create_app(config))
ENV_KEYS = (
    'LOG_LEVEL',
    'NOTIFY_BOT_TOKEN',
    'NOTIFY_DELIVERY_CHANNEL_ID',
    'NOTIFY_PICKUP_CHANNEL_ID',
    'NOTIFY_CHANNEL_FACTORY',
    'NOTIFY_BACKGROUND',
    'NOTIFY_READY_TIMEOUT',
    'NOTIFY_SWEEP_INTERVAL',
    'NOTIFY_SKIP_WINDOW',
    'NOTIFY_MAX_INTERACTION_AGE',
    'NOTIFY_PROTECTION_WINDOW',
    'NOTIFY_DEDUP_MAX_AGE',
    'NOTIFY_SWEEP_DELAY',
    'NOTIFY_SWEEP_DELAY_MAX',
)


def create_app(config: Optional[Dict[str, Any]] = None):
    global db_engine, SessionLocal
    app = Flask(__name__)

    app.config['JWT_SECRET_KEY'] = os.getenv('JWT_SECRET_KEY', 'dev-secret')
    app.config['DATABASE_URL'] = os.getenv('DATABASE_URL', 'sqlite:///dev.db')
    app.config['LOG_LEVEL'] = 'INFO'
    for key in ENV_KEYS:
        if os.getenv(key) is not None:
            app.config[key] = os.getenv(key)

    if config:
        # allow tests or callers to override default config values
        app.config.update(config)

    # Logging: engine modules log under the package logger
    pkg_logger = logging.getLogger(__name__)
    if default_handler not in pkg_logger.handlers:
        pkg_logger.addHandler(default_handler)
    pkg_logger.setLevel(str(app.config['LOG_LEVEL']).upper())

    # Database
    db_url = app.config['DATABASE_URL']
    if db_url.endswith(':memory:'):
        # Ensure a single shared in-memory SQLite database across all sessions
        db_engine = create_engine(
            db_url,
            echo=False,
            future=True,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    else:
        db_engine = create_engine(db_url, echo=False, future=True)
    SessionLocal = scoped_session(sessionmaker(bind=db_engine, expire_on_commit=False, autoflush=False))

    from .models.base import Base
    from .models import audit, catalog, order  # noqa: F401  register tables
    if app.config.get('AUTO_CREATE_SCHEMA', db_url.startswith('sqlite')):
        Base.metadata.create_all(db_engine)

    jwt.init_app(app)

    # Chat notification engine
    from .config.notifications import NotifySettings
    from .services.notifications import NotificationService
    from .services.store import OrderStore
    settings = NotifySettings.from_mapping(app.config)
    service = NotificationService(settings, OrderStore(SessionLocal))
    app.extensions['notifications'] = service
    if app.config.get('NOTIFY_AUTOSTART', True):
        service.boot()

    from .routes.orders import orders_bp
    from .routes.notifications import notify_bp
    app.register_blueprint(orders_bp, url_prefix='/orders')
    app.register_blueprint(notify_bp, url_prefix='/notifications')

    @app.route('/healthz')
    def health():
        return {'status': 'ok', 'notifications': service.active}

    # Unified error handler producing standardized JSON shape
    @app.errorhandler(Exception)
    def handle_errors(e):  # type: ignore
        if isinstance(e, HTTPException):
            payload = {
                'error': {
                    'status': e.code,
                    'title': e.name,
                    'detail': e.description,
                }
            }
            return payload, e.code
        app.logger.exception('Unhandled exception')
        return {
            'error': {
                'status': 500,
                'title': 'Internal Server Error',
                'detail': 'Unexpected error'
            }
        }, 500

    return app


def get_db():
    return SessionLocal()


def get_notifications():
    return current_app.extensions['notifications']
