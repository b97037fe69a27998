import os
import secrets
import logging
from dotenv import load_dotenv

load_dotenv()


def _require_in_production(var_name, default):
    """Return env var value. In production, warn loudly if still using default."""
    value = os.environ.get(var_name, "")
    if value:
        return value
    env = os.environ.get("FLASK_ENV", "development")
    if env != "development" and default:
        logging.getLogger(__name__).warning(
            "%s is using an insecure default. Set it via environment variable!", var_name
        )
    return default


def _database_url():
    url = os.environ.get("DATABASE_URL", "")
    if not url:
        return "sqlite:///gigline.db"
    # Fix postgres:// to postgresql:// for SQLAlchemy 2.x
    if url.startswith("postgres://"):
        url = url.replace("postgres://", "postgresql://", 1)
    return url


class Config:
    """Application configuration"""

    # Flask
    SECRET_KEY = _require_in_production(
        'SECRET_KEY', 'dev-only-' + secrets.token_hex(16)
    )
    DEBUG = os.environ.get('FLASK_ENV', 'development') == 'development'
    TESTING = False
    LOG_LEVEL = os.environ.get('LOG_LEVEL', 'INFO')

    # JWT Authentication (tokens are issued by the identity service)
    JWT_SECRET = _require_in_production(
        'JWT_SECRET', 'dev-only-' + secrets.token_hex(32)
    )

    # Database
    SQLALCHEMY_DATABASE_URI = _database_url()
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    MAX_CONTENT_LENGTH = 1 * 1024 * 1024

    # CORS
    CORS_ORIGINS = os.environ.get('CORS_ORIGINS', '*')

    # Rate limiting: Redis when available, otherwise in-process memory
    RATELIMIT_STORAGE_URI = os.environ.get('REDIS_URL') or 'memory://'
    RATELIMIT_ENABLED = True

    # Escrow policy
    ESCROW_FEE_RATE = float(os.environ.get('ESCROW_FEE_RATE', '0.05'))
    ESCROW_HOLD_DAYS = int(os.environ.get('ESCROW_HOLD_DAYS', '7'))

    # Presence
    PRESENCE_BACKEND = os.environ.get('PRESENCE_BACKEND', 'memory')  # memory | redis
    PRESENCE_GRACE_SECONDS = float(os.environ.get('PRESENCE_GRACE_SECONDS', '5'))
    PRESENCE_TTL_SECONDS = int(os.environ.get('PRESENCE_TTL_SECONDS', '60'))
    PRESENCE_RETENTION_SECONDS = int(os.environ.get('PRESENCE_RETENTION_SECONDS', str(7 * 24 * 3600)))
    PRESENCE_SWEEP_SECONDS = float(os.environ.get('PRESENCE_SWEEP_SECONDS', '1'))
    REDIS_URL = os.environ.get('REDIS_URL', '')

    # Socket.IO (None lets Flask-SocketIO pick eventlet when installed)
    SOCKETIO_ASYNC_MODE = os.environ.get('SOCKETIO_ASYNC_MODE') or None

    # Stripe (payment capture webhooks)
    STRIPE_SECRET_KEY = os.environ.get('STRIPE_SECRET_KEY', '')
    STRIPE_WEBHOOK_SECRET = os.environ.get('STRIPE_WEBHOOK_SECRET', '')

    # Error monitoring
    SENTRY_DSN = os.environ.get('SENTRY_DSN', '')

    # Server
    PORT = int(os.environ.get('PORT', '8080'))


class DevelopmentConfig(Config):
    DEBUG = True


class ProductionConfig(Config):
    DEBUG = False
    SQLALCHEMY_ENGINE_OPTIONS = {
        'pool_size': 20,
        'max_overflow': 40,
        'pool_recycle': 3600,
        'pool_pre_ping': True,
    }


class TestingConfig(Config):
    """Testing configuration with isolated database and safe defaults"""

    TESTING = True
    DEBUG = False
    LOG_LEVEL = 'WARNING'

    SECRET_KEY = 'test-secret-key'
    JWT_SECRET = 'test-jwt-secret'

    # Use in-memory SQLite for fast tests
    SQLALCHEMY_DATABASE_URI = os.getenv('TEST_DATABASE_URL', 'sqlite:///:memory:')

    # Disable rate limiting in tests
    RATELIMIT_ENABLED = False
    RATELIMIT_STORAGE_URI = 'memory://'

    PRESENCE_BACKEND = 'memory'
    PRESENCE_GRACE_SECONDS = 5.0
    SOCKETIO_ASYNC_MODE = 'threading'

    STRIPE_SECRET_KEY = ''
    STRIPE_WEBHOOK_SECRET = ''
    SENTRY_DSN = ''
    CORS_ORIGINS = 'http://localhost:5173,http://localhost:3000'


config = {
    'development': DevelopmentConfig,
    'production': ProductionConfig,
    'testing': TestingConfig,
    'default': DevelopmentConfig,
}
