# config/settings.py
"""
Environment-driven configuration for the platform integration service
"""

import os
import json
import secrets
from datetime import timedelta

from dotenv import load_dotenv

load_dotenv()


def _env_list(name: str, default: str = '') -> list:
    raw = os.environ.get(name, default)
    return [item.strip() for item in raw.split(',') if item.strip()]


def _env_json(name: str, default: dict) -> dict:
    raw = os.environ.get(name)
    if not raw:
        return dict(default)
    return json.loads(raw)


class BaseConfig:
    """Settings shared by every environment"""

    VERSION = os.environ.get('APP_VERSION', '1.0.0')
    SECRET_KEY = os.environ.get('SECRET_KEY') or secrets.token_urlsafe(32)
    LOG_LEVEL = os.environ.get('LOG_LEVEL', 'INFO')
    LOG_DIR = os.environ.get('LOG_DIR', 'logs')
    SLOW_REQUEST_THRESHOLD = float(os.environ.get('SLOW_REQUEST_THRESHOLD', 1000))  # ms
    SLOW_QUERY_THRESHOLD = 1.0  # seconds

    # Session settings
    SESSION_COOKIE_SECURE = True
    SESSION_COOKIE_HTTPONLY = True
    SESSION_COOKIE_SAMESITE = 'Lax'
    PERMANENT_SESSION_LIFETIME = timedelta(hours=8)
    MAX_CONTENT_LENGTH = 32 * 1024 * 1024  # WordPress exports can be large

    # Database
    DATABASE_URL = os.environ.get('DATABASE_URL', 'sqlite:///platform.db')
    DB_POOL_SIZE = int(os.environ.get('DB_POOL_SIZE', 10))
    DB_MAX_OVERFLOW = int(os.environ.get('DB_MAX_OVERFLOW', 20))

    # Redis / Celery
    REDIS_URL = os.environ.get('REDIS_URL', 'redis://localhost:6379/1')
    CELERY_BROKER_URL = os.environ.get('CELERY_BROKER_URL', 'redis://localhost:6379/0')
    CELERY_RESULT_BACKEND = os.environ.get('CELERY_RESULT_BACKEND', 'redis://localhost:6379/0')
    CELERY_ALWAYS_EAGER = False
    SEQUENCE_POLL_MINUTES = int(os.environ.get('SEQUENCE_POLL_MINUTES', 5))

    # Rate limiting
    RATELIMIT_STORAGE_URI = os.environ.get('RATELIMIT_STORAGE_URI', 'redis://localhost:6379/3')
    RATELIMIT_STRATEGY = 'fixed-window'
    RATELIMIT_HEADERS_ENABLED = True
    RATELIMIT_DEFAULT = '1000 per hour'

    CORS_ORIGINS = _env_list('CORS_ORIGINS', 'http://localhost:5173')

    SITE_URL = os.environ.get('SITE_URL', 'https://worldmusicmethod.com').rstrip('/')
    SITEMAP_HOST = os.environ.get('SITEMAP_HOST', 'https://worldmusicmethod.lovable.app').rstrip('/')

    # Bearer tokens issued by the platform's auth service
    AUTH_JWT_SECRET = os.environ.get('AUTH_JWT_SECRET', '')
    AUTH_JWT_AUDIENCE = os.environ.get('AUTH_JWT_AUDIENCE', 'authenticated')
    AUTH_JWT_ALGORITHMS = ['HS256']

    # Stripe
    STRIPE_SECRET_KEY = os.environ.get('STRIPE_SECRET_KEY', '')
    STRIPE_WEBHOOK_SECRET = os.environ.get('STRIPE_WEBHOOK_SECRET', '')

    # PayPal
    PAYPAL_CLIENT_ID = os.environ.get('PAYPAL_CLIENT_ID', '')
    PAYPAL_SECRET = os.environ.get('PAYPAL_SECRET', '')
    PAYPAL_API_BASE = os.environ.get('PAYPAL_API_BASE', 'https://api-m.paypal.com')
    PAYPAL_TIMEOUT = 15

    # AWS SES
    AWS_SES_REGION = os.environ.get('AWS_SES_REGION', 'eu-west-2')
    AWS_SES_ACCESS_KEY_ID = os.environ.get('AWS_SES_ACCESS_KEY_ID')
    AWS_SES_SECRET_ACCESS_KEY = os.environ.get('AWS_SES_SECRET_ACCESS_KEY')
    EMAIL_DEFAULT_SENDER_DOMAIN = 'worldmusicmethod.com'
    EMAIL_SENDER_ADDRESSES = _env_json('EMAIL_SENDER_ADDRESSES', {
        'worldmusicmethod.com': 'World Music Method <info@worldmusicmethod.com>',
        'arts-admin.com': 'Left Brain <info@arts-admin.com>',
    })
    CAMPAIGN_FROM_ADDRESS = os.environ.get('CAMPAIGN_FROM_ADDRESS', 'noreply@worldmusicmethod.com')
    CAMPAIGN_THROTTLE_EVERY = 10
    CAMPAIGN_THROTTLE_SECONDS = 0.1
    UNSUBSCRIBE_SALT = 'email-unsubscribe'

    # Cloudflare R2
    R2_ACCOUNT_ID = os.environ.get('R2_ACCOUNT_ID', '')
    R2_ACCESS_KEY_ID = os.environ.get('R2_ACCESS_KEY_ID', '')
    R2_SECRET_ACCESS_KEY = os.environ.get('R2_SECRET_ACCESS_KEY', '')
    R2_ADMIN_BUCKET = os.environ.get('R2_ADMIN_BUCKET', '')
    R2_USER_BUCKET = os.environ.get('R2_USER_BUCKET', '')
    R2_ADMIN_PUBLIC_URL = os.environ.get('R2_ADMIN_PUBLIC_URL', '')
    R2_USER_PUBLIC_URL = os.environ.get('R2_USER_PUBLIC_URL', '')
    R2_PRESIGN_EXPIRY = 600

    BLOG_FALLBACK_IMAGE = os.environ.get(
        'BLOG_FALLBACK_IMAGE',
        'https://pub-cbdecee3a4d44866a8523b54ebfd19f8.r2.dev/2024/04/cropped-Site-Favicon-32x32.png',
    )
    WORDPRESS_UPLOAD_HOSTS = _env_list('WORDPRESS_UPLOAD_HOSTS', 'worldmusicmethod.com')
    # Bucket that already mirrors wp-content/uploads; unset means images are copied one by one
    WORDPRESS_R2_MIRROR_URL = os.environ.get('WORDPRESS_R2_MIRROR_URL', '')
    IMAGE_DOWNLOAD_TIMEOUT = 20

    # Security headers
    SECURITY_HEADERS = {
        'X-Content-Type-Options': 'nosniff',
        'X-Frame-Options': 'DENY',
        'X-XSS-Protection': '1; mode=block',
        'Strict-Transport-Security': 'max-age=31536000; includeSubDomains',
        'Referrer-Policy': 'strict-origin-when-cross-origin',
        'Permissions-Policy': 'camera=(), microphone=(), geolocation=()'
    }


class DevelopmentConfig(BaseConfig):
    DEBUG = True
    LOG_LEVEL = os.environ.get('LOG_LEVEL', 'DEBUG')
    SESSION_COOKIE_SECURE = False
    RATELIMIT_STORAGE_URI = os.environ.get('RATELIMIT_STORAGE_URI', 'memory://')


class TestingConfig(BaseConfig):
    TESTING = True
    DATABASE_URL = 'sqlite://'
    REDIS_URL = None
    CELERY_ALWAYS_EAGER = True
    CELERY_BROKER_URL = 'memory://'
    CELERY_RESULT_BACKEND = 'cache+memory://'
    RATELIMIT_STORAGE_URI = 'memory://'
    RATELIMIT_ENABLED = False
    SESSION_COOKIE_SECURE = False
    SECRET_KEY = 'testing-secret-key'
    AUTH_JWT_SECRET = 'testing-jwt-secret'
    STRIPE_SECRET_KEY = 'sk_test_dummy'
    STRIPE_WEBHOOK_SECRET = ''
    PAYPAL_CLIENT_ID = 'paypal-client'
    PAYPAL_SECRET = 'paypal-secret'
    R2_ACCOUNT_ID = 'acct123'
    R2_ACCESS_KEY_ID = 'r2-key'
    R2_SECRET_ACCESS_KEY = 'r2-secret'
    R2_ADMIN_BUCKET = 'admin-bucket'
    R2_USER_BUCKET = 'user-bucket'
    R2_ADMIN_PUBLIC_URL = 'https://pub-admin.r2.dev'
    R2_USER_PUBLIC_URL = 'https://pub-user.r2.dev'
    SITE_URL = 'https://example.test'
    SITEMAP_HOST = 'https://example.test'
    CAMPAIGN_THROTTLE_SECONDS = 0


class ProductionConfig(BaseConfig):
    """Production deployment behind a reverse proxy"""

    PREFERRED_URL_SCHEME = 'https'


CONFIG_BY_NAME = {
    'development': DevelopmentConfig,
    'testing': TestingConfig,
    'production': ProductionConfig,
}


def get_config(config_name: str = None):
    config_name = config_name or os.environ.get('FLASK_ENV', 'production')
    return CONFIG_BY_NAME.get(config_name, ProductionConfig)
