# app.py
"""
Flask application factory for the platform integration service

Wires configuration, logging, the database, Celery, rate limiting, CORS,
the API blueprints, JSON error handlers and health checks.
"""

import os
import logging
import logging.handlers
from datetime import datetime, timedelta
from pathlib import Path

# Flask and extensions
from flask import Flask, request, jsonify, g, current_app, has_app_context
from flask_migrate import Migrate
from flask_cors import CORS
from werkzeug.middleware.proxy_fix import ProxyFix
from werkzeug.exceptions import HTTPException

# Database and caching
import redis
from sqlalchemy import event, text
from sqlalchemy.engine import Engine
from sqlalchemy.pool import QueuePool

# Celery and async processing
from celery import Celery
from kombu import Queue

from config.settings import get_config
from core.database_models import db
from core.errors import ServiceError
from middleware.security import limiter, security_headers
from tasks.email_sender import celery_app
from api.accounts import accounts_bp
from api.blog import blog_bp
from api.coupons import coupons_bp
from api.payments import payments_bp
from api.email_crm import email_bp
from api.sitemap import sitemap_bp
from api.storage import storage_bp
from api.subscriptions import subscriptions_bp
from api.webhooks import webhooks_bp

NOISY_LOGGERS = ('werkzeug', 'botocore', 'boto3', 'urllib3', 's3transfer')


def setup_logging(app: Flask) -> None:
    """
    Configure application logging

    Flask's default handler is replaced by a stream handler on the root
    logger so module loggers and Celery share one format. Development also
    writes a rotating file under ``LOG_DIR``.
    """
    # Remove default Flask handlers to avoid duplicate logs
    app.logger.handlers.clear()

    formatter = logging.Formatter(
        fmt='%(asctime)s %(name)-20s %(levelname)-8s %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )
    detailed_formatter = logging.Formatter(
        fmt='%(asctime)s %(name)-20s %(levelname)-8s %(funcName)-15s:%(lineno)-4d %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )

    log_level = getattr(logging, app.config.get('LOG_LEVEL', 'INFO').upper(), logging.INFO)
    root = logging.getLogger()
    root.setLevel(log_level)
    app.logger.setLevel(log_level)

    if not any(getattr(h, '_platform_handler', False) for h in root.handlers):
        stream_handler = logging.StreamHandler()
        stream_handler.setFormatter(formatter)
        stream_handler.setLevel(log_level)
        stream_handler._platform_handler = True
        root.addHandler(stream_handler)

        # File handler for detailed debugging (development only)
        if app.config.get('DEBUG'):
            log_dir = Path(app.config.get('LOG_DIR', 'logs'))
            log_dir.mkdir(exist_ok=True, parents=True)

            file_handler = logging.handlers.RotatingFileHandler(
                log_dir / 'platform.log',
                maxBytes=10*1024*1024,  # 10MB
                backupCount=5
            )
            file_handler.setFormatter(detailed_formatter)
            file_handler.setLevel(logging.DEBUG)
            file_handler._platform_handler = True
            root.addHandler(file_handler)

    # Suppress verbose third-party logs outside debug
    if not app.debug:
        for name in NOISY_LOGGERS:
            logging.getLogger(name).setLevel(logging.WARNING)


def configure_database(app: Flask):
    """
    Configure Flask-SQLAlchemy

    Server databases get a connection pool; every engine gets the slow-query
    listener.
    """
    database_url = app.config.get('DATABASE_URL', 'sqlite:///platform.db')

    engine_options = {}
    if not database_url.startswith('sqlite'):
        engine_options = {
            'poolclass': QueuePool,
            'pool_size': app.config.get('DB_POOL_SIZE', 10),
            'max_overflow': app.config.get('DB_MAX_OVERFLOW', 20),
            'pool_pre_ping': True,  # Verify connections before use
            'pool_recycle': 3600,   # Recycle connections every hour
        }

    if 'postgresql' in database_url:
        engine_options['connect_args'] = {
            'options': '-c default_transaction_isolation=read_committed',
            'application_name': 'platform_integrations',
            'connect_timeout': 10,
        }

    app.config['SQLALCHEMY_DATABASE_URI'] = database_url
    app.config['SQLALCHEMY_ENGINE_OPTIONS'] = engine_options
    app.config['SQLALCHEMY_TRACK_MODIFICATIONS'] = False

    db.init_app(app)

    app.logger.info(f"Database configured: {database_url.split('@')[-1] if '@' in database_url else database_url}")
    return db


@event.listens_for(Engine, "before_cursor_execute")
def receive_before_cursor_execute(conn, cursor, statement, parameters, context, executemany):
    conn.info.setdefault('query_start_time', []).append(datetime.now())


@event.listens_for(Engine, "after_cursor_execute")
def receive_after_cursor_execute(conn, cursor, statement, parameters, context, executemany):
    """Log slow queries for performance monitoring"""
    started = conn.info['query_start_time'].pop(-1)
    total = (datetime.now() - started).total_seconds()
    threshold = current_app.config.get('SLOW_QUERY_THRESHOLD', 1.0) if has_app_context() else 1.0
    if total > threshold:
        logging.getLogger('platform.db').warning(f"Slow query ({total:.2f}s): {statement[:100]}...")


def configure_celery(app: Flask) -> Celery:
    """
    Bind the task module's Celery app to this Flask app

    Tasks run inside this application's context; the sequence poller is put
    on the beat schedule.
    """
    celery_config = {
        'broker_url': app.config['CELERY_BROKER_URL'],
        'result_backend': app.config['CELERY_RESULT_BACKEND'],
        'task_always_eager': app.config.get('CELERY_ALWAYS_EAGER', False),
        'task_eager_propagates': app.config.get('CELERY_ALWAYS_EAGER', False),

        # Queue definitions
        'task_default_queue': 'default',
        'task_queues': (
            Queue('email_sending', routing_key='email_sending'),
            Queue('campaign_management', routing_key='campaign_management'),
            Queue('default', routing_key='default'),
        ),

        'beat_schedule': {
            'process-email-sequences': {
                'task': 'tasks.email_sender.process_email_sequences',
                'schedule': timedelta(minutes=app.config.get('SEQUENCE_POLL_MINUTES', 5)),
            },
        },
    }
    celery_app.conf.update(celery_config)
    celery_app.flask_app = app

    app.extensions['celery'] = celery_app
    app.logger.info("Celery configured")
    return celery_app


def configure_security(app: Flask) -> None:
    """Rate limiting and CORS"""
    limiter.init_app(app)

    CORS(app,
         resources={r"/api/*": {"origins": app.config.get('CORS_ORIGINS', [])}},
         supports_credentials=True,
         allow_headers=['Content-Type', 'Authorization', 'apikey', 'x-client-info'])

    app.logger.info("Security features configured")


def register_blueprints(app: Flask) -> None:
    """
    Register all application blueprints with proper URL prefixes
    """
    app.register_blueprint(subscriptions_bp, url_prefix='/api/subscriptions')
    app.register_blueprint(coupons_bp, url_prefix='/api/coupons')
    app.register_blueprint(payments_bp, url_prefix='/api/payments')
    app.register_blueprint(email_bp, url_prefix='/api/email')
    app.register_blueprint(blog_bp, url_prefix='/api/blog')
    app.register_blueprint(storage_bp, url_prefix='/api/storage')
    app.register_blueprint(accounts_bp, url_prefix='/api/accounts')
    app.register_blueprint(webhooks_bp, url_prefix='/api/webhooks')
    app.register_blueprint(sitemap_bp)

    app.logger.info("Application blueprints registered")


def configure_error_handlers(app: Flask) -> None:
    """
    JSON error bodies for every failure path
    """
    @app.errorhandler(ServiceError)
    def service_error(error):
        if error.status_code >= 500:
            app.logger.error(f"{type(error).__name__} on {request.path}: {error.message}")
        else:
            app.logger.warning(f"{type(error).__name__} on {request.path}: {error.message}")
        return jsonify({'error': error.message}), error.status_code

    @app.errorhandler(400)
    def bad_request(error):
        app.logger.warning(f"Bad request from {request.remote_addr}: {error}")
        return jsonify({'error': 'Invalid request format or parameters'}), 400

    @app.errorhandler(401)
    def unauthorized(error):
        return jsonify({'error': 'Unauthorized'}), 401

    @app.errorhandler(403)
    def forbidden(error):
        return jsonify({'error': 'Forbidden'}), 403

    @app.errorhandler(404)
    def not_found(error):
        return jsonify({'error': 'Not Found'}), 404

    @app.errorhandler(405)
    def method_not_allowed(error):
        return jsonify({'error': 'Method Not Allowed'}), 405

    @app.errorhandler(429)
    def rate_limit_exceeded(error):
        app.logger.warning(f"Rate limit exceeded for {request.remote_addr}")
        return jsonify({
            'error': 'Too many requests. Please try again later.',
            'retry_after': getattr(error, 'retry_after', 60)
        }), 429

    @app.errorhandler(500)
    def internal_error(error):
        app.logger.error(f"Internal server error: {error}", exc_info=True)
        return jsonify({'error': 'Internal Server Error'}), 500

    @app.errorhandler(Exception)
    def handle_exception(e):
        """Handle unexpected exceptions"""
        if isinstance(e, HTTPException):
            return e

        db.session.rollback()
        app.logger.error(f"Unhandled exception: {e}", exc_info=True)
        return jsonify({'error': 'Internal Server Error'}), 500


def configure_health_checks(app: Flask) -> None:
    """
    Configure health check endpoints for monitoring and load balancing
    """
    @app.route('/health')
    def health_check():
        return jsonify({
            'status': 'healthy',
            'timestamp': datetime.utcnow().isoformat(),
            'version': app.config.get('VERSION', '1.0.0')
        })

    @app.route('/health/detailed')
    def detailed_health_check():
        """Detailed health check with component status"""
        health_status = {
            'status': 'healthy',
            'timestamp': datetime.utcnow().isoformat(),
            'components': {}
        }

        try:
            db.session.execute(text('SELECT 1'))
            health_status['components']['database'] = 'healthy'
        except Exception as e:
            health_status['components']['database'] = f'unhealthy: {str(e)}'
            health_status['status'] = 'unhealthy'

        redis_url = app.config.get('REDIS_URL')
        if redis_url:
            try:
                redis.Redis.from_url(redis_url, socket_connect_timeout=2).ping()
                health_status['components']['redis'] = 'healthy'
            except redis.RedisError as e:
                health_status['components']['redis'] = f'unhealthy: {str(e)}'
                if health_status['status'] == 'healthy':
                    health_status['status'] = 'degraded'
        else:
            health_status['components']['redis'] = 'not configured'

        status_code = 200 if health_status['status'] == 'healthy' else 503
        return jsonify(health_status), status_code


def configure_request_middleware(app: Flask) -> None:
    """
    Request timing and security headers
    """
    @app.before_request
    def before_request():
        g.start_time = datetime.utcnow()

    @app.after_request
    def after_request(response):
        response = security_headers(response)

        # Log request performance
        if hasattr(g, 'start_time'):
            duration = (datetime.utcnow() - g.start_time).total_seconds() * 1000
            if duration > app.config.get('SLOW_REQUEST_THRESHOLD', 1000):
                app.logger.warning(f"Slow request ({duration:.0f}ms): {request.method} {request.path}")

        return response


def create_app(config_name: str = None) -> Flask:
    """
    Flask application factory

    Args:
        config_name: Configuration environment ('development', 'testing', 'production')

    Returns:
        Configured Flask application instance
    """
    app = Flask(__name__)

    config_name = config_name or os.environ.get('FLASK_ENV', 'production')
    app.config.from_object(get_config(config_name))

    # Configure proxy handling for production deployment behind nginx
    if config_name == 'production':
        app.wsgi_app = ProxyFix(app.wsgi_app, x_for=1, x_proto=1, x_host=1, x_prefix=1)

    setup_logging(app)
    app.logger.info(f"Starting platform integration service in {config_name} mode")

    configure_database(app)
    Migrate(app, db)

    configure_celery(app)
    configure_security(app)
    register_blueprints(app)
    configure_error_handlers(app)
    configure_health_checks(app)
    configure_request_middleware(app)

    # Create database tables (in production, use migrations instead)
    if config_name == 'development':
        with app.app_context():
            db.create_all()
            app.logger.info("Database tables created (development mode)")

    app.logger.info("Flask application factory completed successfully")
    return app


if __name__ == '__main__':
    # Development server
    create_app('development').run(host='0.0.0.0', port=5000, debug=True)
