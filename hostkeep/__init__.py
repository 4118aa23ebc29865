import os
import logging
from logging.handlers import RotatingFileHandler
from flask import Flask
from flask_sqlalchemy import SQLAlchemy


# Initialize extensions
db = SQLAlchemy()

# Log file chosen by the first configure_logging call in this process
_log_file = None
_handlers = []


def resolve_log_file(app):
    """
    Pick the log file location once per process.

    The configured LOG_DIR is tried first, then <DATA_DIR>/logs. Later app
    instances reuse the first answer. Returns None when neither location
    is writable (console logging only).
    """
    global _log_file

    if _log_file is None:
        candidates = [app.config.get('LOG_DIR'), os.path.join(app.config['DATA_DIR'], 'logs')]
        for log_dir in candidates:
            if not log_dir:
                continue
            try:
                os.makedirs(log_dir, exist_ok=True)
            except OSError:
                continue
            if os.access(log_dir, os.W_OK):
                _log_file = os.path.join(log_dir, 'hostkeep.log')
                break

    app.config['LOG_FILE'] = _log_file
    return _log_file


def configure_logging(app):
    """Configure process-wide logging"""

    log_level = logging.DEBUG if app.config.get('DEBUG', False) else logging.INFO
    log_file = resolve_log_file(app)

    app.logger.setLevel(log_level)
    logging.getLogger('hostkeep').setLevel(log_level)

    if _handlers:
        return

    # sudo-style level names in the log
    logging.addLevelName(logging.WARNING, 'WARN')

    # Console handler
    console_handler = logging.StreamHandler()
    console_handler.setLevel(log_level)
    console_handler.setFormatter(logging.Formatter(
        '[%(asctime)s] %(levelname)s in %(module)s: %(message)s'
    ))
    _handlers.append(console_handler)

    # File handler
    if log_file:
        file_handler = RotatingFileHandler(
            log_file,
            maxBytes=10485760,  # 10MB
            backupCount=10
        )
        file_handler.setLevel(log_level)
        file_handler.setFormatter(logging.Formatter(
            '[%(asctime)s] %(levelname)s [%(name)s.%(funcName)s:%(lineno)d] %(message)s'
        ))
        _handlers.append(file_handler)

    # Configure root logger
    logging.basicConfig(level=log_level, handlers=list(_handlers))

    app.logger.info(
        f"Logging configured (level: {logging.getLevelName(log_level)}, file: {log_file or 'none'})"
    )


def create_app(config_name=None, overrides=None):
    """Flask application factory"""

    app = Flask(__name__)

    # Load configuration
    if config_name is None:
        config_name = os.environ.get('HOSTKEEP_ENV', 'production')

    from hostkeep.config import config
    app.config.from_object(config[config_name])
    if overrides:
        app.config.update(overrides)

    # Configure logging
    configure_logging(app)

    # Ensure the database directory exists
    database_uri = app.config['SQLALCHEMY_DATABASE_URI']
    if database_uri.startswith('sqlite:///') and ':memory:' not in database_uri:
        os.makedirs(os.path.dirname(database_uri.replace('sqlite:///', '')), exist_ok=True)

    # Initialize extensions
    db.init_app(app)

    # Register blueprints
    from hostkeep.routes import history_routes, status_routes
    app.register_blueprint(history_routes.bp)
    app.register_blueprint(status_routes.bp)

    # Health check endpoint
    @app.route('/health')
    def health():
        return {'status': 'healthy'}, 200

    # Initialize database schema and run migrations
    from hostkeep import models  # noqa: F401
    from hostkeep.migrations import init_database_schema

    init_database_schema(app)

    return app
