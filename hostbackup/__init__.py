import os
import logging
from logging.handlers import RotatingFileHandler

import click
from flask import Flask
from flask_sqlalchemy import SQLAlchemy


# Initialize extensions
db = SQLAlchemy()


def configure_logging(app):
    """Configure application logging"""

    # Create logs directory if it doesn't exist
    log_dir = app.config.get('LOG_DIR') or os.path.join(os.path.dirname(os.path.dirname(__file__)), 'data', 'logs')
    os.makedirs(log_dir, exist_ok=True)

    # Set log level based on environment
    log_level = logging.DEBUG if app.config.get('DEBUG', False) else logging.INFO

    # Console handler
    console_handler = logging.StreamHandler()
    console_handler.setLevel(log_level)
    console_formatter = logging.Formatter(
        '[%(asctime)s] %(levelname)s in %(module)s: %(message)s'
    )
    console_handler.setFormatter(console_formatter)

    # File handler
    file_handler = RotatingFileHandler(
        os.path.join(log_dir, 'hostbackup.log'),
        maxBytes=10485760,  # 10MB
        backupCount=10
    )
    file_handler.setLevel(log_level)
    file_formatter = logging.Formatter(
        '[%(asctime)s] %(levelname)s [%(name)s.%(funcName)s:%(lineno)d] %(message)s'
    )
    file_handler.setFormatter(file_formatter)

    # Configure root logger; app.logger and the backup modules propagate to it
    logging.basicConfig(level=log_level, handlers=[console_handler, file_handler], force=True)
    app.logger.setLevel(log_level)

    app.logger.info(f"Logging configured (level: {logging.getLevelName(log_level)})")


def register_commands(app):
    """Register CLI commands (used by cron)"""

    @app.cli.command('run-backup')
    def run_backup_command():
        """Run one backup now; exit status 0 on success or warnings, 1 otherwise."""
        from hostbackup.backup.executor import execute_backup

        outcome = execute_backup(app, trigger='cli')
        click.echo(f"Backup finished: {outcome.value}")
        raise SystemExit(outcome.exit_code)


def create_app(config_name=None, test_config=None):
    """Flask application factory"""
    app = Flask(__name__)

    # Load configuration
    if config_name is None:
        config_name = os.environ.get('FLASK_ENV', 'production')

    from hostbackup.config import config
    app.config.from_object(config[config_name])
    if test_config:
        app.config.update(test_config)

    # Configure logging
    configure_logging(app)

    # Ensure required directories exist
    os.makedirs(app.config['TEMP_DIR'], exist_ok=True)
    os.makedirs(app.config['LOCAL_BACKUP_DIR'], exist_ok=True)
    history_uri = app.config['SQLALCHEMY_DATABASE_URI']
    if history_uri.startswith('sqlite:///'):
        os.makedirs(os.path.dirname(history_uri.replace('sqlite:///', '')) or '.', exist_ok=True)

    # Initialize extensions
    db.init_app(app)

    # Register blueprints
    from hostbackup.routes import backup_routes
    app.register_blueprint(backup_routes.bp)

    register_commands(app)

    # Health check endpoint
    @app.route('/health')
    def health():
        return {'status': 'healthy'}, 200

    # Initialize run history schema
    from hostbackup import models
    with app.app_context():
        db.create_all()

    return app
