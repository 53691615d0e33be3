# backend/saleflow/__init__.py
from flask import Flask

from .config import Config
from .extensions import db, migrate
from .errors import register_error_handlers
from .logging_config import configure_logging


def create_app(overrides: dict | None = None) -> Flask:
    app = Flask(__name__, instance_relative_config=True)
    app.config.from_object(Config)
    # Tests point at their own database before any extension binds to it
    if overrides:
        app.config.update(overrides)

    configure_logging(app)

    # Initialize extensions
    db.init_app(app)
    migrate.init_app(app, db)

    # Import models so Alembic can discover metadata reliably
    from . import models  # noqa: F401

    from .services.mpesa_client import init_mpesa_client
    from .services.rate_limit import init_rate_limiter
    init_mpesa_client(app)
    init_rate_limiter(app)

    register_error_handlers(app)

    # Register blueprints
    from .routes.system import system_bp
    from .routes.inventory import inventory_bp
    from .routes.sales import sales_bp
    from .routes.orders import orders_bp
    from .routes.customers import customers_bp
    from .routes.mpesa import mpesa_bp

    app.register_blueprint(system_bp)
    app.register_blueprint(inventory_bp)
    app.register_blueprint(sales_bp)
    app.register_blueprint(orders_bp)
    app.register_blueprint(customers_bp)
    app.register_blueprint(mpesa_bp)

    # Register CLI commands
    from .cli import register_commands
    register_commands(app)

    return app
