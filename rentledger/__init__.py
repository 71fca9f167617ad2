# rentledger/__init__.py
from __future__ import annotations

import logging

from flask import Flask

from .settings import Config
from .extensions import db, migrate


def create_app(config: dict | None = None) -> Flask:
    app = Flask(__name__)
    app.config.from_object(Config)
    if config:
        app.config.update(config)

    app.logger.setLevel(getattr(logging, str(app.config.get("LOG_LEVEL", "INFO")).upper(), logging.INFO))

    # ======================
    # Initialize Extensions
    # ======================
    db.init_app(app)
    migrate.init_app(app, db)

    # ======================
    # Import Models (CRITICAL)
    # ======================
    from . import models  # noqa: F401

    # ======================
    # Error handlers
    # ======================
    from .errors import register_error_handlers

    register_error_handlers(app)

    # ======================
    # CLI (overdue sweeper)
    # ======================
    from .cli import register_cli

    register_cli(app)

    return app
