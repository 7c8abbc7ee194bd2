# wavebooks/__init__.py
from __future__ import annotations

from flask import Flask, jsonify

from .settings import Config
from .extensions import db, migrate, login_manager, limiter


def create_app(config_object=Config) -> Flask:
    app = Flask(__name__)
    app.config.from_object(config_object)

    # ======================
    # Initialize Extensions
    # ======================
    db.init_app(app)
    migrate.init_app(app, db)
    login_manager.init_app(app)
    limiter.init_app(app)

    # ======================
    # Import Models (CRITICAL)
    # ======================
    from . import models  # noqa: F401

    # ======================
    # Register Blueprints
    # ======================
    from .api import api

    app.register_blueprint(api)

    # ======================
    # Rate limit error handler
    # ======================
    @app.errorhandler(429)
    def ratelimit_handler(e):
        return jsonify({"error_code": "rate-limited", "message": "Too many requests. Please try again later."}), 429

    # ======================
    # Not found handler
    # ======================
    @app.errorhandler(404)
    def not_found(e):
        return jsonify({"error_code": "not-found", "message": "Resource not found."}), 404

    return app
