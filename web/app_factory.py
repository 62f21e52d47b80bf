"""Flask application factory and error handler registration."""
from __future__ import annotations

from typing import Callable

from flask import Flask, jsonify, request
from werkzeug.exceptions import HTTPException


def _register_error_handlers(flask_app: Flask) -> None:
    @flask_app.errorhandler(HTTPException)
    def handle_http_exception(e: HTTPException):
        if request.path.startswith('/api/'):
            return jsonify({'error': e.description or e.name}), e.code or 500
        return e

    @flask_app.errorhandler(Exception)
    def handle_exception(e: Exception):
        flask_app.logger.exception("Unhandled exception")
        if request.path.startswith('/api/'):
            return jsonify({'error': 'internal server error'}), 500
        return "Internal Server Error", 500


def create_app(
    flask_app: Flask | None = None,
    *,
    configure_blueprints: Callable[[Flask], None] | None = None,
    testing: bool = False,
) -> Flask:
    """Return a configured Flask application instance."""
    if flask_app is None or configure_blueprints is None:
        from app import app as default_app, configure_blueprints as default_configure

        if flask_app is None:
            flask_app = default_app
        if configure_blueprints is None:
            configure_blueprints = default_configure

    if testing:
        flask_app.config['TESTING'] = True
        flask_app.testing = True

    _register_error_handlers(flask_app)
    configure_blueprints(flask_app)
    return flask_app


__all__ = ["create_app"]
