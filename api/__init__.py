"""
HTTP Query Surface for atmirror

A small read-only Flask app over a MirrorService.

Usage:
    from api import create_app

    app = create_app(service)
    app.run(port=8080)
"""

from flask import Flask

from core.logging_config import setup_request_logging

from .error_handlers import setup_error_handlers
from .routes import records_bp


def create_app(service, request_logging: bool = True) -> Flask:
    """
    Build the Flask app.

    Args:
        service: MirrorService answering the queries
        request_logging: Attach request IDs and access logging
    """
    app = Flask(__name__)
    app.json.sort_keys = False
    app.extensions['mirror'] = service

    app.register_blueprint(records_bp)
    setup_error_handlers(app)
    if request_logging:
        setup_request_logging(app)

    return app


__all__ = ['create_app']
