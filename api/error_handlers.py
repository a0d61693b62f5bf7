"""
Error Handling for the HTTP Query Surface

Every failure leaves the API as JSON shaped like MirrorError.to_dict():
{error, message, details}. MirrorError subclasses keep their own status
codes; routing errors map to bad_request/not_found/method_not_allowed and
anything else becomes a 500 whose message hides the cause.

Usage:
    from api.error_handlers import setup_error_handlers

    setup_error_handlers(app)
"""

import logging

from flask import jsonify, request, current_app

from core.errors import MirrorError

logger = logging.getLogger('atmirror.api.errors')

HTTP_ERROR_TYPES = {
    400: 'bad_request',
    404: 'not_found',
    405: 'method_not_allowed',
}


def error_response(error_type, message, status, details=None):
    response = jsonify({'error': error_type, 'message': message, 'details': details or {}})
    response.status_code = status
    return response


def _routing_message(status):
    if status == 404:
        return f'No route for {request.path}'
    if status == 405:
        return f'{request.method} is not supported on {request.path}'
    return 'Malformed request'


def setup_error_handlers(app):
    """Register JSON error handlers on the Flask app."""

    @app.errorhandler(MirrorError)
    def handle_mirror_error(error):
        logger.warning(
            f'{request.method} {request.path} rejected: {error.message}',
            extra={'error_type': error.error_type, 'details': error.details}
        )
        return error_response(error.error_type, error.message, error.status_code, error.details)

    def handle_http_error(error):
        status = getattr(error, 'code', None) or 500
        return error_response(HTTP_ERROR_TYPES[status], _routing_message(status), status)

    for status in HTTP_ERROR_TYPES:
        app.register_error_handler(status, handle_http_error)

    @app.errorhandler(Exception)
    def handle_unexpected_error(error):
        logger.exception(
            f'Unhandled {type(error).__name__} serving {request.path}',
            extra={'error_type': type(error).__name__}
        )

        details = {'type': type(error).__name__} if current_app.debug else None
        message = str(error) if current_app.debug else 'An unexpected error occurred'
        return error_response('unexpected_error', message, 500, details)
