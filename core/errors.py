"""
Error Types for atmirror

Provides:
- A single exception hierarchy shared by stores, ingestion and the HTTP surface
- HTTP status / error type metadata for the API error handlers
- Structured details for logging

Usage:
    from core.errors import MalformedEventError, NotFoundError

    if 'did' not in data:
        raise MalformedEventError("Event is missing 'did'", payload_keys=list(data))
"""


# =============================================================================
# Base Exception
# =============================================================================

class MirrorError(Exception):
    """Base exception for atmirror errors."""

    status_code = 500
    error_type = 'internal_error'
    message = 'An unexpected error occurred'

    def __init__(self, message=None, **kwargs):
        super().__init__(message or self.message)
        self.message = message or self.message
        self.details = kwargs

    def to_dict(self):
        return {
            'error': self.error_type,
            'message': self.message,
            'details': self.details
        }


# =============================================================================
# Query / API Errors
# =============================================================================

class NotFoundError(MirrorError):
    """Resource not found."""
    status_code = 404
    error_type = 'not_found'
    message = 'Resource not found'


class ValidationError(MirrorError):
    """Invalid input data."""
    status_code = 400
    error_type = 'validation_error'
    message = 'Invalid input'


class ConfigurationError(MirrorError):
    """Configuration issue."""
    status_code = 500
    error_type = 'configuration_error'
    message = 'Mirror configuration error'


# =============================================================================
# Ingestion Errors
# =============================================================================

class MalformedEventError(MirrorError):
    """A stream payload did not have the shape of a commit/identity event."""
    status_code = 400
    error_type = 'malformed_event'
    message = 'Malformed stream event'


class InvalidRecordError(MirrorError):
    """A record body failed validation for its collection."""
    status_code = 400
    error_type = 'invalid_record'
    message = 'Invalid record'


class StreamConnectionError(MirrorError):
    """The stream could not be (re)established within the attempt budget."""
    status_code = 503
    error_type = 'stream_unavailable'
    message = 'Stream connection failed'


class StreamClosedError(MirrorError):
    """The ingestor was explicitly closed and cannot be reused."""
    status_code = 409
    error_type = 'stream_closed'
    message = 'Stream ingestor is closed'


class IdentityResolutionError(MirrorError):
    """A DID could not be resolved to a repository host."""
    status_code = 502
    error_type = 'identity_resolution_error'
    message = 'Failed to resolve identity'


class XrpcError(MirrorError):
    """An XRPC call to a relay or PDS failed."""
    status_code = 502
    error_type = 'xrpc_error'
    message = 'XRPC request failed'

    def __init__(self, message=None, status=None, retryable=False, **kwargs):
        super().__init__(message, status=status, **kwargs)
        self.status = status
        self.retryable = retryable
