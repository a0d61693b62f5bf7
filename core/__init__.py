"""
Core Infrastructure for atmirror

Provides:
- Configuration loading (YAML + environment)
- The shared exception hierarchy
- Structured logging and timing helpers
- Interfaces for external collaborators (blob processing, sessions)

Usage:
    from core import load_config, setup_logging

    config = load_config()
    setup_logging(config.log_level, json_format=config.log_json)
"""

from .config import MirrorConfig, CollectionIndexConfig, load_config
from .errors import (
    MirrorError, NotFoundError, ValidationError, ConfigurationError,
    MalformedEventError, InvalidRecordError, StreamConnectionError,
    StreamClosedError, IdentityResolutionError, XrpcError
)
from .logging_config import setup_logging, get_logger

__all__ = [
    'MirrorConfig',
    'CollectionIndexConfig',
    'load_config',
    'MirrorError',
    'NotFoundError',
    'ValidationError',
    'ConfigurationError',
    'MalformedEventError',
    'InvalidRecordError',
    'StreamConnectionError',
    'StreamClosedError',
    'IdentityResolutionError',
    'XrpcError',
    'setup_logging',
    'get_logger',
]
