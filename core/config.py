"""
Configuration for atmirror

Settings are layered:
1. Dataclass defaults
2. An optional YAML file (explicit path or MIRROR_CONFIG)
3. MIRROR_* environment variables (a .env file is loaded first)

Usage:
    from core.config import load_config

    config = load_config('config/mirror.yaml')
    config.index.indexed_fields('app.test.post')   # -> ['title']
"""

import os
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from dotenv import load_dotenv

from .errors import ConfigurationError

logger = logging.getLogger(__name__)


DEFAULT_JETSTREAM_URL = "wss://jetstream2.us-west.bsky.network"
DEFAULT_PLC_DIRECTORY_URL = "https://plc.directory"
DEFAULT_RELAY_URL = "https://relay1.us-west.bsky.network"


# =============================================================================
# Index Configuration
# =============================================================================

@dataclass(frozen=True)
class CollectionIndexConfig:
    """
    Per-collection hot fields that get a row in record_kv.

    Attributes:
        collection_key_map: collection NSID -> list of top-level body fields
    """
    collection_key_map: Dict[str, List[str]] = field(default_factory=dict)

    def indexed_fields(self, collection: str) -> List[str]:
        """Configured hot fields for a collection (empty when none)."""
        return list(self.collection_key_map.get(collection, []))

    def is_indexed(self, collection: str, key: str) -> bool:
        return key in self.collection_key_map.get(collection, [])


# =============================================================================
# Mirror Configuration
# =============================================================================

@dataclass
class MirrorConfig:
    """
    Runtime settings for the mirror.

    Attributes:
        database_url: SQLite path, or ':memory:'
        jetstream_url: Jetstream instance; the stream is disabled when empty
        plc_directory_url: PLC directory used to resolve did:plc identities
        relay_url: Relay used to discover repositories during backfill
        collections: Collections owned by the app (always indexed)
        external_collections: Collections indexed only for known actors
        index: Hot fields per collection
        required_fields: Fields a record body must carry, per collection
        max_reconnect_attempts: Stream reconnect budget before giving up
        reconnect_base_delay: First reconnect delay in seconds
        reconnect_max_delay: Reconnect delay cap in seconds
        backfill_concurrency: Parallel (repo, collection) fetches
        backfill_page_size: listRecords page size
        http_timeout: Timeout for XRPC/DID requests in seconds
        log_level: Root log level
        log_json: Emit JSON log lines instead of colored console output
        api_host: Bind host for the HTTP query surface
        api_port: Bind port for the HTTP query surface
    """
    database_url: str = ":memory:"
    jetstream_url: Optional[str] = DEFAULT_JETSTREAM_URL
    plc_directory_url: str = DEFAULT_PLC_DIRECTORY_URL
    relay_url: str = DEFAULT_RELAY_URL
    collections: List[str] = field(default_factory=list)
    external_collections: List[str] = field(default_factory=list)
    index: CollectionIndexConfig = field(default_factory=CollectionIndexConfig)
    required_fields: Dict[str, List[str]] = field(default_factory=dict)
    max_reconnect_attempts: int = 10
    reconnect_base_delay: float = 1.0
    reconnect_max_delay: float = 30.0
    backfill_concurrency: int = 8
    backfill_page_size: int = 100
    http_timeout: float = 30.0
    log_level: str = "INFO"
    log_json: bool = False
    api_host: str = "127.0.0.1"
    api_port: int = 8080

    @property
    def wanted_collections(self) -> List[str]:
        """Owned collections followed by external ones, without duplicates."""
        seen = []
        for collection in self.collections + self.external_collections:
            if collection not in seen:
                seen.append(collection)
        return seen

    def validate(self) -> 'MirrorConfig':
        """Check value ranges; raises ConfigurationError."""
        if self.max_reconnect_attempts < 0:
            raise ConfigurationError(
                'max_reconnect_attempts must be >= 0',
                value=self.max_reconnect_attempts
            )
        if self.reconnect_base_delay <= 0 or self.reconnect_max_delay <= 0:
            raise ConfigurationError('Reconnect delays must be positive')
        if self.reconnect_max_delay < self.reconnect_base_delay:
            raise ConfigurationError(
                'reconnect_max_delay must be >= reconnect_base_delay'
            )
        if self.backfill_concurrency < 1:
            raise ConfigurationError('backfill_concurrency must be >= 1')
        if not 1 <= self.backfill_page_size <= 100:
            raise ConfigurationError('backfill_page_size must be between 1 and 100')
        if self.log_level.upper() not in ('DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL'):
            raise ConfigurationError('Unknown log level', log_level=self.log_level)
        for collection, keys in self.index.collection_key_map.items():
            if not isinstance(keys, list) or not all(isinstance(k, str) for k in keys):
                raise ConfigurationError(
                    'Indexed fields must be a list of strings',
                    collection=collection
                )
        return self

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'MirrorConfig':
        """Build a config from a (YAML-shaped) dictionary."""
        data = dict(data or {})
        known = set(cls.__dataclass_fields__)

        unknown = [key for key in data if key not in known and key != 'indexed_fields']
        if unknown:
            logger.warning(f"Ignoring unknown config keys: {', '.join(sorted(unknown))}")

        key_map = data.pop('indexed_fields', None) or data.pop('index', None) or {}
        if isinstance(key_map, CollectionIndexConfig):
            index = key_map
        elif isinstance(key_map, dict):
            for collection, keys in key_map.items():
                if keys is not None and not isinstance(keys, list):
                    raise ConfigurationError(
                        'Indexed fields must be a list of strings',
                        collection=collection
                    )
            index = CollectionIndexConfig({k: list(v or []) for k, v in key_map.items()})
        else:
            raise ConfigurationError('indexed_fields must be a mapping')

        kwargs = {key: value for key, value in data.items() if key in known}
        kwargs['index'] = index
        try:
            return cls(**kwargs).validate()
        except TypeError as e:
            raise ConfigurationError(f'Invalid configuration: {e}')


# =============================================================================
# Loading
# =============================================================================

ENV_PREFIX = 'MIRROR_'


def _split_list(value: str) -> List[str]:
    return [item.strip() for item in value.split(',') if item.strip()]


def _env_overrides() -> Dict[str, Any]:
    """Collect MIRROR_* overrides from the environment."""
    overrides: Dict[str, Any] = {}

    string_keys = {
        'DATABASE_URL': 'database_url',
        'JETSTREAM_URL': 'jetstream_url',
        'PLC_DIRECTORY_URL': 'plc_directory_url',
        'RELAY_URL': 'relay_url',
        'LOG_LEVEL': 'log_level',
        'API_HOST': 'api_host',
    }
    for env_key, attr in string_keys.items():
        value = os.getenv(ENV_PREFIX + env_key)
        if value is not None:
            overrides[attr] = value

    for env_key, attr in (('COLLECTIONS', 'collections'),
                          ('EXTERNAL_COLLECTIONS', 'external_collections')):
        value = os.getenv(ENV_PREFIX + env_key)
        if value is not None:
            overrides[attr] = _split_list(value)

    log_json = os.getenv(ENV_PREFIX + 'LOG_JSON')
    if log_json is not None:
        overrides['log_json'] = log_json.lower() in ('1', 'true', 'yes')

    for env_key, attr, cast in (('API_PORT', 'api_port', int),
                                ('MAX_RECONNECT_ATTEMPTS', 'max_reconnect_attempts', int),
                                ('BACKFILL_CONCURRENCY', 'backfill_concurrency', int)):
        value = os.getenv(ENV_PREFIX + env_key)
        if value is not None:
            try:
                overrides[attr] = cast(value)
            except ValueError:
                raise ConfigurationError(
                    f'{ENV_PREFIX}{env_key} must be an integer', value=value
                )

    return overrides


def load_config(path: Optional[str] = None, env_file: Optional[str] = None) -> MirrorConfig:
    """
    Load configuration from YAML and the environment.

    Args:
        path: YAML config file. Defaults to $MIRROR_CONFIG when set.
        env_file: .env file to load first. Defaults to ./.env

    Returns:
        Validated MirrorConfig
    """
    load_dotenv(env_file or Path.cwd() / '.env')

    path = path or os.getenv(ENV_PREFIX + 'CONFIG')
    data: Dict[str, Any] = {}

    if path:
        config_path = Path(path)
        if not config_path.exists():
            raise ConfigurationError('Config file not found', path=str(config_path))
        with open(config_path) as f:
            try:
                data = yaml.safe_load(f) or {}
            except yaml.YAMLError as e:
                raise ConfigurationError(f'Invalid YAML: {e}', path=str(config_path))
        if not isinstance(data, dict):
            raise ConfigurationError('Config root must be a mapping', path=str(config_path))

    data.update(_env_overrides())
    return MirrorConfig.from_dict(data)
