"""
DID Resolution

Maps a DID to the data backfill needs: its PDS endpoint and handle.

- did:plc:<id>  -> GET <plc directory>/<did>
- did:web:<host> -> GET https://<host>/.well-known/did.json

Results are cached in memory for a fixed TTL.
"""

import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple
from urllib.parse import unquote

import requests

from core.config import DEFAULT_PLC_DIRECTORY_URL
from core.errors import IdentityResolutionError

logger = logging.getLogger(__name__)


PDS_SERVICE_ID = '#atproto_pds'
PDS_SERVICE_TYPE = 'AtprotoPersonalDataServer'


@dataclass(frozen=True)
class AtprotoData:
    """The parts of a DID document that matter here."""
    did: str
    pds: str
    handle: Optional[str] = None


def parse_did_document(did: str, doc: Dict[str, Any]) -> AtprotoData:
    """
    Extract the PDS endpoint and handle from a DID document.

    Raises:
        IdentityResolutionError: if the document names no PDS
    """
    pds = None
    for service in doc.get('service') or []:
        if not isinstance(service, dict):
            continue
        service_id = str(service.get('id', ''))
        if service_id.endswith(PDS_SERVICE_ID) or service.get('type') == PDS_SERVICE_TYPE:
            endpoint = service.get('serviceEndpoint')
            if isinstance(endpoint, str) and endpoint:
                pds = endpoint.rstrip('/')
                break

    if not pds:
        raise IdentityResolutionError(f'No PDS endpoint in DID document for {did}', did=did)

    handle = None
    for alias in doc.get('alsoKnownAs') or []:
        if isinstance(alias, str) and alias.startswith('at://'):
            handle = alias[len('at://'):]
            break

    return AtprotoData(did=did, pds=pds, handle=handle)


class DidResolver:
    """Resolves did:plc and did:web identities, with a TTL cache."""

    def __init__(
        self,
        plc_url: str = DEFAULT_PLC_DIRECTORY_URL,
        timeout: float = 30.0,
        cache_ttl: float = 3600.0,
        max_cache_size: int = 10000,
        session: Optional[requests.Session] = None
    ):
        self.plc_url = plc_url.rstrip('/')
        self.timeout = timeout
        self.cache_ttl = cache_ttl
        self.max_cache_size = max_cache_size
        self.session = session or requests.Session()
        self._cache: Dict[str, Tuple[float, AtprotoData]] = {}
        self._lock = threading.Lock()

    def document_url(self, did: str) -> str:
        if did.startswith('did:plc:'):
            return f'{self.plc_url}/{did}'
        if did.startswith('did:web:'):
            encoded_host = did[len('did:web:'):]
            # Path-based did:web identifiers are not used for repositories
            if not encoded_host or ':' in encoded_host:
                raise IdentityResolutionError(f'Unsupported did:web form: {did}', did=did)
            return f'https://{unquote(encoded_host)}/.well-known/did.json'
        raise IdentityResolutionError(f'Unsupported DID method: {did}', did=did)

    def resolve(self, did: str, force_refresh: bool = False) -> AtprotoData:
        """
        Resolve a DID.

        Args:
            did: did:plc or did:web identifier
            force_refresh: Skip the cache

        Raises:
            IdentityResolutionError: on network, HTTP or document errors
        """
        if not force_refresh:
            cached = self._cached(did)
            if cached is not None:
                return cached

        url = self.document_url(did)
        try:
            response = self.session.get(url, timeout=self.timeout)
        except requests.RequestException as e:
            raise IdentityResolutionError(f'Failed to fetch DID document for {did}: {e}', did=did)

        if response.status_code != 200:
            raise IdentityResolutionError(
                f'DID document request for {did} returned {response.status_code}',
                did=did, status=response.status_code
            )

        try:
            doc = response.json()
        except ValueError:
            raise IdentityResolutionError(f'Invalid DID document for {did}', did=did)
        if not isinstance(doc, dict):
            raise IdentityResolutionError(f'Invalid DID document for {did}', did=did)

        data = parse_did_document(did, doc)
        self._store(did, data)

        logger.debug(f'Resolved {did}', extra={'pds': data.pds, 'handle': data.handle})
        return data

    def _cached(self, did: str) -> Optional[AtprotoData]:
        with self._lock:
            entry = self._cache.get(did)
            if entry is None:
                return None
            expires_at, data = entry
            if expires_at <= time.monotonic():
                del self._cache[did]
                return None
            return data

    def _store(self, did: str, data: AtprotoData):
        """Cache a result, dropping expired entries and the oldest beyond max_cache_size."""
        now = time.monotonic()
        with self._lock:
            self._cache.pop(did, None)
            self._cache[did] = (now + self.cache_ttl, data)
            for key in [key for key, (expires_at, _) in self._cache.items() if expires_at <= now]:
                del self._cache[key]
            while len(self._cache) > self.max_cache_size:
                del self._cache[next(iter(self._cache))]

    def clear_cache(self):
        with self._lock:
            self._cache.clear()
