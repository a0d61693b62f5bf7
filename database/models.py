"""
Row Models for the Mirror Store

- AtUri: parse/format at://<did>/<collection>/<rkey>
- Record: one row of the record table
- Actor: one row of the actor table
- hydrate_row: record row -> API-facing dict with flattened blob refs
"""

import json
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Union


def utc_now_iso() -> str:
    """Current UTC time as ISO-8601 with millisecond precision and a Z suffix."""
    return datetime.now(timezone.utc).strftime('%Y-%m-%dT%H:%M:%S.%f')[:-3] + 'Z'


def canonical_json(body: Any) -> str:
    """Compact, deterministic serialization used for the json column."""
    return json.dumps(body, separators=(',', ':'), sort_keys=True, ensure_ascii=False)


# =============================================================================
# URIs
# =============================================================================

_AT_URI_RE = re.compile(r'^at://(?P<authority>[^/?#]+)(?:/(?P<collection>[^/?#]+)(?:/(?P<rkey>[^/?#]+))?)?/?$')


@dataclass(frozen=True)
class AtUri:
    """A record address: at://<authority>/<collection>/<rkey>."""
    authority: str
    collection: str = ''
    rkey: str = ''

    @classmethod
    def parse(cls, uri: str) -> 'AtUri':
        """
        Parse an at:// URI.

        Raises:
            ValueError: if the string is not an at:// URI
        """
        match = _AT_URI_RE.match(uri or '')
        if not match:
            raise ValueError(f'Not an at:// URI: {uri!r}')
        return cls(
            authority=match.group('authority'),
            collection=match.group('collection') or '',
            rkey=match.group('rkey') or '',
        )

    @classmethod
    def make(cls, did: str, collection: str, rkey: str) -> 'AtUri':
        return cls(authority=did, collection=collection, rkey=rkey)

    @property
    def did(self) -> str:
        return self.authority

    def __str__(self) -> str:
        parts = [f'at://{self.authority}']
        if self.collection:
            parts.append(self.collection)
            if self.rkey:
                parts.append(self.rkey)
        return '/'.join(parts)


# =============================================================================
# Rows
# =============================================================================

@dataclass
class Record:
    """
    A mirrored record revision.

    Attributes:
        uri: at:// address (primary key)
        cid: content hash of this revision
        did: owning repository (URI authority)
        collection: record type (URI collection segment)
        json: canonical serialized body
        indexed_at: local ingestion time (ISO-8601)
    """
    uri: str
    cid: str
    did: str
    collection: str
    json: str
    indexed_at: str = field(default_factory=utc_now_iso)

    @classmethod
    def create(
        cls,
        uri: str,
        cid: str,
        body: Union[Dict[str, Any], str],
        indexed_at: Optional[str] = None
    ) -> 'Record':
        """
        Build a Record from a URI and a body, deriving did and collection.

        Args:
            uri: at://<did>/<collection>/<rkey>
            cid: content hash
            body: record body as a dict or JSON text
            indexed_at: ingestion time; defaults to now
        """
        parsed = AtUri.parse(uri)
        if isinstance(body, str):
            body = json.loads(body)
        if not isinstance(body, dict):
            raise ValueError(f'Record body must be an object, got {type(body).__name__}')
        return cls(
            uri=str(parsed),
            cid=cid,
            did=parsed.did,
            collection=parsed.collection,
            json=canonical_json(body),
            indexed_at=indexed_at or utc_now_iso(),
        )

    @property
    def body(self) -> Dict[str, Any]:
        return json.loads(self.json)


@dataclass
class Actor:
    """An identity the mirror has observed."""
    did: str
    handle: Optional[str] = None
    indexed_at: str = field(default_factory=utc_now_iso)
    last_seen_notifs: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'did': self.did,
            'handle': self.handle,
            'indexedAt': self.indexed_at,
            'lastSeenNotifs': self.last_seen_notifs,
        }


# =============================================================================
# Hydration
# =============================================================================

def _is_blob_ref(value: Dict[str, Any]) -> bool:
    if value.get('$type') == 'blob':
        return True
    # Legacy shape predating typed blobs
    return isinstance(value.get('cid'), str) and isinstance(value.get('mimeType'), str)


def hydrate_blob_refs(value: Any) -> Any:
    """
    Flatten blob references anywhere in a body.

    {"$type": "blob", "ref": {"$link": cid}, "mimeType": m, "size": n}
    and the legacy {"cid": cid, "mimeType": m} both become
    {"$type": "blob", "ref": cid, "mimeType": m, "size": n}.
    """
    if isinstance(value, list):
        return [hydrate_blob_refs(item) for item in value]
    if not isinstance(value, dict):
        return value

    if _is_blob_ref(value):
        ref = value.get('ref', value.get('cid'))
        if isinstance(ref, dict):
            ref = ref.get('$link')
        return {
            '$type': 'blob',
            'ref': ref,
            'mimeType': value.get('mimeType'),
            'size': value.get('size'),
        }

    return {key: hydrate_blob_refs(item) for key, item in value.items()}


def hydrate_row(row) -> Dict[str, Any]:
    """Turn a record row into {uri, cid, did, indexedAt, **body}."""
    body = hydrate_blob_refs(json.loads(row['json']))
    return {
        'uri': row['uri'],
        'cid': row['cid'],
        'did': row['did'],
        'indexedAt': row['indexedAt'],
        **body,
    }
