"""
Stream Event Parsing and Application

Jetstream delivers JSON objects of the form

    {"did": "did:plc:...", "time_us": 1725911162329308, "kind": "commit",
     "commit": {"rev": "...", "operation": "create", "collection": "app.test.post",
                "rkey": "abc", "cid": "bafy...", "record": {...}}}

or, for handle changes,

    {"did": "did:plc:...", "time_us": ..., "kind": "identity",
     "identity": {"did": "did:plc:...", "handle": "alice.test", "seq": 1, "time": "..."}}

parse_event() turns one into a JetstreamEvent; CommitHandler applies it to
the stores and is used as the ingestor's event handler.
"""

import logging
import sqlite3
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from core.config import MirrorConfig
from core.errors import InvalidRecordError, MalformedEventError
from database.actors import ActorRepository
from database.models import Actor, AtUri, Record
from database.repository import RecordRepository

logger = logging.getLogger(__name__)


OPERATIONS = ('create', 'update', 'delete')


# =============================================================================
# Event Model
# =============================================================================

@dataclass
class CommitEvent:
    """One repository operation carried by a commit event."""
    operation: str
    collection: str
    rkey: str
    cid: Optional[str] = None
    record: Optional[Dict[str, Any]] = None
    rev: Optional[str] = None

    def uri(self, did: str) -> str:
        return str(AtUri.make(did, self.collection, self.rkey))


@dataclass
class IdentityEvent:
    did: str
    handle: Optional[str] = None


@dataclass
class JetstreamEvent:
    """A decoded stream message."""
    did: str
    time_us: Optional[int]
    kind: str
    commit: Optional[CommitEvent] = None
    identity: Optional[IdentityEvent] = None


def _require_str(data: Dict[str, Any], key: str, where: str) -> str:
    value = data.get(key)
    if not isinstance(value, str) or not value:
        raise MalformedEventError(f"{where} is missing '{key}'", key=key)
    return value


def parse_event(data: Any) -> JetstreamEvent:
    """
    Parse a decoded stream message.

    Args:
        data: JSON-decoded message

    Returns:
        JetstreamEvent; unknown kinds are returned with neither commit nor identity

    Raises:
        MalformedEventError: if the message does not have the expected shape
    """
    if not isinstance(data, dict):
        raise MalformedEventError('Event is not an object')

    did = _require_str(data, 'did', 'Event')
    kind = _require_str(data, 'kind', 'Event')

    time_us = data.get('time_us')
    if time_us is not None and (isinstance(time_us, bool) or not isinstance(time_us, int)):
        raise MalformedEventError("Event 'time_us' must be an integer", time_us=repr(time_us))

    event = JetstreamEvent(did=did, time_us=time_us, kind=kind)

    if kind == 'commit':
        commit = data.get('commit')
        if not isinstance(commit, dict):
            raise MalformedEventError("Commit event is missing 'commit'")

        operation = _require_str(commit, 'operation', 'Commit')
        if operation not in OPERATIONS:
            raise MalformedEventError(f'Unknown commit operation: {operation}')

        record = commit.get('record')
        if operation != 'delete':
            if not isinstance(record, dict):
                raise MalformedEventError(f"{operation} commit is missing 'record'")
            _require_str(commit, 'cid', 'Commit')

        event.commit = CommitEvent(
            operation=operation,
            collection=_require_str(commit, 'collection', 'Commit'),
            rkey=_require_str(commit, 'rkey', 'Commit'),
            cid=commit.get('cid'),
            record=record if isinstance(record, dict) else None,
            rev=commit.get('rev'),
        )

    elif kind == 'identity':
        identity = data.get('identity')
        if not isinstance(identity, dict):
            raise MalformedEventError("Identity event is missing 'identity'")
        handle = identity.get('handle')
        event.identity = IdentityEvent(
            did=identity.get('did') or did,
            handle=handle if isinstance(handle, str) else None,
        )

    return event


# =============================================================================
# Validation
# =============================================================================

class RecordValidator:
    """
    Minimal structural check for record bodies.

    A body must be an object and carry every field configured as required
    for its collection.
    """

    def __init__(self, required_fields: Optional[Dict[str, List[str]]] = None):
        self.required_fields = required_fields or {}

    def validate(self, collection: str, body: Any) -> None:
        """
        Raises:
            InvalidRecordError: if the body is unacceptable
        """
        if not isinstance(body, dict):
            raise InvalidRecordError('Record body must be an object', collection=collection)

        missing = [key for key in self.required_fields.get(collection, []) if key not in body]
        if missing:
            raise InvalidRecordError(
                f"Record missing required fields: {', '.join(missing)}",
                collection=collection, missing=missing
            )


# =============================================================================
# Application
# =============================================================================

class CommitHandler:
    """
    Applies stream events to the stores.

    Every failure is logged and the event dropped, so one bad message never
    affects the connection.
    """

    def __init__(
        self,
        records: RecordRepository,
        actors: ActorRepository,
        config: MirrorConfig,
        validator: Optional[RecordValidator] = None
    ):
        self.records = records
        self.actors = actors
        self.config = config
        self.validator = validator or RecordValidator(config.required_fields)
        self.stats = {'applied': 0, 'deleted': 0, 'dropped': 0, 'identities': 0}

    def __call__(self, data: Any) -> None:
        self.handle(data)

    def handle(self, data: Any) -> bool:
        """
        Apply one decoded message.

        Returns:
            True if the store was changed
        """
        try:
            event = parse_event(data)
        except MalformedEventError as e:
            logger.warning(f'Dropping malformed event: {e.message}', extra=e.details)
            self.stats['dropped'] += 1
            return False

        try:
            if event.identity is not None:
                return self._apply_identity(event)
            if event.commit is not None:
                return self._apply_commit(event)
        except sqlite3.Error as e:
            logger.error(f'Storage error applying event from {event.did}: {e}')
            self.stats['dropped'] += 1
            return False

        return False

    def _apply_identity(self, event: JetstreamEvent) -> bool:
        identity = event.identity
        self.actors.put(Actor(did=identity.did, handle=identity.handle))
        self.stats['identities'] += 1
        logger.debug(f'Identity {identity.did} -> {identity.handle}')
        return True

    def _apply_commit(self, event: JetstreamEvent) -> bool:
        commit = event.commit
        if commit.collection not in self.config.wanted_collections:
            return False

        uri = commit.uri(event.did)

        if commit.collection in self.config.collections:
            self.actors.ensure(event.did)
        elif not self.actors.exists(event.did):
            # External collections are only followed for known actors
            return False

        logger.info(f'Received {commit.operation} event for {uri}')

        if commit.operation == 'delete':
            removed = self.records.delete(uri)
            self.stats['deleted'] += 1
            return removed

        try:
            self.validator.validate(commit.collection, commit.record)
            record = Record.create(uri, commit.cid, commit.record)
        except (InvalidRecordError, ValueError) as e:
            logger.warning(f'Invalid record for {uri}: {e}')
            self.stats['dropped'] += 1
            return False

        self.records.put(record)
        self.stats['applied'] += 1
        return True
