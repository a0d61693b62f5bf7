"""
Ingestion for atmirror

Writers into the record store:
- JetstreamIngestor + CommitHandler: the live commit stream
- BackfillReconciler: on-demand reads from each repository's PDS

MirrorService ties them to the stores for one configuration.
"""

from .events import parse_event, CommitHandler, RecordValidator, JetstreamEvent, CommitEvent
from .jetstream import JetstreamIngestor, ConnectionState
from .identity import DidResolver, AtprotoData
from .xrpc import XrpcClient
from .backfill import BackfillReconciler, BackfillReport
from .service import MirrorService

__all__ = [
    'parse_event',
    'CommitHandler',
    'RecordValidator',
    'JetstreamEvent',
    'CommitEvent',
    'JetstreamIngestor',
    'ConnectionState',
    'DidResolver',
    'AtprotoData',
    'XrpcClient',
    'BackfillReconciler',
    'BackfillReport',
    'MirrorService',
]
