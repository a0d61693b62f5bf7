"""
Mirror Service

Owns the database, the stores, the stream ingestor and the backfill
reconciler for one MirrorConfig, and exposes the read API application code
uses.

Usage:
    service = MirrorService(load_config())
    service.backfill()
    await service.run_stream()        # until disconnect or terminal failure

    page = service.get_records('app.test.post', limit=20)
"""

import logging
from typing import Any, Callable, Dict, List, Optional

from core.config import MirrorConfig
from core.external import SessionResolver
from database.actors import ActorRepository
from database.labels import Label, LabelRepository
from database.models import Actor
from database.repository import RecordRepository
from database.schema import Database

from .backfill import BackfillReconciler, BackfillReport
from .events import CommitHandler
from .identity import DidResolver
from .jetstream import TRANSPORT_ERRORS, JetstreamIngestor
from .xrpc import XrpcClient

logger = logging.getLogger(__name__)


class MirrorService:
    """The owning process for a mirror."""

    def __init__(
        self,
        config: MirrorConfig,
        db: Optional[Database] = None,
        resolver: Optional[DidResolver] = None,
        xrpc: Optional[XrpcClient] = None,
        connector: Optional[Callable] = None
    ):
        """
        Args:
            config: Mirror configuration
            db: Existing database; opened from config.database_url otherwise
            resolver: DID resolver override
            xrpc: XRPC client override
            connector: Websocket opener override for the ingestor
        """
        self.config = config
        self.db = db or Database(config.database_url)
        self.records = RecordRepository(self.db, config.index)
        self.actors = ActorRepository(self.db)
        self.labels = LabelRepository(self.db)

        self.resolver = resolver or DidResolver(
            config.plc_directory_url, timeout=config.http_timeout
        )
        self.xrpc = xrpc or XrpcClient(timeout=config.http_timeout)
        self.backfiller = BackfillReconciler(
            self.records, self.actors, self.resolver, self.xrpc,
            relay_url=config.relay_url,
            concurrency=config.backfill_concurrency,
            page_size=config.backfill_page_size,
        )

        self.handler = CommitHandler(self.records, self.actors, config)
        self._connector = connector
        self.ingestor: Optional[JetstreamIngestor] = None

    # =========================================================================
    # Query API
    # =========================================================================

    def get_records(
        self,
        collection: str,
        where: Any = None,
        order_by: Optional[List[Dict[str, str]]] = None,
        cursor: Optional[str] = None,
        limit: Optional[int] = None,
        facet: Optional[Dict[str, str]] = None
    ) -> Dict[str, Any]:
        """Returns {'items': [...], 'nextCursor'?: str}."""
        return self.records.list(
            collection, where=where, order_by=order_by,
            cursor=cursor, limit=limit, facet=facet
        ).to_dict()

    def get_record(self, uri: str) -> Optional[Dict[str, Any]]:
        return self.records.get(uri)

    def count_records(self, collection: str, where: Any = None,
                      facet: Optional[Dict[str, str]] = None) -> int:
        return self.records.count(collection, where=where, facet=facet)

    def query_labels(self, subjects: List[str], issuers: Optional[List[str]] = None) -> List[Dict[str, Any]]:
        return [label.to_dict() for label in self.labels.query(subjects, issuers)]

    def index_labels(self, labels: List[Dict[str, Any]]) -> int:
        """Store labels received from a labeler. Returns how many were applied."""
        return self.labels.put_many(Label.from_dict(data) for data in labels)

    # =========================================================================
    # Stream
    # =========================================================================

    def create_ingestor(self) -> JetstreamIngestor:
        """Build the ingestor for the configured collections."""
        self.ingestor = JetstreamIngestor(
            self.handler,
            self.config.wanted_collections,
            instance_url=self.config.jetstream_url,
            max_reconnect_attempts=self.config.max_reconnect_attempts,
            base_delay=self.config.reconnect_base_delay,
            max_delay=self.config.reconnect_max_delay,
            connector=self._connector,
            on_failure=self._on_stream_failure,
        )
        return self.ingestor

    def _on_stream_failure(self, error: Exception):
        logger.critical(f'Jetstream ingestion stopped: {error}')

    async def run_stream(self) -> None:
        """
        Run the stream until it is disconnected.

        A failing first connection is retried by the ingestor's reconnect
        schedule, so only the terminal outcome is surfaced here.

        Raises:
            StreamConnectionError: when reconnecting gives up
        """
        if not self.config.jetstream_url or not self.config.wanted_collections:
            logger.warning('Stream disabled: no Jetstream URL or no collections configured')
            return

        ingestor = self.ingestor or self.create_ingestor()
        try:
            await ingestor.connect()
        except TRANSPORT_ERRORS as e:
            logger.error(f'Jetstream connection failed: {e}')
            if ingestor.failure is not None:
                raise ingestor.failure
        await ingestor.wait_closed()

    async def stop_stream(self) -> None:
        if self.ingestor is not None:
            await self.ingestor.disconnect()

    # =========================================================================
    # Backfill
    # =========================================================================

    def backfill(self, repos: Optional[List[str]] = None) -> BackfillReport:
        """Backfill the configured collections."""
        return self.backfiller.backfill_collections(
            self.config.collections,
            external_collections=self.config.external_collections,
            repos=repos,
        )

    def backfill_uris(self, uris: List[str]) -> BackfillReport:
        return self.backfiller.backfill_uris(uris)

    # =========================================================================
    # Sessions
    # =========================================================================

    def sign_in(self, resolver: SessionResolver, token: str, handle: Optional[str] = None) -> Optional[Actor]:
        """
        Record the actor behind a session token.

        Returns:
            The stored actor, or None when the token does not resolve
        """
        did = resolver.resolve(token)
        if not did:
            logger.info('Session token did not resolve to an actor')
            return None

        if handle:
            self.actors.put(Actor(did=did, handle=handle))
        else:
            self.actors.ensure(did)
        return self.actors.get(did)

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def stats(self) -> Dict[str, Any]:
        stats = self.records.get_stats()
        stats['handler'] = dict(self.handler.stats)
        if self.ingestor is not None:
            stats['stream'] = {
                'state': self.ingestor.state.value,
                'reconnect_attempt': self.ingestor.reconnect_attempt,
                'messages_received': self.ingestor.messages_received,
            }
        return stats

    def close(self) -> None:
        self.xrpc.close()
        self.db.close()
