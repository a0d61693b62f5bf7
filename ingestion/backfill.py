"""
Backfill Reconciler

Brings repositories the live stream has not covered into the store by
reading them directly from each repository's PDS.

Flow for backfill_collections():
1. Discover repositories per owned collection on the relay
   (com.atproto.sync.listReposByCollection), unless repos are given
2. Resolve every repository's DID to its PDS and handle
3. Page through com.atproto.repo.listRecords for each (repo, collection)
4. Upsert actors, then records

Network work runs in a thread pool; every store write happens on the
calling thread.

Usage:
    reconciler = BackfillReconciler(records, actors, resolver, xrpc)
    report = reconciler.backfill_collections(['app.test.post'])
    print(report.to_dict())
"""

import logging
import sqlite3
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Tuple

from core.config import DEFAULT_RELAY_URL
from core.errors import IdentityResolutionError, XrpcError
from core.logging_config import log_performance
from database.actors import ActorRepository
from database.models import Actor, AtUri, Record
from database.repository import RecordRepository

from .identity import AtprotoData, DidResolver
from .xrpc import XrpcClient

logger = logging.getLogger(__name__)


LIST_REPOS_BY_COLLECTION = 'com.atproto.sync.listReposByCollection'
LIST_RECORDS = 'com.atproto.repo.listRecords'
GET_RECORD = 'com.atproto.repo.getRecord'


@dataclass
class BackfillReport:
    """Outcome of one backfill run."""
    repos: int = 0
    resolved: int = 0
    pairs: int = 0
    records_indexed: int = 0
    failures: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'repos': self.repos,
            'resolved': self.resolved,
            'pairs': self.pairs,
            'records_indexed': self.records_indexed,
            'failures': list(self.failures),
        }


def _unique(items: Iterable[str]) -> List[str]:
    seen = []
    for item in items:
        if item and item not in seen:
            seen.append(item)
    return seen


class BackfillReconciler:
    """Fetches repository contents over XRPC and writes them to the stores."""

    def __init__(
        self,
        records: RecordRepository,
        actors: ActorRepository,
        resolver: DidResolver,
        xrpc: XrpcClient,
        relay_url: str = DEFAULT_RELAY_URL,
        concurrency: int = 8,
        page_size: int = 100
    ):
        self.records = records
        self.actors = actors
        self.resolver = resolver
        self.xrpc = xrpc
        self.relay_url = relay_url
        self.concurrency = max(1, concurrency)
        self.page_size = page_size

    # =========================================================================
    # Fetching (worker threads)
    # =========================================================================

    def discover_repos(self, collection: str) -> List[str]:
        """DIDs of every repository the relay knows to hold `collection`."""
        repos = [
            repo.get('did')
            for repo in self.xrpc.paginate(
                self.relay_url, LIST_REPOS_BY_COLLECTION, 'repos',
                params={'collection': collection}, limit=500
            )
            if isinstance(repo, dict)
        ]
        repos = _unique(repos)
        logger.info(f'Found {len(repos)} repositories for collection "{collection}"')
        return repos

    def _fetch_pair(self, atp: AtprotoData, collection: str) -> List[Record]:
        records = []
        for item in self.xrpc.paginate(
            atp.pds, LIST_RECORDS, 'records',
            params={'repo': atp.did, 'collection': collection},
            limit=self.page_size
        ):
            try:
                records.append(Record.create(item['uri'], item['cid'], item['value']))
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(f'Skipping malformed record from {atp.did}/{collection}: {e}')
        return records

    def _resolve_all(self, dids: List[str], report: BackfillReport) -> Dict[str, AtprotoData]:
        atp_map: Dict[str, AtprotoData] = {}
        with ThreadPoolExecutor(max_workers=self.concurrency) as pool:
            futures = {pool.submit(self.resolver.resolve, did): did for did in dids}
            for future in as_completed(futures):
                did = futures[future]
                try:
                    atp_map[did] = future.result()
                except IdentityResolutionError as e:
                    logger.error(f'Failed to resolve Atproto data for {did}: {e.message}')
                    report.failures.append(did)

        report.resolved += len(atp_map)
        return atp_map

    # =========================================================================
    # Writing (calling thread)
    # =========================================================================

    def _index_actors(self, atp_map: Dict[str, AtprotoData]):
        for atp in atp_map.values():
            self.actors.put(Actor(did=atp.did, handle=atp.handle))

    def _index_records(self, records: List[Record], report: BackfillReport):
        for record in records:
            try:
                self.records.put(record)
                report.records_indexed += 1
            except sqlite3.Error as e:
                logger.error(f'Failed to index {record.uri}: {e}')
                report.failures.append(record.uri)

    # =========================================================================
    # Entry points
    # =========================================================================

    @log_performance()
    def reconcile(self, identities: Iterable[str], collections: Iterable[str]) -> BackfillReport:
        """
        Backfill every (identity, collection) pair.

        Args:
            identities: Repository DIDs
            collections: Collections to fetch from each repository

        Returns:
            BackfillReport
        """
        dids = _unique(identities)
        collections = _unique(collections)
        report = BackfillReport(repos=len(dids))

        atp_map = self._resolve_all(dids, report)
        logger.info(f'Resolved ATP data for {len(atp_map)}/{len(dids)} repositories')
        self._index_actors(atp_map)

        pairs: List[Tuple[AtprotoData, str]] = [
            (atp, collection) for atp in atp_map.values() for collection in collections
        ]
        report.pairs = len(pairs)

        with ThreadPoolExecutor(max_workers=self.concurrency) as pool:
            futures = {
                pool.submit(self._fetch_pair, atp, collection): (atp.did, collection)
                for atp, collection in pairs
            }
            for future in as_completed(futures):
                did, collection = futures[future]
                try:
                    records = future.result()
                except XrpcError as e:
                    logger.error(f'Error fetching records for {did}/{collection}: {e.message}')
                    report.failures.append(f'{did}/{collection}')
                    continue
                self._index_records(records, report)

        logger.info(
            f'Backfill indexed {report.records_indexed} records',
            extra=report.to_dict()
        )
        return report

    def backfill_collections(
        self,
        collections: List[str],
        external_collections: Optional[List[str]] = None,
        repos: Optional[List[str]] = None
    ) -> BackfillReport:
        """
        Backfill owned (and external) collections.

        Args:
            collections: Owned collections; used for repository discovery
            external_collections: Also fetched from every discovered repository
            repos: Explicit repositories; skips discovery when given
        """
        external_collections = external_collections or []
        if not collections and not external_collections:
            logger.warning('No collections specified for backfill')

        if repos:
            logger.info(f'Using {len(repos)} provided repositories')
            all_repos = _unique(repos)
        else:
            discovered: List[str] = []
            for collection in collections:
                try:
                    discovered.extend(self.discover_repos(collection))
                except XrpcError as e:
                    logger.error(f'Failed to list repositories for {collection}: {e.message}')
            all_repos = _unique(discovered)
            logger.info(f'Processing {len(all_repos)} unique repositories')

        return self.reconcile(all_repos, list(collections) + list(external_collections))

    def backfill_uris(self, uris: Iterable[str]) -> BackfillReport:
        """Fetch individual records that are not in the store yet."""
        wanted: List[AtUri] = []
        for uri in _unique(uris):
            try:
                parsed = AtUri.parse(uri)
            except ValueError as e:
                logger.warning(str(e))
                continue
            if parsed.collection and parsed.rkey and not self.records.exists(str(parsed)):
                wanted.append(parsed)

        dids = _unique(parsed.did for parsed in wanted)
        report = BackfillReport(repos=len(dids))
        if not wanted:
            return report

        atp_map = self._resolve_all(dids, report)
        self._index_actors(atp_map)

        def fetch(parsed: AtUri) -> Record:
            atp = atp_map[parsed.did]
            logger.info(f'Fetching record for {parsed}')
            data = self.xrpc.get(atp.pds, GET_RECORD, {
                'repo': parsed.did, 'collection': parsed.collection, 'rkey': parsed.rkey
            })
            return Record.create(data.get('uri') or str(parsed), data['cid'], data['value'])

        targets = [parsed for parsed in wanted if parsed.did in atp_map]
        report.pairs = len(targets)

        with ThreadPoolExecutor(max_workers=self.concurrency) as pool:
            futures = {pool.submit(fetch, parsed): str(parsed) for parsed in targets}
            for future in as_completed(futures):
                uri = futures[future]
                try:
                    record = future.result()
                except (XrpcError, KeyError, TypeError, ValueError) as e:
                    logger.error(f'Failed to fetch record from {uri}: {e}')
                    report.failures.append(uri)
                    continue
                self._index_records([record], report)

        return report
