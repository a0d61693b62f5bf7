"""
XRPC HTTP Client

Thin GET-only client for the XRPC endpoints backfill needs:
- com.atproto.sync.listReposByCollection (relay)
- com.atproto.repo.listRecords (PDS)
- com.atproto.repo.getRecord (PDS)

Transient failures (connection errors, timeouts, 429 and 5xx) are retried
with exponential backoff; other HTTP errors raise XrpcError at once.
"""

import logging
from typing import Any, Dict, Iterator, Optional

import requests
from tenacity import (
    retry,
    stop_after_attempt,
    wait_exponential,
    retry_if_exception_type
)

from core.errors import XrpcError

logger = logging.getLogger(__name__)


USER_AGENT = 'atmirror/1.0'
MAX_ATTEMPTS = 3


class TransientXrpcError(XrpcError):
    """A 429 or 5xx response; worth retrying."""


class XrpcClient:
    """Shared-session XRPC client."""

    def __init__(self, timeout: float = 30.0, session: Optional[requests.Session] = None):
        """
        Args:
            timeout: Per-request timeout in seconds
            session: Optional preconfigured session
        """
        self.timeout = timeout
        self.session = session or requests.Session()
        self.session.headers.setdefault('User-Agent', USER_AGENT)

    @retry(
        stop=stop_after_attempt(MAX_ATTEMPTS),
        wait=wait_exponential(multiplier=0.5, min=0.5, max=8),
        retry=retry_if_exception_type((
            requests.ConnectionError,
            requests.Timeout,
            TransientXrpcError,
        )),
        reraise=True,
    )
    def _request(self, url: str, params: Dict[str, Any]) -> Dict[str, Any]:
        response = self.session.get(url, params=params, timeout=self.timeout)

        if response.status_code == 429 or response.status_code >= 500:
            logger.warning(f'Transient XRPC failure {response.status_code} from {url}')
            raise TransientXrpcError(
                f'HTTP {response.status_code} from {url}',
                status=response.status_code, retryable=True, url=url
            )
        if response.status_code >= 400:
            error = {}
            try:
                error = response.json()
            except ValueError:
                pass
            raise XrpcError(
                error.get('message') or f'HTTP {response.status_code} from {url}',
                status=response.status_code,
                url=url,
                xrpc_error=error.get('error')
            )

        try:
            return response.json()
        except ValueError:
            raise XrpcError(f'Invalid JSON from {url}', status=response.status_code, url=url)

    def get(self, base_url: str, nsid: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """
        Call an XRPC query.

        Args:
            base_url: Service origin (PDS or relay)
            nsid: Method name, e.g. com.atproto.repo.listRecords
            params: Query parameters (None values are dropped)

        Returns:
            Decoded JSON body

        Raises:
            XrpcError: on HTTP errors or after retries are exhausted
        """
        url = f"{base_url.rstrip('/')}/xrpc/{nsid}"
        query = {k: v for k, v in (params or {}).items() if v is not None}
        try:
            return self._request(url, query)
        except (requests.ConnectionError, requests.Timeout) as e:
            raise XrpcError(f'{nsid} request failed: {e}', url=url, retryable=True)
        except requests.RequestException as e:
            raise XrpcError(f'{nsid} request failed: {e}', url=url)

    def paginate(
        self,
        base_url: str,
        nsid: str,
        items_key: str,
        params: Optional[Dict[str, Any]] = None,
        limit: int = 100
    ) -> Iterator[Dict[str, Any]]:
        """
        Yield items across all pages of a cursor-paginated query.

        Stops when a page carries no cursor or the cursor repeats.
        """
        cursor = None
        while True:
            page = self.get(base_url, nsid, {**(params or {}), 'limit': limit, 'cursor': cursor})
            for item in page.get(items_key) or []:
                yield item

            next_cursor = page.get('cursor')
            if not next_cursor or next_cursor == cursor:
                break
            cursor = next_cursor

    def close(self):
        self.session.close()
