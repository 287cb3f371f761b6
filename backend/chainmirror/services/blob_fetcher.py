"""
Chain Mirror - Blob Fetcher

Content-addressed blobs never change, so a fetched hash is cached for the
life of the process and never re-fetched. A hash the ledger has no data
for is remembered as missing. Network failures are not remembered; the
next pass tries again.
"""

import asyncio
import logging
import weakref
from typing import Optional, Protocol

from chainmirror.core.errors import BlobNotFound, QueryError
from chainmirror.models.records import BlobReference

logger = logging.getLogger(__name__)


class BlobSource(Protocol):
    async def fetch_data_blob(self, content_hash: str) -> Optional[bytes]: ...


class BlobFetcher:
    """Get-or-fetch cache in front of the ledger's dataBlob query."""

    def __init__(self, source: BlobSource) -> None:
        self._source = source
        self._cache: dict[str, BlobReference] = {}
        self._missing: set[str] = set()
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = weakref.WeakValueDictionary()
        self.network_fetches = 0

    def cached(self, content_hash: str) -> Optional[BlobReference]:
        return self._cache.get(content_hash)

    async def fetch(self, content_hash: str) -> bytes:
        """Raw bytes for a hash. Raises BlobNotFound or NetworkError."""
        return (await self.get(content_hash)).data

    async def get(self, content_hash: str) -> BlobReference:
        cached = self._cache.get(content_hash)
        if cached is not None:
            return cached
        if content_hash in self._missing:
            raise BlobNotFound(content_hash)

        # One in-flight fetch per hash; later callers wait and read the cache.
        # The lock is dropped from _locks once no caller holds it.
        lock = self._locks.setdefault(content_hash, asyncio.Lock())
        async with lock:
            cached = self._cache.get(content_hash)
            if cached is not None:
                return cached
            if content_hash in self._missing:
                raise BlobNotFound(content_hash)

            logger.info(f"[BLOB] Fetching {content_hash[:8]}...")
            self.network_fetches += 1
            try:
                data = await self._source.fetch_data_blob(content_hash)
            except QueryError as e:
                logger.warning(f"[BLOB] Ledger rejected {content_hash[:8]}: {e}")
                self._missing.add(content_hash)
                raise BlobNotFound(content_hash) from e

            if not data:
                logger.warning(f"[BLOB] No data for {content_hash[:8]}")
                self._missing.add(content_hash)
                raise BlobNotFound(content_hash)

            reference = BlobReference(content_hash=content_hash, data=data)
            self._cache[content_hash] = reference
            return reference
