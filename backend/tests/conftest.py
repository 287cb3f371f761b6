"""
Chain Mirror - shared test fakes

ScriptedLedger    stands in for LedgerQueryClient (entity queries + data blobs)
ScriptedChannel   stands in for GraphQLWSChannel (one scripted session per subscribe)
RecordingCoordinator  collects trigger sources
"""

import asyncio
from contextlib import asynccontextmanager
from typing import Any, Callable, Optional

import pytest

from chainmirror.core.errors import NetworkError
from chainmirror.models.records import (
    EntityType,
    LedgerDonation,
    LedgerProduct,
    LedgerProfile,
    LedgerRecord,
)
from chainmirror.services.blob_fetcher import BlobFetcher
from chainmirror.services.mirror_store import InMemoryMirrorStore


def make_profile(owner: str, name: str = "", chain_id: str = "chain-a") -> LedgerProfile:
    return LedgerProfile.model_validate(
        {"owner": owner, "chainId": chain_id, "name": name, "bio": "", "socials": []}
    )


def make_donation(
    donation_id: int, amount: str = "5.", message: str = "", timestamp: int = 1_700_000_000_000_000
) -> LedgerDonation:
    return LedgerDonation.model_validate(
        {
            "id": donation_id,
            "from": "owner-from",
            "to": "owner-to",
            "amount": amount,
            "message": message,
            "timestamp": timestamp,
            "sourceChainId": "chain-a",
        }
    )


def make_product(
    product_id: str,
    author: str = "owner-1",
    name: str = "Item",
    image_hash: str = "",
    price: str = "1.",
) -> LedgerProduct:
    public_data = [{"key": "name", "value": name}]
    if image_hash:
        public_data.append({"key": "image_preview_hash", "value": image_hash})
    return LedgerProduct.model_validate(
        {
            "id": product_id,
            "author": author,
            "authorChainId": "chain-a",
            "publicData": public_data,
            "price": price,
            "orderForm": [],
        }
    )


class ScriptedLedger:
    """In-memory ledger with injectable failures."""

    def __init__(self) -> None:
        self.records: dict[EntityType, list[LedgerRecord]] = {t: [] for t in EntityType}
        self.failures: dict[EntityType, Exception] = {}
        self.blobs: dict[str, bytes] = {}
        self.blob_errors: dict[str, Exception] = {}
        self.queries: list[EntityType] = []
        self.blob_calls: list[str] = []
        # When set, queries block until the event fires
        self.gate: Optional[asyncio.Event] = None

    async def query(self, entity_type: EntityType) -> list[LedgerRecord]:
        self.queries.append(entity_type)
        if self.gate is not None:
            await self.gate.wait()
        if entity_type in self.failures:
            raise self.failures[entity_type]
        return list(self.records[entity_type])

    async def fetch_data_blob(self, content_hash: str) -> Optional[bytes]:
        self.blob_calls.append(content_hash)
        if content_hash in self.blob_errors:
            raise self.blob_errors[content_hash]
        return self.blobs.get(content_hash)

    async def close(self) -> None:
        pass


class ScriptedChannel:
    """
    Each subscribe() consumes the next session: an exception is raised on
    connect; an asyncio.Queue is drained as the notification stream, where
    None ends the stream and an exception breaks it.
    """

    def __init__(self, sessions: Optional[list[Any]] = None) -> None:
        self.sessions = list(sessions or [])
        self.attempts = 0

    @asynccontextmanager
    async def subscribe(self):
        self.attempts += 1
        session = self.sessions.pop(0) if self.sessions else NetworkError("no more sessions")
        if isinstance(session, Exception):
            raise session
        yield self._stream(session)

    @staticmethod
    async def _stream(queue: asyncio.Queue):
        while True:
            item = await queue.get()
            if item is None:
                return
            if isinstance(item, Exception):
                raise item
            yield item


class RecordingCoordinator:
    def __init__(self) -> None:
        self.triggers: list[str] = []

    def trigger(self, source: str = "manual") -> bool:
        self.triggers.append(source)
        return True


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    """Yield to the loop until predicate() holds."""
    async def spin() -> None:
        while not predicate():
            await asyncio.sleep(0.001)

    await asyncio.wait_for(spin(), timeout)


@pytest.fixture
def ledger() -> ScriptedLedger:
    return ScriptedLedger()


@pytest.fixture
def store() -> InMemoryMirrorStore:
    return InMemoryMirrorStore()


@pytest.fixture
def blobs(ledger: ScriptedLedger) -> BlobFetcher:
    return BlobFetcher(ledger)
