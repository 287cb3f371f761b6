"""
Chain Mirror - Runtime Wiring

Builds the object graph for one ledger application from Settings:

    LedgerQueryClient -> BlobFetcher
    MirrorStore (pocketbase | sql | memory)
    Profile/Donation/Product reconcilers -> SyncCoordinator
    GraphQLWSChannel -> NotificationListener
"""

import logging
from typing import Optional

from chainmirror.bridges.ledger import LedgerQueryClient
from chainmirror.bridges.notifications import GraphQLWSChannel
from chainmirror.bridges.pocketbase import PocketBaseStore
from chainmirror.core.config import Settings, get_settings
from chainmirror.core.errors import ConfigurationError
from chainmirror.services.blob_fetcher import BlobFetcher
from chainmirror.services.coordinator import SyncCoordinator
from chainmirror.services.listener import NotificationListener
from chainmirror.services.mirror_store import InMemoryMirrorStore, MirrorStore
from chainmirror.services.reconcile import DonationReconciler, ProductReconciler, ProfileReconciler
from chainmirror.services.sql_store import SqlMirrorStore

logger = logging.getLogger(__name__)


class SyncRuntime:
    """A running synchronizer: listener, coordinator and the resources they hold."""

    def __init__(
        self,
        coordinator: SyncCoordinator,
        listener: NotificationListener,
        store: MirrorStore,
        ledger: Optional[LedgerQueryClient] = None,
    ) -> None:
        self.coordinator = coordinator
        self.listener = listener
        self.store = store
        self.ledger = ledger
        self.started = False

    async def start(self) -> None:
        self.listener.start()
        self.started = True
        logger.info("[SYNC] Synchronizer started")

    async def stop(self) -> None:
        """Stop listening, let an in-flight pass finish, release connections."""
        await self.listener.stop()
        await self.coordinator.close()
        await self.store.close()
        if self.ledger is not None:
            await self.ledger.close()
        self.started = False
        logger.info("[SYNC] Synchronizer stopped")


def build_store(settings: Settings) -> MirrorStore:
    if settings.MIRROR_BACKEND == "memory":
        return InMemoryMirrorStore()
    if settings.MIRROR_BACKEND == "sql":
        return SqlMirrorStore.from_url(settings.DATABASE_URL)
    return PocketBaseStore(
        settings.POCKETBASE_URL,
        admin_email=settings.POCKETBASE_ADMIN_EMAIL,
        admin_password=settings.POCKETBASE_ADMIN_PASSWORD,
        timeout=settings.HTTP_TIMEOUT_SECONDS,
    )


async def build_runtime(settings: Optional[Settings] = None) -> SyncRuntime:
    """Wire a runtime and prepare the mirror schema. Does not start it."""
    settings = settings or get_settings()
    if not settings.LEDGER_CHAIN_ID or not settings.LEDGER_APPLICATION_ID:
        raise ConfigurationError("LEDGER_CHAIN_ID and LEDGER_APPLICATION_ID must be set")

    store = build_store(settings)
    if isinstance(store, SqlMirrorStore):
        await store.create_schema()
    elif isinstance(store, PocketBaseStore) and settings.POCKETBASE_BOOTSTRAP_SCHEMA:
        await store.ensure_collections()

    ledger = LedgerQueryClient(settings.ledger_application_url, timeout=settings.HTTP_TIMEOUT_SECONDS)
    blobs = BlobFetcher(ledger)
    reconcilers = [
        cls(ledger, store, blobs, concurrency=settings.RECORD_CONCURRENCY)
        for cls in (ProfileReconciler, DonationReconciler, ProductReconciler)
    ]
    coordinator = SyncCoordinator(reconcilers, rerun_delay=settings.RERUN_DELAY_SECONDS)
    channel = GraphQLWSChannel(
        settings.LEDGER_WS_URL,
        settings.LEDGER_CHAIN_ID,
        settings.LEDGER_APPLICATION_ID,
        open_timeout=settings.HTTP_TIMEOUT_SECONDS,
    )
    listener = NotificationListener(
        channel,
        coordinator,
        poll_interval=settings.POLL_INTERVAL_SECONDS,
        resubscribe_interval=settings.RESUBSCRIBE_INTERVAL_SECONDS,
    )
    logger.info(
        f"[SYNC] Mirroring application {settings.LEDGER_APPLICATION_ID} on chain "
        f"{settings.LEDGER_CHAIN_ID} into {settings.MIRROR_BACKEND}"
    )
    return SyncRuntime(coordinator, listener, store, ledger)
