"""
Chain Mirror - Record Schemas

LedgerRecord  authoritative entity as returned by the application's GraphQL service
MirrorRecord  local projection of a LedgerRecord plus store bookkeeping
BlobReference content-addressed payload, immutable once fetched
SyncCursor    per-entity-type pass bookkeeping
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, ClassVar, Optional

from pydantic import BaseModel, ConfigDict, Field

from chainmirror.core.types import LedgerAmount, micros_to_datetime, utc_now


class EntityType(str, Enum):
    """Entity kinds mirrored from the ledger."""
    PROFILE = "profile"
    DONATION = "donation"
    PRODUCT = "product"


# Products denormalise profile data, so profiles must be mirrored first.
SYNC_ORDER: tuple[EntityType, ...] = (
    EntityType.PROFILE,
    EntityType.DONATION,
    EntityType.PRODUCT,
)


# =============================================================================
# LEDGER RECORDS
# =============================================================================

class LedgerRecord(BaseModel):
    """Base for typed ledger entities."""
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    entity_type: ClassVar[EntityType]

    @property
    def external_id(self) -> str:
        raise NotImplementedError

    def to_fields(self) -> dict[str, Any]:
        """Mirror projection of this record (JSON-safe values only)."""
        raise NotImplementedError

    def blob_refs(self) -> dict[str, str]:
        """Attachment field -> content hash. Empty hashes are omitted."""
        return {}


class SocialLink(BaseModel):
    name: str
    url: str


class LedgerProfile(LedgerRecord):
    """Creator profile, keyed by owner account."""
    entity_type: ClassVar[EntityType] = EntityType.PROFILE

    owner: str
    chain_id: str = Field("", alias="chainId")
    name: str = ""
    bio: str = ""
    socials: list[SocialLink] = []

    @property
    def external_id(self) -> str:
        return self.owner

    def to_fields(self) -> dict[str, Any]:
        return {
            "owner": self.owner,
            "chain_id": self.chain_id,
            "name": self.name,
            "bio": self.bio,
            "socials": [s.model_dump() for s in self.socials],
        }


class LedgerDonation(LedgerRecord):
    """A single donation transfer recorded on the ledger."""
    entity_type: ClassVar[EntityType] = EntityType.DONATION

    id: int
    from_owner: str = Field(alias="from")
    to_owner: str = Field(alias="to")
    amount: LedgerAmount
    message: Optional[str] = None
    timestamp: int = 0  # micros
    source_chain_id: Optional[str] = Field(None, alias="sourceChainId")

    @property
    def external_id(self) -> str:
        return str(self.id)

    def to_fields(self) -> dict[str, Any]:
        return {
            "donation_id": self.external_id,
            "from_owner": self.from_owner,
            "to_owner": self.to_owner,
            "amount": self.model_dump(mode="json")["amount"],
            "message": self.message or "",
            "timestamp": str(self.timestamp),
            "donated_at": micros_to_datetime(self.timestamp).isoformat(),
            "source_chain_id": self.source_chain_id or "",
        }


class KeyValue(BaseModel):
    key: str
    value: str = ""


class OrderFormField(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    key: str
    label: str = ""
    field_type: str = Field("text", alias="fieldType")
    required: bool = False


class LedgerProduct(LedgerRecord):
    """Marketplace product. Display data lives in the public key/value list."""
    entity_type: ClassVar[EntityType] = EntityType.PRODUCT

    id: str
    author: str
    author_chain_id: str = Field("", alias="authorChainId")
    public_data: list[KeyValue] = Field([], alias="publicData")
    price: LedgerAmount = Decimal(0)
    order_form: list[OrderFormField] = Field([], alias="orderForm")

    @property
    def external_id(self) -> str:
        return self.id

    def public_value(self, key: str) -> str:
        for item in self.public_data:
            if item.key == key:
                return item.value
        return ""

    def to_fields(self) -> dict[str, Any]:
        name = self.public_value("name")
        return {
            "product_id": self.id,
            "owner": self.author,
            "chain_id": self.author_chain_id,
            "name": name,
            "description": self.public_value("description"),
            "price": self.model_dump(mode="json")["price"],
            "file_name": name,
            "image_preview_hash": self.public_value("image_preview_hash"),
            # data_blob_hash is normally private; mirrored only when published
            "file_hash": self.public_value("data_blob_hash"),
            "type": self.public_value("type"),
            "category": self.public_value("category"),
            "order_form": [f.model_dump() for f in self.order_form],
        }

    def blob_refs(self) -> dict[str, str]:
        preview = self.public_value("image_preview_hash")
        return {"image_preview": preview} if preview else {}


LEDGER_MODELS: dict[EntityType, type[LedgerRecord]] = {
    EntityType.PROFILE: LedgerProfile,
    EntityType.DONATION: LedgerDonation,
    EntityType.PRODUCT: LedgerProduct,
}


# =============================================================================
# MIRROR SIDE
# =============================================================================

class BlobReference(BaseModel):
    """Bytes behind a content hash."""
    model_config = ConfigDict(frozen=True)

    content_hash: str
    data: bytes


class MirrorRecord(BaseModel):
    """A record as it currently exists in the mirror store."""
    id: str
    entity_type: EntityType
    external_id: str
    fields: dict[str, Any] = {}
    # attachment field -> hash of the bytes actually stored
    blobs: dict[str, str] = {}
    created_at: Optional[datetime] = None
    synced_at: Optional[datetime] = None


class SyncCursor(BaseModel):
    """Whether (and when) an entity type completed a full pass."""
    entity_type: EntityType
    completed_passes: int = 0
    last_attempt_at: Optional[datetime] = None
    last_success_at: Optional[datetime] = None
    last_error: Optional[str] = None

    @property
    def has_full_fetch(self) -> bool:
        return self.completed_passes > 0


# =============================================================================
# REPORTS
# =============================================================================

class EntitySyncReport(BaseModel):
    """Outcome of reconciling one entity type."""
    entity_type: EntityType
    started_at: datetime = Field(default_factory=utc_now)
    finished_at: Optional[datetime] = None
    fetched: int = 0
    created: int = 0
    updated: int = 0
    unchanged: int = 0
    deleted: int = 0
    duplicates_removed: int = 0
    enrichment_failures: int = 0
    store_errors: list[str] = []
    record_errors: list[str] = []
    aborted: bool = False
    error: Optional[str] = None

    @property
    def changed(self) -> bool:
        return bool(self.created or self.updated or self.deleted or self.duplicates_removed)


class PassReport(BaseModel):
    """Outcome of one full multi-entity pass."""
    pass_number: int
    trigger: str
    started_at: datetime = Field(default_factory=utc_now)
    finished_at: Optional[datetime] = None
    entities: list[EntitySyncReport] = []

    @property
    def changed(self) -> bool:
        return any(e.changed for e in self.entities)

    @property
    def ok(self) -> bool:
        return all(not (e.aborted or e.store_errors or e.record_errors) for e in self.entities)
