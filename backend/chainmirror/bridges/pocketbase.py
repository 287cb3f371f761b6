"""
Chain Mirror - PocketBase Bridge

Mirror store over the PocketBase records API:
- GET    /api/collections/{c}/records        list / filter / sort
- POST   /api/collections/{c}/records        create
- PATCH  /api/collections/{c}/records/{id}   update
- DELETE /api/collections/{c}/records/{id}   delete

Attachments are PocketBase file fields. The hash of the stored file is
kept beside it in `<field>_synced_hash`, so a changed ledger hash is
detectable even when a previous enrichment failed.
"""

import json
import logging
from datetime import datetime
from typing import Any, NamedTuple, Optional

import httpx

from chainmirror.core.errors import ConfigurationError, StoreError
from chainmirror.models.records import EntityType, MirrorRecord
from chainmirror.services.mirror_store import Attachments, MirrorStore

logger = logging.getLogger(__name__)

SYNCED_HASH_SUFFIX = "_synced_hash"
SYSTEM_FIELDS = {"id", "collectionId", "collectionName", "created", "updated", "expand"}
MAX_FILE_SIZE = 5 * 1024 * 1024


class CollectionSpec(NamedTuple):
    name: str
    key_field: str
    fields: list[dict[str, Any]]
    attachments: tuple[str, ...] = ()


def _text(name: str, required: bool = False) -> dict[str, Any]:
    return {"name": name, "type": "text", "required": required}


def _json(name: str) -> dict[str, Any]:
    return {"name": name, "type": "json"}


_AUTODATE = [
    {"name": "created", "type": "autodate", "onCreate": True, "onUpdate": False},
    {"name": "updated", "type": "autodate", "onCreate": True, "onUpdate": True},
]

COLLECTIONS: dict[EntityType, CollectionSpec] = {
    EntityType.PROFILE: CollectionSpec(
        name="profiles",
        key_field="owner",
        fields=[
            _text("owner", required=True),
            _text("chain_id"),
            _text("name"),
            _text("bio"),
            _json("socials"),
            *_AUTODATE,
        ],
    ),
    EntityType.DONATION: CollectionSpec(
        name="donations",
        key_field="donation_id",
        fields=[
            _text("donation_id", required=True),
            _text("from_owner"),
            _text("to_owner"),
            # Decimal text, never a float
            _text("amount"),
            _text("message"),
            _text("timestamp"),
            _text("donated_at"),
            _text("source_chain_id"),
            *_AUTODATE,
        ],
    ),
    EntityType.PRODUCT: CollectionSpec(
        name="products",
        key_field="product_id",
        fields=[
            _text("product_id", required=True),
            _text("owner"),
            _text("owner_name"),
            _text("chain_id"),
            _text("name"),
            _text("description"),
            _text("price"),
            _text("file_name"),
            _text("image_preview_hash"),
            _text("file_hash"),
            _text("type"),
            _text("category"),
            _json("order_form"),
            {"name": "image_preview", "type": "file", "maxSelect": 1, "maxSize": MAX_FILE_SIZE},
            _text("image_preview" + SYNCED_HASH_SUFFIX),
            *_AUTODATE,
        ],
        attachments=("image_preview",),
    ),
}


def quote_filter_value(value: str) -> str:
    """Quote a value for a PocketBase filter expression."""
    escaped = value.replace("\\", "\\\\").replace("'", "\\'")
    return f"'{escaped}'"


def _parse_datetime(value: Any) -> Optional[datetime]:
    if not value or not isinstance(value, str):
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None


def _guess_media(data: bytes) -> tuple[str, str]:
    if data.startswith(b"\x89PNG"):
        return ".png", "image/png"
    if data.startswith(b"\xff\xd8"):
        return ".jpg", "image/jpeg"
    if data.startswith(b"GIF8"):
        return ".gif", "image/gif"
    if data[:4] == b"RIFF" and data[8:12] == b"WEBP":
        return ".webp", "image/webp"
    return ".bin", "application/octet-stream"


class PocketBaseStore(MirrorStore):
    """
    Bridge to a PocketBase instance acting as the mirror.

    Superuser credentials are optional for reads and writes (depends on the
    collection rules) and required for `ensure_collections`.
    """

    def __init__(
        self,
        base_url: str,
        admin_email: Optional[str] = None,
        admin_password: Optional[str] = None,
        timeout: float = 10.0,
        page_size: int = 200,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        super().__init__()
        self.base_url = base_url.rstrip("/")
        self.admin_email = admin_email
        self.admin_password = admin_password
        self.page_size = page_size
        self._owns_client = client is None
        self.client = client or httpx.AsyncClient(timeout=timeout)
        self._token: Optional[str] = None

    @property
    def has_credentials(self) -> bool:
        return bool(self.admin_email and self.admin_password)

    async def authenticate(self) -> None:
        """Exchange superuser credentials for an auth token."""
        if not self.has_credentials:
            raise ConfigurationError("POCKETBASE_ADMIN_EMAIL / POCKETBASE_ADMIN_PASSWORD not set")
        try:
            response = await self.client.post(
                f"{self.base_url}/api/collections/_superusers/auth-with-password",
                json={"identity": self.admin_email, "password": self.admin_password},
            )
        except httpx.RequestError as e:
            raise StoreError(f"PocketBase unavailable: {e}") from e
        self._check(response, "Superuser auth")
        self._token = response.json().get("token")
        logger.info("[STORE] Authenticated with PocketBase as superuser")

    async def _send(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        headers = {"Authorization": self._token} if self._token else {}
        try:
            return await self.client.request(method, f"{self.base_url}{path}", headers=headers, **kwargs)
        except httpx.RequestError as e:
            raise StoreError(f"PocketBase unavailable: {e}") from e

    async def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        if self._token is None and self.has_credentials:
            await self.authenticate()
        response = await self._send(method, path, **kwargs)
        # Expired token: re-authenticate once
        if response.status_code == 401 and self.has_credentials:
            await self.authenticate()
            response = await self._send(method, path, **kwargs)
        return response

    @staticmethod
    def _check(response: httpx.Response, action: str) -> None:
        if not response.is_success:
            raise StoreError(f"{action} failed: HTTP {response.status_code} {response.text[:200]}")

    def _to_record(self, entity_type: EntityType, item: dict[str, Any]) -> MirrorRecord:
        spec = COLLECTIONS[entity_type]
        hidden = set(spec.attachments) | {name + SYNCED_HASH_SUFFIX for name in spec.attachments}
        blobs = {}
        for name in spec.attachments:
            synced = item.get(name + SYNCED_HASH_SUFFIX)
            if item.get(name) and synced:
                blobs[name] = synced
        return MirrorRecord(
            id=item["id"],
            entity_type=entity_type,
            external_id=str(item.get(spec.key_field, "")),
            fields={k: v for k, v in item.items() if k not in SYSTEM_FIELDS and k not in hidden},
            blobs=blobs,
            created_at=_parse_datetime(item.get("created")),
            synced_at=_parse_datetime(item.get("updated")),
        )

    async def _list(self, entity_type: EntityType, filter_expr: Optional[str] = None) -> list[MirrorRecord]:
        spec = COLLECTIONS[entity_type]
        records: list[MirrorRecord] = []
        page = 1
        while True:
            params: dict[str, Any] = {
                "page": page,
                "perPage": self.page_size,
                "sort": "-created,-id",
                "skipTotal": "true",
            }
            if filter_expr:
                params["filter"] = filter_expr
            response = await self._request("GET", f"/api/collections/{spec.name}/records", params=params)
            self._check(response, f"List {spec.name}")
            items = response.json().get("items", [])
            records.extend(self._to_record(entity_type, item) for item in items)
            if len(items) < self.page_size:
                return records
            page += 1

    async def find_all_by_external_id(
        self, entity_type: EntityType, external_id: str
    ) -> list[MirrorRecord]:
        key_field = COLLECTIONS[entity_type].key_field
        return await self._list(entity_type, f"{key_field}={quote_filter_value(external_id)}")

    async def list_all(self, entity_type: EntityType) -> list[MirrorRecord]:
        return await self._list(entity_type)

    async def delete_record(self, entity_type: EntityType, record_id: str) -> None:
        spec = COLLECTIONS[entity_type]
        response = await self._request("DELETE", f"/api/collections/{spec.name}/records/{record_id}")
        if response.status_code == 404:
            return
        self._check(response, f"Delete {spec.name}/{record_id}")

    def _body(
        self,
        entity_type: EntityType,
        external_id: str,
        fields: dict[str, Any],
        attachments: Attachments,
    ) -> dict[str, Any]:
        """httpx keyword arguments: JSON body, or multipart when files are attached."""
        spec = COLLECTIONS[entity_type]
        body: dict[str, Any] = {**fields, spec.key_field: external_id}
        files: dict[str, tuple[str, bytes, str]] = {}
        for name, ref in attachments.items():
            if ref is None:
                body[name] = None
                body[name + SYNCED_HASH_SUFFIX] = ""
            else:
                ext, media_type = _guess_media(ref.data)
                files[name] = (f"{name}_{external_id}{ext}", ref.data, media_type)
                body[name + SYNCED_HASH_SUFFIX] = ref.content_hash

        if not files:
            return {"json": body}
        form = {
            key: "" if value is None else value if isinstance(value, str) else json.dumps(value)
            for key, value in body.items()
        }
        return {"data": form, "files": files}

    async def _create(
        self,
        entity_type: EntityType,
        external_id: str,
        fields: dict[str, Any],
        attachments: Attachments,
    ) -> MirrorRecord:
        spec = COLLECTIONS[entity_type]
        response = await self._request(
            "POST",
            f"/api/collections/{spec.name}/records",
            **self._body(entity_type, external_id, fields, attachments),
        )
        self._check(response, f"Create {spec.name} {external_id}")
        return self._to_record(entity_type, response.json())

    async def _update(
        self,
        record: MirrorRecord,
        fields: dict[str, Any],
        attachments: Attachments,
    ) -> MirrorRecord:
        spec = COLLECTIONS[record.entity_type]
        response = await self._request(
            "PATCH",
            f"/api/collections/{spec.name}/records/{record.id}",
            **self._body(record.entity_type, record.external_id, fields, attachments),
        )
        self._check(response, f"Update {spec.name}/{record.id}")
        return self._to_record(record.entity_type, response.json())

    async def ensure_collections(self) -> None:
        """Create the mirror collections, or add fields missing from existing ones."""
        if self._token is None:
            await self.authenticate()

        for spec in COLLECTIONS.values():
            response = await self._request("GET", f"/api/collections/{spec.name}")
            if response.status_code == 404:
                created = await self._request(
                    "POST",
                    "/api/collections",
                    json={
                        "name": spec.name,
                        "type": "base",
                        "fields": spec.fields,
                        # Public read; only the synchronizer (superuser) writes
                        "listRule": "",
                        "viewRule": "",
                        "createRule": None,
                        "updateRule": None,
                        "deleteRule": None,
                    },
                )
                self._check(created, f"Create collection {spec.name}")
                logger.info(f"[STORE] Created collection {spec.name}")
                continue

            self._check(response, f"Read collection {spec.name}")
            collection = response.json()
            existing = collection.get("fields", [])
            present = {field.get("name") for field in existing}
            missing = [field for field in spec.fields if field["name"] not in present]
            if not missing:
                continue
            updated = await self._request(
                "PATCH",
                f"/api/collections/{collection['id']}",
                json={"fields": existing + missing},
            )
            self._check(updated, f"Update collection {spec.name}")
            logger.info(
                f"[STORE] Added {', '.join(f['name'] for f in missing)} to {spec.name}"
            )

    async def close(self) -> None:
        if self._owns_client:
            await self.client.aclose()
