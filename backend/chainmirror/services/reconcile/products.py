import logging
from typing import Any

from chainmirror.core.errors import StoreError
from chainmirror.models.records import EntityType, LedgerProduct, LedgerRecord
from chainmirror.services.reconcile.base import Reconciler

logger = logging.getLogger(__name__)


class ProductReconciler(Reconciler):
    """
    Marketplace products.

    Each product carries its author's display name from the profiles
    mirror, which is current because profiles reconcile first in a pass.
    The image preview blob is fetched into the `image_preview` attachment.
    """

    entity_type = EntityType.PRODUCT

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self._owner_names: dict[str, str] = {}

    async def prepare(self) -> None:
        try:
            profiles = await self.store.list_all(EntityType.PROFILE)
        except StoreError as e:
            logger.warning(f"[SYNC] Product owner names unavailable: {e}")
            self._owner_names = {}
            return
        self._owner_names = {p.external_id: str(p.fields.get("name") or "") for p in profiles}

    def project(self, record: LedgerRecord) -> dict[str, Any]:
        fields = record.to_fields()
        if isinstance(record, LedgerProduct):
            fields["owner_name"] = self._owner_names.get(record.author, "")
        return fields
