"""
Chain Mirror - Ledger Bridge

Read-only GraphQL client for the application service exposed by a
Linera node at /chains/{chain_id}/applications/{application_id}.

Failure contract:
- NetworkError: unreachable, timeout, non-2xx, or a body that is not JSON
- QueryError:   a non-empty `errors` list (even on HTTP 200 with data),
                a missing root field, or records that fail validation
"""

import logging
from typing import Any, Optional

import httpx
from pydantic import ValidationError

from chainmirror.bridges.queries import GraphQLRequest, data_blob_query, entity_query
from chainmirror.core.errors import NetworkError, QueryError
from chainmirror.models.records import LEDGER_MODELS, EntityType, LedgerRecord

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 10.0


class LedgerQueryClient:
    """
    Bridge to the ledger application's GraphQL service.

    Used for:
    - Full-set entity queries (profiles, donations, products)
    - Data blob reads by content hash
    """

    def __init__(
        self,
        endpoint: str,
        timeout: float = DEFAULT_TIMEOUT,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.endpoint = endpoint
        self._owns_client = client is None
        self.client = client or httpx.AsyncClient(timeout=timeout)

    async def execute(self, request: GraphQLRequest) -> Any:
        """Run one request and return the value of its root field."""
        try:
            response = await self.client.post(self.endpoint, json=request.body())
        except httpx.TimeoutException as e:
            raise NetworkError(f"Ledger timed out: {e}") from e
        except httpx.RequestError as e:
            raise NetworkError(f"Ledger unavailable: {e}") from e

        if not response.is_success:
            logger.warning(f"[LEDGER] HTTP {response.status_code} for {request.operation_name}")
            raise NetworkError(
                f"Ledger returned {response.status_code}",
                status_code=response.status_code,
            )

        try:
            envelope = response.json()
        except ValueError as e:
            raise NetworkError(f"Ledger returned a non-JSON body: {e}") from e
        if not isinstance(envelope, dict):
            raise NetworkError("Ledger returned a malformed envelope")

        errors = envelope.get("errors") or []
        if errors:
            messages = "; ".join(str(err.get("message", err)) if isinstance(err, dict) else str(err) for err in errors)
            logger.warning(f"[LEDGER] {request.operation_name} rejected: {messages}")
            raise QueryError(f"{request.operation_name} failed: {messages}", errors=errors)

        data = envelope.get("data")
        if not isinstance(data, dict) or request.root_field not in data:
            raise QueryError(f"{request.operation_name} response has no {request.root_field}")
        return data[request.root_field]

    async def query(self, entity_type: EntityType) -> list[LedgerRecord]:
        """Fetch the full authoritative set for one entity type."""
        request = entity_query(entity_type)
        rows = await self.execute(request)
        if rows is None:
            rows = []
        if not isinstance(rows, list):
            raise QueryError(f"{request.root_field} is not a list")

        model = LEDGER_MODELS[entity_type]
        try:
            records = [model.model_validate(row) for row in rows]
        except ValidationError as e:
            raise QueryError(f"Malformed {entity_type.value} record: {e}") from e

        logger.info(f"[LEDGER] {len(records)} {entity_type.value} records on chain")
        return records

    async def fetch_data_blob(self, content_hash: str) -> Optional[bytes]:
        """Bytes of a data blob, or None when the ledger has none for the hash."""
        value = await self.execute(data_blob_query(content_hash))
        if value is None:
            return None
        if not isinstance(value, list):
            raise QueryError(f"dataBlob for {content_hash} is not a byte list")
        try:
            return bytes(value)
        except (TypeError, ValueError) as e:
            raise QueryError(f"dataBlob for {content_hash} is not a byte list") from e

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._owns_client:
            await self.client.aclose()
