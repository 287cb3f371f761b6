"""
Chain Mirror - GraphQL Documents

Every document is static text. Values travel only in `variables`,
never by interpolation into the query string.
"""

from typing import Any

from pydantic import BaseModel

from chainmirror.models.records import EntityType


class GraphQLRequest(BaseModel):
    """A GraphQL request body."""
    query: str
    variables: dict[str, Any] = {}
    operation_name: str | None = None
    # Root field holding the result in the response `data` object
    root_field: str

    def body(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"query": self.query, "variables": self.variables}
        if self.operation_name:
            payload["operationName"] = self.operation_name
        return payload


ALL_PROFILES = """
query AllProfiles {
    allProfilesView {
        owner
        chainId
        name
        bio
        socials { name url }
    }
}
"""

ALL_DONATIONS = """
query AllDonations {
    allDonations {
        id
        from
        to
        amount
        message
        timestamp
        sourceChainId
    }
}
"""

ALL_PRODUCTS = """
query AllProducts {
    allProducts {
        id
        author
        authorChainId
        publicData { key value }
        price
        orderForm { key label fieldType required }
    }
}
"""

DATA_BLOB = """
query DataBlob($hash: String!) {
    dataBlob(hash: $hash)
}
"""

NOTIFICATIONS = """
subscription Notifications($chainId: ChainId!) {
    notifications(chainId: $chainId)
}
"""

_ENTITY_QUERIES: dict[EntityType, tuple[str, str, str]] = {
    EntityType.PROFILE: (ALL_PROFILES, "AllProfiles", "allProfilesView"),
    EntityType.DONATION: (ALL_DONATIONS, "AllDonations", "allDonations"),
    EntityType.PRODUCT: (ALL_PRODUCTS, "AllProducts", "allProducts"),
}


def entity_query(entity_type: EntityType) -> GraphQLRequest:
    """Full-set query for one entity type."""
    document, operation, root = _ENTITY_QUERIES[entity_type]
    return GraphQLRequest(query=document, operation_name=operation, root_field=root)


def data_blob_query(content_hash: str) -> GraphQLRequest:
    return GraphQLRequest(
        query=DATA_BLOB,
        variables={"hash": content_hash},
        operation_name="DataBlob",
        root_field="dataBlob",
    )


def notifications_subscription(chain_id: str) -> GraphQLRequest:
    return GraphQLRequest(
        query=NOTIFICATIONS,
        variables={"chainId": chain_id},
        operation_name="Notifications",
        root_field="notifications",
    )
