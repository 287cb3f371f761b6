"""
Chain Mirror - External Bridges

Integration layer for:
- Ledger node GraphQL service (queries, data blobs)
- Ledger notification subscription (graphql-transport-ws)
- PocketBase records API (mirror store)
"""

from .ledger import LedgerQueryClient
from .notifications import GraphQLWSChannel
from .pocketbase import COLLECTIONS, PocketBaseStore

__all__ = [
    "LedgerQueryClient",
    "GraphQLWSChannel",
    "PocketBaseStore",
    "COLLECTIONS",
]
