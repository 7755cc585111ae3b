"""Erasure subsystems.

The coordinator runs these in this order: primary store, object storage,
analytics warehouse, identity provider.
"""

from .analytics_warehouse import AnalyticsWarehouseClient
from .base import SubsystemClient
from .identity_provider import IdentityProviderClient, build_identity_http_client
from .object_storage import ObjectStorageClient, build_s3_client
from .primary_store import PrimaryStoreClient

__all__ = [
    "AnalyticsWarehouseClient",
    "IdentityProviderClient",
    "ObjectStorageClient",
    "PrimaryStoreClient",
    "SubsystemClient",
    "build_identity_http_client",
    "build_s3_client",
]
