"""
tablestorage: Table Storage Client

An async client for schemaless table storage: typed entities, single and
batch operations, segmented queries, shared access signatures and service
settings, against a storage account or the bundled in-process emulator.
"""

__version__ = "0.1.0"

from .backends import BackendCapability, create_backend
from .client import TableClient, TableServiceClient
from .codec import TableEntity
from .exceptions import ErrorKind, TableStorageError
from .operations import TableBatchOperation, TableOperation, TableResult
from .query import TableQuery
from .sas import AccessPolicy, TablePermissions, TableSasPermissions
from .segments import ContinuationToken, QuerySegment

__all__ = [
    "AccessPolicy",
    "BackendCapability",
    "ContinuationToken",
    "ErrorKind",
    "QuerySegment",
    "TableBatchOperation",
    "TableClient",
    "TableEntity",
    "TableOperation",
    "TablePermissions",
    "TableQuery",
    "TableResult",
    "TableSasPermissions",
    "TableServiceClient",
    "TableStorageError",
    "create_backend",
    "__version__",
]
