"""
Transport Interface

Defines the request/response contract between the client and the external
table service. Implementations raise ``tablestorage.exceptions`` errors.
"""

from abc import ABC, abstractmethod
from typing import List, Optional

from tablestorage.models import Entity
from tablestorage.operations import TableOperation
from tablestorage.query import TableQuery
from tablestorage.sas import AccessPolicy, TablePermissions
from tablestorage.segments import ContinuationToken, QuerySegment
from tablestorage.service_properties import ServiceProperties, ServiceStats


class TableTransport(ABC):
    """
    Abstract base class for service transports.

    All entity writes return the stored entity (or at least its keys, etag
    and timestamp). Segmented calls return a ``QuerySegment`` whose token is
    None once the scan is complete.

    **Error Handling**:
    - ``NotFoundError`` for absent tables/entities
    - ``ConflictError`` for existing tables/entities
    - ``PreconditionFailedError`` on etag mismatch
    - ``NotAllowedError`` when the credential lacks a permission
    - ``TransientError`` for retryable faults, ``FatalError`` otherwise
    """

    # ========== Tables ==========

    @abstractmethod
    async def create_table(self, table_name: str) -> None:
        """Create a table. Raises ConflictError if it exists."""

    @abstractmethod
    async def delete_table(self, table_name: str) -> None:
        """Delete a table and all its entities. Raises TableNotFoundError."""

    @abstractmethod
    async def table_exists(self, table_name: str) -> bool:
        """Whether a table exists, matching its name case-insensitively."""

    @abstractmethod
    async def list_tables_segment(
        self,
        prefix: Optional[str] = None,
        max_results: Optional[int] = None,
        continuation_token: Optional[ContinuationToken] = None,
    ) -> QuerySegment[str]:
        """List one segment of table names, optionally filtered by prefix."""

    # ========== Entities ==========

    @abstractmethod
    async def insert_entity(self, table_name: str, entity: Entity) -> Entity:
        """Insert a new entity. Raises ConflictError if it exists."""

    @abstractmethod
    async def merge_entity(self, table_name: str, entity: Entity, etag: Optional[str] = None) -> Entity:
        """Merge properties into an existing entity."""

    @abstractmethod
    async def replace_entity(self, table_name: str, entity: Entity, etag: Optional[str] = None) -> Entity:
        """Replace an existing entity."""

    @abstractmethod
    async def insert_or_merge_entity(self, table_name: str, entity: Entity) -> Entity:
        """Upsert by merging."""

    @abstractmethod
    async def insert_or_replace_entity(self, table_name: str, entity: Entity) -> Entity:
        """Upsert by replacing."""

    @abstractmethod
    async def delete_entity(
        self,
        table_name: str,
        partition_key: str,
        row_key: str,
        etag: Optional[str] = None,
    ) -> None:
        """Delete an entity."""

    @abstractmethod
    async def retrieve_entity(
        self,
        table_name: str,
        partition_key: str,
        row_key: str,
        select: Optional[List[str]] = None,
    ) -> Entity:
        """Point lookup. Raises EntityNotFoundError when absent."""

    @abstractmethod
    async def execute_batch(self, table_name: str, operations: List[TableOperation]) -> List[Optional[Entity]]:
        """
        Commit operations atomically.

        Returns:
            One entry per operation, in order (None for deletes)
        """

    @abstractmethod
    async def query_segment(
        self,
        table_name: str,
        query: TableQuery,
        continuation_token: Optional[ContinuationToken] = None,
    ) -> QuerySegment[Entity]:
        """Fetch one bounded segment of a filtered scan."""

    # ========== Service ==========

    @abstractmethod
    async def get_service_properties(self) -> ServiceProperties:
        """Read logging, metrics and CORS settings."""

    @abstractmethod
    async def set_service_properties(self, properties: ServiceProperties) -> None:
        """Replace logging, metrics and CORS settings."""

    @abstractmethod
    async def get_service_stats(self) -> ServiceStats:
        """Read geo-replication statistics."""

    # ========== Access control ==========

    @abstractmethod
    async def get_table_permissions(self, table_name: str) -> TablePermissions:
        """Read the table's stored access policies."""

    @abstractmethod
    async def set_table_permissions(self, table_name: str, permissions: TablePermissions) -> None:
        """Replace the table's stored access policies."""

    @abstractmethod
    async def generate_table_sas(
        self,
        table_name: str,
        policy: Optional[AccessPolicy] = None,
        policy_id: Optional[str] = None,
    ) -> str:
        """Ask the service credential to sign a table SAS token (no leading '?')."""

    @abstractmethod
    def with_sas(self, sas_token: str) -> "TableTransport":
        """Return a transport authenticated by ``sas_token`` instead of the account key."""

    @abstractmethod
    def table_url(self, table_name: str) -> str:
        """Address of a table, without credentials."""

    async def close(self) -> None:
        """Release network resources."""
