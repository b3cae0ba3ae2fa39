"""
In-Memory Transport

Binds the transport contract to an in-process ``TableEmulator``. A transport
created with ``sas_token`` authenticates every entity request through the
emulator's SAS validation, the way the remote service would.
"""

from typing import List, Optional

from tablestorage.emulator.backend import TableEmulator
from tablestorage.exceptions import NotAllowedError
from tablestorage.models import Entity
from tablestorage.operations import OperationType, TableOperation
from tablestorage.query import TableQuery
from tablestorage.sas import AccessPolicy, TablePermissions, TableSasPermissions
from tablestorage.segments import ContinuationToken, QuerySegment
from tablestorage.service_properties import ServiceProperties, ServiceStats

from .base import TableTransport


class InMemoryTransport(TableTransport):
    """
    Transport over an in-process emulator.

    **When to Use**:
    - Tests and samples (no network, no credentials)
    - Exercising SAS and stored-policy flows locally
    """

    def __init__(self, emulator: Optional[TableEmulator] = None, sas_token: Optional[str] = None):
        """
        Initialize transport.

        Args:
            emulator: Service to talk to (a fresh one if omitted)
            sas_token: Authenticate with this SAS instead of the account key
        """
        self.emulator = emulator or TableEmulator()
        self.sas_token = sas_token.lstrip("?") if sas_token else None

    async def _authorize(self, table_name: str, required: TableSasPermissions) -> None:
        if self.sas_token is not None:
            await self.emulator.authorize(self.sas_token, table_name, required)

    def _require_account_key(self, operation: str) -> None:
        if self.sas_token is not None:
            raise NotAllowedError(f"A table SAS cannot authorise {operation}")

    # ========== Tables ==========

    async def create_table(self, table_name: str) -> None:
        self._require_account_key("create_table")
        await self.emulator.create_table(table_name)

    async def delete_table(self, table_name: str) -> None:
        self._require_account_key("delete_table")
        await self.emulator.delete_table(table_name)

    async def table_exists(self, table_name: str) -> bool:
        await self._authorize(table_name, OperationType.RETRIEVE.required_permissions)
        return await self.emulator.table_exists(table_name)

    async def list_tables_segment(
        self,
        prefix: Optional[str] = None,
        max_results: Optional[int] = None,
        continuation_token: Optional[ContinuationToken] = None,
    ) -> QuerySegment[str]:
        self._require_account_key("list_tables")
        names, next_token = await self.emulator.list_tables_segment(
            prefix=prefix,
            max_results=max_results,
            continuation_token=continuation_token.value if continuation_token else None,
        )
        return QuerySegment(names, ContinuationToken(next_token) if next_token else None)

    # ========== Entities ==========

    async def insert_entity(self, table_name: str, entity: Entity) -> Entity:
        await self._authorize(table_name, OperationType.INSERT.required_permissions)
        return await self.emulator.insert_entity(table_name, entity)

    async def merge_entity(self, table_name: str, entity: Entity, etag: Optional[str] = None) -> Entity:
        await self._authorize(table_name, OperationType.MERGE.required_permissions)
        return await self.emulator.merge_entity(table_name, entity, if_match=etag)

    async def replace_entity(self, table_name: str, entity: Entity, etag: Optional[str] = None) -> Entity:
        await self._authorize(table_name, OperationType.REPLACE.required_permissions)
        return await self.emulator.update_entity(table_name, entity, if_match=etag)

    async def insert_or_merge_entity(self, table_name: str, entity: Entity) -> Entity:
        await self._authorize(table_name, OperationType.INSERT_OR_MERGE.required_permissions)
        return await self.emulator.insert_or_merge_entity(table_name, entity)

    async def insert_or_replace_entity(self, table_name: str, entity: Entity) -> Entity:
        await self._authorize(table_name, OperationType.INSERT_OR_REPLACE.required_permissions)
        return await self.emulator.insert_or_replace_entity(table_name, entity)

    async def delete_entity(
        self,
        table_name: str,
        partition_key: str,
        row_key: str,
        etag: Optional[str] = None,
    ) -> None:
        await self._authorize(table_name, OperationType.DELETE.required_permissions)
        await self.emulator.delete_entity(table_name, partition_key, row_key, if_match=etag)

    async def retrieve_entity(
        self,
        table_name: str,
        partition_key: str,
        row_key: str,
        select: Optional[List[str]] = None,
    ) -> Entity:
        await self._authorize(table_name, OperationType.RETRIEVE.required_permissions)
        return await self.emulator.get_entity(table_name, partition_key, row_key, select=select)

    async def execute_batch(self, table_name: str, operations: List[TableOperation]) -> List[Optional[Entity]]:
        required = TableSasPermissions.NONE
        for operation in operations:
            required |= operation.operation_type.required_permissions
        await self._authorize(table_name, required)
        return await self.emulator.execute_batch(table_name, operations)

    async def query_segment(
        self,
        table_name: str,
        query: TableQuery,
        continuation_token: Optional[ContinuationToken] = None,
    ) -> QuerySegment[Entity]:
        await self._authorize(table_name, TableSasPermissions.QUERY)
        entities, next_token = await self.emulator.query_entities(
            table_name,
            filter_expr=query.filter,
            select=query.select,
            top=query.take_count,
            continuation_token=continuation_token.value if continuation_token else None,
        )
        return QuerySegment(entities, ContinuationToken(next_token) if next_token else None)

    # ========== Service ==========

    async def get_service_properties(self) -> ServiceProperties:
        self._require_account_key("get_service_properties")
        return await self.emulator.get_service_properties()

    async def set_service_properties(self, properties: ServiceProperties) -> None:
        self._require_account_key("set_service_properties")
        await self.emulator.set_service_properties(properties)

    async def get_service_stats(self) -> ServiceStats:
        self._require_account_key("get_service_stats")
        return await self.emulator.get_service_stats()

    # ========== Access control ==========

    async def get_table_permissions(self, table_name: str) -> TablePermissions:
        self._require_account_key("get_table_permissions")
        return await self.emulator.get_table_acl(table_name)

    async def set_table_permissions(self, table_name: str, permissions: TablePermissions) -> None:
        self._require_account_key("set_table_permissions")
        await self.emulator.set_table_acl(table_name, permissions)

    async def generate_table_sas(
        self,
        table_name: str,
        policy: Optional[AccessPolicy] = None,
        policy_id: Optional[str] = None,
    ) -> str:
        self._require_account_key("generate_table_sas")
        return self.emulator.generate_table_sas(table_name, policy=policy, policy_id=policy_id)

    def with_sas(self, sas_token: str) -> "InMemoryTransport":
        return InMemoryTransport(self.emulator, sas_token=sas_token)

    def table_url(self, table_name: str) -> str:
        return f"http://127.0.0.1:10002/{self.emulator.account_name}/{table_name}"
