"""
In-process table service.

Holds tables, entities, stored access policies and service settings in
memory behind one ``asyncio.Lock``. Behaves like the remote service from the
client's point of view: it assigns timestamps and etags, pages scans with
opaque continuation tokens, commits batches all-or-nothing and signs and
checks SAS tokens.
"""

import asyncio
import base64
import binascii
import json
import logging
from bisect import bisect_left
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple

from pydantic import ValidationError

from tablestorage.codec import to_entity
from tablestorage.exceptions import (
    ConflictError,
    EntityNotFoundError,
    FatalError,
    PreconditionFailedError,
    TableNotFoundError,
    TooManyPoliciesError,
    TransientError,
)
from tablestorage.models import Entity, Table
from tablestorage.emulator.query import ODataParseError, ODataQuery
from tablestorage.emulator.sas_validator import TableSasValidator
from tablestorage.operations import OperationType, TableOperation
from tablestorage.query import MAX_SEGMENT_SIZE
from tablestorage.sas import (
    MAX_STORED_POLICIES,
    AccessPolicy,
    TablePermissions,
    TableSasPermissions,
    validate_sas_request,
)
from tablestorage.service_properties import (
    GeoReplication,
    GeoReplicationStatus,
    ServiceProperties,
    ServiceStats,
)

logger = logging.getLogger(__name__)

# Well-known development storage credentials
DEV_ACCOUNT_NAME = "devstoreaccount1"
DEV_ACCOUNT_KEY = (
    "Eby8vdM02xNOcqFlqUwJPLlmEtlCDXJ1OUzFT50uSRZ6IFsuFq2UVErCz4I6tq/K1SZFPTOtr/KBHBeksoGMGw=="
)

EntityStore = Dict[Tuple[str, str], Entity]


def _encode_token(data: Dict[str, str]) -> str:
    return base64.b64encode(json.dumps(data).encode()).decode()


def _decode_token(token: str, *fields: str) -> Tuple[str, ...]:
    try:
        data = json.loads(base64.b64decode(token.encode()).decode())
        return tuple(data[name] for name in fields)
    except (binascii.Error, ValueError, KeyError, TypeError) as e:
        raise FatalError(
            "Invalid continuation token",
            error_code="InvalidInput",
            status_code=400,
        ) from e


def _check_etag(existing: Entity, if_match: Optional[str]) -> None:
    if if_match and if_match != "*" and existing.etag != if_match:
        raise PreconditionFailedError(
            f"ETag mismatch: expected '{if_match}', got '{existing.etag}'",
            details={"partition_key": existing.PartitionKey, "row_key": existing.RowKey},
        )


class TableEmulator:
    """
    In-memory table service.

    Stores tables and their entities in memory with async-safe operations.
    """

    def __init__(
        self,
        account_name: str = DEV_ACCOUNT_NAME,
        account_key: str = DEV_ACCOUNT_KEY,
        max_stored_policies: int = MAX_STORED_POLICIES,
        policy_activation_delay: float = 0.0,
        default_segment_size: int = MAX_SEGMENT_SIZE,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        """
        Initialize the emulator with empty storage.

        Args:
            account_name: Account the SAS tokens are scoped to
            account_key: Base64 key SAS tokens are signed with
            max_stored_policies: Stored access policies allowed per table
            policy_activation_delay: Seconds before a stored policy can authorise requests
            default_segment_size: Entities per segment when a query sets no take count
            clock: Returns the current UTC time
        """
        self.account_name = account_name
        self.max_stored_policies = max_stored_policies
        self.policy_activation_delay = policy_activation_delay
        self.default_segment_size = default_segment_size
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._sas = TableSasValidator(account_name, account_key, clock=self._clock)

        # lower-cased name -> Table
        self._tables: Dict[str, Table] = {}
        self._entities: Dict[str, EntityStore] = {}
        # lower-cased name -> {policy id: (policy, active from)}
        self._acl: Dict[str, Dict[str, Tuple[AccessPolicy, datetime]]] = {}
        self._service_properties = ServiceProperties()
        self._last_timestamp: Optional[datetime] = None
        self._pending_faults = 0
        self._lock = asyncio.Lock()

    async def reset(self) -> None:
        """Reset all tables, entities, policies and service settings."""
        async with self._lock:
            self._tables.clear()
            self._entities.clear()
            self._acl.clear()
            self._service_properties = ServiceProperties()
            self._pending_faults = 0

    def inject_transient_faults(self, count: int = 1) -> None:
        """
        Fail the next ``count`` requests with a retryable fault.

        Args:
            count: Number of consecutive requests to fail
        """
        if count < 0:
            raise ValueError("count must be non-negative")
        self._pending_faults = count
        logger.info(f"Injecting {count} transient fault(s)")

    # ========== Internal helpers ==========

    def _maybe_fail(self) -> None:
        if self._pending_faults > 0:
            self._pending_faults -= 1
            raise TransientError("The server is busy", details={"injected": True})

    def _next_timestamp(self) -> datetime:
        """Strictly increasing write timestamps, so every write gets a fresh etag."""
        now = self._clock()
        if self._last_timestamp is not None and now <= self._last_timestamp:
            now = self._last_timestamp + timedelta(microseconds=1)
        self._last_timestamp = now
        return now

    def _get_store(self, table_name: str) -> EntityStore:
        store = self._entities.get(table_name.lower())
        if store is None:
            raise TableNotFoundError(table_name)
        return store

    def _stamp(self, entity: Entity) -> Entity:
        entity.Timestamp = self._next_timestamp()
        entity.etag = Entity.generate_etag(entity.Timestamp)
        return entity

    def _apply(self, store: EntityStore, operation: TableOperation) -> Optional[Entity]:
        """
        Apply one operation to ``store``.

        Returns:
            Copy of the stored entity (None for deletes)
        """
        op_type = operation.operation_type
        entity = operation.entity
        key = entity.key
        existing = store.get(key)

        if op_type == OperationType.RETRIEVE:
            if existing is None:
                raise EntityNotFoundError(*key)
            return existing.model_copy(deep=True)

        if op_type == OperationType.INSERT and existing is not None:
            raise ConflictError(
                f"Entity with PartitionKey '{key[0]}' and RowKey '{key[1]}' already exists",
                details={"partition_key": key[0], "row_key": key[1]},
            )

        if op_type in (OperationType.MERGE, OperationType.REPLACE, OperationType.DELETE):
            if existing is None:
                raise EntityNotFoundError(*key)
            _check_etag(existing, operation.etag)

        if op_type == OperationType.DELETE:
            del store[key]
            return None

        properties = dict(entity.get_custom_properties())
        if existing is not None and op_type in (OperationType.MERGE, OperationType.INSERT_OR_MERGE):
            merged = dict(existing.get_custom_properties())
            merged.update(properties)
            properties = merged

        stored = self._stamp(Entity(PartitionKey=key[0], RowKey=key[1], **properties))
        store[key] = stored
        return stored.model_copy(deep=True)

    async def _write(self, table_name: str, operation: TableOperation) -> Optional[Entity]:
        async with self._lock:
            self._maybe_fail()
            return self._apply(self._get_store(table_name), operation)

    # ========== Tables ==========

    async def create_table(self, table_name: str) -> Table:
        """
        Create a new table.

        Raises:
            ConflictError: If table already exists (case-insensitively)
        """
        try:
            table = Table(table_name=table_name)
        except ValidationError as e:
            raise FatalError(
                f"Invalid table name '{table_name}'",
                error_code="InvalidResourceName",
                status_code=400,
                details={"errors": e.errors(include_url=False)},
            ) from e

        async with self._lock:
            self._maybe_fail()
            if table_name.lower() in self._tables:
                raise ConflictError(
                    f"Table '{table_name}' already exists",
                    error_code="TableAlreadyExists",
                    details={"table_name": table_name},
                )
            self._tables[table_name.lower()] = table
            self._entities[table_name.lower()] = {}
            logger.debug(f"Created table {table_name}")
            return table

    async def delete_table(self, table_name: str) -> None:
        """
        Delete a table with its entities and stored policies.

        Raises:
            TableNotFoundError: If table not found
        """
        async with self._lock:
            self._maybe_fail()
            if table_name.lower() not in self._tables:
                raise TableNotFoundError(table_name)
            del self._tables[table_name.lower()]
            del self._entities[table_name.lower()]
            self._acl.pop(table_name.lower(), None)
            logger.debug(f"Deleted table {table_name}")

    async def list_tables_segment(
        self,
        prefix: Optional[str] = None,
        max_results: Optional[int] = None,
        continuation_token: Optional[str] = None,
    ) -> Tuple[List[str], Optional[str]]:
        """
        List table names in name order.

        Args:
            prefix: Only names starting with this prefix
            max_results: Names per segment (default 1000)
            continuation_token: Token returned by the previous segment

        Returns:
            Tuple of (names, continuation_token)
        """
        limit = max_results or MAX_SEGMENT_SIZE
        async with self._lock:
            self._maybe_fail()
            names = sorted(
                table.table_name for table in self._tables.values()
                if prefix is None or table.table_name.startswith(prefix)
            )

        start_idx = 0
        if continuation_token:
            (next_name,) = _decode_token(continuation_token, "NextTableName")
            start_idx = bisect_left(names, next_name)

        page = names[start_idx:start_idx + limit]
        next_token = None
        if start_idx + limit < len(names):
            next_token = _encode_token({"NextTableName": names[start_idx + limit]})
        return page, next_token

    async def table_exists(self, table_name: str) -> bool:
        async with self._lock:
            return table_name.lower() in self._tables

    # ========== Entities ==========

    async def insert_entity(self, table_name: str, entity: Entity) -> Entity:
        """
        Insert a new entity.

        Raises:
            TableNotFoundError: If table not found
            ConflictError: If entity already exists
        """
        return await self._write(table_name, TableOperation(OperationType.INSERT, entity))

    async def update_entity(self, table_name: str, entity: Entity, if_match: Optional[str] = None) -> Entity:
        """
        Replace an entity.

        Raises:
            TableNotFoundError: If table not found
            EntityNotFoundError: If entity not found
            PreconditionFailedError: If ETag doesn't match
        """
        entity = entity.model_copy(update={"etag": if_match or ""})
        return await self._write(table_name, TableOperation(OperationType.REPLACE, entity))

    async def merge_entity(self, table_name: str, entity: Entity, if_match: Optional[str] = None) -> Entity:
        """
        Merge properties into an entity.

        Raises:
            TableNotFoundError: If table not found
            EntityNotFoundError: If entity not found
            PreconditionFailedError: If ETag doesn't match
        """
        entity = entity.model_copy(update={"etag": if_match or ""})
        return await self._write(table_name, TableOperation(OperationType.MERGE, entity))

    async def insert_or_merge_entity(self, table_name: str, entity: Entity) -> Entity:
        return await self._write(table_name, TableOperation(OperationType.INSERT_OR_MERGE, entity))

    async def insert_or_replace_entity(self, table_name: str, entity: Entity) -> Entity:
        return await self._write(table_name, TableOperation(OperationType.INSERT_OR_REPLACE, entity))

    async def delete_entity(
        self,
        table_name: str,
        partition_key: str,
        row_key: str,
        if_match: Optional[str] = None,
    ) -> None:
        """
        Delete an entity.

        Raises:
            TableNotFoundError: If table not found
            EntityNotFoundError: If entity not found
            PreconditionFailedError: If ETag doesn't match
            SchemaMismatchError: If a key is empty or contains reserved characters
        """
        entity = to_entity({"PartitionKey": partition_key, "RowKey": row_key, "odata.etag": if_match or ""})
        await self._write(table_name, TableOperation(OperationType.DELETE, entity))

    async def get_entity(
        self,
        table_name: str,
        partition_key: str,
        row_key: str,
        select: Optional[List[str]] = None,
    ) -> Entity:
        """
        Get an entity by partition and row keys.

        Raises:
            TableNotFoundError: If table not found
            EntityNotFoundError: If entity not found
            SchemaMismatchError: If a key is empty or contains reserved characters
        """
        entity = to_entity({"PartitionKey": partition_key, "RowKey": row_key})
        found = await self._write(table_name, TableOperation(OperationType.RETRIEVE, entity))
        if select:
            found = Entity.from_dict(ODataQuery(select=select).project(found.to_dict()))
        return found

    async def execute_batch(self, table_name: str, operations: List[TableOperation]) -> List[Optional[Entity]]:
        """
        Apply operations all-or-nothing.

        The operations run against a copy of the table; the copy replaces the
        table only if every operation succeeds.

        Returns:
            One entry per operation (None for deletes)

        Raises:
            TableStorageError: First failure, with the failing index in ``details``
        """
        async with self._lock:
            self._maybe_fail()
            store = self._get_store(table_name)
            working = dict(store)
            results = []
            for index, operation in enumerate(operations):
                try:
                    results.append(self._apply(working, operation))
                except (ConflictError, EntityNotFoundError, PreconditionFailedError) as e:
                    e.details["index"] = index
                    e.message = f"{index}:{e.message}"
                    e.args = (e.message,)
                    logger.debug(f"Batch on {table_name} rolled back at operation {index}")
                    raise
            store.clear()
            store.update(working)
            return results

    async def query_entities(
        self,
        table_name: str,
        filter_expr: Optional[str] = None,
        select: Optional[List[str]] = None,
        top: Optional[int] = None,
        continuation_token: Optional[str] = None,
    ) -> Tuple[List[Entity], Optional[str]]:
        """
        Scan entities in (PartitionKey, RowKey) order.

        Args:
            table_name: Name of the table
            filter_expr: OData $filter expression
            select: Properties to project
            top: Entities per segment (default ``default_segment_size``)
            continuation_token: Token returned by the previous segment

        Returns:
            Tuple of (entity list, continuation_token)

        Raises:
            TableNotFoundError: If table not found
        """
        try:
            query = ODataQuery(filter_expr=filter_expr, select=select)
        except ODataParseError as e:
            raise FatalError(str(e), error_code="InvalidInput", status_code=400) from e

        limit = top if top is not None else self.default_segment_size

        async with self._lock:
            self._maybe_fail()
            store = self._get_store(table_name)
            sorted_keys = sorted(store.keys())

            start_idx = 0
            if continuation_token:
                start_idx = bisect_left(
                    sorted_keys,
                    _decode_token(continuation_token, "NextPartitionKey", "NextRowKey"),
                )

            results = []
            next_token = None
            for idx in range(start_idx, len(sorted_keys)):
                entity = store[sorted_keys[idx]]
                if not query.matches(self._filter_view(entity)):
                    continue
                results.append(Entity.from_dict(query.project(entity.to_dict())))
                if len(results) >= limit:
                    if idx + 1 < len(sorted_keys):
                        next_pk, next_rk = sorted_keys[idx + 1]
                        next_token = _encode_token({"NextPartitionKey": next_pk, "NextRowKey": next_rk})
                    break

            return results, next_token

    @staticmethod
    def _filter_view(entity: Entity) -> Dict[str, Any]:
        view = dict(entity.get_custom_properties())
        view["PartitionKey"] = entity.PartitionKey
        view["RowKey"] = entity.RowKey
        view["Timestamp"] = entity.Timestamp
        return view

    # ========== Service ==========

    async def get_service_properties(self) -> ServiceProperties:
        async with self._lock:
            self._maybe_fail()
            return self._service_properties.model_copy(deep=True)

    async def set_service_properties(self, properties: ServiceProperties) -> None:
        async with self._lock:
            self._maybe_fail()
            self._service_properties = properties.model_copy(deep=True)

    async def get_service_stats(self) -> ServiceStats:
        async with self._lock:
            self._maybe_fail()
            return ServiceStats(
                geo_replication=GeoReplication(
                    status=GeoReplicationStatus.LIVE,
                    last_sync_time=self._clock(),
                )
            )

    # ========== Access control ==========

    async def get_table_acl(self, table_name: str) -> TablePermissions:
        """Stored access policies, including ones not yet active."""
        async with self._lock:
            self._maybe_fail()
            self._get_store(table_name)
            entries = self._acl.get(table_name.lower(), {})
            return TablePermissions(policies={name: policy for name, (policy, _) in entries.items()})

    async def set_table_acl(self, table_name: str, permissions: TablePermissions) -> None:
        """
        Replace the stored access policies.

        Policies that are new or changed become usable after
        ``policy_activation_delay`` seconds.

        Raises:
            TooManyPoliciesError: If more than ``max_stored_policies`` are given
        """
        if len(permissions) > self.max_stored_policies:
            raise TooManyPoliciesError(
                f"A table can hold at most {self.max_stored_policies} stored access policies",
                details={"count": len(permissions), "limit": self.max_stored_policies},
            )

        async with self._lock:
            self._maybe_fail()
            self._get_store(table_name)
            active_from = self._clock() + timedelta(seconds=self.policy_activation_delay)
            previous = self._acl.get(table_name.lower(), {})
            entries = {}
            for name, policy in permissions.policies.items():
                if name in previous and previous[name][0] == policy:
                    entries[name] = previous[name]
                else:
                    entries[name] = (policy, active_from)
            self._acl[table_name.lower()] = entries
            logger.debug(f"Stored {len(entries)} access policies on {table_name}")

    def generate_table_sas(
        self,
        table_name: str,
        policy: Optional[AccessPolicy] = None,
        policy_id: Optional[str] = None,
    ) -> str:
        """
        Sign a table SAS with the account key.

        Returns:
            Query string without a leading '?'
        """
        try:
            validate_sas_request(policy, policy_id)
        except ValueError as e:
            raise FatalError(str(e), error_code="InvalidInput", status_code=400) from e
        return self._sas.generate(table_name, policy, policy_id)

    async def authorize(self, sas_token: str, table_name: str, required: TableSasPermissions) -> AccessPolicy:
        """
        Check that ``sas_token`` grants ``required`` on ``table_name``.

        Returns:
            The effective policy

        Raises:
            NotAllowedError: If the token is invalid, expired or insufficient
        """
        async with self._lock:
            now = self._clock()
            entries = self._acl.get(table_name.lower(), {})
            active = TablePermissions(
                policies={name: policy for name, (policy, active_from) in entries.items() if active_from <= now}
            )
        return self._sas.validate(sas_token, table_name, required, active)
