"""
Azure Tables Transport

Binds the transport contract to the real service through
``azure.data.tables.aio``. Service and SDK exceptions are translated into the
``tablestorage.exceptions`` taxonomy; nothing is retried here.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, AsyncIterator, Dict, List, Optional

from azure.core import MatchConditions
from azure.core.credentials import AzureNamedKeyCredential, AzureSasCredential
from azure.core.exceptions import (
    ClientAuthenticationError,
    HttpResponseError,
    ResourceExistsError,
    ResourceModifiedError,
    ResourceNotFoundError,
    ServiceRequestError,
    ServiceResponseError,
)
from azure.data.tables import (
    EdmType as AzureEdmType,
    EntityProperty,
    TableAccessPolicy,
    TableAnalyticsLogging,
    TableCorsRule,
    TableMetrics,
    TableRetentionPolicy,
    TableTransactionError,
    UpdateMode,
    generate_table_sas,
)
from azure.data.tables.aio import TableClient, TableServiceClient

from tablestorage.codec import INT32_MAX, INT32_MIN
from tablestorage.core.config_manager import parse_connection_string
from tablestorage.exceptions import (
    ConflictError,
    EntityNotFoundError,
    FatalError,
    NotAllowedError,
    NotFoundError,
    PreconditionFailedError,
    TableNotFoundError,
    TableStorageError,
    TransientError,
)
from tablestorage.models import Entity
from tablestorage.operations import OperationType, TableOperation
from tablestorage.query import TableQuery
from tablestorage.sas import AccessPolicy, TablePermissions, TableSasPermissions
from tablestorage.segments import ContinuationToken, QuerySegment
from tablestorage.service_properties import (
    CorsRule,
    GeoReplication,
    LoggingProperties,
    MetricsProperties,
    RetentionPolicy,
    ServiceProperties,
    ServiceStats,
)

from .base import TableTransport

logger = logging.getLogger(__name__)

_TRANSIENT_STATUS_CODES = {408, 429, 500, 502, 503, 504}


def translate_error(error: Exception, table_name: Optional[str] = None) -> TableStorageError:
    """
    Map an SDK or network exception onto the error taxonomy.

    Args:
        error: Exception raised by ``azure.data.tables``
        table_name: Table the request addressed, if any

    Returns:
        Equivalent ``TableStorageError``
    """
    message = getattr(error, "message", None) or str(error)
    status = getattr(error, "status_code", None)
    error_code = getattr(error, "error_code", None)
    error_code = str(error_code) if error_code else None
    details: Dict[str, Any] = {}
    if isinstance(error, TableTransactionError):
        details["index"] = error.index

    if isinstance(error, (ServiceRequestError, ServiceResponseError, asyncio.TimeoutError)):
        return TransientError(message or "Request timed out", details=details)
    if isinstance(error, ResourceNotFoundError) or status == 404:
        if error_code == "TableNotFound":
            return TableNotFoundError(table_name or "", message=message)
        return NotFoundError(message, error_code=error_code, details=details)
    if isinstance(error, ResourceModifiedError) or status == 412:
        return PreconditionFailedError(message, error_code=error_code, details=details)
    if isinstance(error, ResourceExistsError) or status == 409:
        return ConflictError(message, error_code=error_code, details=details)
    if isinstance(error, ClientAuthenticationError) or status == 403:
        return NotAllowedError(message, error_code=error_code, details=details)
    if status in _TRANSIENT_STATUS_CODES:
        return TransientError(message, error_code=error_code, status_code=status, details=details)
    return FatalError(message, error_code=error_code, status_code=status, details=details)


@asynccontextmanager
async def _translated(table_name: Optional[str] = None) -> AsyncIterator[None]:
    try:
        yield
    except TableStorageError:
        raise
    except (HttpResponseError, ServiceRequestError, ServiceResponseError, asyncio.TimeoutError) as e:
        translated = translate_error(e, table_name)
        logger.debug(f"Service error translated to {translated.kind.value}: {translated.message}")
        raise translated from e


def _to_sdk_entity(entity: Entity) -> Dict[str, Any]:
    data: Dict[str, Any] = {"PartitionKey": entity.PartitionKey, "RowKey": entity.RowKey}
    for name, value in entity.get_custom_properties().items():
        if isinstance(value, int) and not isinstance(value, bool) and not INT32_MIN <= value <= INT32_MAX:
            value = EntityProperty(value, AzureEdmType.INT64)
        data[name] = value
    return data


def _from_sdk_entity(data: Any) -> Entity:
    properties = {}
    for name, value in dict(data).items():
        if isinstance(value, EntityProperty):
            value = int(value.value) if value.edm_type == AzureEdmType.INT64 else value.value
        properties[name] = value
    metadata = getattr(data, "metadata", {}) or {}
    properties["Timestamp"] = metadata.get("timestamp")
    properties["odata.etag"] = metadata.get("etag") or ""
    return Entity.from_dict(properties)


def _written(entity: Entity, metadata: Optional[Dict[str, Any]]) -> Entity:
    """Entity as submitted, stamped with the etag and date the service returned."""
    metadata = metadata or {}
    written = entity.model_copy(deep=True)
    written.etag = metadata.get("etag") or ""
    written.Timestamp = metadata.get("date")
    return written


def _match_kwargs(etag: Optional[str]) -> Dict[str, Any]:
    if etag and etag != "*":
        return {"etag": etag, "match_condition": MatchConditions.IfNotModified}
    return {"match_condition": MatchConditions.Unconditionally}


def _to_sdk_policy(policy: AccessPolicy) -> TableAccessPolicy:
    return TableAccessPolicy(
        start=policy.start,
        expiry=policy.expiry,
        permission=policy.permissions.to_string() if policy.permissions is not None else None,
    )


def _from_sdk_policy(policy: Optional[TableAccessPolicy]) -> AccessPolicy:
    if policy is None:
        return AccessPolicy()
    return AccessPolicy(
        permissions=TableSasPermissions.from_string(policy.permission) if policy.permission else None,
        start=policy.start,
        expiry=policy.expiry,
    )


def _prefix_filter(prefix: str) -> str:
    """``TableName ge 'demo' and TableName lt 'demp'``"""
    upper = prefix[:-1] + chr(ord(prefix[-1]) + 1)
    escape = lambda s: s.replace("'", "''")
    return f"TableName ge '{escape(prefix)}' and TableName lt '{escape(upper)}'"


def _retention_to_sdk(policy: RetentionPolicy) -> TableRetentionPolicy:
    return TableRetentionPolicy(enabled=policy.enabled, days=policy.days)


def _retention_from_sdk(policy: Optional[TableRetentionPolicy]) -> RetentionPolicy:
    if policy is None or not policy.enabled:
        return RetentionPolicy()
    return RetentionPolicy(enabled=True, days=policy.days)


def _metrics_to_sdk(metrics: MetricsProperties) -> TableMetrics:
    return TableMetrics(
        version=metrics.version,
        enabled=metrics.enabled,
        include_apis=metrics.include_apis,
        retention_policy=_retention_to_sdk(metrics.retention_policy),
    )


def _metrics_from_sdk(metrics: Optional[TableMetrics]) -> MetricsProperties:
    if metrics is None:
        return MetricsProperties()
    return MetricsProperties(
        version=metrics.version or "1.0",
        enabled=bool(metrics.enabled),
        include_apis=metrics.include_apis if metrics.enabled else None,
        retention_policy=_retention_from_sdk(metrics.retention_policy),
    )


class AzureTablesTransport(TableTransport):
    """
    Transport over the Azure Tables SDK.

    Authenticates with a shared key (from a connection string or account
    name/key) or, for clients returned by ``with_sas``, with a SAS token.
    """

    def __init__(
        self,
        service: TableServiceClient,
        account_name: Optional[str] = None,
        account_key: Optional[str] = None,
        sas_token: Optional[str] = None,
    ):
        """
        Initialize transport.

        Args:
            service: SDK service client
            account_name: Account name used to sign SAS tokens
            account_key: Account key used to sign SAS tokens
            sas_token: Set when the transport authenticates with a SAS
        """
        self.service = service
        self.account_name = account_name
        self.account_key = account_key
        self.sas_token = sas_token

    @classmethod
    def from_connection_string(cls, connection_string: str) -> "AzureTablesTransport":
        """
        Build a transport from a storage connection string.

        Shared-key strings (including ``UseDevelopmentStorage=true``) go through
        ``from_account_key`` so the key is available for signing SAS tokens.
        """
        settings = parse_connection_string(connection_string)
        if settings.get("AccountName") and settings.get("AccountKey"):
            return cls.from_account_key(settings["TableEndpoint"], settings["AccountName"], settings["AccountKey"])
        return cls(
            TableServiceClient.from_connection_string(connection_string),
            account_name=settings.get("AccountName"),
        )

    @classmethod
    def from_account_key(cls, endpoint: str, account_name: str, account_key: str) -> "AzureTablesTransport":
        credential = AzureNamedKeyCredential(account_name, account_key)
        return cls(
            TableServiceClient(endpoint=endpoint, credential=credential),
            account_name=account_name,
            account_key=account_key,
        )

    def _table(self, table_name: str) -> TableClient:
        return self.service.get_table_client(table_name)

    # ========== Tables ==========

    async def create_table(self, table_name: str) -> None:
        async with _translated(table_name):
            await self.service.create_table(table_name)

    async def delete_table(self, table_name: str) -> None:
        async with _translated(table_name):
            # The SDK treats deleting an absent table as success
            if not await self.table_exists(table_name):
                raise TableNotFoundError(table_name)
            await self.service.delete_table(table_name)

    async def table_exists(self, table_name: str) -> bool:
        # Addressing the table resolves its name case-insensitively; a name filter would not
        try:
            async with _translated(table_name):
                async for _ in self._table(table_name).list_entities(select=["PartitionKey"], results_per_page=1):
                    break
        except TableNotFoundError:
            return False
        return True

    async def list_tables_segment(
        self,
        prefix: Optional[str] = None,
        max_results: Optional[int] = None,
        continuation_token: Optional[ContinuationToken] = None,
    ) -> QuerySegment[str]:
        async with _translated():
            if prefix:
                paged = self.service.query_tables(_prefix_filter(prefix), results_per_page=max_results)
            else:
                paged = self.service.list_tables(results_per_page=max_results)
            pages = paged.by_page(continuation_token=continuation_token.value if continuation_token else None)
            try:
                names = [table.name async for table in await pages.__anext__()]
            except StopAsyncIteration:
                names = []
            next_token = pages.continuation_token
        return QuerySegment(names, ContinuationToken(next_token) if next_token else None)

    # ========== Entities ==========

    async def insert_entity(self, table_name: str, entity: Entity) -> Entity:
        async with _translated(table_name):
            metadata = await self._table(table_name).create_entity(_to_sdk_entity(entity))
        return _written(entity, metadata)

    async def _update(self, table_name: str, entity: Entity, mode: UpdateMode, etag: Optional[str]) -> Entity:
        async with _translated(table_name):
            metadata = await self._table(table_name).update_entity(
                _to_sdk_entity(entity), mode=mode, **_match_kwargs(etag)
            )
        return _written(entity, metadata)

    async def merge_entity(self, table_name: str, entity: Entity, etag: Optional[str] = None) -> Entity:
        return await self._update(table_name, entity, UpdateMode.MERGE, etag)

    async def replace_entity(self, table_name: str, entity: Entity, etag: Optional[str] = None) -> Entity:
        return await self._update(table_name, entity, UpdateMode.REPLACE, etag)

    async def _upsert(self, table_name: str, entity: Entity, mode: UpdateMode) -> Entity:
        async with _translated(table_name):
            metadata = await self._table(table_name).upsert_entity(_to_sdk_entity(entity), mode=mode)
        return _written(entity, metadata)

    async def insert_or_merge_entity(self, table_name: str, entity: Entity) -> Entity:
        return await self._upsert(table_name, entity, UpdateMode.MERGE)

    async def insert_or_replace_entity(self, table_name: str, entity: Entity) -> Entity:
        return await self._upsert(table_name, entity, UpdateMode.REPLACE)

    async def delete_entity(
        self,
        table_name: str,
        partition_key: str,
        row_key: str,
        etag: Optional[str] = None,
    ) -> None:
        table = self._table(table_name)
        async with _translated(table_name):
            # The SDK treats deleting an absent entity as success
            await table.get_entity(partition_key, row_key, select=["PartitionKey"])
            await table.delete_entity(partition_key, row_key, **_match_kwargs(etag))

    async def retrieve_entity(
        self,
        table_name: str,
        partition_key: str,
        row_key: str,
        select: Optional[List[str]] = None,
    ) -> Entity:
        try:
            async with _translated(table_name):
                data = await self._table(table_name).get_entity(partition_key, row_key, select=select)
        except TableNotFoundError:
            raise
        except NotFoundError as e:
            raise EntityNotFoundError(partition_key, row_key) from e
        return _from_sdk_entity(data)

    async def execute_batch(self, table_name: str, operations: List[TableOperation]) -> List[Optional[Entity]]:
        if len(operations) == 1 and operations[0].operation_type == OperationType.RETRIEVE:
            op = operations[0]
            return [await self.retrieve_entity(table_name, op.partition_key, op.row_key, select=op.select)]

        actions = [self._transaction_action(op) for op in operations]
        async with _translated(table_name):
            results = await self._table(table_name).submit_transaction(actions)

        written: List[Optional[Entity]] = []
        for operation, metadata in zip(operations, results):
            if operation.operation_type == OperationType.DELETE:
                written.append(None)
            else:
                written.append(_written(operation.entity, metadata))
        return written

    @staticmethod
    def _transaction_action(operation: TableOperation) -> tuple:
        entity = _to_sdk_entity(operation.entity)
        op_type = operation.operation_type
        if op_type == OperationType.INSERT:
            return ("create", entity)
        if op_type == OperationType.MERGE:
            return ("update", entity, {"mode": UpdateMode.MERGE, **_match_kwargs(operation.etag)})
        if op_type == OperationType.REPLACE:
            return ("update", entity, {"mode": UpdateMode.REPLACE, **_match_kwargs(operation.etag)})
        if op_type == OperationType.INSERT_OR_MERGE:
            return ("upsert", entity, {"mode": UpdateMode.MERGE})
        if op_type == OperationType.INSERT_OR_REPLACE:
            return ("upsert", entity, {"mode": UpdateMode.REPLACE})
        if op_type == OperationType.DELETE:
            return ("delete", entity, _match_kwargs(operation.etag))
        raise ValueError(f"{op_type.value} cannot be part of a transaction")

    async def query_segment(
        self,
        table_name: str,
        query: TableQuery,
        continuation_token: Optional[ContinuationToken] = None,
    ) -> QuerySegment[Entity]:
        table = self._table(table_name)
        async with _translated(table_name):
            if query.filter:
                paged = table.query_entities(
                    query.filter, select=query.select, results_per_page=query.segment_size
                )
            else:
                paged = table.list_entities(select=query.select, results_per_page=query.segment_size)
            pages = paged.by_page(continuation_token=continuation_token.value if continuation_token else None)
            try:
                page = await pages.__anext__()
                entities = [_from_sdk_entity(item) async for item in page]
            except StopAsyncIteration:
                entities = []
            next_token = pages.continuation_token
        return QuerySegment(entities, ContinuationToken(next_token) if next_token else None)

    # ========== Service ==========

    async def get_service_properties(self) -> ServiceProperties:
        async with _translated():
            props = await self.service.get_service_properties()

        analytics = props.get("analytics_logging")
        logging_props = LoggingProperties()
        if analytics is not None:
            logging_props = LoggingProperties(
                version=analytics.version or "1.0",
                read=analytics.read,
                write=analytics.write,
                delete=analytics.delete,
                retention_policy=_retention_from_sdk(analytics.retention_policy),
            )
        return ServiceProperties(
            logging=logging_props,
            hour_metrics=_metrics_from_sdk(props.get("hour_metrics")),
            minute_metrics=_metrics_from_sdk(props.get("minute_metrics")),
            cors=[
                CorsRule(
                    allowed_origins=rule.allowed_origins,
                    allowed_methods=rule.allowed_methods,
                    allowed_headers=rule.allowed_headers,
                    exposed_headers=rule.exposed_headers,
                    max_age_in_seconds=rule.max_age_in_seconds,
                )
                for rule in props.get("cors") or []
            ],
        )

    async def set_service_properties(self, properties: ServiceProperties) -> None:
        analytics = TableAnalyticsLogging(
            version=properties.logging.version,
            read=properties.logging.read,
            write=properties.logging.write,
            delete=properties.logging.delete,
            retention_policy=_retention_to_sdk(properties.logging.retention_policy),
        )
        cors = [
            TableCorsRule(
                rule.allowed_origins,
                rule.allowed_methods,
                allowed_headers=rule.allowed_headers,
                exposed_headers=rule.exposed_headers,
                max_age_in_seconds=rule.max_age_in_seconds,
            )
            for rule in properties.cors
        ]
        async with _translated():
            await self.service.set_service_properties(
                analytics_logging=analytics,
                hour_metrics=_metrics_to_sdk(properties.hour_metrics),
                minute_metrics=_metrics_to_sdk(properties.minute_metrics),
                cors=cors,
            )

    async def get_service_stats(self) -> ServiceStats:
        async with _translated():
            stats = await self.service.get_service_stats()
        geo = stats.get("geo_replication") or {}
        last_sync = geo.get("last_sync_time")
        return ServiceStats(
            geo_replication=GeoReplication(
                status=geo.get("status", "unavailable"),
                last_sync_time=last_sync if isinstance(last_sync, datetime) else None,
            )
        )

    # ========== Access control ==========

    async def get_table_permissions(self, table_name: str) -> TablePermissions:
        async with _translated(table_name):
            identifiers = await self._table(table_name).get_table_access_policy()
        return TablePermissions(
            policies={name: _from_sdk_policy(policy) for name, policy in identifiers.items()}
        )

    async def set_table_permissions(self, table_name: str, permissions: TablePermissions) -> None:
        identifiers = {name: _to_sdk_policy(policy) for name, policy in permissions.policies.items()}
        async with _translated(table_name):
            await self._table(table_name).set_table_access_policy(signed_identifiers=identifiers)

    async def generate_table_sas(
        self,
        table_name: str,
        policy: Optional[AccessPolicy] = None,
        policy_id: Optional[str] = None,
    ) -> str:
        if not (self.account_name and self.account_key):
            raise NotAllowedError("Signing a SAS requires the account key")
        policy = policy or AccessPolicy()
        return generate_table_sas(
            AzureNamedKeyCredential(self.account_name, self.account_key),
            table_name,
            permission=policy.permissions.to_string() if policy.permissions is not None else None,
            start=policy.start,
            expiry=policy.expiry,
            policy_id=policy_id,
        )

    def with_sas(self, sas_token: str) -> "AzureTablesTransport":
        sas_token = sas_token.lstrip("?")
        service = TableServiceClient(
            endpoint=self.service.url,
            credential=AzureSasCredential(sas_token),
        )
        return AzureTablesTransport(service, account_name=self.account_name, sas_token=sas_token)

    def table_url(self, table_name: str) -> str:
        return f"{self.service.url.rstrip('/')}/{table_name}"

    async def close(self) -> None:
        await self.service.close()
