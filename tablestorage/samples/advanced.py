"""
Advanced scenario: batch insert, range queries with explicit segmentation,
partition scan, table listing and, where the backend supports them, SAS
tokens, service properties, CORS, service statistics and table ACLs.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional

from tablestorage.backends import BackendCapability
from tablestorage.client import TableClient, TableServiceClient
from tablestorage.core.config_manager import SamplesConfig
from tablestorage.exceptions import TableStorageError
from tablestorage.operations import TableBatchOperation
from tablestorage.query import TableQuery
from tablestorage.sas import AccessPolicy, TablePermissions, TableSasPermissions
from tablestorage.samples.common import SasCheck, exercise_table_sas, new_table_name
from tablestorage.samples.customer import CustomerEntity
from tablestorage.service_properties import CorsRule, RetentionPolicy, ServiceProperties, ServiceStats

logger = logging.getLogger(__name__)

STORED_POLICY_NAME = "sample-policy"


@dataclass
class AdvancedSampleResult:
    table_name: str
    batch_size: int = 0
    range_row_keys: List[str] = field(default_factory=list)
    range_segment_sizes: List[int] = field(default_factory=list)
    partition_scan_count: int = 0
    listed_tables: List[str] = field(default_factory=list)
    ad_hoc_sas: Optional[SasCheck] = None
    applied_properties: Optional[ServiceProperties] = None
    applied_cors: List[CorsRule] = field(default_factory=list)
    service_properties_restored: bool = False
    service_stats: Optional[ServiceStats] = None
    table_policies: Dict[str, AccessPolicy] = field(default_factory=dict)
    stored_policy_sas: Optional[SasCheck] = None
    skipped: List[str] = field(default_factory=list)


async def run_advanced_sample(
    service: TableServiceClient,
    samples: Optional[SamplesConfig] = None,
) -> AdvancedSampleResult:
    """Run the advanced scenario on a temporary table, deleted afterwards."""
    samples = samples or SamplesConfig()
    logger.info("Table storage - advanced samples")

    table_name = new_table_name(samples.table_prefix)
    table = await service.create_table(table_name)
    result = AdvancedSampleResult(table_name)
    backend = service.backend

    try:
        await advanced_data_operations(table, result)
        result.listed_tables = await list_tables_with_prefix(service, samples.table_prefix)

        if backend.supports(BackendCapability.SAS):
            result.ad_hoc_sas = await ad_hoc_sas_sample(table)
        else:
            result.skipped.append(BackendCapability.SAS.value)

        if backend.supports(BackendCapability.SERVICE_PROPERTIES):
            original = await service.get_service_properties()
            result.applied_properties = await service_properties_sample(service)
            if backend.supports(BackendCapability.CORS):
                result.applied_cors = await cors_sample(service)
            else:
                result.skipped.append(BackendCapability.CORS.value)
            result.service_properties_restored = await service.get_service_properties() == original
        else:
            result.skipped.extend([BackendCapability.SERVICE_PROPERTIES.value, BackendCapability.CORS.value])

        if backend.supports(BackendCapability.SERVICE_STATS):
            result.service_stats = await service_stats_sample(service)
        else:
            result.skipped.append(BackendCapability.SERVICE_STATS.value)

        if backend.supports(BackendCapability.TABLE_ACL):
            result.table_policies = await table_acl_sample(table)
        else:
            result.skipped.append(BackendCapability.TABLE_ACL.value)

        if backend.supports(BackendCapability.SAS) and backend.supports(BackendCapability.TABLE_ACL):
            result.stored_policy_sas = await stored_policy_sas_sample(table, samples.policy_propagation_wait)

        if result.skipped:
            logger.info(f"Skipped features not offered by this backend: {', '.join(result.skipped)}")
        return result
    finally:
        await table.delete_table_if_exists()


# ========== Data operations ==========

async def advanced_data_operations(table: TableClient, result: AdvancedSampleResult) -> None:
    logger.info("Inserting a batch of entities")
    result.batch_size = await batch_insert_of_customer_entities(table)

    logger.info("Retrieving entities with surname of Smith and first names >= 0001 and <= 0075")
    range_query = TableQuery.range("Smith", "0001", "0075", entity_type=CustomerEntity)
    async for customer in table.query(range_query):
        logger.info(f"Customer: {customer}")

    logger.info("Retrieving the same range 50 entities at a time")
    result.range_row_keys, result.range_segment_sizes = await partition_range_query(
        table, "Smith", "0001", "0075"
    )

    logger.info("Retrieve entities with surname of Smith")
    result.partition_scan_count = await partition_scan(table, "Smith")


async def batch_insert_of_customer_entities(table: TableClient) -> int:
    """Upsert 100 Smith customers in one batch; all share the partition key."""
    batch = TableBatchOperation()
    for i in range(100):
        batch.insert_or_merge(
            CustomerEntity.create(
                "Smith",
                f"{i:04d}",
                email=f"{i:04d}@contoso.com",
                phone_number=f"425-555-{i:04d}",
            )
        )

    results = await table.execute_batch(batch)
    for res in results:
        customer = res.result
        logger.debug(
            f"Inserted entity with\t ETag = {res.etag} and PartitionKey = {customer.partition_key}, "
            f"RowKey = {customer.row_key}"
        )
    return len(results)


async def partition_range_query(
    table: TableClient,
    partition_key: str,
    start_row_key: str,
    end_row_key: str,
    take_count: int = 50,
) -> tuple:
    """
    Drive a range query one segment at a time.

    Returns:
        (row keys in result order, size of each non-empty segment)
    """
    query = TableQuery.range(
        partition_key, start_row_key, end_row_key, entity_type=CustomerEntity, take_count=take_count
    )
    row_keys: List[str] = []
    segment_sizes: List[int] = []
    token = None
    while True:
        segment = await table.query_segment(query, token)
        if segment.results:
            segment_sizes.append(len(segment))
            logger.info(f"Segment {len(segment_sizes)}")
        for customer in segment:
            logger.info(f"\t Customer: {customer}")
            row_keys.append(customer.row_key)
        token = segment.continuation_token
        if token is None:
            break
    return row_keys, segment_sizes


async def partition_scan(table: TableClient, partition_key: str) -> int:
    count = 0
    async for customer in table.query(TableQuery.partition_scan(partition_key, CustomerEntity)):
        logger.info(f"Customer: {customer}")
        count += 1
    return count


async def list_tables_with_prefix(service: TableServiceClient, prefix: str) -> List[str]:
    logger.info(f"List all tables beginning with prefix {prefix}:")
    names = await service.list_tables(prefix=prefix).to_list()
    for name in names:
        logger.info(f"\tTable: {name}")
    return names


# ========== SAS ==========

def _full_access_policy(hours: int = 24) -> AccessPolicy:
    return AccessPolicy(
        permissions=TableSasPermissions.all(),
        expiry=datetime.now(timezone.utc) + timedelta(hours=hours),
    )


async def ad_hoc_sas_sample(table: TableClient) -> SasCheck:
    token = await table.generate_sas(policy=_full_access_policy())
    logger.info(f"SAS for table (ad hoc): {token}")
    customer = CustomerEntity.create("Johnson", "Mary", email="mary@contoso.com", phone_number="425-555-0105")
    return await exercise_table_sas(table.with_sas(token), customer)


async def stored_policy_sas_sample(table: TableClient, propagation_wait: float) -> SasCheck:
    await table.create_stored_policy(STORED_POLICY_NAME, _full_access_policy())
    logger.info(f"Waiting {propagation_wait}s for permissions to propagate")
    await asyncio.sleep(propagation_wait)

    token = await table.generate_sas(policy_id=STORED_POLICY_NAME)
    logger.info(f"SAS for table (stored access policy): {token}")
    customer = CustomerEntity.create("Wilson", "Joe", email="joe@contoso.com", phone_number="425-555-0106")
    return await exercise_table_sas(table.with_sas(token), customer)


# ========== Service settings ==========

async def service_properties_sample(service: TableServiceClient) -> ServiceProperties:
    """Turn on read/write logging and service-level metrics, then restore the original settings."""
    logger.info("Get service properties")
    original = await service.get_service_properties()
    try:
        logger.info("Set service properties")
        props = original.model_copy(deep=True)
        props.logging.read = True
        props.logging.write = True
        props.logging.version = "1.0"
        props.logging.retention_policy = RetentionPolicy(enabled=True, days=5)
        for metrics in (props.hour_metrics, props.minute_metrics):
            metrics.version = "1.0"
            metrics.enabled = True
            metrics.include_apis = False
            metrics.retention_policy = RetentionPolicy(enabled=True, days=6)
        await service.set_service_properties(props)
        return await service.get_service_properties()
    finally:
        logger.info("Revert back to original service properties")
        await service.set_service_properties(original)


async def cors_sample(service: TableServiceClient) -> List[CorsRule]:
    """Add a permissive GET rule, then restore the original settings."""
    logger.info("Get service properties")
    original = await service.get_service_properties()
    try:
        logger.info("Add CORS rule")
        rule = CorsRule(
            allowed_headers=["*"],
            allowed_methods=["GET"],
            allowed_origins=["*"],
            exposed_headers=["*"],
            max_age_in_seconds=3600,
        )
        props = original.model_copy(deep=True)
        props.cors.append(rule)
        await service.set_service_properties(props)
        return (await service.get_service_properties()).cors
    finally:
        logger.info("Revert back to original service properties")
        await service.set_service_properties(original)


async def service_stats_sample(service: TableServiceClient) -> Optional[ServiceStats]:
    """Statistics come from the secondary location; accounts without one report an error."""
    try:
        stats = await service.get_service_stats()
    except TableStorageError as e:
        logger.warning(f"Service stats unavailable: {e.message}")
        return None
    logger.info(f"    Last sync time: {stats.geo_replication.last_sync_time}")
    logger.info(f"    Status: {stats.geo_replication.status.value}")
    return stats


async def table_acl_sample(table: TableClient) -> Dict[str, AccessPolicy]:
    now = datetime.now(timezone.utc)
    permissions = TablePermissions(
        policies={
            "key1": AccessPolicy(
                permissions=TableSasPermissions.UPDATE,
                start=now,
                expiry=now + timedelta(minutes=10),
            )
        }
    )
    logger.info("Set table permissions")
    await table.set_permissions(permissions)

    logger.info("Get table permissions:")
    stored = await table.get_permissions()
    for name, policy in stored.policies.items():
        logger.info(f"  {name}:")
        logger.info(f"    permissions: {policy.permissions}")
        logger.info(f"    start time: {policy.start}")
        logger.info(f"    expiry time: {policy.expiry}")
    return stored.policies
