"""
Basic scenario: insert, upsert, point read and delete of one customer on a
freshly created table.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from tablestorage.client import TableClient, TableServiceClient
from tablestorage.core.config_manager import SamplesConfig
from tablestorage.samples.common import new_table_name
from tablestorage.samples.customer import CustomerEntity

logger = logging.getLogger(__name__)


@dataclass
class BasicSampleResult:
    table_name: str
    inserted: CustomerEntity
    read_back: Optional[CustomerEntity]
    deleted: bool


async def run_basic_sample(
    service: TableServiceClient,
    samples: Optional[SamplesConfig] = None,
) -> BasicSampleResult:
    """
    Run the basic scenario on a temporary table.

    The table is deleted afterwards, whether or not the scenario succeeds.
    """
    samples = samples or SamplesConfig()
    logger.info("Table storage - basic samples")

    table_name = new_table_name(samples.table_prefix)
    table = await service.create_table(table_name)
    try:
        return await basic_data_operations(table)
    finally:
        await table.delete_table_if_exists()


async def basic_data_operations(table: TableClient) -> BasicSampleResult:
    customer = CustomerEntity.create("Harp", "Walter", email="Walter@contoso.com", phone_number="425-555-0101")

    logger.info("Insert an entity")
    inserted = await table.insert_or_merge(customer)

    logger.info("Update an existing entity using the insert-or-merge upsert operation")
    inserted.phone_number = "425-555-0105"
    await table.insert_or_merge(inserted)

    logger.info("Reading the updated entity")
    read_back = await table.retrieve("Harp", "Walter", CustomerEntity)
    if read_back is not None:
        logger.info(f"\t{read_back}")

    logger.info("Delete the entity")
    deleted = False
    if read_back is not None:
        await table.delete(read_back)
        deleted = True

    return BasicSampleResult(table.table_name, inserted, read_back, deleted)
