"""Helpers shared by the sample scenarios."""

import logging
import uuid
from dataclasses import dataclass
from typing import Optional

from tablestorage.client import TableClient
from tablestorage.exceptions import ErrorKind, NotAllowedError
from tablestorage.operations import TableOperation
from tablestorage.samples.customer import CustomerEntity

logger = logging.getLogger(__name__)


def new_table_name(prefix: str = "demo") -> str:
    """``prefix`` followed by five characters of a random guid."""
    return prefix + uuid.uuid4().hex[:5]


@dataclass
class SasCheck:
    """What a SAS-authenticated client managed to do."""
    inserted: bool = False
    read: Optional[CustomerEntity] = None
    deleted: bool = False


async def exercise_table_sas(table: TableClient, customer: CustomerEntity) -> SasCheck:
    """
    Insert, read back and delete ``customer`` through a SAS-bound client.

    Permission denials are reported in the result; other errors propagate.
    """
    check = SasCheck()
    sas_label = table.url

    try:
        customer = await table.insert_or_merge(customer)
        check.inserted = True
        logger.info(f"Add operation succeeded for SAS {sas_label}")
    except NotAllowedError as e:
        logger.info(f"Add operation failed for SAS {sas_label}: {e.message}")

    result = await table.execute(
        TableOperation.retrieve(customer.partition_key, customer.row_key, CustomerEntity)
    )
    if result.succeeded or result.error_kind == ErrorKind.NOT_FOUND:
        check.read = result.result
        if check.read is not None:
            logger.info(f"\t{check.read}")
        logger.info(f"Read operation succeeded for SAS {sas_label}")
    else:
        logger.info(f"Read operation failed for SAS {sas_label}: {result.error.message}")

    try:
        if check.read is not None:
            await table.delete(check.read)
            check.deleted = True
            logger.info(f"Delete operation succeeded for SAS {sas_label}")
    except NotAllowedError as e:
        logger.info(f"Delete operation failed for SAS {sas_label}: {e.message}")

    return check
