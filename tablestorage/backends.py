"""
Backend selection.

Two kinds of service sit behind the same wire protocol: the classic storage
table service, and the Cosmos DB Table API, which lacks SAS issuing, table
ACLs, service properties and statistics. A ``TableBackend`` pairs the
transport with the capability set of the service it reaches, and gated calls
fail with ``FeatureNotSupportedError`` before any request is made.
"""

import logging
from enum import Enum
from typing import FrozenSet, Optional

from tablestorage.core.config_manager import BackendType, TableStorageConfig, TransportType
from tablestorage.emulator.backend import TableEmulator
from tablestorage.exceptions import FeatureNotSupportedError
from tablestorage.transport.base import TableTransport
from tablestorage.transport.memory import InMemoryTransport

logger = logging.getLogger(__name__)


class BackendCapability(str, Enum):
    """Optional service features."""
    SAS = "sas"
    TABLE_ACL = "table_acl"
    SERVICE_PROPERTIES = "service_properties"
    CORS = "cors"
    SERVICE_STATS = "service_stats"


class TableBackend:
    """A transport plus the capabilities of the service behind it."""

    backend_type: BackendType = BackendType.CLASSIC
    capabilities: FrozenSet[BackendCapability] = frozenset()

    def __init__(self, transport: TableTransport):
        self.transport = transport

    def supports(self, capability: BackendCapability) -> bool:
        return capability in self.capabilities

    def require(self, capability: BackendCapability) -> None:
        """
        Fail unless the backend has ``capability``.

        Raises:
            FeatureNotSupportedError: If the capability is missing
        """
        if capability not in self.capabilities:
            raise FeatureNotSupportedError(
                f"The {self.backend_type.value} backend does not support {capability.value}",
                details={"backend": self.backend_type.value, "capability": capability.value},
            )

    def with_transport(self, transport: TableTransport) -> "TableBackend":
        """Same backend kind over another transport (e.g. a SAS-bound one)."""
        return type(self)(transport)


class ClassicTableBackend(TableBackend):
    """Storage table service: every capability."""
    backend_type = BackendType.CLASSIC
    capabilities = frozenset(BackendCapability)


class CosmosCompatibleBackend(TableBackend):
    """Cosmos DB Table API: entity and table operations only."""
    backend_type = BackendType.COSMOS
    capabilities = frozenset()


_BACKENDS = {
    BackendType.CLASSIC: ClassicTableBackend,
    BackendType.COSMOS: CosmosCompatibleBackend,
}


def create_transport(config: TableStorageConfig, emulator: Optional[TableEmulator] = None) -> TableTransport:
    """
    Build the transport named by the configuration.

    Args:
        config: Loaded configuration
        emulator: Service to use for the memory transport (a new one if omitted)

    Returns:
        Transport instance
    """
    transport_type = TransportType(config.transport)
    if transport_type == TransportType.MEMORY:
        if emulator is None:
            emulator = TableEmulator(
                account_name=config.account.name,
                account_key=config.account.key,
                max_stored_policies=config.emulator.max_stored_policies,
                policy_activation_delay=config.emulator.policy_activation_delay,
                default_segment_size=config.query.segment_size,
            )
        return InMemoryTransport(emulator)

    # Imported lazily so the memory transport works without the Azure SDK loaded
    from tablestorage.transport.azure import AzureTablesTransport

    if config.account.connection_string:
        return AzureTablesTransport.from_connection_string(config.account.connection_string)
    return AzureTablesTransport.from_account_key(
        config.account.endpoint, config.account.name, config.account.key
    )


def create_backend(config: TableStorageConfig, emulator: Optional[TableEmulator] = None) -> TableBackend:
    """
    Factory function to create a backend based on configuration.

    Args:
        config: Loaded configuration
        emulator: Service to use for the memory transport

    Returns:
        Backend instance

    Example:
        ```python
        config = ConfigManager().load(cli_overrides={"backend": "cosmos"})
        backend = create_backend(config)
        backend.require(BackendCapability.SAS)  # raises FeatureNotSupportedError
        ```
    """
    backend_type = config.backend_type
    backend = _BACKENDS[backend_type](create_transport(config, emulator))
    logger.info(
        f"Using {backend_type.value} backend over {TransportType(config.transport).value} transport"
    )
    return backend
