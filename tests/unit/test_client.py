"""
Tests for TableClient and TableServiceClient over the in-process service.
"""

from datetime import datetime, timedelta, timezone
from typing import Optional

import pytest

from tablestorage.backends import ClassicTableBackend, CosmosCompatibleBackend
from tablestorage.client import TableClient, TableServiceClient
from tablestorage.codec import TableEntity
from tablestorage.core.config_manager import TableStorageConfig
from tablestorage.emulator.backend import TableEmulator
from tablestorage.exceptions import (
    ConflictError,
    ErrorKind,
    FeatureNotSupportedError,
    InvalidBatchError,
    NotAllowedError,
    PreconditionFailedError,
    SchemaMismatchError,
    TableNotFoundError,
    TooManyPoliciesError,
    TransientError,
)
from tablestorage.models import Entity
from tablestorage.operations import OperationType, TableBatchOperation, TableOperation
from tablestorage.query import TableQuery
from tablestorage.sas import AccessPolicy, TablePermissions, TableSasPermissions
from tablestorage.service_properties import CorsRule, ServiceProperties
from tablestorage.transport.memory import InMemoryTransport


class Customer(TableEntity):
    email: Optional[str] = None
    phone_number: Optional[str] = None


def customer(last: str, first: str, **kwargs) -> Customer:
    return Customer(partition_key=last, row_key=first, **kwargs)


def policy(permissions: TableSasPermissions, hours: int = 1) -> AccessPolicy:
    return AccessPolicy(permissions=permissions, expiry=datetime.now(timezone.utc) + timedelta(hours=hours))


@pytest.fixture
def emulator():
    return TableEmulator()


@pytest.fixture
def service(emulator):
    return TableServiceClient(ClassicTableBackend(InMemoryTransport(emulator)))


@pytest.fixture
async def table(service):
    """Client for a freshly created table."""
    return await service.create_table("customers")


@pytest.fixture
async def cosmos_table(emulator):
    service = TableServiceClient(CosmosCompatibleBackend(InMemoryTransport(emulator)))
    return await service.create_table("cosmos")


class TestTableLifecycle:
    """Tests for table creation and deletion."""

    @pytest.mark.asyncio
    async def test_create_if_not_exists(self, service, table):
        """Test idempotent creation reports whether it created the table."""
        assert not await table.create_if_not_exists()
        other = service.get_table_client("orders")
        assert await other.create_if_not_exists()
        assert await other.exists()

    @pytest.mark.asyncio
    async def test_exists_ignores_case(self, service, table):
        """Test table names are matched case-insensitively."""
        assert await service.get_table_client("Customers").exists()
        assert await service.get_table_client("CUSTOMERS").exists()

    @pytest.mark.asyncio
    async def test_exists_is_not_a_prefix_match(self, service, table):
        """Test a table sharing a prefix does not count as existing."""
        assert not await service.get_table_client("custom").exists()
        assert not await service.get_table_client("customersarchive").exists()

    @pytest.mark.asyncio
    async def test_create_existing(self, table):
        """Test creating an existing table conflicts."""
        with pytest.raises(ConflictError):
            await table.create()

    @pytest.mark.asyncio
    async def test_delete_if_exists(self, service, table):
        """Test idempotent deletion."""
        assert await service.delete_table_if_exists("customers")
        assert not await service.delete_table_if_exists("customers")
        assert not await table.exists()

    @pytest.mark.asyncio
    async def test_delete_missing(self, service):
        """Test deleting an absent table fails."""
        with pytest.raises(TableNotFoundError):
            await service.delete_table("missing")

    def test_url(self, service):
        """Test the table URL names the account and table."""
        assert service.get_table_client("customers").url.endswith("/devstoreaccount1/customers")


class TestEntityOperations:
    """Tests for single-entity operations."""

    @pytest.mark.asyncio
    async def test_insert_returns_record_with_metadata(self, table):
        """Test writes return the same record type carrying the new etag."""
        inserted = await table.insert(customer("Harp", "Walter", email="w@contoso.com"))

        assert isinstance(inserted, Customer)
        assert inserted.etag
        assert inserted.timestamp is not None
        assert inserted.email == "w@contoso.com"

    @pytest.mark.asyncio
    async def test_insert_duplicate(self, table):
        """Test inserting twice conflicts."""
        await table.insert(customer("Harp", "Walter"))

        with pytest.raises(ConflictError):
            await table.insert(customer("Harp", "Walter"))

    @pytest.mark.asyncio
    async def test_upsert_and_retrieve(self, table):
        """Test insert-or-merge updates an existing entity."""
        inserted = await table.insert_or_merge(customer("Harp", "Walter", email="w@contoso.com", phone_number="1"))
        await table.insert_or_merge(customer("Harp", "Walter", phone_number="2"))

        read = await table.retrieve("Harp", "Walter", Customer)

        assert read.phone_number == "2"
        assert read.email == "w@contoso.com"
        assert read.etag != inserted.etag

    @pytest.mark.asyncio
    async def test_insert_or_replace_drops_properties(self, table):
        """Test insert-or-replace discards unspecified properties."""
        await table.insert(customer("Harp", "Walter", email="w@contoso.com"))
        await table.insert_or_replace(customer("Harp", "Walter", phone_number="2"))

        read = await table.retrieve("Harp", "Walter", Customer)

        assert read.email is None
        assert read.phone_number == "2"

    @pytest.mark.asyncio
    async def test_retrieve_missing(self, table):
        """Test point lookups of absent entities return None."""
        assert await table.retrieve("Nobody", "Here") is None

    @pytest.mark.asyncio
    async def test_insert_then_retrieve_round_trip(self, table):
        """Test a record reads back equal apart from service metadata."""
        written = customer("Harp", "Walter", email="w@contoso.com", phone_number="425-555-0105")
        await table.insert(written)

        read = await table.retrieve("Harp", "Walter", Customer)

        assert read.model_dump(exclude={"etag", "timestamp"}) == written.model_dump(exclude={"etag", "timestamp"})

    @pytest.mark.asyncio
    @pytest.mark.parametrize("partition_key,row_key", [
        ("a/b", "c"),
        ("a", "b#c"),
        ("", "c"),
        ("a", ""),
    ])
    async def test_retrieve_invalid_keys(self, table, partition_key, row_key):
        """Test malformed keys are rejected before any request."""
        with pytest.raises(SchemaMismatchError):
            await table.retrieve(partition_key, row_key)

    @pytest.mark.asyncio
    async def test_retrieve_with_projection(self, table):
        """Test $select on a point lookup."""
        await table.insert(customer("Harp", "Walter", email="w@contoso.com", phone_number="1"))

        read = await table.retrieve("Harp", "Walter", select=["Email"])

        assert isinstance(read, Entity)
        assert read.get_custom_properties() == {"Email": "w@contoso.com"}

    @pytest.mark.asyncio
    async def test_optimistic_concurrency(self, table):
        """Test writes with a stale etag fail."""
        first = await table.insert(customer("Harp", "Walter", email="a"))
        second = await table.replace(first.model_copy(update={"email": "b"}))

        with pytest.raises(PreconditionFailedError):
            await table.merge(first.model_copy(update={"email": "c"}))
        with pytest.raises(PreconditionFailedError):
            await table.delete(first)

        await table.delete(second)
        assert await table.retrieve("Harp", "Walter") is None

    @pytest.mark.asyncio
    async def test_delete_requires_etag(self, table):
        """Test deleting a record without an etag is a usage error."""
        await table.insert(customer("Harp", "Walter"))

        with pytest.raises(ValueError):
            await table.delete(customer("Harp", "Walter"))

    @pytest.mark.asyncio
    async def test_entity_operations_on_missing_table(self, service):
        """Test entity calls on an absent table raise TableNotFoundError."""
        missing = service.get_table_client("missing")

        with pytest.raises(TableNotFoundError):
            await missing.insert(customer("a", "b"))
        with pytest.raises(TableNotFoundError):
            await missing.retrieve("a", "b")

    @pytest.mark.asyncio
    async def test_transient_errors_propagate(self, emulator, table):
        """Test transient faults are raised, not retried."""
        emulator.inject_transient_faults(1)

        with pytest.raises(TransientError):
            await table.insert(customer("Harp", "Walter"))
        await table.insert(customer("Harp", "Walter"))


class TestExecute:
    """Tests for execute() result values."""

    @pytest.mark.asyncio
    async def test_insert_result(self, table):
        """Test a successful insert reports 201 and the decoded record."""
        result = await table.execute(TableOperation.insert(customer("Harp", "Walter")))

        assert result.succeeded
        assert result.status_code == 201
        assert isinstance(result.result, Customer)
        assert result.etag == result.result.etag

    @pytest.mark.asyncio
    async def test_retrieve_not_found_is_a_value(self, table):
        """Test a missing entity is reported, not raised."""
        result = await table.execute(TableOperation.retrieve("Nobody", "Here"))

        assert not result.succeeded
        assert result.error_kind == ErrorKind.NOT_FOUND
        assert result.status_code == 404
        assert result.result is None

    @pytest.mark.asyncio
    async def test_retrieve_result(self, table):
        """Test a retrieve decodes into the requested type."""
        await table.insert(customer("Harp", "Walter", email="w"))

        result = await table.execute(TableOperation.retrieve("Harp", "Walter", Customer))

        assert result.status_code == 200
        assert result.result.email == "w"

    @pytest.mark.asyncio
    async def test_delete_result(self, table):
        """Test a delete reports 204 and no record."""
        await table.insert(customer("Harp", "Walter"))

        result = await table.execute(TableOperation.delete(customer("Harp", "Walter", etag="*")))

        assert result.status_code == 204
        assert result.result is None

    @pytest.mark.asyncio
    async def test_conflict_is_raised(self, table):
        """Test failures other than not-found and not-allowed are raised."""
        await table.insert(customer("Harp", "Walter"))

        with pytest.raises(ConflictError):
            await table.execute(TableOperation.insert(customer("Harp", "Walter")))

    @pytest.mark.asyncio
    async def test_missing_table_is_raised(self, service):
        """Test an absent table is raised even from execute()."""
        with pytest.raises(TableNotFoundError):
            await service.get_table_client("missing").execute(TableOperation.retrieve("a", "b"))


class TestBatches:
    """Tests for execute_batch()."""

    @pytest.mark.asyncio
    async def test_batch_results_in_order(self, table):
        """Test one result per operation, in submission order."""
        batch = TableBatchOperation()
        for i in range(100):
            batch.insert_or_merge(customer("Smith", f"{i:04d}"))

        results = await table.execute_batch(batch)

        assert [r.result.row_key for r in results] == [f"{i:04d}" for i in range(100)]
        assert all(isinstance(r.result, Customer) and r.etag for r in results)

    @pytest.mark.asyncio
    async def test_invalid_batch_is_not_sent(self, emulator, table):
        """Test batch invariants are checked before any request."""
        emulator.inject_transient_faults(1)
        batch = TableBatchOperation().insert(customer("Smith", "1")).insert(customer("Jones", "2"))

        with pytest.raises(InvalidBatchError):
            await table.execute_batch(batch)
        with pytest.raises(TransientError):
            await table.insert(customer("Smith", "1"))

    @pytest.mark.asyncio
    async def test_batch_is_atomic(self, table):
        """Test a failing batch applies nothing."""
        await table.insert(customer("Smith", "0002"))
        batch = TableBatchOperation()
        for i in range(3):
            batch.insert(customer("Smith", f"{i:04d}"))

        with pytest.raises(ConflictError) as exc_info:
            await table.execute_batch(batch)

        assert exc_info.value.details["index"] == 2
        assert await table.retrieve("Smith", "0000") is None

    @pytest.mark.asyncio
    async def test_lone_retrieve_missing_entity(self, table):
        """Test a single-retrieve batch reports an absent entity as a result."""
        batch = TableBatchOperation().retrieve("Nobody", "Here", Customer)

        results = await table.execute_batch(batch)

        assert len(results) == 1
        assert results[0].operation_type == OperationType.RETRIEVE
        assert results[0].result is None
        assert results[0].error_kind == ErrorKind.NOT_FOUND

    @pytest.mark.asyncio
    async def test_lone_retrieve_existing_entity(self, table):
        """Test a single-retrieve batch returns the stored record."""
        await table.insert(customer("Harp", "Walter", email="w@contoso.com"))

        results = await table.execute_batch(TableBatchOperation().retrieve("Harp", "Walter", Customer))

        assert results[0].succeeded
        assert results[0].result.email == "w@contoso.com"
        assert results[0].etag

    @pytest.mark.asyncio
    async def test_batch_with_delete(self, table):
        """Test deletes yield a result without a record."""
        await table.insert(customer("Smith", "1"))
        batch = TableBatchOperation().delete(customer("Smith", "1", etag="*")).insert(customer("Smith", "2"))

        results = await table.execute_batch(batch)

        assert results[0].operation_type == OperationType.DELETE
        assert results[0].result is None
        assert results[1].result.row_key == "2"


class TestQueries:
    """Tests for segmented queries."""

    @pytest.fixture
    async def smiths(self, table):
        batch = TableBatchOperation()
        for i in range(100):
            batch.insert(customer("Smith", f"{i:04d}", email=f"{i:04d}@contoso.com"))
        await table.execute_batch(batch)
        await table.insert(customer("Jones", "0001", email="j@contoso.com", phone_number="1"))
        return table

    @pytest.mark.asyncio
    async def test_range_query_segments(self, smiths):
        """Test a range query with take count 50 over 75 matches."""
        query = TableQuery.range("Smith", "0001", "0075", entity_type=Customer, take_count=50)

        first = await smiths.query_segment(query)
        assert len(first) == 50
        assert first.has_more
        second = await smiths.query_segment(query, first.continuation_token)
        assert len(second) == 25
        assert not second.has_more

        row_keys = [c.row_key for c in first] + [c.row_key for c in second]
        assert row_keys == [f"{i:04d}" for i in range(1, 76)]

    @pytest.mark.asyncio
    async def test_partition_scan(self, smiths):
        """Test a partition scan visits only that partition."""
        results = await smiths.query(TableQuery.partition_scan("Smith", Customer)).to_list()

        assert len(results) == 100
        assert all(c.partition_key == "Smith" for c in results)

    @pytest.mark.asyncio
    async def test_lazy_iteration_across_segments(self, smiths):
        """Test iteration fetches further segments as needed."""
        query = smiths.query(TableQuery.all(take_count=30))

        results = [entity async for entity in query]

        assert len(results) == 101
        assert query.segments_fetched == 4

    @pytest.mark.asyncio
    async def test_default_segment_size(self, emulator, smiths):
        """Test the client's default segment size applies to unsized queries."""
        small = TableClient("customers", smiths.backend, default_segment_size=10)

        segment = await small.query_segment(TableQuery.partition_scan("Smith"))

        assert len(segment) == 10

    @pytest.mark.asyncio
    async def test_point_query(self, smiths):
        """Test point queries return at most one entity."""
        results = await smiths.query(TableQuery.point("Smith", "0042", Customer)).to_list()

        assert [c.email for c in results] == ["0042@contoso.com"]

    @pytest.mark.asyncio
    async def test_projection(self, smiths):
        """Test $select on a query."""
        segment = await smiths.query_segment(TableQuery.point("Jones", "0001").with_select("Email"))

        assert segment.results[0].get_custom_properties() == {"Email": "j@contoso.com"}


class TestSas:
    """Tests for SAS generation and SAS-bound clients."""

    @pytest.mark.asyncio
    async def test_ad_hoc_sas_round_trip(self, table):
        """Test a full-permission SAS can insert, read and delete."""
        token = await table.generate_sas(policy=policy(TableSasPermissions.all()))
        sas_table = table.with_sas(token)

        inserted = await sas_table.insert(customer("Johnson", "Mary"))
        read = await sas_table.retrieve("Johnson", "Mary", Customer)
        await sas_table.delete(read)

        assert inserted.etag == read.etag
        assert await table.retrieve("Johnson", "Mary") is None

    @pytest.mark.asyncio
    async def test_query_only_sas(self, table):
        """Test a query-only SAS cannot insert."""
        await table.insert(customer("Johnson", "Mary"))
        sas_table = table.with_sas(await table.generate_sas(policy=policy(TableSasPermissions.QUERY)))

        with pytest.raises(NotAllowedError):
            await sas_table.insert(customer("Wilson", "Joe"))
        assert await sas_table.retrieve("Johnson", "Mary") is not None

        denied = await sas_table.execute(TableOperation.delete(customer("Johnson", "Mary", etag="*")))
        assert denied.error_kind == ErrorKind.NOT_ALLOWED

    @pytest.mark.asyncio
    async def test_sas_cannot_manage_tables(self, table):
        """Test a table SAS does not authorise account-level calls."""
        sas_table = table.with_sas(await table.generate_sas(policy=policy(TableSasPermissions.all())))

        with pytest.raises(NotAllowedError):
            await sas_table.delete_table()
        with pytest.raises(NotAllowedError):
            await sas_table.generate_sas(policy=policy(TableSasPermissions.all()))

    @pytest.mark.asyncio
    async def test_sas_for_other_table(self, service, table):
        """Test a SAS for one table is rejected by another."""
        orders = await service.create_table("orders")
        token = await orders.generate_sas(policy=policy(TableSasPermissions.all()))

        with pytest.raises(NotAllowedError):
            await table.with_sas(token).insert(customer("a", "b"))

    @pytest.mark.asyncio
    async def test_incomplete_ad_hoc_sas(self, table):
        """Test ad-hoc tokens must carry permissions and expiry."""
        with pytest.raises(ValueError):
            await table.generate_sas(policy=AccessPolicy(permissions=TableSasPermissions.QUERY))

    @pytest.mark.asyncio
    async def test_sas_uri(self, table):
        """Test the SAS URI is the table URL plus the token."""
        uri = await table.generate_sas_uri(policy=policy(TableSasPermissions.QUERY))

        assert uri.startswith(table.url + "?")
        assert "tn=customers" in uri

    @pytest.mark.asyncio
    async def test_stored_policy_sas(self, table):
        """Test a SAS referencing a stored policy."""
        await table.create_stored_policy("readonly", policy(TableSasPermissions.QUERY))
        sas_table = table.with_sas(await table.generate_sas(policy_id="readonly"))

        await table.insert(customer("Wilson", "Joe"))
        assert await sas_table.retrieve("Wilson", "Joe") is not None
        with pytest.raises(NotAllowedError):
            await sas_table.insert(customer("Wilson", "Ann"))

    @pytest.mark.asyncio
    async def test_revoking_stored_policy(self, table):
        """Test removing the stored policy invalidates its tokens."""
        await table.create_stored_policy("temp", policy(TableSasPermissions.all()))
        sas_table = table.with_sas(await table.generate_sas(policy_id="temp"))
        await sas_table.insert(customer("a", "b"))

        await table.set_permissions(TablePermissions())

        with pytest.raises(NotAllowedError):
            await sas_table.insert(customer("a", "c"))


class TestStoredPolicies:
    """Tests for table ACL management."""

    @pytest.mark.asyncio
    async def test_round_trip(self, table):
        """Test stored policies are returned as set."""
        permissions = TablePermissions(policies={"key1": policy(TableSasPermissions.UPDATE)})
        await table.set_permissions(permissions)

        assert (await table.get_permissions()).policies == permissions.policies

    @pytest.mark.asyncio
    async def test_duplicate_policy(self, table):
        """Test policy names are unique."""
        await table.create_stored_policy("p", policy(TableSasPermissions.QUERY))

        with pytest.raises(ConflictError):
            await table.create_stored_policy("p", policy(TableSasPermissions.QUERY))

    @pytest.mark.asyncio
    async def test_policy_limit(self, table):
        """Test the sixth stored policy is rejected."""
        for i in range(5):
            await table.create_stored_policy(f"p{i}", policy(TableSasPermissions.QUERY))

        with pytest.raises(TooManyPoliciesError):
            await table.create_stored_policy("p5", policy(TableSasPermissions.QUERY))
        assert len(await table.get_permissions()) == 5


class TestServiceClient:
    """Tests for account-level calls."""

    @pytest.mark.asyncio
    async def test_list_tables(self, service):
        """Test listing with a prefix across segments."""
        for name in ("demoa", "demob", "democ", "other"):
            await service.create_table(name)

        names = await service.list_tables(prefix="demo", results_per_page=2).to_list()

        assert names == ["demoa", "demob", "democ"]

    @pytest.mark.asyncio
    async def test_service_properties(self, service):
        """Test setting and reading back service properties."""
        props = ServiceProperties()
        props.logging.read = True
        props.cors.append(CorsRule(allowed_origins=["*"], allowed_methods=["GET"]))

        await service.set_service_properties(props)

        assert await service.get_service_properties() == props

    @pytest.mark.asyncio
    async def test_service_stats(self, service):
        """Test statistics are available on the classic backend."""
        stats = await service.get_service_stats()

        assert stats.geo_replication.status.value == "live"

    @pytest.mark.asyncio
    async def test_from_config(self):
        """Test building a client from configuration."""
        config = TableStorageConfig(query={"segment_size": 25})

        async with TableServiceClient.from_config(config) as service:
            table = await service.create_table("configured")
            assert table.default_segment_size == 25


class TestCosmosBackend:
    """Tests for capability gating on the Cosmos backend."""

    @pytest.mark.asyncio
    async def test_entity_operations_work(self, cosmos_table):
        """Test core operations are unaffected."""
        await cosmos_table.insert(customer("a", "b"))

        assert await cosmos_table.retrieve("a", "b") is not None

    @pytest.mark.asyncio
    async def test_sas_not_supported(self, cosmos_table):
        """Test SAS generation is gated."""
        with pytest.raises(FeatureNotSupportedError):
            await cosmos_table.generate_sas(policy=policy(TableSasPermissions.QUERY))

    @pytest.mark.asyncio
    async def test_acl_not_supported(self, cosmos_table):
        """Test stored policies are gated."""
        with pytest.raises(FeatureNotSupportedError):
            await cosmos_table.get_permissions()
        with pytest.raises(FeatureNotSupportedError):
            await cosmos_table.create_stored_policy("p", policy(TableSasPermissions.QUERY))

    @pytest.mark.asyncio
    async def test_service_settings_not_supported(self, emulator):
        """Test service properties and statistics are gated."""
        service = TableServiceClient(CosmosCompatibleBackend(InMemoryTransport(emulator)))

        with pytest.raises(FeatureNotSupportedError):
            await service.get_service_properties()
        with pytest.raises(FeatureNotSupportedError):
            await service.get_service_stats()
