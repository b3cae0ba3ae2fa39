"""
Tests for the entity codec.
"""

from datetime import datetime, timezone
from typing import Optional
from uuid import UUID

import pytest

from tablestorage.codec import (
    EdmType,
    TableEntity,
    decode,
    edm_type_of,
    encode,
    record_type_of,
    to_entity,
    with_metadata,
)
from tablestorage.exceptions import ErrorKind, SchemaMismatchError
from tablestorage.models import Entity


class Customer(TableEntity):
    email: Optional[str] = None
    phone_number: Optional[str] = None


class Reading(TableEntity):
    value: float
    count: int = 0
    taken_at: Optional[datetime] = None
    sensor_id: Optional[UUID] = None
    raw: Optional[bytes] = None
    valid: bool = True


class Unsupported(TableEntity):
    tags: list = []


class TestEdmTypes:
    """Test suite for EDM type classification."""

    def test_bool_is_not_int(self):
        """Test that booleans classify as Edm.Boolean."""
        assert edm_type_of(True) == EdmType.BOOLEAN

    def test_integer_ranges(self):
        """Test Int32 and Int64 boundaries."""
        assert edm_type_of(2 ** 31 - 1) == EdmType.INT32
        assert edm_type_of(-(2 ** 31)) == EdmType.INT32
        assert edm_type_of(2 ** 31) == EdmType.INT64
        assert EdmType.INT64.is_numeric()

    def test_integer_out_of_range(self):
        """Test integers beyond Int64 are rejected."""
        with pytest.raises(SchemaMismatchError):
            edm_type_of(2 ** 63)

    def test_other_types(self):
        """Test remaining primitive types."""
        assert edm_type_of(1.5) == EdmType.DOUBLE
        assert edm_type_of("x") == EdmType.STRING
        assert edm_type_of(datetime.now(timezone.utc)) == EdmType.DATETIME
        assert edm_type_of(UUID(int=1)) == EdmType.GUID
        assert edm_type_of(b"\x00") == EdmType.BINARY

    def test_unsupported_type(self):
        """Test unsupported values raise SchemaMismatchError."""
        with pytest.raises(SchemaMismatchError) as exc_info:
            edm_type_of({"a": 1})
        assert exc_info.value.kind == ErrorKind.SCHEMA_MISMATCH


class TestEncode:
    """Test suite for encoding records."""

    def test_encode_maps_field_names(self):
        """Test that fields become PascalCase properties."""
        entity = encode(Customer(partition_key="Harp", row_key="Walter", email="w@contoso.com", phone_number="425"))

        assert entity.PartitionKey == "Harp"
        assert entity.RowKey == "Walter"
        assert entity.get_custom_properties() == {"Email": "w@contoso.com", "PhoneNumber": "425"}

    def test_encode_drops_none(self):
        """Test that unset optional fields are omitted."""
        entity = encode(Customer(partition_key="Harp", row_key="Walter"))

        assert entity.get_custom_properties() == {}

    def test_encode_carries_etag(self):
        """Test that the record's etag becomes the entity etag."""
        entity = encode(Customer(partition_key="a", row_key="b", etag='W/"1"'))

        assert entity.etag == 'W/"1"'

    def test_encode_empty_key(self):
        """Test that empty keys are rejected."""
        with pytest.raises(SchemaMismatchError):
            encode(Customer(partition_key="", row_key="b"))

    def test_encode_unsupported_property(self):
        """Test that unsupported property types are rejected."""
        with pytest.raises(SchemaMismatchError) as exc_info:
            encode(Unsupported(partition_key="a", row_key="b", tags=["x"]))
        assert exc_info.value.details["property"] == "Tags"

    def test_encode_rich_types(self):
        """Test datetime, GUID and binary properties survive encoding."""
        when = datetime(2024, 1, 2, 3, 4, 5, tzinfo=timezone.utc)
        entity = encode(
            Reading(partition_key="s", row_key="1", value=2.5, taken_at=when, sensor_id=UUID(int=7), raw=b"\x01")
        )
        props = entity.get_custom_properties()

        assert props["TakenAt"] == when
        assert props["SensorId"] == UUID(int=7)
        assert props["Raw"] == b"\x01"
        assert props["Valid"] is True


class TestDecode:
    """Test suite for decoding entities."""

    def test_decode_into_record(self):
        """Test decoding a property bag into a typed record."""
        entity = Entity(PartitionKey="Harp", RowKey="Walter", etag='W/"2"', Email="w@contoso.com")

        customer = decode(entity, Customer)

        assert isinstance(customer, Customer)
        assert customer.partition_key == "Harp"
        assert customer.email == "w@contoso.com"
        assert customer.phone_number is None
        assert customer.etag == 'W/"2"'

    def test_decode_ignores_unknown_properties(self):
        """Test that properties the record does not declare are dropped."""
        entity = Entity(PartitionKey="a", RowKey="b", Extra=1)

        assert decode(entity, Customer).email is None

    def test_decode_missing_required_property(self):
        """Test that a missing required property is a schema mismatch."""
        with pytest.raises(SchemaMismatchError):
            decode(Entity(PartitionKey="a", RowKey="b"), Reading)

    def test_decode_wrong_type(self):
        """Test that an incompatible property value is a schema mismatch."""
        with pytest.raises(SchemaMismatchError):
            decode(Entity(PartitionKey="a", RowKey="b", Value="not a number"), Reading)

    def test_round_trip(self):
        """Test decoding an encoded record gives back an equal record."""
        reading = Reading(
            partition_key="sensor-7",
            row_key="0001",
            value=21.5,
            count=2 ** 40,
            taken_at=datetime(2024, 1, 2, 3, 4, 5, tzinfo=timezone.utc),
            sensor_id=UUID(int=7),
            raw=b"\x00\xff",
            valid=False,
            etag='W/"5"',
        )

        assert decode(encode(reading), Reading) == reading

    def test_round_trip_drops_none(self):
        """Test optional properties left unset decode back as None."""
        customer = Customer(partition_key="Harp", row_key="Walter", email="w@contoso.com")

        assert decode(encode(customer), Customer) == customer

    def test_decode_as_entity_is_identity(self):
        """Test decoding into Entity returns the entity itself."""
        entity = Entity(PartitionKey="a", RowKey="b")

        assert decode(entity, Entity) is entity

    def test_decode_rejects_non_record_type(self):
        """Test that only TableEntity subclasses are valid targets."""
        with pytest.raises(TypeError):
            decode(Entity(PartitionKey="a", RowKey="b"), dict)


class TestConversions:
    """Test suite for to_entity and metadata helpers."""

    def test_to_entity_from_mapping(self):
        """Test converting a plain mapping."""
        entity = to_entity({"PartitionKey": "a", "RowKey": "b", "Age": 3, "Note": None})

        assert entity.key == ("a", "b")
        assert entity.get_custom_properties() == {"Age": 3}

    def test_to_entity_mapping_without_keys(self):
        """Test mappings must carry both keys."""
        with pytest.raises(SchemaMismatchError):
            to_entity({"PartitionKey": "a"})

    def test_to_entity_copies_entity(self):
        """Test converting an entity yields an independent copy."""
        original = Entity(PartitionKey="a", RowKey="b", Age=3)
        copy = to_entity(original)

        assert copy == original
        assert copy is not original

    def test_to_entity_unsupported_object(self):
        """Test arbitrary objects are rejected."""
        with pytest.raises(SchemaMismatchError):
            to_entity(42)

    def test_record_type_of(self):
        """Test result type follows the submitted record."""
        assert record_type_of(Customer(partition_key="a", row_key="b")) is Customer
        assert record_type_of({"PartitionKey": "a", "RowKey": "b"}) is Entity

    def test_with_metadata_on_record(self):
        """Test that etag and timestamp are copied onto a new record."""
        customer = Customer(partition_key="a", row_key="b", email="e")
        when = datetime(2024, 1, 1, tzinfo=timezone.utc)
        written = Entity(PartitionKey="a", RowKey="b", Timestamp=when, etag='W/"3"')

        updated = with_metadata(customer, written)

        assert updated.etag == 'W/"3"'
        assert updated.timestamp == when
        assert updated.email == "e"
        assert customer.etag is None

    def test_with_metadata_on_mapping(self):
        """Test that mappings come back as entities."""
        written = Entity(PartitionKey="a", RowKey="b", etag='W/"4"')

        updated = with_metadata({"PartitionKey": "a", "RowKey": "b", "Age": 1}, written)

        assert isinstance(updated, Entity)
        assert updated.etag == 'W/"4"'
        assert updated.get_custom_properties() == {"Age": 1}
