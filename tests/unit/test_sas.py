"""
Tests for SAS permissions, access policies and constraint resolution.
"""

from datetime import datetime, timedelta, timezone

import pytest
from pydantic import ValidationError

from tablestorage.exceptions import ConflictError, ErrorKind, NotAllowedError, TooManyPoliciesError
from tablestorage.sas import (
    MAX_STORED_POLICIES,
    AccessPolicy,
    TablePermissions,
    TableSasPermissions,
    resolve_constraints,
    validate_sas_request,
)

NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


class TestPermissions:
    """Test suite for TableSasPermissions."""

    def test_to_string_canonical_order(self):
        """Test permissions serialise as 'raud' regardless of construction order."""
        perms = TableSasPermissions.DELETE | TableSasPermissions.QUERY

        assert perms.to_string() == "rd"
        assert TableSasPermissions.all().to_string() == "raud"

    def test_from_string(self):
        """Test parsing a permission string."""
        assert TableSasPermissions.from_string("ua") == TableSasPermissions.ADD | TableSasPermissions.UPDATE
        assert TableSasPermissions.from_string("") == TableSasPermissions.NONE

    def test_from_string_unknown_letter(self):
        """Test unknown letters are rejected."""
        with pytest.raises(ValueError):
            TableSasPermissions.from_string("rx")

    def test_containment(self):
        """Test composite permission checks."""
        granted = TableSasPermissions.QUERY | TableSasPermissions.ADD

        assert TableSasPermissions.QUERY in granted
        assert (TableSasPermissions.ADD | TableSasPermissions.UPDATE) not in granted


class TestAccessPolicy:
    """Test suite for AccessPolicy."""

    def test_naive_times_are_utc(self):
        """Test naive datetimes are treated as UTC."""
        policy = AccessPolicy(expiry=datetime(2024, 1, 1))

        assert policy.expiry.tzinfo == timezone.utc

    def test_start_must_precede_expiry(self):
        """Test an empty time window is rejected."""
        with pytest.raises(ValidationError):
            AccessPolicy(start=NOW, expiry=NOW)

    def test_is_complete(self):
        """Test completeness requires permissions and expiry."""
        assert AccessPolicy(permissions=TableSasPermissions.QUERY, expiry=NOW).is_complete
        assert not AccessPolicy(permissions=TableSasPermissions.QUERY).is_complete
        assert not AccessPolicy(expiry=NOW).is_complete

    def test_policies_are_immutable(self):
        """Test policies are frozen."""
        policy = AccessPolicy(expiry=NOW)

        with pytest.raises(ValidationError):
            policy.expiry = NOW + timedelta(hours=1)


class TestTablePermissions:
    """Test suite for stored access policy sets."""

    def test_add_and_remove(self):
        """Test adding and removing a named policy."""
        perms = TablePermissions()
        perms.add("read", AccessPolicy(permissions=TableSasPermissions.QUERY))

        assert "read" in perms
        assert len(perms) == 1
        perms.remove("read")
        assert len(perms) == 0

    def test_duplicate_name(self):
        """Test a name can only be used once."""
        perms = TablePermissions()
        perms.add("p", AccessPolicy())

        with pytest.raises(ConflictError) as exc_info:
            perms.add("p", AccessPolicy())
        assert exc_info.value.error_code == "PolicyAlreadyExists"

    def test_limit(self):
        """Test the sixth policy is rejected."""
        perms = TablePermissions()
        for i in range(MAX_STORED_POLICIES):
            perms.add(f"p{i}", AccessPolicy())

        with pytest.raises(TooManyPoliciesError) as exc_info:
            perms.add("extra", AccessPolicy())
        assert exc_info.value.kind == ErrorKind.TOO_MANY_POLICIES
        assert len(perms) == MAX_STORED_POLICIES

    def test_identifier_length(self):
        """Test identifiers are limited to 64 characters."""
        with pytest.raises(ValueError):
            TablePermissions().add("x" * 65, AccessPolicy())
        with pytest.raises(ValidationError):
            TablePermissions(policies={"": AccessPolicy()})


class TestSasRequest:
    """Test suite for SAS request validation."""

    def test_requires_policy_or_identifier(self):
        """Test a SAS needs some source of constraints."""
        with pytest.raises(ValueError):
            validate_sas_request(None, None)

    def test_ad_hoc_must_be_complete(self):
        """Test ad-hoc tokens need permissions and expiry."""
        with pytest.raises(ValueError):
            validate_sas_request(AccessPolicy(permissions=TableSasPermissions.QUERY), None)

    def test_stored_policy_reference_alone(self):
        """Test a bare stored policy reference is acceptable."""
        validate_sas_request(None, "policy")


class TestResolveConstraints:
    """Test suite for merging token and stored-policy constraints."""

    def test_ad_hoc_only(self):
        """Test a complete ad-hoc token stands alone."""
        token = AccessPolicy(permissions=TableSasPermissions.QUERY, expiry=NOW)

        assert resolve_constraints(token, None) == token

    def test_split_between_token_and_policy(self):
        """Test constraints may come from either side."""
        token = AccessPolicy(expiry=NOW)
        stored = AccessPolicy(permissions=TableSasPermissions.all())

        effective = resolve_constraints(token, stored)

        assert effective.permissions == TableSasPermissions.all()
        assert effective.expiry == NOW

    def test_constraint_on_both_sides(self):
        """Test a constraint given twice is rejected."""
        token = AccessPolicy(expiry=NOW)
        stored = AccessPolicy(permissions=TableSasPermissions.QUERY, expiry=NOW)

        with pytest.raises(NotAllowedError):
            resolve_constraints(token, stored)

    def test_missing_constraint(self):
        """Test permissions and expiry must be specified somewhere."""
        with pytest.raises(NotAllowedError):
            resolve_constraints(AccessPolicy(), AccessPolicy(permissions=TableSasPermissions.QUERY))
