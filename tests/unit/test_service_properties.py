"""
Tests for service property models.
"""

import pytest
from pydantic import ValidationError

from tablestorage.service_properties import (
    MAX_CORS_RULES,
    CorsRule,
    GeoReplicationStatus,
    MetricsProperties,
    RetentionPolicy,
    ServiceProperties,
    ServiceStats,
)


def rule(**kwargs) -> CorsRule:
    values = {"allowed_origins": ["*"], "allowed_methods": ["GET"]}
    values.update(kwargs)
    return CorsRule(**values)


class TestRetentionPolicy:
    """Test suite for RetentionPolicy."""

    def test_disabled_by_default(self):
        """Test the default policy keeps nothing."""
        policy = RetentionPolicy()

        assert not policy.enabled
        assert policy.days is None

    def test_enabled_requires_days(self):
        """Test enabled retention needs a day count."""
        with pytest.raises(ValidationError):
            RetentionPolicy(enabled=True)

    def test_days_range(self):
        """Test retention is limited to 1..365 days."""
        with pytest.raises(ValidationError):
            RetentionPolicy(enabled=True, days=366)


class TestMetricsProperties:
    """Test suite for MetricsProperties."""

    def test_enabled_requires_include_apis(self):
        """Test enabled metrics must say whether to include API metrics."""
        with pytest.raises(ValidationError):
            MetricsProperties(enabled=True)

    def test_disabled_clears_include_apis(self):
        """Test include_apis is meaningless when disabled."""
        assert MetricsProperties(enabled=False, include_apis=True).include_apis is None


class TestCorsRule:
    """Test suite for CorsRule."""

    def test_methods_are_normalised(self):
        """Test methods are upper-cased."""
        assert rule(allowed_methods=["get", "put"]).allowed_methods == ["GET", "PUT"]

    def test_unknown_method(self):
        """Test unsupported methods are rejected."""
        with pytest.raises(ValidationError):
            rule(allowed_methods=["TRACE"])

    def test_origins_required(self):
        """Test at least one origin is needed."""
        with pytest.raises(ValidationError):
            rule(allowed_origins=[])

    def test_rule_limit(self):
        """Test at most five rules are allowed."""
        ServiceProperties(cors=[rule() for _ in range(MAX_CORS_RULES)])
        with pytest.raises(ValidationError):
            ServiceProperties(cors=[rule() for _ in range(MAX_CORS_RULES + 1)])


class TestServiceProperties:
    """Test suite for ServiceProperties."""

    def test_defaults(self):
        """Test everything is off by default."""
        props = ServiceProperties()

        assert not props.logging.read
        assert not props.hour_metrics.enabled
        assert props.cors == []

    def test_deep_copy_is_independent(self):
        """Test modifying a copy leaves the original untouched."""
        original = ServiceProperties()
        copy = original.model_copy(deep=True)
        copy.logging.read = True
        copy.cors.append(rule())

        assert not original.logging.read
        assert original.cors == []
        assert copy != original

    def test_stats(self):
        """Test stats parse the replication status."""
        stats = ServiceStats.model_validate({"geo_replication": {"status": "live"}})

        assert stats.geo_replication.status == GeoReplicationStatus.LIVE
        assert stats.geo_replication.last_sync_time is None
