"""
Service-level settings: analytics logging, hour/minute metrics, CORS rules,
and geo-replication statistics.
"""

from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field, field_validator, model_validator


MAX_CORS_RULES = 5
CORS_METHODS = frozenset({"DELETE", "GET", "HEAD", "MERGE", "POST", "OPTIONS", "PUT", "PATCH"})


class RetentionPolicy(BaseModel):
    """How long analytics data is kept."""
    enabled: bool = False
    days: Optional[int] = Field(default=None, ge=1, le=365)

    @model_validator(mode="after")
    def check_days(self) -> "RetentionPolicy":
        if self.enabled and self.days is None:
            raise ValueError("Retention days are required when retention is enabled")
        return self


class LoggingProperties(BaseModel):
    """Analytics logging settings."""
    version: str = "1.0"
    read: bool = False
    write: bool = False
    delete: bool = False
    retention_policy: RetentionPolicy = Field(default_factory=RetentionPolicy)


class MetricsProperties(BaseModel):
    """Hour or minute metrics settings."""
    version: str = "1.0"
    enabled: bool = False
    include_apis: Optional[bool] = None
    retention_policy: RetentionPolicy = Field(default_factory=RetentionPolicy)

    @model_validator(mode="after")
    def check_include_apis(self) -> "MetricsProperties":
        if not self.enabled:
            self.include_apis = None
        elif self.include_apis is None:
            raise ValueError("include_apis must be set when metrics are enabled")
        return self


class CorsRule(BaseModel):
    """One cross-origin resource sharing rule."""
    allowed_origins: List[str] = Field(..., min_length=1)
    allowed_methods: List[str] = Field(..., min_length=1)
    allowed_headers: List[str] = Field(default_factory=list)
    exposed_headers: List[str] = Field(default_factory=list)
    max_age_in_seconds: int = Field(default=0, ge=0)

    @field_validator("allowed_methods")
    @classmethod
    def validate_methods(cls, v: List[str]) -> List[str]:
        methods = [m.upper() for m in v]
        unknown = sorted(set(methods) - CORS_METHODS)
        if unknown:
            raise ValueError(f"Unsupported CORS methods: {', '.join(unknown)}")
        return methods


class ServiceProperties(BaseModel):
    """Table service properties."""
    logging: LoggingProperties = Field(default_factory=LoggingProperties)
    hour_metrics: MetricsProperties = Field(default_factory=MetricsProperties)
    minute_metrics: MetricsProperties = Field(default_factory=MetricsProperties)
    cors: List[CorsRule] = Field(default_factory=list, max_length=MAX_CORS_RULES)


class GeoReplicationStatus(str, Enum):
    """Secondary location status."""
    LIVE = "live"
    BOOTSTRAP = "bootstrap"
    UNAVAILABLE = "unavailable"


class GeoReplication(BaseModel):
    status: GeoReplicationStatus
    last_sync_time: Optional[datetime] = None


class ServiceStats(BaseModel):
    """Replication statistics read from the secondary location."""
    geo_replication: GeoReplication
