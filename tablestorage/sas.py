"""
Shared access signatures and stored access policies.

Signing itself is a service capability; this module only models the
constraints (permissions, time window, policy reference) and the rules
that govern how they may be split between a token and a stored policy.
"""

from datetime import datetime, timezone
from enum import Flag
from typing import Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from tablestorage.exceptions import ConflictError, NotAllowedError, TooManyPoliciesError


MAX_STORED_POLICIES = 5
MAX_POLICY_ID_LENGTH = 64


class TableSasPermissions(Flag):
    """Operations a SAS token may authorise on a table."""
    NONE = 0
    QUERY = 1
    ADD = 2
    UPDATE = 4
    DELETE = 8

    @classmethod
    def all(cls) -> "TableSasPermissions":
        return cls.QUERY | cls.ADD | cls.UPDATE | cls.DELETE

    def to_string(self) -> str:
        """Serialise in canonical ``raud`` order."""
        return "".join(letter for flag, letter in _PERMISSION_LETTERS if flag in self)

    @classmethod
    def from_string(cls, value: str) -> "TableSasPermissions":
        """
        Parse a permission string such as ``raud``.

        Raises:
            ValueError: On an unknown permission letter
        """
        result = cls.NONE
        letters = {letter: flag for flag, letter in _PERMISSION_LETTERS}
        for char in value:
            if char not in letters:
                raise ValueError(f"Unknown table SAS permission: {char!r}")
            result |= letters[char]
        return result

    def __str__(self) -> str:
        return self.to_string()


_PERMISSION_LETTERS = (
    (TableSasPermissions.QUERY, "r"),
    (TableSasPermissions.ADD, "a"),
    (TableSasPermissions.UPDATE, "u"),
    (TableSasPermissions.DELETE, "d"),
)


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class AccessPolicy(BaseModel):
    """
    Access constraints: permission set and time window.

    Any field may be left unset; the unset ones must then come from the other
    side (stored policy or token) when the signature is used.
    """
    model_config = ConfigDict(frozen=True)

    permissions: Optional[TableSasPermissions] = None
    start: Optional[datetime] = None
    expiry: Optional[datetime] = None

    @field_validator("start", "expiry")
    @classmethod
    def normalise_timezone(cls, v: Optional[datetime]) -> Optional[datetime]:
        """Treat naive datetimes as UTC."""
        return _as_utc(v)

    @model_validator(mode="after")
    def check_window(self) -> "AccessPolicy":
        if self.start and self.expiry and self.start >= self.expiry:
            raise ValueError("Policy start must be before expiry")
        return self

    @property
    def is_complete(self) -> bool:
        """Whether the policy alone can back an ad-hoc signature."""
        return self.permissions is not None and self.expiry is not None


class TablePermissions(BaseModel):
    """Stored access policies (signed identifiers) of one table."""

    policies: Dict[str, AccessPolicy] = Field(default_factory=dict)

    @field_validator("policies")
    @classmethod
    def validate_policies(cls, v: Dict[str, AccessPolicy]) -> Dict[str, AccessPolicy]:
        for name in v:
            if not name or len(name) > MAX_POLICY_ID_LENGTH:
                raise ValueError(f"Policy identifier must be 1-{MAX_POLICY_ID_LENGTH} characters: {name!r}")
        return v

    def add(self, name: str, policy: AccessPolicy, limit: int = MAX_STORED_POLICIES) -> None:
        """
        Add a named policy.

        Args:
            name: Signed identifier
            policy: Constraints stored under the identifier
            limit: Maximum number of stored policies

        Raises:
            ConflictError: If the name is already in use
            TooManyPoliciesError: If the table would exceed ``limit`` policies
        """
        if not name or len(name) > MAX_POLICY_ID_LENGTH:
            raise ValueError(f"Policy identifier must be 1-{MAX_POLICY_ID_LENGTH} characters: {name!r}")
        if name in self.policies:
            raise ConflictError(
                f"Stored access policy '{name}' already exists",
                error_code="PolicyAlreadyExists",
                details={"policy_id": name},
            )
        if len(self.policies) >= limit:
            raise TooManyPoliciesError(
                f"A table can hold at most {limit} stored access policies",
                details={"policy_id": name, "limit": limit},
            )
        self.policies[name] = policy

    def remove(self, name: str) -> AccessPolicy:
        return self.policies.pop(name)

    def __len__(self) -> int:
        return len(self.policies)

    def __contains__(self, name: str) -> bool:
        return name in self.policies


def validate_sas_request(policy: Optional[AccessPolicy], policy_id: Optional[str]) -> None:
    """
    Check a SAS request before asking the service to sign it.

    Args:
        policy: Ad-hoc constraints embedded in the token
        policy_id: Stored policy referenced by the token

    Raises:
        ValueError: If neither is given, or an ad-hoc token lacks permissions or expiry
    """
    if policy is None and policy_id is None:
        raise ValueError("A SAS needs an ad-hoc policy, a stored policy identifier, or both")
    if policy_id is None and not policy.is_complete:
        raise ValueError("An ad-hoc SAS must specify both permissions and expiry")


def resolve_constraints(token_policy: AccessPolicy, stored_policy: Optional[AccessPolicy]) -> AccessPolicy:
    """
    Merge token and stored-policy constraints.

    Each constraint must be specified on exactly one side; permissions and
    expiry must be specified somewhere.

    Args:
        token_policy: Constraints carried by the token
        stored_policy: Constraints of the referenced stored policy, if any

    Returns:
        Effective policy

    Raises:
        NotAllowedError: If a constraint is split inconsistently or omitted
    """
    if stored_policy is None:
        effective = token_policy
    else:
        merged = {}
        for name in ("permissions", "start", "expiry"):
            token_value = getattr(token_policy, name)
            stored_value = getattr(stored_policy, name)
            if token_value is not None and stored_value is not None:
                raise NotAllowedError(
                    f"SAS constraint '{name}' is specified on both the token and the stored policy",
                    error_code="AuthenticationFailed",
                )
            merged[name] = token_value if token_value is not None else stored_value
        effective = AccessPolicy(**merged)

    if not effective.is_complete:
        raise NotAllowedError(
            "SAS does not specify both permissions and expiry",
            error_code="AuthenticationFailed",
        )
    return effective
