"""Table service SAS signing and validation for the in-process service.

Tokens are signed with HMAC-SHA256 over the account key, using the table
service string-to-sign. Constraints omitted from the token are taken from
the referenced stored access policy.
"""

import base64
import hashlib
import hmac
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Dict, Optional
from urllib.parse import parse_qs, quote, unquote

from tablestorage.exceptions import NotAllowedError
from tablestorage.sas import AccessPolicy, TablePermissions, TableSasPermissions, resolve_constraints


SAS_VERSION = "2019-02-02"


def format_sas_time(value: datetime) -> str:
    """Format a datetime the way SAS tokens carry it (second precision, UTC)."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def parse_sas_time(value: str) -> datetime:
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


@dataclass
class TableSasToken:
    """Parsed table SAS token."""

    table_name: str  # tn
    signature: str  # sig
    signed_version: str = SAS_VERSION  # sv
    signed_permissions: Optional[str] = None  # sp
    signed_start: Optional[str] = None  # st
    signed_expiry: Optional[str] = None  # se
    signed_identifier: Optional[str] = None  # si
    raw_params: Dict[str, str] = field(default_factory=dict)

    def to_policy(self) -> AccessPolicy:
        """Constraints carried by the token itself."""
        try:
            return AccessPolicy(
                permissions=(
                    TableSasPermissions.from_string(self.signed_permissions)
                    if self.signed_permissions else None
                ),
                start=parse_sas_time(self.signed_start) if self.signed_start else None,
                expiry=parse_sas_time(self.signed_expiry) if self.signed_expiry else None,
            )
        except ValueError as exc:
            raise NotAllowedError(
                f"Malformed SAS token: {exc}", error_code="AuthenticationFailed"
            ) from exc


class TableSasValidator:
    """Signs and validates table SAS tokens for one account."""

    def __init__(
        self,
        account_name: str,
        account_key: str,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        """Initialize SAS validator.

        Args:
            account_name: Storage account name
            account_key: Storage account key (base64-encoded)
            clock: Returns the current UTC time
        """
        self.account_name = account_name
        self.account_key = account_key
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        try:
            self.account_key_bytes = base64.b64decode(account_key)
        except ValueError as exc:
            raise ValueError("Invalid account key format") from exc

    def _build_string_to_sign(self, token: TableSasToken) -> str:
        """Build the string to sign for a table service SAS.

        Format:
        signedpermissions\n
        signedstart\n
        signedexpiry\n
        canonicalizedresource\n
        signedidentifier\n
        signedIP\n
        signedProtocol\n
        signedversion\n
        startingPartitionKey\n
        startingRowKey\n
        endingPartitionKey\n
        endingRowKey
        """
        parts = [
            token.signed_permissions or "",
            token.signed_start or "",
            token.signed_expiry or "",
            f"/table/{self.account_name}/{token.table_name.lower()}",
            token.signed_identifier or "",
            "",
            "",
            token.signed_version,
            "",
            "",
            "",
            "",
        ]
        return "\n".join(parts)

    def _sign(self, token: TableSasToken) -> str:
        return base64.b64encode(
            hmac.new(
                self.account_key_bytes,
                self._build_string_to_sign(token).encode("utf-8"),
                hashlib.sha256,
            ).digest()
        ).decode("utf-8")

    def generate(
        self,
        table_name: str,
        policy: Optional[AccessPolicy] = None,
        policy_id: Optional[str] = None,
    ) -> str:
        """Sign a token.

        Args:
            table_name: Table the token grants access to
            policy: Ad-hoc constraints embedded in the token
            policy_id: Stored policy the token references

        Returns:
            Query string without a leading '?'
        """
        token = TableSasToken(
            table_name=table_name,
            signature="",
            signed_permissions=(
                policy.permissions.to_string() if policy and policy.permissions is not None else None
            ),
            signed_start=format_sas_time(policy.start) if policy and policy.start else None,
            signed_expiry=format_sas_time(policy.expiry) if policy and policy.expiry else None,
            signed_identifier=policy_id,
        )
        token.signature = self._sign(token)

        params = [("sv", token.signed_version), ("tn", table_name)]
        for key, value in (
            ("st", token.signed_start),
            ("se", token.signed_expiry),
            ("sp", token.signed_permissions),
            ("si", token.signed_identifier),
        ):
            if value:
                params.append((key, value))
        params.append(("sig", token.signature))
        return "&".join(f"{key}={quote(value, safe='')}" for key, value in params)

    def parse(self, sas_token: str) -> TableSasToken:
        """Parse a SAS query string.

        Raises:
            NotAllowedError: If required parameters are missing
        """
        params = parse_qs(sas_token.lstrip("?"))

        def get_param(key: str) -> Optional[str]:
            values = params.get(key, [])
            return values[0] if values else None

        table_name = get_param("tn")
        signature = get_param("sig")
        if not table_name or not signature:
            raise NotAllowedError(
                "Missing required SAS parameter: tn or sig",
                error_code="AuthenticationFailed",
            )

        return TableSasToken(
            table_name=table_name,
            signature=signature,
            signed_version=get_param("sv") or SAS_VERSION,
            signed_permissions=get_param("sp"),
            signed_start=get_param("st"),
            signed_expiry=get_param("se"),
            signed_identifier=get_param("si"),
            raw_params={key: values[0] for key, values in params.items() if values},
        )

    def validate_signature(self, token: TableSasToken) -> None:
        """Validate the signature with a constant-time comparison.

        Raises:
            NotAllowedError: If the signature does not match
        """
        expected = self._sign(token)
        if not hmac.compare_digest(expected, unquote(token.signature)):
            raise NotAllowedError("Signature mismatch", error_code="AuthenticationFailed")

    def validate(
        self,
        sas_token: str,
        table_name: str,
        required: TableSasPermissions,
        stored_policies: TablePermissions,
    ) -> AccessPolicy:
        """Authorise one request.

        Args:
            sas_token: Query string presented by the caller
            table_name: Table the request targets
            required: Permissions the operation needs
            stored_policies: Active stored access policies of the table

        Returns:
            The effective policy

        Raises:
            NotAllowedError: On any authentication or authorisation failure
        """
        token = self.parse(sas_token)
        self.validate_signature(token)

        if token.table_name.lower() != table_name.lower():
            raise NotAllowedError(
                f"SAS token is scoped to table '{token.table_name}'",
                error_code="AuthorizationResourceTypeMismatch",
            )

        stored_policy = None
        if token.signed_identifier is not None:
            stored_policy = stored_policies.policies.get(token.signed_identifier)
            if stored_policy is None:
                raise NotAllowedError(
                    f"Stored access policy '{token.signed_identifier}' is not active",
                    error_code="AuthenticationFailed",
                )

        effective = resolve_constraints(token.to_policy(), stored_policy)

        now = self._clock()
        if effective.start is not None and now < effective.start:
            raise NotAllowedError("SAS token not yet valid", error_code="AuthenticationFailed")
        if now >= effective.expiry:
            raise NotAllowedError("SAS token has expired", error_code="AuthenticationFailed")

        if required not in effective.permissions:
            missing = TableSasPermissions(required.value & ~effective.permissions.value)
            raise NotAllowedError(
                f"SAS token lacks required permission: {missing.to_string()}",
                details={"required": required.to_string(), "granted": effective.permissions.to_string()},
            )
        return effective
