"""OAuth token and client data structures.

This module provides the TokenSet dataclass for the tokens issued by the
authorization server, and the ClientMetadata / ClientInformation pair used
for Dynamic Client Registration (RFC 7591).
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any

logger = logging.getLogger(__name__)

DEFAULT_GRANT_TYPES = ["authorization_code", "refresh_token"]
DEFAULT_RESPONSE_TYPES = ["code"]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class TokenSet:
    """OAuth token set as returned by the token endpoint.

    Attributes:
        access_token: The access token string
        token_type: Token type (typically "Bearer")
        expires_in: Lifetime of the access token in seconds, if the server sent one
        refresh_token: Optional refresh token for obtaining new access tokens
        scope: Space-separated list of granted scopes
        issued_at: When the token set was received (UTC datetime)
    """

    access_token: str
    token_type: str = "Bearer"
    expires_in: int | None = None
    refresh_token: str | None = None
    scope: str | None = None
    issued_at: datetime = field(default_factory=_utcnow)

    @property
    def expires_at(self) -> datetime | None:
        """Absolute expiry time derived from issued_at and expires_in."""
        if self.expires_in is None:
            return None
        issued_at = self.issued_at
        if issued_at.tzinfo is None:
            issued_at = issued_at.replace(tzinfo=timezone.utc)
        return issued_at + timedelta(seconds=self.expires_in)

    def is_expired(self, buffer_seconds: int = 30) -> bool:
        """Check if the access token is expired or nearly expired.

        Args:
            buffer_seconds: Consider token expired this many seconds before
                actual expiry to allow for clock skew and request latency.

        Returns:
            True if token is expired or will expire within buffer_seconds.
            Tokens without expiry information are never considered expired;
            the resource server will answer 401 if they are.
        """
        expires_at = self.expires_at
        if expires_at is None:
            return False

        return _utcnow() >= (expires_at - timedelta(seconds=buffer_seconds))

    def has_refresh_token(self) -> bool:
        """Check if this token set has a refresh token."""
        return self.refresh_token is not None and len(self.refresh_token) > 0

    def to_dict(self) -> dict[str, Any]:
        """Serialize token set to dictionary for storage.

        Returns:
            Dictionary in the OAuth token response shape, plus issued_at
        """
        data: dict[str, Any] = {
            "access_token": self.access_token,
            "token_type": self.token_type,
        }

        if self.expires_in is not None:
            data["expires_in"] = self.expires_in

        if self.refresh_token:
            data["refresh_token"] = self.refresh_token

        if self.scope:
            data["scope"] = self.scope

        data["issued_at"] = self.issued_at.isoformat()
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "TokenSet":
        """Deserialize token set from dictionary.

        Args:
            data: Dictionary from storage (via to_dict) or a token response

        Returns:
            TokenSet instance

        Raises:
            KeyError: If access_token is missing
            ValueError: If access_token is empty or a field has the wrong type
        """
        access_token = data["access_token"]
        if not isinstance(access_token, str) or not access_token:
            raise ValueError("access_token must be a non-empty string")

        issued_at = _utcnow()
        if data.get("issued_at"):
            issued_at = datetime.fromisoformat(data["issued_at"])
            if issued_at.tzinfo is None:
                issued_at = issued_at.replace(tzinfo=timezone.utc)

        expires_in = data.get("expires_in")

        return cls(
            access_token=access_token,
            token_type=data.get("token_type") or "Bearer",
            expires_in=int(expires_in) if expires_in is not None else None,
            refresh_token=data.get("refresh_token"),
            scope=data.get("scope"),
            issued_at=issued_at,
        )

    @classmethod
    def from_token_response(
        cls,
        response: dict[str, Any],
        previous_refresh_token: str | None = None,
    ) -> "TokenSet":
        """Create TokenSet from an OAuth token endpoint response.

        Servers are not required to rotate refresh tokens, so a response
        without one keeps the refresh token that was used to obtain it.

        Args:
            response: JSON response from token endpoint
            previous_refresh_token: Refresh token to keep if none is issued

        Returns:
            TokenSet instance
        """
        data = dict(response)
        data.pop("issued_at", None)
        if not data.get("refresh_token") and previous_refresh_token:
            data["refresh_token"] = previous_refresh_token
        return cls.from_dict(data)

    def get_auth_header(self) -> str:
        """Get the Authorization header value for this token.

        Returns:
            Authorization header value (e.g., "Bearer abc123...")
        """
        # Always "Bearer" per RFC 6750; some servers return lowercase token_type
        return f"Bearer {self.access_token}"


@dataclass
class ClientMetadata:
    """Client metadata submitted to the registration endpoint (RFC 7591)."""

    redirect_uris: list[str]
    client_name: str | None = None
    client_uri: str | None = None
    grant_types: list[str] = field(default_factory=lambda: list(DEFAULT_GRANT_TYPES))
    response_types: list[str] = field(default_factory=lambda: list(DEFAULT_RESPONSE_TYPES))
    software_id: str | None = None
    software_version: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Serialize to the JSON registration request body."""
        data: dict[str, Any] = dict(self.extra)
        data.update(
            {
                "redirect_uris": list(self.redirect_uris),
                "grant_types": list(self.grant_types),
                "response_types": list(self.response_types),
            }
        )
        for key in ("client_name", "client_uri", "software_id", "software_version"):
            value = getattr(self, key)
            if value is not None:
                data[key] = value
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ClientMetadata":
        """Create from a metadata dictionary, keeping unknown fields in extra."""
        known = {
            "redirect_uris",
            "client_name",
            "client_uri",
            "grant_types",
            "response_types",
            "software_id",
            "software_version",
        }
        return cls(
            redirect_uris=list(data.get("redirect_uris", [])),
            client_name=data.get("client_name"),
            client_uri=data.get("client_uri"),
            grant_types=list(data.get("grant_types", DEFAULT_GRANT_TYPES)),
            response_types=list(data.get("response_types", DEFAULT_RESPONSE_TYPES)),
            software_id=data.get("software_id"),
            software_version=data.get("software_version"),
            extra={k: v for k, v in data.items() if k not in known},
        )


_CLIENT_INFO_FIELDS = (
    "client_id",
    "client_secret",
    "redirect_uris",
    "grant_types",
    "response_types",
    "client_name",
    "client_uri",
    "software_id",
    "software_version",
)


@dataclass
class ClientInformation:
    """OAuth client identity.

    Either supplied statically by the caller or issued by the authorization
    server through Dynamic Client Registration. Public clients (like CLIs)
    usually have no client_secret.

    Fields the server returns beyond the ones modelled here (for example
    client_id_issued_at) are kept in ``extra`` so they survive storage.
    """

    client_id: str
    client_secret: str | None = None
    redirect_uris: list[str] = field(default_factory=list)
    grant_types: list[str] = field(default_factory=list)
    response_types: list[str] = field(default_factory=list)
    client_name: str | None = None
    client_uri: str | None = None
    software_id: str | None = None
    software_version: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    def is_confidential(self) -> bool:
        """Check if this is a confidential client (has a secret)."""
        return self.client_secret is not None and len(self.client_secret) > 0

    @property
    def redirect_uri(self) -> str | None:
        """The first registered redirect URI, if any."""
        return self.redirect_uris[0] if self.redirect_uris else None

    def to_dict(self) -> dict[str, Any]:
        """Serialize client information to dictionary."""
        data: dict[str, Any] = dict(self.extra)
        for key in _CLIENT_INFO_FIELDS:
            value = getattr(self, key)
            if value is None or value == []:
                continue
            data[key] = list(value) if isinstance(value, list) else value
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ClientInformation":
        """Deserialize client information from dictionary.

        Raises:
            KeyError: If client_id is missing
            ValueError: If client_id is empty
        """
        client_id = data["client_id"]
        if not isinstance(client_id, str) or not client_id:
            raise ValueError("client_id must be a non-empty string")

        return cls(
            client_id=client_id,
            client_secret=data.get("client_secret"),
            redirect_uris=list(data.get("redirect_uris") or []),
            grant_types=list(data.get("grant_types") or []),
            response_types=list(data.get("response_types") or []),
            client_name=data.get("client_name"),
            client_uri=data.get("client_uri"),
            software_id=data.get("software_id"),
            software_version=data.get("software_version"),
            extra={k: v for k, v in data.items() if k not in _CLIENT_INFO_FIELDS},
        )

    @classmethod
    def from_registration_response(
        cls,
        response: dict[str, Any],
        submitted: ClientMetadata,
    ) -> "ClientInformation":
        """Build client information from a registration response.

        RFC 7591 servers echo the registered metadata, but not all of them do;
        anything missing is taken from what was submitted.
        """
        merged = submitted.to_dict()
        merged.update({k: v for k, v in response.items() if v is not None})
        return cls.from_dict(merged)
