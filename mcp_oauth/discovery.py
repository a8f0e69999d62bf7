"""Authorization server discovery per RFC 8414.

The metadata document is looked up at the origin of the resource server URL;
any path on the server URL is ignored.
"""

import logging
from dataclasses import dataclass
from typing import Any
from urllib.parse import urlparse

import httpx

from .errors import DiscoveryError

logger = logging.getLogger(__name__)

WELL_KNOWN_PATH = "/.well-known/oauth-authorization-server"

DEFAULT_TIMEOUT = 30.0


def _http_status_hint(status_code: int) -> str:
    """Get a user-friendly hint for common HTTP status codes."""
    hints = {
        401: "Server requires authentication for its metadata document",
        403: "Access forbidden - check if you have permission to access this resource",
        404: "Endpoint not found - the server may not support OAuth discovery",
        500: "Server error - the authorization server may be experiencing issues",
        502: "Bad gateway - there may be a proxy or network issue",
        503: "Service unavailable - the server may be temporarily down",
    }
    return hints.get(status_code, "")


def _require_https(url: str, context: str) -> None:
    """Reject a non-HTTPS endpoint.

    Loopback addresses are exempt so a local development server keeps working.

    Raises:
        DiscoveryError: If the URL doesn't use HTTPS
    """
    parsed = urlparse(url)
    if parsed.scheme == "https":
        return
    if parsed.scheme == "http" and parsed.hostname in ("localhost", "127.0.0.1", "::1"):
        return
    raise DiscoveryError(f"{context} must use HTTPS, got: {url}")


def get_discovery_url(server_url: str) -> str:
    """Build the metadata URL for a resource server.

    Raises:
        DiscoveryError: If the server URL is not an absolute http(s) URL
    """
    parsed = urlparse(server_url)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise DiscoveryError(f"Invalid server URL: {server_url!r}")
    return f"{parsed.scheme}://{parsed.netloc}{WELL_KNOWN_PATH}"


@dataclass
class AuthorizationServerMetadata:
    """OAuth 2.0 Authorization Server Metadata.

    Only the fields the client acts on are modelled. Fetched once per flow
    and never persisted.
    """

    authorization_endpoint: str
    token_endpoint: str
    registration_endpoint: str | None = None
    issuer: str | None = None
    scopes_supported: list[str] | None = None
    code_challenge_methods_supported: list[str] | None = None

    def supports_dcr(self) -> bool:
        """Check if the server supports Dynamic Client Registration."""
        return bool(self.registration_endpoint)

    def supports_pkce(self) -> bool:
        """Check if the server supports S256.

        A server that does not advertise its methods is assumed to.
        """
        if self.code_challenge_methods_supported is None:
            return True
        return "S256" in self.code_challenge_methods_supported

    @classmethod
    def from_dict(
        cls, data: dict[str, Any], require_https: bool = False
    ) -> "AuthorizationServerMetadata":
        """Create from the metadata JSON document.

        Raises:
            DiscoveryError: If a required endpoint is missing, or is not HTTPS
                when require_https is set
        """
        missing = [
            name
            for name in ("authorization_endpoint", "token_endpoint")
            if not isinstance(data.get(name), str) or not data.get(name)
        ]
        if missing:
            raise DiscoveryError(
                f"Authorization server metadata missing required field(s): {', '.join(missing)}"
            )

        authorization_endpoint = data["authorization_endpoint"]
        token_endpoint = data["token_endpoint"]
        registration_endpoint = data.get("registration_endpoint") or None

        if require_https:
            _require_https(authorization_endpoint, "Authorization endpoint")
            _require_https(token_endpoint, "Token endpoint")
            if registration_endpoint:
                _require_https(registration_endpoint, "Registration endpoint")

        return cls(
            authorization_endpoint=authorization_endpoint,
            token_endpoint=token_endpoint,
            registration_endpoint=registration_endpoint,
            issuer=data.get("issuer"),
            scopes_supported=data.get("scopes_supported"),
            code_challenge_methods_supported=data.get("code_challenge_methods_supported"),
        )


async def discover_authorization_server(
    server_url: str,
    http_client: httpx.AsyncClient | None = None,
    timeout: float = DEFAULT_TIMEOUT,
    require_https: bool = False,
) -> AuthorizationServerMetadata:
    """Fetch the authorization server metadata for a resource server.

    Args:
        server_url: The resource server URL
        http_client: Optional HTTP client to use
        timeout: Request timeout in seconds
        require_https: Reject non-HTTPS endpoints in the document

    Returns:
        AuthorizationServerMetadata instance

    Raises:
        DiscoveryError: If metadata cannot be fetched or parsed
    """
    url = get_discovery_url(server_url)

    client = http_client or httpx.AsyncClient(timeout=timeout)
    should_close = http_client is None

    logger.debug(f"Fetching authorization server metadata from {url}")

    try:
        response = await client.get(url, headers={"Accept": "application/json"})

        if response.status_code != 200:
            hint = _http_status_hint(response.status_code)
            error_msg = (
                f"Failed to fetch authorization server metadata from {url}: "
                f"HTTP {response.status_code}"
            )
            if hint:
                error_msg += f". {hint}"
            raise DiscoveryError(error_msg)

        try:
            data = response.json()
        except ValueError as e:
            raise DiscoveryError(
                f"Authorization server metadata from {url} was not valid JSON: {e}"
            ) from e

        if not isinstance(data, dict):
            raise DiscoveryError(
                f"Authorization server metadata from {url} is not a JSON object"
            )

        metadata = AuthorizationServerMetadata.from_dict(data, require_https=require_https)
        logger.debug(f"Discovered token endpoint {metadata.token_endpoint}")
        return metadata

    except httpx.ConnectError as e:
        raise DiscoveryError(
            f"Could not connect to {url}: {e}. "
            f"Check that the URL is correct and the server is reachable."
        ) from e
    except httpx.TimeoutException as e:
        raise DiscoveryError(
            f"Timeout fetching authorization server metadata from {url}: {e}. "
            f"The server may be slow or unresponsive."
        ) from e
    except httpx.RequestError as e:
        raise DiscoveryError(f"Network error fetching authorization server metadata: {e}") from e
    finally:
        if should_close:
            await client.aclose()
