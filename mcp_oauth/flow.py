"""Protocol steps of the authorization-code flow.

Stateless functions for each request the client makes to the
authorization server:
1. Register the client dynamically (RFC 7591)
2. Build the authorization URL the browser is sent to
3. Exchange the authorization code for tokens
4. Refresh an access token

Sequencing, persistence and the redirect listener live in provider.py.
"""

import logging
from typing import Any
from urllib.parse import urlencode

import httpx

from .discovery import AuthorizationServerMetadata
from .errors import ConfigurationError, ExchangeError, RegistrationError
from .pkce import CHALLENGE_METHOD
from .tokens import ClientInformation, ClientMetadata, TokenSet

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30.0


def _error_detail(response: httpx.Response) -> str:
    """Summarize an OAuth error response.

    Only the standard error fields are used; the raw body may carry secrets.
    """
    try:
        error_data = response.json()
    except ValueError:
        return ""

    if not isinstance(error_data, dict):
        return ""

    error = error_data.get("error")
    if not error:
        return ""

    description = error_data.get("error_description")
    return f": {error} - {description}" if description else f": {error}"


async def register_client(
    metadata: AuthorizationServerMetadata,
    client_metadata: ClientMetadata,
    http_client: httpx.AsyncClient | None = None,
) -> ClientInformation:
    """Register a client using Dynamic Client Registration (RFC 7591).

    Args:
        metadata: Authorization server metadata
        client_metadata: The metadata to register
        http_client: Optional HTTP client

    Returns:
        ClientInformation with the issued client_id

    Raises:
        ConfigurationError: If the server has no registration endpoint
        RegistrationError: If registration fails
    """
    registration_endpoint = metadata.registration_endpoint
    if not registration_endpoint:
        raise ConfigurationError(
            "Authorization server does not support Dynamic Client Registration. "
            "Provide static client information (client_id) instead."
        )

    client = http_client or httpx.AsyncClient(timeout=DEFAULT_TIMEOUT)
    should_close = http_client is None

    logger.debug(f"Registering client at {registration_endpoint}")

    try:
        response = await client.post(
            registration_endpoint,
            json=client_metadata.to_dict(),
            headers={"Accept": "application/json"},
        )

        if not 200 <= response.status_code < 300:
            raise RegistrationError(
                f"Dynamic Client Registration failed "
                f"(HTTP {response.status_code}){_error_detail(response)}"
            )

        try:
            data = response.json()
        except ValueError as e:
            raise RegistrationError(f"Registration response was not valid JSON: {e}") from e

        if not isinstance(data, dict) or not data.get("client_id"):
            raise RegistrationError("Registration response missing client_id")

        client_info = ClientInformation.from_registration_response(data, client_metadata)
        logger.debug(f"Registered client {client_info.client_id}")
        return client_info

    except httpx.RequestError as e:
        raise RegistrationError(f"Network error during client registration: {e}") from e
    finally:
        if should_close:
            await client.aclose()


def build_authorization_url(
    metadata: AuthorizationServerMetadata,
    client_id: str,
    redirect_uri: str,
    code_challenge: str,
    state: str | None = None,
    resource: str | None = None,
    scopes: list[str] | None = None,
) -> str:
    """Build the authorization URL for browser redirect.

    Args:
        metadata: Authorization server metadata
        client_id: The client ID
        redirect_uri: The callback URI
        code_challenge: PKCE code challenge
        state: State parameter for CSRF protection
        resource: Resource indicator (RFC 8707)
        scopes: Scopes to request

    Returns:
        Complete authorization URL
    """
    params: dict[str, str] = {
        "response_type": "code",
        "client_id": client_id,
        "redirect_uri": redirect_uri,
        "code_challenge": code_challenge,
        "code_challenge_method": CHALLENGE_METHOD,
    }

    if state:
        params["state"] = state

    if resource:
        params["resource"] = resource

    if scopes:
        params["scope"] = " ".join(scopes)

    endpoint = metadata.authorization_endpoint
    separator = "&" if "?" in endpoint else "?"
    return f"{endpoint}{separator}{urlencode(params)}"


async def _token_request(
    metadata: AuthorizationServerMetadata,
    form: dict[str, str],
    description: str,
    http_client: httpx.AsyncClient | None,
) -> dict[str, Any]:
    """POST a form to the token endpoint and return the JSON object."""
    client = http_client or httpx.AsyncClient(timeout=DEFAULT_TIMEOUT)
    should_close = http_client is None

    try:
        response = await client.post(
            metadata.token_endpoint,
            data=form,
            headers={
                "Content-Type": "application/x-www-form-urlencoded",
                "Accept": "application/json",
            },
        )

        if not 200 <= response.status_code < 300:
            raise ExchangeError(
                f"{description} failed (HTTP {response.status_code}){_error_detail(response)}"
            )

        try:
            data = response.json()
        except ValueError as e:
            raise ExchangeError(f"{description} response was not valid JSON: {e}") from e

        if not isinstance(data, dict) or not data.get("access_token"):
            raise ExchangeError(f"{description} response missing access_token")

        return data

    except httpx.RequestError as e:
        raise ExchangeError(f"Network error during {description.lower()}: {e}") from e
    finally:
        if should_close:
            await client.aclose()


def _parse_tokens(
    data: dict[str, Any],
    description: str,
    previous_refresh_token: str | None = None,
) -> TokenSet:
    try:
        return TokenSet.from_token_response(data, previous_refresh_token)
    except (KeyError, ValueError, TypeError) as e:
        raise ExchangeError(f"{description} response is malformed: {e}") from e


async def exchange_authorization_code(
    metadata: AuthorizationServerMetadata,
    client_info: ClientInformation,
    code: str,
    redirect_uri: str,
    code_verifier: str,
    http_client: httpx.AsyncClient | None = None,
) -> TokenSet:
    """Exchange an authorization code for tokens.

    Args:
        metadata: Authorization server metadata
        client_info: Client identity
        code: Authorization code from the redirect
        redirect_uri: The redirect URI used in the authorization request
        code_verifier: PKCE code verifier
        http_client: Optional HTTP client

    Returns:
        TokenSet from the token endpoint

    Raises:
        ExchangeError: If the exchange fails
    """
    form: dict[str, str] = {
        "grant_type": "authorization_code",
        "code": code,
        "redirect_uri": redirect_uri,
        "client_id": client_info.client_id,
        "code_verifier": code_verifier,
    }

    if client_info.is_confidential():
        form["client_secret"] = client_info.client_secret  # type: ignore[assignment]

    data = await _token_request(metadata, form, "Token exchange", http_client)
    return _parse_tokens(data, "Token exchange")


async def refresh_access_token(
    metadata: AuthorizationServerMetadata,
    client_info: ClientInformation,
    refresh_token: str,
    http_client: httpx.AsyncClient | None = None,
) -> TokenSet:
    """Obtain a new access token with a refresh token.

    The returned TokenSet keeps ``refresh_token`` when the server does not
    rotate it.

    Raises:
        ExchangeError: If the refresh fails
    """
    form: dict[str, str] = {
        "grant_type": "refresh_token",
        "refresh_token": refresh_token,
        "client_id": client_info.client_id,
    }

    if client_info.is_confidential():
        form["client_secret"] = client_info.client_secret  # type: ignore[assignment]

    data = await _token_request(metadata, form, "Token refresh", http_client)
    return _parse_tokens(data, "Token refresh", previous_refresh_token=refresh_token)
