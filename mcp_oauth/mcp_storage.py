"""Credential store adapter for the MCP Python SDK.

The SDK's ``OAuthClientProvider`` (``mcp.client.auth``) persists credentials
through a ``TokenStorage`` protocol bound to a single server. This adapter
implements that protocol on top of ``FileTokenStorage`` so the SDK and this
package share one on-disk layout.

Usage:
    from mcp.client.auth import OAuthClientProvider as SdkProvider

    storage = McpTokenStorage("https://mcp.example.com/mcp", FileTokenStorage())
    auth = SdkProvider(server_url=..., client_metadata=..., storage=storage, ...)
"""

import logging

from mcp.shared.auth import OAuthClientInformationFull, OAuthToken

from .callback import DEFAULT_CALLBACK_PATH
from .config import DEFAULT_CALLBACK_PORT, DEFAULT_HOST
from .store import FileTokenStorage, get_server_url_hash
from .tokens import ClientInformation, TokenSet

logger = logging.getLogger(__name__)

DEFAULT_REDIRECT_URL = f"http://{DEFAULT_HOST}:{DEFAULT_CALLBACK_PORT}{DEFAULT_CALLBACK_PATH}"


def token_set_to_oauth_token(tokens: TokenSet) -> OAuthToken:
    """Convert a stored token set to the SDK model."""
    return OAuthToken(
        access_token=tokens.access_token,
        token_type="Bearer",
        expires_in=tokens.expires_in,
        refresh_token=tokens.refresh_token,
        scope=tokens.scope,
    )


def oauth_token_to_token_set(token: OAuthToken) -> TokenSet:
    """Convert the SDK model to a token set received now."""
    return TokenSet(
        access_token=token.access_token,
        token_type=token.token_type,
        expires_in=token.expires_in,
        refresh_token=token.refresh_token,
        scope=token.scope,
    )


class McpTokenStorage:
    """``mcp.client.auth.TokenStorage`` backed by a FileTokenStorage partition."""

    def __init__(
        self,
        server_url: str,
        storage: FileTokenStorage | None = None,
        redirect_url: str = DEFAULT_REDIRECT_URL,
    ):
        """Initialize the adapter.

        Args:
            server_url: The resource server URL selecting the partition
            storage: Credential store (default: file store at the default root)
            redirect_url: Redirect URI reported for clients stored without one;
                the SDK model requires at least one
        """
        self.server_url = server_url
        self.server_id = get_server_url_hash(server_url)
        self.storage = storage or FileTokenStorage()
        self.redirect_url = redirect_url

    async def get_tokens(self) -> OAuthToken | None:
        tokens = self.storage.get_tokens(self.server_id)
        if tokens is None:
            return None
        return token_set_to_oauth_token(tokens)

    async def set_tokens(self, tokens: OAuthToken) -> None:
        self.storage.save_tokens(self.server_id, oauth_token_to_token_set(tokens))

    async def get_client_info(self) -> OAuthClientInformationFull | None:
        client_info = self.storage.get_client_info(self.server_id)
        if client_info is None:
            return None

        data = client_info.to_dict()
        if not data.get("redirect_uris"):
            data["redirect_uris"] = [self.redirect_url]
        return OAuthClientInformationFull.model_validate(data)

    async def set_client_info(self, client_info: OAuthClientInformationFull) -> None:
        data = client_info.model_dump(mode="json", exclude_none=True)
        self.storage.save_client_info(self.server_id, ClientInformation.from_dict(data))
        logger.debug(f"Stored SDK client information for {self.server_id}")
