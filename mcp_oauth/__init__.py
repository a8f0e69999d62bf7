"""mcp-oauth - OAuth 2.0 authorization-code + PKCE client for MCP servers."""

from importlib.metadata import version, PackageNotFoundError

try:
    __version__ = version("mcp-oauth")
except PackageNotFoundError:
    __version__ = "0.1.0"  # Fallback for development

from .callback import CallbackListener, CallbackResult
from .config import OAuthProviderOptions, load_options
from .discovery import AuthorizationServerMetadata, discover_authorization_server
from .errors import (
    AuthorizationTimeoutError,
    ConfigurationError,
    DiscoveryError,
    ExchangeError,
    OAuthError,
    RedirectError,
    RegistrationError,
    StorageError,
    TokenDecryptionError,
)
from .pkce import PKCEPair, generate_pkce_pair
from .provider import AuthState, AuthStatus, OAuthClientProvider
from .store import FileTokenStorage, get_server_url_hash
from .tokens import ClientInformation, ClientMetadata, TokenSet

__all__ = [
    "__version__",
    # Provider
    "OAuthClientProvider",
    "OAuthProviderOptions",
    "load_options",
    "AuthState",
    "AuthStatus",
    # Building blocks
    "CallbackListener",
    "CallbackResult",
    "AuthorizationServerMetadata",
    "discover_authorization_server",
    "PKCEPair",
    "generate_pkce_pair",
    "FileTokenStorage",
    "get_server_url_hash",
    "ClientInformation",
    "ClientMetadata",
    "TokenSet",
    # Errors
    "OAuthError",
    "ConfigurationError",
    "DiscoveryError",
    "RegistrationError",
    "RedirectError",
    "AuthorizationTimeoutError",
    "ExchangeError",
    "StorageError",
    "TokenDecryptionError",
]
