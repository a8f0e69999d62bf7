"""Provider options and environment loading."""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from dotenv import load_dotenv

from .callback import DEFAULT_CALLBACK_PATH, DEFAULT_TIMEOUT
from .errors import ConfigurationError
from .tokens import ClientInformation, ClientMetadata

logger = logging.getLogger(__name__)

DEFAULT_CALLBACK_PORT = 12334
DEFAULT_HOST = "localhost"

DEFAULT_CLIENT_NAME = "MCP OAuth Client"
DEFAULT_CLIENT_URI = "https://modelcontextprotocol.io"
DEFAULT_SOFTWARE_ID = "mcp-oauth-client"
DEFAULT_SOFTWARE_VERSION = "1.0.0"

DEBUG_NAMESPACE = "mcp-oauth"

# .env files checked in order when none is given explicitly
ENV_SEARCH_PATHS = [
    Path(".env"),
    Path.home() / ".config" / "mcp-oauth" / ".env",
]


@dataclass
class OAuthProviderOptions:
    """Options for one OAuthClientProvider.

    Attributes:
        server_url: The resource server URL; its hash partitions storage
        callback_port: Port the redirect listener binds
        host: Host the redirect listener binds and the redirect URL names
        callback_path: Path of the redirect URL
        config_dir: Storage root (default ~/.config/mcp-oauth)
        static_client_metadata: Replaces the default registration metadata
        static_client_info: Pre-registered client; skips registration
        authorize_resource: Resource indicator sent with the authorization request
        scopes: Scopes to request
        auto_authenticate: Start the flow from tokens() when nothing is stored
        authorization_timeout: Seconds to wait for the redirect
        encrypt_storage: Encrypt records at rest
        require_https: Reject non-HTTPS endpoints in discovered metadata
    """

    server_url: str
    callback_port: int = DEFAULT_CALLBACK_PORT
    host: str = DEFAULT_HOST
    callback_path: str = DEFAULT_CALLBACK_PATH
    config_dir: Path | None = None
    client_name: str = DEFAULT_CLIENT_NAME
    client_uri: str = DEFAULT_CLIENT_URI
    software_id: str = DEFAULT_SOFTWARE_ID
    software_version: str = DEFAULT_SOFTWARE_VERSION
    static_client_metadata: ClientMetadata | None = None
    static_client_info: ClientInformation | None = None
    authorize_resource: str | None = None
    scopes: list[str] | None = field(default=None)
    auto_authenticate: bool = True
    authorization_timeout: float = DEFAULT_TIMEOUT
    encrypt_storage: bool = True
    require_https: bool = False

    def __post_init__(self) -> None:
        if not self.server_url:
            raise ConfigurationError("server_url is required")

        if not 0 <= self.callback_port <= 65535:
            raise ConfigurationError(
                f"callback_port must be between 0 and 65535, got {self.callback_port}"
            )

        if not self.callback_path.startswith("/"):
            raise ConfigurationError(
                f"callback_path must start with '/', got {self.callback_path!r}"
            )

        if self.authorization_timeout <= 0:
            raise ConfigurationError("authorization_timeout must be positive")

        if self.config_dir is not None:
            self.config_dir = Path(self.config_dir)


def find_env_file(explicit_path: Path | None = None) -> Path | None:
    """Find the .env file, checking project then user level."""
    if explicit_path:
        if explicit_path.exists():
            return explicit_path
        return None

    for path in ENV_SEARCH_PATHS:
        if path.exists():
            return path
    return None


def _env_int(name: str) -> int | None:
    value = os.environ.get(name)
    if not value:
        return None
    try:
        return int(value)
    except ValueError:
        raise ConfigurationError(f"{name} must be an integer, got {value!r}") from None


def _env_float(name: str) -> float | None:
    value = os.environ.get(name)
    if not value:
        return None
    try:
        return float(value)
    except ValueError:
        raise ConfigurationError(f"{name} must be a number, got {value!r}") from None


def parse_scopes(value: str | None) -> list[str] | None:
    """Split a space- or comma-separated scope string."""
    if not value:
        return None
    scopes = [scope for scope in value.replace(",", " ").split() if scope]
    return scopes or None


def load_options(
    server_url: str,
    env_path: Path | None = None,
    **overrides: Any,
) -> OAuthProviderOptions:
    """Build provider options from the environment.

    A .env file is loaded first (without overriding variables already set),
    then MCP_OAUTH_* variables are read. Keyword overrides that are not None
    win over both.

    Args:
        server_url: The resource server URL
        env_path: Explicit path to .env file (optional)
        **overrides: Any OAuthProviderOptions field

    Raises:
        ConfigurationError: If a variable or option has an invalid value
    """
    env_file = find_env_file(env_path)
    if env_file:
        load_dotenv(env_file)
        logger.debug(f"Loaded environment from {env_file}")

    values: dict[str, Any] = {}

    port = _env_int("MCP_OAUTH_CALLBACK_PORT")
    if port is not None:
        values["callback_port"] = port

    if os.environ.get("MCP_OAUTH_HOST"):
        values["host"] = os.environ["MCP_OAUTH_HOST"]

    if os.environ.get("MCP_OAUTH_CALLBACK_PATH"):
        values["callback_path"] = os.environ["MCP_OAUTH_CALLBACK_PATH"]

    if os.environ.get("MCP_OAUTH_CONFIG_DIR"):
        values["config_dir"] = Path(os.environ["MCP_OAUTH_CONFIG_DIR"]).expanduser()

    client_id = os.environ.get("MCP_OAUTH_CLIENT_ID")
    if client_id:
        values["static_client_info"] = ClientInformation(
            client_id=client_id,
            client_secret=os.environ.get("MCP_OAUTH_CLIENT_SECRET") or None,
        )

    if os.environ.get("MCP_OAUTH_RESOURCE"):
        values["authorize_resource"] = os.environ["MCP_OAUTH_RESOURCE"]

    scopes = parse_scopes(os.environ.get("MCP_OAUTH_SCOPES"))
    if scopes:
        values["scopes"] = scopes

    timeout = _env_float("MCP_OAUTH_TIMEOUT")
    if timeout is not None:
        values["authorization_timeout"] = timeout

    values.update({key: value for key, value in overrides.items() if value is not None})

    try:
        return OAuthProviderOptions(server_url=server_url, **values)
    except TypeError as e:
        raise ConfigurationError(f"Invalid option: {e}") from e


def is_debug_enabled() -> bool:
    """Check whether debug logging was requested through the environment.

    True when DEBUG or NODE_DEBUG lists ``mcp-oauth`` (comma-separated), or
    MCP_OAUTH_DEBUG is set to anything but an empty string or "0".
    """
    for name in ("DEBUG", "NODE_DEBUG"):
        namespaces = [part.strip() for part in os.environ.get(name, "").split(",")]
        if DEBUG_NAMESPACE in namespaces:
            return True

    return os.environ.get("MCP_OAUTH_DEBUG", "") not in ("", "0")
