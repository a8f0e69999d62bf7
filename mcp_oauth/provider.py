"""OAuth client provider for one resource server.

``OAuthClientProvider`` is what a tool-calling client holds on to. It answers
``tokens()`` from storage and, when nothing usable is stored, drives the
authorization-code flow:

1. Discover the authorization server
2. Resolve the client (static, cached, or registered once)
3. Generate PKCE, start the redirect listener and open the browser
4. Wait for the redirect
5. Exchange the code for tokens and persist them

Only one flow runs per provider at a time; concurrent callers wait on the
same attempt and see the same outcome.

Usage:
    options = OAuthProviderOptions(server_url="https://mcp.example.com/mcp")
    async with OAuthClientProvider(options) as provider:
        tokens = await provider.ensure_authenticated()
"""

import asyncio
import dataclasses
import hmac
import logging
import webbrowser
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable

import httpx

from .callback import CallbackListener
from .config import OAuthProviderOptions
from .discovery import AuthorizationServerMetadata, discover_authorization_server
from .errors import RedirectError, StorageError
from .flow import (
    build_authorization_url,
    exchange_authorization_code,
    refresh_access_token,
    register_client,
)
from .pkce import generate_pkce_pair, generate_state
from .store import FileTokenStorage, get_server_url_hash
from .tokens import ClientInformation, ClientMetadata, TokenSet

logger = logging.getLogger(__name__)

INVALIDATION_SCOPES = ("all", "client", "tokens", "verifier")

BrowserLauncher = Callable[[str], Any]


class AuthState(str, Enum):
    """Where the provider is in the authorization flow."""

    IDLE = "idle"
    DISCOVERING = "discovering"
    REGISTERING = "registering"
    AWAITING_REDIRECT = "awaiting_redirect"
    EXCHANGING_CODE = "exchanging_code"
    AUTHENTICATED = "authenticated"
    FAILED = "failed"


def _format_timedelta(td: timedelta) -> str:
    """Format a timedelta as "45 minutes", "2 hours", "3 days" or "2 weeks"."""
    total_seconds = int(td.total_seconds())

    if total_seconds < 0:
        return "Expired"

    if total_seconds < 60:
        return f"{total_seconds} seconds"

    for unit, size, limit in (("minute", 60, 60), ("hour", 3600, 24), ("day", 86400, 14)):
        count = total_seconds // size
        if count < limit:
            return f"{count} {unit}{'s' if count != 1 else ''}"

    weeks = total_seconds // (86400 * 7)
    return f"{weeks} week{'s' if weeks != 1 else ''}"


def _format_time_ago(dt: datetime) -> str:
    """Format a datetime as "2 minutes ago"."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return _format_timedelta(datetime.now(timezone.utc) - dt) + " ago"


@dataclass
class AuthStatus:
    """Authentication status for one resource server.

    Carries nothing secret, so it can be printed or serialized as is.
    """

    server_url: str
    server_id: str
    authenticated: bool = False
    expired: bool = False
    expires_at: str | None = None
    expires_in_human: str | None = None
    issued_at: str | None = None
    issued_ago_human: str | None = None
    has_refresh_token: bool = False
    has_client_information: bool = False
    scope: str | None = None
    state: str = AuthState.IDLE.value
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary."""
        return dataclasses.asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "AuthStatus":
        """Deserialize from dictionary."""
        known = {f.name for f in dataclasses.fields(cls)}
        return cls(**{key: value for key, value in data.items() if key in known})


class OAuthClientProvider:
    """Obtains, persists and refreshes tokens for one resource server.

    Storage is partitioned by the hash of ``options.server_url``; two
    providers for the same URL share credentials, including across
    processes.
    """

    def __init__(
        self,
        options: OAuthProviderOptions,
        storage: FileTokenStorage | None = None,
        http_client: httpx.AsyncClient | None = None,
        browser_launcher: BrowserLauncher | None = None,
        on_status: Callable[[str], None] | None = None,
    ):
        """Initialize the provider.

        Args:
            options: Provider options
            storage: Credential store (default: file store under options.config_dir)
            http_client: Optional HTTP client for all authorization server requests
            browser_launcher: Opens the authorization URL (default webbrowser.open)
            on_status: Optional callback for progress messages
        """
        self.options = options
        self.server_url = options.server_url
        self.server_id = get_server_url_hash(options.server_url)
        self.storage = storage or FileTokenStorage(
            options.config_dir, encrypted=options.encrypt_storage
        )

        self._http_client = http_client
        self._browser_launcher = browser_launcher or webbrowser.open
        self.on_status = on_status or (lambda msg: None)

        self._state = AuthState.IDLE
        self._last_error: BaseException | None = None
        self._client_info: ClientInformation | None = None
        self._code_verifier: str | None = None
        self._metadata: AuthorizationServerMetadata | None = None
        self._auth_task: asyncio.Task[TokenSet] | None = None
        self._listener: CallbackListener | None = None

    # Properties

    @property
    def redirect_url(self) -> str:
        """The URL the authorization server redirects the browser to."""
        return f"http://{self.options.host}:{self.options.callback_port}{self.options.callback_path}"

    @property
    def client_metadata(self) -> ClientMetadata:
        """Metadata submitted when registering this client."""
        if self.options.static_client_metadata is not None:
            return self.options.static_client_metadata

        return ClientMetadata(
            redirect_uris=[self.redirect_url],
            client_name=self.options.client_name,
            client_uri=self.options.client_uri,
            software_id=self.options.software_id,
            software_version=self.options.software_version,
        )

    @property
    def state(self) -> AuthState:
        return self._state

    @property
    def last_error(self) -> BaseException | None:
        """The error that ended the most recent failed attempt."""
        return self._last_error

    @property
    def is_authenticating(self) -> bool:
        return self._auth_task is not None and not self._auth_task.done()

    def _set_state(self, state: AuthState) -> None:
        if state != self._state:
            logger.debug(f"[{self.server_id}] {self._state.value} -> {state.value}")
        self._state = state

    def _emit_status(self, message: str) -> None:
        """Emit a status message."""
        logger.info(message)
        self.on_status(message)

    # Client information

    async def client_information(self) -> ClientInformation | None:
        """Static client information, else the cached registration."""
        if self.options.static_client_info is not None:
            return self.options.static_client_info

        if self._client_info is None:
            self._client_info = self.storage.get_client_info(self.server_id)
        return self._client_info

    async def save_client_information(self, client_info: ClientInformation) -> None:
        self.storage.save_client_info(self.server_id, client_info)
        self._client_info = client_info

    # Tokens

    async def tokens(self) -> TokenSet | None:
        """Get the stored tokens, authenticating first if allowed.

        Returns None while an attempt is in flight, and when nothing is
        stored and auto_authenticate is off.
        """
        if self.is_authenticating:
            return None

        stored = self.storage.get_tokens(self.server_id)
        if stored is not None:
            return stored

        if not self.options.auto_authenticate:
            return None

        await self.ensure_authenticated()
        return self.storage.get_tokens(self.server_id)

    async def save_tokens(self, tokens: TokenSet) -> None:
        self.storage.save_tokens(self.server_id, tokens)

    # PKCE verifier

    async def code_verifier(self) -> str:
        """Get the verifier of the attempt in progress.

        Raises:
            StorageError: If no verifier has been saved
        """
        if self._code_verifier is None:
            self._code_verifier = self.storage.get_code_verifier(self.server_id)

        if self._code_verifier is None:
            raise StorageError(f"No code verifier saved for {self.server_url}")
        return self._code_verifier

    async def save_code_verifier(self, verifier: str) -> None:
        self.storage.save_code_verifier(self.server_id, verifier)
        self._code_verifier = verifier

    # Browser

    async def redirect_to_authorization(self, authorization_url: str) -> None:
        """Send the user to the authorization URL.

        A browser that fails to open is not an error; the URL is reported so
        the user can open it by hand while the listener keeps waiting.
        """
        self._emit_status("Opening browser for authorization...")
        logger.debug(f"Authorization URL: {authorization_url}")

        try:
            opened = self._browser_launcher(authorization_url)
        except webbrowser.Error as e:
            logger.warning(
                f"Could not open browser ({e}). Open this URL manually:\n{authorization_url}"
            )
            return

        if opened is False:
            logger.warning(f"Could not open browser. Open this URL manually:\n{authorization_url}")

    # Invalidation

    async def invalidate_credentials(self, scope: str) -> None:
        """Forget stored credentials.

        Args:
            scope: "all", "client", "tokens" or "verifier"

        Raises:
            ValueError: For any other scope
        """
        if scope not in INVALIDATION_SCOPES:
            raise ValueError(
                f"Invalid scope {scope!r}; expected one of {', '.join(INVALIDATION_SCOPES)}"
            )

        if scope in ("all", "client"):
            self.storage.delete_client_info(self.server_id)
            self._client_info = None

        if scope in ("all", "tokens"):
            self.storage.delete_tokens(self.server_id)

        if scope in ("all", "verifier"):
            self.storage.delete_code_verifier(self.server_id)
            self._code_verifier = None

        logger.debug(f"[{self.server_id}] Invalidated credentials ({scope})")

    # Authentication

    async def ensure_authenticated(self) -> TokenSet:
        """Return stored tokens, or run (or join) an authentication attempt.

        Raises:
            OAuthError: Whatever ended the attempt
        """
        if not self.is_authenticating:
            stored = self.storage.get_tokens(self.server_id)
            if stored is not None:
                return stored

            # No await between the check above and creating the task
            self._auth_task = asyncio.create_task(self._perform_authentication())
            self._auth_task.add_done_callback(self._on_auth_done)
        else:
            logger.debug(f"[{self.server_id}] Joining authentication already in progress")

        assert self._auth_task is not None
        return await asyncio.shield(self._auth_task)

    def _on_auth_done(self, task: "asyncio.Task[TokenSet]") -> None:
        # Retrieve the outcome so an attempt whose callers all went away
        # doesn't log "exception was never retrieved"
        if not task.cancelled():
            task.exception()

    async def _perform_authentication(self) -> TokenSet:
        # Another process may have finished a flow since these were read
        self._client_info = None
        self._code_verifier = None
        self._metadata = None
        self._last_error = None

        try:
            self._set_state(AuthState.DISCOVERING)
            self._emit_status("Discovering authorization server...")
            metadata = await discover_authorization_server(
                self.server_url,
                http_client=self._http_client,
                require_https=self.options.require_https,
            )
            self._metadata = metadata

            self._set_state(AuthState.REGISTERING)
            client_info = await self._resolve_client(metadata)

            self._set_state(AuthState.AWAITING_REDIRECT)
            code, redirect_uri = await self._authorize(metadata, client_info)

            self._set_state(AuthState.EXCHANGING_CODE)
            self._emit_status("Exchanging code for tokens...")
            tokens = await exchange_authorization_code(
                metadata,
                client_info,
                code,
                redirect_uri,
                await self.code_verifier(),
                http_client=self._http_client,
            )

            await self.save_tokens(tokens)
            self.storage.delete_code_verifier(self.server_id)
            self._code_verifier = None

            self._set_state(AuthState.AUTHENTICATED)
            self._emit_status("Authentication successful")
            return tokens

        except asyncio.CancelledError:
            self._set_state(AuthState.IDLE)
            raise
        except Exception as e:
            logger.debug(f"[{self.server_id}] Authentication failed: {e}")
            self._last_error = e
            self._set_state(AuthState.FAILED)
            raise

    async def _resolve_client(self, metadata: AuthorizationServerMetadata) -> ClientInformation:
        existing = await self.client_information()
        if existing is not None:
            logger.debug(f"[{self.server_id}] Using client {existing.client_id}")
            return existing

        self._emit_status("Registering client...")
        client_info = await register_client(
            metadata, self.client_metadata, http_client=self._http_client
        )
        await self.save_client_information(client_info)
        return client_info

    async def _authorize(
        self,
        metadata: AuthorizationServerMetadata,
        client_info: ClientInformation,
    ) -> tuple[str, str]:
        """Run the browser step and return (code, redirect_uri)."""
        pkce = generate_pkce_pair()
        await self.save_code_verifier(pkce.verifier)
        state = generate_state()
        redirect_uri = client_info.redirect_uri or self.redirect_url

        listener = CallbackListener(
            self.options.host, self.options.callback_port, self.options.callback_path
        )
        await listener.start()
        self._listener = listener

        try:
            authorization_url = build_authorization_url(
                metadata,
                client_info.client_id,
                redirect_uri,
                pkce.challenge,
                state=state,
                resource=self.options.authorize_resource,
                scopes=self.options.scopes,
            )
            await self.redirect_to_authorization(authorization_url)

            self._emit_status(f"Waiting for authorization on {listener.redirect_url}")
            result = await listener.wait_for_callback(self.options.authorization_timeout)
        finally:
            await self._stop_listener()

        if result.state is not None and not hmac.compare_digest(result.state, state):
            raise RedirectError("state_mismatch", "Redirect state does not match the request")

        assert result.code is not None
        return result.code, redirect_uri

    async def _stop_listener(self) -> None:
        listener, self._listener = self._listener, None
        if listener is None:
            return

        try:
            await listener.stop()
        except Exception as e:
            logger.warning(f"Error stopping callback listener: {e}")

    # Refresh

    async def refresh(self, refresh_token: str) -> TokenSet:
        """Exchange a refresh token for a new token set and persist it.

        Raises:
            ExchangeError: If the token endpoint rejects the refresh
        """
        # Let an attempt in progress finish registering before the client is
        # resolved; its outcome belongs to its own callers
        if self.is_authenticating:
            assert self._auth_task is not None
            await asyncio.wait([self._auth_task])

        if self._metadata is None:
            self._metadata = await discover_authorization_server(
                self.server_url,
                http_client=self._http_client,
                require_https=self.options.require_https,
            )

        client_info = await self._resolve_client(self._metadata)

        tokens = await refresh_access_token(
            self._metadata, client_info, refresh_token, http_client=self._http_client
        )
        await self.save_tokens(tokens)
        self._set_state(AuthState.AUTHENTICATED)
        logger.debug(f"[{self.server_id}] Refreshed access token")
        return tokens

    # Status

    def status(self) -> AuthStatus:
        """Snapshot of what is stored for this server."""
        status = AuthStatus(
            server_url=self.server_url,
            server_id=self.server_id,
            state=self._state.value,
        )

        if self._last_error is not None:
            status.error = str(self._last_error)

        try:
            tokens = self.storage.get_tokens(self.server_id)
            status.has_client_information = (
                self.options.static_client_info is not None
                or self.storage.get_client_info(self.server_id) is not None
            )
        except StorageError as e:
            status.error = str(e)
            return status

        if tokens is None:
            return status

        status.authenticated = True
        status.expired = tokens.is_expired()
        status.has_refresh_token = tokens.has_refresh_token()
        status.scope = tokens.scope
        status.issued_at = tokens.issued_at.isoformat()
        status.issued_ago_human = _format_time_ago(tokens.issued_at)

        expires_at = tokens.expires_at
        if expires_at is not None:
            status.expires_at = expires_at.isoformat()
            status.expires_in_human = _format_timedelta(expires_at - datetime.now(timezone.utc))

        return status

    # Lifecycle

    async def cleanup(self) -> None:
        """Cancel an attempt in progress and stop the listener."""
        task = self._auth_task
        if task is not None and not task.done():
            task.cancel()
            await asyncio.wait([task])

        await self._stop_listener()

    async def __aenter__(self) -> "OAuthClientProvider":
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.cleanup()

    @classmethod
    async def create_with_auto_auth(
        cls,
        options: OAuthProviderOptions,
        **kwargs: Any,
    ) -> "OAuthClientProvider":
        """Create a provider and authenticate it before returning.

        Keyword arguments are passed to the constructor.
        """
        provider = cls(dataclasses.replace(options, auto_authenticate=True), **kwargs)
        try:
            await provider.ensure_authenticated()
        except BaseException:
            await provider.cleanup()
            raise
        return provider
