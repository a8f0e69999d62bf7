"""Error taxonomy for the OAuth client.

Every failure that terminates an authentication attempt is an
:class:`OAuthError`. Callers of ``ensure_authenticated()``, ``tokens()`` and
``refresh()`` can catch the base class or a specific subclass:

    OAuthError
    +-- ConfigurationError         missing registration endpoint, callback bind failure
    +-- DiscoveryError             metadata fetch/parse failure
    +-- RegistrationError          registration endpoint rejected the client
    +-- RedirectError              consent denied / authorization error in redirect
    +-- AuthorizationTimeoutError  no redirect within the wait window
    +-- ExchangeError              token endpoint rejected the code or refresh token
    +-- StorageError               persistence failure
        +-- TokenDecryptionError   stored record cannot be decrypted
"""


class OAuthError(Exception):
    """Base exception for all OAuth client errors."""

    pass


class ConfigurationError(OAuthError):
    """The client is configured in a way that cannot work.

    Raised when the authorization server offers no registration endpoint and
    no static client information was supplied, or when the callback listener
    cannot bind its port.
    """

    pass


class DiscoveryError(OAuthError):
    """Error fetching or parsing authorization server metadata."""

    pass


class RegistrationError(OAuthError):
    """Error during Dynamic Client Registration (RFC 7591)."""

    pass


class RedirectError(OAuthError):
    """The authorization redirect carried an error.

    Attributes:
        error: OAuth error code from the redirect (e.g. ``access_denied``)
        error_description: Optional human-readable description
    """

    def __init__(self, error: str, error_description: str | None = None):
        self.error = error
        self.error_description = error_description
        message = f"Authorization failed: {error}"
        if error_description:
            message += f" - {error_description}"
        super().__init__(message)


class AuthorizationTimeoutError(OAuthError, TimeoutError):
    """No authorization redirect arrived within the wait window."""

    pass


class ExchangeError(OAuthError):
    """The token endpoint rejected an authorization code or refresh token."""

    pass


class StorageError(OAuthError):
    """Error in credential storage operations."""

    pass


class TokenDecryptionError(StorageError):
    """Failed to decrypt a stored record.

    The encryption key has changed (keyring cleared, different machine) and
    existing records cannot be read. Invalidate the credentials and
    re-authenticate.
    """

    pass
