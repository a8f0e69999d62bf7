"""File-backed credential storage, partitioned per server.

Each server URL maps to a directory named after its ServerIdentity (a short
SHA-256 prefix of the URL) holding three independent records:

    <config_dir>/<server_id>/tokens.json
    <config_dir>/<server_id>/client_info.json
    <config_dir>/<server_id>/code_verifier.txt

Records are protected by:
- Fernet symmetric encryption (AES-128-CBC + HMAC), key in the OS keyring
- Write-to-temp-then-rename so readers never see a partial record
- File locking against concurrent writers in other processes
- Owner-only file and directory permissions
"""

import base64
import contextlib
import hashlib
import json
import logging
import os
import stat
import sys
import tempfile
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Generator

import keyring
from cryptography.fernet import Fernet, InvalidToken

from .errors import StorageError, TokenDecryptionError
from .tokens import ClientInformation, TokenSet

logger = logging.getLogger(__name__)

# File locking support
if sys.platform != "win32":
    import fcntl

    @contextmanager
    def _file_lock(filepath: Path, exclusive: bool = True) -> Generator[None, None, None]:
        """Acquire a file lock (Unix implementation using fcntl).

        Args:
            filepath: Path to the file to lock
            exclusive: If True, acquire exclusive lock; otherwise shared lock
        """
        lock_path = filepath.with_suffix(filepath.suffix + ".lock")
        lock_path.touch(exist_ok=True)

        with open(lock_path, "r") as lock_file:
            try:
                if exclusive:
                    fcntl.flock(lock_file.fileno(), fcntl.LOCK_EX)
                else:
                    fcntl.flock(lock_file.fileno(), fcntl.LOCK_SH)
                yield
            finally:
                fcntl.flock(lock_file.fileno(), fcntl.LOCK_UN)
else:
    # Windows: use msvcrt for file locking
    import msvcrt

    @contextmanager
    def _file_lock(filepath: Path, exclusive: bool = True) -> Generator[None, None, None]:
        """Acquire a file lock (Windows implementation using msvcrt).

        Windows has no shared locks through msvcrt, so readers lock
        exclusively as well.
        """
        lock_path = filepath.with_suffix(filepath.suffix + ".lock")
        lock_path.touch(exist_ok=True)

        with open(lock_path, "r+") as lock_file:
            try:
                msvcrt.locking(lock_file.fileno(), msvcrt.LK_LOCK, 1)
                yield
            finally:
                try:
                    msvcrt.locking(lock_file.fileno(), msvcrt.LK_UNLCK, 1)
                except OSError:
                    pass


# Keyring entry holding the Fernet key
KEYRING_SERVICE = "mcp-oauth"
KEYRING_USERNAME = "storage-encryption-key"

# Default storage location
DEFAULT_CONFIG_DIR = Path.home() / ".config" / "mcp-oauth"

# Record file names
TOKENS_FILE = "tokens.json"
CLIENT_INFO_FILE = "client_info.json"
CODE_VERIFIER_FILE = "code_verifier.txt"

RECORD_FILES = (TOKENS_FILE, CLIENT_INFO_FILE, CODE_VERIFIER_FILE)

SERVER_ID_LENGTH = 16


def get_server_url_hash(server_url: str) -> str:
    """Derive the ServerIdentity for a server URL.

    The URL is hashed exactly as given, so callers should pass the same
    spelling every time.

    Args:
        server_url: The resource server URL

    Returns:
        First 16 hex characters of SHA-256 of the URL
    """
    return hashlib.sha256(server_url.encode("utf-8")).hexdigest()[:SERVER_ID_LENGTH]


def _derive_fallback_key() -> bytes:
    """Derive a fallback encryption key from machine-specific data.

    Used when keyring is not available. Less secure than keyring but
    still provides encryption at rest.

    Returns:
        32-byte key suitable for Fernet
    """
    components = []

    # Machine ID (Linux)
    machine_id_path = Path("/etc/machine-id")
    if machine_id_path.exists():
        components.append(machine_id_path.read_text().strip())

    components.append(str(Path.home()))
    components.append(os.environ.get("USER", os.environ.get("USERNAME", "mcp-oauth")))

    combined = ":".join(components)
    key_bytes = hashlib.sha256(combined.encode()).digest()

    # Fernet requires base64-encoded 32-byte key
    return base64.urlsafe_b64encode(key_bytes)


class FileTokenStorage:
    """Credential store for tokens, client information and PKCE verifiers.

    ``get_*`` returns None when a record does not exist, so a first run is a
    normal state rather than an error. ``save_*`` creates the partition and
    replaces the record atomically. ``delete_*`` is idempotent.
    """

    def __init__(self, config_dir: Path | str | None = None, encrypted: bool = True):
        """Initialize the store.

        Args:
            config_dir: Root directory for all partitions
                (default ~/.config/mcp-oauth)
            encrypted: Encrypt records at rest (default True)
        """
        self.config_dir = Path(config_dir) if config_dir else DEFAULT_CONFIG_DIR
        self.encrypted = encrypted
        self._cipher: Fernet | None = None
        self._using_keyring = False

        if encrypted:
            self._init_encryption()

    def _init_encryption(self) -> None:
        """Initialize encryption using keyring or fallback."""
        try:
            key = keyring.get_password(KEYRING_SERVICE, KEYRING_USERNAME)

            if key is None:
                key = Fernet.generate_key().decode("ascii")
                keyring.set_password(KEYRING_SERVICE, KEYRING_USERNAME, key)
                logger.debug("Generated new encryption key in keyring")

            self._cipher = Fernet(key.encode("ascii"))
            self._using_keyring = True
            logger.debug("Using keyring for encryption key storage")

        except Exception as e:
            # Keyring backends raise a wide range of errors when unavailable
            logger.warning(
                f"Keyring not available: {type(e).__name__}: {e}. "
                f"Using fallback encryption (machine-derived key). "
                f"Credentials are still encrypted but with reduced security."
            )
            self._cipher = Fernet(_derive_fallback_key())
            self._using_keyring = False

    def is_using_keyring(self) -> bool:
        """Check if the OS keyring holds the encryption key."""
        return self._using_keyring

    # Paths

    def partition_dir(self, server_id: str) -> Path:
        """Directory holding the records for one server."""
        return self.config_dir / server_id

    def _ensure_partition(self, server_id: str) -> Path:
        partition = self.partition_dir(server_id)
        try:
            partition.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StorageError(f"Cannot create storage directory {partition}: {e}") from e

        try:
            partition.chmod(stat.S_IRWXU)
        except OSError as e:
            logger.warning(f"Could not set directory permissions: {e}")
        return partition

    # Raw record access

    def _encrypt(self, data: str) -> str:
        if self._cipher is None:
            return data
        return self._cipher.encrypt(data.encode("utf-8")).decode("ascii")

    def _decrypt(self, data: str, filename: str) -> str:
        if self._cipher is None:
            return data
        try:
            return self._cipher.decrypt(data.strip().encode("ascii")).decode("utf-8")
        except (InvalidToken, ValueError) as e:
            raise TokenDecryptionError(
                f"Cannot decrypt {filename}. The encryption key may have changed. "
                f"Invalidate the stored credentials and re-authenticate."
            ) from e

    def _read_record(self, server_id: str, filename: str) -> str | None:
        """Read and decrypt one record, or None if it does not exist.

        Uses a shared lock so concurrent readers don't block each other.
        """
        filepath = self.partition_dir(server_id) / filename
        if not filepath.exists():
            return None

        try:
            with _file_lock(filepath, exclusive=False):
                raw = filepath.read_text(encoding="utf-8")
        except FileNotFoundError:
            # Deleted by another process between the check and the read
            return None
        except OSError as e:
            raise StorageError(f"Cannot read {filepath}: {e}") from e

        return self._decrypt(raw, filename)

    def _write_record(self, server_id: str, filename: str, content: str) -> None:
        """Encrypt and atomically replace one record.

        The payload goes to a temporary file in the same directory which is
        then renamed over the record, under an exclusive lock.
        """
        partition = self._ensure_partition(server_id)
        filepath = partition / filename
        payload = self._encrypt(content)

        try:
            with _file_lock(filepath, exclusive=True):
                fd, tmp_path = tempfile.mkstemp(
                    prefix=f".{filename}.", suffix=".tmp", dir=str(partition)
                )
                try:
                    with os.fdopen(fd, "w", encoding="utf-8") as tmp_file:
                        tmp_file.write(payload)
                        tmp_file.flush()
                        os.fsync(tmp_file.fileno())
                    os.replace(tmp_path, filepath)
                except BaseException:
                    with contextlib.suppress(OSError):
                        os.unlink(tmp_path)
                    raise
        except OSError as e:
            raise StorageError(f"Cannot write {filepath}: {e}") from e

        try:
            filepath.chmod(stat.S_IRUSR | stat.S_IWUSR)  # 0600
        except OSError as e:
            logger.warning(f"Could not set file permissions: {e}")

    def _delete_record(self, server_id: str, filename: str) -> bool:
        filepath = self.partition_dir(server_id) / filename
        if not filepath.exists():
            return False

        try:
            with _file_lock(filepath, exclusive=True):
                filepath.unlink()
        except FileNotFoundError:
            return False
        except OSError as e:
            raise StorageError(f"Cannot delete {filepath}: {e}") from e
        return True

    def _read_json(self, server_id: str, filename: str) -> dict[str, Any] | None:
        content = self._read_record(server_id, filename)
        if content is None:
            return None

        try:
            data = json.loads(content)
        except json.JSONDecodeError as e:
            raise StorageError(
                f"Record {filename} for {server_id} is corrupted. "
                f"Invalidate the stored credentials and re-authenticate."
            ) from e

        if not isinstance(data, dict):
            raise StorageError(f"Record {filename} for {server_id} is not a JSON object")
        return data

    def _write_json(self, server_id: str, filename: str, data: dict[str, Any]) -> None:
        self._write_record(server_id, filename, json.dumps(data, indent=2))

    # Token operations

    def get_tokens(self, server_id: str) -> TokenSet | None:
        """Get the stored token set for a server.

        A record without a usable access token is treated as absent.
        """
        data = self._read_json(server_id, TOKENS_FILE)
        if data is None:
            return None

        try:
            return TokenSet.from_dict(data)
        except (KeyError, ValueError, TypeError) as e:
            logger.warning(f"Ignoring stored tokens for {server_id}: {e}")
            return None

    def save_tokens(self, server_id: str, tokens: TokenSet) -> None:
        """Store the token set for a server, replacing any previous one."""
        self._write_json(server_id, TOKENS_FILE, tokens.to_dict())
        logger.debug(f"Stored tokens for {server_id}")

    def delete_tokens(self, server_id: str) -> bool:
        """Delete the token set for a server.

        Returns:
            True if a record was deleted, False if there was none
        """
        deleted = self._delete_record(server_id, TOKENS_FILE)
        if deleted:
            logger.debug(f"Deleted tokens for {server_id}")
        return deleted

    # Client information operations

    def get_client_info(self, server_id: str) -> ClientInformation | None:
        """Get the cached client information for a server."""
        data = self._read_json(server_id, CLIENT_INFO_FILE)
        if data is None:
            return None

        try:
            return ClientInformation.from_dict(data)
        except (KeyError, ValueError, TypeError) as e:
            logger.warning(f"Ignoring stored client information for {server_id}: {e}")
            return None

    def save_client_info(self, server_id: str, client_info: ClientInformation) -> None:
        """Store client information for a server."""
        self._write_json(server_id, CLIENT_INFO_FILE, client_info.to_dict())
        logger.debug(f"Stored client information for {server_id}")

    def delete_client_info(self, server_id: str) -> bool:
        """Delete client information for a server."""
        deleted = self._delete_record(server_id, CLIENT_INFO_FILE)
        if deleted:
            logger.debug(f"Deleted client information for {server_id}")
        return deleted

    # PKCE verifier operations

    def get_code_verifier(self, server_id: str) -> str | None:
        """Get the in-flight PKCE code verifier for a server."""
        verifier = self._read_record(server_id, CODE_VERIFIER_FILE)
        return verifier or None

    def save_code_verifier(self, server_id: str, verifier: str) -> None:
        """Store the PKCE code verifier for a server."""
        self._write_record(server_id, CODE_VERIFIER_FILE, verifier)

    def delete_code_verifier(self, server_id: str) -> bool:
        """Delete the PKCE code verifier for a server."""
        return self._delete_record(server_id, CODE_VERIFIER_FILE)

    # Utility methods

    def delete_all(self, server_id: str) -> None:
        """Delete all three records for a server."""
        self.delete_tokens(server_id)
        self.delete_client_info(server_id)
        self.delete_code_verifier(server_id)
        logger.info(f"Cleared stored credentials for {server_id}")

    def list_server_ids(self) -> list[str]:
        """List server identities that have any stored record."""
        if not self.config_dir.is_dir():
            return []

        return sorted(
            entry.name
            for entry in self.config_dir.iterdir()
            if entry.is_dir() and any((entry / name).exists() for name in RECORD_FILES)
        )
