"""Tests for file-backed credential storage."""

import json
import stat
import sys
from pathlib import Path
from unittest.mock import patch

import pytest

from mcp_oauth.errors import StorageError, TokenDecryptionError
from mcp_oauth.store import (
    CLIENT_INFO_FILE,
    CODE_VERIFIER_FILE,
    TOKENS_FILE,
    FileTokenStorage,
    get_server_url_hash,
)
from mcp_oauth.tokens import ClientInformation, TokenSet

SERVER_ID = get_server_url_hash("https://mcp.example.com/mcp")


class TestServerUrlHash:
    """Tests for get_server_url_hash."""

    def test_deterministic(self) -> None:
        url = "https://mcp.example.com/mcp"
        assert get_server_url_hash(url) == get_server_url_hash(url)

    def test_sixteen_hex_chars(self) -> None:
        server_id = get_server_url_hash("https://mcp.example.com/mcp")

        assert len(server_id) == 16
        int(server_id, 16)

    def test_different_urls_differ(self) -> None:
        urls = [
            "https://mcp.example.com/mcp",
            "https://mcp.example.com/mcp/",
            "https://mcp.example.com/other",
            "http://mcp.example.com/mcp",
        ]
        assert len({get_server_url_hash(url) for url in urls}) == len(urls)


class TestFileTokenStorage:
    """Tests for FileTokenStorage."""

    def test_missing_records_return_none(self, storage: FileTokenStorage) -> None:
        assert storage.get_tokens(SERVER_ID) is None
        assert storage.get_client_info(SERVER_ID) is None
        assert storage.get_code_verifier(SERVER_ID) is None

    def test_tokens_round_trip(self, storage: FileTokenStorage) -> None:
        tokens = TokenSet(access_token="access", expires_in=3600, refresh_token="refresh")

        storage.save_tokens(SERVER_ID, tokens)

        assert storage.get_tokens(SERVER_ID) == tokens

    def test_client_info_round_trip(self, storage: FileTokenStorage) -> None:
        info = ClientInformation(
            client_id="client",
            redirect_uris=["http://localhost:12334/oauth/callback"],
            extra={"client_id_issued_at": 1700000000},
        )

        storage.save_client_info(SERVER_ID, info)

        assert storage.get_client_info(SERVER_ID) == info

    def test_code_verifier_round_trip(self, storage: FileTokenStorage) -> None:
        storage.save_code_verifier(SERVER_ID, "v" * 64)
        assert storage.get_code_verifier(SERVER_ID) == "v" * 64

    def test_layout(self, storage: FileTokenStorage) -> None:
        storage.save_tokens(SERVER_ID, TokenSet(access_token="a"))
        storage.save_client_info(SERVER_ID, ClientInformation(client_id="c"))
        storage.save_code_verifier(SERVER_ID, "v" * 64)

        partition = storage.config_dir / SERVER_ID
        for name in (TOKENS_FILE, CLIENT_INFO_FILE, CODE_VERIFIER_FILE):
            assert (partition / name).is_file()

    def test_records_are_encrypted(self, storage: FileTokenStorage) -> None:
        storage.save_tokens(SERVER_ID, TokenSet(access_token="super-secret-token"))

        raw = (storage.config_dir / SERVER_ID / TOKENS_FILE).read_text()

        assert "super-secret-token" not in raw

    def test_unencrypted_records_are_plain_json(self, tmp_path: Path) -> None:
        storage = FileTokenStorage(config_dir=tmp_path, encrypted=False)

        storage.save_tokens(SERVER_ID, TokenSet(access_token="plain"))

        data = json.loads((tmp_path / SERVER_ID / TOKENS_FILE).read_text())
        assert data["access_token"] == "plain"

    @pytest.mark.skipif(sys.platform == "win32", reason="POSIX permissions")
    def test_permissions(self, storage: FileTokenStorage) -> None:
        storage.save_tokens(SERVER_ID, TokenSet(access_token="a"))

        partition = storage.config_dir / SERVER_ID
        assert stat.S_IMODE(partition.stat().st_mode) == 0o700
        assert stat.S_IMODE((partition / TOKENS_FILE).stat().st_mode) == 0o600

    def test_no_temporary_files_left_behind(self, storage: FileTokenStorage) -> None:
        for i in range(3):
            storage.save_tokens(SERVER_ID, TokenSet(access_token=f"token-{i}"))

        leftovers = list((storage.config_dir / SERVER_ID).glob("*.tmp"))
        assert leftovers == []
        assert storage.get_tokens(SERVER_ID).access_token == "token-2"  # type: ignore[union-attr]

    def test_failed_write_keeps_previous_record(self, storage: FileTokenStorage) -> None:
        storage.save_tokens(SERVER_ID, TokenSet(access_token="original"))

        with patch("mcp_oauth.store.os.replace", side_effect=OSError("disk full")):
            with pytest.raises(StorageError, match="disk full"):
                storage.save_tokens(SERVER_ID, TokenSet(access_token="replacement"))

        assert storage.get_tokens(SERVER_ID).access_token == "original"  # type: ignore[union-attr]
        assert list((storage.config_dir / SERVER_ID).glob("*.tmp")) == []

    def test_partitions_are_independent(self, storage: FileTokenStorage) -> None:
        other = get_server_url_hash("https://other.example.com/mcp")

        storage.save_tokens(SERVER_ID, TokenSet(access_token="one"))
        storage.save_tokens(other, TokenSet(access_token="two"))
        storage.delete_all(SERVER_ID)

        assert storage.get_tokens(SERVER_ID) is None
        assert storage.get_tokens(other).access_token == "two"  # type: ignore[union-attr]

    def test_delete_is_idempotent(self, storage: FileTokenStorage) -> None:
        storage.save_tokens(SERVER_ID, TokenSet(access_token="a"))

        assert storage.delete_tokens(SERVER_ID) is True
        assert storage.delete_tokens(SERVER_ID) is False
        assert storage.delete_client_info(SERVER_ID) is False
        assert storage.delete_code_verifier(SERVER_ID) is False

    def test_delete_all(self, storage: FileTokenStorage) -> None:
        storage.save_tokens(SERVER_ID, TokenSet(access_token="a"))
        storage.save_client_info(SERVER_ID, ClientInformation(client_id="c"))
        storage.save_code_verifier(SERVER_ID, "v" * 64)

        storage.delete_all(SERVER_ID)
        storage.delete_all(SERVER_ID)

        assert storage.get_tokens(SERVER_ID) is None
        assert storage.get_client_info(SERVER_ID) is None
        assert storage.get_code_verifier(SERVER_ID) is None

    def test_token_record_without_access_token_is_absent(self, tmp_path: Path) -> None:
        storage = FileTokenStorage(config_dir=tmp_path, encrypted=False)
        partition = tmp_path / SERVER_ID
        partition.mkdir()
        (partition / TOKENS_FILE).write_text(json.dumps({"refresh_token": "r"}))

        assert storage.get_tokens(SERVER_ID) is None

    def test_corrupted_json_raises(self, tmp_path: Path) -> None:
        storage = FileTokenStorage(config_dir=tmp_path, encrypted=False)
        partition = tmp_path / SERVER_ID
        partition.mkdir()
        (partition / TOKENS_FILE).write_text("{not json")

        with pytest.raises(StorageError, match="corrupted"):
            storage.get_tokens(SERVER_ID)

    def test_changed_key_raises_decryption_error(
        self, storage: FileTokenStorage, memory_keyring: dict[tuple[str, str], str]
    ) -> None:
        storage.save_tokens(SERVER_ID, TokenSet(access_token="a"))

        memory_keyring.clear()
        reopened = FileTokenStorage(config_dir=storage.config_dir)

        with pytest.raises(TokenDecryptionError):
            reopened.get_tokens(SERVER_ID)

    def test_same_key_shared_between_instances(self, storage: FileTokenStorage) -> None:
        storage.save_tokens(SERVER_ID, TokenSet(access_token="shared"))

        reopened = FileTokenStorage(config_dir=storage.config_dir)

        assert reopened.get_tokens(SERVER_ID).access_token == "shared"  # type: ignore[union-attr]

    def test_list_server_ids(self, storage: FileTokenStorage) -> None:
        assert storage.list_server_ids() == []

        storage.save_code_verifier(SERVER_ID, "v" * 64)

        assert storage.list_server_ids() == [SERVER_ID]


class TestKeyringFallback:
    """Tests for keyring fallback behavior."""

    def test_uses_fallback_when_keyring_fails(self, tmp_path: Path) -> None:
        with patch("mcp_oauth.store.keyring.get_password", side_effect=Exception("No keyring")):
            storage = FileTokenStorage(config_dir=tmp_path)

        assert not storage.is_using_keyring()
        storage.save_tokens(SERVER_ID, TokenSet(access_token="a"))
        assert storage.get_tokens(SERVER_ID).access_token == "a"  # type: ignore[union-attr]

    def test_uses_keyring_when_available(self, storage: FileTokenStorage) -> None:
        assert storage.is_using_keyring()
