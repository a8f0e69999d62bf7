"""Tests for CLI module."""

import json
from pathlib import Path
from unittest.mock import AsyncMock, patch

import pytest
from click.testing import CliRunner

from mcp_oauth.cli import main
from mcp_oauth.errors import DiscoveryError
from mcp_oauth.provider import OAuthClientProvider
from mcp_oauth.store import FileTokenStorage, get_server_url_hash
from mcp_oauth.tokens import ClientInformation, TokenSet

SERVER_URL = "https://mcp.example.com/mcp"


@pytest.fixture
def runner() -> CliRunner:
    """Create a CLI test runner."""
    return CliRunner()


@pytest.fixture
def config_dir(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Isolated storage root; also moves cwd away from any project .env."""
    monkeypatch.chdir(tmp_path)
    for name in ("MCP_OAUTH_CLIENT_ID", "MCP_OAUTH_CALLBACK_PORT", "MCP_OAUTH_CONFIG_DIR"):
        monkeypatch.delenv(name, raising=False)
    return tmp_path / "oauth"


def seed_tokens(config_dir: Path, tokens: TokenSet) -> None:
    FileTokenStorage(config_dir).save_tokens(get_server_url_hash(SERVER_URL), tokens)


class TestMainGroup:
    """Tests for the main CLI group."""

    def test_version(self, runner: CliRunner):
        """Test --version flag."""
        result = runner.invoke(main, ["--version"])
        assert result.exit_code == 0
        assert "version" in result.output.lower()

    def test_help(self, runner: CliRunner):
        """Test --help flag."""
        result = runner.invoke(main, ["--help"])
        assert result.exit_code == 0
        for command in ("login", "status", "refresh", "logout", "server-id", "list"):
            assert command in result.output


class TestServerIdCommand:
    """Tests for the server-id command."""

    def test_prints_hash(self, runner: CliRunner):
        result = runner.invoke(main, ["server-id", SERVER_URL])

        assert result.exit_code == 0
        assert result.output.strip() == get_server_url_hash(SERVER_URL)

    def test_json_includes_storage_dir(self, runner: CliRunner, config_dir: Path):
        result = runner.invoke(
            main, ["--json", "--config-dir", str(config_dir), "server-id", SERVER_URL]
        )

        data = json.loads(result.output)
        assert data["success"] is True
        assert data["data"]["server_id"] == get_server_url_hash(SERVER_URL)
        assert data["data"]["storage_dir"] == str(config_dir / get_server_url_hash(SERVER_URL))


class TestStatusCommand:
    """Tests for the status command."""

    def test_not_authenticated(self, runner: CliRunner, config_dir: Path):
        result = runner.invoke(
            main, ["--json", "--config-dir", str(config_dir), "status", SERVER_URL]
        )

        assert result.exit_code == 0
        data = json.loads(result.output)["data"]
        assert data["authenticated"] is False
        assert data["server_id"] == get_server_url_hash(SERVER_URL)

    def test_authenticated_without_secrets(self, runner: CliRunner, config_dir: Path):
        seed_tokens(
            config_dir,
            TokenSet(access_token="secret-at", refresh_token="secret-rt", expires_in=3600),
        )

        result = runner.invoke(
            main, ["--json", "--config-dir", str(config_dir), "status", SERVER_URL]
        )

        assert result.exit_code == 0
        data = json.loads(result.output)["data"]
        assert data["authenticated"] is True
        assert data["has_refresh_token"] is True
        assert "secret-at" not in result.output
        assert "secret-rt" not in result.output

    def test_human_output(self, runner: CliRunner, config_dir: Path):
        seed_tokens(config_dir, TokenSet(access_token="at", expires_in=3600))

        result = runner.invoke(main, ["--config-dir", str(config_dir), "status", SERVER_URL])

        assert result.exit_code == 0
        assert f"OAuth status for {SERVER_URL}" in result.output
        assert "authenticated" in result.output


class TestLoginCommand:
    """Tests for the login command."""

    def test_login_success(self, runner: CliRunner, config_dir: Path):
        async def fake_authenticate(self: OAuthClientProvider) -> TokenSet:
            tokens = TokenSet(access_token="at", refresh_token="rt", expires_in=3600)
            self.storage.save_tokens(self.server_id, tokens)
            return tokens

        with patch(
            "mcp_oauth.cli.OAuthClientProvider.ensure_authenticated", new=fake_authenticate
        ):
            result = runner.invoke(
                main, ["--json", "--config-dir", str(config_dir), "login", SERVER_URL]
            )

        assert result.exit_code == 0
        data = json.loads(result.output)["data"]
        assert data["authenticated"] is True
        assert data["server_url"] == SERVER_URL

    def test_login_passes_options(self, runner: CliRunner, config_dir: Path):
        seen: list[OAuthClientProvider] = []

        async def fake_authenticate(self: OAuthClientProvider) -> TokenSet:
            seen.append(self)
            return TokenSet(access_token="at")

        with patch(
            "mcp_oauth.cli.OAuthClientProvider.ensure_authenticated", new=fake_authenticate
        ):
            result = runner.invoke(
                main,
                [
                    "--config-dir",
                    str(config_dir),
                    "login",
                    SERVER_URL,
                    "--port",
                    "9001",
                    "--client-id",
                    "static-client",
                    "--scope",
                    "read",
                    "--scope",
                    "write",
                    "--timeout",
                    "30",
                ],
            )

        assert result.exit_code == 0
        options = seen[0].options
        assert options.callback_port == 9001
        assert options.static_client_info == ClientInformation(client_id="static-client")
        assert options.scopes == ["read", "write"]
        assert options.authorization_timeout == 30.0
        assert options.config_dir == config_dir

    def test_login_force_discards_tokens(self, runner: CliRunner, config_dir: Path):
        seed_tokens(config_dir, TokenSet(access_token="old"))
        mock_auth = AsyncMock(return_value=TokenSet(access_token="new"))

        with patch("mcp_oauth.cli.OAuthClientProvider.ensure_authenticated", mock_auth):
            result = runner.invoke(
                main, ["--config-dir", str(config_dir), "login", SERVER_URL, "--force"]
            )

        assert result.exit_code == 0
        assert FileTokenStorage(config_dir).get_tokens(get_server_url_hash(SERVER_URL)) is None
        mock_auth.assert_awaited_once()

    def test_login_failure(self, runner: CliRunner, config_dir: Path):
        mock_auth = AsyncMock(side_effect=DiscoveryError("Could not connect"))

        with patch("mcp_oauth.cli.OAuthClientProvider.ensure_authenticated", mock_auth):
            result = runner.invoke(
                main, ["--json", "--config-dir", str(config_dir), "login", SERVER_URL]
            )

        assert result.exit_code == 1
        data = json.loads(result.output)
        assert data["success"] is False
        assert data["error"]["type"] == "DiscoveryError"

    def test_invalid_port(self, runner: CliRunner, config_dir: Path):
        result = runner.invoke(
            main, ["--config-dir", str(config_dir), "login", SERVER_URL, "--port", "70000"]
        )

        assert result.exit_code == 1
        assert "callback_port" in result.output


class TestRefreshCommand:
    """Tests for the refresh command."""

    def test_no_refresh_token(self, runner: CliRunner, config_dir: Path):
        seed_tokens(config_dir, TokenSet(access_token="at"))

        result = runner.invoke(main, ["--config-dir", str(config_dir), "refresh", SERVER_URL])

        assert result.exit_code == 1
        assert "No refresh token" in result.output

    def test_refresh_uses_stored_token(self, runner: CliRunner, config_dir: Path):
        seed_tokens(config_dir, TokenSet(access_token="at", refresh_token="rt"))
        mock_refresh = AsyncMock(return_value=TokenSet(access_token="new", refresh_token="rt"))

        with patch("mcp_oauth.cli.OAuthClientProvider.refresh", mock_refresh):
            result = runner.invoke(
                main, ["--config-dir", str(config_dir), "refresh", SERVER_URL]
            )

        assert result.exit_code == 0
        mock_refresh.assert_awaited_once_with("rt")
        assert "Refreshed access token" in result.output


class TestLogoutCommand:
    """Tests for the logout command."""

    def test_logout_all(self, runner: CliRunner, config_dir: Path):
        seed_tokens(config_dir, TokenSet(access_token="at"))

        result = runner.invoke(main, ["--config-dir", str(config_dir), "logout", SERVER_URL])

        assert result.exit_code == 0
        assert "Cleared all credentials" in result.output
        assert FileTokenStorage(config_dir).get_tokens(get_server_url_hash(SERVER_URL)) is None

    def test_logout_is_idempotent(self, runner: CliRunner, config_dir: Path):
        for _ in range(2):
            result = runner.invoke(
                main,
                ["--config-dir", str(config_dir), "logout", SERVER_URL, "--scope", "tokens"],
            )
            assert result.exit_code == 0

    def test_logout_rejects_unknown_scope(self, runner: CliRunner, config_dir: Path):
        result = runner.invoke(
            main,
            ["--config-dir", str(config_dir), "logout", SERVER_URL, "--scope", "everything"],
        )

        assert result.exit_code == 2


class TestListCommand:
    """Tests for the list command."""

    def test_empty(self, runner: CliRunner, config_dir: Path):
        result = runner.invoke(main, ["--config-dir", str(config_dir), "list"])

        assert result.exit_code == 0
        assert "No stored credentials" in result.output

    def test_lists_server_ids(self, runner: CliRunner, config_dir: Path):
        seed_tokens(config_dir, TokenSet(access_token="at"))

        result = runner.invoke(main, ["--json", "--config-dir", str(config_dir), "list"])

        assert result.exit_code == 0
        assert json.loads(result.output)["data"] == [get_server_url_hash(SERVER_URL)]
