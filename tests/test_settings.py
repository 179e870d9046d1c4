"""
Settings, Credentials and CLI Test Suite

Failure Categories:
1. Settings Failure - Bad configuration accepted, good configuration rejected
2. Credentials Failure - Secrets missing or exposed
3. CLI Failure - Configuration problems provision anything

Usage:
    pytest tests/test_settings.py -v
"""

import asyncio
import sys
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
import yaml

sys.path.insert(0, str(Path(__file__).parent.parent))
sys.path.insert(0, str(Path(__file__).parent.parent / "scripts"))

from provisioning.credentials import CredentialsError, ProviderCredentials
from provisioning.settings import HarnessSettings, ReadRetryPolicy

import run_acceptance_tests as cli


# =============================================================================
# Category 1: Settings Failure
# =============================================================================

class TestSettingsFailure:
    """
    Tests for harness settings.

    Pre-mortem: What if a typo in the settings file is silently ignored?
    """

    def test_defaults(self):
        settings = HarnessSettings()
        assert settings.max_parallel == 4
        assert settings.read_retry.timeout_seconds == 300.0
        assert settings.keep_workspaces is False

    def test_from_yaml(self, tmp_path):
        module = tmp_path / "module"
        module.mkdir()
        path = tmp_path / "harness.yaml"
        path.write_text(yaml.safe_dump({
            "module_dir": str(module),
            "max_parallel": 2,
            "retryable_errors": ["ServiceActivationInProgress"],
            "read_retry": {"initial_delay_seconds": 1, "timeout_seconds": 60},
        }))

        settings = HarnessSettings.from_yaml(path)

        assert settings.module_dir == module
        assert settings.max_parallel == 2
        assert settings.retryable_errors == ("ServiceActivationInProgress",)
        assert settings.read_retry == ReadRetryPolicy(initial_delay_seconds=1, timeout_seconds=60)
        assert settings.validate() == []

    def test_empty_yaml_is_defaults(self, tmp_path):
        path = tmp_path / "empty.yaml"
        path.write_text("")
        assert HarnessSettings.from_yaml(path) == HarnessSettings()

    def test_unknown_key_rejected(self):
        with pytest.raises(ValueError, match="max_paralel"):
            HarnessSettings.from_dict({"max_paralel": 2})

    def test_validate_errors(self, tmp_path):
        settings = HarnessSettings(
            module_dir=tmp_path / "missing",
            max_parallel=0,
            apply_timeout_seconds=0,
            read_retry=ReadRetryPolicy(initial_delay_seconds=10, max_delay_seconds=5),
        )
        errors = settings.validate()

        assert any("Module directory not found" in e for e in errors)
        assert any("max_parallel" in e for e in errors)
        assert any("apply_timeout_seconds" in e for e in errors)
        assert any("max delay" in e for e in errors)

    def test_settings_are_immutable(self):
        with pytest.raises(AttributeError):
            HarnessSettings().max_parallel = 10


# =============================================================================
# Category 2: Credentials Failure
# =============================================================================

class TestCredentialsFailure:
    """
    Tests for provider credentials.

    Pre-mortem: What if the access token ends up in a log file?
    """

    def test_from_env(self):
        credentials = ProviderCredentials.from_env({
            "ARM_SUBSCRIPTION_ID": "sub-1", "ARM_ACCESS_TOKEN": "tok", "ARM_TENANT_ID": "ten-1",
        })
        assert credentials.subscription_id == "sub-1"
        assert credentials.terraform_env() == {
            "ARM_SUBSCRIPTION_ID": "sub-1", "ARM_TENANT_ID": "ten-1",
        }

    def test_from_env_missing(self):
        with pytest.raises(CredentialsError, match="ARM_ACCESS_TOKEN"):
            ProviderCredentials.from_env({"ARM_SUBSCRIPTION_ID": "sub-1"})

    def test_token_not_in_repr(self):
        credentials = ProviderCredentials(subscription_id="sub-1", access_token="very-secret")
        assert "very-secret" not in repr(credentials)
        assert "very-secret" not in str(credentials)

    @pytest.mark.asyncio
    async def test_from_azure_cli(self):
        proc = MagicMock()
        proc.returncode = 0
        proc.communicate = AsyncMock(return_value=(
            b'{"accessToken": "tok", "subscription": "sub-1", "tenant": "ten-1"}', b""
        ))

        with patch("asyncio.create_subprocess_exec", AsyncMock(return_value=proc)) as exec_mock:
            credentials = await ProviderCredentials.from_azure_cli()

        assert credentials.access_token == "tok"
        assert credentials.subscription_id == "sub-1"
        assert exec_mock.call_args.args[:3] == ("az", "account", "get-access-token")

    @pytest.mark.asyncio
    async def test_from_azure_cli_not_logged_in(self):
        proc = MagicMock()
        proc.returncode = 1
        proc.communicate = AsyncMock(return_value=(b"", b"Please run 'az login'"))

        with patch("asyncio.create_subprocess_exec", AsyncMock(return_value=proc)):
            with pytest.raises(CredentialsError, match="az login"):
                await ProviderCredentials.from_azure_cli()

    @pytest.mark.asyncio
    async def test_from_azure_cli_timeout_kills_process(self):
        """Verify a hung az is not left running."""
        async def hang():
            await asyncio.sleep(30)

        proc = MagicMock()
        proc.returncode = None
        proc.communicate = hang
        proc.wait = AsyncMock(return_value=-9)

        with patch("asyncio.create_subprocess_exec", AsyncMock(return_value=proc)):
            with pytest.raises(CredentialsError, match="timed out"):
                await ProviderCredentials.from_azure_cli(timeout=0.05)

        proc.kill.assert_called_once()
        proc.wait.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_azure_cli_refresher_keeps_subscription(self):
        credentials = ProviderCredentials(
            subscription_id="sub-1", access_token="old", arm_endpoint="https://management.usgovcloudapi.net"
        )
        fresh = ProviderCredentials(subscription_id="sub-1", access_token="new")

        with patch.object(
            ProviderCredentials, "from_azure_cli", AsyncMock(return_value=fresh)
        ) as from_cli:
            refreshed = await credentials.azure_cli_refresher()()

        assert refreshed.access_token == "new"
        assert refreshed.arm_endpoint == "https://management.usgovcloudapi.net"

        from_cli.assert_awaited_once_with("sub-1")


# =============================================================================
# Category 3: CLI Failure
# =============================================================================

class TestCliFailure:
    """
    Tests for the command-line entry point.

    Pre-mortem: What if a misconfigured run starts provisioning anyway?
    """

    def test_default_scenarios(self):
        args = cli.build_parser().parse_args([])
        assert [t.name for t in cli.load_scenarios(args)] == ["basic", "full", "vnet"]

    def test_selected_scenarios(self):
        args = cli.build_parser().parse_args(["--scenario", "vnet", "--scenario", "basic"])
        assert [t.name for t in cli.load_scenarios(args)] == ["vnet", "basic"]

    def test_overrides(self, tmp_path):
        args = cli.build_parser().parse_args([
            "--module-dir", str(tmp_path), "--max-parallel", "2", "--keep-workspaces",
        ])
        settings = cli.load_settings(args)
        assert settings.module_dir == tmp_path
        assert settings.max_parallel == 2
        assert settings.keep_workspaces is True

    def test_zero_max_parallel_is_config_error(self, tmp_path):
        """Verify an explicit zero reaches validation instead of the default."""
        args = cli.build_parser().parse_args(["--module-dir", str(tmp_path), "--max-parallel", "0"])
        assert cli.load_settings(args).max_parallel == 0
        with patch.object(cli, "TerraformBackend") as backend:
            assert asyncio.run(cli.run(args)) == cli.EXIT_CONFIG
        backend.assert_not_called()

    def test_missing_module_dir_is_config_error(self, tmp_path):
        args = cli.build_parser().parse_args(["--module-dir", str(tmp_path / "missing")])
        with patch.object(cli, "TerraformBackend") as backend:
            assert asyncio.run(cli.run(args)) == cli.EXIT_CONFIG
        backend.assert_not_called()

    def test_bad_scenario_file_is_config_error(self, tmp_path):
        path = tmp_path / "bad.yaml"
        path.write_text("name: broken\n")
        args = cli.build_parser().parse_args(["--module-dir", str(tmp_path), "--scenario-file", str(path)])
        assert asyncio.run(cli.run(args)) == cli.EXIT_CONFIG
