"""Unit tests for the bootstrap and create secret commands."""

from unittest.mock import MagicMock, patch

import pytest
import yaml
from click.testing import CliRunner

from driftless.bootstrap import (
    AuthMethod,
    CredentialKind,
    GitHubProvider,
    GitLabProvider,
    KeyAlgorithm,
    auto_accept,
    generate_key_pair,
)
from driftless.commands.bootstrap import prompt_confirm
from driftless.config import ENV_VARS
from driftless.errors import HostScanError, ValidationError
from driftless.main import cli
from tests.mocks import FakeEnvironmentClient


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    """Remove DRIFTLESS_* and provider token variables from the environment."""
    for name in list(ENV_VARS.values()) + ["GITHUB_TOKEN", "GITLAB_TOKEN"]:
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def runner():
    """Create CLI runner."""
    return CliRunner()


@pytest.fixture
def invoke(runner, tmp_path):
    """Invoke the CLI with an isolated config file."""

    def _invoke(*args, **kwargs):
        return runner.invoke(cli, ["--config", str(tmp_path / "config.yaml"), *args], **kwargs)

    return _invoke


@pytest.mark.cli_unit
class TestBootstrapGit:
    """Tests for driftless bootstrap git."""

    def test_ssh_generates_deploy_key(self, invoke):
        """Test ssh URLs use SSH auth and an SSH secret."""
        with patch("driftless.commands.bootstrap.run_bootstrap") as mock_run:
            result = invoke(
                "bootstrap", "git", "--url", "ssh://git@example.com:2222/org/fleet", "--path", "/clusters/dev/"
            )

        assert result.exit_code == 0, result.output
        options = mock_run.call_args[0][0]
        assert options.auth is AuthMethod.SSH
        assert options.path == "clusters/dev"
        assert options.secret.kind is CredentialKind.SSH
        assert options.secret.ssh_hostname == "example.com:2222"
        assert options.secret.name == "flux-system"
        assert mock_run.call_args[1]["confirm"] is prompt_confirm

    def test_silent_skips_prompt(self, invoke):
        """Test --silent accepts the deploy key without asking."""
        with patch("driftless.commands.bootstrap.run_bootstrap") as mock_run:
            result = invoke("bootstrap", "git", "--url", "ssh://git@example.com/org/fleet", "--silent")
        assert result.exit_code == 0, result.output
        assert mock_run.call_args[1]["confirm"] is auto_accept

    def test_https_basic(self, invoke):
        """Test a password switches to basic auth and a basic secret."""
        with patch("driftless.commands.bootstrap.run_bootstrap") as mock_run:
            result = invoke("bootstrap", "git", "--url", "https://example.com/org/fleet", "-u", "bot", "-p", "token")

        assert result.exit_code == 0, result.output
        options = mock_run.call_args[0][0]
        assert options.auth is AuthMethod.BASIC
        assert (options.username, options.password) == ("bot", "token")
        assert options.secret.kind is CredentialKind.BASIC
        assert (options.secret.username, options.secret.password) == ("bot", "token")

    def test_global_flags_flow_into_options(self, invoke):
        """Test namespace and timing flags reach the options."""
        with patch("driftless.commands.bootstrap.run_bootstrap") as mock_run:
            result = invoke(
                "-n", "gitops", "--timeout", "60", "--context", "kind-dev",
                "bootstrap", "git", "--url", "https://example.com/org/fleet",
                "--components-extra", "image-reflector-controller,image-automation-controller",
                "--secret-name", "fleet-auth",
            )

        assert result.exit_code == 0, result.output
        options = mock_run.call_args[0][0]
        assert options.namespace == "gitops"
        assert options.timeout == 60
        assert options.kubecontext == "kind-dev"
        assert options.install.components_extra == ["image-reflector-controller", "image-automation-controller"]
        assert options.secret.name == "fleet-auth"
        assert options.sync.secret_name == "fleet-auth"

    def test_private_key_clone_trusts_scanned_host(self, invoke, tmp_path):
        """Test a private key file makes the clone verify the scanned host keys."""
        key_file = tmp_path / "identity"
        key_file.write_bytes(generate_key_pair(KeyAlgorithm.ED25519).private_key)
        with patch("driftless.commands.bootstrap.scan_host_keys") as mock_scan, \
                patch("driftless.commands.bootstrap.run_bootstrap") as mock_run:
            mock_scan.return_value = b"example.com ssh-ed25519 AAAA\n"
            result = invoke(
                "bootstrap", "git", "--url", "ssh://git@example.com/org/fleet",
                "--private-key-file", str(key_file), "--silent",
            )

        assert result.exit_code == 0, result.output
        assert mock_scan.call_args[0][0] == "example.com"
        assert mock_run.call_args[1]["known_hosts"] == "example.com ssh-ed25519 AAAA\n"
        assert mock_run.call_args[1]["private_key"] == key_file.read_bytes()

    def test_known_hosts_reach_the_driver(self, invoke, tmp_path):
        """Test scanned host keys are handed to the git driver."""
        key_file = tmp_path / "identity"
        key_file.write_bytes(generate_key_pair(KeyAlgorithm.ED25519).private_key)
        with patch("driftless.commands.bootstrap.scan_host_keys", return_value=b"example.com ssh-ed25519 AAAA\n"), \
                patch("driftless.commands.bootstrap.KubernetesEnvironmentClient"), \
                patch("driftless.commands.bootstrap.GitCLIDriver") as mock_driver, \
                patch("driftless.commands.bootstrap.BootstrapOrchestrator"):
            result = invoke(
                "bootstrap", "git", "--url", "ssh://git@example.com/org/fleet",
                "--private-key-file", str(key_file), "--silent",
            )

        assert result.exit_code == 0, result.output
        assert mock_driver.call_args[1]["known_hosts"] == "example.com ssh-ed25519 AAAA\n"

    def test_host_scan_failure_exits_1(self, invoke, tmp_path):
        """Test an unreachable SSH host stops the run before cloning."""
        key_file = tmp_path / "identity"
        key_file.write_bytes(generate_key_pair(KeyAlgorithm.ED25519).private_key)
        with patch("driftless.commands.bootstrap.scan_host_keys", side_effect=HostScanError("no host key")), \
                patch("driftless.commands.bootstrap.run_bootstrap") as mock_run:
            result = invoke(
                "bootstrap", "git", "--url", "ssh://git@example.com/org/fleet",
                "--private-key-file", str(key_file),
            )

        assert result.exit_code == 1
        assert "no host key" in result.output
        mock_run.assert_not_called()

    def test_failure_exits_1(self, invoke):
        """Test a failed run prints the error and exits 1."""
        with patch("driftless.commands.bootstrap.KubernetesEnvironmentClient"), \
                patch("driftless.commands.bootstrap.GitCLIDriver"), \
                patch("driftless.commands.bootstrap.BootstrapOrchestrator") as mock_orchestrator:
            mock_orchestrator.return_value.run.side_effect = ValidationError("repository URL is required")
            result = invoke("bootstrap", "git", "--url", "https://example.com/org/fleet")

        assert result.exit_code == 1
        assert "repository URL is required" in result.output

    def test_success_message(self, invoke):
        """Test a finished run reports success."""
        with patch("driftless.commands.bootstrap.KubernetesEnvironmentClient"), \
                patch("driftless.commands.bootstrap.GitCLIDriver"), \
                patch("driftless.commands.bootstrap.BootstrapOrchestrator"):
            result = invoke("bootstrap", "git", "--url", "https://example.com/org/fleet")

        assert result.exit_code == 0, result.output
        assert "bootstrap finished" in result.output


@pytest.mark.cli_unit
class TestBootstrapProviders:
    """Tests for driftless bootstrap github|gitlab."""

    def test_github_deploy_key(self, invoke, monkeypatch):
        """Test GitHub bootstrap clones over https and installs an SSH secret."""
        monkeypatch.setenv("GITHUB_TOKEN", "ghp_token")
        with patch("driftless.commands.bootstrap.run_bootstrap") as mock_run:
            result = invoke("bootstrap", "github", "--owner", "org", "--repository", "fleet")

        assert result.exit_code == 0, result.output
        options = mock_run.call_args[0][0]
        provider = mock_run.call_args[1]["provider"]
        assert isinstance(provider, GitHubProvider)
        assert options.url == "https://github.com/org/fleet.git"
        assert options.auth is AuthMethod.BASIC
        assert options.password == "ghp_token"
        assert options.provider.owner == "org"
        assert options.provider.private is True
        assert options.secret.kind is CredentialKind.SSH
        assert options.secret.ssh_hostname == "github.com"

    def test_gitlab_token_auth(self, invoke):
        """Test --token-auth stores the token as a basic secret."""
        with patch("driftless.commands.bootstrap.run_bootstrap") as mock_run:
            result = invoke(
                "bootstrap", "gitlab", "--owner", "me", "--repository", "fleet",
                "--personal", "--public", "--token-auth", "--token", "glpat",
            )

        assert result.exit_code == 0, result.output
        options = mock_run.call_args[0][0]
        assert isinstance(mock_run.call_args[1]["provider"], GitLabProvider)
        assert options.token_auth is True
        assert options.provider.personal is True
        assert options.provider.private is False
        assert options.secret.kind is CredentialKind.BASIC
        assert options.secret.password == "glpat"

    def test_token_required(self, invoke):
        """Test a missing token is a usage error."""
        result = invoke("bootstrap", "github", "--owner", "org", "--repository", "fleet")
        assert result.exit_code == 2


@pytest.mark.cli_unit
class TestCreateSecret:
    """Tests for driftless create secret git|tls."""

    def test_export_basic(self, invoke):
        """Test --export prints a basic auth Secret."""
        result = invoke(
            "create", "secret", "git", "podinfo-auth",
            "--url", "https://example.com/org/podinfo", "-u", "bot", "-p", "token",
            "--label", "team=platform", "--export",
        )

        assert result.exit_code == 0, result.output
        secret = yaml.safe_load(result.output)
        assert secret["kind"] == "Secret"
        assert secret["metadata"] == {
            "name": "podinfo-auth",
            "namespace": "flux-system",
            "labels": {"team": "platform"},
        }
        assert secret["stringData"] == {"password": "token", "username": "bot"}

    def test_export_ssh(self, invoke):
        """Test --export for ssh URLs generates a key and scans the host."""
        with patch("subprocess.run") as mock_run:
            mock_run.return_value = MagicMock(returncode=0, stdout="example.com ssh-ed25519 AAAA\n", stderr="")
            result = invoke(
                "create", "secret", "git", "podinfo-auth",
                "--url", "ssh://git@example.com/org/podinfo", "--ssh-key-algorithm", "ed25519", "--export",
            )

        assert result.exit_code == 0, result.output
        data = yaml.safe_load(result.output)["stringData"]
        assert sorted(data) == ["identity", "identity.pub", "known_hosts"]
        assert data["identity.pub"].startswith("ssh-ed25519 ")
        assert data["known_hosts"] == "example.com ssh-ed25519 AAAA\n"
        assert mock_run.call_args[0][0][-1] == "example.com"

    def test_unsupported_scheme(self, invoke):
        """Test URLs other than ssh and http(s) exit 1."""
        result = invoke("create", "secret", "git", "x", "--url", "ftp://example.com/repo", "--export")
        assert result.exit_code == 1
        assert "not supported" in result.output

    def test_bad_label(self, invoke):
        """Test malformed labels are a usage error."""
        result = invoke(
            "create", "secret", "git", "x", "--url", "https://example.com/repo",
            "-u", "bot", "-p", "token", "--label", "novalue", "--export",
        )
        assert result.exit_code == 2

    def test_basic_needs_password(self, invoke):
        """Test validation failures exit 1."""
        result = invoke("create", "secret", "git", "x", "--url", "https://example.com/repo", "--export")
        assert result.exit_code == 1

    def test_applied_to_cluster(self, invoke):
        """Test without --export the Secret is upserted into the namespace."""
        environment = FakeEnvironmentClient()
        with patch("driftless.commands.secret.KubernetesEnvironmentClient", return_value=environment):
            result = invoke(
                "-n", "gitops", "create", "secret", "git", "podinfo-auth",
                "--url", "https://example.com/org/podinfo", "-u", "bot", "-p", "token",
            )

        assert result.exit_code == 0, result.output
        assert "secret 'podinfo-auth' created in 'gitops' namespace" in result.output
        stored = environment.find("Secret", "podinfo-auth")
        assert stored["metadata"]["namespace"] == "gitops"

    def test_export_tls(self, invoke, tmp_path):
        """Test TLS secrets carry the given files."""
        cert = tmp_path / "client.crt"
        key = tmp_path / "client.key"
        cert.write_text("CERT")
        key.write_text("KEY")
        result = invoke(
            "create", "secret", "tls", "certs", "--cert-file", str(cert), "--key-file", str(key), "--export"
        )

        assert result.exit_code == 0, result.output
        assert yaml.safe_load(result.output)["stringData"] == {"certFile": "CERT", "keyFile": "KEY"}
