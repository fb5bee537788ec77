"""Tests for the reg command line interface."""

import json

import click
import pytest
from click.testing import CliRunner

from registry_vuln_client import __version__
from registry_vuln_client.cli import Duration, Options, cli, registry_config


def high_findings(count):
    return [
        {
            "Target": "r.example.com/foo:bar (alpine 3.12)",
            "Vulnerabilities": [
                {"VulnerabilityID": f"CVE-2021-{i}", "PkgName": "musl", "Severity": "HIGH"}
                for i in range(count)
            ],
        }
    ]


@pytest.fixture
def runner(empty_docker_config, monkeypatch):
    monkeypatch.delenv("REG_USERNAME", raising=False)
    monkeypatch.delenv("REG_PASSWORD", raising=False)
    return CliRunner()


class TestDuration:
    """Test duration parsing."""

    @pytest.mark.parametrize(
        "value,expected",
        [("1m", 60), ("1h", 3600), ("250ms", 0.25), ("1h30m", 5400), ("90", 90), ("2.5s", 2.5)],
    )
    def test_valid(self, value, expected):
        assert Duration().convert(value, None, None) == pytest.approx(expected)

    @pytest.mark.parametrize("value", ["", "ten", "1d", "5m garbage"])
    def test_invalid(self, value):
        with pytest.raises(click.BadParameter):
            Duration().convert(value, None, None)


class TestGlobalOptions:
    """Test help, version and aliases."""

    def test_help_lists_commands(self, runner):
        result = runner.invoke(cli, ["--help"])
        assert result.exit_code == 0
        for command in ("list", "tags", "manifest", "digest", "delete", "layer", "vulns", "server"):
            assert command in result.output

    def test_version(self, runner):
        result = runner.invoke(cli, ["--version"])
        assert result.exit_code == 0
        assert __version__ in result.output

    @pytest.mark.parametrize("alias,command", [("ls", "list"), ("rm", "delete"), ("download", "layer")])
    def test_aliases(self, runner, alias, command):
        result = runner.invoke(cli, [alias, "--help"])
        assert result.exit_code == 0
        assert f"{command} [OPTIONS]" in result.output

    def test_invalid_timeout(self, runner):
        result = runner.invoke(cli, ["--timeout", "forever", "list", "r.example.com"])
        assert result.exit_code == 2


class TestRegistryConfig:
    """Test building the client configuration from global options."""

    def test_refuses_plain_http(self, empty_docker_config):
        with pytest.raises(click.UsageError, match="force-non-ssl"):
            registry_config(Options(), "http://localhost:5000")

    def test_force_non_ssl(self, empty_docker_config):
        config = registry_config(Options(force_non_ssl=True), "localhost:5000")
        assert config.base_url == "http://localhost:5000"

    def test_options_carried(self, empty_docker_config):
        opts = Options(
            username="jess", password="pw", insecure=True, skip_ping=True, timeout=5
        )
        config = registry_config(opts, "r.example.com")
        assert config.base_url == "https://r.example.com"
        assert config.username == "jess"
        assert config.insecure
        assert config.skip_ping
        assert config.timeout == 5

    def test_stored_credentials(self, empty_docker_config):
        (empty_docker_config / "config.json").write_text(
            json.dumps({"auths": {"r.example.com": {"username": "bot", "password": "tok"}}})
        )
        config = registry_config(Options(), "r.example.com")
        assert (config.username, config.password) == ("bot", "tok")

    def test_plain_http_command_exits_with_usage_error(self, runner):
        result = runner.invoke(cli, ["list", "http://localhost:5000"])
        assert result.exit_code == 2
        assert "insecure protocol" in result.output


class TestVulnsCommand:
    """Test the vulns command with a stand-in trivy binary."""

    def test_requires_scanner(self, runner):
        result = runner.invoke(cli, ["vulns", "r.example.com/foo:bar"])
        assert result.exit_code == 2
        assert "clair url cannot be empty" in result.output

    def test_layer_requires_digest(self, runner):
        result = runner.invoke(cli, ["layer", "r.example.com/foo:bar"])
        assert result.exit_code == 2

    def test_bad_threshold_exceeded(self, runner, fake_binary):
        trivy = fake_binary(f"cat <<'EOF'\n{json.dumps(high_findings(11))}\nEOF\n")

        result = runner.invoke(
            cli, ["--skip-ping", "vulns", "--trivy", trivy, "r.example.com/foo:bar"]
        )

        assert result.exit_code == 1
        assert "CVE-2021-0: [High]" in result.output
        assert "Bad: 11" in result.output
        assert "11 bad vulnerabilities found" in result.output

    def test_bad_threshold_raised(self, runner, fake_binary):
        trivy = fake_binary(f"cat <<'EOF'\n{json.dumps(high_findings(11))}\nEOF\n")

        result = runner.invoke(
            cli,
            [
                "--skip-ping",
                "vulns",
                "--trivy",
                trivy,
                "--bad-threshold",
                "20",
                "r.example.com/foo:bar",
            ],
        )

        assert result.exit_code == 0, result.output
        assert "High: 11" in result.output

    def test_scanner_failure(self, runner, fake_binary):
        trivy = fake_binary("echo 'no such image' >&2\nexit 1\n")

        result = runner.invoke(
            cli, ["--skip-ping", "vulns", "--trivy", trivy, "r.example.com/foo:bar"]
        )

        assert result.exit_code == 1
        assert "no such image" in result.output
