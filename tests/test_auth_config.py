"""Tests for credential lookup from the docker config file."""

import base64
import json

import pytest

from registry_vuln_client.exceptions import RegistryError
from registry_vuln_client.utils.auth import (
    DEFAULT_DOCKER_REGISTRY,
    docker_config_path,
    get_auth_config,
    load_docker_auths,
)


def write_config(path, auths):
    path.write_text(json.dumps({"auths": auths}))
    return path


def encoded(username, password):
    return base64.b64encode(f"{username}:{password}".encode()).decode()


class TestLoadDockerAuths:
    """Test reading the auths section."""

    def test_missing_file(self, tmp_path):
        assert load_docker_auths(tmp_path / "missing.json") == {}

    def test_encoded_auth(self, tmp_path):
        path = write_config(
            tmp_path / "config.json",
            {"r.j3ss.co": {"auth": encoded("jess", "s3cr3t:with:colons")}},
        )
        auths = load_docker_auths(path)
        assert auths["r.j3ss.co"].username == "jess"
        assert auths["r.j3ss.co"].password == "s3cr3t:with:colons"

    def test_plain_username_password(self, tmp_path):
        path = write_config(
            tmp_path / "config.json",
            {"localhost:5000": {"username": "admin", "password": "pw"}},
        )
        assert load_docker_auths(path)["localhost:5000"].password == "pw"

    def test_invalid_json(self, tmp_path):
        path = tmp_path / "config.json"
        path.write_text("{not json")
        with pytest.raises(RegistryError):
            load_docker_auths(path)

    def test_config_path_from_env(self, tmp_path, monkeypatch):
        monkeypatch.setenv("DOCKER_CONFIG", str(tmp_path))
        assert docker_config_path() == tmp_path / "config.json"


class TestGetAuthConfig:
    """Test resolving credentials for a registry."""

    def test_explicit_credentials_win(self, tmp_path):
        path = write_config(
            tmp_path / "config.json", {"r.j3ss.co": {"auth": encoded("stored", "stored")}}
        )
        auth = get_auth_config("user", "pass", "r.j3ss.co", config_path=path)
        assert (auth.username, auth.password, auth.server_address) == (
            "user",
            "pass",
            "r.j3ss.co",
        )

    def test_stored_credentials(self, tmp_path):
        path = write_config(
            tmp_path / "config.json",
            {"https://r.j3ss.co": {"auth": encoded("jess", "pw")}},
        )
        auth = get_auth_config(registry="r.j3ss.co", config_path=path)
        assert auth.username == "jess"
        assert auth.password == "pw"
        assert auth.server_address == "r.j3ss.co"

    def test_docker_hub(self, tmp_path):
        """Test that docker.io maps to the index key and registry-1 URL."""
        path = write_config(
            tmp_path / "config.json",
            {"https://index.docker.io/v1/": {"auth": encoded("hubuser", "hubpw")}},
        )
        auth = get_auth_config(registry="docker.io", config_path=path)
        assert auth.username == "hubuser"
        assert auth.server_address == DEFAULT_DOCKER_REGISTRY

    def test_unknown_registry_is_anonymous(self, tmp_path):
        path = write_config(
            tmp_path / "config.json", {"other.example.com": {"auth": encoded("a", "b")}}
        )
        auth = get_auth_config(registry="r.j3ss.co", config_path=path)
        assert auth.username == ""
        assert auth.password == ""
        assert auth.server_address == "r.j3ss.co"

    def test_no_config_no_registry(self, tmp_path):
        with pytest.raises(RegistryError):
            get_auth_config(config_path=tmp_path / "missing.json")

    def test_no_config_with_registry(self, tmp_path):
        auth = get_auth_config(registry="localhost:5000", config_path=tmp_path / "missing.json")
        assert auth.server_address == "localhost:5000"
        assert auth.username == ""

    def test_first_stored_registry_without_registry(self, tmp_path):
        path = write_config(
            tmp_path / "config.json", {"r.j3ss.co": {"auth": encoded("jess", "pw")}}
        )
        auth = get_auth_config(config_path=path)
        assert auth.server_address == "r.j3ss.co"
