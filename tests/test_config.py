"""
Tests for the configuration model.
"""

import pytest
from pydantic import ValidationError

from dovetail import config


class TestDovetailConfig:
    """Tests for the top-level configuration."""

    def test_defaults(self):
        config_obj = config.DovetailConfig(auth_key="tskey-test")

        assert config_obj.state_dir == "/var/lib/dovetail"
        assert config_obj.directory_type == "docker"
        assert config_obj.mesh_type == "tailscale"
        assert config_obj.labels.name == "dovetail.name"
        assert config_obj.labels.port == "dovetail.port"
        assert config_obj.labels.network == "dovetail.network"
        assert config_obj.server.port == 443
        assert config_obj.server.read_timeout == 30
        assert config_obj.server.write_timeout == 30
        assert config_obj.server.idle_timeout == 120
        assert config_obj.server.shutdown_grace_period == 10
        assert config_obj.server.stop_timeout == 15

    def test_auth_key_required(self):
        with pytest.raises(ValidationError):
            config.DovetailConfig()

    def test_auth_key_not_empty(self):
        with pytest.raises(ValidationError):
            config.DovetailConfig(auth_key="")

    def test_nested_sections(self):
        config_obj = config.DovetailConfig(
            auth_key="tskey-test",
            labels={"name": "expose.name"},
            server={"port": 8443},
        )

        assert config_obj.labels.name == "expose.name"
        assert config_obj.labels.port == "dovetail.port"
        assert config_obj.server.port == 8443


class TestServerConfig:
    """Tests for the endpoint server configuration."""

    @pytest.mark.parametrize("port", [0, 65536])
    def test_invalid_port(self, port):
        with pytest.raises(ValidationError):
            config.ServerConfig(port=port)

    def test_timeouts_must_be_positive(self):
        with pytest.raises(ValidationError):
            config.ServerConfig(stop_timeout=0)
