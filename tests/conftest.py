"""
Shared fixtures for the dovetail tests.
"""

import pytest

from dovetail import config


@pytest.fixture
def labels():
    """The default workload label configuration."""
    return config.LabelConfig()


@pytest.fixture
def server_config():
    """Endpoint server configuration with short timeouts for testing."""
    return config.ServerConfig(
        port=8443,
        read_timeout=5,
        write_timeout=5,
        idle_timeout=5,
        shutdown_grace_period=1,
        stop_timeout=2,
    )
