"""
Tests for running the event loop end to end with fake components.
"""

import os
from unittest.mock import patch

import pytest

from dovetail import config, directory, main, mesh


class FakeDirectory(directory.WorkloadDirectory):
    def __init__(self, stream_error=None):
        self.stream_error = stream_error or directory.DirectoryError("event stream closed")
        self.started = False
        self.stopped = False

    async def startup(self):
        self.started = True

    async def shutdown(self):
        self.stopped = True

    async def list(self, label):
        return []

    async def inspect(self, workload_id):
        raise directory.InspectError(workload_id)

    async def subscribe(self, actions, since=None):
        raise self.stream_error
        yield


class FakeProvider(mesh.Provider):
    def __init__(self):
        self.started = False
        self.stopped = False

    async def startup(self):
        self.started = True

    async def shutdown(self):
        self.stopped = True


@pytest.fixture
def config_obj(tmp_path):
    return config.DovetailConfig(auth_key="tskey-test", state_dir=str(tmp_path / "state"))


@pytest.mark.asyncio
async def test_run_exits_when_event_stream_ends(config_obj):
    fake_directory = FakeDirectory()
    fake_provider = FakeProvider()
    with (
        patch.object(directory, "load", return_value=fake_directory),
        patch.object(mesh, "load", return_value=fake_provider),
    ):
        await main.run(config_obj)

    assert os.path.isdir(config_obj.state_dir)
    assert fake_directory.started and fake_directory.stopped
    assert fake_provider.started and fake_provider.stopped


@pytest.mark.asyncio
async def test_directory_connect_error_propagates(config_obj):
    class UnreachableDirectory(FakeDirectory):
        async def startup(self):
            raise directory.DirectoryConnectError("daemon not running")

    with patch.object(directory, "load", return_value=UnreachableDirectory()):
        with pytest.raises(directory.DirectoryConnectError):
            await main.run(config_obj)
