import asyncio
import logging
import typing

import docker
from docker.errors import DockerException, NotFound
from requests.exceptions import RequestException

from .. import config  # noqa: TID252
from . import base


class WorkloadDirectory(base.WorkloadDirectory):
    """
    Workload directory implementation that exposes Docker containers.

    The Docker SDK is blocking, so all calls are made in worker threads.
    """
    def __init__(self, config_obj: config.DockerConfig):
        self.config = config_obj
        self.client: typing.Optional[docker.DockerClient] = None
        self._logger = logging.getLogger(__name__)

    def _connect(self) -> docker.DockerClient:
        if self.config.base_url:
            client = docker.DockerClient(base_url=self.config.base_url, timeout=self.config.timeout)
        else:
            client = docker.from_env(timeout=self.config.timeout)
        client.ping()
        return client

    async def startup(self):
        try:
            self.client = await asyncio.to_thread(self._connect)
        except (DockerException, RequestException) as exc:
            raise base.DirectoryConnectError(f"unable to connect to Docker: {exc}") from exc
        self._logger.info("Docker connection established")

    async def shutdown(self):
        if self.client is not None:
            await asyncio.to_thread(self.client.close)
            self.client = None

    async def list(self, label: str) -> typing.List[str]:
        try:
            containers = await asyncio.to_thread(
                self.client.api.containers,
                filters={"label": label, "status": "running"},
            )
        except (DockerException, RequestException) as exc:
            raise base.DirectoryError(f"failed to list containers: {exc}") from exc
        return [container["Id"] for container in containers]

    async def inspect(self, workload_id: str) -> base.Workload:
        try:
            info = await asyncio.to_thread(self.client.api.inspect_container, workload_id)
        except NotFound as exc:
            raise base.InspectError(f"container {workload_id} not found") from exc
        except (DockerException, RequestException) as exc:
            raise base.InspectError(f"failed to inspect container {workload_id}: {exc}") from exc
        networks = (info.get("NetworkSettings") or {}).get("Networks") or {}
        return base.Workload(
            id=info["Id"],
            labels=(info.get("Config") or {}).get("Labels") or {},
            networks={
                name: (settings or {}).get("IPAddress") or ""
                for name, settings in networks.items()
            },
        )

    async def subscribe(
        self,
        actions: typing.Iterable[str],
        since: typing.Optional[int] = None
    ) -> typing.AsyncIterator[base.Notification]:
        filters = {"type": "container", "event": list(actions)}
        try:
            stream = await asyncio.to_thread(
                self.client.events,
                since=since,
                filters=filters,
                decode=True,
            )
        except (DockerException, RequestException) as exc:
            raise base.DirectoryError(f"failed to subscribe to Docker events: {exc}") from exc
        self._logger.info("Subscribed to Docker events %s", ", ".join(filters["event"]))
        try:
            while True:
                # Each event is read in a worker thread, so the daemon's stream is only
                # consumed as fast as the subscriber takes notifications
                try:
                    message = await asyncio.to_thread(next, stream, None)
                except Exception as exc:
                    raise base.DirectoryError(f"Docker event stream failed: {exc}") from exc
                if message is None:
                    raise base.DirectoryError("Docker event stream closed")
                actor = message.get("Actor") or {}
                if not actor.get("ID"):
                    continue
                yield base.Notification(
                    action=message.get("Action") or message.get("status", ""),
                    actor_id=actor["ID"],
                    attributes=actor.get("Attributes") or {},
                )
        finally:
            # Closing the stream also unblocks any worker thread still waiting on it
            stream.close()

    @classmethod
    def from_config(cls, config_obj: config.DovetailConfig) -> "WorkloadDirectory":
        return cls(config_obj.docker)
