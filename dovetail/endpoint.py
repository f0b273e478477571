import asyncio
import dataclasses
import enum
import logging
import os
import typing

import httpx
from aiohttp import web

from . import config, mesh, model, util
from .proxy import Proxy


class EndpointError(Exception):
    """
    Raised when there is a problem with an endpoint.
    """


class EndpointStartError(EndpointError):
    """
    Raised when an endpoint fails to start.
    """


@enum.unique
class EndpointState(enum.Enum):
    """
    The lifecycle states of an endpoint, in the order that they are visited.
    """
    CREATED = "CREATED"
    STARTING = "STARTING"
    RUNNING = "RUNNING"
    STOPPING = "STOPPING"
    STOPPED = "STOPPED"


@dataclasses.dataclass(frozen=True)
class EndpointConfig:
    """
    The configuration for a single endpoint.
    """
    #: The name of the endpoint on the mesh network
    name: str
    #: The address of the workload
    address: str
    #: The port of the workload
    port: int
    #: The directory containing the state for all endpoints
    state_dir: str
    #: The key used to join the mesh network
    auth_key: str


class Endpoint:
    """
    Base class for an endpoint that exposes a single workload.
    """
    @property
    def name(self) -> str:
        raise NotImplementedError

    async def start(self):
        """
        Start the endpoint, raising EndpointStartError on failure.
        """
        raise NotImplementedError

    async def stop(self):
        """
        Stop the endpoint and release all of its resources.
        """
        raise NotImplementedError

    def update_target(self, address: str, port: int):
        """
        Point the endpoint at a new address for its workload.
        """
        raise NotImplementedError


#: Type for a function that makes a new endpoint
EndpointFactory = typing.Callable[[EndpointConfig], Endpoint]


class MeshEndpoint(Endpoint):
    """
    Endpoint that joins the mesh network under its own name and proxies to the workload.
    """
    def __init__(
        self,
        config_obj: EndpointConfig,
        provider: mesh.Provider,
        server_config: config.ServerConfig,
    ):
        self.config = config_obj
        self.provider = provider
        self.server_config = server_config
        self.state = EndpointState.CREATED
        # Raises ValueError for an invalid address or port
        self._target = model.Target.from_address(config_obj.address, config_obj.port)
        self._node: typing.Optional[mesh.Node] = None
        self._proxy: typing.Optional[Proxy] = None
        self._serve_task: typing.Optional[asyncio.Task] = None
        self._logger = logging.getLogger(__name__)

    @property
    def name(self) -> str:
        return self.config.name

    @property
    def target(self) -> model.Target:
        return self._target

    async def _release(self):
        node, self._node = self._node, None
        if node is not None:
            try:
                await node.close()
            except mesh.MeshError:
                self._logger.exception("Error closing mesh node for %s", self.name)

    async def _serve(self, runner: web.AppRunner, client: httpx.AsyncClient):
        """
        Serves requests until cancelled, then shuts the server down gracefully.
        """
        try:
            await asyncio.Event().wait()
        finally:
            # In-flight requests get the runner's shutdown timeout to complete
            await asyncio.shield(runner.cleanup())
            await asyncio.shield(client.aclose())
            self._logger.info("Server for %s stopped", self.name)

    async def start(self):
        if self.state is not EndpointState.CREATED:
            raise EndpointError(f"endpoint {self.name} cannot be started from {self.state.name}")
        self.state = EndpointState.STARTING
        self._logger.info("Starting endpoint %s", self.name)
        listener = None
        client = None
        runner = None
        try:
            self._node = await self.provider.join(
                self.name,
                self.config.auth_key,
                os.path.join(self.config.state_dir, self.name)
            )
            identity_lookup = await self._node.identity_lookup()
            listener = await self._node.listen_secure(self.server_config.port)
            # aiohttp servers have no per-request read or write timeout, so those timeouts
            # bound the upstream exchange instead and idle_timeout is the keep-alive timeout
            client = httpx.AsyncClient(
                timeout=httpx.Timeout(
                    self.server_config.read_timeout,
                    read=self.server_config.read_timeout,
                    write=self.server_config.write_timeout,
                ),
                follow_redirects=False,
            )
            self._proxy = Proxy(self._target, identity_lookup, client)
            runner = web.AppRunner(
                self._proxy.application(),
                handle_signals=False,
                keepalive_timeout=self.server_config.idle_timeout,
                shutdown_timeout=self.server_config.shutdown_grace_period,
                access_log=None,
            )
            await runner.setup()
            site = web.SockSite(runner, listener.sock, ssl_context=listener.ssl_context)
            await site.start()
        except BaseException as exc:
            # Release anything that was acquired before the failure
            if runner is not None:
                await runner.cleanup()
            if client is not None:
                await client.aclose()
            if listener is not None:
                listener.close()
            await self._release()
            self._proxy = None
            self.state = EndpointState.STOPPED
            if isinstance(exc, (mesh.MeshError, OSError)):
                raise EndpointStartError(f"failed to start endpoint {self.name}: {exc}") from exc
            raise
        self._serve_task = asyncio.create_task(self._serve(runner, client))
        self.state = EndpointState.RUNNING
        self._logger.info("Endpoint %s started [target: %s]", self.name, self._target.url)

    async def stop(self):
        if self.state in {EndpointState.STOPPING, EndpointState.STOPPED}:
            return
        self.state = EndpointState.STOPPING
        try:
            if self._serve_task is not None:
                self._serve_task.cancel()
                if not await util.wait_for_task(self._serve_task, self.server_config.stop_timeout):
                    self._logger.warning(
                        "Timed out waiting for server for %s to stop",
                        self.name
                    )
            node, self._node = self._node, None
            if node is not None:
                try:
                    await node.close()
                except mesh.MeshError as exc:
                    raise EndpointError(f"failed to close mesh node for {self.name}: {exc}") from exc
        finally:
            self.state = EndpointState.STOPPED
        self._logger.info("Endpoint %s stopped", self.name)

    def update_target(self, address: str, port: int):
        try:
            target = model.Target.from_address(address, port)
        except ValueError as exc:
            raise EndpointError(f"invalid target for {self.name}: {exc}") from exc
        self._target = target
        if self._proxy is not None:
            self._proxy.update_target(target)
        self._logger.info("Target for %s updated to %s", self.name, target.url)

    @classmethod
    def factory(
        cls,
        provider: mesh.Provider,
        server_config: config.ServerConfig
    ) -> EndpointFactory:
        """
        Returns an endpoint factory that makes endpoints using the given provider.
        """
        def make_endpoint(config_obj: EndpointConfig) -> Endpoint:
            return cls(config_obj, provider, server_config)
        return make_endpoint
