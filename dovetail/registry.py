import asyncio
import logging
import typing

from . import config, model
from .endpoint import Endpoint, EndpointConfig, EndpointFactory


class Registry:
    """
    Maintains the endpoints for the workloads that are currently exposed.

    The maps are only mutated while holding the lock, but endpoints are started and stopped
    outside of it so that a slow endpoint does not hold up events for other workloads.
    While an endpoint is starting its name is held as a reservation, so that only one
    workload can ever claim a name.
    """
    def __init__(self, auth_key: str, state_dir: str, factory: EndpointFactory):
        self.auth_key = auth_key
        self.state_dir = state_dir
        self.factory = factory
        # Workload ID -> running endpoint
        self._endpoints: typing.Dict[str, Endpoint] = {}
        # Endpoint name -> workload ID, for running endpoints only
        self._names: typing.Dict[str, str] = {}
        # Endpoint name -> workload ID, for endpoints that are still starting
        self._reservations: typing.Dict[str, str] = {}
        self._lock = asyncio.Lock()
        self._logger = logging.getLogger(__name__)

    def __len__(self):
        return len(self._endpoints)

    def owner(self, name: str) -> typing.Optional[str]:
        """
        Returns the ID of the workload that owns the given name, if any.
        """
        return self._names.get(name, self._reservations.get(name))

    def endpoint(self, workload_id: str) -> typing.Optional[Endpoint]:
        """
        Returns the endpoint for the specified workload, if any.
        """
        return self._endpoints.get(workload_id)

    async def handle_event(self, event: model.WorkloadEvent):
        """
        Handles a single workload event.
        """
        if event.kind == model.EventKind.APPEARED:
            await self._handle_appeared(event)
        elif event.kind == model.EventKind.DISAPPEARED:
            await self._handle_disappeared(event)

    async def _handle_appeared(self, event: model.WorkloadEvent):
        spec = event.spec
        if spec is None:
            return

        async with self._lock:
            owner = self.owner(spec.name)
            if owner is not None and owner != event.workload_id:
                self._logger.error(
                    "Duplicate endpoint name %s [existing: %s, new: %s]",
                    spec.name,
                    model.short_id(owner),
                    event.short_id
                )
                return
            existing = self._endpoints.get(event.workload_id)
            if existing is None:
                if event.workload_id in self._reservations.values():
                    self._logger.info(
                        "Endpoint for workload %s is already starting",
                        event.short_id
                    )
                    return
                # Reserve the name before releasing the lock to start the endpoint
                self._reservations[spec.name] = event.workload_id

        if existing is not None:
            self._retarget(existing, event)
        else:
            await self._create(event)

    def _retarget(self, endpoint: Endpoint, event: model.WorkloadEvent):
        spec = event.spec
        if endpoint.name != spec.name:
            self._logger.warning(
                "Workload %s is now named %s but endpoints cannot be renamed - keeping %s",
                event.short_id,
                spec.name,
                endpoint.name
            )
        try:
            endpoint.update_target(spec.address, spec.port)
        except Exception:
            self._logger.exception("Failed to update target for %s", endpoint.name)

    async def _release_reservation(self, name: str, workload_id: str) -> bool:
        """
        Releases the reservation for the name, returning False if it was already gone.
        """
        async with self._lock:
            if self._reservations.get(name) != workload_id:
                return False
            del self._reservations[name]
            return True

    async def _abandon(self, endpoint: Endpoint, name: str, workload_id: str):
        await self._release_reservation(name, workload_id)
        await self._stop(endpoint, workload_id)

    async def _create(self, event: model.WorkloadEvent):
        spec = event.spec
        try:
            endpoint = self.factory(
                EndpointConfig(
                    name=spec.name,
                    address=spec.address,
                    port=spec.port,
                    state_dir=self.state_dir,
                    auth_key=self.auth_key,
                )
            )
            await endpoint.start()
        except asyncio.CancelledError:
            await asyncio.shield(self._release_reservation(spec.name, event.workload_id))
            raise
        except Exception:
            self._logger.exception(
                "Failed to start endpoint %s for workload %s",
                spec.name,
                event.short_id
            )
            await self._release_reservation(spec.name, event.workload_id)
            return

        try:
            async with self._lock:
                # The reservation is gone if the workload disappeared or the registry was
                # shut down while the endpoint was starting
                promoted = self._reservations.get(spec.name) == event.workload_id
                if promoted:
                    del self._reservations[spec.name]
                    self._endpoints[event.workload_id] = endpoint
                    self._names[spec.name] = event.workload_id
        except asyncio.CancelledError:
            # The endpoint is running but was never registered, so nobody else will stop it
            await asyncio.shield(self._abandon(endpoint, spec.name, event.workload_id))
            raise

        if promoted:
            self._logger.info(
                "Created endpoint %s for workload %s [target: %s]",
                spec.name,
                event.short_id,
                spec.target
            )
        else:
            self._logger.info(
                "Workload %s went away while endpoint %s was starting",
                event.short_id,
                spec.name
            )
            await self._stop(endpoint, event.workload_id)

    async def _handle_disappeared(self, event: model.WorkloadEvent):
        async with self._lock:
            endpoint = self._endpoints.pop(event.workload_id, None)
            if endpoint is None:
                # Cancel any reservation so the endpoint is stopped once it has started
                for name, workload_id in list(self._reservations.items()):
                    if workload_id == event.workload_id:
                        del self._reservations[name]
                return
            if self._names.get(endpoint.name) == event.workload_id:
                del self._names[endpoint.name]
        await self._stop(endpoint, event.workload_id)
        self._logger.info("Removed endpoint %s for workload %s", endpoint.name, event.short_id)

    async def _stop(self, endpoint: Endpoint, workload_id: typing.Optional[str] = None):
        # The slot is already vacated, so errors are only reported
        try:
            await endpoint.stop()
        except Exception:
            self._logger.exception(
                "Failed to stop endpoint %s for workload %s",
                endpoint.name,
                model.short_id(workload_id or "")
            )

    async def shutdown(self):
        """
        Stops all the endpoints concurrently and empties the registry.
        """
        async with self._lock:
            endpoints = list(self._endpoints.items())
            self._endpoints.clear()
            self._names.clear()
            self._reservations.clear()
        self._logger.info("Stopping %d endpoints", len(endpoints))
        await asyncio.gather(*[self._stop(endpoint, wid) for wid, endpoint in endpoints])
        self._logger.info("All endpoints stopped")

    @classmethod
    def from_config(cls, config_obj: config.DovetailConfig, factory: EndpointFactory) -> "Registry":
        """
        Initialises a registry from a config object.
        """
        return cls(config_obj.auth_key, config_obj.state_dir, factory)
