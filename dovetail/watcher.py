import logging
import re
import time
import typing

from . import config, directory, model


#: The notification actions that the watcher subscribes to
START_ACTIONS = {"start"}
STOP_ACTIONS = {"stop", "die"}

#: The name of the network that is preferred when the workload does not specify one
DEFAULT_NETWORK = "bridge"

#: Endpoint names must be usable as a hostname
NAME_REGEX = re.compile(r"^[a-zA-Z0-9]([a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


logger = logging.getLogger(__name__)


class ResolutionError(Exception):
    """
    Raised when a workload cannot be resolved into an endpoint spec.
    """


class LabelError(ResolutionError):
    """
    Raised when a required label is missing or invalid.
    """


class NetworkSelectionError(ResolutionError):
    """
    Raised when there is no network with a usable address for a workload.
    """


def select_network(
    networks: typing.Mapping[str, str],
    preferred: typing.Optional[str] = None
) -> typing.Tuple[str, str]:
    """
    Selects the address to use for a workload and returns an (address, network) tuple.

    The preferred network is used if it has an address, then the bridge network, then
    the first network with an address in name order.
    """
    if not networks:
        raise NetworkSelectionError("workload has no networks")
    if preferred:
        if networks.get(preferred):
            return networks[preferred], preferred
        logger.warning("Preferred network %s not found or has no address", preferred)
    if networks.get(DEFAULT_NETWORK):
        return networks[DEFAULT_NETWORK], DEFAULT_NETWORK
    # Sort the names so that the choice is stable
    for name in sorted(networks):
        if networks[name]:
            return networks[name], name
    raise NetworkSelectionError("no network with an address found")


class Watcher:
    """
    Produces a stream of events for the workloads that should be exposed.

    The stream starts with an event for each workload that is already running, followed
    by events for workloads that start and stop.
    """
    def __init__(self, directory_obj: directory.WorkloadDirectory, labels: config.LabelConfig):
        self.directory = directory_obj
        self.labels = labels

    def resolve(self, workload: directory.Workload) -> model.EndpointSpec:
        """
        Resolves the endpoint spec for an inspected workload.
        """
        name = workload.labels.get(self.labels.name)
        if not name:
            raise LabelError(f"workload is missing {self.labels.name} label")
        if not NAME_REGEX.match(name):
            raise LabelError(f"invalid endpoint name {name!r}")
        port_str = workload.labels.get(self.labels.port)
        if not port_str:
            raise LabelError(f"workload is missing {self.labels.port} label")
        try:
            port = int(port_str)
        except ValueError:
            raise LabelError(f"invalid port value {port_str!r}")
        if not 0 < port < 65536:
            raise LabelError(f"port {port} is out of range")
        address, network = select_network(
            workload.networks,
            workload.labels.get(self.labels.network)
        )
        return model.EndpointSpec(name=name, port=port, address=address, network=network)

    async def inspect(self, workload_id: str) -> model.EndpointSpec:
        """
        Inspects the specified workload and resolves its endpoint spec.
        """
        workload = await self.directory.inspect(workload_id)
        spec = self.resolve(workload)
        logger.info(
            "Discovered workload %s [name: %s, port: %d, address: %s, network: %s]",
            model.short_id(workload_id),
            spec.name,
            spec.port,
            spec.address,
            spec.network
        )
        return spec

    async def _reconcile(self) -> typing.AsyncIterator[model.WorkloadEvent]:
        """
        Yields an appeared event for each eligible workload that is already running.
        """
        try:
            workload_ids = await self.directory.list(self.labels.name)
        except directory.DirectoryError as exc:
            logger.error("Failed to list workloads - %s", exc)
            return
        logger.info("Found %d running workloads with %s label", len(workload_ids), self.labels.name)
        for workload_id in workload_ids:
            try:
                spec = await self.inspect(workload_id)
            except (directory.DirectoryError, ResolutionError) as exc:
                logger.warning("Skipping workload %s - %s", model.short_id(workload_id), exc)
                continue
            yield model.WorkloadEvent(model.EventKind.APPEARED, workload_id, spec)

    async def _event_for(
        self,
        notification: directory.Notification
    ) -> typing.Optional[model.WorkloadEvent]:
        if notification.action in START_ACTIONS:
            try:
                spec = await self.inspect(notification.actor_id)
            except (directory.DirectoryError, ResolutionError) as exc:
                # Most workloads are not meant to be exposed, so this is not a problem
                logger.debug(
                    "Ignoring start of workload %s - %s",
                    model.short_id(notification.actor_id),
                    exc
                )
                return None
            return model.WorkloadEvent(model.EventKind.APPEARED, notification.actor_id, spec)
        elif notification.action in STOP_ACTIONS:
            # The workload can no longer be inspected, but the notification carries its labels
            if self.labels.name in notification.attributes:
                return model.WorkloadEvent(model.EventKind.DISAPPEARED, notification.actor_id)
        return None

    async def watch(self) -> typing.AsyncIterator[model.WorkloadEvent]:
        """
        Yields workload events until cancelled or the subscription fails.
        """
        # Notifications are replayed from the start of the reconciliation, so that
        # workloads that change state while it is in progress are not missed
        since = int(time.time())
        async for event in self._reconcile():
            yield event
        logger.info("Watching for workload events")
        try:
            async for notification in self.directory.subscribe(
                START_ACTIONS | STOP_ACTIONS,
                since=since
            ):
                event = await self._event_for(notification)
                if event is not None:
                    yield event
        except directory.DirectoryError as exc:
            logger.error("Workload event stream failed - %s", exc)
