import dataclasses
import typing

from .. import config


class DirectoryError(Exception):
    """
    Raised when there is a problem communicating with the workload directory.
    """


class DirectoryConnectError(DirectoryError):
    """
    Raised when the workload directory cannot be reached at startup.
    """


class InspectError(DirectoryError):
    """
    Raised when a single workload cannot be inspected.
    """


@dataclasses.dataclass(frozen=True)
class Workload:
    """
    Represents the inspected state of a workload.
    """
    #: The ID of the workload
    id: str
    #: The metadata labels attached to the workload
    labels: typing.Mapping[str, str] = dataclasses.field(default_factory=dict)
    #: The address of the workload on each network it is attached to
    #: An address may be empty, e.g. while the workload is still being attached
    networks: typing.Mapping[str, str] = dataclasses.field(default_factory=dict)


@dataclasses.dataclass(frozen=True)
class Notification:
    """
    Represents a lifecycle notification from the workload directory.
    """
    #: The action, e.g. start, stop or die
    action: str
    #: The ID of the workload that the notification is for
    actor_id: str
    #: Attributes of the workload at the time of the notification, including its labels
    attributes: typing.Mapping[str, str] = dataclasses.field(default_factory=dict)


class WorkloadDirectory:
    """
    Provides access to the running workloads and their lifecycle notifications.
    """
    async def list(self, label: str) -> typing.List[str]:
        """
        Returns the IDs of the running workloads that carry the given label.
        """
        raise NotImplementedError

    async def inspect(self, workload_id: str) -> Workload:
        """
        Returns the current state of the specified workload.

        Raises InspectError if the workload cannot be inspected.
        """
        raise NotImplementedError

    def subscribe(
        self,
        actions: typing.Iterable[str],
        since: typing.Optional[int] = None
    ) -> typing.AsyncIterator[Notification]:
        """
        Yields notifications for the given actions until cancelled.

        If since is given, notifications from that UNIX timestamp onwards are replayed first.
        Raises DirectoryError if the subscription fails.
        """
        raise NotImplementedError

    async def startup(self):
        """
        Perform any startup tasks that are required.

        Raises DirectoryConnectError if the directory cannot be reached.
        """

    async def shutdown(self):
        """
        Perform any shutdown tasks that are required.
        """

    async def __aenter__(self):
        await self.startup()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.shutdown()

    @classmethod
    def from_config(cls, config_obj: config.DovetailConfig) -> "WorkloadDirectory":
        """
        Initialises an instance of the directory from a config object.
        """
        raise NotImplementedError
