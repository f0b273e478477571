import dataclasses
import enum
import typing


@enum.unique
class EventKind(enum.Enum):
    """
    Represents the possible event types for workloads.
    """
    #: Represents a workload that has started, or was running at startup
    APPEARED = "APPEARED"
    #: Represents a workload that has stopped
    DISAPPEARED = "DISAPPEARED"


@dataclasses.dataclass(frozen=True)
class EndpointSpec:
    """
    Represents the resolved exposure configuration for a workload.
    """
    #: The name of the endpoint on the mesh network
    name: str
    #: The port that the workload listens on
    port: int
    #: The address at which the workload can be reached
    address: str
    #: The network that the address was selected from
    network: typing.Optional[str] = None

    @property
    def target(self) -> str:
        return f"{self.address}:{self.port}"


@dataclasses.dataclass(frozen=True)
class WorkloadEvent:
    """
    Class representing an event for a workload.
    """
    #: The kind of the event
    kind: EventKind
    #: The ID of the workload that the event affects
    workload_id: str
    #: The resolved spec, only present for appeared events
    spec: typing.Optional[EndpointSpec] = None

    @property
    def short_id(self) -> str:
        return short_id(self.workload_id)


@dataclasses.dataclass(frozen=True)
class Target:
    """
    The scheme and host that requests are forwarded to.

    Instances are immutable so that a target can only ever be replaced wholesale.
    """
    scheme: str
    host: str

    @classmethod
    def from_address(cls, address: str, port: int, scheme: str = "http") -> "Target":
        """
        Builds a target from an address and port, raising ValueError if they are invalid.
        """
        if not address:
            raise ValueError("target address must not be empty")
        if not 0 < port < 65536:
            raise ValueError(f"invalid target port {port}")
        # IPv6 literals must be bracketed in the host
        if ":" in address and not address.startswith("["):
            address = f"[{address}]"
        return cls(scheme=scheme, host=f"{address}:{port}")

    @property
    def url(self) -> str:
        return f"{self.scheme}://{self.host}"


def short_id(workload_id: str) -> str:
    """
    Returns the abbreviated form of a workload ID used in log messages.
    """
    return workload_id[:12]
