import dataclasses
import socket
import ssl
import typing

from .. import config


class MeshError(Exception):
    """
    Raised when there is a problem with the mesh network.
    """


@dataclasses.dataclass(frozen=True)
class UserProfile:
    """
    The user that owns the node a connection came from.
    """
    login_name: str
    display_name: str


@dataclasses.dataclass(frozen=True)
class NodeInfo:
    """
    The node that a connection came from.
    """
    #: The name of the node as computed by the mesh network
    computed_name: str
    #: The hostname reported by the node, None if it did not report valid host info
    hostname: typing.Optional[str] = None


@dataclasses.dataclass(frozen=True)
class Identity:
    """
    The identity of the caller for a connection.
    """
    user: typing.Optional[UserProfile] = None
    node: typing.Optional[NodeInfo] = None


@dataclasses.dataclass
class Listener:
    """
    A bound listening socket on the mesh network, plus the TLS context to serve it with.
    """
    sock: socket.socket
    ssl_context: typing.Optional[ssl.SSLContext] = None

    def close(self):
        self.sock.close()


class IdentityLookup:
    """
    Maps the remote address of a connection to the identity of the caller.
    """
    async def whois(self, remote_addr: str) -> typing.Optional[Identity]:
        """
        Returns the identity for the given "host:port" address.

        Returns None if the lookup fails or there is no match, rather than raising.
        """
        raise NotImplementedError


class Node:
    """
    A single identity that has joined the mesh network.
    """
    #: The name of the node on the mesh network
    name: str

    async def identity_lookup(self) -> IdentityLookup:
        """
        Returns an identity lookup scoped to this node.
        """
        raise NotImplementedError

    async def listen_secure(self, port: int) -> Listener:
        """
        Opens a TLS listener for this node on the given port.
        """
        raise NotImplementedError

    async def close(self):
        """
        Leaves the mesh network and releases any resources held by the node.
        """
        raise NotImplementedError


class Provider:
    """
    Base class for a mesh network provider.
    """
    async def join(self, name: str, auth_key: str, state_dir: str) -> Node:
        """
        Joins the mesh network as the given name and returns the node.

        The identity is persisted in the given state directory and reused if it exists.
        """
        raise NotImplementedError

    async def startup(self):
        """
        Perform any startup tasks that are required.
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
    def from_config(cls, config_obj: config.DovetailConfig) -> "Provider":
        """
        Initialises an instance of the provider from a config object.
        """
        raise NotImplementedError
