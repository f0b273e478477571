import asyncio
import contextlib
import ipaddress
import logging
import os
import pathlib
import signal
import socket
import ssl
import typing
import zlib

import httpx

from .. import config, util  # noqa: TID252
from . import base


#: The host that the LocalAPI expects requests to be addressed to
LOCALAPI_HOST = "local-tailscaled.sock"

#: The interval at which to poll for tailscaled to become ready
POLL_INTERVAL = 0.5


logger = logging.getLogger(__name__)


def tun_name(name: str) -> str:
    """
    Returns the name of the TUN interface to use for the named node.

    Interface names are limited to 15 characters, so a checksum of the name is used.
    """
    return f"ts{zlib.crc32(name.encode()):08x}"


def parse_whois(data: typing.Mapping[str, typing.Any]) -> base.Identity:
    """
    Parses the response from the LocalAPI whois endpoint into an identity.
    """
    user = None
    profile = data.get("UserProfile")
    if profile:
        user = base.UserProfile(
            login_name=profile.get("LoginName", ""),
            display_name=profile.get("DisplayName", ""),
        )
    node = None
    node_data = data.get("Node")
    if node_data:
        # Host info is only valid when the node actually reported it
        hostinfo = node_data.get("Hostinfo")
        node = base.NodeInfo(
            computed_name=node_data.get("ComputedName", ""),
            hostname=hostinfo.get("Hostname", "") if hostinfo is not None else None,
        )
    return base.Identity(user=user, node=node)


class LocalClient(base.IdentityLookup):
    """
    Client for the LocalAPI of a single tailscaled instance.
    """
    def __init__(self, client: httpx.AsyncClient):
        self._client = client

    @classmethod
    def for_socket(cls, socket_path: pathlib.Path, timeout: float) -> "LocalClient":
        return cls(
            httpx.AsyncClient(
                transport=httpx.AsyncHTTPTransport(uds=str(socket_path)),
                base_url=f"http://{LOCALAPI_HOST}",
                headers={"Sec-Tailscale": "localapi"},
                timeout=timeout,
            )
        )

    async def _get(self, path: str, **kwargs) -> httpx.Response:
        try:
            response = await self._client.get(path, **kwargs)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            raise base.MeshError(f"LocalAPI request to {path} failed: {exc}") from exc
        return response

    async def status(self) -> typing.Dict[str, typing.Any]:
        """
        Returns the status of the tailscaled instance.
        """
        response = await self._get("/localapi/v0/status")
        return response.json()

    async def cert_pair(self, domain: str) -> bytes:
        """
        Returns the PEM-encoded private key and certificate for the given domain.
        """
        response = await self._get(f"/localapi/v0/cert/{domain}", params={"type": "pair"})
        return response.content

    async def whois(self, remote_addr: str) -> typing.Optional[base.Identity]:
        try:
            response = await self._get("/localapi/v0/whois", params={"addr": remote_addr})
            return parse_whois(response.json())
        except (base.MeshError, ValueError) as exc:
            logger.debug("Failed to get whois info for %s - %s", remote_addr, exc)
            return None

    async def aclose(self):
        await self._client.aclose()


def write_auth_key(state_dir: pathlib.Path, auth_key: str) -> pathlib.Path:
    """
    Writes the auth key to a file in the state directory that only we can read.
    """
    path = state_dir / "authkey"
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "w") as fh:
        fh.write(auth_key)
    return path


async def relay_output(name: str, stream: asyncio.StreamReader):
    """
    Relays the output of a tailscaled process to the logger.
    """
    async for line in stream:
        logger.debug("[%s] %s", name, line.decode(errors="replace").rstrip())


class Node(base.Node):
    """
    A node backed by a dedicated tailscaled process.
    """
    def __init__(
        self,
        name: str,
        state_dir: pathlib.Path,
        process: asyncio.subprocess.Process,
        local_client: LocalClient,
        config_obj: config.TailscaleConfig,
    ):
        self.name = name
        self.state_dir = state_dir
        self.process = process
        self.local_client = local_client
        self.config = config_obj
        #: The MagicDNS name of the node, populated once it has joined
        self.dns_name: typing.Optional[str] = None
        #: The tailnet addresses of the node, populated once it has joined
        self.addresses: typing.List[str] = []
        self._relay_task = asyncio.create_task(relay_output(name, process.stdout))
        self._cert_task: typing.Optional[asyncio.Task] = None

    async def identity_lookup(self) -> base.IdentityLookup:
        return self.local_client

    def _bind_address(self) -> str:
        # Prefer IPv4, as that is what most clients will use
        for address in self.addresses:
            if ipaddress.ip_address(address).version == 4:
                return address
        return self.addresses[0]

    def _write_cert_pair(self, pair: bytes) -> pathlib.Path:
        path = self.state_dir / "tls.pem"
        fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "wb") as fh:
            fh.write(pair)
        return path

    async def load_certificate(self, ssl_context: ssl.SSLContext):
        """
        Fetches the current certificate for the node and loads it into the given context.

        Only new handshakes use the new chain, established connections are unaffected.
        """
        # The pair is a private key followed by the certificate chain
        pair = await self.local_client.cert_pair(self.dns_name)
        try:
            cert_path = self._write_cert_pair(pair)
            ssl_context.load_cert_chain(cert_path)
        except (OSError, ssl.SSLError) as exc:
            raise base.MeshError(f"failed to load certificate for {self.dns_name} - {exc}") from exc

    async def _refresh_certificate(self, ssl_context: ssl.SSLContext):
        while True:
            await asyncio.sleep(self.config.cert_refresh_interval)
            try:
                await self.load_certificate(ssl_context)
            except base.MeshError as exc:
                logger.warning("Failed to refresh certificate for %s - %s", self.name, exc)
            else:
                logger.debug("Refreshed certificate for %s", self.name)

    def watch_certificate(self, ssl_context: ssl.SSLContext):
        """
        Reloads the certificate into the context at the configured interval until closed.
        """
        if self._cert_task is None:
            self._cert_task = asyncio.create_task(self._refresh_certificate(ssl_context))

    async def listen_secure(self, port: int) -> base.Listener:
        if not self.dns_name or not self.addresses:
            raise base.MeshError(f"node {self.name} has not joined the tailnet")
        ssl_context = ssl.create_default_context(ssl.Purpose.CLIENT_AUTH)
        await self.load_certificate(ssl_context)
        try:
            sock = socket.create_server((self._bind_address(), port))
        except OSError as exc:
            raise base.MeshError(f"failed to listen on {self.dns_name}:{port} - {exc}") from exc
        self.watch_certificate(ssl_context)
        logger.info("Listening on %s:%d (%s)", self.dns_name, port, self._bind_address())
        return base.Listener(sock=sock, ssl_context=ssl_context)

    async def close(self):
        if self._cert_task is not None:
            await util.task_cancel_and_wait(self._cert_task)
        await self.local_client.aclose()
        if self.process.returncode is None:
            with contextlib.suppress(ProcessLookupError):
                self.process.terminate()
            if not await util.wait_for_task(
                asyncio.ensure_future(self.process.wait()),
                self.config.close_timeout
            ):
                logger.warning("tailscaled for %s did not exit - killing it", self.name)
                with contextlib.suppress(ProcessLookupError):
                    self.process.kill()
                await self.process.wait()
        await util.task_cancel_and_wait(self._relay_task)
        if self.process.returncode not in (0, -signal.SIGTERM):
            raise base.MeshError(
                f"tailscaled for {self.name} exited with code {self.process.returncode}"
            )


class Provider(base.Provider):
    """
    Mesh provider that runs a tailscaled instance per node.
    """
    def __init__(self, config_obj: config.TailscaleConfig):
        self.config = config_obj

    async def _wait_for_daemon(self, node: Node):
        while True:
            if node.process.returncode is not None:
                raise base.MeshError(
                    f"tailscaled for {node.name} exited with code {node.process.returncode}"
                )
            try:
                return await node.local_client.status()
            except base.MeshError:
                await asyncio.sleep(POLL_INTERVAL)

    async def _up(self, node: Node, auth_key: str):
        await self._wait_for_daemon(node)
        logger.info("Bringing up tailnet node %s", node.name)
        # The key is passed by file so that it does not appear in the process list
        # If the state directory already holds an identity, the key is not used
        key_path = write_auth_key(node.state_dir, auth_key)
        try:
            proc = await asyncio.create_subprocess_exec(
                self.config.tailscale_executable,
                f"--socket={node.state_dir / 'tailscaled.sock'}",
                "up",
                f"--auth-key=file:{key_path}",
                f"--hostname={node.name}",
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
            )
            output, _ = await proc.communicate()
        finally:
            key_path.unlink(missing_ok=True)
        if proc.returncode != 0:
            raise base.MeshError(
                f"tailscale up failed for {node.name}: {output.decode(errors='replace').strip()}"
            )
        status = await node.local_client.status()
        node_status = status.get("Self") or {}
        node.dns_name = (node_status.get("DNSName") or "").rstrip(".")
        node.addresses = list(node_status.get("TailscaleIPs") or [])
        if not node.addresses:
            raise base.MeshError(f"node {node.name} has no tailnet addresses")

    async def join(self, name: str, auth_key: str, state_dir: str) -> Node:
        state_path = pathlib.Path(state_dir)
        state_path.mkdir(mode=0o700, parents=True, exist_ok=True)
        socket_path = state_path / "tailscaled.sock"
        try:
            process = await asyncio.create_subprocess_exec(
                self.config.tailscaled_executable,
                f"--statedir={state_path}",
                f"--socket={socket_path}",
                f"--tun={tun_name(name)}",
                "--port=0",
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
            )
        except OSError as exc:
            raise base.MeshError(f"failed to launch tailscaled for {name}: {exc}") from exc
        node = Node(
            name,
            state_path,
            process,
            LocalClient.for_socket(socket_path, self.config.startup_timeout),
            self.config,
        )
        try:
            await asyncio.wait_for(self._up(node, auth_key), self.config.startup_timeout)
        except BaseException as exc:
            with contextlib.suppress(base.MeshError):
                await node.close()
            if isinstance(exc, asyncio.TimeoutError):
                raise base.MeshError(f"timed out joining tailnet as {name}") from exc
            raise
        logger.info("Joined tailnet as %s (%s)", node.dns_name or name, ", ".join(node.addresses))
        return node

    @classmethod
    def from_config(cls, config_obj: config.DovetailConfig) -> "Provider":
        return cls(config_obj.tailscale)
