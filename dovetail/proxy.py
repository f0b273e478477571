"""
Reverse proxy that forwards requests for an endpoint to its workload.

Each request is annotated with the identity of the caller, as reported by the mesh network.
"""

import logging
import typing

import httpx
from aiohttp import web

from . import mesh, model


#: Header containing the login name of the calling user
HEADER_USER = "X-Tailscale-User"
#: Header containing the display name of the calling user
HEADER_NAME = "X-Tailscale-Name"
#: Header containing the computed name of the calling node
HEADER_LOGIN = "X-Tailscale-Login"
#: Header containing the hostname of the calling node
HEADER_TAILNET = "X-Tailscale-Tailnet"

IDENTITY_HEADERS = {HEADER_USER, HEADER_NAME, HEADER_LOGIN, HEADER_TAILNET}

# RFC 7230: hop-by-hop headers that must not be forwarded
HOP_BY_HOP_HEADERS = {
    "connection",
    "keep-alive",
    "proxy-authenticate",
    "proxy-authorization",
    "te",
    "trailer",
    "trailers",
    "transfer-encoding",
    "upgrade",
}

# The host is always set from the target, and the length is recomputed for each hop
EXCLUDED_REQUEST_HEADERS = HOP_BY_HOP_HEADERS | {"host", "content-length"} | {
    header.lower() for header in IDENTITY_HEADERS
}
EXCLUDED_RESPONSE_HEADERS = HOP_BY_HOP_HEADERS | {"content-length"}


Headers = typing.List[typing.Tuple[str, str]]


def filter_headers(headers: typing.Iterable[typing.Tuple[str, str]], exclude: typing.Set[str]) -> Headers:
    """
    Returns the given header pairs without any that are excluded.

    Headers named in the Connection header are also removed.
    """
    headers = list(headers)
    connection_tokens = {
        token.strip().lower()
        for name, value in headers
        if name.lower() == "connection"
        for token in value.split(",")
    }
    return [
        (name, value)
        for name, value in headers
        if name.lower() not in exclude and name.lower() not in connection_tokens
    ]


def remote_addr(request: web.BaseRequest) -> typing.Optional[str]:
    """
    Returns the "host:port" address of the connection the request arrived on.
    """
    peername = request.transport.get_extra_info("peername") if request.transport else None
    if not peername:
        return None
    host, port = peername[0], peername[1]
    if ":" in host:
        return f"[{host}]:{port}"
    return f"{host}:{port}"


def identity_headers(identity: mesh.Identity) -> Headers:
    """
    Returns the headers to inject for the given identity.

    Each header is derived independently, so a missing user does not prevent the
    node headers being set and vice versa.
    """
    headers = []
    if identity.user is not None:
        headers.append((HEADER_USER, identity.user.login_name))
        headers.append((HEADER_NAME, identity.user.display_name))
    if identity.node is not None:
        headers.append((HEADER_LOGIN, identity.node.computed_name))
        if identity.node.hostname is not None:
            headers.append((HEADER_TAILNET, identity.node.hostname))
    return headers


class Proxy:
    """
    Forwards requests to a target that can be swapped while requests are in flight.
    """
    def __init__(
        self,
        target: model.Target,
        identity_lookup: typing.Optional[mesh.IdentityLookup],
        client: httpx.AsyncClient,
    ):
        self._target = target
        self._identity_lookup = identity_lookup
        self._client = client
        self._logger = logging.getLogger(__name__)

    @property
    def target(self) -> model.Target:
        return self._target

    def update_target(self, target: model.Target):
        # Targets are immutable, so a single assignment is the whole update
        self._target = target

    async def _lookup(self, request: web.BaseRequest) -> typing.Optional[mesh.Identity]:
        addr = remote_addr(request)
        if self._identity_lookup is None or addr is None:
            return None
        try:
            return await self._identity_lookup.whois(addr)
        except Exception:
            self._logger.debug("Identity lookup failed for %s", addr, exc_info=True)
            return None

    async def director(self, request: web.BaseRequest) -> httpx.Request:
        """
        Builds the upstream request for the given incoming request.

        The scheme and host come from the current target, the path and query are untouched.
        """
        target = self._target
        headers = filter_headers(
            request.headers.items(),
            EXCLUDED_REQUEST_HEADERS | {"x-forwarded-for"}
        )
        # The client address is appended to any existing forwarding chain
        forwarded_for = request.headers.getall("X-Forwarded-For", [])
        if request.remote:
            forwarded_for = [*forwarded_for, request.remote]
        if forwarded_for:
            headers.append(("X-Forwarded-For", ", ".join(forwarded_for)))
        # Identity injection is best effort - a failed lookup still forwards the request
        identity = await self._lookup(request)
        if identity is not None:
            headers.extend(identity_headers(identity))
        # A declared length is kept so the body is only chunked when the client chunked it
        if request.content_length is not None:
            headers.append(("Content-Length", str(request.content_length)))
        return self._client.build_request(
            request.method,
            # raw_path includes the query string exactly as it was received
            f"{target.scheme}://{target.host}{request.raw_path}",
            headers=headers,
            content=request.content.iter_any() if request.can_read_body else None,
        )

    async def handle(self, request: web.Request) -> web.StreamResponse:
        upstream_request = await self.director(request)
        try:
            upstream = await self._client.send(upstream_request, stream=True)
        except httpx.RequestError as exc:
            self._logger.error(
                "Upstream error for %s %s - %s",
                request.method,
                upstream_request.url,
                exc
            )
            return web.Response(status=502, text="Bad Gateway")
        try:
            response = web.StreamResponse(
                status=upstream.status_code,
                reason=upstream.reason_phrase or None,
                headers=filter_headers(
                    upstream.headers.multi_items(),
                    EXCLUDED_RESPONSE_HEADERS
                ),
            )
            # HEAD responses keep the length of the body they would have had
            if "content-length" in upstream.headers:
                response.content_length = int(upstream.headers["content-length"])
            await response.prepare(request)
            # Forward the body as-is, without decoding any content encoding
            async for chunk in upstream.aiter_raw():
                await response.write(chunk)
            await response.write_eof()
            return response
        finally:
            await upstream.aclose()

    def application(self) -> web.Application:
        """
        Returns an application that forwards all paths and methods.
        """
        app = web.Application()
        app.router.add_route("*", "/{tail:.*}", self.handle)
        return app
