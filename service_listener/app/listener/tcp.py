"""
Plain socket listener used underneath the throttle.

Binds a TCP or Unix stream socket and accepts connections on the running
event loop. Closing the listener wakes any pending accept with
``ListenerClosedError``.
"""

import asyncio
import errno
import os
import socket
from contextlib import suppress
from dataclasses import dataclass, field
from typing import Any, Optional, Set, Tuple

from shared.errors import ConfigurationError, ListenerClosedError
from shared.logging import get_logger

NETWORKS = ("tcp", "tcp4", "tcp6", "unix")


@dataclass(frozen=True)
class Address:
    """Network endpoint of a listener or connection."""
    network: str
    host: str
    port: Optional[int] = None

    def __str__(self) -> str:
        if self.port is None:
            return self.host
        if ":" in self.host:
            return f"[{self.host}]:{self.port}"
        return f"{self.host}:{self.port}"

    @classmethod
    def from_sockname(cls, network: str, sockname: Any) -> "Address":
        if isinstance(sockname, tuple):
            return cls(network=network, host=sockname[0], port=sockname[1])
        if isinstance(sockname, bytes):
            sockname = sockname.decode("utf-8", errors="replace")
        return cls(network=network, host=sockname or "")


@dataclass
class Connection:
    """Accepted stream connection. The holder is responsible for closing it."""
    sock: socket.socket
    remote_address: Address
    local_address: Address
    metadata: dict = field(default_factory=dict)

    @property
    def closed(self) -> bool:
        return self.sock.fileno() == -1

    def close(self) -> None:
        self.sock.close()

    async def open_streams(self, **kwargs) -> Tuple[asyncio.StreamReader, asyncio.StreamWriter]:
        """Wrap the socket in asyncio streams; the writer then owns the socket."""
        if self.sock.family == socket.AF_UNIX:
            return await asyncio.open_unix_connection(sock=self.sock, **kwargs)
        return await asyncio.open_connection(sock=self.sock, **kwargs)


def parse_address(network: str, address: str) -> Tuple[int, Any]:
    """Resolve ``network``/``address`` into a socket family and bind address.

    TCP addresses take the form ``host:port``; an empty host binds every
    interface and IPv6 hosts are written in brackets (``[::1]:8080``).
    """
    network = network.lower()
    if network not in NETWORKS:
        raise ConfigurationError(f"Unsupported network: {network}", {"network": network})

    if network == "unix":
        if not address:
            raise ConfigurationError("Unix socket path is empty", {"address": address})
        return socket.AF_UNIX, address

    host, sep, port_text = address.rpartition(":")
    if not sep:
        raise ConfigurationError("Missing port in address", {"address": address})
    if host.startswith("[") and host.endswith("]"):
        host = host[1:-1]
    try:
        port = int(port_text)
    except ValueError:
        raise ConfigurationError("Invalid port in address", {"address": address}) from None
    if not 0 <= port <= 65535:
        raise ConfigurationError("Port out of range", {"address": address})

    if not host and network == "tcp":
        # Dual-stack wildcard: "::" also accepts IPv4-mapped peers
        if socket.has_ipv6:
            return socket.AF_INET6, ("::", port, 0, 0)
        return socket.AF_INET, ("0.0.0.0", port)

    if network == "tcp4":
        family = socket.AF_INET
    elif network == "tcp6":
        family = socket.AF_INET6
    else:
        family = socket.AF_UNSPEC

    infos = socket.getaddrinfo(
        host or None, port, family, socket.SOCK_STREAM, 0, socket.AI_PASSIVE
    )
    family, _, _, _, sockaddr = infos[0]
    return family, sockaddr


_NO_IPV6_ERRNOS = (errno.EAFNOSUPPORT, errno.EADDRNOTAVAIL, errno.EPROTONOSUPPORT)


def _dual_stack_wildcard(network: str, family: int, sockaddr: Any) -> bool:
    return network == "tcp" and family == socket.AF_INET6 and sockaddr[0] == "::"


def _bind(family: int, sockaddr: Any, network: str, backlog: int) -> socket.socket:
    sock = socket.socket(family, socket.SOCK_STREAM)
    try:
        if family != socket.AF_UNIX:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        if family == socket.AF_INET6:
            sock.setsockopt(socket.IPPROTO_IPV6, socket.IPV6_V6ONLY, 1 if network == "tcp6" else 0)
        sock.bind(sockaddr)
        sock.listen(backlog)
    except OSError:
        sock.close()
        raise
    return sock


class TCPListener:
    """Stream socket listener with an awaitable accept."""

    def __init__(self, sock: socket.socket, network: str):
        sock.setblocking(False)
        self._sock = sock
        self._network = network
        self._closed = False
        self._pending: Set[asyncio.Future] = set()
        self._address = Address.from_sockname(network, sock.getsockname())
        self.logger = get_logger("listener.tcp")

    @classmethod
    def listen(cls, network: str, address: str, backlog: int = 128) -> "TCPListener":
        """Bind and listen. Bind failures propagate as ``OSError``."""
        network = network.lower()
        family, sockaddr = parse_address(network, address)
        try:
            sock = _bind(family, sockaddr, network, backlog)
        except OSError as e:
            if not _dual_stack_wildcard(network, family, sockaddr) or e.errno not in _NO_IPV6_ERRNOS:
                raise
            # Kernel built with IPv6 but it is disabled; serve IPv4 only
            sock = _bind(socket.AF_INET, ("0.0.0.0", sockaddr[1]), network, backlog)

        listener = cls(sock, network)
        listener.logger.info("Listener bound", network=listener._network, address=str(listener.address))
        return listener

    @property
    def address(self) -> Address:
        return self._address

    @property
    def closed(self) -> bool:
        return self._closed

    async def accept(self) -> Connection:
        """Wait for the next inbound connection."""
        if self._closed:
            raise ListenerClosedError(details={"address": str(self._address)})

        loop = asyncio.get_running_loop()
        future = asyncio.ensure_future(loop.sock_accept(self._sock))
        self._pending.add(future)
        try:
            conn_sock, remote = await future
        except asyncio.CancelledError:
            if self._closed:
                raise ListenerClosedError(details={"address": str(self._address)}) from None
            raise
        except OSError:
            if self._closed:
                raise ListenerClosedError(details={"address": str(self._address)}) from None
            raise
        finally:
            self._pending.discard(future)

        conn_sock.setblocking(False)
        return Connection(
            sock=conn_sock,
            remote_address=Address.from_sockname(self._network, remote),
            local_address=Address.from_sockname(self._network, conn_sock.getsockname()),
        )

    def close(self) -> None:
        """Stop listening; pending accepts fail with ``ListenerClosedError``."""
        if self._closed:
            return
        self._closed = True
        for future in list(self._pending):
            future.cancel()
        self._sock.close()

        if self._network == "unix" and self._address.host and not self._address.host.startswith("\0"):
            with suppress(FileNotFoundError):
                os.unlink(self._address.host)

        self.logger.info("Listener closed", address=str(self._address))
