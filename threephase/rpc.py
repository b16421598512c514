"""A simulated network for RPCs between in-process objects.

The network can lose requests and replies, delay them, and disconnect
individual client ends. Arguments and replies are copied through the codec
so that caller and handler never share objects.

    net = Network()
    end = net.make_end("client-0")
    server = RPCServer()
    server.add_service(Service(receiver))
    net.add_server("server-0", server)
    net.connect("client-0", "server-0")
    net.enable("client-0", True)
    reply = end.call("Receiver.method", args)

A call raises RPCFailed when no reply arrives: the request or reply was
lost, the end is disabled, or the server was deleted while handling it.
"""

from __future__ import annotations

import io
import logging
import queue
import random
import threading
import time
from typing import Any, Callable, Hashable

from threephase.codec import Decoder, Encoder

logger = logging.getLogger(__name__)

CallbackFunc = Callable[[str, Hashable], None]

_POLL_INTERVAL = 0.1


class RPCFailed(Exception):
    """No reply was received for an RPC."""


def _encode(value: Any) -> bytes:
    buffer = io.BytesIO()
    Encoder(buffer).encode(value)
    return buffer.getvalue()


def _decode(data: bytes) -> Any:
    return Decoder(io.BytesIO(data)).decode()


def _handler_shape(method: Any) -> tuple[int, int] | None:
    """Return (positional parameters, required parameters) of a callable.

    The receiver of a bound method is not counted. Returns None for
    callables that are not plain Python functions or methods.
    """
    func = getattr(method, "__func__", method)
    code = getattr(func, "__code__", None)
    if code is None:
        return None
    bound = 1 if func is not method and hasattr(method, "__self__") else 0
    positional = code.co_argcount - bound
    defaults = len(getattr(func, "__defaults__", None) or ())
    required_positional = max(positional - defaults, 0)
    kw_defaults = getattr(func, "__kwdefaults__", None) or {}
    required_keyword = code.co_kwonlyargcount - len(kw_defaults)
    return positional, required_positional + required_keyword


class Service:
    """An object whose public methods can be called over RPC.

    A handler takes at most one positional argument and returns its reply.
    Handlers that take no argument ignore the arguments sent with a call.
    """

    def __init__(self, receiver: Any, name: str | None = None) -> None:
        self.name = name if name is not None else type(receiver).__name__
        self._methods: dict[str, tuple[Callable[..., Any], bool]] = {}
        for attr in dir(type(receiver)):
            if attr.startswith("_"):
                continue
            method = getattr(receiver, attr, None)
            if not callable(method):
                continue
            shape = _handler_shape(method)
            if shape is None:
                continue
            positional, required = shape
            if required > 1 or positional > 1:
                continue
            self._methods[attr] = (method, positional > 0)

    @property
    def methods(self) -> list[str]:
        """Names of the methods this service handles."""
        return sorted(self._methods)

    def dispatch(self, method_name: str, payload: bytes) -> bytes:
        """Decode the arguments, run the handler and encode its reply."""
        try:
            handler, takes_args = self._methods[method_name]
        except KeyError:
            raise LookupError(
                f"unknown method {method_name} in {self.name}; "
                f"expecting one of {self.methods}"
            ) from None
        args = _decode(payload)
        reply = handler(args) if takes_args else handler()
        return _encode(reply)


class RPCServer:
    """A collection of services sharing one RPC endpoint."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._services: dict[str, Service] = {}
        self._count = 0

    def add_service(self, service: Service) -> None:
        with self._lock:
            self._services[service.name] = service

    def get_count(self) -> int:
        """Number of RPCs this server has received."""
        with self._lock:
            return self._count

    def dispatch(self, method: str, payload: bytes) -> bytes:
        with self._lock:
            self._count += 1
            service_name, _, method_name = method.rpartition(".")
            service = self._services.get(service_name)
            choices = sorted(self._services)
        if service is None:
            raise LookupError(
                f"unknown service {service_name} in {method}; expecting one of {choices}"
            )
        return service.dispatch(method_name, payload)


class ClientEnd:
    """One client's end of a connection to a server."""

    def __init__(self, network: Network, endname: Hashable) -> None:
        self._network = network
        self.endname = endname

    def call(self, method: str, args: Any) -> Any:
        """Send an RPC and wait for its reply.

        Raises RPCFailed if no reply arrives.
        """
        payload = _encode(args)
        reply = self._network._deliver(self.endname, method, payload)
        return _decode(reply)


class Network:
    """Holds client ends and servers and carries requests between them."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._reliable = True
        self._long_delays = False
        self._long_reordering = False
        self._ends: dict[Hashable, ClientEnd] = {}
        self._enabled: dict[Hashable, bool] = {}
        self._servers: dict[Hashable, RPCServer | None] = {}
        self._connections: dict[Hashable, Hashable | None] = {}
        self._done = threading.Event()
        self._count = 0
        self._bytes = 0
        self._callbacks: list[CallbackFunc] = []

    def __enter__(self) -> Network:
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.cleanup()

    def register_callback(self, callback: CallbackFunc) -> None:
        """Call callback(method, endname) before each deliverable request."""
        with self._lock:
            self._callbacks.append(callback)

    def cleanup(self) -> None:
        """Shut the network down; later calls fail at once."""
        self._done.set()

    def set_reliable(self, yes: bool) -> None:
        with self._lock:
            self._reliable = yes

    def set_long_reordering(self, yes: bool) -> None:
        with self._lock:
            self._long_reordering = yes

    def set_long_delays(self, yes: bool) -> None:
        with self._lock:
            self._long_delays = yes

    def make_end(self, endname: Hashable) -> ClientEnd:
        """Create a disabled, unconnected client end."""
        with self._lock:
            if endname in self._ends:
                raise ValueError(f"end {endname!r} already exists")
            end = ClientEnd(self, endname)
            self._ends[endname] = end
            self._enabled[endname] = False
            self._connections[endname] = None
            return end

    def add_server(self, servername: Hashable, server: RPCServer) -> None:
        with self._lock:
            self._servers[servername] = server

    def delete_server(self, servername: Hashable) -> None:
        with self._lock:
            self._servers[servername] = None

    def connect(self, endname: Hashable, servername: Hashable) -> None:
        with self._lock:
            self._connections[endname] = servername

    def enable(self, endname: Hashable, enabled: bool) -> None:
        with self._lock:
            self._enabled[endname] = enabled

    def get_count(self, servername: Hashable) -> int:
        """Number of RPCs the named server has received."""
        with self._lock:
            server = self._servers.get(servername)
        if server is None:
            raise KeyError(servername)
        return server.get_count()

    def total_count(self) -> int:
        """Number of RPCs sent on the network."""
        with self._lock:
            return self._count

    def total_bytes(self) -> int:
        """Number of argument and reply bytes carried by the network."""
        with self._lock:
            return self._bytes

    def _add_bytes(self, n: int) -> None:
        with self._lock:
            self._bytes += n

    def _end_info(
        self, endname: Hashable
    ) -> tuple[bool, Hashable | None, RPCServer | None, bool, bool]:
        with self._lock:
            enabled = self._enabled.get(endname, False)
            servername = self._connections.get(endname)
            server = self._servers.get(servername) if servername is not None else None
            return (
                enabled,
                servername,
                server,
                self._reliable,
                self._long_reordering,
            )

    def _is_server_dead(
        self, endname: Hashable, servername: Hashable, server: RPCServer
    ) -> bool:
        with self._lock:
            return (
                not self._enabled.get(endname, False)
                or self._servers.get(servername) is not server
            )

    def _deliver(self, endname: Hashable, method: str, payload: bytes) -> bytes:
        if self._done.is_set():
            raise RPCFailed("network has been shut down")
        with self._lock:
            self._count += 1
            self._bytes += len(payload)
            callbacks = list(self._callbacks)

        enabled, servername, server, _, _ = self._end_info(endname)
        if enabled and servername is not None and server is not None:
            # Callbacks come first so that they may change the end's state.
            for callback in callbacks:
                callback(method, endname)

        enabled, servername, server, reliable, long_reordering = self._end_info(
            endname
        )
        if not (enabled and servername is not None and server is not None):
            with self._lock:
                long_delays = self._long_delays
            delay = random.randrange(7000) if long_delays else random.randrange(100)
            time.sleep(delay / 1000)
            raise RPCFailed(f"{method}: no reply")

        if not reliable:
            time.sleep(random.randrange(27) / 1000)
            if random.randrange(1000) < 100:
                raise RPCFailed(f"{method}: request lost")

        results: queue.Queue[tuple[bool, Any]] = queue.Queue(maxsize=1)

        def run() -> None:
            try:
                results.put((True, server.dispatch(method, payload)))
            except BaseException as exc:  # noqa: BLE001 - handed to the caller
                results.put((False, exc))

        threading.Thread(target=run, daemon=True).start()

        outcome: tuple[bool, Any] | None = None
        while outcome is None:
            try:
                outcome = results.get(timeout=_POLL_INTERVAL)
            except queue.Empty:
                if self._is_server_dead(endname, servername, server):
                    break

        if outcome is None or self._is_server_dead(endname, servername, server):
            raise RPCFailed(f"{method}: server unavailable")
        ok, result = outcome
        if not ok:
            raise result
        if not reliable and random.randrange(1000) < 100:
            raise RPCFailed(f"{method}: reply lost")
        if long_reordering and random.randrange(900) < 600:
            time.sleep((200 + random.randrange(1 + random.randrange(2000))) / 1000)
        self._add_bytes(len(result))
        return result