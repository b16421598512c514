"""A test harness that runs servers and a coordinator on a simulated network."""

from __future__ import annotations

import logging
import secrets
import threading
import time
from typing import Any, Callable, Iterable, Sequence

from threephase.coordinator import COMMIT, PRE_COMMIT, Coordinator, ResponseMsg
from threephase.rpc import Network, RPCServer, Service
from threephase.server import Server

logger = logging.getLogger(__name__)

TIME_LIMIT = 120.0
DEFAULT_WAIT = 120.0
_POLL = 0.01


class HarnessError(AssertionError):
    """A check made by the harness failed."""


class Config:
    """Servers holding the given keys, a coordinator, and the network between them.

    keys[i] lists the keys stored by server i. Outcomes reported by the
    coordinator are collected and can be waited for and checked.
    """

    def __init__(self, keys: Sequence[Iterable[str]], unreliable: bool = False) -> None:
        self._mu = threading.RLock()
        self.net = Network()
        key_lists = [list(k) for k in keys]
        self.n = len(key_lists)
        self.key_map: dict[str, int] = {
            key: i for i, key_list in enumerate(key_lists) for key in key_list
        }
        self.servers: list[Server] = []
        self.coordinator: Coordinator | None = None
        self._responses: dict[int, ResponseMsg] = {}
        self._connected = [False] * self.n
        self._endnames: list[str] = []
        self._stop = threading.Event()
        self._on_pre_commit: Callable[[], bool] | None = None
        self._on_commit: Callable[[], bool] | None = None
        self._failure: str | None = None
        self._start = time.monotonic()
        self._t0 = self._start
        self._rpcs0 = 0
        self._bytes0 = 0
        self._responses0 = 0

        self.set_unreliable(unreliable)
        self.net.set_long_delays(False)
        self.net.register_callback(self._net_callback)

        for i, key_list in enumerate(key_lists):
            self._start_server(i, key_list)
        self.start_coordinator()
        self.connect_all()

    def __enter__(self) -> Config:
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.cleanup()

    @property
    def failed(self) -> bool:
        """Whether a check made in the background has failed."""
        with self._mu:
            return self._failure is not None

    def _fail(self, message: str) -> None:
        logger.error("%s", message)
        with self._mu:
            if self._failure is None:
                self._failure = message

    def _raise_if_failed(self) -> None:
        with self._mu:
            if self._failure is not None:
                raise HarnessError(self._failure)

    def _net_callback(self, method: str, endname: Any) -> None:
        with self._mu:
            if method == PRE_COMMIT and self._on_pre_commit is not None:
                if self._on_pre_commit():
                    self._on_pre_commit = None
            if method == COMMIT and self._on_commit is not None:
                if self._on_commit():
                    self._on_commit = None

    def do_next_pre_commit(self, func: Callable[[], bool]) -> None:
        """Run func before each PreCommit RPC until it returns True."""
        with self._mu:
            self._on_pre_commit = func

    def do_next_commit(self, func: Callable[[], bool]) -> None:
        """Run func before each Commit RPC until it returns True."""
        with self._mu:
            self._on_commit = func

    def _start_server(self, i: int, keys: list[str]) -> None:
        server = Server(keys)
        with self._mu:
            self.servers.append(server)
        rpc_server = RPCServer()
        rpc_server.add_service(Service(server))
        self.net.add_server(i, rpc_server)

    def _apply(self, msg: ResponseMsg) -> None:
        with self._mu:
            if msg.tid in self._responses:
                self._fail(f"got repeated client message for transaction {msg.tid}")
                return
            self._responses[msg.tid] = msg

    def _responder(self, stop: threading.Event) -> Callable[[ResponseMsg], None]:
        def respond(msg: ResponseMsg) -> None:
            # Outcomes from a crashed coordinator are dropped.
            if not stop.is_set():
                self._apply(msg)

        return respond

    def _new_coordinator(self) -> Coordinator:
        # Fresh end names, so that a crashed coordinator's ends cannot send.
        self._endnames = [secrets.token_urlsafe(15) for _ in range(self.n)]
        ends = []
        for i, name in enumerate(self._endnames):
            ends.append(self.net.make_end(name))
            self.net.connect(name, i)
        self._stop = threading.Event()
        return Coordinator(ends, self._responder(self._stop))

    def _crash_coordinator_locked(self) -> None:
        if self.coordinator is None:
            return
        for name in self._endnames:
            self.net.enable(name, False)
        self._stop.set()
        self.coordinator.kill()
        self.coordinator = None

    def crash_coordinator(self) -> None:
        """Kill the coordinator and cut it off from the servers."""
        with self._mu:
            self._crash_coordinator_locked()

    def restart_coordinator_locked(self) -> None:
        """Replace the coordinator with a fresh, connected one."""
        with self._mu:
            self._crash_coordinator_locked()
            self.coordinator = self._new_coordinator()
            self.connect_all()

    def start_coordinator(self) -> None:
        """Start a coordinator, killing the current one first; its ends start disabled."""
        with self._mu:
            self._crash_coordinator_locked()
            self.coordinator = self._new_coordinator()

    def _check_timeout(self) -> None:
        if not self.failed and time.monotonic() - self._start > TIME_LIMIT:
            raise HarnessError(f"test took longer than {TIME_LIMIT:.0f} seconds")

    def cleanup(self) -> None:
        """Stop the coordinator and shut the network down."""
        with self._mu:
            if self.coordinator is not None:
                self.coordinator.kill()
        self.net.cleanup()
        self._check_timeout()

    def connect(self, i: int) -> None:
        """Attach server i to the network."""
        with self._mu:
            self._connected[i] = True
            self.net.enable(self._endnames[i], True)

    def connect_all(self) -> None:
        for i in range(self.n):
            self.connect(i)

    def disconnect(self, i: int) -> None:
        """Detach server i from the network."""
        with self._mu:
            self._connected[i] = False
            self.net.enable(self._endnames[i], False)

    def rpc_count(self, server: int) -> int:
        return self.net.get_count(server)

    def rpc_total(self) -> int:
        return self.net.total_count()

    def bytes_total(self) -> int:
        return self.net.total_bytes()

    def set_unreliable(self, unreliable: bool) -> None:
        self.net.set_reliable(not unreliable)

    def set_long_reordering(self, yes: bool) -> None:
        self.net.set_long_reordering(yes)

    def _server_for(self, key: str) -> Server:
        return self.servers[self.key_map.get(key, 0)]

    def send_get(self, tid: int, key: str) -> None:
        """Log a read of key for the transaction on the server holding key."""
        with self._mu:
            self._server_for(key).get(tid, key)

    def send_set(self, tid: int, key: str, value: Any) -> None:
        """Log a write of key for the transaction on the server holding key."""
        with self._mu:
            self._server_for(key).set(tid, key, value)

    def finish_transaction(self, tid: int) -> None:
        """Ask the coordinator to commit the transaction."""
        with self._mu:
            if self.coordinator is None:
                raise HarnessError("no coordinator is running")
            self.coordinator.finish_transaction(tid)

    def wait_transaction(self, tid: int, timeout: float | None = DEFAULT_WAIT) -> ResponseMsg:
        """Wait for the outcome of the transaction; None waits without limit."""
        deadline = None if timeout is None else time.monotonic() + timeout
        while True:
            with self._mu:
                self._raise_if_failed()
                msg = self._responses.get(tid)
                if msg is not None:
                    return msg
            if deadline is not None and time.monotonic() >= deadline:
                raise HarnessError(f"no outcome for transaction {tid} after {timeout}s")
            time.sleep(_POLL)

    def assert_no_transaction(self, tid: int) -> None:
        with self._mu:
            if tid in self._responses:
                raise HarnessError(f"expected there to be no transaction {tid}")

    def assert_transaction(
        self, tid: int, committed: bool, read_values: dict[str, Any] | None
    ) -> ResponseMsg:
        """Wait for the transaction and check its outcome and, unless None, its reads."""
        resp = self.wait_transaction(tid)
        if resp.committed != committed:
            expected = "committed" if committed else "aborted"
            raise HarnessError(f"transaction {tid} expected to be {expected} but wasn't")
        if read_values is None:
            return resp
        got = resp.read_values or {}
        if len(got) != len(read_values):
            raise HarnessError(f"transaction {tid} returned incorrect number of keys")
        for key, want in read_values.items():
            if key not in got:
                raise HarnessError(f"transaction {tid} failed to return key {key}")
            if got[key] != want:
                raise HarnessError(
                    f"transaction {tid} returned incorrect value {got[key]!r} for key {key}"
                )
        return resp

    def begin(self, description: str) -> None:
        """Print the test's description and start its statistics."""
        print(f"{description} ...")
        with self._mu:
            self._t0 = time.monotonic()
            self._rpcs0 = self.rpc_total()
            self._bytes0 = self.bytes_total()
            self._responses0 = len(self._responses)

    def end(self) -> None:
        """Print the Passed message with statistics for the test."""
        self._check_timeout()
        self._raise_if_failed()
        with self._mu:
            elapsed = time.monotonic() - self._t0
            nrpc = self.rpc_total() - self._rpcs0
            nbytes = self.bytes_total() - self._bytes0
            ntrans = len(self._responses) - self._responses0
        print(f"  ... Passed --  {elapsed:4.1f}  {self.n} {nrpc:4d} {nbytes:7d} {ntrans:4d}")