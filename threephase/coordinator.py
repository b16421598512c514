"""The coordinator that drives transactions through three-phase commit."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Sequence

from threephase.common import (
    CommitReply,
    Phase,
    PrepareReply,
    QueryReply,
    RPCArgs,
    ServerTransaction,
    TransactionState,
)
from threephase.rpc import ClientEnd, RPCFailed

logger = logging.getLogger(__name__)

PREPARE = "Server.prepare"
ABORT = "Server.abort"
QUERY = "Server.query"
PRE_COMMIT = "Server.pre_commit"
COMMIT = "Server.commit"

_PRE_COMMIT_RETRIES = 3
_RECOVERY_POLL = 0.01


@dataclass(frozen=True)
class ResponseMsg:
    """The outcome of a transaction, reported to the client."""

    tid: int
    committed: bool
    read_values: dict[str, Any] | None = None


@dataclass
class Transaction:
    """The coordinator's view of one transaction."""

    phase: Phase = Phase.PREPARE
    relevant: set[int] = field(default_factory=set)
    read_values: dict[str, Any] = field(default_factory=dict)


class _Stopped(Exception):
    """The coordinator was killed while working on a transaction."""


class Coordinator:
    """Runs three-phase commit over the given server ends.

    Each outcome is handed to respond as a ResponseMsg. On start the
    coordinator queries every server and finishes the transactions a
    previous coordinator left behind; new transactions wait until that
    recovery is over.
    """

    def __init__(
        self, servers: Sequence[ClientEnd], respond: Callable[[ResponseMsg], Any]
    ) -> None:
        self._servers = list(servers)
        self._respond = respond
        self._dead = threading.Event()
        self._mu = threading.Lock()
        self._transactions: dict[int, Transaction] = {}
        self._recovered = threading.Event()
        threading.Thread(target=self._recover, daemon=True).start()

    def finish_transaction(self, tid: int) -> None:
        """Start committing the transaction; the outcome is reported later."""
        with self._mu:
            tran = self._transactions.setdefault(tid, Transaction())
        threading.Thread(target=self._finish, args=(tid, tran), daemon=True).start()

    def kill(self) -> None:
        """Stop all work; pending transactions are left to a successor."""
        self._dead.set()

    def killed(self) -> bool:
        return self._dead.is_set()

    def _check_alive(self) -> None:
        if self._dead.is_set():
            raise _Stopped

    def _send(self, server: int, method: str, args: Any) -> tuple[bool, Any]:
        try:
            return True, self._servers[server].call(method, args)
        except RPCFailed:
            return False, None

    def _send_until_delivered(self, server: int, method: str, args: Any) -> Any:
        while True:
            ok, reply = self._send(server, method, args)
            if ok:
                return reply
            logger.debug("%s to server %d failed, retrying", method, server)
            self._check_alive()

    def _finish(self, tid: int, tran: Transaction) -> None:
        while not self._recovered.wait(_RECOVERY_POLL):
            if self.killed():
                return
        self._run(tid, tran, Phase.PREPARE)

    def _run(self, tid: int, tran: Transaction, phase: Phase) -> None:
        try:
            self._drive(tid, tran, phase)
        except _Stopped:
            logger.debug("transaction %d: coordinator stopped", tid)

    def _drive(self, tid: int, tran: Transaction, phase: Phase) -> None:
        if phase is Phase.PREPARE:
            relevant, all_yes, reached_all = self._prepare(tid)
            with self._mu:
                tran.relevant = relevant
            if not (reached_all and all_yes):
                self._abort(tid, tran, relevant)
                return
            phase = Phase.PRE_COMMIT
        if phase is Phase.PRE_COMMIT:
            if not self._pre_commit(tid, tran.relevant):
                logger.debug("transaction %d: PreCommit timed out, stopping", tid)
                self.kill()
                self._abort(tid, tran, tran.relevant)
                return
            with self._mu:
                tran.phase = Phase.PRE_COMMIT
        self._commit(tid, tran)

    def _prepare(self, tid: int) -> tuple[set[int], bool, bool]:
        """Collect votes; returns (relevant servers, all voted yes, all reached)."""
        relevant: set[int] = set()
        all_yes = True
        for server in range(len(self._servers)):
            self._check_alive()
            ok, reply = self._send(server, PREPARE, RPCArgs(tid))
            if not ok:
                logger.debug("transaction %d: server %d unreachable", tid, server)
                return relevant, all_yes, False
            assert isinstance(reply, PrepareReply)
            if reply.relevant:
                relevant.add(server)
                all_yes = all_yes and reply.vote
        return relevant, all_yes, True

    def _pre_commit(self, tid: int, relevant: set[int]) -> bool:
        for server in sorted(relevant):
            self._check_alive()
            retries = 0
            while not self._send(server, PRE_COMMIT, RPCArgs(tid))[0]:
                self._check_alive()
                if retries > _PRE_COMMIT_RETRIES:
                    return False
                retries += 1
        return True

    def _commit(self, tid: int, tran: Transaction) -> None:
        read_values: dict[str, Any] = {}
        for server in sorted(tran.relevant):
            self._check_alive()
            reply = self._send_until_delivered(server, COMMIT, RPCArgs(tid))
            assert isinstance(reply, CommitReply)
            read_values.update(reply.read_values)
        with self._mu:
            tran.phase = Phase.COMMITTED
            tran.read_values = read_values
        self._respond(ResponseMsg(tid, True, read_values))

    def _abort(self, tid: int, tran: Transaction, relevant: set[int]) -> None:
        """Tell the relevant servers to abort, then report the abort."""
        for server in sorted(relevant):
            if self.killed():
                break
            try:
                self._send_until_delivered(server, ABORT, RPCArgs(tid))
            except _Stopped:
                break
        with self._mu:
            tran.phase = Phase.ABORTED
        self._respond(ResponseMsg(tid, False, None))

    def _recover(self) -> None:
        try:
            known: dict[int, dict[int, ServerTransaction]] = {}
            for server in range(len(self._servers)):
                self._check_alive()
                reply = self._send_until_delivered(server, QUERY, None)
                assert isinstance(reply, QueryReply)
                for tid, state in reply.transactions.items():
                    known.setdefault(tid, {})[server] = state
            for tid in sorted(known):
                self._check_alive()
                self._resume(tid, known[tid])
        except _Stopped:
            logger.debug("recovery stopped")
        finally:
            self._recovered.set()

    def _resume(self, tid: int, states: dict[int, ServerTransaction]) -> None:
        with self._mu:
            tran = self._transactions.setdefault(tid, Transaction())
        relevant = {server for server, st in states.items() if st.operations}
        kinds = [st.state for st in states.values()]
        any_aborted = any(
            s in (TransactionState.ABORTED, TransactionState.VOTED_NO) for s in kinds
        )
        any_committed = TransactionState.COMMITTED in kinds
        all_committed = all(s == TransactionState.COMMITTED for s in kinds)
        with self._mu:
            tran.relevant = relevant

        if any_aborted:
            self._abort(tid, tran, relevant)
        elif any_committed and not all_committed:
            self._run(tid, tran, Phase.COMMITTED)
        elif TransactionState.PRE_COMMITTED in kinds:
            self._run(tid, tran, Phase.PRE_COMMIT)
        elif TransactionState.VOTED_YES in kinds:
            self._run(tid, tran, Phase.PREPARE)