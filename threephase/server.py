"""A participant server that logs operations and takes part in commits."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Iterable

from threephase.common import (
    CommitReply,
    Operation,
    PrepareReply,
    QueryReply,
    RPCArgs,
    ServerTransaction,
    TransactionState,
)

logger = logging.getLogger(__name__)

_YES_STATES = (
    TransactionState.VOTED_YES,
    TransactionState.PRE_COMMITTED,
    TransactionState.COMMITTED,
)


class _RWLock:
    """Readers-writer lock that any thread may release; writers take precedence."""

    def __init__(self) -> None:
        self._cond = threading.Condition()
        self._readers = 0
        self._writer = False
        self._writers_waiting = 0

    def acquire_read(self) -> None:
        with self._cond:
            while self._writer or self._writers_waiting:
                self._cond.wait()
            self._readers += 1

    def release_read(self) -> None:
        with self._cond:
            if self._readers == 0:
                raise RuntimeError("read lock released while not held")
            self._readers -= 1
            if self._readers == 0:
                self._cond.notify_all()

    def acquire_write(self) -> None:
        with self._cond:
            self._writers_waiting += 1
            try:
                while self._writer or self._readers:
                    self._cond.wait()
            finally:
                self._writers_waiting -= 1
            self._writer = True

    def release_write(self) -> None:
        with self._cond:
            if not self._writer:
                raise RuntimeError("write lock released while not held")
            self._writer = False
            self._cond.notify_all()


@dataclass
class _StoreItem:
    value: Any = None
    lock: _RWLock = field(default_factory=_RWLock)


def _release(held: Iterable[tuple[_StoreItem, bool]]) -> None:
    for item, shared in held:
        if shared:
            item.lock.release_read()
        else:
            item.lock.release_write()


class Server:
    """Stores the values of its keys and applies transactions to them."""

    def __init__(self, keys: Iterable[str]) -> None:
        self._mu = threading.Lock()
        self._store = {key: _StoreItem() for key in keys}
        self._operations: dict[int, list[Operation]] = {}
        self._states: dict[int, TransactionState] = {}
        self._held: dict[int, list[tuple[_StoreItem, bool]]] = {}

    def prepare(self, args: RPCArgs) -> PrepareReply:
        """Lock every key the transaction touches and vote on it.

        Blocks while another transaction holds a conflicting lock.
        """
        tid = args.tid
        with self._mu:
            ops = list(self._operations.get(tid, ()))
            if not ops:
                return PrepareReply(relevant=False)
            state = self._states.get(tid, TransactionState.OPERATIONS)
            if state != TransactionState.OPERATIONS:
                return PrepareReply(relevant=True, vote=state in _YES_STATES)

        # One lock per key, exclusive if the transaction writes it.
        modes: dict[str, bool] = {}
        for op in ops:
            modes[op.key] = modes.get(op.key, True) and op.is_get

        held: list[tuple[_StoreItem, bool]] = []
        for key, shared in modes.items():
            with self._mu:
                item = self._store.get(key)
            if item is None:
                logger.debug("prepare %d: key %s is not stored here", tid, key)
                _release(held)
                with self._mu:
                    self._states[tid] = TransactionState.VOTED_NO
                return PrepareReply(relevant=True, vote=False)
            if shared:
                item.lock.acquire_read()
            else:
                item.lock.acquire_write()
            held.append((item, shared))

        with self._mu:
            self._held[tid] = held
            self._states[tid] = TransactionState.VOTED_YES
        return PrepareReply(relevant=True, vote=True)

    def abort(self, args: RPCArgs) -> None:
        """Abort the transaction and release the locks it holds."""
        tid = args.tid
        with self._mu:
            state = self._states.get(tid)
            if state is None or state in (
                TransactionState.ABORTED,
                TransactionState.COMMITTED,
            ):
                # Applied changes cannot be undone; nothing to do.
                return
            _release(self._held.pop(tid, ()))
            self._states[tid] = TransactionState.ABORTED
            logger.debug("transaction %d: aborted", tid)

    def query(self) -> QueryReply:
        """Report every transaction that has reached the prepare phase."""
        with self._mu:
            return QueryReply(
                {
                    tid: ServerTransaction(state, list(self._operations.get(tid, ())))
                    for tid, state in self._states.items()
                }
            )

    def pre_commit(self, args: RPCArgs) -> None:
        """Acknowledge PreCommit for a transaction that voted yes."""
        tid = args.tid
        with self._mu:
            if (
                tid in self._operations
                and self._states.get(tid) == TransactionState.VOTED_YES
            ):
                self._states[tid] = TransactionState.PRE_COMMITTED

    def commit(self, args: RPCArgs) -> CommitReply:
        """Apply a pre-committed transaction and release its locks."""
        tid = args.tid
        reply = CommitReply()
        with self._mu:
            ops = self._operations.get(tid)
            if ops is None or self._states.get(tid) != TransactionState.PRE_COMMITTED:
                return reply
            for op in ops:
                item = self._store.get(op.key)
                if item is None:
                    continue
                if op.is_get:
                    reply.read_values[op.key] = item.value
                else:
                    item.value = op.value
            _release(self._held.pop(tid, ()))
            self._states[tid] = TransactionState.COMMITTED
            logger.debug("transaction %d: committed", tid)
        return reply

    def get(self, tid: int, key: str) -> None:
        """Log a read of key for the transaction."""
        with self._mu:
            self._operations.setdefault(tid, []).append(Operation(True, key))

    def set(self, tid: int, key: str, value: Any) -> None:
        """Log a write of value to key for the transaction."""
        with self._mu:
            self._operations.setdefault(tid, []).append(Operation(False, key, value))