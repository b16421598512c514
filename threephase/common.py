"""Types shared by the coordinator and the servers of the commit protocol."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Any


class TransactionState(enum.IntEnum):
    """Where a transaction stands on one server."""

    OPERATIONS = 0
    VOTED_NO = 1
    VOTED_YES = 2
    PRE_COMMITTED = 3
    ABORTED = 4
    COMMITTED = 5


class Phase(str, enum.Enum):
    """Where a transaction stands on the coordinator."""

    PREPARE = "Prepare"
    PRE_COMMIT = "PreCommit"
    COMMITTED = "Committed"
    ABORTED = "Aborted"

    def __str__(self) -> str:
        return self.value


@dataclass
class RPCArgs:
    """Arguments of the RPCs that only need a transaction id."""

    tid: int = 0


@dataclass
class PrepareReply:
    """A server's answer to Prepare."""

    relevant: bool = False
    vote: bool = False


@dataclass(frozen=True)
class Operation:
    """One logged Get or Set of a transaction."""

    is_get: bool
    key: str
    value: Any = None


@dataclass
class ServerTransaction:
    """A transaction as a server reports it to a recovering coordinator."""

    state: TransactionState = TransactionState.OPERATIONS
    operations: list[Operation] = field(default_factory=list)


@dataclass
class QueryReply:
    """All transactions a server knows of, by transaction id."""

    transactions: dict[int, ServerTransaction] = field(default_factory=dict)


@dataclass
class CommitReply:
    """Values read by the Get operations of a committed transaction."""

    read_values: dict[str, Any] = field(default_factory=dict)