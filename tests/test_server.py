import threading

from threephase.common import Operation, RPCArgs, TransactionState
from threephase.server import Server


def _commit_all(server, tid):
    server.prepare(RPCArgs(tid))
    server.pre_commit(RPCArgs(tid))
    return server.commit(RPCArgs(tid))


def _start(fn, *args):
    box = {}

    def run():
        box["result"] = fn(*args)

    thread = threading.Thread(target=run, daemon=True)
    thread.start()
    return thread, box


def _state(server, tid):
    return server.query().transactions[tid].state


def test_writes_then_reads():
    sv = Server(["x", "y"])
    sv.set(0, "x", 1)
    sv.set(0, "y", 2)
    reply = sv.prepare(RPCArgs(0))
    assert reply.relevant and reply.vote
    sv.pre_commit(RPCArgs(0))
    assert sv.commit(RPCArgs(0)).read_values == {}

    sv.get(1, "x")
    sv.get(1, "y")
    assert _commit_all(sv, 1).read_values == {"x": 1, "y": 2}


def test_unwritten_key_reads_none():
    sv = Server(["x"])
    sv.get(0, "x")
    assert _commit_all(sv, 0).read_values == {"x": None}


def test_prepare_without_operations_is_irrelevant():
    reply = Server(["x"]).prepare(RPCArgs(5))
    assert reply.relevant is False
    assert reply.vote is False


def test_prepare_unknown_key_votes_no():
    sv = Server(["x"])
    sv.set(0, "x", 1)
    sv.set(0, "w", 1)
    reply = sv.prepare(RPCArgs(0))
    assert reply.relevant is True
    assert reply.vote is False
    assert _state(sv, 0) is TransactionState.VOTED_NO
    # The lock on x was given back.
    sv.set(1, "x", 2)
    thread, box = _start(sv.prepare, RPCArgs(1))
    thread.join(2)
    assert box["result"].vote is True


def test_repeated_prepare_keeps_vote():
    sv = Server(["x"])
    sv.set(0, "x", 1)
    assert sv.prepare(RPCArgs(0)).vote is True
    thread, box = _start(sv.prepare, RPCArgs(0))
    thread.join(2)
    assert box["result"].vote is True


def test_conflicting_write_waits_for_commit():
    sv = Server(["x"])
    sv.set(0, "x", 1)
    sv.set(1, "x", 2)
    assert sv.prepare(RPCArgs(0)).vote is True
    thread, box = _start(sv.prepare, RPCArgs(1))
    thread.join(0.1)
    assert thread.is_alive()
    sv.pre_commit(RPCArgs(0))
    sv.commit(RPCArgs(0))
    thread.join(2)
    assert box["result"].vote is True
    sv.pre_commit(RPCArgs(1))
    sv.commit(RPCArgs(1))
    sv.get(2, "x")
    assert _commit_all(sv, 2).read_values == {"x": 2}


def test_abort_releases_locks_and_discards_writes():
    sv = Server(["x"])
    sv.set(0, "x", 1)
    assert _commit_all(sv, 0).read_values == {}
    sv.set(1, "x", 9)
    sv.prepare(RPCArgs(1))
    sv.abort(RPCArgs(1))
    assert _state(sv, 1) is TransactionState.ABORTED
    sv.get(2, "x")
    thread, box = _start(_commit_all, sv, 2)
    thread.join(2)
    assert box["result"].read_values == {"x": 1}


def test_concurrent_reads_do_not_block():
    sv = Server(["x"])
    sv.get(0, "x")
    sv.get(1, "x")
    assert sv.prepare(RPCArgs(0)).vote is True
    thread, box = _start(sv.prepare, RPCArgs(1))
    thread.join(2)
    assert box["result"].vote is True


def test_read_and_write_of_same_key_in_one_transaction():
    sv = Server(["x"])
    sv.get(0, "x")
    sv.set(0, "x", 4)
    thread, box = _start(_commit_all, sv, 0)
    thread.join(2)
    assert box["result"].read_values == {"x": None}
    assert _state(sv, 0) is TransactionState.COMMITTED


def test_commit_requires_pre_commit():
    sv = Server(["x"])
    sv.set(0, "x", 1)
    sv.prepare(RPCArgs(0))
    assert sv.commit(RPCArgs(0)).read_values == {}
    assert _state(sv, 0) is TransactionState.VOTED_YES


def test_pre_commit_ignored_unless_voted_yes():
    sv = Server(["x"])
    sv.set(0, "x", 1)
    sv.set(0, "w", 1)
    sv.prepare(RPCArgs(0))
    sv.pre_commit(RPCArgs(0))
    assert _state(sv, 0) is TransactionState.VOTED_NO
    sv.pre_commit(RPCArgs(42))
    assert 42 not in sv.query().transactions


def test_prepare_after_abort_votes_no():
    sv = Server(["x"])
    sv.set(0, "x", 1)
    sv.prepare(RPCArgs(0))
    sv.abort(RPCArgs(0))
    reply = sv.prepare(RPCArgs(0))
    assert reply.relevant is True
    assert reply.vote is False


def test_abort_leaves_committed_and_unknown_transactions_alone():
    sv = Server(["x"])
    sv.set(0, "x", 1)
    _commit_all(sv, 0)
    sv.abort(RPCArgs(0))
    sv.abort(RPCArgs(7))
    transactions = sv.query().transactions
    assert transactions[0].state is TransactionState.COMMITTED
    assert 7 not in transactions


def test_query_reports_prepared_transactions_with_operations():
    sv = Server(["x", "y"])
    sv.set(0, "x", 1)
    sv.get(0, "y")
    sv.set(1, "x", 2)
    assert sv.query().transactions == {}
    sv.prepare(RPCArgs(0))
    transactions = sv.query().transactions
    assert list(transactions) == [0]
    assert transactions[0].operations == [Operation(False, "x", 1), Operation(True, "y")]
    transactions[0].operations.clear()
    assert len(sv.query().transactions[0].operations) == 2