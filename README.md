# threephase

An in-process implementation of the three-phase commit (3PC) protocol. A
`Coordinator` drives transactions across several key-value `Server`s. Every
message between them passes through a simulated network. The network can
drop, delay and reorder messages, and it can cut single client ends off.

## Modules

- `threephase.common` holds the protocol data types: `TransactionState`
  (per-server state), `Phase` (coordinator phase), `RPCArgs`,
  `PrepareReply`, `QueryReply`, `CommitReply`, `Operation` and
  `ServerTransaction`.
- `threephase.codec` has `Encoder` and `Decoder`, which write and read values
  one per line on a binary stream. They handle `None`, numbers, strings,
  bytes, lists, tuples, sets, dicts, dataclasses and enums. RPC arguments and
  replies pass through this codec, so the caller and the handler never share
  an object.
  - A dataclass or enum can be registered with `register(cls)` or
    `register_name(name, cls)`. Classes that are not registered are named by
    their module and qualified name.
  - Dataclass fields whose names start with an underscore are not sent.
    `check_value` logs a warning about each such field.
  - `Decoder.decode_into(target)` copies the decoded public fields into an
    existing dataclass instance. Before it does, `check_default` warns if
    that instance already holds non-default values.
  - `error_count()` returns the number of warnings issued so far.
- `threephase.server` has `Server(keys)`, a participant that keeps the given
  keys in memory.
  - `get` and `set` record operations for each transaction.
  - `prepare` takes a shared lock on every key that is only read and an
    exclusive lock on every key that is written, then votes. It blocks while
    another transaction holds a conflicting lock, and votes no if a key is
    not stored on this server.
  - `pre_commit` acknowledges PreCommit. `commit` applies the writes, returns
    the values read, and releases the locks. `abort` releases the locks. An
    abort of a transaction that has already committed has no effect.
  - `query` reports every transaction that has reached prepare.
- `threephase.rpc` is the simulated network: `Network`, `ClientEnd`,
  `RPCServer` and `Service`.
  - `Service(receiver)` exposes the public methods of an object that take at
    most one argument. Each one is called as `"ClassName.method"`.
  - `ClientEnd.call(method, args)` returns the handler's reply, or raises
    `RPCFailed` if the request or the reply is lost, the end is disabled or
    unconnected, or the server is deleted while it is handling the call.
  - `Network` counts RPCs and bytes (`total_count`, `total_bytes`,
    `get_count`). It can be made unreliable (`set_reliable(False)`), given
    long delays or long reordering, and it runs registered callbacks before
    each deliverable request. It is a context manager that calls `cleanup`
    on exit.
- `threephase.coordinator` has `Coordinator(servers, respond)`.
  - `finish_transaction(tid)` runs prepare, pre-commit and commit in a
    background thread, and passes each outcome to `respond` as a
    `ResponseMsg` (`tid`, `committed`, `read_values`).
  - A transaction aborts when a relevant server votes no or a server cannot
    be reached during prepare.
  - If a PreCommit still fails after its retries, the coordinator aborts the
    transaction and kills itself.
  - Commit messages are retried until they are delivered.
  - On start the coordinator queries every server and completes or aborts the
    transactions left unfinished. New transactions wait until this recovery
    is over.
  - `kill()` stops all work, and `killed()` reports whether it was called.
- `threephase.harness` has `Config(keys, unreliable=False)`. It starts one
  server per key list and a coordinator, and collects the outcomes.
  - It can disconnect and reconnect servers, and crash, start or restart the
    coordinator.
  - `do_next_pre_commit` and `do_next_commit` run a function before each
    PreCommit or Commit RPC until the function returns `True`.
  - `wait_transaction`, `assert_transaction` and `assert_no_transaction`
    check outcomes and raise `HarnessError`, a subclass of `AssertionError`.
  - `Config` is a context manager that calls `cleanup` on exit.

## Example

```python
from threephase.harness import Config

with Config([["x"], ["y"], ["z"]]) as cfg:
    cfg.begin("basic commit")
    cfg.send_set(0, "x", 1)
    cfg.send_set(0, "y", 2)
    cfg.send_set(0, "z", 3)
    cfg.finish_transaction(0)
    cfg.assert_transaction(0, True, None)

    cfg.send_get(1, "x")
    cfg.send_get(1, "y")
    cfg.send_get(1, "z")
    cfg.finish_transaction(1)
    cfg.assert_transaction(1, True, {"x": 1, "y": 2, "z": 3})
    cfg.end()
```

Failures can be injected at a step of the protocol. This example
disconnects server 0 just before the first PreCommit is delivered, so the
transaction aborts:

```python
cfg.do_next_pre_commit(lambda: (cfg.disconnect(0), True)[1])
```

## What it does not do

- Everything runs inside one Python process. There is no real network
  transport.
- Values are kept in memory only. Nothing is written to disk.
- There is no command-line program.

The `test` extra installs pytest for the test suite.