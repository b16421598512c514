"""Three-phase commit between in-memory key-value servers over a simulated RPC network."""

__version__ = "0.1.0"

__all__ = ["codec", "common", "coordinator", "harness", "rpc", "server"]