"""Value encoding for RPC messages.

Values are copied through a byte stream so that no object is shared between
caller and handler. Dataclass fields whose names start with an underscore are
private and are not transmitted; the codec warns about them, and about decoding
into an object that already holds non-default values.
"""

from __future__ import annotations

import base64
import dataclasses
import enum
import json
import logging
import threading
import typing
from typing import Any, BinaryIO

logger = logging.getLogger(__name__)

_lock = threading.Lock()
_error_count = 0
_checked: set[type] = set()
_by_name: dict[str, type] = {}
_by_type: dict[type, str] = {}


def error_count() -> int:
    """Number of warnings the codec has issued so far."""
    with _lock:
        return _error_count


def _note_error() -> None:
    global _error_count
    with _lock:
        _error_count += 1


def _default_name(cls: type) -> str:
    return f"{cls.__module__}.{cls.__qualname__}"


def _is_codable_class(cls: Any) -> bool:
    return isinstance(cls, type) and (
        dataclasses.is_dataclass(cls) or issubclass(cls, enum.Enum)
    )


def register(cls):
    """Register a dataclass or enum under its qualified name; returns it."""
    if not isinstance(cls, type):
        cls = type(cls)
    return register_name(_default_name(cls), cls)


def register_name(name: str, cls):
    """Register a dataclass or enum under an explicit name; returns it."""
    if not isinstance(cls, type):
        cls = type(cls)
    if not _is_codable_class(cls):
        raise TypeError(f"only dataclasses and enums can be registered, not {cls!r}")
    check_value(cls)
    with _lock:
        existing = _by_name.get(name)
        if existing is not None and existing is not cls:
            raise ValueError(f"name {name!r} is already registered for another type")
        prior = _by_type.get(cls)
        if prior is not None and prior != name:
            raise ValueError(f"{cls.__qualname__} is already registered as {prior!r}")
        _by_name[name] = cls
        _by_type[cls] = name
    return cls


def _name_for(cls: type) -> str:
    with _lock:
        name = _by_type.get(cls)
        if name is None:
            name = _default_name(cls)
            _by_type[cls] = name
            _by_name[name] = cls
        return name


def _lookup(name: str) -> type:
    with _lock:
        cls = _by_name.get(name)
    if cls is None:
        raise ValueError(f"unknown type name {name!r} in encoded data")
    return cls


def check_value(value: Any) -> None:
    """Warn once per type about private dataclass fields reachable from value."""
    if isinstance(value, type):
        _check_type(value)
        return
    _check_type(type(value))
    if dataclasses.is_dataclass(value):
        for f in dataclasses.fields(value):
            check_value(getattr(value, f.name, None))
    elif isinstance(value, dict):
        for key, item in value.items():
            check_value(key)
            check_value(item)
    elif isinstance(value, (list, tuple, set, frozenset)):
        for item in value:
            check_value(item)


def _check_type(tp: Any) -> None:
    if typing.get_origin(tp) is not None:
        for arg in typing.get_args(tp):
            _check_type(arg)
        return
    if not isinstance(tp, type):
        return
    with _lock:
        if tp in _checked:
            return
        _checked.add(tp)
    if not dataclasses.is_dataclass(tp):
        return
    for f in dataclasses.fields(tp):
        if f.name.startswith("_"):
            logger.warning(
                "private field %s of %s will not be transmitted", f.name, tp.__name__
            )
            _note_error()
        # Annotations written as strings are not resolved; values reached
        # through check_value cover those fields.
        if not isinstance(f.type, str):
            _check_type(f.type)


def check_default(value: Any) -> None:
    """Warn if value holds non-default data that decoding would have to replace."""
    if value is None:
        return
    _check_default(value, 2, "")


def _check_default(value: Any, depth: int, name: str) -> None:
    global _error_count
    if depth > 3:
        return
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        for f in dataclasses.fields(value):
            child = f"{name}.{f.name}" if name else f.name
            _check_default(getattr(value, f.name, None), depth + 1, child)
        return
    if isinstance(value, (bool, int, float, str)) and value:
        with _lock:
            if _error_count < 1:
                logger.warning(
                    "decoding into a non-default variable/field %s may not work",
                    name or type(value).__name__,
                )
            _error_count += 1


def _to_wire(value: Any) -> Any:
    if isinstance(value, enum.Enum):
        return {"__enum__": _name_for(type(value)), "value": _to_wire(value.value)}
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    if isinstance(value, (bytes, bytearray)):
        return {"__bytes__": base64.b64encode(bytes(value)).decode("ascii")}
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return {
            "__type__": _name_for(type(value)),
            "fields": {
                f.name: _to_wire(getattr(value, f.name))
                for f in dataclasses.fields(value)
                if not f.name.startswith("_")
            },
        }
    if isinstance(value, dict):
        return {"__map__": [[_to_wire(k), _to_wire(v)] for k, v in value.items()]}
    if isinstance(value, list):
        return [_to_wire(item) for item in value]
    if isinstance(value, tuple):
        return {"__tuple__": [_to_wire(item) for item in value]}
    if isinstance(value, frozenset):
        return {"__frozenset__": [_to_wire(item) for item in value]}
    if isinstance(value, set):
        return {"__set__": [_to_wire(item) for item in value]}
    raise TypeError(f"cannot encode value of type {type(value).__name__}")


def _build(cls: type, data: dict[str, Any]) -> Any:
    obj = cls.__new__(cls)
    for f in dataclasses.fields(cls):
        if f.name in data and not f.name.startswith("_"):
            item = _from_wire(data[f.name])
        elif f.default is not dataclasses.MISSING:
            item = f.default
        elif f.default_factory is not dataclasses.MISSING:
            item = f.default_factory()
        else:
            item = None
        object.__setattr__(obj, f.name, item)
    return obj


def _from_wire(data: Any) -> Any:
    if isinstance(data, list):
        return [_from_wire(item) for item in data]
    if not isinstance(data, dict):
        return data
    if "__type__" in data:
        cls = _lookup(data["__type__"])
        if not dataclasses.is_dataclass(cls):
            raise ValueError(f"{data['__type__']!r} does not name a dataclass")
        return _build(cls, data.get("fields", {}))
    if "__enum__" in data:
        cls = _lookup(data["__enum__"])
        if not issubclass(cls, enum.Enum):
            raise ValueError(f"{data['__enum__']!r} does not name an enum")
        return cls(_from_wire(data["value"]))
    if "__map__" in data:
        return {_from_wire(k): _from_wire(v) for k, v in data["__map__"]}
    if "__tuple__" in data:
        return tuple(_from_wire(item) for item in data["__tuple__"])
    if "__set__" in data:
        return {_from_wire(item) for item in data["__set__"]}
    if "__frozenset__" in data:
        return frozenset(_from_wire(item) for item in data["__frozenset__"])
    if "__bytes__" in data:
        return base64.b64decode(data["__bytes__"])
    raise ValueError("malformed encoded value")


class Encoder:
    """Writes values, one per line, to a binary stream."""

    def __init__(self, stream: BinaryIO) -> None:
        self._stream = stream

    def encode(self, value: Any) -> None:
        check_value(value)
        payload = json.dumps(_to_wire(value), separators=(",", ":"))
        self._stream.write(payload.encode("utf-8") + b"\n")


class Decoder:
    """Reads values written by an Encoder from a binary stream."""

    def __init__(self, stream: BinaryIO) -> None:
        self._stream = stream

    def decode(self) -> Any:
        line = self._stream.readline()
        if not line:
            raise EOFError("no more values to decode")
        try:
            data = json.loads(line)
        except json.JSONDecodeError as exc:
            raise ValueError(f"malformed encoded value: {exc}") from exc
        return _from_wire(data)

    def decode_into(self, target: Any) -> Any:
        """Decode the next value and copy its public fields into target."""
        if not dataclasses.is_dataclass(target) or isinstance(target, type):
            raise TypeError("decode_into needs a dataclass instance")
        check_value(target)
        check_default(target)
        value = self.decode()
        if not isinstance(value, type(target)):
            raise TypeError(
                f"cannot decode {type(value).__name__} into {type(target).__name__}"
            )
        for f in dataclasses.fields(target):
            if not f.name.startswith("_"):
                object.__setattr__(target, f.name, getattr(value, f.name))
        return target