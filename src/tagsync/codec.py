"""Entry key codec: (endpoint, args) -> canonical string key."""

from __future__ import annotations

import json
import math
from collections.abc import Mapping
from typing import Any


class _Unset:
    __slots__ = ()

    def __repr__(self) -> str:
        return "UNSET"


# Fields set to UNSET are left out of the key, as if never passed
UNSET: Any = _Unset()


def check_args(args: Any, *, path: str = "args") -> None:
    """Reject argument values that cannot be encoded into a key.

    Raises:
        TypeError: on callables or any other non-JSON value.
        ValueError: on NaN or infinite floats.
    """
    if args is None or args is UNSET or isinstance(args, (str, bool, int)):
        return
    if isinstance(args, float):
        if not math.isfinite(args):
            raise ValueError(f"{path}: non-finite float {args!r} cannot be encoded")
        return
    if isinstance(args, Mapping):
        for name, value in args.items():
            if not isinstance(name, str):
                raise TypeError(f"{path}: keys must be strings, got {name!r}")
            check_args(value, path=f"{path}.{name}")
        return
    if isinstance(args, (list, tuple)):
        for i, value in enumerate(args):
            check_args(value, path=f"{path}[{i}]")
        return
    raise TypeError(f"{path}: {type(args).__name__} values cannot be encoded")


def _strip_unset(value: Any) -> Any:
    if isinstance(value, Mapping):
        return {k: _strip_unset(v) for k, v in value.items() if v is not UNSET}
    if isinstance(value, (list, tuple)):
        return [_strip_unset(v) for v in value]
    return value


def encode_key(endpoint: str, args: Any = None) -> str:
    """Encode an endpoint call into its cache key.

    Object keys are sorted, so ``{"a": 1, "b": 2}`` and ``{"b": 2, "a": 1}``
    produce the same key. Arguments must already have passed ``check_args``.

        encode_key("lectures_by_course", {"course_id": "c1"})
        # 'lectures_by_course({"course_id":"c1"})'
    """
    if args is None or args is UNSET:
        return f"{endpoint}()"
    body = json.dumps(
        _strip_unset(args),
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
        allow_nan=False,
    )
    return f"{endpoint}({body})"


__all__ = ["UNSET", "check_args", "encode_key"]
