"""
Fast JSON utilities backed by orjson.

Decimals (all SOL / ORE amounts) are rendered as JSON numbers, which is what
both the refinORE API and the log pipeline expect.

Usage:
    from automine.core.json_utils import dumps, loads

    log.info(dumps({"event": "round_end", "sol_earned": Decimal("0.019")}))
"""

from __future__ import annotations

from decimal import Decimal
from typing import Any

import orjson


def _default(obj: Any) -> Any:
    if isinstance(obj, Decimal):
        return float(obj)
    if isinstance(obj, (set, frozenset, tuple)):
        return list(obj)
    raise TypeError(f"Type is not JSON serializable: {type(obj).__name__}")


def dumps(obj: Any) -> str:
    """JSON encode to string."""
    return orjson.dumps(obj, default=_default).decode("utf-8")


def dumps_bytes(obj: Any) -> bytes:
    """JSON encode to bytes (request bodies)."""
    return orjson.dumps(obj, default=_default)


def loads(s: str | bytes) -> Any:
    """JSON decode."""
    return orjson.loads(s)
