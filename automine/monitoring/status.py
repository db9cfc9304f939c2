"""
In-memory status board for the /status endpoint and the CLI.

Publishers replace a component's payload wholesale; readers get a copy
taken under the lock, never a live reference.
"""

from __future__ import annotations

import asyncio
import copy
from typing import Any, Dict


class StatusBoard:
    def __init__(self) -> None:
        self._data: Dict[str, Dict[str, Any]] = {}
        self._lock = asyncio.Lock()

    async def update(self, component: str, payload: Dict[str, Any]) -> None:
        async with self._lock:
            self._data[component] = payload

    async def snapshot(self) -> Dict[str, Dict[str, Any]]:
        async with self._lock:
            return copy.deepcopy(self._data)
