"""Narrow interface to the per-account worker pool used by the scheduler.

The production pool keeps one long-lived worker per account and serialises
access to it; it lives outside this package. `EphemeralWorkerPool` satisfies
the same interface with one fresh worker per request, which is enough for
local runs and tests.
"""

from __future__ import annotations

from typing import Any, Dict, Protocol

from seomcp.services.proxy_spawner import ToolInvocationSpawner


class WorkerHandle(Protocol):
    async def ensure_ready(self) -> None: ...

    async def send(self, request: Dict[str, Any]) -> Dict[str, Any]: ...


class WorkerPool(Protocol):
    def get_instance(self, owner_id: str, config_path: str) -> WorkerHandle: ...

    def kill_all(self) -> None: ...


class EphemeralWorkerHandle:
    def __init__(self, spawner: ToolInvocationSpawner, config_path: str, request_timeout: float) -> None:
        self._spawner = spawner
        self.config_path = config_path
        self.request_timeout = float(request_timeout)

    async def ensure_ready(self) -> None:
        # Nothing is kept running between requests.
        return None

    async def send(self, request: Dict[str, Any]) -> Dict[str, Any]:
        return await self._spawner.call_with_config(self.config_path, request, self.request_timeout)


class EphemeralWorkerPool:
    def __init__(self, spawner: ToolInvocationSpawner, *, request_timeout: float = 60.0) -> None:
        self._spawner = spawner
        self._request_timeout = float(request_timeout)
        self._handles: Dict[str, EphemeralWorkerHandle] = {}

    def get_instance(self, owner_id: str, config_path: str) -> EphemeralWorkerHandle:
        handle = self._handles.get(owner_id)
        if handle is None or handle.config_path != config_path:
            handle = EphemeralWorkerHandle(self._spawner, config_path, self._request_timeout)
            self._handles[owner_id] = handle
        return handle

    def kill_all(self) -> None:
        # Each request already reaps its own worker.
        self._handles.clear()
