"""Per-request worker spawner for the proxy tool call.

Each call:
1. Writes TWO temp files: service-account JSON + TOML config
2. Spawns the worker with SEO_MCP_CONFIG pointing to the TOML
3. Sends MCP initialize + tools/call via stdin
4. Reads the matching response from stdout
5. Kills the process and deletes the temp files on every exit path

The spawner does not bound concurrency itself: callers hold a
ConcurrencyPool slot around `invoke`.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import tempfile
import time
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence

from seomcp import jsonrpc
from seomcp.services.worker_config import CredentialBundle, build_worker_toml, write_private_file


logger = logging.getLogger(__name__)

# RAM-backed on Linux, system temp elsewhere.
DEFAULT_TEMP_DIR = "/dev/shm" if os.path.isdir("/dev/shm") else tempfile.gettempdir()

CONFIG_ENV_VAR = "SEO_MCP_CONFIG"
INIT_ID = "__proxy_init__"
CALL_ID = "__proxy_call__"

INIT_TIMEOUT_CAP_SECONDS = 10.0
KILL_GRACE_SECONDS = 2.0
# Reports can be large single lines.
STDOUT_LINE_LIMIT = 16 * 1024 * 1024

INIT_FAILED = "INIT_FAILED"
AUTH_ERROR = "AUTH_ERROR"
PERMISSION_ERROR = "PERMISSION_ERROR"
VALIDATION_ERROR = "VALIDATION_ERROR"
TOOL_ERROR = "TOOL_ERROR"
TIMEOUT = "TIMEOUT"
CRASH = "CRASH"
SPAWN_ERROR = "SPAWN_ERROR"

STATUS_BY_CODE = {
    INIT_FAILED: 500,
    AUTH_ERROR: 401,
    PERMISSION_ERROR: 403,
    VALIDATION_ERROR: 422,
    TOOL_ERROR: 500,
    TIMEOUT: 500,
    CRASH: 500,
    SPAWN_ERROR: 500,
}


class WorkerInitError(Exception):
    pass


class WorkerTimeout(Exception):
    pass


class WorkerCrashed(Exception):
    pass


@dataclass
class SpawnResult:
    ok: bool
    content: Any = None
    status: int = 200
    error: Optional[str] = None
    code: Optional[str] = None

    @classmethod
    def failure(cls, code: str, error: str) -> "SpawnResult":
        return cls(ok=False, status=STATUS_BY_CODE.get(code, 500), error=error, code=code)

    def to_dict(self) -> Dict[str, Any]:
        if self.ok:
            return {"ok": True, "content": self.content}
        return {"ok": False, "status": self.status, "error": self.error, "code": self.code}


def classify_tool_error(message: str, data: str = "") -> SpawnResult:
    """Map worker error text to a typed failure.

    The worker's wording is not a stable contract, so this is best-effort
    substring matching.
    """
    combined = f"{message} {data}".lower()

    if "permission" in combined or "forbidden" in combined or "403" in combined:
        return SpawnResult.failure(PERMISSION_ERROR, message)
    if "unauthorized" in combined or "invalid_grant" in combined or "401" in combined:
        return SpawnResult.failure(AUTH_ERROR, message)
    if "invalid" in combined or "bad request" in combined or "400" in combined:
        return SpawnResult.failure(VALIDATION_ERROR, message)
    return SpawnResult.failure(TOOL_ERROR, message)


def unwrap_content(result: Any) -> Any:
    if isinstance(result, dict) and result.get("content") is not None:
        return result["content"]
    return result


class WorkerSession:
    """One spawned worker speaking newline-delimited JSON-RPC over stdio."""

    def __init__(self, proc: asyncio.subprocess.Process, correlation_id: str) -> None:
        self.proc = proc
        self.correlation_id = correlation_id
        self._tasks: List[asyncio.Task] = []
        if proc.stderr is not None:
            self._tasks.append(asyncio.ensure_future(self._drain_stderr()))

    async def _drain_stderr(self) -> None:
        # Keep the pipe empty so the worker can never block on a full stderr.
        assert self.proc.stderr is not None
        while True:
            line = await self.proc.stderr.readline()
            if not line:
                return
            text = line.decode("utf-8", errors="replace").rstrip()
            if text:
                logger.debug("worker stderr: %s", text, extra={"correlation_id": self.correlation_id})

    async def write(self, message: Dict[str, Any]) -> None:
        if self.proc.stdin is None:
            raise WorkerCrashed("Worker stdin is not available")
        try:
            self.proc.stdin.write(jsonrpc.encode(message))
            await self.proc.stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as exc:
            raise WorkerCrashed(f"Worker closed stdin: {exc}") from exc

    async def _read_until(self, expected_id: jsonrpc.RequestId) -> Dict[str, Any]:
        assert self.proc.stdout is not None
        while True:
            line = await self.proc.stdout.readline()
            if not line:
                raise WorkerCrashed("Worker stdout closed before response")
            msg = jsonrpc.parse_line(line)
            # Non-JSON output and unrelated messages are worker log noise.
            if msg is not None and msg.get("id") == expected_id:
                return msg

    async def read_response(self, expected_id: jsonrpc.RequestId, timeout: float) -> Dict[str, Any]:
        try:
            return await asyncio.wait_for(self._read_until(expected_id), timeout)
        except asyncio.TimeoutError:
            raise WorkerTimeout(f"Worker response timed out after {timeout:g}s") from None

    async def initialize(self, timeout: float) -> Dict[str, Any]:
        await self.write(jsonrpc.initialize_request(INIT_ID))
        response = await self.read_response(INIT_ID, timeout)
        if response.get("error"):
            raise WorkerInitError(f"MCP init failed: {jsonrpc.error_text(response)}")
        await self.write(jsonrpc.build_notification("notifications/initialized"))
        return response

    async def call(self, request: Dict[str, Any], timeout: float) -> Dict[str, Any]:
        await self.write(request)
        return await self.read_response(request["id"], timeout)

    async def close(self, grace: float = KILL_GRACE_SECONDS) -> None:
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)

        proc = self.proc
        if proc.returncode is None:
            try:
                proc.terminate()
            except ProcessLookupError:
                pass
            try:
                await asyncio.wait_for(proc.wait(), grace)
            except asyncio.TimeoutError:
                logger.warning(
                    "worker ignored SIGTERM, killing",
                    extra={"correlation_id": self.correlation_id, "pid": proc.pid},
                )
                try:
                    proc.kill()
                except ProcessLookupError:
                    pass
                await proc.wait()


class ToolInvocationSpawner:
    def __init__(
        self,
        command: Sequence[str],
        *,
        temp_dir: Optional[str] = None,
        worker_log_level: str = "warn",
        init_timeout_cap: float = INIT_TIMEOUT_CAP_SECONDS,
        kill_grace: float = KILL_GRACE_SECONDS,
    ) -> None:
        if not command:
            raise ValueError("worker command is empty")
        self.command = list(command)
        self.temp_dir = temp_dir or DEFAULT_TEMP_DIR
        self.worker_log_level = worker_log_level
        self.init_timeout_cap = float(init_timeout_cap)
        self.kill_grace = float(kill_grace)

    def _worker_env(self, config_path: str) -> Dict[str, str]:
        env = {
            CONFIG_ENV_VAR: config_path,
            "RUST_LOG": self.worker_log_level,
        }
        for name in ("PATH", "HOME", "TMPDIR"):
            value = os.environ.get(name)
            if value:
                env[name] = value
        return env

    @asynccontextmanager
    async def _session(self, config_path: str, correlation_id: str) -> AsyncIterator[WorkerSession]:
        proc = await asyncio.create_subprocess_exec(
            *self.command,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env=self._worker_env(config_path),
            limit=STDOUT_LINE_LIMIT,
        )
        session = WorkerSession(proc, correlation_id)
        try:
            yield session
        finally:
            await session.close(self.kill_grace)

    async def invoke(
        self,
        tool_name: str,
        arguments: Optional[Dict[str, Any]],
        credentials: CredentialBundle,
        timeout: float,
    ) -> SpawnResult:
        """Run exactly one tool call in a fresh worker."""
        correlation_id = uuid.uuid4().hex
        sa_path = os.path.join(self.temp_dir, f"seomcp-{correlation_id}-sa.json")
        toml_path = os.path.join(self.temp_dir, f"seomcp-{correlation_id}.toml")
        started = time.monotonic()
        log_extra = {"correlation_id": correlation_id, "tool": tool_name}

        try:
            write_private_file(sa_path, json.dumps(credentials.service_account))
            write_private_file(toml_path, build_worker_toml(sa_path, credentials))

            async with self._session(toml_path, correlation_id) as session:
                await session.initialize(min(float(timeout), self.init_timeout_cap))
                response = await session.call(jsonrpc.tool_call_request(CALL_ID, tool_name, arguments), float(timeout))

            if response.get("error"):
                result = classify_tool_error(jsonrpc.error_text(response), jsonrpc.error_data_text(response))
            else:
                result = SpawnResult(ok=True, content=unwrap_content(response.get("result")))
        except WorkerInitError as exc:
            result = SpawnResult.failure(INIT_FAILED, str(exc))
        except WorkerTimeout as exc:
            logger.warning("worker timed out", extra=log_extra)
            result = SpawnResult.failure(TIMEOUT, str(exc))
        except WorkerCrashed as exc:
            logger.warning("worker crashed: %s", exc, extra=log_extra)
            result = SpawnResult.failure(CRASH, "Worker crashed during execution")
        except Exception as exc:  # noqa: BLE001
            logger.exception("worker spawn failed", extra=log_extra)
            result = SpawnResult.failure(SPAWN_ERROR, str(exc) or exc.__class__.__name__)
        finally:
            for path in (sa_path, toml_path):
                try:
                    os.unlink(path)
                except OSError:
                    pass

        logger.info(
            "proxy_tool_call",
            extra={
                **log_extra,
                "ok": result.ok,
                "code": result.code,
                "duration_ms": int((time.monotonic() - started) * 1000),
            },
        )
        return result

    async def call_with_config(self, config_path: str, request: Dict[str, Any], timeout: float) -> Dict[str, Any]:
        """Handshake with a fresh worker on an existing config and relay one request.

        Returns the raw JSON-RPC response; worker failures raise
        WorkerInitError / WorkerTimeout / WorkerCrashed.
        """
        async with self._session(config_path, uuid.uuid4().hex) as session:
            await session.initialize(min(float(timeout), self.init_timeout_cap))
            return await session.call(request, float(timeout))
