"""Scheduled job engine.

Polls every `poll_interval` seconds for due jobs, runs each one through the
owner's worker from the worker pool, stores results in audit history and
sends webhooks.

Concurrency: at most `max_concurrent` jobs run at once; each job is its own
asyncio task with its own error boundary, so a failing job can never take the
poll loop down. Timeout: `run_timeout` seconds per run, on top of the worker
handle's own per-request timeout.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, Optional, Set

from seomcp import jsonrpc
from seomcp.audit.history import extract_health_score
from seomcp.scheduler import repo
from seomcp.scheduler.periodicity import calculate_next_run, utcnow
from seomcp.services.proxy_spawner import WorkerTimeout
from seomcp.services.worker_pool import WorkerPool
from seomcp.usage.tracker import Principal


logger = logging.getLogger(__name__)

POLL_INTERVAL_SECONDS = 60.0
MAX_CONCURRENT_RUNS = 3
RUN_TIMEOUT_SECONDS = 5 * 60.0
PRUNE_EVERY_N_POLLS = 10

CANCELLED_ERROR = "Scheduled run cancelled"


@dataclass
class RunOutcome:
    job_id: str
    success: bool
    error: Optional[str]
    health_score: Optional[int]
    next_run_at: Optional[datetime]
    duration_ms: int


class ScheduleEngine:
    """Owns the poll loop and the in-flight job tasks.

    Collaborators:
    - worker_pool: get_instance(owner_id, config_path) -> handle with
      ensure_ready() / send(request)
    - config_resolver: owner_id -> worker config path (refreshes credentials)
    - usage: check_and_increment(principal), log_usage(principal, tool, outcome, ms)
    - audit: capture_audit(owner_id, key_id, tool, args, result, ms, plan)
    - webhooks: notify_scheduled_job_result(...), prune_stale_deliveries()
    """

    def __init__(
        self,
        database_url: str,
        worker_pool: WorkerPool,
        config_resolver: Callable[[str], str],
        *,
        usage: Any,
        audit: Any,
        webhooks: Any,
        poll_interval: float = POLL_INTERVAL_SECONDS,
        max_concurrent: int = MAX_CONCURRENT_RUNS,
        run_timeout: float = RUN_TIMEOUT_SECONDS,
        prune_every: int = PRUNE_EVERY_N_POLLS,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.database_url = database_url
        self._pool = worker_pool
        self._resolve_config = config_resolver
        self._usage = usage
        self._audit = audit
        self._webhooks = webhooks

        self.poll_interval = float(poll_interval)
        self.max_concurrent = max(1, int(max_concurrent))
        self.run_timeout = float(run_timeout)
        self.prune_every = max(1, int(prune_every))
        self._clock = clock

        self._loop_task: Optional[asyncio.Task] = None
        self._tasks: Set[asyncio.Task] = set()
        self._running: Set[str] = set()
        self._active = 0
        self._poll_count = 0
        self._last_poll_at: Optional[datetime] = None

    @property
    def active_runs(self) -> int:
        return self._active

    @property
    def running(self) -> bool:
        return self._loop_task is not None and not self._loop_task.done()

    def status(self) -> Dict[str, Any]:
        return {
            "running": self.running,
            "active_runs": self._active,
            "max_concurrent": self.max_concurrent,
            "poll_count": self._poll_count,
            "last_poll_at": self._last_poll_at.isoformat() + "Z" if self._last_poll_at else None,
        }

    # -- lifecycle ---------------------------------------------------------

    def start(self) -> None:
        if self.running:
            return
        self._loop_task = asyncio.create_task(self._poll_forever(), name="schedule-engine-poll")
        logger.info("scheduler started", extra={"poll_interval": self.poll_interval})

    async def stop(self, *, cancel_runs: bool = True) -> None:
        task, self._loop_task = self._loop_task, None
        if task is not None:
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)

        pending = list(self._tasks)
        if cancel_runs:
            for t in pending:
                t.cancel()
        await asyncio.gather(*pending, return_exceptions=True)

        self._pool.kill_all()
        logger.info("scheduler stopped")

    async def join(self) -> None:
        """Wait until every in-flight job task has finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def _poll_forever(self) -> None:
        while True:
            try:
                await self.poll_once()
            except Exception:  # noqa: BLE001
                logger.exception("scheduler poll failed")
            await asyncio.sleep(self.poll_interval)

    # -- polling -----------------------------------------------------------

    async def poll_once(self) -> int:
        """One tick: housekeeping, then launch due jobs into free slots."""
        self._poll_count += 1
        now = self._clock()
        self._last_poll_at = now

        if self._poll_count % self.prune_every == 0:
            try:
                await asyncio.to_thread(self._webhooks.prune_stale_deliveries)
            except Exception as exc:  # noqa: BLE001
                logger.warning("webhook delivery prune failed: %s", exc)

        slots = self.max_concurrent - self._active
        if slots <= 0:
            return 0

        # Over-fetch by the number already running so a long run still marked
        # due doesn't hide the next job in line.
        due = await asyncio.to_thread(
            repo.fetch_due_jobs,
            self.database_url,
            now=now,
            limit=slots + len(self._running),
        )
        launched = 0
        for job in due:
            if launched >= slots:
                break
            if job["id"] in self._running:
                continue
            self._launch(job)
            launched += 1
        return launched

    async def run_now(self, job_id: str, owner_id: str) -> bool:
        """Manual trigger. The result arrives via job record, audit history and webhook."""
        job = await asyncio.to_thread(repo.get_run_context, self.database_url, job_id, owner_id)
        if job is None:
            return False
        if job["id"] in self._running:
            logger.info("scheduled job already running", extra={"schedule_id": job["id"]})
            return True
        self._launch(job)
        return True

    def _launch(self, job: Dict[str, Any]) -> asyncio.Task:
        self._active += 1
        self._running.add(job["id"])
        task = asyncio.create_task(self._run_job(job), name=f"scheduled-job-{job['id']}")
        self._tasks.add(task)
        task.add_done_callback(lambda t, job_id=job["id"]: self._on_job_done(t, job_id))
        return task

    def _on_job_done(self, task: asyncio.Task, job_id: str) -> None:
        self._active -= 1
        self._running.discard(job_id)
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("scheduled job run failed", exc_info=exc, extra={"schedule_id": job_id})

    # -- one run -----------------------------------------------------------

    async def _run_job(self, job: Dict[str, Any]) -> RunOutcome:
        started = time.monotonic()
        owner_id = str(job["user_id"])
        tool_name = str(job["tool_name"])
        args = {"site_url": job["site_url"]}
        principal = Principal(
            user_id=owner_id,
            email=str(job.get("email") or ""),
            plan=str(job.get("plan") or "free"),
            api_key_id=job.get("api_key_id"),
            email_verified=bool(job.get("email_verified", True)),
        )

        success = False
        error: Optional[str] = None
        score: Optional[int] = None

        try:
            config_path = await asyncio.to_thread(self._resolve_config, owner_id)
            handle = self._pool.get_instance(owner_id, config_path)
            await handle.ensure_ready()

            # Scheduled runs consume the owner's monthly quota.
            rate = await asyncio.to_thread(self._usage.check_and_increment, principal)
            if not rate.allowed:
                error = f"Rate limit exceeded ({rate.used}/{rate.limit} calls this month)"
                await asyncio.to_thread(self._usage.log_usage, principal, tool_name, "rate_limited", 0)
            else:
                success, error, score = await self._call_tool(job, handle, principal, args, started)
        except asyncio.CancelledError:
            error = CANCELLED_ERROR
            raise
        except Exception as exc:  # noqa: BLE001
            logger.exception("scheduled job setup failed", extra={"schedule_id": job["id"]})
            error = str(exc) or exc.__class__.__name__
        finally:
            outcome = await self._finish(job, success, error, score, started)

        return outcome

    async def _call_tool(
        self,
        job: Dict[str, Any],
        handle: Any,
        principal: Principal,
        args: Dict[str, Any],
        started: float,
    ):
        tool_name = str(job["tool_name"])
        request = jsonrpc.tool_call_request(f"__sched_{uuid.uuid4().hex}__", tool_name, args)

        success = False
        error: Optional[str] = None
        score: Optional[int] = None
        response: Dict[str, Any] = {}
        try:
            response = await asyncio.wait_for(handle.send(request), self.run_timeout)
        except asyncio.CancelledError:
            duration_ms = int((time.monotonic() - started) * 1000)
            await asyncio.to_thread(self._usage.log_usage, principal, tool_name, "error", duration_ms)
            raise
        except (asyncio.TimeoutError, WorkerTimeout) as exc:
            outcome = "timeout"
            error = str(exc) or f"Scheduled run timed out after {self.run_timeout:g}s"
        except Exception as exc:  # noqa: BLE001
            outcome = "error"
            error = str(exc) or exc.__class__.__name__
        else:
            if response.get("error"):
                outcome = "error"
                error = jsonrpc.error_text(response) or "Tool returned error"
            else:
                outcome = "success"
                success = True

        duration_ms = int((time.monotonic() - started) * 1000)
        await asyncio.to_thread(self._usage.log_usage, principal, tool_name, outcome, duration_ms)

        if success:
            result = response.get("result")
            await asyncio.to_thread(
                self._audit.capture_audit,
                principal.user_id,
                principal.api_key_id,
                tool_name,
                args,
                result,
                duration_ms,
                principal.plan,
            )
            score = extract_health_score(result)

        return success, error, score

    async def _finish(
        self,
        job: Dict[str, Any],
        success: bool,
        error: Optional[str],
        score: Optional[int],
        started: float,
    ) -> RunOutcome:
        now = self._clock()
        next_run: Optional[datetime] = None
        try:
            next_run = calculate_next_run(job["schedule"], job["schedule_hour"], job.get("schedule_day"), now=now)
            await asyncio.to_thread(
                repo.record_run,
                self.database_url,
                job["id"],
                ran_at=now,
                next_run_at=next_run,
                error=error,
            )
        except Exception:  # noqa: BLE001
            logger.exception("failed to record scheduled run", extra={"schedule_id": job["id"]})

        try:
            self._webhooks.notify_scheduled_job_result(
                job["user_id"], job["id"], job["tool_name"], job["site_url"], score, success, error
            )
        except Exception:  # noqa: BLE001
            logger.exception("failed to queue scheduled run webhook", extra={"schedule_id": job["id"]})

        duration_ms = int((time.monotonic() - started) * 1000)
        logger.log(
            logging.INFO if success else logging.WARNING,
            "scheduled_job_run",
            extra={
                "schedule_id": job["id"],
                "user_id": job["user_id"],
                "site": job["site_url"],
                "tool": job["tool_name"],
                "success": success,
                "error": error,
                "health_score": score,
                "duration_ms": duration_ms,
            },
        )
        return RunOutcome(
            job_id=job["id"],
            success=success,
            error=error,
            health_score=score,
            next_run_at=next_run,
            duration_ms=duration_ms,
        )
