from __future__ import annotations

import asyncio
import functools
import logging
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional
from urllib.parse import urlparse

from fastmcp import FastMCP
from sqlalchemy.exc import SQLAlchemyError

from seomcp import accounts
from seomcp.audit.history import AuditHistory, should_capture
from seomcp.config import SCHEDULABLE_TOOLS, GatewayConfig, plan_limits
from seomcp.db import init_db
from seomcp.logging_setup import configure_logging
from seomcp.scheduler import repo
from seomcp.scheduler.engine import ScheduleEngine
from seomcp.scheduler.periodicity import calculate_next_run, describe_schedule, validate_schedule
from seomcp.services.concurrency_pool import ConcurrencyPool, PoolFullError
from seomcp.services.proxy_spawner import TIMEOUT, ToolInvocationSpawner
from seomcp.services.worker_config import CredentialBundle, CredentialError, UserConfigStore, validate_property_config
from seomcp.services.worker_pool import EphemeralWorkerPool
from seomcp.usage.tracker import UsageTracker
from seomcp.webhooks.notifier import WebhookNotifier


logger = logging.getLogger(__name__)

mcp = FastMCP("seomcp-gateway")


@dataclass
class GatewayRuntime:
    config: GatewayConfig
    proxy_pool: ConcurrencyPool
    spawner: ToolInvocationSpawner
    usage: UsageTracker
    audit: AuditHistory
    webhooks: WebhookNotifier
    configs: UserConfigStore
    engine: ScheduleEngine


_RUNTIME: Optional[GatewayRuntime] = None


def build_runtime(cfg: GatewayConfig) -> GatewayRuntime:
    init_db(cfg.database_url)

    spawner = ToolInvocationSpawner(cfg.worker_command, worker_log_level=cfg.worker_log_level)
    usage = UsageTracker(cfg.database_url)
    audit = AuditHistory(cfg.database_url)
    webhooks = WebhookNotifier(cfg.database_url, signing_secret=cfg.webhook_secret)
    configs = UserConfigStore(
        cfg.user_config_dir,
        token_lookup=functools.partial(accounts.get_google_tokens, cfg.database_url),
        oauth_client_id=cfg.google_client_id,
        oauth_client_secret=cfg.google_client_secret,
    )
    engine = ScheduleEngine(
        cfg.database_url,
        EphemeralWorkerPool(spawner, request_timeout=cfg.proxy_timeout_seconds),
        configs.resolve,
        usage=usage,
        audit=audit,
        webhooks=webhooks,
        poll_interval=cfg.poll_interval_seconds,
        max_concurrent=cfg.scheduler_max_concurrent,
        run_timeout=cfg.run_timeout_seconds,
    )
    return GatewayRuntime(
        config=cfg,
        proxy_pool=ConcurrencyPool(cfg.proxy_max_concurrent),
        spawner=spawner,
        usage=usage,
        audit=audit,
        webhooks=webhooks,
        configs=configs,
        engine=engine,
    )


def set_runtime(runtime: Optional[GatewayRuntime]) -> None:
    global _RUNTIME
    _RUNTIME = runtime


def _runtime() -> GatewayRuntime:
    global _RUNTIME
    if _RUNTIME is None:
        _RUNTIME = build_runtime(GatewayConfig.from_env())
    return _RUNTIME


def _err(error: str, code: str, status: int = 400, **extra: Any) -> Dict[str, Any]:
    return {"ok": False, "error": error, "code": code, "status": status, **extra}


def _iso(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.replace(microsecond=0).isoformat() + "Z"
    return value


def _job_view(job: Dict[str, Any]) -> Dict[str, Any]:
    view = {k: _iso(v) for k, v in job.items()}
    view["description"] = describe_schedule(job["schedule"], job["schedule_hour"], job.get("schedule_day"))
    return view


def normalize_site_url(site_url: str) -> Optional[str]:
    """Reduce a site URL (with or without scheme) to its hostname."""
    raw = (site_url or "").strip()
    if not raw:
        return None
    if not raw.startswith("http"):
        raw = f"https://{raw}"
    try:
        host = urlparse(raw).hostname
    except ValueError:
        return None
    return host or None


# -- proxy ------------------------------------------------------------------


async def proxy_tool_call(
    owner_id: str,
    tool: str,
    credentials: Dict[str, Any],
    arguments: Optional[Dict[str, Any]] = None,
    api_key_id: Optional[str] = None,
) -> Dict[str, Any]:
    """Run one tool call in a fresh worker using caller-supplied Google credentials.

    Args:
        owner_id: Account the call is billed to
        tool: Worker tool name (e.g. generate_report, site_audit)
        credentials: {"google_service_account": {...}, "gsc_property": "...", "ga4_property": "id:domain,..."}
        arguments: Tool arguments
        api_key_id: Key the call is attributed to
    """
    rt = _runtime()

    if not tool or not isinstance(tool, str):
        return _err("Missing or invalid 'tool' field", "MISSING_TOOL")

    try:
        bundle = CredentialBundle.from_payload(credentials)
    except CredentialError as exc:
        return _err(str(exc), exc.code)

    validation = validate_property_config(bundle)
    if not validation.valid:
        return _err("; ".join(validation.errors), "INVALID_PROPERTIES", warnings=validation.warnings)

    principal = await asyncio.to_thread(accounts.get_principal, rt.config.database_url, owner_id, api_key_id)
    if principal is None:
        return _err("Account not found", "NOT_FOUND", 404)

    try:
        rate = await asyncio.to_thread(rt.usage.check_and_increment, principal)
    except SQLAlchemyError:
        logger.exception("quota check failed", extra={"user_id": principal.user_id})
        return _err("Usage tracking is unavailable, please retry", "QUOTA_UNAVAILABLE", 503)
    if not rate.allowed:
        await asyncio.to_thread(rt.usage.log_usage, principal, tool, "rate_limited", 0)
        return _err("Monthly rate limit exceeded", "RATE_LIMITED", 429, limit=rate.limit, used=rate.used)

    try:
        release = await rt.proxy_pool.acquire(rt.config.pool_acquire_timeout_seconds)
    except PoolFullError:
        return _err("Server is at capacity, please retry in a few seconds", "POOL_FULL", 503)

    started = time.monotonic()
    try:
        result = await rt.spawner.invoke(tool, arguments or {}, bundle, rt.config.proxy_timeout_seconds)
    finally:
        release()
    duration_ms = int((time.monotonic() - started) * 1000)

    if result.ok:
        outcome = "success"
    elif result.code == TIMEOUT:
        outcome = "timeout"
    else:
        outcome = "error"
    await asyncio.to_thread(rt.usage.log_usage, principal, tool, outcome, duration_ms)

    if result.ok and should_capture(tool):
        await asyncio.to_thread(
            rt.audit.capture_audit,
            principal.user_id,
            principal.api_key_id,
            tool,
            arguments or {},
            result.content,
            duration_ms,
            principal.plan,
        )

    out = result.to_dict()
    if validation.warnings:
        out["warnings"] = validation.warnings
    return out


# -- schedules --------------------------------------------------------------


def gateway_health() -> Dict[str, Any]:
    rt = _runtime()
    return {
        "ok": True,
        "service": "seomcp-gateway",
        "db": rt.config.database_url.split(":", 1)[0],
        "scheduler": rt.engine.status(),
        "proxy_pool": {
            "active": rt.proxy_pool.active,
            "max": rt.proxy_pool.max,
            "queued": rt.proxy_pool.queued,
        },
    }


def schedules_list(owner_id: str) -> Dict[str, Any]:
    rt = _runtime()
    principal = accounts.get_principal(rt.config.database_url, owner_id)
    if principal is None:
        return _err("Account not found", "NOT_FOUND", 404)

    jobs = repo.list_jobs(rt.config.database_url, owner_id)
    limits = plan_limits(principal.plan)
    return {
        "ok": True,
        "schedules": [_job_view(j) for j in jobs],
        "limits": {
            "used": len(jobs),
            "max": limits.max_schedules if limits else 0,
            "plan": principal.plan,
        },
    }


def schedules_get(owner_id: str, schedule_id: str) -> Dict[str, Any]:
    job = repo.get_job(_runtime().config.database_url, schedule_id, owner_id)
    if job is None:
        return _err("Schedule not found", "NOT_FOUND", 404)
    return {"ok": True, "schedule": _job_view(job)}


def schedules_create(
    owner_id: str,
    site_url: str,
    schedule: str,
    hour: int = 6,
    day: Optional[int] = None,
    tool_name: str = "generate_report",
    api_key_id: Optional[str] = None,
) -> Dict[str, Any]:
    """Create a recurring audit.

    Args:
        owner_id: Owning account
        site_url: Site to audit (normalised to its hostname)
        schedule: daily, weekly or monthly
        hour: UTC hour 0-23
        day: Weekday 0-6 (Mon=0) for weekly, day of month 1-28 for monthly
        tool_name: One of generate_report, site_audit, crawl_page
        api_key_id: Key the runs are attributed to (default: first active key)
    """
    db = _runtime().config.database_url

    if tool_name not in SCHEDULABLE_TOOLS:
        return _err(f"Tool must be one of: {', '.join(SCHEDULABLE_TOOLS)}", "INVALID_TOOL")

    principal = accounts.get_principal(db, owner_id)
    if principal is None:
        return _err("Account not found", "NOT_FOUND", 404)

    limits = plan_limits(principal.plan)
    max_schedules = limits.max_schedules if limits else 0
    if max_schedules is not None and repo.count_jobs(db, owner_id) >= max_schedules:
        if max_schedules == 0:
            msg = f"Scheduled audits are not available on the {principal.plan} plan"
        else:
            msg = f"Maximum {max_schedules} scheduled audits for the {principal.plan} plan"
        return _err(msg, "PLAN_LIMIT", 403)

    key_id = accounts.find_active_key(db, owner_id, api_key_id)
    if key_id is None:
        if api_key_id:
            return _err("API key not found or inactive", "INVALID_KEY")
        return _err("No active API key found", "INVALID_KEY")

    host = normalize_site_url(site_url)
    if host is None:
        return _err("Invalid site URL", "INVALID_SITE")

    try:
        job = repo.create_job(
            db,
            owner_id=owner_id,
            api_key_id=key_id,
            site_url=host,
            tool_name=tool_name,
            schedule=schedule,
            hour=hour,
            day=day,
        )
    except ValueError as exc:
        return _err(str(exc), "INVALID_SCHEDULE")
    return {"ok": True, "schedule": _job_view(job)}


def schedules_update(
    owner_id: str,
    schedule_id: str,
    is_active: Optional[bool] = None,
    schedule: Optional[str] = None,
    hour: Optional[int] = None,
    day: Optional[int] = None,
    clear_day: bool = False,
) -> Dict[str, Any]:
    """Pause/resume a schedule or change its periodicity.

    `day` is left unchanged when omitted; pass clear_day=true to remove it.
    """
    db = _runtime().config.database_url
    kwargs: Dict[str, Any] = {"is_active": is_active, "schedule": schedule, "hour": hour}
    if clear_day:
        kwargs["day"] = None
    elif day is not None:
        kwargs["day"] = day

    try:
        job = repo.update_job(db, schedule_id, owner_id, **kwargs)
    except ValueError as exc:
        return _err(str(exc), "INVALID_SCHEDULE")
    if job is None:
        return _err("Schedule not found", "NOT_FOUND", 404)

    view = _job_view(job)
    if not job["is_active"]:
        view["next_run_at"] = None
    return {
        "ok": True,
        "message": "Schedule updated" if job["is_active"] else "Schedule paused",
        "schedule": view,
    }


def schedules_delete(owner_id: str, schedule_id: str) -> Dict[str, Any]:
    if not repo.delete_job(_runtime().config.database_url, schedule_id, owner_id):
        return _err("Schedule not found", "NOT_FOUND", 404)
    return {"ok": True}


async def schedules_run_now(owner_id: str, schedule_id: str) -> Dict[str, Any]:
    """Run a schedule immediately. Results arrive on the job record, audit history and webhook."""
    if not await _runtime().engine.run_now(schedule_id, owner_id):
        return _err("Schedule not found", "NOT_FOUND", 404)
    return {"ok": True, "message": "Scheduled audit triggered"}


def schedules_preview(schedule: str, hour: int = 6, day: Optional[int] = None) -> Dict[str, Any]:
    ok, err = validate_schedule(schedule, hour, day)
    if not ok:
        return _err(err or "Invalid schedule", "INVALID_SCHEDULE")
    return {
        "ok": True,
        "next_run_at": _iso(calculate_next_run(schedule, hour, day)),
        "description": describe_schedule(schedule, hour, day),
    }


# -- webhooks / history -----------------------------------------------------


def webhook_set_url(owner_id: str, url: Optional[str] = None) -> Dict[str, Any]:
    try:
        found = _runtime().webhooks.set_webhook_url(owner_id, url)
    except ValueError as exc:
        return _err(str(exc), "INVALID_WEBHOOK_URL")
    if not found:
        return _err("Account not found", "NOT_FOUND", 404)
    return {"ok": True, "webhook_url": url or None}


def webhook_test(owner_id: str) -> Dict[str, Any]:
    rt = _runtime()
    if not rt.webhooks.get_webhook_url(owner_id):
        return _err("No webhook URL configured", "NO_WEBHOOK")
    rt.webhooks.send_test_webhook(owner_id)
    return {"ok": True, "message": "Test webhook queued"}


def webhook_deliveries(owner_id: str, limit: int = 10) -> Dict[str, Any]:
    deliveries = _runtime().webhooks.get_deliveries(owner_id, limit=int(limit))
    return {"ok": True, "deliveries": [{k: _iso(v) for k, v in d.items()} for d in deliveries]}


def audits_list(owner_id: str, site_url: Optional[str] = None, limit: int = 20, offset: int = 0) -> Dict[str, Any]:
    rt = _runtime()
    audits = rt.audit.list_audits(owner_id, site_url=site_url, limit=int(limit), offset=int(offset))
    return {
        "ok": True,
        "audits": [{k: _iso(v) for k, v in a.items()} for a in audits],
        "total": rt.audit.count(owner_id),
    }


def audits_get(owner_id: str, audit_id: int) -> Dict[str, Any]:
    """One stored audit, including its full result."""
    audit = _runtime().audit.get_audit(owner_id, int(audit_id))
    if audit is None:
        return _err("Audit not found", "NOT_FOUND", 404)
    return {"ok": True, "audit": {k: _iso(v) for k, v in audit.items()}}


def usage_status(owner_id: str) -> Dict[str, Any]:
    rt = _runtime()
    principal = accounts.get_principal(rt.config.database_url, owner_id)
    if principal is None:
        return _err("Account not found", "NOT_FOUND", 404)
    rate = rt.usage.get_status(principal)
    return {
        "ok": True,
        "plan": principal.plan,
        "used": rate.used,
        "limit": rate.limit,
        "remaining": rate.remaining,
        "by_status": rt.usage.count_by_status(owner_id),
    }


for _tool in (
    proxy_tool_call,
    gateway_health,
    schedules_list,
    schedules_get,
    schedules_create,
    schedules_update,
    schedules_delete,
    schedules_run_now,
    schedules_preview,
    webhook_set_url,
    webhook_test,
    webhook_deliveries,
    audits_list,
    audits_get,
    usage_status,
):
    mcp.tool(_tool)


async def serve(rt: GatewayRuntime) -> None:
    rt.engine.start()
    try:
        await mcp.run_async(transport="http", host=rt.config.mcp_host, port=int(rt.config.mcp_port))
    finally:
        await rt.engine.stop()
        rt.webhooks.shutdown()


def run() -> None:
    cfg = GatewayConfig.from_env()
    configure_logging(cfg.log_level, json_lines=cfg.log_json)
    rt = build_runtime(cfg)
    set_runtime(rt)
    logger.info("gateway starting", extra={"host": cfg.mcp_host, "port": cfg.mcp_port})
    asyncio.run(serve(rt))


if __name__ == "__main__":
    run()
