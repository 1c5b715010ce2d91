import asyncio
from datetime import datetime

import pytest

from seomcp.scheduler import repo
from seomcp.scheduler.engine import ScheduleEngine
from seomcp.usage.tracker import RateCheck


CREATED = datetime(2026, 3, 11, 10, 30)
SLOT = datetime(2026, 3, 12, 6, 0)
REPORT = {"content": [{"type": "text", "text": "SEO Report\nHealth Score: 87\n12 pages crawled"}]}


class FakeHandle:
    def __init__(self):
        self.requests = []
        self.ready_calls = 0
        self.reply = {"result": REPORT}
        self.error = None
        self.gate = None

    async def ensure_ready(self):
        self.ready_calls += 1

    async def send(self, request):
        self.requests.append(request)
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error
        return {"jsonrpc": "2.0", "id": request["id"], **self.reply}


class FakePool:
    def __init__(self):
        self.handle = FakeHandle()
        self.instances = []
        self.killed = False

    def get_instance(self, owner_id, config_path):
        self.instances.append((owner_id, config_path))
        return self.handle

    def kill_all(self):
        self.killed = True


class FakeUsage:
    def __init__(self):
        self.allowed = True
        self.logged = []
        self.checked = []

    def check_and_increment(self, principal):
        self.checked.append(principal)
        if self.allowed:
            return RateCheck(allowed=True, used=1, limit=2000)
        return RateCheck(allowed=False, used=50, limit=50)

    def log_usage(self, principal, tool_name, outcome, duration_ms, request_id=None):
        self.logged.append((principal.user_id, tool_name, outcome))


class FakeAudit:
    def __init__(self):
        self.captured = []

    def capture_audit(self, owner_id, key_id, tool_name, args, result, duration_ms, plan):
        self.captured.append((owner_id, key_id, tool_name, args, plan))
        return len(self.captured)


class FakeWebhooks:
    def __init__(self):
        self.notified = []
        self.prunes = 0
        self.fail_prune = False

    def notify_scheduled_job_result(self, owner_id, job_id, tool_name, target, score, success, error=None):
        self.notified.append(
            {"owner_id": owner_id, "job_id": job_id, "tool": tool_name, "site": target,
             "score": score, "success": success, "error": error}
        )

    def prune_stale_deliveries(self):
        self.prunes += 1
        if self.fail_prune:
            raise RuntimeError("db locked")
        return 0


class Clock:
    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now


@pytest.fixture
def fakes():
    return FakePool(), FakeUsage(), FakeAudit(), FakeWebhooks()


@pytest.fixture
def make_engine(db_url, fakes):
    pool, usage, audit, webhooks = fakes

    def _make(clock=None, resolver=None, **kw):
        return ScheduleEngine(
            db_url,
            pool,
            resolver or (lambda owner_id: f"/configs/{owner_id}/config.toml"),
            usage=usage,
            audit=audit,
            webhooks=webhooks,
            clock=clock or Clock(datetime(2026, 3, 12, 6, 0, 5)),
            **kw,
        )

    return _make


def _job(db_url, owner="user1", site="example.com", **kw):
    params = dict(
        owner_id=owner,
        api_key_id=f"{owner}-key",
        site_url=site,
        tool_name="generate_report",
        schedule="daily",
        hour=6,
        now=CREATED,
    )
    params.update(kw)
    return repo.create_job(db_url, **params)


@pytest.mark.asyncio
async def test_due_daily_job_runs_and_advances_one_day(db_url, make_user, make_engine, fakes):
    pool, usage, audit, webhooks = fakes
    make_user("user1")
    job = _job(db_url)
    assert job["next_run_at"] == SLOT

    engine = make_engine()
    assert await engine.poll_once() == 1
    await engine.join()

    after = repo.get_job(db_url, job["id"], "user1")
    assert after["run_count"] == 1
    assert after["last_error"] is None
    assert after["last_run_at"] == datetime(2026, 3, 12, 6, 0, 5)
    assert after["next_run_at"] == datetime(2026, 3, 13, 6, 0)

    assert pool.instances == [("user1", "/configs/user1/config.toml")]
    assert pool.handle.ready_calls == 1
    (request,) = pool.handle.requests
    assert request["method"] == "tools/call"
    assert request["params"] == {"name": "generate_report", "arguments": {"site_url": "example.com"}}

    assert usage.logged == [("user1", "generate_report", "success")]
    assert audit.captured == [("user1", "user1-key", "generate_report", {"site_url": "example.com"}, "pro")]
    assert webhooks.notified == [
        {"owner_id": "user1", "job_id": job["id"], "tool": "generate_report", "site": "example.com",
         "score": 87, "success": True, "error": None}
    ]
    assert engine.active_runs == 0


@pytest.mark.asyncio
async def test_jobs_not_yet_due_are_left_alone(db_url, make_user, make_engine, fakes):
    pool = fakes[0]
    make_user("user1")
    _job(db_url)

    engine = make_engine(clock=Clock(datetime(2026, 3, 12, 5, 59)))
    assert await engine.poll_once() == 0
    assert pool.handle.requests == []


@pytest.mark.asyncio
async def test_tool_error_is_recorded(db_url, make_user, make_engine, fakes):
    pool, usage, audit, webhooks = fakes
    make_user("user1")
    job = _job(db_url)
    pool.handle.reply = {"error": {"code": -32000, "message": "GSC quota exhausted"}}

    engine = make_engine()
    await engine.poll_once()
    await engine.join()

    after = repo.get_job(db_url, job["id"], "user1")
    assert after["last_error"] == "GSC quota exhausted"
    assert after["run_count"] == 1
    assert after["next_run_at"] == datetime(2026, 3, 13, 6, 0)
    assert usage.logged == [("user1", "generate_report", "error")]
    assert audit.captured == []
    assert webhooks.notified[0]["success"] is False
    assert webhooks.notified[0]["error"] == "GSC quota exhausted"


@pytest.mark.asyncio
async def test_run_timeout(db_url, make_user, make_engine, fakes):
    pool, usage, _, webhooks = fakes
    make_user("user1")
    job = _job(db_url)
    pool.handle.gate = asyncio.Event()

    engine = make_engine(run_timeout=0.05)
    await engine.poll_once()
    await engine.join()

    after = repo.get_job(db_url, job["id"], "user1")
    assert "timed out" in after["last_error"]
    assert usage.logged == [("user1", "generate_report", "timeout")]
    assert webhooks.notified[0]["success"] is False


@pytest.mark.asyncio
async def test_quota_exhausted_skips_the_call(db_url, make_user, make_engine, fakes):
    pool, usage, audit, _ = fakes
    make_user("user1")
    job = _job(db_url)
    usage.allowed = False

    engine = make_engine()
    await engine.poll_once()
    await engine.join()

    after = repo.get_job(db_url, job["id"], "user1")
    assert after["last_error"] == "Rate limit exceeded (50/50 calls this month)"
    assert after["run_count"] == 1
    assert pool.handle.requests == []
    assert usage.logged == [("user1", "generate_report", "rate_limited")]


@pytest.mark.asyncio
async def test_setup_failure_is_contained(db_url, make_user, make_engine, fakes):
    _, _, _, webhooks = fakes
    make_user("user1")
    job = _job(db_url)

    def broken_resolver(owner_id):
        raise OSError("disk full")

    engine = make_engine(resolver=broken_resolver)
    await engine.poll_once()
    await engine.join()

    after = repo.get_job(db_url, job["id"], "user1")
    assert after["last_error"] == "disk full"
    assert after["next_run_at"] == datetime(2026, 3, 13, 6, 0)
    assert webhooks.notified[0]["error"] == "disk full"
    assert engine.active_runs == 0


@pytest.mark.asyncio
async def test_concurrency_cap_and_no_double_launch(db_url, make_user, make_engine, fakes):
    pool = fakes[0]
    make_user("user1")
    for site in ("a.com", "b.com", "c.com"):
        _job(db_url, site=site)
    pool.handle.gate = asyncio.Event()

    engine = make_engine(max_concurrent=2)
    assert await engine.poll_once() == 2
    await asyncio.sleep(0.05)
    assert engine.active_runs == 2
    assert await engine.poll_once() == 0

    pool.handle.gate.set()
    await engine.join()
    assert engine.active_runs == 0

    assert await engine.poll_once() == 1
    await engine.join()
    assert sorted(r["params"]["arguments"]["site_url"] for r in pool.handle.requests) == ["a.com", "b.com", "c.com"]


@pytest.mark.asyncio
async def test_running_job_is_not_relaunched(db_url, make_user, make_engine, fakes):
    pool = fakes[0]
    make_user("user1")
    _job(db_url)
    pool.handle.gate = asyncio.Event()

    engine = make_engine(max_concurrent=3)
    assert await engine.poll_once() == 1
    await asyncio.sleep(0.05)
    assert await engine.poll_once() == 0

    pool.handle.gate.set()
    await engine.join()
    assert len(pool.handle.requests) == 1


@pytest.mark.asyncio
async def test_run_now(db_url, make_user, make_engine, fakes):
    pool = fakes[0]
    make_user("user1")
    make_user("user2")
    job = _job(db_url)

    # not due yet, but a manual run goes ahead anyway
    engine = make_engine(clock=Clock(datetime(2026, 3, 11, 12, 0)))
    assert await engine.run_now("missing", "user1") is False
    assert await engine.run_now(job["id"], "user2") is False
    assert await engine.run_now(job["id"], "user1") is True
    await engine.join()

    after = repo.get_job(db_url, job["id"], "user1")
    assert after["run_count"] == 1
    assert after["next_run_at"] == SLOT
    assert len(pool.handle.requests) == 1


@pytest.mark.asyncio
async def test_delivery_prune_every_n_polls(make_engine, fakes):
    webhooks = fakes[3]
    engine = make_engine(prune_every=2)

    webhooks.fail_prune = True
    for _ in range(4):
        await engine.poll_once()
    assert webhooks.prunes == 2
    assert engine.status()["poll_count"] == 4


@pytest.mark.asyncio
async def test_webhook_failure_does_not_break_run(db_url, make_user, make_engine, fakes):
    webhooks = fakes[3]
    make_user("user1")
    job = _job(db_url)

    def explode(*args, **kwargs):
        raise RuntimeError("executor shut down")

    webhooks.notify_scheduled_job_result = explode
    engine = make_engine()
    await engine.poll_once()
    await engine.join()

    assert repo.get_job(db_url, job["id"], "user1")["run_count"] == 1


@pytest.mark.asyncio
async def test_start_polls_immediately_and_stop_kills_workers(db_url, make_user, make_engine, fakes):
    pool = fakes[0]
    make_user("user1")
    _job(db_url)

    engine = make_engine(poll_interval=3600)
    engine.start()
    engine.start()
    for _ in range(100):
        if pool.handle.requests:
            break
        await asyncio.sleep(0.01)
    assert engine.running
    assert engine.status()["poll_count"] == 1
    assert len(pool.handle.requests) == 1

    await engine.stop()
    assert not engine.running
    assert pool.killed
    assert engine.active_runs == 0


@pytest.mark.asyncio
async def test_stop_records_cancelled_run(db_url, make_user, make_engine, fakes):
    pool, usage, _, webhooks = fakes
    make_user("user1")
    job = _job(db_url)
    pool.handle.gate = asyncio.Event()

    engine = make_engine()
    assert await engine.poll_once() == 1
    for _ in range(100):
        if pool.handle.requests:
            break
        await asyncio.sleep(0.01)

    await engine.stop()

    stored = repo.get_job(db_url, job["id"], "user1")
    assert stored["last_error"] == "Scheduled run cancelled"
    assert stored["next_run_at"] == datetime(2026, 3, 13, 6, 0)
    assert usage.logged == [("user1", "generate_report", "error")]
    assert webhooks.notified[0]["success"] is False
    assert webhooks.notified[0]["error"] == "Scheduled run cancelled"
    assert engine.active_runs == 0
