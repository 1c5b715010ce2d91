from __future__ import annotations

import os
import shlex
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional

from seomcp.config_utils import env_bool, env_float, env_int, env_str


@dataclass(frozen=True)
class PlanLimits:
    calls_per_month: Optional[int]  # None = unlimited
    max_schedules: Optional[int]  # None = unlimited


PLANS: Dict[str, PlanLimits] = {
    "free": PlanLimits(calls_per_month=50, max_schedules=0),
    "pro": PlanLimits(calls_per_month=2_000, max_schedules=5),
    "agency": PlanLimits(calls_per_month=10_000, max_schedules=25),
    "enterprise": PlanLimits(calls_per_month=None, max_schedules=None),
}

# Unverified free accounts get a reduced monthly allowance.
UNVERIFIED_FREE_CALLS = 10

# Tools that may be scheduled.
SCHEDULABLE_TOOLS = ("generate_report", "site_audit", "crawl_page")


def plan_limits(plan: Optional[str]) -> Optional[PlanLimits]:
    return PLANS.get((plan or "").strip().lower())


@dataclass(frozen=True)
class GatewayConfig:
    """Runtime configuration for the gateway.

    DB selection:
    - PLATFORM_DATABASE_URL: shared DB URL (preferred)
    - SEOMCP_DATABASE_URL: gateway-specific DB URL
    - If neither is set, defaults to local SQLite at data/seomcp.db

    Worker:
    - SEO_MCP_BINARY: worker command line (default: seo-mcp-server)
    - SEOMCP_WORKER_LOG_LEVEL: RUST_LOG passed to workers (default: warn)
    - SEOMCP_USER_CONFIG_DIR: per-account worker configs (default: <tmp>/seo-mcp-saas)

    Proxy spawner:
    - SEOMCP_PROXY_MAX_CONCURRENT (default: 5)
    - SEOMCP_PROXY_TIMEOUT_SECONDS (default: 60)
    - SEOMCP_POOL_ACQUIRE_TIMEOUT_SECONDS (default: 10)

    Scheduler:
    - SEOMCP_SCHEDULER_POLL_SECONDS (default: 60)
    - SEOMCP_SCHEDULER_MAX_CONCURRENT (default: 3)
    - SEOMCP_SCHEDULER_RUN_TIMEOUT_SECONDS (default: 300)

    MCP control surface:
    - SEOMCP_MCP_HOST (default: 0.0.0.0)
    - SEOMCP_MCP_PORT (default: 8020)

    Google OAuth (scheduled runs use the account's stored refresh token):
    - SEOMCP_GOOGLE_CLIENT_ID
    - SEOMCP_GOOGLE_CLIENT_SECRET
    """

    database_url: str

    seo_mcp_binary: str
    worker_log_level: str
    user_config_dir: str

    proxy_max_concurrent: int
    proxy_timeout_seconds: float
    pool_acquire_timeout_seconds: float

    poll_interval_seconds: float
    scheduler_max_concurrent: int
    run_timeout_seconds: float

    webhook_secret: str

    mcp_host: str
    mcp_port: int

    log_level: str
    log_json: bool

    # OAuth client used in per-account worker credentials.
    google_client_id: str = ""
    google_client_secret: str = ""

    @property
    def worker_command(self) -> List[str]:
        return shlex.split(self.seo_mcp_binary)

    @classmethod
    def from_env(cls) -> "GatewayConfig":
        db_url = (
            os.environ.get("PLATFORM_DATABASE_URL")
            or os.environ.get("SEOMCP_DATABASE_URL")
            or ""
        ).strip()

        if not db_url:
            repo_root = Path(__file__).resolve().parents[1]
            data_dir = repo_root / "data"
            data_dir.mkdir(parents=True, exist_ok=True)
            db_url = f"sqlite:///{(data_dir / 'seomcp.db').as_posix()}"

        return cls(
            database_url=db_url,
            seo_mcp_binary=env_str("SEO_MCP_BINARY", "seo-mcp-server"),
            worker_log_level=env_str("SEOMCP_WORKER_LOG_LEVEL", "warn"),
            user_config_dir=env_str("SEOMCP_USER_CONFIG_DIR", os.path.join(tempfile.gettempdir(), "seo-mcp-saas")),
            proxy_max_concurrent=max(1, env_int("SEOMCP_PROXY_MAX_CONCURRENT", 5)),
            proxy_timeout_seconds=max(1.0, env_float("SEOMCP_PROXY_TIMEOUT_SECONDS", 60.0)),
            pool_acquire_timeout_seconds=max(0.1, env_float("SEOMCP_POOL_ACQUIRE_TIMEOUT_SECONDS", 10.0)),
            poll_interval_seconds=max(1.0, env_float("SEOMCP_SCHEDULER_POLL_SECONDS", 60.0)),
            scheduler_max_concurrent=max(1, env_int("SEOMCP_SCHEDULER_MAX_CONCURRENT", 3)),
            run_timeout_seconds=max(1.0, env_float("SEOMCP_SCHEDULER_RUN_TIMEOUT_SECONDS", 300.0)),
            webhook_secret=env_str("SEOMCP_WEBHOOK_SECRET", "dev-webhook-secret"),
            mcp_host=env_str("SEOMCP_MCP_HOST", "0.0.0.0"),
            mcp_port=env_int("SEOMCP_MCP_PORT", 8020),
            log_level=env_str("SEOMCP_LOG_LEVEL", "INFO").upper(),
            log_json=env_bool("SEOMCP_LOG_JSON", True),
            google_client_id=env_str("SEOMCP_GOOGLE_CLIENT_ID", ""),
            google_client_secret=env_str("SEOMCP_GOOGLE_CLIENT_SECRET", ""),
        )
