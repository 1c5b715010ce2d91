"""Usage logging and monthly per-account call quotas."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, Optional

from sqlalchemy import func, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from seomcp.config import UNVERIFIED_FREE_CALLS, plan_limits
from seomcp.db import get_sessionmaker
from seomcp.models import RateLimit, UsageLog


logger = logging.getLogger(__name__)

USAGE_STATUSES = ("success", "error", "timeout", "rate_limited")


@dataclass(frozen=True)
class Principal:
    """Who a call is billed to."""

    user_id: str
    email: str
    plan: str
    api_key_id: Optional[str] = None
    email_verified: bool = True


@dataclass(frozen=True)
class RateCheck:
    allowed: bool
    used: int
    limit: Optional[int]  # None = unlimited

    @property
    def remaining(self) -> Optional[int]:
        if self.limit is None:
            return None
        return max(0, self.limit - self.used)


def _month_start(now: datetime) -> datetime:
    return datetime(now.year, now.month, 1)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def effective_limit(principal: Principal) -> Optional[int]:
    """Monthly call limit, None for unlimited, 0 for unknown plans."""
    limits = plan_limits(principal.plan)
    if limits is None:
        return 0
    if principal.plan == "free" and not principal.email_verified:
        return UNVERIFIED_FREE_CALLS
    return limits.calls_per_month


_INSERT_IGNORE = {"sqlite": sqlite_insert, "postgresql": pg_insert}


def _ensure_rate_row(s: Session, principal: Principal, window_start: datetime) -> None:
    """Create the owner's counter row unless another caller already has."""
    values = {
        "user_id": principal.user_id,
        "api_key_id": principal.api_key_id,
        "window_start": window_start,
        "call_count": 0,
    }
    insert = _INSERT_IGNORE.get(s.get_bind().dialect.name)
    if insert is not None:
        s.execute(insert(RateLimit).values(**values).on_conflict_do_nothing(index_elements=["user_id"]))
        return
    try:
        with s.begin_nested():
            s.add(RateLimit(**values))
    except IntegrityError:
        # Row exists already.
        return


class UsageTracker:
    def __init__(self, database_url: str) -> None:
        self.database_url = database_url

    def log_usage(
        self,
        principal: Principal,
        tool_name: str,
        outcome: str,
        duration_ms: float,
        request_id: Optional[str] = None,
    ) -> None:
        """Record one tool call. Failures are logged, never raised."""
        if outcome not in USAGE_STATUSES:
            outcome = "error"
        sm = get_sessionmaker(self.database_url)
        try:
            with sm() as s:
                s.add(
                    UsageLog(
                        user_id=principal.user_id,
                        api_key_id=principal.api_key_id,
                        tool_name=tool_name,
                        status=outcome,
                        duration_ms=float(duration_ms),
                        request_id=request_id,
                    )
                )
                s.commit()
        except SQLAlchemyError:
            logger.exception("failed to log usage", extra={"user_id": principal.user_id, "tool": tool_name})

    def check_and_increment(self, principal: Principal, *, now: Optional[datetime] = None) -> RateCheck:
        """Check the monthly quota and count this call if allowed.

        Counting is done by conditional UPDATEs in one transaction, so
        concurrent callers for an account never collide or lose an increment.
        Quotas are per account, not per key, so extra keys don't add quota.
        """
        limit = effective_limit(principal)
        if limit is None:
            return RateCheck(allowed=True, used=0, limit=None)
        if limit <= 0:
            return RateCheck(allowed=False, used=0, limit=0)

        window_start = _month_start(now or _utcnow())
        user_id = principal.user_id
        sm = get_sessionmaker(self.database_url)
        with sm() as s, s.begin():
            _ensure_rate_row(s, principal, window_start)

            # New month: restart the window.
            s.execute(
                update(RateLimit)
                .where(RateLimit.user_id == user_id, RateLimit.window_start < window_start)
                .values(window_start=window_start, call_count=0)
                .execution_options(synchronize_session=False)
            )
            res = s.execute(
                update(RateLimit)
                .where(RateLimit.user_id == user_id, RateLimit.call_count < limit)
                .values(call_count=RateLimit.call_count + 1)
                .execution_options(synchronize_session=False)
            )
            used = s.execute(select(RateLimit.call_count).where(RateLimit.user_id == user_id)).scalar_one()

        return RateCheck(allowed=res.rowcount == 1, used=int(used), limit=limit)

    def get_status(self, principal: Principal, *, now: Optional[datetime] = None) -> RateCheck:
        """Current quota state without counting a call."""
        limit = effective_limit(principal)
        if limit is None:
            return RateCheck(allowed=True, used=0, limit=None)

        window_start = _month_start(now or _utcnow())
        sm = get_sessionmaker(self.database_url)
        with sm() as s:
            row = s.get(RateLimit, principal.user_id)
            used = int(row.call_count) if row is not None and row.window_start >= window_start else 0
        return RateCheck(allowed=used < limit, used=used, limit=limit)

    def count_by_status(self, user_id: str) -> Dict[str, int]:
        sm = get_sessionmaker(self.database_url)
        with sm() as s:
            q = (
                select(UsageLog.status, func.count(UsageLog.id))
                .where(UsageLog.user_id == str(user_id))
                .group_by(UsageLog.status)
            )
            return {status: int(count) for status, count in s.execute(q).all()}
