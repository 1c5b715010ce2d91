from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import func, select

from seomcp.db import get_sessionmaker
from seomcp.models import ApiKey, ScheduledJob, User
from seomcp.scheduler.periodicity import calculate_next_run, utcnow, validate_schedule


def _check_schedule(schedule: str, hour: int, day: Optional[int]) -> None:
    ok, err = validate_schedule(schedule, hour, day)
    if not ok:
        raise ValueError(err)


def count_jobs(database_url: str, owner_id: str) -> int:
    sm = get_sessionmaker(database_url)
    with sm() as s:
        q = select(func.count(ScheduledJob.id)).where(ScheduledJob.user_id == str(owner_id))
        return int(s.execute(q).scalar_one())


def list_jobs(database_url: str, owner_id: str) -> List[Dict[str, Any]]:
    sm = get_sessionmaker(database_url)
    with sm() as s:
        q = (
            select(ScheduledJob)
            .where(ScheduledJob.user_id == str(owner_id))
            .order_by(ScheduledJob.created_at.desc())
        )
        return [j.to_dict() for j in s.execute(q).scalars().all()]


def get_job(database_url: str, job_id: str, owner_id: str) -> Optional[Dict[str, Any]]:
    sm = get_sessionmaker(database_url)
    with sm() as s:
        j = s.get(ScheduledJob, str(job_id))
        if j is None or j.user_id != str(owner_id):
            return None
        return j.to_dict()


def create_job(
    database_url: str,
    *,
    owner_id: str,
    api_key_id: str,
    site_url: str,
    tool_name: str,
    schedule: str,
    hour: int,
    day: Optional[int] = None,
    job_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    _check_schedule(schedule, hour, day)
    now = now or utcnow()

    sm = get_sessionmaker(database_url)
    with sm() as s:
        j = ScheduledJob(
            user_id=str(owner_id),
            api_key_id=str(api_key_id),
            site_url=str(site_url),
            tool_name=str(tool_name),
            schedule=schedule,
            schedule_hour=int(hour),
            schedule_day=day,
            is_active=True,
            next_run_at=calculate_next_run(schedule, hour, day, now=now),
            run_count=0,
            created_at=now,
            updated_at=now,
        )
        if job_id:
            j.id = str(job_id)
        s.add(j)
        s.commit()
        return j.to_dict()


def update_job(
    database_url: str,
    job_id: str,
    owner_id: str,
    *,
    is_active: Optional[bool] = None,
    schedule: Optional[str] = None,
    hour: Optional[int] = None,
    day: Any = ...,
    now: Optional[datetime] = None,
) -> Optional[Dict[str, Any]]:
    """Change periodicity and/or pause state.

    `day` defaults to "unchanged"; pass None to clear it. next_run_at is
    recomputed when a paused job is reactivated or an active job's
    periodicity changes; pausing leaves it alone.
    """
    now = now or utcnow()
    sm = get_sessionmaker(database_url)
    with sm() as s:
        j = s.get(ScheduledJob, str(job_id))
        if j is None or j.user_id != str(owner_id):
            return None

        new_schedule = schedule if schedule is not None else j.schedule
        new_hour = hour if hour is not None else int(j.schedule_hour)
        new_day = j.schedule_day if day is ... else day
        new_active = bool(j.is_active) if is_active is None else bool(is_active)
        _check_schedule(new_schedule, new_hour, new_day)

        reactivated = new_active and not j.is_active
        periodicity_changed = (new_schedule, new_hour, new_day) != (j.schedule, j.schedule_hour, j.schedule_day)

        j.schedule = new_schedule
        j.schedule_hour = new_hour
        j.schedule_day = new_day
        j.is_active = new_active
        if reactivated or (new_active and periodicity_changed):
            j.next_run_at = calculate_next_run(new_schedule, new_hour, new_day, now=now)
        j.updated_at = now
        s.commit()
        return j.to_dict()


def delete_job(database_url: str, job_id: str, owner_id: str) -> bool:
    sm = get_sessionmaker(database_url)
    with sm() as s:
        j = s.get(ScheduledJob, str(job_id))
        if j is None or j.user_id != str(owner_id):
            return False
        s.delete(j)
        s.commit()
        return True


def _run_context(j: ScheduledJob, user: User) -> Dict[str, Any]:
    data = j.to_dict()
    data.update(
        {
            "email": user.email,
            "plan": user.plan,
            "email_verified": bool(user.email_verified),
        }
    )
    return data


def fetch_due_jobs(database_url: str, *, now: datetime, limit: int) -> List[Dict[str, Any]]:
    """Active jobs due at `now` whose owner exists and whose key is active.

    Earliest next_run_at first. Rows come back joined with the owner's
    email/plan, ready for a run.
    """
    if limit <= 0:
        return []
    sm = get_sessionmaker(database_url)
    with sm() as s:
        q = (
            select(ScheduledJob, User)
            .join(User, ScheduledJob.user_id == User.id)
            .join(ApiKey, ScheduledJob.api_key_id == ApiKey.id)
            .where(ScheduledJob.is_active.is_(True))
            .where(ScheduledJob.next_run_at <= now)
            .where(ApiKey.is_active.is_(True))
            .order_by(ScheduledJob.next_run_at.asc())
            .limit(int(limit))
        )
        return [_run_context(j, u) for j, u in s.execute(q).all()]


def get_run_context(database_url: str, job_id: str, owner_id: str) -> Optional[Dict[str, Any]]:
    """Job joined with its owner for a manual run; None if either is missing."""
    sm = get_sessionmaker(database_url)
    with sm() as s:
        j = s.get(ScheduledJob, str(job_id))
        if j is None or j.user_id != str(owner_id):
            return None
        user = s.get(User, str(owner_id))
        if user is None:
            return None
        return _run_context(j, user)


def record_run(
    database_url: str,
    job_id: str,
    *,
    ran_at: datetime,
    next_run_at: datetime,
    error: Optional[str],
) -> None:
    sm = get_sessionmaker(database_url)
    with sm() as s:
        j = s.get(ScheduledJob, str(job_id))
        if j is None:
            # Deleted while running.
            return
        j.last_run_at = ran_at
        j.next_run_at = next_run_at
        j.run_count = int(j.run_count or 0) + 1
        j.last_error = error
        j.updated_at = ran_at
        s.commit()
