from __future__ import annotations

import json
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from sqlalchemy import Boolean, Column, DateTime, Float, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import declarative_base


Base = declarative_base()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _new_id() -> str:
    return str(uuid.uuid4())


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() + "Z" if value else None


class User(Base):
    __tablename__ = "users"

    id = Column(String(64), primary_key=True, default=_new_id)
    email = Column(String(256), nullable=False)
    plan = Column(String(32), default="free", nullable=False)
    email_verified = Column(Boolean, default=True, nullable=False)
    webhook_url = Column(Text, nullable=True)

    created_at = Column(DateTime, default=_utcnow, nullable=False)


class ApiKey(Base):
    __tablename__ = "api_keys"

    id = Column(String(64), primary_key=True, default=_new_id)
    user_id = Column(String(64), ForeignKey("users.id"), nullable=False, index=True)
    name = Column(String(128), default="default", nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)

    created_at = Column(DateTime, default=_utcnow, nullable=False)


class GoogleToken(Base):
    """An account's Google OAuth grant, used to build its worker config."""

    __tablename__ = "google_tokens"

    user_id = Column(String(64), ForeignKey("users.id"), primary_key=True)
    access_token = Column(Text, nullable=False)
    refresh_token = Column(Text, nullable=False)
    token_type = Column(String(32), default="Bearer", nullable=False)
    expires_at = Column(Integer, nullable=True)  # unix seconds
    scopes = Column(Text, nullable=True)
    google_email = Column(String(256), nullable=True)

    created_at = Column(DateTime, default=_utcnow, nullable=False)
    updated_at = Column(DateTime, default=_utcnow, onupdate=_utcnow, nullable=False)


class ScheduledJob(Base):
    __tablename__ = "scheduled_jobs"

    id = Column(String(36), primary_key=True, default=_new_id)
    user_id = Column(String(64), ForeignKey("users.id"), nullable=False, index=True)
    api_key_id = Column(String(64), ForeignKey("api_keys.id"), nullable=False)

    site_url = Column(String(512), nullable=False)
    tool_name = Column(String(128), default="generate_report", nullable=False)

    schedule = Column(String(16), nullable=False)  # daily|weekly|monthly
    schedule_hour = Column(Integer, default=6, nullable=False)  # UTC
    schedule_day = Column(Integer, nullable=True)  # weekday 0-6 (Mon=0) or day of month 1-28

    is_active = Column(Boolean, default=True, nullable=False)
    next_run_at = Column(DateTime, nullable=False, index=True)
    last_run_at = Column(DateTime, nullable=True)
    last_error = Column(Text, nullable=True)
    run_count = Column(Integer, default=0, nullable=False)

    created_at = Column(DateTime, default=_utcnow, nullable=False)
    updated_at = Column(DateTime, default=_utcnow, onupdate=_utcnow, nullable=False)

    __table_args__ = (
        Index("ix_scheduled_jobs_active_next", "is_active", "next_run_at"),
    )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "api_key_id": self.api_key_id,
            "site_url": self.site_url,
            "tool_name": self.tool_name,
            "schedule": self.schedule,
            "schedule_hour": int(self.schedule_hour),
            "schedule_day": self.schedule_day,
            "is_active": bool(self.is_active),
            "next_run_at": self.next_run_at,
            "last_run_at": self.last_run_at,
            "last_error": self.last_error,
            "run_count": int(self.run_count or 0),
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }


class UsageLog(Base):
    __tablename__ = "usage_logs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(64), nullable=False, index=True)
    api_key_id = Column(String(64), nullable=True)
    tool_name = Column(String(128), nullable=False)
    status = Column(String(16), nullable=False)  # success|error|timeout|rate_limited
    duration_ms = Column(Float, nullable=True)
    request_id = Column(String(64), nullable=True)
    created_at = Column(DateTime, default=_utcnow, nullable=False, index=True)


class RateLimit(Base):
    __tablename__ = "rate_limits"

    user_id = Column(String(64), primary_key=True)
    api_key_id = Column(String(64), nullable=True)
    window_start = Column(DateTime, nullable=False)
    call_count = Column(Integer, default=0, nullable=False)


class AuditRecord(Base):
    __tablename__ = "audit_history"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(64), nullable=False, index=True)
    api_key_id = Column(String(64), nullable=True)
    tool_name = Column(String(128), nullable=False)
    site_url = Column(String(512), nullable=False)
    health_score = Column(Integer, nullable=True)
    summary_json = Column(Text, nullable=True)
    full_result = Column(Text, nullable=True)
    duration_ms = Column(Float, nullable=True)
    created_at = Column(DateTime, default=_utcnow, nullable=False, index=True)

    __table_args__ = (
        Index("ix_audit_history_user_site", "user_id", "site_url"),
    )

    def to_dict(self, *, include_result: bool = False) -> Dict[str, Any]:
        data = {
            "id": self.id,
            "tool_name": self.tool_name,
            "site_url": self.site_url,
            "health_score": self.health_score,
            "summary": _safe_json_loads(self.summary_json),
            "duration_ms": self.duration_ms,
            "created_at": _iso(self.created_at),
        }
        if include_result:
            data["result"] = _safe_json_loads(self.full_result)
        return data


class WebhookDelivery(Base):
    __tablename__ = "webhook_deliveries"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(64), nullable=False, index=True)
    event = Column(String(64), nullable=False)
    url = Column(Text, nullable=False)
    status_code = Column(Integer, nullable=True)
    success = Column(Boolean, default=False, nullable=False)
    error = Column(Text, nullable=True)
    duration_ms = Column(Float, nullable=True)
    created_at = Column(DateTime, default=_utcnow, nullable=False, index=True)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "event": self.event,
            "url": self.url,
            "status_code": self.status_code,
            "success": bool(self.success),
            "error": self.error,
            "duration_ms": self.duration_ms,
            "created_at": _iso(self.created_at),
        }


def _safe_json_loads(raw: Optional[str]) -> Optional[Any]:
    if not raw:
        return None
    try:
        return json.loads(raw)
    except ValueError:
        return None
