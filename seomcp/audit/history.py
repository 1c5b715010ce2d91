"""Audit history: stored results of report-style tool calls, per account."""

from __future__ import annotations

import json
import logging
import re
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import delete, func, select
from sqlalchemy.exc import SQLAlchemyError

from seomcp.db import get_sessionmaker
from seomcp.models import AuditRecord


logger = logging.getLogger(__name__)

# Tools whose results are captured.
CAPTURED_TOOLS = frozenset({"generate_report", "site_audit", "crawl_page"})

RETENTION_LIMITS: Dict[str, Dict[str, int]] = {
    "free": {"max_audits": 10, "retention_days": 7},
    "pro": {"max_audits": 100, "retention_days": 30},
    "agency": {"max_audits": 1000, "retention_days": 90},
    "enterprise": {"max_audits": 10000, "retention_days": 365},
}

MAX_RESULT_BYTES = 512 * 1024

HEALTH_SCORE_RE = re.compile(r"[Hh]ealth\s*[Ss]core[:\s]*(\d{1,3})")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def should_capture(tool_name: str) -> bool:
    return tool_name in CAPTURED_TOOLS


def extract_site_url(params: Dict[str, Any]) -> Optional[str]:
    # generate_report / site_audit take site_url, crawl_page takes url
    if params.get("site_url"):
        return str(params["site_url"])
    if params.get("url"):
        return str(params["url"])
    return None


def result_text(result: Any) -> str:
    """Flatten a tool result to text: first text content block, else JSON."""
    if isinstance(result, str):
        return result
    if isinstance(result, dict):
        content = result.get("content")
        if isinstance(content, list) and content and isinstance(content[0], dict):
            text = content[0].get("text")
            if isinstance(text, str):
                return text
    try:
        return json.dumps(result, default=str)
    except (TypeError, ValueError):
        return str(result)


def extract_health_score(result: Any) -> Optional[int]:
    """Numeric 'Health Score: NN' from a report, if present."""
    if result is None:
        return None
    if isinstance(result, dict) and result.get("health_score") is not None:
        try:
            return int(result["health_score"])
        except (TypeError, ValueError):
            pass
    for text in (result_text(result), json.dumps(result, default=str)):
        match = HEALTH_SCORE_RE.search(text)
        if match:
            return int(match.group(1))
    return None


def extract_summary(tool_name: str, result: Any) -> Optional[Dict[str, Any]]:
    text = result_text(result)
    summary: Dict[str, Any] = {}

    if tool_name == "generate_report":
        score = HEALTH_SCORE_RE.search(text)
        if score:
            summary["health_score"] = int(score.group(1))
        pages = re.search(r"(\d+)\s*pages?\s*crawled", text, re.I)
        if pages:
            summary["pages_crawled"] = int(pages.group(1))
        issues = re.search(r"(\d+)\s*issues?\s*found", text, re.I)
        if issues:
            summary["issues_found"] = int(issues.group(1))
    elif tool_name == "site_audit":
        pages = re.search(r"(\d+)\s*pages?\s*(?:crawled|audited)", text, re.I)
        if pages:
            summary["pages_crawled"] = int(pages.group(1))
        errors = re.search(r"(\d+)\s*errors?", text, re.I)
        if errors:
            summary["errors"] = int(errors.group(1))
    elif tool_name == "crawl_page":
        summary["tool_name"] = "crawl_page"
        status = re.search(r"[Ss]tatus[:\s]*(\d{3})", text)
        if status:
            summary["status_code"] = int(status.group(1))

    return summary or None


def retention_limits(plan: Optional[str]) -> Dict[str, int]:
    return RETENTION_LIMITS.get(str(plan or ""), RETENTION_LIMITS["free"])


class AuditHistory:
    def __init__(self, database_url: str) -> None:
        self.database_url = database_url

    def capture_audit(
        self,
        owner_id: str,
        key_id: Optional[str],
        tool_name: str,
        args: Dict[str, Any],
        result: Any,
        duration_ms: float,
        plan: str,
    ) -> Optional[int]:
        """Store a tool result and enforce the plan's retention. Best-effort."""
        site_url = extract_site_url(args or {})
        if not site_url:
            return None

        summary = extract_summary(tool_name, result)
        full_result = json.dumps(result, default=str)
        if len(full_result) > MAX_RESULT_BYTES:
            full_result = json.dumps(
                {"_truncated": True, "_original_size": len(full_result), "summary": summary or "Result too large to store"}
            )

        now = _utcnow()
        limits = retention_limits(plan)
        sm = get_sessionmaker(self.database_url)
        try:
            with sm() as s:
                rec = AuditRecord(
                    user_id=str(owner_id),
                    api_key_id=key_id,
                    tool_name=tool_name,
                    site_url=site_url,
                    health_score=extract_health_score(result),
                    summary_json=json.dumps(summary) if summary else None,
                    full_result=full_result,
                    duration_ms=float(duration_ms),
                    created_at=now,
                )
                s.add(rec)
                s.flush()
                rec_id = rec.id

                cutoff = now - timedelta(days=limits["retention_days"])
                s.execute(
                    delete(AuditRecord)
                    .where(AuditRecord.user_id == str(owner_id))
                    .where(AuditRecord.created_at < cutoff)
                )
                keep = (
                    select(AuditRecord.id)
                    .where(AuditRecord.user_id == str(owner_id))
                    .order_by(AuditRecord.created_at.desc(), AuditRecord.id.desc())
                    .limit(limits["max_audits"])
                )
                s.execute(
                    delete(AuditRecord)
                    .where(AuditRecord.user_id == str(owner_id))
                    .where(AuditRecord.id.not_in(keep.scalar_subquery()))
                )
                s.commit()
                return rec_id
        except SQLAlchemyError:
            logger.exception("failed to capture audit", extra={"user_id": owner_id, "tool": tool_name})
            return None

    def list_audits(
        self,
        owner_id: str,
        *,
        site_url: Optional[str] = None,
        limit: int = 20,
        offset: int = 0,
    ) -> List[Dict[str, Any]]:
        sm = get_sessionmaker(self.database_url)
        with sm() as s:
            q = select(AuditRecord).where(AuditRecord.user_id == str(owner_id))
            if site_url:
                q = q.where(AuditRecord.site_url == site_url)
            q = (
                q.order_by(AuditRecord.created_at.desc(), AuditRecord.id.desc())
                .limit(min(int(limit), 100))
                .offset(int(offset))
            )
            return [r.to_dict() for r in s.execute(q).scalars().all()]

    def get_audit(self, owner_id: str, audit_id: int) -> Optional[Dict[str, Any]]:
        sm = get_sessionmaker(self.database_url)
        with sm() as s:
            rec = s.get(AuditRecord, int(audit_id))
            if rec is None or rec.user_id != str(owner_id):
                return None
            return rec.to_dict(include_result=True)

    def count(self, owner_id: str) -> int:
        sm = get_sessionmaker(self.database_url)
        with sm() as s:
            q = select(func.count(AuditRecord.id)).where(AuditRecord.user_id == str(owner_id))
            return int(s.execute(q).scalar_one())
